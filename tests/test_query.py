import json

import pytest
from werkzeug.test import Client

from tablestream.web.query import QueryServer, default_humanizer


def test_default_humanizer_round_trips_and_indents():
    value = {"a": [1, 2], "b": "text"}
    text = default_humanizer(value)
    assert json.loads(text) == value
    assert "\n  " in text


def test_attach_source_twice_fails():
    server = QueryServer("/query")
    server.attach_source("table", lambda key: None)
    with pytest.raises(ValueError):
        server.attach_source("table", lambda key: None)


def test_source_names_sorted_and_index_defaults():
    server = QueryServer("/query")
    assert "sources" not in server.index_params()
    server.attach_source("b", lambda key: None)
    server.attach_source("a", lambda key: None)
    assert server.source_names() == ["a", "b"]
    params = server.index_params()
    assert params["selected_source"] == "a"
    assert params["sources"] == ["a", "b"]
    assert params["page_title"] == "Overview"
    assert server.base_path() == "/query"


def test_source_params_known_and_unknown():
    server = QueryServer("/query")
    server.attach_source("a", lambda key: None)
    server.attach_source("b", lambda key: None)
    assert server.source_params("b")["selected_source"] == "b"
    unknown = server.source_params("zzz")
    assert "zzz" in unknown["warning"]
    assert unknown["selected_source"] == "a"


def test_key_params_strips_key_and_humanizes():
    seen = []

    def getter(key):
        seen.append(key)
        return {"x": 1}

    server = QueryServer("/query")
    server.attach_source("s", getter)
    params = server.key_params("s", "  k ")
    assert seen == ["k"]
    assert params["key"] == "  k "
    assert json.loads(params["value"]) == {"x": 1}
    assert "warning" not in params


def test_key_params_missing_value_warns():
    server = QueryServer("/query")
    server.attach_source("s", lambda key: None)
    params = server.key_params("s", "missing")
    assert "value" not in params
    assert "missing" in params["warning"]


def test_key_params_errors():
    def failing(key):
        raise RuntimeError("boom")

    server = QueryServer("/query", humanizer=lambda value: 1 / 0)
    server.attach_source("bad", failing)
    server.attach_source("ok", lambda key: "v")
    assert "boom" in server.key_params("bad", "k")["error"]
    assert server.key_params("ok", "k")["error"].startswith("error marshaling value")
    assert "nope" in server.key_params("nope", "k")["error"]


def test_wsgi_pages():
    server = QueryServer("/query", humanizer=lambda value: "HUMAN-" + value)
    server.attach_source("users", lambda key: key.upper())
    client = Client(server.wsgi_app)

    index = client.get("/query/")
    assert index.status_code == 200
    assert "users" in index.get_data(as_text=True)

    page = client.get("/query/users/some/key")
    assert page.status_code == 200
    assert "HUMAN-SOME/KEY" in page.get_data(as_text=True)

    source = client.get("/query/unknown")
    assert "unknown" in source.get_data(as_text=True)

    assert client.get("/elsewhere").status_code == 404