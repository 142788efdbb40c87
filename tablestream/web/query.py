"""HTTP pages for looking up keys in attached table sources."""

from __future__ import annotations

import html
import json
import logging
import threading
from typing import Any, Callable, Optional
from urllib.parse import quote

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Response

Getter = Callable[[str], Any]
Humanizer = Callable[[Any], str]


def default_humanizer(value: Any) -> str:
    """Return the indented JSON representation of ``value``."""
    return json.dumps(value, indent=2)


class QueryServer:
    """Serves pages to query the values of attached sources by key.

    A getter returns the value of a key, or None if there is none.
    """

    def __init__(
        self,
        base_path: str,
        humanizer: Optional[Humanizer] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_path = base_path
        self._humanizer = humanizer or default_humanizer
        self._log = logger or logging.getLogger("tablestream.web.query")
        self._lock = threading.Lock()
        self._sources: dict[str, Getter] = {}
        prefix = base_path.rstrip("/")
        self._url_map = Map(
            [
                Rule(f"{prefix}/", endpoint="index"),
                Rule(f"{prefix}/<name>", endpoint="source"),
                Rule(f"{prefix}/<name>/<path:key>", endpoint="key"),
            ],
            strict_slashes=False,
        )

    def base_path(self) -> str:
        return self._base_path

    def attach_source(self, name: str, getter: Getter) -> None:
        with self._lock:
            if name in self._sources:
                raise ValueError(f"source with name '{name}' is already attached")
            self._sources[name] = getter

    def _getter(self, name: str) -> Optional[Getter]:
        with self._lock:
            return self._sources.get(name)

    def source_names(self) -> list[str]:
        with self._lock:
            return sorted(self._sources)

    def _base_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "page_title": "Overview",
            "menu_title": "menu title",
            "base_path": self._base_path,
        }
        names = self.source_names()
        if names:
            params["selected_source"] = names[0]
            params["sources"] = names
        return params

    def index_params(self) -> dict[str, Any]:
        return self._base_params()

    def source_params(self, name: str) -> dict[str, Any]:
        params = self._base_params()
        if self._getter(name) is None:
            params["warning"] = f"Source '{name}' not found!"
        else:
            params["selected_source"] = name
        return params

    def key_params(self, name: str, key: str) -> dict[str, Any]:
        params = self._base_params()
        getter = self._getter(name)
        if getter is None:
            params["error"] = f"Source '{name}' not found!"
            return params
        params["selected_source"] = name
        try:
            value = getter(key.strip())
        except Exception as err:
            params["error"] = f"error getting key: {err}"
            return params
        params["key"] = key
        if value is None:
            params["warning"] = f"Key '{key}' not found!"
            return params
        try:
            params["value"] = self._humanizer(value)
        except Exception as err:
            params["error"] = f"error marshaling value: {err}"
        return params

    def _render(self, params: dict[str, Any]) -> str:
        esc = html.escape
        prefix = self._base_path.rstrip("/")
        title = esc(params["page_title"])
        parts = [
            "<!DOCTYPE html>",
            f"<html><head><title>{title}</title></head><body>",
            f"<h1>{title}</h1>",
            "<ul>",
        ]
        selected = params.get("selected_source")
        for name in params.get("sources", []):
            marker = ' class="selected"' if name == selected else ""
            parts.append(
                f'<li{marker}><a href="{esc(prefix)}/{esc(quote(name))}">{esc(name)}</a></li>'
            )
        parts.append("</ul>")
        if selected is not None:
            key = esc(params.get("key", ""))
            parts.append(
                f'<form data-source="{esc(selected)}"><input name="key" value="{key}"></form>'
            )
        for kind in ("error", "warning"):
            if kind in params:
                parts.append(f'<div class="{kind}">{esc(str(params[kind]))}</div>')
        if "value" in params:
            parts.append(f"<pre>{esc(params['value'])}</pre>")
        parts.append("</body></html>")
        return "\n".join(parts)

    def wsgi_app(self, environ: dict, start_response: Callable) -> Any:
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)
        if endpoint == "index":
            params = self.index_params()
        elif endpoint == "source":
            params = self.source_params(args["name"])
        else:
            params = self.key_params(args["name"], args["key"])
        response = Response(self._render(params), content_type="text/html; charset=utf-8")
        return response(environ, start_response)