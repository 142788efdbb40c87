"""Named background actions that can be started and stopped over HTTP."""

from __future__ import annotations

import html
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.utils import redirect
from werkzeug.wrappers import Request, Response

ActionFunc = Callable[[threading.Event, str], None]

NOT_STARTED = "not started"
NOT_FINISHED = "not finished"


class FuncActor:
    """An actor made of a description and a function.

    The function receives an event that is set when the action is stopped,
    and the value the action was started with. It signals failure by raising.
    """

    def __init__(self, description: str, func: ActionFunc) -> None:
        self._description = description
        self._func = func

    def run_action(self, cancelled: threading.Event, value: str) -> None:
        self._func(cancelled, value)

    def description(self) -> str:
        return self._description


def _format_time(moment: datetime) -> str:
    return moment.astimezone().isoformat(timespec="seconds")


class Action:
    """Runs an actor in a background thread, one run at a time."""

    def __init__(self, name: str, actor: Any) -> None:
        self._name = name
        self._actor = actor
        self._lock = threading.RLock()
        self._cancel: Optional[threading.Event] = None
        self._done: Optional[threading.Event] = None
        self._started: Optional[datetime] = None
        self._finished: Optional[datetime] = None
        self._error: Optional[BaseException] = None

    def name(self) -> str:
        return self._name

    def is_running(self) -> bool:
        """True while a started run has not finished yet."""
        with self._lock:
            return self._done is not None and not self._done.is_set()

    def description(self) -> str:
        return self._actor.description()

    def start_time(self) -> str:
        """The start time in RFC 3339 form, or "not started"."""
        with self._lock:
            if self._started is None:
                return NOT_STARTED
            return _format_time(self._started)

    def finished_time(self) -> str:
        """The finish time in RFC 3339 form, or "not finished"."""
        with self._lock:
            if self._finished is None:
                return NOT_FINISHED
            return _format_time(self._finished)

    def error(self) -> Optional[BaseException]:
        """The error raised by the last run, or None."""
        with self._lock:
            return self._error

    def start(self, value: str) -> None:
        """Start a run in a new thread, stopping a running one first."""
        self.stop()
        with self._lock:
            self._started = datetime.now(timezone.utc)
            self._finished = None
            cancel = threading.Event()
            done = threading.Event()
            self._cancel, self._done = cancel, done

        def run() -> None:
            error: Optional[BaseException] = None
            try:
                self._actor.run_action(cancel, value)
            except Exception as err:
                error = err
            finally:
                cancel.set()
                with self._lock:
                    self._finished = datetime.now(timezone.utc)
                    self._error = error
                done.set()

        threading.Thread(target=run, name=f"action-{self._name}", daemon=True).start()

    def stop(self) -> None:
        """Ask a running run to stop and wait until it has finished."""
        with self._lock:
            done = self._done
            if self._cancel is not None:
                self._cancel.set()
        if done is not None:
            done.wait()


class ActionServer:
    """Serves a page listing the attached actions with start and stop routes."""

    def __init__(self, base_path: str, logger: Optional[logging.Logger] = None) -> None:
        self._base_path = base_path
        self._log = logger or logging.getLogger("tablestream.web.actions")
        self._lock = threading.Lock()
        self._actions: dict[str, Action] = {}
        prefix = base_path.rstrip("/")
        rules = [Rule(f"{prefix}/", endpoint="index")]
        if prefix:
            rules.append(Rule(prefix, endpoint="index"))
        rules.extend(
            [
                Rule(f"{prefix}/start/<path:action>", endpoint="start", methods=["POST"]),
                Rule(f"{prefix}/stop/<path:action>", endpoint="stop", methods=["POST"]),
            ]
        )
        self._url_map = Map(rules, strict_slashes=False)

    def base_path(self) -> str:
        return self._base_path

    def attach_action(self, name: str, actor: Any) -> None:
        with self._lock:
            if name in self._actions:
                raise ValueError(f"source with name '{name}' is already attached")
            self._actions[name] = Action(name, actor)

    def attach_func_action(self, name: str, description: str, func: ActionFunc) -> None:
        self.attach_action(name, FuncActor(description, func))

    def sorted_actions(self) -> list[Action]:
        with self._lock:
            actions = list(self._actions.values())
        return sorted(actions, key=lambda action: action.name())

    def _action(self, name: str) -> Optional[Action]:
        with self._lock:
            return self._actions.get(name)

    def _redirect(self, error_message: str = "") -> Response:
        path = self._base_path
        if error_message:
            path += "?error=" + quote(error_message)
        return redirect(path, 302)

    def _start(self, request: Request, name: str) -> Response:
        action = self._action(name)
        if action is None:
            return self._redirect(f"Action '{name}' not found")
        if action.is_running():
            return self._redirect("action already running.")
        action.start(request.form.get("value", ""))
        return self._redirect()

    def _stop(self, name: str) -> Response:
        action = self._action(name)
        if action is None:
            return self._redirect(f"Action '{name}' not found")
        if not action.is_running():
            return self._redirect("action is not running.")
        action.stop()
        return self._redirect()

    def _render_index(self, errors: list[str]) -> str:
        esc = html.escape
        prefix = esc(self._base_path.rstrip("/"))
        parts = [
            "<!DOCTYPE html>",
            "<html><head><title>Actions</title></head><body>",
            "<h1>Actions</h1>",
        ]
        for message in errors:
            parts.append(f'<div class="error">{esc(message)}</div>')
        parts.append(
            "<table><tr><th>Name</th><th>Description</th><th>Running</th>"
            "<th>Started</th><th>Finished</th><th>Error</th><th></th></tr>"
        )
        for action in self.sorted_actions():
            name = action.name()
            error = action.error()
            verb = "stop" if action.is_running() else "start"
            parts.append(
                "<tr>"
                f"<td>{esc(name)}</td>"
                f"<td>{esc(action.description())}</td>"
                f"<td>{'yes' if action.is_running() else 'no'}</td>"
                f"<td>{esc(action.start_time())}</td>"
                f"<td>{esc(action.finished_time())}</td>"
                f"<td>{esc(str(error)) if error is not None else ''}</td>"
                f'<td><form method="post" action="{prefix}/{verb}/{esc(quote(name))}">'
                f'<input name="value"><button>{verb}</button></form></td>'
                "</tr>"
            )
        parts.append("</table>")
        parts.append("</body></html>")
        return "\n".join(parts)

    def wsgi_app(self, environ: dict, start_response: Callable) -> Any:
        request = Request(environ)
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)
        if endpoint == "start":
            response = self._start(request, args["action"])
        elif endpoint == "stop":
            response = self._stop(args["action"])
        else:
            body = self._render_index(request.args.getlist("error"))
            response = Response(body, content_type="text/html; charset=utf-8")
        return response(environ, start_response)