"""A thread-safe state holder that can be waited on and observed."""

from __future__ import annotations

import queue
import threading
from typing import Any, Hashable, Optional

_STOPPED = object()


class StateChangeObserver:
    """Receives every state a Signal takes after being created."""

    def __init__(self, signal: "Signal") -> None:
        self._signal = signal
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stopped = False

    def _notify(self, state: Hashable) -> None:
        self._queue.put(state)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Return the next state, or None once the observer is stopped.

        Raises TimeoutError if no state arrives within ``timeout`` seconds.
        """
        if self._stopped and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no state change received") from None
        if item is _STOPPED:
            # keep the sentinel for any later readers
            self._queue.put(_STOPPED)
            return None
        return item

    def stop(self) -> None:
        """Detach from the signal; later reads return None."""
        if self._stopped:
            return
        self._signal._remove_observer(self)
        self._stopped = True
        self._queue.put(_STOPPED)


class Signal:
    """Holds one of a fixed set of states and notifies waiters on change."""

    def __init__(self, *states: Hashable, initial: Optional[Hashable] = None) -> None:
        if not states:
            raise ValueError("a signal needs at least one allowed state")
        self._allowed = frozenset(states)
        start = states[0] if initial is None else initial
        if start not in self._allowed:
            raise ValueError(f"state {start!r} is not allowed")
        self._state = start
        self._cond = threading.Condition()
        self._observers: list[StateChangeObserver] = []

    def set_state(self, state: Hashable) -> "Signal":
        """Change to ``state`` and return the signal itself."""
        if state not in self._allowed:
            raise ValueError(f"trying to set illegal state {state!r}")
        with self._cond:
            self._state = state
            for observer in list(self._observers):
                observer._notify(state)
            self._cond.notify_all()
        return self

    def is_state(self, state: Hashable) -> bool:
        with self._cond:
            return self._state == state

    def state(self) -> Hashable:
        with self._cond:
            return self._state

    def wait_for_state(self, state: Hashable, timeout: Optional[float] = None) -> bool:
        """Block until the signal is in ``state``; False if the timeout ran out."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state == state, timeout=timeout)

    def observe_state_change(self) -> StateChangeObserver:
        """Return an observer that first receives the current state."""
        observer = StateChangeObserver(self)
        with self._cond:
            observer._notify(self._state)
            self._observers.append(observer)
        return observer

    def _remove_observer(self, observer: StateChangeObserver) -> None:
        with self._cond:
            if observer in self._observers:
                self._observers.remove(observer)