"""In-memory topic queues, trackers over them and producer stand-ins."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tablestream.headers import Headers

_log = logging.getLogger("tablestream.tester")


@dataclass(frozen=True)
class Message:
    """A message stored in a topic queue."""

    offset: int
    key: str
    value: Optional[bytes]
    headers: Optional[Headers] = None


class Queue:
    """An append-only, thread-safe list of the messages of one topic."""

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self._lock = threading.Lock()
        self._messages: list[Message] = []
        self._hwm = 0

    def hwm(self) -> int:
        """The offset the next pushed message will get."""
        with self._lock:
            return self._hwm

    def push(self, key: str, value: Optional[bytes], headers: Optional[Headers]) -> int:
        """Append a message and return its offset."""
        with self._lock:
            offset = self._hwm
            self._messages.append(Message(offset, key, value, headers))
            self._hwm += 1
            return offset

    def message(self, offset: int) -> Message:
        with self._lock:
            return self._messages[offset]

    def messages_from_offset(self, offset: int) -> list[Message]:
        with self._lock:
            return self._messages[offset:]

    def size(self) -> int:
        with self._lock:
            return len(self._messages)


class QueueTracker:
    """Walks through the messages of a topic, starting at its current end.

    ``codec_for_topic`` is called with the topic name to decode messages.
    """

    def __init__(self, queue: Queue, codec_for_topic: Callable[[str], Any]) -> None:
        self._queue = queue
        self._codec_for_topic = codec_for_topic
        self._next_offset = queue.hwm()

    def next(self) -> Optional[tuple[str, Any]]:
        """Return the next (key, decoded value), or None if there is none."""
        item = self.next_with_headers()
        if item is None:
            return None
        _, key, value = item
        return key, value

    def next_with_headers(self) -> Optional[tuple[Optional[Headers], str, Any]]:
        """Return the next (headers, key, decoded value), or None."""
        item = self.next_raw_with_headers()
        if item is None:
            return None
        headers, key, raw = item
        codec = self._codec_for_topic(self._queue.topic)
        try:
            decoded = codec.decode(raw)
        except Exception as err:
            raise RuntimeError(f"Error decoding message: {err}") from err
        return headers, key, decoded

    def next_raw(self) -> Optional[tuple[str, Optional[bytes]]]:
        """Return the next (key, raw value), or None."""
        item = self.next_raw_with_headers()
        if item is None:
            return None
        _, key, value = item
        return key, value

    def next_raw_with_headers(self) -> Optional[tuple[Optional[Headers], str, Optional[bytes]]]:
        """Return the next (headers, key, raw value), or None."""
        if self._next_offset >= self._queue.size():
            return None
        msg = self._queue.message(self._next_offset)
        self._next_offset += 1
        return msg.headers, msg.key, msg.value

    def seek(self, offset: int) -> None:
        self._next_offset = offset

    def hwm(self) -> int:
        return self._queue.hwm()

    def next_offset(self) -> int:
        return self._next_offset


class ProducerMock:
    """Forwards every emit to ``emitter(topic, key, value, headers=...)``."""

    def __init__(self, emitter: Callable[..., Any]) -> None:
        self._emitter = emitter

    def emit(self, topic: str, key: str, value: Optional[bytes]) -> Any:
        return self._emitter(topic, key, value)

    def emit_with_headers(
        self, topic: str, key: str, value: Optional[bytes], headers: Optional[Headers]
    ) -> Any:
        return self._emitter(topic, key, value, headers=headers)

    def close(self) -> None:
        _log.debug("Closing producer mock")


class FlushingProducer:
    """Wraps a producer and calls ``flush`` after every emit."""

    def __init__(self, flush: Callable[[], None], producer: Any) -> None:
        self._flush = flush
        self._producer = producer

    def emit(self, topic: str, key: str, value: Optional[bytes]) -> Any:
        promise = self._producer.emit(topic, key, value)
        self._flush()
        return promise

    def emit_with_headers(
        self, topic: str, key: str, value: Optional[bytes], headers: Optional[Headers]
    ) -> Any:
        promise = self._producer.emit_with_headers(topic, key, value, headers)
        self._flush()
        return promise

    def close(self) -> None:
        self._producer.close()