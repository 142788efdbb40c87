"""A stand-in for a Kafka consumer that reads from the tester's queues."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

from tablestream.headers import Headers
from tablestream.tester.queue import Queue

_STARTUP_POLL_INTERVAL = 0.05
_CANCEL_POLL_INTERVAL = 0.02


@dataclass(frozen=True)
class ConsumerMessage:
    """A message as handed to a consumer."""

    topic: str
    partition: int
    offset: int
    key: bytes
    value: Optional[bytes]
    headers: Optional[Headers] = None


class _Channel:
    """An unbuffered channel: a put returns once a reader has taken the item.

    Iterating over the channel yields items until it is closed.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._items: deque[tuple[int, Any]] = deque()
        self._sent = 0
        self._received = 0
        self._closed = False

    def put(self, item: Any, cancel: Optional[threading.Event] = None) -> bool:
        """Hand ``item`` to a reader; False if cancelled or closed meanwhile."""
        with self._cond:
            if cancel is not None and cancel.is_set():
                return False
            if self._closed:
                raise RuntimeError("send on closed channel")
            self._sent += 1
            ticket = self._sent
            self._items.append((ticket, item))
            self._cond.notify_all()
            while self._received < ticket:
                if self._closed:
                    return False
                if cancel is not None and cancel.is_set():
                    self._withdraw(ticket)
                    return False
                self._cond.wait(_CANCEL_POLL_INTERVAL if cancel is not None else None)
            return True

    def _withdraw(self, ticket: int) -> None:
        for entry in self._items:
            if entry[0] == ticket:
                self._items.remove(entry)
                return

    def get(self, timeout: Optional[float] = None) -> Any:
        """Take the next item; EOFError once closed, TimeoutError on timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("no item received")
            if not self._items:
                raise EOFError("channel closed")
            ticket, item = self._items.popleft()
            self._received = ticket
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("close of closed channel")
            self._closed = True
            self._items.clear()
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.get()
            except EOFError:
                return


class PartConsumerMock:
    """Consumes the single partition of one topic queue.

    ``catchup`` sends each pending message followed by a ``None`` that
    readers ignore; the second send only completes once the reader came
    back for more, so the message has been handled when it returns.
    """

    def __init__(self, queue: Queue, offset: int, closer: Callable[[], None]) -> None:
        self._queue = queue
        self._hwm = offset
        self._closer = closer
        self._messages = _Channel()
        self._errors = _Channel()

    def catchup(self) -> int:
        """Deliver all messages from the current offset; return their number."""
        count = 0
        for msg in self._queue.messages_from_offset(self._hwm):
            self._messages.put(
                ConsumerMessage(
                    topic=self._queue.topic,
                    partition=0,
                    offset=msg.offset,
                    key=msg.key.encode(),
                    value=msg.value,
                    headers=msg.headers,
                )
            )
            self._messages.put(None)
            count += 1
            self._hwm = msg.offset + 1
        return count

    def messages(self) -> _Channel:
        return self._messages

    def errors(self) -> _Channel:
        return self._errors

    def high_water_mark_offset(self) -> int:
        return self._queue.hwm()

    def close(self) -> None:
        self._messages.close()
        self._errors.close()
        self._closer()


class ConsumerMock:
    """Hands out partition consumers over the tester's topic queues.

    ``queue_for`` returns the queue of a topic, creating it if needed;
    ``topic_names`` returns the names of all known topics.
    """

    def __init__(
        self, queue_for: Callable[[str], Queue], topic_names: Callable[[], Iterable[str]]
    ) -> None:
        self._queue_for = queue_for
        self._topic_names = topic_names
        self._lock = threading.Lock()
        self._required: set[str] = set()
        self._part_consumers: dict[str, PartConsumerMock] = {}

    def catchup(self) -> int:
        """Let every partition consumer catch up; return the messages sent."""
        with self._lock:
            consumers = list(self._part_consumers.values())
        return sum(consumer.catchup() for consumer in consumers)

    def topics(self) -> list[str]:
        return list(self._topic_names())

    def partitions(self, topic: str) -> list[int]:
        return [0]

    def consume_partition(self, topic: str, partition: int, offset: int) -> PartConsumerMock:
        """Start consuming ``topic`` at ``offset``; one consumer per topic."""
        with self._lock:
            if topic in self._part_consumers:
                raise ValueError(f"Got duplicate consume partition for topic {topic}")

            def closer() -> None:
                with self._lock:
                    if topic not in self._part_consumers:
                        raise RuntimeError("partition consumer seems already closed")
                    del self._part_consumers[topic]

            consumer = PartConsumerMock(self._queue_for(topic), offset, closer)
            self._part_consumers[topic] = consumer
            return consumer

    def high_water_marks(self) -> dict[str, dict[int, int]]:
        return {}

    def close(self) -> None:
        """Nothing to release."""

    def require_part_consumer(self, topic: str) -> None:
        with self._lock:
            self._required.add(topic)

    def wait_required_consumers_startup(self) -> None:
        """Block until every required topic has a partition consumer."""
        while True:
            with self._lock:
                if self._required.issubset(self._part_consumers):
                    return
            time.sleep(_STARTUP_POLL_INTERVAL)