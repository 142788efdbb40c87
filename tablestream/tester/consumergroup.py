"""A stand-in for a Kafka consumer group over the tester's queues."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from tablestream.signal import Signal
from tablestream.tester.consumer import ConsumerMessage, _Channel
from tablestream.tester.queue import Queue

_log = logging.getLogger("tablestream.tester")

_WAIT_INTERVAL = 0.02
_ERROR_BUFFER = 10


class GroupState(enum.IntEnum):
    """Lifecycle state of the consumer group."""

    STOPPED = 0
    SETUP = 1
    CONSUMING = 2
    CLEANING = 3


class Claim:
    """The claim of one topic partition within a group session."""

    def __init__(self, topic: str, partition: int) -> None:
        self.topic = topic
        self.partition = partition
        self.initial_offset = 0
        self.high_water_mark_offset = 0
        self._messages = _Channel()

    def messages(self) -> _Channel:
        """The channel of messages; iterating it ends when the claim closes."""
        return self._messages

    def close(self) -> None:
        self._messages.close()


@dataclass
class _QueueSession:
    queue: Queue
    hwm: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def set_hwm_if_newer(self, hwm: int) -> None:
        with self.lock:
            if self.hwm < hwm:
                self.hwm = hwm

    def get_hwm(self) -> int:
        with self.lock:
            return self.hwm


class GroupSession:
    """One generation of consumption; continues from the last marked offsets."""

    def __init__(
        self, generation: int, topics: Iterable[str], queue_for: Callable[[str], Queue]
    ) -> None:
        self._generation = generation
        self.cancelled = threading.Event()
        self._queues = {topic: _QueueSession(queue_for(topic)) for topic in topics}
        self._claims = {topic: Claim(topic, 0) for topic in self._queues}
        self._catchup_lock = threading.Lock()
        self._cond = threading.Condition()
        self._waiting: set[str] = set()
        self._pending = 0

    @property
    def claim_objects(self) -> dict[str, Claim]:
        return dict(self._claims)

    def claims(self) -> dict[str, list[int]]:
        return {topic: [0] for topic in self._claims}

    def generation_id(self) -> int:
        return self._generation

    def cancel(self) -> None:
        self.cancelled.set()
        with self._cond:
            self._cond.notify_all()

    @staticmethod
    def _msg_key(topic: str, offset: int) -> str:
        return f"{topic}-{offset}"

    def mark_offset(self, topic: str, partition: int, offset: int, metadata: str) -> None:
        """Mark everything before ``offset`` in ``topic`` as consumed."""
        key = self._msg_key(topic, offset - 1)
        with self._cond:
            if key not in self._waiting:
                _log.debug(
                    "Message topic/partition/offset %s/%d/%d was already marked as "
                    "consumed. We should only mark the message once",
                    topic, partition, offset - 1,
                )
            else:
                self._waiting.discard(key)
                self._pending -= 1
                self._cond.notify_all()
        self._queues[topic].set_hwm_if_newer(offset)

    def mark_message(self, msg: ConsumerMessage, metadata: str) -> None:
        self.mark_offset(msg.topic, msg.partition, msg.offset + 1, metadata)

    def catchup_and_wait(self) -> int:
        """Push all unmarked messages and wait until they are marked.

        Returns the number of messages pushed, or 0 if the session was
        cancelled meanwhile.
        """
        with self._catchup_lock:
            pushed = 0
            for session in self._queues.values():
                claim = self._claims[session.queue.topic]
                for msg in session.queue.messages_from_offset(session.get_hwm()):
                    self._push(claim, msg)
                    pushed += 1

            with self._cond:
                while self._pending > 0 and not self.cancelled.is_set():
                    self._cond.wait(_WAIT_INTERVAL)
            return 0 if self.cancelled.is_set() else pushed

    def _push(self, claim: Claim, msg: Any) -> None:
        key = self._msg_key(claim.topic, msg.offset)
        with self._cond:
            if key in self._waiting:
                raise RuntimeError(
                    f"There's a duplicate message offset in the same topic/partition "
                    f"{claim.topic}/0: {msg.offset}. The tester has a bug!"
                )
            self._waiting.add(key)
            self._pending += 1

        delivered = claim.messages().put(
            ConsumerMessage(
                topic=claim.topic,
                partition=0,
                offset=msg.offset,
                key=msg.key.encode(),
                value=msg.value,
                headers=msg.headers,
            ),
            cancel=self.cancelled,
        )
        if not delivered:
            with self._cond:
                self._pending -= 1
                self._cond.notify_all()


def _combine(errors: list[BaseException]) -> BaseException:
    if len(errors) == 1:
        return errors[0]
    joined = "; ".join(str(err) for err in errors)
    return RuntimeError(f"{len(errors)} errors occurred: {joined}")


class ConsumerGroup:
    """Runs a handler over claims of the tester's queues, one session at a time.

    The handler provides ``setup(session)``, ``consume_claim(session, claim)``
    and ``cleanup(session)``.
    """

    def __init__(self, queue_for: Callable[[str], Queue]) -> None:
        self._queue_for = queue_for
        self._lock = threading.Lock()
        self._errs: "queue_module.Queue[Any]" = queue_module.Queue(maxsize=_ERROR_BUFFER)
        self._offset = 0
        self._generation = 0
        self._state = Signal(*GroupState, initial=GroupState.STOPPED)
        self._current_session: Optional[GroupSession] = None

    @property
    def current_session(self) -> Optional[GroupSession]:
        return self._current_session

    def state(self) -> GroupState:
        return GroupState(self._state.state())

    def consume(self, topics: Iterable[str], handler: Any) -> None:
        """Run one session over ``topics`` until a claim handler returns."""
        if not self._state.is_state(GroupState.STOPPED):
            raise RuntimeError(
                "Tried to double-consume this consumer-group, which is not "
                "supported by the mock"
            )
        topics = list(topics)
        _log.debug("consuming consumergroup with topics %s", topics)
        try:
            if not topics:
                raise ValueError("no topics specified")
            session = GroupSession(self._generation, topics, self._queue_for)
            self._current_session = session
            self._state.set_state(GroupState.SETUP)
            try:
                handler.setup(session)
            except Exception as err:
                raise RuntimeError(f"Error setting up: {err}") from err
            self._run_session(session, handler)
        finally:
            self._state.set_state(GroupState.STOPPED)
            self._generation += 1

    def _run_session(self, session: GroupSession, handler: Any) -> None:
        errors: list[BaseException] = []
        lock = threading.Lock()

        def close_when_done(claim: Claim) -> None:
            session.cancelled.wait()
            claim.close()

        def consume_claim(claim: Claim) -> None:
            try:
                handler.consume_claim(session, claim)
            except Exception as err:
                session.cancel()
                with lock:
                    errors.append(err)
                self._errs.put(err)
                return
            # the first finished claim ends the session
            session.cancel()

        threads = []
        for claim in session.claim_objects.values():
            threads.append(threading.Thread(target=close_when_done, args=(claim,), daemon=True))
            threads.append(threading.Thread(target=consume_claim, args=(claim,), daemon=True))
        for thread in threads:
            thread.start()
        self._state.set_state(GroupState.CONSUMING)
        for thread in threads:
            thread.join()

        self._state.set_state(GroupState.CLEANING)
        try:
            handler.cleanup(session)
        except Exception as err:
            errors.append(err)
        self._current_session = None
        if errors:
            raise _combine(errors)

    def catchup_and_wait(self) -> int:
        session = self._current_session
        if session is None:
            raise RuntimeError(
                "There is currently no session. Cannot catchup, but we shouldn't "
                "be at this point"
            )
        return session.catchup_and_wait()

    def send_error(self, err: BaseException) -> None:
        with self._lock:
            errs = self._errs
        errs.put(err)

    def errors(self) -> "queue_module.Queue[Any]":
        """The queue of errors; a closed queue ends with ``None``."""
        with self._lock:
            return self._errs

    def wait_running(self, timeout: Optional[float] = None) -> bool:
        """Block until a session is consuming; False if the timeout ran out."""
        return self._state.wait_for_state(GroupState.CONSUMING, timeout)

    def next_offset(self) -> int:
        with self._lock:
            self._offset += 1
            return self._offset

    def close(self) -> None:
        """End the error queue and reset offsets and generations."""
        with self._lock:
            old = self._errs
            self._errs = queue_module.Queue()
            self._offset = 0
            self._generation = 0
        try:
            old.put_nowait(None)
        except queue_module.Full:
            pass


import queue as queue_module  # noqa: E402