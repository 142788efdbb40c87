"""A local, persistent cache of a table topic, spread over partitions."""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from tablestream.signal import Signal, StateChangeObserver

_POLL_INTERVAL = 0.02


class ViewState(enum.IntEnum):
    """Lifecycle state of a view, derived from its slowest partition."""

    IDLE = 0
    INITIALIZING = 1
    CONNECTING = 2
    CATCH_UP = 3
    RUNNING = 4


class PartitionStatus(enum.IntEnum):
    """Lifecycle state of a single partition table."""

    STOPPED = 0
    INITIALIZING = 1
    CONNECTING = 2
    RECOVERING = 3
    PREPARING = 4
    RUNNING = 5


_STATUS_TO_VIEW = {
    PartitionStatus.STOPPED: ViewState.IDLE,
    PartitionStatus.INITIALIZING: ViewState.INITIALIZING,
    PartitionStatus.CONNECTING: ViewState.CONNECTING,
    PartitionStatus.RECOVERING: ViewState.CATCH_UP,
    PartitionStatus.PREPARING: ViewState.CATCH_UP,
    PartitionStatus.RUNNING: ViewState.RUNNING,
}


def view_state_for(partition_status: int) -> Optional[ViewState]:
    """Translate a partition status into a view state; None if unknown."""
    try:
        status = PartitionStatus(partition_status)
    except ValueError:
        return None
    return _STATUS_TO_VIEW[status]


def _fnv1a_32(data: bytes) -> int:
    value = 0x811C9DC5
    for byte in data:
        value ^= byte
        value = (value * 0x01000193) & 0xFFFFFFFF
    return value


def _combine(errors: Sequence[BaseException]) -> BaseException:
    if len(errors) == 1:
        return errors[0]
    joined = "; ".join(str(err) for err in errors)
    return RuntimeError(f"{len(errors)} errors occurred: {joined}")


def _release(iterator: Any) -> None:
    release = getattr(iterator, "release", None)
    if release is not None:
        release()


def _run_group(
    stop: threading.Event, tasks: Iterable[Callable[[threading.Event], None]]
) -> list[BaseException]:
    """Run tasks in threads; the first failure or ``stop`` cancels the others."""
    inner = threading.Event()
    errors: list[BaseException] = []
    lock = threading.Lock()

    def runner(task: Callable[[threading.Event], None]) -> None:
        try:
            task(inner)
        except Exception as err:
            with lock:
                errors.append(err)
            inner.set()

    threads = [threading.Thread(target=runner, args=(task,), daemon=True) for task in tasks]
    for thread in threads:
        thread.start()
    for thread in threads:
        while thread.is_alive():
            if stop.is_set():
                inner.set()
            thread.join(_POLL_INTERVAL)
    return errors


class ViewIterator:
    """Iterates over (key, decoded value) pairs of all partitions of a view."""

    def __init__(self, iterators: Iterable[Any], codec: Any) -> None:
        self._iterators = list(iterators)
        self._codec = codec

    def __iter__(self) -> Iterator[tuple[Any, Any]]:
        for key, raw in itertools.chain.from_iterable(self._iterators):
            yield key, self._codec.decode(raw)

    def release(self) -> None:
        """Release the underlying partition iterators."""
        iterators, self._iterators = self._iterators, []
        for iterator in iterators:
            _release(iterator)

    def __enter__(self) -> "ViewIterator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class View:
    """A materialised, local cache of a table topic.

    Partitions are either given directly or built with ``partition_factory``
    for every partition that ``topic_manager`` reports; the topic manager is
    closed afterwards. ``hasher`` maps key bytes to an unsigned 32-bit value.
    """

    def __init__(
        self,
        topic: str,
        codec: Any,
        partitions: Optional[Iterable[Any]] = None,
        *,
        topic_manager: Any = None,
        partition_factory: Optional[Callable[[str, int], Any]] = None,
        hasher: Optional[Callable[[bytes], int]] = None,
        autoreconnect: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._topic = topic
        self._codec = codec
        self._hasher = hasher or _fnv1a_32
        self._autoreconnect = autoreconnect
        self._log = logger or logging.getLogger(f"tablestream.view.{topic}")
        self._state = Signal(*ViewState, initial=ViewState.IDLE)
        if partitions is not None:
            self._partitions = list(partitions)
        else:
            self._partitions = self._create_partitions(topic_manager, partition_factory)

    def _create_partitions(
        self, topic_manager: Any, partition_factory: Optional[Callable[[str, int], Any]]
    ) -> list[Any]:
        if topic_manager is None or partition_factory is None:
            raise ValueError(
                "either partitions or a topic manager and a partition factory are needed"
            )
        try:
            partitions = self._build_partitions(topic_manager, partition_factory)
        except BaseException:
            try:
                topic_manager.close()
            except Exception:
                pass
            raise
        try:
            topic_manager.close()
        except Exception as err:
            raise RuntimeError(f"Error closing topic manager: {err}") from err
        return partitions

    def _build_partitions(
        self, topic_manager: Any, partition_factory: Callable[[str, int], Any]
    ) -> list[Any]:
        try:
            ids = list(topic_manager.partitions(self._topic))
        except Exception as err:
            raise RuntimeError(
                f"Error getting partitions for topic {self._topic}: {err}"
            ) from err
        for index, partition_id in enumerate(ids):
            if index != partition_id:
                raise RuntimeError(
                    f"Partition numbers are not sequential for topic {self._topic}"
                )
        return [partition_factory(self._topic, partition_id) for partition_id in ids]

    def wait_running(self, timeout: Optional[float] = None) -> bool:
        """Block until the view is running; False if the timeout ran out."""
        return self._state.wait_for_state(ViewState.RUNNING, timeout)

    def _start_state_merger(
        self, stop: threading.Event, done: threading.Event
    ) -> list[threading.Thread]:
        states: dict[int, int] = {}
        lock = threading.Lock()

        def update(index: int, state: int) -> None:
            with lock:
                states[index] = int(state)
                lowest = min(states.values())
                new_state = view_state_for(lowest)
                if new_state is None:
                    self._log.warning("State merger received unknown partition state: %s", lowest)
                    return
                self._state.set_state(new_state)

        def watch(index: int, observer: StateChangeObserver) -> None:
            try:
                while not (stop.is_set() or done.is_set()):
                    try:
                        state = observer.get(timeout=_POLL_INTERVAL)
                    except TimeoutError:
                        continue
                    if state is None:
                        return
                    update(index, state)
            finally:
                observer.stop()

        threads = []
        for index, partition in enumerate(self._partitions):
            observer = partition.observe_state_changes()
            thread = threading.Thread(target=watch, args=(index, observer), daemon=True)
            thread.start()
            threads.append(thread)
        return threads

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Recover and follow all partitions until ``stop_event`` is set.

        The view is closed when this returns; errors of recovering, catching
        up or closing are raised.
        """
        stop = stop_event if stop_event is not None else threading.Event()
        done = threading.Event()
        self._log.debug("starting")
        mergers = self._start_state_merger(stop, done)

        error = self._run_partitions(stop)
        try:
            self.close()
        except Exception as err:
            error = err if error is None else _combine([error, err])

        done.set()
        for thread in mergers:
            thread.join()
        self._state.set_state(ViewState.IDLE)
        self._log.debug("stopped")
        if error is not None:
            raise error

    def _run_partitions(self, stop: threading.Event) -> Optional[BaseException]:
        partitions = list(self._partitions)
        for partition in partitions:
            threading.Thread(
                target=partition.run_stats_loop, args=(stop,), daemon=True
            ).start()

        errors = _run_group(
            stop,
            [
                lambda event, p=partition: p.setup_and_recover(event, self._autoreconnect)
                for partition in partitions
            ],
        )
        if errors:
            return RuntimeError(
                f"Error recovering partitions for view {self._topic}: {_combine(errors)}"
            )
        if stop.is_set():
            return None

        errors = _run_group(
            stop,
            [
                lambda event, p=partition: p.catchup_forever(event, self._autoreconnect)
                for partition in partitions
            ],
        )
        if errors:
            return RuntimeError(
                f"Error catching up partitions for view {self._topic}: {_combine(errors)}"
            )
        return None

    def close(self) -> None:
        """Close all partitions concurrently and forget them."""
        partitions, self._partitions = self._partitions, []
        if not partitions:
            return
        with ThreadPoolExecutor(max_workers=len(partitions)) as pool:
            futures = [pool.submit(partition.close) for partition in partitions]
        errors = [err for err in (future.exception() for future in futures) if err is not None]
        if errors:
            raise _combine(errors)

    def _hash(self, key: str) -> int:
        try:
            digest = self._hasher(key.encode())
        except Exception as err:
            raise RuntimeError(f"error hashing key {key}: {err}") from err
        value = digest & 0xFFFFFFFF
        if value >= 1 << 31:
            value -= 1 << 32
        value = abs(value)
        if not self._partitions:
            raise RuntimeError("no partitions found")
        return value % len(self._partitions)

    def _find(self, key: str) -> Any:
        return self._partitions[self._hash(key)]

    def topic(self) -> str:
        return self._topic

    def get(self, key: str) -> Any:
        """Return the decoded value for ``key``, or None if there is none."""
        if self._state.is_state(ViewState.IDLE) or self._state.is_state(
            ViewState.INITIALIZING
        ):
            raise RuntimeError(
                "View is either not running, not correctly initialized or stopped "
                "again. It's not safe to retrieve values"
            )
        partition = self._find(key)
        try:
            data = partition.get(key)
        except Exception as err:
            raise RuntimeError(f"error getting value (key {key}): {err}") from err
        if data is None:
            return None
        try:
            return self._codec.decode(data)
        except Exception as err:
            raise RuntimeError(f"error decoding value (key {key}): {err}") from err

    def has(self, key: str) -> bool:
        return bool(self._find(key).has(key))

    def _open_iterators(self, open_one: Callable[[Any], Any]) -> ViewIterator:
        opened = []
        for partition in self._partitions:
            try:
                opened.append(open_one(partition))
            except Exception as err:
                for iterator in opened:
                    _release(iterator)
                raise RuntimeError(f"error opening partition iterator: {err}") from err
        return ViewIterator(opened, self._codec)

    def iterator(self) -> ViewIterator:
        """Iterate over the whole state of the view."""
        return self._open_iterators(lambda partition: partition.iterator())

    def iterator_with_range(self, start: str, limit: str) -> ViewIterator:
        """Iterate over the keys from ``start`` up to ``limit``."""
        return self._open_iterators(
            lambda partition: partition.iterator_with_range(start.encode(), limit.encode())
        )

    def evict(self, key: str) -> None:
        """Remove ``key`` from the local cache only."""
        self._find(key).delete(key)

    def recovered(self) -> bool:
        """True once every partition has caught up; never without partitions."""
        if not self._partitions:
            return False
        return all(partition.is_recovered() for partition in self._partitions)

    def current_state(self) -> ViewState:
        return ViewState(self._state.state())

    def observe_state_changes(self) -> StateChangeObserver:
        return self._state.observe_state_change()

    def stats(self) -> dict[int, Any]:
        """Return the statistics of every partition, keyed by partition id."""
        partitions = list(self._partitions)
        if not partitions:
            return {}

        def fetch(partition: Any) -> Any:
            try:
                return partition.fetch_stats()
            except Exception as err:
                self._log.warning("Error retrieving stats: %s", err)
                return None

        with ThreadPoolExecutor(max_workers=len(partitions)) as pool:
            results = list(pool.map(fetch, partitions))
        return {
            partition.partition: result
            for partition, result in zip(partitions, results)
            if result is not None
        }