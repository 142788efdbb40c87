import threading
from contextlib import contextmanager

import pytest

from tablestream.signal import Signal
from tablestream.view import PartitionStatus, View, ViewState, view_state_for

TOPIC = "group-name-table"


class Int64Codec:
    def encode(self, value):
        return str(value).encode()

    def decode(self, data):
        return int(data.decode())


class FakeIterator:
    def __init__(self, items):
        self.items = list(items)
        self.released = False

    def __iter__(self):
        return iter(self.items)

    def release(self):
        self.released = True


class FakePartition:
    def __init__(self, partition=0, data=None, status=PartitionStatus.RUNNING):
        self.partition = partition
        self.data = dict(data or {})
        self.signal = Signal(*PartitionStatus, initial=PartitionStatus.STOPPED)
        self.target = status
        self.closed = False
        self.close_error = None
        self.recover_error = None
        self.get_error = None
        self.iterator_error = None
        self.catchup_calls = 0
        self.iterators = []
        self.ranges = []

    def observe_state_changes(self):
        return self.signal.observe_state_change()

    def setup_and_recover(self, stop, autoreconnect):
        if self.recover_error is not None:
            raise self.recover_error
        self.signal.set_state(self.target)

    def catchup_forever(self, stop, autoreconnect):
        self.catchup_calls += 1
        stop.wait()

    def run_stats_loop(self, stop):
        stop.wait()

    def get(self, key):
        if self.get_error is not None:
            raise self.get_error
        return self.data.get(key)

    def has(self, key):
        return key in self.data

    def delete(self, key):
        self.data.pop(key, None)

    def iterator(self):
        if self.iterator_error is not None:
            raise self.iterator_error
        it = FakeIterator(sorted(self.data.items()))
        self.iterators.append(it)
        return it

    def iterator_with_range(self, start, limit):
        self.ranges.append((start, limit))
        return FakeIterator(
            (k, v) for k, v in sorted(self.data.items()) if start <= k.encode() < limit
        )

    def is_recovered(self):
        return self.signal.is_state(PartitionStatus.RUNNING)

    def fetch_stats(self):
        return {"partition": self.partition}

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeTopicManager:
    def __init__(self, partitions=None, error=None):
        self._partitions = partitions
        self._error = error
        self.closed = False

    def partitions(self, topic):
        if self._error is not None:
            raise self._error
        return self._partitions

    def close(self):
        self.closed = True


def const_hasher(value):
    return lambda data: value


def failing_hasher(data):
    raise ValueError("constHasher write error")


@contextmanager
def running(view):
    stop = threading.Event()
    errors = []

    def target():
        try:
            view.run(stop)
        except Exception as err:
            errors.append(err)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    try:
        assert view.wait_running(timeout=5)
        yield stop
    finally:
        stop.set()
        thread.join(timeout=5)
    assert errors == []


def test_hash_single_partition_routes_to_it():
    part = FakePartition(data={"a": b"1"})
    view = View(TOPIC, Int64Codec(), [part])
    assert view.has("a") is True


def test_hash_error_is_raised():
    view = View(TOPIC, Int64Codec(), [FakePartition()], hasher=failing_hasher)
    with pytest.raises(RuntimeError):
        view.has("a")


def test_hash_without_partitions_fails():
    view = View(TOPIC, Int64Codec(), [])
    with pytest.raises(RuntimeError, match="no partitions found"):
        view.has("a")


def test_find_uses_hasher_value():
    parts = [FakePartition(0), FakePartition(1, data={"some-key": b"1"})]
    view = View(TOPIC, Int64Codec(), parts, hasher=const_hasher(1))
    assert view.has("some-key") is True


def test_negative_int32_hash_is_made_positive():
    parts = [FakePartition(0), FakePartition(1, data={"k": b"1"})]
    view = View(TOPIC, Int64Codec(), parts, hasher=const_hasher(0xFFFFFFFF))
    assert view.has("k") is True


def test_get_before_running_fails():
    view = View(TOPIC, Int64Codec(), [FakePartition(data={"key": b"1"})])
    with pytest.raises(RuntimeError, match="not running"):
        view.get("key")


def test_get_succeed():
    part = FakePartition(data={"some-key": b"3"})
    view = View(TOPIC, Int64Codec(), [part], hasher=const_hasher(0))
    with running(view):
        assert view.get("some-key") == 3


def test_get_succeed_nil():
    view = View(TOPIC, Int64Codec(), [FakePartition()], hasher=const_hasher(0))
    with running(view):
        assert view.get("some-key") is None


def test_get_fails_on_storage_error():
    part = FakePartition()
    part.get_error = OSError("get failed")
    view = View(TOPIC, Int64Codec(), [part], hasher=const_hasher(0))
    with running(view):
        with pytest.raises(RuntimeError, match="get failed"):
            view.get("some-key")


@pytest.mark.parametrize("present", [True, False])
def test_has(present):
    data = {"some-key": b"1"} if present else {}
    view = View(TOPIC, Int64Codec(), [FakePartition(data=data)], hasher=const_hasher(0))
    assert view.has("some-key") is present


def test_evict_removes_key():
    part = FakePartition(data={"some-key": b"1"})
    view = View(TOPIC, Int64Codec(), [part], hasher=const_hasher(0))
    view.evict("some-key")
    assert "some-key" not in part.data


def test_recovered_true():
    part = FakePartition()
    part.signal.set_state(PartitionStatus.RUNNING)
    view = View(TOPIC, Int64Codec(), [part])
    assert view.recovered() is True


def test_recovered_false_when_one_recovering():
    first, second = FakePartition(0), FakePartition(1)
    first.signal.set_state(PartitionStatus.RECOVERING)
    second.signal.set_state(PartitionStatus.RUNNING)
    view = View(TOPIC, Int64Codec(), [first, second])
    assert view.recovered() is False


def test_recovered_false_without_partitions():
    assert View(TOPIC, Int64Codec(), []).recovered() is False


def test_topic():
    assert View(TOPIC, Int64Codec(), []).topic() == TOPIC


def test_close_closes_all_partitions():
    parts = [FakePartition(i) for i in range(3)]
    view = View(TOPIC, Int64Codec(), parts)
    view.close()
    assert all(p.closed for p in parts)
    assert view.recovered() is False


def test_close_twice():
    parts = [FakePartition(i) for i in range(3)]
    view = View(TOPIC, Int64Codec(), parts)
    view.close()
    view.close()
    assert view.stats() == {}


def test_close_fail_still_forgets_partitions():
    parts = [FakePartition(i) for i in range(3)]
    for p in parts:
        p.close_error = OSError("some-error")
    view = View(TOPIC, Int64Codec(), parts)
    with pytest.raises(Exception, match="some-error"):
        view.close()
    with pytest.raises(RuntimeError, match="no partitions"):
        view.has("a")


def test_run_succeed_closes_and_goes_idle():
    part = FakePartition()
    view = View(TOPIC, Int64Codec(), [part])
    with running(view):
        assert view.current_state() == ViewState.RUNNING
    assert part.closed is True
    assert view.current_state() == ViewState.IDLE


def test_run_fail():
    part = FakePartition()
    part.recover_error = OSError("run error")
    view = View(TOPIC, Int64Codec(), [part])
    stop = threading.Event()
    try:
        with pytest.raises(RuntimeError, match="Error recovering partitions"):
            view.run(stop)
    finally:
        stop.set()
    assert part.closed is True


def test_run_stopped_before_catchup():
    part = FakePartition()
    view = View(TOPIC, Int64Codec(), [part])
    stop = threading.Event()
    stop.set()
    view.run(stop)
    assert part.catchup_calls == 0
    assert part.closed is True


def test_state_merger_uses_lowest_partition_state():
    first = FakePartition(0, status=PartitionStatus.RUNNING)
    second = FakePartition(1, status=PartitionStatus.RECOVERING)
    view = View(TOPIC, Int64Codec(), [first, second])
    stop = threading.Event()
    thread = threading.Thread(target=view.run, args=(stop,), daemon=True)
    thread.start()
    try:
        observer = view.observe_state_changes()
        seen = set()
        while ViewState.CATCH_UP not in seen:
            seen.add(observer.get(timeout=5))
        assert view.wait_running(timeout=0.2) is False
    finally:
        stop.set()
        thread.join(timeout=5)


def test_create_partitions_succeed():
    tm = FakeTopicManager([0])
    created = []

    def factory(topic, pid):
        created.append((topic, pid))
        return FakePartition(pid)

    view = View(TOPIC, Int64Codec(), topic_manager=tm, partition_factory=factory)
    assert created == [(TOPIC, 0)]
    assert tm.closed is True
    assert view.stats() == {0: {"partition": 0}}


def test_create_partitions_fail_tmgr():
    tm = FakeTopicManager(error=OSError("tmgr-partition-error"))
    with pytest.raises(RuntimeError, match="tmgr-partition-error"):
        View(TOPIC, Int64Codec(), topic_manager=tm, partition_factory=FakePartition)
    assert tm.closed is True


def test_create_partitions_not_sequential():
    tm = FakeTopicManager([0, 2])
    with pytest.raises(RuntimeError, match="not sequential"):
        View(TOPIC, Int64Codec(), topic_manager=tm, partition_factory=lambda t, p: FakePartition(p))


def test_wait_running_times_out_when_idle():
    view = View(TOPIC, Int64Codec(), [FakePartition()])
    assert view.wait_running(timeout=0.05) is False


def test_iterator_over_all_partitions():
    parts = [FakePartition(0, data={"a": b"1"}), FakePartition(1, data={"b": b"2"})]
    view = View(TOPIC, Int64Codec(), parts)
    with view.iterator() as it:
        assert sorted(it) == [("a", 1), ("b", 2)]
    assert all(p.iterators[0].released for p in parts)


def test_iterator_error_releases_opened():
    first, second = FakePartition(0), FakePartition(1)
    second.iterator_error = OSError("broken")
    view = View(TOPIC, Int64Codec(), [first, second])
    with pytest.raises(RuntimeError, match="error opening partition iterator"):
        view.iterator()
    assert first.iterators[0].released is True


def test_iterator_with_range():
    part = FakePartition(data={"a": b"1", "b": b"2", "c": b"3"})
    view = View(TOPIC, Int64Codec(), [part])
    assert list(view.iterator_with_range("b", "c")) == [("b", 2)]
    assert part.ranges == [(b"b", b"c")]


def test_observer_receives_current_state():
    view = View(TOPIC, Int64Codec(), [])
    observer = view.observe_state_changes()
    assert observer.get(timeout=1) == ViewState.IDLE
    observer.stop()


def test_stats_per_partition():
    view = View(TOPIC, Int64Codec(), [FakePartition(0), FakePartition(1)])
    assert view.stats() == {0: {"partition": 0}, 1: {"partition": 1}}


@pytest.mark.parametrize(
    "status, expected",
    [
        (PartitionStatus.STOPPED, ViewState.IDLE),
        (PartitionStatus.INITIALIZING, ViewState.INITIALIZING),
        (PartitionStatus.CONNECTING, ViewState.CONNECTING),
        (PartitionStatus.RECOVERING, ViewState.CATCH_UP),
        (PartitionStatus.PREPARING, ViewState.CATCH_UP),
        (PartitionStatus.RUNNING, ViewState.RUNNING),
        (42, None),
    ],
)
def test_view_state_for(status, expected):
    assert view_state_for(status) == expected