# tablestream

Building blocks for applications that process message streams organised into
topics and partitions and keep materialized tables of their state. The
classes work with client, admin, partition and codec objects that you pass
in; they describe what they call on those objects rather than bundling a
broker client of their own.

## What is in the package

- **Topic management** (`tablestream.topic_manager`)
  - `TopicManager(client, admin, config)` checks that topics exist and creates
    them when missing: `ensure_stream_exists`, `ensure_table_exists`,
    `ensure_topic_exists`, plus `partitions`, `get_offset` and `close`.
    For an existing topic it compares the partition count and, when the
    client's `config().version` is at least `(0, 11, 0, 0)`, the requested
    configuration entries and the smallest replica count of any partition.
    `partitions` raises `TopicNotFoundError` for an unknown topic.
  - `TopicManagerConfig` holds the defaults: table and stream replication 2,
    stream retention of one hour, cleanup policies "compact" for tables and
    "delete" for streams (overridable through `table_policy` and
    `stream_policy`), and a 10 second wait (`create_topic_timeout`, 0 turns
    it off) for a created topic to appear.
  - `MismatchBehavior` decides whether a mismatch is ignored (`IGNORE`, the
    default), logged as a warning (`WARN`) or raised (`FAIL`).
  - `new_topic_manager(client, admin, client_config, config, check)` refuses
    versions older than `(0, 10, 0, 0)`, checks the first broker with
    `check` (by default `check_broker`, which opens the connection and makes
    sure it is connected) and returns a `TopicManager`.
  - `ConfigEntry`, `TopicDetail`, `PartitionMetadata` and `TopicMetadata`
    are the data objects exchanged with the admin object.

- **Views** (`tablestream.view`)
  - `View(topic, codec, partitions=None, *, topic_manager=None,
    partition_factory=None, hasher=None, autoreconnect=False, logger=None)`
    is a local cache of a table topic spread over partition objects. Either
    pass the partitions, or a topic manager and a factory that builds one
    partition per id the topic manager reports (ids must be 0, 1, 2, ...).
  - Keys are spread with a 32-bit FNV-1a hash by default. `get` (refused
    while the view is idle or initializing), `has`, `evict`, `iterator` and
    `iterator_with_range` go to the partition owning the key or to all of
    them; the iterators yield `(key, decoded value)` pairs and are
    `ViewIterator` context managers.
  - `run(stop_event)` recovers and then follows all partitions in threads
    until the event is set, closes the view and raises any error.
  - `ViewState` (idle, initializing, connecting, catch-up, running) follows
    the slowest partition's `PartitionStatus`; `view_state_for` does the
    translation. `wait_running`, `current_state`, `observe_state_changes`,
    `recovered` and `stats` report progress.

- **State signals** (`tablestream.signal`): `Signal(*states, initial=...)`
  holds one state out of a fixed set. `set_state`, `is_state`, `state`,
  `wait_for_state(state, timeout)` and `observe_state_change`, which returns a
  `StateChangeObserver` that first receives the current state and then every
  change until `stop` is called.

- **Headers** (`tablestream.headers`): `Headers` is a `dict` of header names to
  bytes; `merged(*others)` returns a new `Headers` in which later mappings win
  and leaves its inputs untouched.

- **Broker stand-ins for tests** (`tablestream.tester`)
  - `tester.queue`: `Queue` is an append-only, thread-safe message list per
    topic (`push`, `hwm`, `message`, `messages_from_offset`, `size`).
    `QueueTracker(queue, codec_for_topic)` reads messages pushed after it was
    created; `next`, `next_with_headers`, `next_raw` and
    `next_raw_with_headers` return a tuple, or `None` when nothing is left.
    `ProducerMock` forwards emits to a function; `FlushingProducer` calls a
    flush function after each emit.
  - `tester.consumer`: `ConsumerMock(queue_for, topic_names)` hands out one
    `PartConsumerMock` per topic; `catchup` delivers pending queue messages
    as `ConsumerMessage` objects and returns how many were sent.
  - `tester.consumergroup`: `ConsumerGroup(queue_for)` runs a handler
    (`setup`, `consume_claim`, `cleanup`) over one `Claim` per topic in a
    `GroupSession`; `catchup_and_wait` pushes unmarked messages and waits
    until the handler has marked them. `GroupState` tracks its lifecycle.

- **Web front-ends** (`tablestream.web`), both WSGI applications built on
  werkzeug:
  - `web.query.QueryServer(base_path, humanizer=None, logger=None)` shows the
    value of a key from an attached source, as indented JSON by default
    (`default_humanizer`). Attaching two sources under one name raises
    `ValueError`.
  - `web.actions.ActionServer(base_path, logger=None)` lists named actions and
    starts or stops them through `POST <base>/start/<name>` and
    `POST <base>/stop/<name>`.

## Installation

```
pip install -e ".[test]"
```

Python 3.10 or newer is required.

## Reading back messages in a test

```python
from tablestream.headers import Headers
from tablestream.tester.queue import Queue, QueueTracker

queue = Queue("output")
tracker = QueueTracker(queue, lambda topic: codec)

queue.push("key", b"value", Headers({"Header1": b"value 1"}))

assert tracker.next_raw() == ("key", b"value")
assert tracker.next_raw() is None
```

## Querying tables over HTTP

```python
from werkzeug.serving import run_simple
from tablestream.web.query import QueryServer

server = QueryServer("/query")
server.attach_source("user-table", view.get)
run_simple("localhost", 8080, server.wsgi_app)
```

A getter returns the value of a key, or `None` when there is none; the page
then shows a "not found" warning.

## Running actions over HTTP

```python
from tablestream.web.actions import ActionServer

def reindex(cancelled, value):
    ...  # check cancelled.is_set() now and then; raise to report failure

actions = ActionServer("/actions")
actions.attach_func_action("reindex", "rebuild the index", reindex)
```

The function receives a `threading.Event` that is set when the action is
stopped, and the `value` field of the start request. Each `Action` reports
`is_running`, `start_time` and `finished_time` (RFC 3339, or "not started" /
"not finished") and the `error` of its last run. Starting a running action
stops it first.

## What the package does not do

- There is no single test-harness object that registers codecs per topic,
  keeps table storage, and wires the queues, consumer and consumer-group
  stand-ins together; tests assemble those pieces themselves.
- There is no in-memory stand-in for `TopicManager`.
- No broker client, admin client, partition table or storage is included:
  `TopicManager` and `View` work only with objects supplied by the caller.
- There are no commands; the web front-ends are WSGI applications to be
  mounted in a server of your choice.

## Running the tests

```
pytest
```