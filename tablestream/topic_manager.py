"""Creation and checking of stream and table topics on a Kafka cluster."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from time import monotonic, sleep
from typing import Any, Callable, Mapping, Optional

V0_10_0_0 = (0, 10, 0, 0)
V0_11_0_0 = (0, 11, 0, 0)

_CREATE_POLL_INTERVAL = 1.0


class MismatchBehavior(enum.IntEnum):
    """How a difference between a requested and an existing topic is treated."""

    IGNORE = 0
    WARN = 1
    FAIL = 2


class TopicNotFoundError(LookupError):
    """The requested topic does not exist on the cluster."""


@dataclass(frozen=True)
class ConfigEntry:
    """A single configuration value of a topic as reported by the cluster."""

    name: str
    value: str


@dataclass
class TopicDetail:
    """The settings a topic is created with."""

    num_partitions: int
    replication_factor: int
    config_entries: dict[str, str] = field(default_factory=dict)


@dataclass
class PartitionMetadata:
    """Metadata of one partition of a topic."""

    replicas: list[int] = field(default_factory=list)


@dataclass
class TopicMetadata:
    """Metadata of a topic and its partitions."""

    name: str
    partitions: list[PartitionMetadata] = field(default_factory=list)


@dataclass
class TopicManagerConfig:
    """Options used when creating table and stream topics.

    ``table_policy`` and ``stream_policy`` override the default cleanup
    policies ("compact" for tables, "delete" for streams) when not empty.
    ``create_topic_timeout`` is in seconds; 0 turns off waiting for a
    created topic to appear.
    """

    table_replication: int = 2
    table_policy: str = ""
    stream_replication: int = 2
    stream_retention: timedelta = timedelta(hours=1)
    stream_policy: str = ""
    create_topic_timeout: float = 10.0
    mismatch_behavior: MismatchBehavior = MismatchBehavior.IGNORE
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("tablestream.topic_manager")
    )

    def stream_cleanup_policy(self) -> str:
        return self.stream_policy or "delete"

    def table_cleanup_policy(self) -> str:
        return self.table_policy or "compact"


def _format_version(version: tuple) -> str:
    return "v" + ".".join(str(part) for part in version)


def check_broker(broker: Any, config: Any) -> None:
    """Open a connection to ``broker`` and make sure it is connected."""
    try:
        broker.open(config)
    except Exception as err:
        raise ConnectionError(f"error opening broker connection: {err}") from err
    try:
        connected = broker.connected()
    except Exception as err:
        raise ConnectionError(f"cannot connect to broker {broker.addr()}: {err}") from err
    if not connected:
        raise ConnectionError(f"cannot connect to broker {broker.addr()}: not connected")


class TopicManager:
    """Checks that topics exist and creates them where they don't."""

    def __init__(self, client: Any, admin: Any, config: TopicManagerConfig) -> None:
        self._client = client
        self._admin = admin
        self._config = config

    @property
    def config(self) -> TopicManagerConfig:
        return self._config

    def close(self) -> None:
        self._client.close()

    def partitions(self, topic: str) -> list[int]:
        """Return the partitions of ``topic``; raise TopicNotFoundError if absent."""
        # Refresh all metadata rather than the topic's alone, which would
        # create the topic on clusters with auto-creation enabled.
        try:
            self._client.refresh_metadata()
        except Exception as err:
            raise RuntimeError(f"error refreshing metadata {err}") from err
        if topic in self._client.topics():
            return list(self._client.partitions(topic))
        raise TopicNotFoundError(topic)

    def get_offset(self, topic: str, partition: int, time: int) -> int:
        return self._client.get_offset(topic, partition, time)

    def ensure_stream_exists(self, topic: str, npar: int) -> None:
        cfg = self._config
        retention_ms = cfg.stream_retention // timedelta(milliseconds=1)
        self._ensure_exists(
            topic,
            npar,
            cfg.stream_replication,
            {
                "cleanup.policy": cfg.stream_cleanup_policy(),
                "retention.ms": str(retention_ms),
            },
        )

    def ensure_table_exists(self, topic: str, npar: int) -> None:
        cfg = self._config
        self._ensure_exists(
            topic,
            npar,
            cfg.table_replication,
            {"cleanup.policy": cfg.table_cleanup_policy()},
        )

    def ensure_topic_exists(
        self, topic: str, npar: int, rfactor: int, config: Mapping[str, str]
    ) -> None:
        self._ensure_exists(topic, npar, rfactor, config)

    def _ensure_exists(
        self, topic: str, npar: int, rfactor: int, config: Mapping[str, str]
    ) -> None:
        try:
            partitions = self.partitions(topic)
        except TopicNotFoundError:
            partitions = []
        except Exception as err:
            raise RuntimeError(f"error checking topic: {err}") from err

        if not partitions:
            self._create_topic(topic, npar, rfactor, config)
            return

        if len(partitions) != npar:
            self._handle_config_mismatch(
                f"partition count mismatch for topic {topic}. "
                f"Need {npar}, but existing topic has {len(partitions)}"
            )
            return

        if not self._admin_supported():
            return

        cfg_map = self._topic_config_map(topic)
        for key, value in config.items():
            entry = cfg_map.get(key)
            if entry is None:
                self._handle_config_mismatch(
                    f"config for topic {topic} did not contain requested key {key}"
                )
                return
            if entry.value != value:
                self._handle_config_mismatch(
                    f"unexpected config value for topic {topic}. "
                    f"Expected {key}={value}. Got {key}={entry.value}"
                )
                return

        min_replicas = self._topic_min_replicas(topic)
        if min_replicas != rfactor:
            self._handle_config_mismatch(
                f"unexpected replication factor for topic {topic}. "
                f"Expected {rfactor}, got {min_replicas}"
            )

    def _create_topic(
        self, topic: str, npar: int, rfactor: int, config: Mapping[str, str]
    ) -> None:
        self._config.logger.debug(
            "creating topic %s with npar=%d, rfactor=%d, config=%r",
            topic, npar, rfactor, dict(config),
        )
        detail = TopicDetail(
            num_partitions=npar,
            replication_factor=rfactor,
            config_entries=dict(config),
        )
        try:
            self._admin.create_topic(topic, detail, False)
        except Exception as err:
            raise RuntimeError(
                f"error creating topic {topic}, npar={npar}, rfactor={rfactor}, "
                f"config={dict(config)!r}: {err}"
            ) from err
        self._wait_for_created(topic)

    def _wait_for_created(self, topic: str) -> None:
        timeout = self._config.create_topic_timeout
        if timeout == 0:
            return
        deadline = monotonic() + timeout
        while monotonic() < deadline:
            try:
                self.partitions(topic)
            except TopicNotFoundError:
                sleep(max(0.0, min(_CREATE_POLL_INTERVAL, deadline - monotonic())))
                continue
            except Exception as err:
                raise RuntimeError(f"error checking topic: {err}") from err
            return
        raise RuntimeError(f"waiting for topic {topic} to be created timed out")

    def _handle_config_mismatch(self, message: str) -> None:
        behavior = self._config.mismatch_behavior
        if behavior == MismatchBehavior.WARN:
            self._config.logger.warning("Warning: %s", message)
        elif behavior == MismatchBehavior.FAIL:
            raise RuntimeError(message)

    def _admin_supported(self) -> bool:
        return tuple(self._client.config().version) >= V0_11_0_0

    def _topic_config_map(self, topic: str) -> dict[str, ConfigEntry]:
        try:
            entries = self._admin.describe_config(topic)
        except Exception as err:
            raise RuntimeError(f"Error getting config for topic {topic}: {err}") from err
        return {entry.name: entry for entry in entries or ()}

    def _topic_min_replicas(self, topic: str) -> int:
        try:
            metas = self._admin.describe_topics([topic])
        except Exception as err:
            raise RuntimeError(f"Error describing topic {topic}: {err}") from err
        if metas is None or len(metas) != 1:
            raise RuntimeError(f"cannot find meta data for topic {topic}")
        replicas_min = 0
        for part in metas[0].partitions:
            count = len(part.replicas)
            if replicas_min == 0 or count < replicas_min:
                replicas_min = count
        return replicas_min


def new_topic_manager(
    client: Any,
    admin: Any,
    client_config: Any,
    config: Optional[TopicManagerConfig],
    check: Callable[[Any, Any], None] = check_broker,
) -> TopicManager:
    """Build a TopicManager after checking that the first broker is reachable."""
    if client_config is not None:
        version = tuple(client_config.version)
        if version < V0_10_0_0:
            raise RuntimeError(
                "the topic manager needs kafka version v0.10.0.0 or higher to "
                f"function. Version is {_format_version(version)}"
            )
    if client is None:
        raise ValueError("cannot create topic manager with nil client")
    if config is None:
        raise ValueError("cannot create topic manager with nil config")
    brokers = client.brokers()
    if not brokers:
        raise RuntimeError("no brokers active in current client")
    check(brokers[0], client_config)
    if admin is None:
        raise RuntimeError("error creating cluster admin: no admin given")
    return TopicManager(client, admin, config)