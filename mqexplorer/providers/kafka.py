"""Kafka adapter: topics are treated as queues, browse uses a throwaway consumer group."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, RecordsToDelete
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel

from mqexplorer.models import (
    BrowseOptions,
    DeleteOutcome,
    Message,
    Payload,
    ProviderKind,
    QueueInfo,
    QueueProperties,
    TopicInfo,
    TopicProperties,
)

from .base import (
    PAYLOAD_TYPE_KEY,
    BaseProvider,
    DepthProbe,
    bounded,
    decode_payload,
    matches_filter,
    payload_type,
    release,
)
from .types import BackendError, BrowseTimeoutError, Capability, MessageNotFoundError

LOG = logging.getLogger(__name__)

CORRELATION_HEADER = "correlationId"
INTERNAL_PREFIX = "__"

Watermarks = dict[TopicPartition, tuple[int, int]]


class KafkaSasl(BaseModel):
    mechanism: str = "PLAIN"
    username: str
    password: SecretStr


class KafkaParams(BaseModel):
    """Bootstrap and security settings for a Kafka cluster."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    brokers: list[str] = Field(min_length=1)
    client_id: str = "mqexplorer"
    ssl: bool = False
    sasl: KafkaSasl | None = None
    request_timeout_ms: int = Field(default=30_000, ge=1)

    @field_validator("brokers", mode="before")
    @classmethod
    def _split_brokers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [broker.strip() for broker in value.split(",") if broker.strip()]
        return value

    def client_options(self) -> dict[str, Any]:
        if self.sasl is not None:
            protocol = "SASL_SSL" if self.ssl else "SASL_PLAINTEXT"
        else:
            protocol = "SSL" if self.ssl else "PLAINTEXT"
        options: dict[str, Any] = {
            "bootstrap_servers": ",".join(self.brokers),
            "client_id": self.client_id,
            "request_timeout_ms": self.request_timeout_ms,
            "security_protocol": protocol,
        }
        if self.ssl:
            options["ssl_context"] = create_ssl_context()
        if self.sasl is not None:
            options["sasl_mechanism"] = self.sasl.mechanism
            options["sasl_plain_username"] = self.sasl.username
            options["sasl_plain_password"] = self.sasl.password.get_secret_value()
        return options


class KafkaProvider(BaseProvider):
    """Adapter over an admin client, a producer and a group-less offsets consumer.

    Kafka offers no per-record delete: deleting a browsed message only removes
    it from the local cache and reports ``DeleteOutcome.CACHE_ONLY``.
    """

    kind = ProviderKind.KAFKA
    display_name = "Kafka"
    capabilities = frozenset({Capability.TOPICS, Capability.PUBLISH, Capability.TOPIC_PROPERTIES})
    params_model = KafkaParams

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._admin: AIOKafkaAdminClient | None = None
        self._producer: AIOKafkaProducer | None = None
        self._offsets: AIOKafkaConsumer | None = None
        self._client_options: dict[str, Any] = {}

    async def _open(self, params: KafkaParams) -> None:
        self._client_options = params.client_options()
        LOG.info("Connecting to Kafka brokers %s", self._client_options["bootstrap_servers"])
        self._admin = AIOKafkaAdminClient(**self._client_options)
        await self._admin.start()
        self._producer = AIOKafkaProducer(**self._client_options)
        await self._producer.start()
        self._offsets = AIOKafkaConsumer(group_id=None, enable_auto_commit=False, **self._client_options)
        await self._offsets.start()

    async def _close(self) -> None:
        offsets, self._offsets = self._offsets, None
        producer, self._producer = self._producer, None
        admin, self._admin = self._admin, None
        if offsets is not None:
            await release("Kafka offsets consumer", offsets.stop)
        if producer is not None:
            await release("Kafka producer", producer.stop)
        if admin is not None:
            await release("Kafka admin client", admin.close)

    # -- queues ----------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        names = await self._topic_names(filter)
        depths = await asyncio.gather(*(self.get_queue_depth(name) for name in names))
        return [
            QueueInfo(name=name, depth=depth, type="Topic", description=f"Kafka topic: {name}")
            for name, depth in zip(names, depths)
        ]

    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        """Read from the earliest offset, filtering before the start offset is applied.

        One deadline bounds the whole browse, offset lookup and consumer
        start included; whatever matched before it fired is returned.
        """

        wait = self._timeouts.browse_wait_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        try:
            watermarks = await bounded(self._watermarks(queue_name), wait, f"offset lookup for {queue_name}")
        except BrowseTimeoutError as exc:
            LOG.warning("Browse of %s gave up: %s", queue_name, exc)
            return []
        retained = sum(high - low for low, high in watermarks.values())
        if retained <= options.start_position:
            return []

        consumer = AIOKafkaConsumer(
            queue_name,
            group_id=f"{self._settings.consumer_group_prefix}-browse-{uuid4()}",
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            **self._client_options,
        )
        matched: list[Message] = []
        try:
            await bounded(
                self._consume(consumer, options, retained, deadline, matched),
                max(deadline - loop.time(), 0.0),
                f"browse of {queue_name}",
            )
        except BrowseTimeoutError:
            LOG.info("Browse window elapsed for %s with %d matching records", queue_name, len(matched))
        except KafkaError as exc:
            raise BackendError(f"Failed to browse topic {queue_name}: {exc}") from exc
        finally:
            await release(f"browse consumer for {queue_name}", consumer.stop)
        return matched[options.start_position : options.window]

    async def _consume(
        self,
        consumer: AIOKafkaConsumer,
        options: BrowseOptions,
        retained: int,
        deadline: float,
        matched: list[Message],
    ) -> None:
        loop = asyncio.get_running_loop()
        await consumer.start()
        seen = 0
        while len(matched) < options.window and seen < retained:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BrowseTimeoutError("browse window elapsed")
            batch = await consumer.getmany(
                timeout_ms=int(min(remaining, 1.0) * 1000),
                max_records=None if options.filter is not None else options.window - len(matched),
            )
            for partition_records in batch.values():
                for record in partition_records:
                    seen += 1
                    message = _to_message(record)
                    if options.filter is None or options.filter.matches(message):
                        matched.append(message)

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        producer = self._require_client(self._producer)
        value = payload.encode("utf-8") if isinstance(payload, str) else payload
        key = properties.get("key")
        headers = [(str(name), _header_bytes(header)) for name, header in (properties.get("headers") or {}).items()]
        if properties.get("correlation_id"):
            headers.append((CORRELATION_HEADER, _header_bytes(properties["correlation_id"])))
        headers.append((PAYLOAD_TYPE_KEY, payload_type(payload).encode("ascii")))
        try:
            await producer.send_and_wait(
                queue_name,
                value=value,
                key=_header_bytes(key) if key is not None else None,
                headers=headers,
                partition=properties.get("partition"),
            )
        except KafkaError as exc:
            raise BackendError(f"Failed to produce to topic {queue_name}: {exc}") from exc

    async def _clear(self, queue_name: str) -> None:
        admin = self._require_client(self._admin)
        watermarks = await self._watermarks(queue_name)
        targets = {
            partition: RecordsToDelete(before_offset=high)
            for partition, (low, high) in watermarks.items()
            if high > low
        }
        if not targets:
            return
        try:
            await admin.delete_records(targets, timeout_ms=int(self._timeouts.clear_wait_seconds * 1000))
        except KafkaError as exc:
            raise BackendError(f"Failed to delete records from topic {queue_name}: {exc}") from exc

    async def _delete(self, queue_name: str, message_id: str) -> DeleteOutcome:
        if not self._cache.contains(queue_name, message_id):
            raise MessageNotFoundError(f"Message {message_id} not found in topic {queue_name}")
        LOG.warning(
            "Kafka cannot delete record %s from %s; it was removed from the view but remains in the log",
            message_id,
            queue_name,
        )
        return DeleteOutcome.CACHE_ONLY

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        watermarks = await self._watermarks(queue_name)
        return QueueProperties(
            name=queue_name,
            depth=sum(high - low for low, high in watermarks.values()),
            type="Topic",
            description=f"Kafka topic: {queue_name}",
            extra={
                "partitions": len(watermarks),
                "partition_offsets": _partition_offsets(watermarks),
            },
        )

    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        async def _retained() -> int:
            watermarks = await self._watermarks(queue_name)
            return sum(high - low for low, high in watermarks.values())

        return (("partition offsets", _retained),)

    # -- topics ----------------------------------------------------------

    async def _list_topics(self, filter: str | None) -> Sequence[TopicInfo]:
        topics: list[TopicInfo] = []
        for name in await self._topic_names(filter):
            partitions = await self._partitions(name)
            topics.append(
                TopicInfo(
                    name=name,
                    topic_string=name,
                    type="Topic",
                    description=f"Kafka topic with {len(partitions)} partition(s)",
                    status="Active",
                )
            )
        return topics

    async def _publish(self, topic: str, payload: Payload, properties: dict[str, Any]) -> None:
        await self._put(topic, payload, properties)

    async def _topic_properties(self, topic: str) -> TopicProperties:
        watermarks = await self._watermarks(topic)
        return TopicProperties(
            name=topic,
            topic_string=topic,
            type="Topic",
            description=f"Kafka topic with {len(watermarks)} partition(s)",
            status="Active",
            extra={
                "partitions": len(watermarks),
                "message_count": sum(high - low for low, high in watermarks.values()),
                "partition_offsets": _partition_offsets(watermarks),
            },
        )

    # -- helpers ---------------------------------------------------------

    def _require_client(self, client: Any) -> Any:
        if client is None:
            raise BackendError("Kafka session is not open")
        return client

    async def _topic_names(self, filter: str | None) -> list[str]:
        admin = self._require_client(self._admin)
        try:
            names = await admin.list_topics()
        except KafkaError as exc:
            raise BackendError(f"Failed to list Kafka topics: {exc}") from exc
        return sorted(
            name
            for name in names
            if matches_filter(filter, name)
            and (self._settings.show_system_queues or not name.startswith(INTERNAL_PREFIX))
        )

    async def _partitions(self, topic: str) -> list[TopicPartition]:
        consumer = self._require_client(self._offsets)
        partitions = consumer.partitions_for_topic(topic)
        if partitions is None:
            known = await consumer.topics()
            if topic not in known:
                raise BackendError(f"Topic {topic} does not exist")
            partitions = consumer.partitions_for_topic(topic) or set()
        return [TopicPartition(topic, partition) for partition in sorted(partitions)]

    async def _watermarks(self, topic: str) -> Watermarks:
        consumer = self._require_client(self._offsets)
        partitions = await self._partitions(topic)
        if not partitions:
            return {}
        try:
            beginning = await consumer.beginning_offsets(partitions)
            end = await consumer.end_offsets(partitions)
        except KafkaError as exc:
            raise BackendError(f"Failed to fetch offsets for topic {topic}: {exc}") from exc
        return {partition: (beginning[partition], end[partition]) for partition in partitions}


def _to_message(record: Any) -> Message:
    headers = {name: decode_payload(value) for name, value in (record.headers or ()) if name != PAYLOAD_TYPE_KEY}
    declared = next((value for name, value in (record.headers or ()) if name == PAYLOAD_TYPE_KEY), None)
    correlation = headers.get(CORRELATION_HEADER)
    timestamp = (
        datetime.fromtimestamp(record.timestamp / 1000, tz=timezone.utc) if record.timestamp else None
    )
    return Message(
        id=f"{record.partition}:{record.offset}",
        payload=decode_payload(record.value, declared) if record.value is not None else b"",
        correlation_id=correlation if isinstance(correlation, str) else None,
        timestamp=timestamp,
        properties={
            "topic": record.topic,
            "partition": record.partition,
            "offset": record.offset,
            "key": decode_payload(record.key) if record.key is not None else None,
            "headers": headers,
        },
    )


def _header_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def _partition_offsets(watermarks: Watermarks) -> dict[int, dict[str, int]]:
    return {
        partition.partition: {"low": low, "high": high}
        for partition, (low, high) in watermarks.items()
    }


__all__ = ["CORRELATION_HEADER", "KafkaParams", "KafkaProvider", "KafkaSasl"]
