"""IBM MQ adapter: browse cursors, syncpoint puts, and PCF administration.

pymqi is a blocking client, so every native call runs in a worker thread and
is raced against a timeout where the protocol calls for one. The pymqi calls
themselves live in :mod:`mqexplorer.providers.ibmmq_native`; this module only
orchestrates them so it can be exercised without the MQ client libraries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from mqexplorer.models import (
    UNKNOWN_DEPTH,
    BrowseOptions,
    ChannelInfo,
    ChannelProperties,
    ChannelStatus,
    Message,
    Payload,
    ProviderKind,
    QueueInfo,
    QueueProperties,
    TopicInfo,
    TopicProperties,
)

from .base import BaseProvider, DepthProbe, bounded, matches_filter, release
from .types import BackendError, BrowseTimeoutError, Capability, MQExplorerError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_PREFIX = "SYSTEM."
MQ_ID_LENGTH = 24
FORMAT_STRING = "MQSTR"
FORMAT_NONE = ""


class IbmMqParams(BaseModel):
    """Client-channel connection parameters for a queue manager."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queue_manager: str
    host: str = "localhost"
    port: int = Field(default=1414, ge=1, le=65535)
    channel: str = "DEV.APP.SVRCONN"
    username: str | None = None
    password: SecretStr | None = None
    use_tls: bool = False
    cipher_spec: str | None = None
    key_repository: str | None = None
    max_message_length: int = Field(default=4 * 1024 * 1024, ge=1)


class QueueMode(str, Enum):
    BROWSE = "browse"
    OUTPUT = "output"
    INPUT = "input"
    INQUIRE = "inquire"


class MessageFormatError(BackendError):
    """The message could not be returned intact (truncation or conversion)."""


@dataclass(frozen=True, slots=True)
class NativeMessage:
    """Message descriptor fields plus payload as returned by a get."""

    msg_id: bytes
    correl_id: bytes
    payload: bytes
    format: str = FORMAT_NONE
    put_date: str = ""
    put_time: str = ""
    persistence: int | None = None
    priority: int | None = None
    put_application: str | None = None
    reply_to_queue: str | None = None
    backout_count: int | None = None
    user_identifier: str | None = None
    message_type: int | None = None
    expiry: int | None = None
    encoding: int | None = None
    ccsid: int | None = None


@dataclass(frozen=True, slots=True)
class PutDescriptor:
    """Message descriptor values for a put or publish."""

    body: bytes
    format: str = FORMAT_NONE
    priority: int | None = None
    persistence: int | None = None
    correl_id: bytes | None = None
    reply_to_queue: str | None = None
    expiry: int | None = None
    message_type: int | None = None


@dataclass(frozen=True, slots=True)
class QueueRecord:
    name: str
    type: str | None = None
    depth: int | None = None
    max_depth: int | None = None
    description: str | None = None
    created_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TopicRecord:
    name: str
    topic_string: str
    type: str | None = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ChannelRecord:
    name: str
    type: str | None = None
    connection_name: str | None = None
    description: str | None = None
    max_message_length: int | None = None
    heartbeat_interval: int | None = None
    batch_size: int | None = None


class IbmMqSession(Protocol):
    """Blocking operations against one queue manager connection."""

    def connect(self, params: IbmMqParams) -> None: ...

    def disconnect(self) -> None: ...

    def open_command_executor(self, wait_seconds: float) -> None: ...

    def close_command_executor(self) -> None: ...

    def open_queue(self, name: str, mode: QueueMode) -> Any: ...

    def close_queue(self, handle: Any) -> None: ...

    def browse(self, handle: Any, first: bool, match_id: bytes | None) -> NativeMessage | None: ...

    def get_destructive(self, handle: Any) -> bool: ...

    def put(self, handle: Any, descriptor: PutDescriptor, syncpoint: bool) -> bytes: ...

    def publish(self, topic_string: str, descriptor: PutDescriptor) -> None: ...

    def commit(self) -> None: ...

    def backout(self) -> None: ...

    def inquire_depth(self, name: str) -> int: ...

    def inquire_queue(self, name: str) -> QueueRecord: ...

    def pcf_inquire_queues(self, pattern: str) -> list[QueueRecord]: ...

    def pcf_queue_depth(self, name: str) -> int | None: ...

    def pcf_clear_queue(self, name: str) -> None: ...

    def pcf_inquire_topics(self, pattern: str) -> list[TopicRecord]: ...

    def pcf_topic_status(self, topic_string: str) -> tuple[int | None, int | None]: ...

    def pcf_inquire_channels(self, pattern: str) -> list[ChannelRecord]: ...

    def pcf_channel_status(self, name: str) -> ChannelStatus: ...

    def pcf_start_channel(self, name: str) -> None: ...

    def pcf_stop_channel(self, name: str) -> None: ...


SessionFactory = Callable[[], IbmMqSession]


def _default_session_factory() -> IbmMqSession:
    from .ibmmq_native import PymqiSession

    return PymqiSession()


class IbmMqProvider(BaseProvider):
    """Adapter for a queue manager reached over a client channel."""

    kind = ProviderKind.IBMMQ
    display_name = "IBM MQ"
    capabilities = frozenset(
        {
            Capability.TOPICS,
            Capability.PUBLISH,
            Capability.TOPIC_PROPERTIES,
            Capability.CHANNELS,
            Capability.CHANNEL_CONTROL,
        }
    )
    params_model = IbmMqParams
    supports_message_delete = False

    def __init__(self, *, session_factory: SessionFactory | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory or _default_session_factory
        self._session: IbmMqSession | None = None

    async def _call(self, func: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        call = asyncio.to_thread(func, *args)
        if timeout is None:
            return await call
        return await bounded(call, timeout, getattr(func, "__name__", "MQ call"))

    # -- lifecycle -------------------------------------------------------

    async def _open(self, params: IbmMqParams) -> None:
        session = self._session_factory()
        self._session = session
        LOG.info(
            "Connecting to queue manager %s at %s(%s) via %s",
            params.queue_manager,
            params.host,
            params.port,
            params.channel,
        )
        await self._call(session.connect, params)
        await self._call(session.open_command_executor, self._timeouts.inquiry_seconds)

    async def _close(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        await release("PCF command executor", lambda: self._call(session.close_command_executor))
        await release("queue manager connection", lambda: self._call(session.disconnect))

    def _active_session(self) -> IbmMqSession:
        if self._session is None:
            raise BackendError("IBM MQ session is not open")
        return self._session

    # -- queues ----------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        session = self._active_session()
        records = await self._call(session.pcf_inquire_queues, "*")
        include_system = self._settings.show_system_queues or (
            filter is not None and filter.upper().startswith(SYSTEM_PREFIX)
        )
        queues = [
            QueueInfo(
                name=record.name,
                depth=record.depth if record.depth is not None else UNKNOWN_DEPTH,
                type=record.type,
                description=record.description,
            )
            for record in records
            if matches_filter(filter, record.name)
            and (include_system or not record.name.startswith(SYSTEM_PREFIX))
        ]
        queues.sort(key=lambda queue: queue.name)
        return queues

    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        session = self._active_session()
        match_id = _match_id(options)
        if options.filter is not None and options.filter.message_id is not None and match_id is None:
            return []
        handle = await self._call(session.open_queue, queue_name, QueueMode.BROWSE)
        messages: list[Message] = []
        position = 0
        first = True
        try:
            while len(messages) < options.limit:
                try:
                    raw = await self._call(
                        session.browse,
                        handle,
                        first,
                        match_id,
                        timeout=self._timeouts.browse_step_seconds,
                    )
                except BrowseTimeoutError:
                    LOG.warning("Browse of %s stalled after %d messages", queue_name, len(messages))
                    break
                except MessageFormatError as exc:
                    LOG.warning("Stopping browse of %s on unreadable message: %s", queue_name, exc)
                    break
                first = False
                if raw is None:
                    break
                message = _to_message(raw)
                if options.filter is not None and not options.filter.matches(message):
                    continue
                position += 1
                if position <= options.start_position:
                    continue
                messages.append(message)
        finally:
            await release(f"browse handle for {queue_name}", lambda: self._call(session.close_queue, handle))
        return messages

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        """Write under syncpoint and commit; back out on any failure."""

        session = self._active_session()
        descriptor = build_descriptor(payload, properties)
        handle = await self._call(session.open_queue, queue_name, QueueMode.OUTPUT)
        try:
            await self._call(session.put, handle, descriptor, True)
            await self._call(session.commit)
        except Exception as exc:
            LOG.error("Put to %s failed, backing out: %s", queue_name, exc)
            await release(f"syncpoint on {queue_name}", lambda: self._call(session.backout))
            if isinstance(exc, MQExplorerError):
                raise
            raise BackendError(f"Failed to put message to {queue_name}: {exc}") from exc
        finally:
            await release(f"output handle for {queue_name}", lambda: self._call(session.close_queue, handle))

        if self._settings.verify_depth_after_put:
            depth = await self.get_queue_depth(queue_name)
            if depth == 0:
                LOG.warning(
                    "Queue %s reports depth 0 after commit; the message may already have been consumed",
                    queue_name,
                )

    async def _clear(self, queue_name: str) -> None:
        session = self._active_session()
        try:
            await self._call(session.pcf_clear_queue, queue_name, timeout=self._timeouts.inquiry_seconds)
            return
        except Exception as exc:
            LOG.warning("PCF clear of %s failed, draining instead: %s", queue_name, exc)
        handle = await self._call(session.open_queue, queue_name, QueueMode.INPUT)
        removed = 0
        try:
            while await self._call(session.get_destructive, handle, timeout=self._timeouts.clear_wait_seconds):
                removed += 1
        finally:
            await release(f"input handle for {queue_name}", lambda: self._call(session.close_queue, handle))
        LOG.info("Drained %d messages from %s", removed, queue_name)

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        session = self._active_session()
        record: QueueRecord | None = None
        try:
            records = await self._call(
                session.pcf_inquire_queues,
                queue_name,
                timeout=self._timeouts.inquiry_seconds,
            )
            record = next((item for item in records if item.name == queue_name), None)
        except Exception as exc:
            LOG.warning("PCF inquiry for %s failed, using direct inquiry: %s", queue_name, exc)
        if record is None:
            record = await self._call(session.inquire_queue, queue_name, timeout=self._timeouts.inquiry_seconds)
        return QueueProperties(
            name=record.name,
            depth=record.depth if record.depth is not None else UNKNOWN_DEPTH,
            max_depth=record.max_depth,
            type=record.type,
            description=record.description,
            created_at=record.created_at,
            extra=record.extra,
        )

    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        session = self._active_session()

        async def _pcf() -> int | None:
            return await self._call(session.pcf_queue_depth, queue_name)

        async def _direct() -> int | None:
            return await self._call(session.inquire_depth, queue_name)

        return (("PCF INQUIRE_Q", _pcf), ("MQINQ", _direct))

    # -- topics ----------------------------------------------------------

    async def _list_topics(self, filter: str | None) -> Sequence[TopicInfo]:
        session = self._active_session()
        records = await self._call(session.pcf_inquire_topics, "*")
        return [
            TopicInfo(
                name=record.name,
                topic_string=record.topic_string,
                type=record.type,
                description=record.description,
                status="Available",
            )
            for record in sorted(records, key=lambda item: item.name)
            if matches_filter(filter, record.name)
            and (self._settings.show_system_queues or not record.name.startswith(SYSTEM_PREFIX))
        ]

    async def _publish(self, topic: str, payload: Payload, properties: dict[str, Any]) -> None:
        session = self._active_session()
        await self._call(session.publish, topic, build_descriptor(payload, properties))

    async def _topic_properties(self, topic: str) -> TopicProperties:
        session = self._active_session()
        records = await self._call(session.pcf_inquire_topics, topic, timeout=self._timeouts.inquiry_seconds)
        record = next((item for item in records if item.name == topic), None)
        if record is None:
            raise BackendError(f"Topic {topic} not found")
        try:
            publishers, subscribers = await self._call(
                session.pcf_topic_status,
                record.topic_string,
                timeout=self._timeouts.inquiry_seconds,
            )
        except Exception as exc:
            LOG.warning("Topic status for %s unavailable: %s", topic, exc)
            publishers, subscribers = None, None
        return TopicProperties(
            name=record.name,
            topic_string=record.topic_string,
            type=record.type,
            description=record.description,
            status="Available",
            publish_count=publishers,
            subscription_count=subscribers,
        )

    # -- channels --------------------------------------------------------

    async def _list_channels(self, filter: str | None) -> Sequence[ChannelInfo]:
        session = self._active_session()
        records = await self._call(session.pcf_inquire_channels, "*")
        channels: list[ChannelInfo] = []
        for record in sorted(records, key=lambda item: item.name):
            if not matches_filter(filter, record.name):
                continue
            if not self._settings.show_system_queues and record.name.startswith(SYSTEM_PREFIX):
                continue
            channels.append(
                ChannelInfo(
                    name=record.name,
                    type=record.type,
                    connection_name=record.connection_name,
                    status=await self._channel_status(session, record.name),
                    description=record.description,
                )
            )
        return channels

    async def _channel_properties(self, channel: str) -> ChannelProperties:
        session = self._active_session()
        records = await self._call(session.pcf_inquire_channels, channel, timeout=self._timeouts.inquiry_seconds)
        record = next((item for item in records if item.name == channel), None)
        if record is None:
            raise BackendError(f"Channel {channel} not found")
        return ChannelProperties(
            name=record.name,
            type=record.type,
            connection_name=record.connection_name,
            status=await self._channel_status(session, record.name),
            description=record.description,
            max_message_length=record.max_message_length,
            heartbeat_interval=record.heartbeat_interval,
            batch_size=record.batch_size,
        )

    async def _start_channel(self, channel: str) -> None:
        session = self._active_session()
        await self._call(session.pcf_start_channel, channel, timeout=self._timeouts.inquiry_seconds)

    async def _stop_channel(self, channel: str) -> None:
        session = self._active_session()
        await self._call(session.pcf_stop_channel, channel, timeout=self._timeouts.inquiry_seconds)

    async def _channel_status(self, session: IbmMqSession, name: str) -> ChannelStatus:
        try:
            return await self._call(session.pcf_channel_status, name, timeout=self._timeouts.inquiry_seconds)
        except Exception as exc:
            LOG.debug("Channel status for %s unavailable: %s", name, exc)
            return ChannelStatus.UNKNOWN


def build_descriptor(payload: Payload, properties: dict[str, Any]) -> PutDescriptor:
    """Translate a property bag into message descriptor values."""

    if isinstance(payload, str):
        body = payload.encode("utf-8")
        default_format = FORMAT_STRING
    else:
        body = payload
        default_format = FORMAT_NONE
    correlation = properties.get("correlation_id")
    return PutDescriptor(
        body=body,
        format=str(properties.get("format", default_format)),
        priority=_optional_int(properties.get("priority")),
        persistence=_optional_int(properties.get("persistence")),
        correl_id=encode_mq_id(correlation) if correlation else None,
        reply_to_queue=properties.get("reply_to_queue"),
        expiry=_optional_int(properties.get("expiry")),
        message_type=_optional_int(properties.get("message_type")),
    )


def encode_mq_id(value: str | bytes) -> bytes:
    """Pack an id given as hex or text into the fixed 24-byte MQ field."""

    if isinstance(value, bytes):
        raw = value
    else:
        try:
            raw = bytes.fromhex(value)
        except ValueError:
            raw = value.encode("utf-8")
    return raw[:MQ_ID_LENGTH].ljust(MQ_ID_LENGTH, b"\x00")


def parse_put_timestamp(put_date: str, put_time: str) -> datetime | None:
    """Combine MQMD PutDate (YYYYMMDD) and PutTime (HHMMSSTH) in UTC."""

    date = put_date.strip()
    clock = put_time.strip()
    if len(date) != 8 or len(clock) < 6:
        return None
    try:
        stamp = datetime.strptime(date + clock[:6], "%Y%m%d%H%M%S")
    except ValueError:
        return None
    hundredths = clock[6:8]
    micro = int(hundredths) * 10_000 if hundredths.isdigit() else 0
    return stamp.replace(microsecond=micro, tzinfo=timezone.utc)


def _to_message(raw: NativeMessage) -> Message:
    is_text = raw.format.strip() == FORMAT_STRING
    payload: Payload = raw.payload.decode("utf-8", errors="replace") if is_text else raw.payload
    correl = raw.correl_id.hex() if raw.correl_id.strip(b"\x00") else None
    return Message(
        id=raw.msg_id.hex(),
        payload=payload,
        correlation_id=correl,
        timestamp=parse_put_timestamp(raw.put_date, raw.put_time),
        properties={
            "format": raw.format.strip(),
            "persistence": raw.persistence,
            "priority": raw.priority,
            "put_application": raw.put_application,
            "reply_to_queue": raw.reply_to_queue,
            "backout_count": raw.backout_count,
            "user_identifier": raw.user_identifier,
            "message_type": raw.message_type,
            "expiry": raw.expiry,
            "encoding": raw.encoding,
            "ccsid": raw.ccsid,
        },
    )


def _match_id(options: BrowseOptions) -> bytes | None:
    if options.filter is None or options.filter.message_id is None:
        return None
    try:
        return bytes.fromhex(options.filter.message_id)
    except ValueError:
        return None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


__all__ = [
    "ChannelRecord",
    "IbmMqParams",
    "IbmMqProvider",
    "IbmMqSession",
    "MessageFormatError",
    "NativeMessage",
    "PutDescriptor",
    "QueueMode",
    "QueueRecord",
    "TopicRecord",
    "build_descriptor",
    "encode_mq_id",
    "parse_put_timestamp",
]
