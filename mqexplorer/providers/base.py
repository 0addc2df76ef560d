"""Shared adapter machinery: lifecycle, guards, cache, events, and depth fallback."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar, Mapping, Sequence, TypeVar

from pydantic import BaseModel

from mqexplorer.cache import MessageCache
from mqexplorer.config import AppConfig
from mqexplorer.events import ConnectionStateChanged, DepthChanged, Event, EventBus, QueueUpdated
from mqexplorer.models import (
    UNKNOWN_DEPTH,
    BrowseOptions,
    ChannelInfo,
    ChannelProperties,
    DeleteOutcome,
    DeleteReport,
    DepthSentinel,
    Message,
    Payload,
    ProviderKind,
    QueueDepth,
    QueueInfo,
    QueueProperties,
    SubscriptionInfo,
    TopicInfo,
    TopicProperties,
)

from .types import (
    BrowseTimeoutError,
    Capability,
    ConnectionState,
    MQExplorerError,
    NotConnectedError,
    ProviderConnectionError,
    UnsupportedOperationError,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")
DepthProbe = tuple[str, Callable[[], Awaitable[int | None]]]

# Header or application property recording whether a put payload was text or bytes.
PAYLOAD_TYPE_KEY = "mqexplorer-payload-type"
TEXT_PAYLOAD = "text"
BINARY_PAYLOAD = "binary"


async def bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await with a deadline, converting expiry into ``BrowseTimeoutError``."""

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        raise BrowseTimeoutError(f"{what} timed out after {timeout:g}s") from exc


async def release(label: str, closer: Callable[[], Awaitable[Any]] | None) -> None:
    """Close a native handle, logging rather than raising on failure."""

    if closer is None:
        return
    try:
        await closer()
    except Exception:
        LOG.warning("Failed to release %s", label, exc_info=True)


def matches_filter(substring: str | None, name: str) -> bool:
    if not substring:
        return True
    return substring.lower() in name.lower()


def payload_type(payload: Payload) -> str:
    return TEXT_PAYLOAD if isinstance(payload, str) else BINARY_PAYLOAD


def decode_payload(data: bytes, declared: str | bytes | None = None) -> Payload:
    """Restore a payload as text or bytes.

    ``declared`` is the type tag written at put time. Untagged payloads from
    other producers are returned as text when they are valid UTF-8.
    """

    if isinstance(declared, bytes):
        declared = declared.decode("ascii", errors="replace")
    if declared == BINARY_PAYLOAD:
        return data
    if declared == TEXT_PAYLOAD:
        return data.decode("utf-8", errors="replace")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data


class BaseProvider(ABC):
    """Template for backend adapters.

    Public methods enforce the contract (connection guard, capability gating,
    cache population and invalidation, event emission); subclasses implement
    the underscored hooks against their native client.
    """

    kind: ClassVar[ProviderKind]
    display_name: ClassVar[str] = "provider"
    capabilities: ClassVar[frozenset[Capability]] = frozenset()
    params_model: ClassVar[type[BaseModel] | None] = None
    supports_message_delete: ClassVar[bool] = True

    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        events: EventBus | None = None,
        profile_id: str | None = None,
    ) -> None:
        config = config or AppConfig()
        self._timeouts = config.timeouts
        self._settings = config.providers
        self._events = events
        self._profile_id = profile_id
        self._cache = MessageCache()
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def cache(self) -> MessageCache:
        return self._cache

    @property
    def profile_id(self) -> str | None:
        return self._profile_id

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    # -- lifecycle -------------------------------------------------------

    async def connect(self, params: Mapping[str, Any]) -> None:
        """Open every sub-resource of the session or roll all of them back."""

        if self.is_connected():
            LOG.debug("Already connected", extra={"provider": self.display_name})
            return
        self._set_state(ConnectionState.CONNECTING)
        LOG.info("Connecting to %s", self.display_name, extra={"profile": self._profile_id})
        try:
            parsed = self._parse_params(params)
            await self._open(parsed)
        except Exception as exc:
            LOG.error("Connection to %s failed: %s", self.display_name, exc)
            await release(f"{self.display_name} session", self._close)
            self._set_state(ConnectionState.FAILED)
            if isinstance(exc, ProviderConnectionError):
                raise
            raise ProviderConnectionError(f"Failed to connect to {self.display_name}: {exc}") from exc
        self._set_state(ConnectionState.CONNECTED)
        LOG.info("Connected to %s", self.display_name, extra={"profile": self._profile_id})

    async def disconnect(self) -> None:
        """Tear the session down; safe to call repeatedly."""

        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self._cache.clear()
            return
        self._set_state(ConnectionState.DISCONNECTING)
        await release(f"{self.display_name} session", self._close)
        self._cache.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        LOG.info("Disconnected from %s", self.display_name, extra={"profile": self._profile_id})

    # -- mandatory operations -------------------------------------------

    async def list_queues(self, filter: str | None = None) -> list[QueueInfo]:
        self._require_connection()
        queues = list(await self._list_queues(filter))
        LOG.debug("Listed %d queues", len(queues), extra={"provider": self.display_name})
        return queues

    async def browse_messages(self, queue_name: str, options: BrowseOptions | None = None) -> list[Message]:
        """Non-destructively read messages and record them in the cache."""

        self._require_connection()
        options = options or BrowseOptions(limit=self._settings.default_browse_limit)
        messages = list(await self._browse(queue_name, options))
        self._cache.store(queue_name, messages)
        LOG.info("Browsed %d messages from %s", len(messages), queue_name, extra={"provider": self.display_name})
        return messages

    async def put_message(
        self,
        queue_name: str,
        payload: Payload,
        properties: Mapping[str, Any] | None = None,
    ) -> None:
        self._require_connection()
        await self._put(queue_name, payload, dict(properties or {}))
        LOG.info("Put message to %s", queue_name, extra={"provider": self.display_name})
        await self._after_mutation(queue_name)

    async def clear_queue(self, queue_name: str) -> None:
        self._require_connection()
        try:
            await self._clear(queue_name)
        finally:
            self._cache.invalidate(queue_name)
        LOG.info("Cleared %s", queue_name, extra={"provider": self.display_name})
        await self._after_mutation(queue_name)

    async def delete_message(self, queue_name: str, message_id: str) -> DeleteOutcome:
        self._require_connection()
        self._require_message_delete()
        outcome = await self._delete(queue_name, message_id)
        self._cache.evict(queue_name, message_id)
        LOG.info(
            "Deleted message %s from %s (%s)",
            message_id,
            queue_name,
            outcome.value,
            extra={"provider": self.display_name},
        )
        await self._after_mutation(queue_name)
        return outcome

    async def delete_messages(self, queue_name: str, message_ids: Sequence[str]) -> DeleteReport:
        """Delete each id independently and report per-id results."""

        self._require_connection()
        self._require_message_delete()
        report = await self._delete_many(queue_name, list(message_ids))
        for message_id in report.succeeded:
            self._cache.evict(queue_name, message_id)
        if report.failed:
            LOG.warning(
                "Failed to delete %d of %d messages from %s",
                len(report.failed),
                len(message_ids),
                queue_name,
                extra={"provider": self.display_name},
            )
        if report.succeeded:
            await self._after_mutation(queue_name)
        return report

    async def get_queue_properties(self, queue_name: str) -> QueueProperties:
        self._require_connection()
        return await self._queue_properties(queue_name)

    async def get_queue_depth(self, queue_name: str) -> QueueDepth:
        """Walk the depth probes in order; never raises."""

        if not self.is_connected():
            LOG.warning("Depth requested while disconnected", extra={"queue": queue_name})
            return UNKNOWN_DEPTH
        for label, probe in self._depth_probes(queue_name):
            try:
                depth = await asyncio.wait_for(probe(), self._timeouts.inquiry_seconds)
            except TimeoutError:
                LOG.warning("Depth inquiry '%s' timed out for %s", label, queue_name)
                continue
            except Exception as exc:
                LOG.warning("Depth inquiry '%s' failed for %s: %s", label, queue_name, exc)
                continue
            if depth is not None and not isinstance(depth, DepthSentinel):
                return int(depth)
        return UNKNOWN_DEPTH

    # -- capability-gated operations -------------------------------------

    async def list_topics(self, filter: str | None = None) -> list[TopicInfo]:
        self._require(Capability.TOPICS)
        self._require_connection()
        return list(await self._list_topics(filter))

    async def publish_message(
        self,
        topic: str,
        payload: Payload,
        properties: Mapping[str, Any] | None = None,
    ) -> None:
        self._require(Capability.PUBLISH)
        self._require_connection()
        await self._publish(topic, payload, dict(properties or {}))
        LOG.info("Published message to %s", topic, extra={"provider": self.display_name})

    async def get_topic_properties(self, topic: str) -> TopicProperties:
        self._require(Capability.TOPIC_PROPERTIES)
        self._require_connection()
        return await self._topic_properties(topic)

    async def list_subscriptions(self, topic: str) -> list[SubscriptionInfo]:
        self._require(Capability.SUBSCRIPTIONS)
        self._require_connection()
        return list(await self._list_subscriptions(topic))

    async def get_subscription_info(self, topic: str, subscription: str) -> SubscriptionInfo | None:
        self._require(Capability.SUBSCRIPTIONS)
        self._require_connection()
        for info in await self._list_subscriptions(topic):
            if info.name == subscription:
                return info
        return None

    async def browse_subscription_messages(
        self,
        topic: str,
        subscription: str,
        options: BrowseOptions | None = None,
    ) -> list[Message]:
        self._require(Capability.SUBSCRIPTION_BROWSE)
        self._require_connection()
        options = options or BrowseOptions(limit=self._settings.default_browse_limit)
        return list(await self._browse_subscription(topic, subscription, options))

    async def list_channels(self, filter: str | None = None) -> list[ChannelInfo]:
        self._require(Capability.CHANNELS)
        self._require_connection()
        return list(await self._list_channels(filter))

    async def get_channel_properties(self, channel: str) -> ChannelProperties:
        self._require(Capability.CHANNELS)
        self._require_connection()
        return await self._channel_properties(channel)

    async def start_channel(self, channel: str) -> None:
        self._require(Capability.CHANNEL_CONTROL)
        self._require_connection()
        await self._start_channel(channel)
        LOG.info("Started channel %s", channel, extra={"provider": self.display_name})

    async def stop_channel(self, channel: str) -> None:
        self._require(Capability.CHANNEL_CONTROL)
        self._require_connection()
        await self._stop_channel(channel)
        LOG.info("Stopped channel %s", channel, extra={"provider": self.display_name})

    # -- hooks -----------------------------------------------------------

    @abstractmethod
    async def _open(self, params: Any) -> None:
        """Create every native handle the session needs."""

    @abstractmethod
    async def _close(self) -> None:
        """Release whatever handles exist; must tolerate a partial session."""

    @abstractmethod
    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]: ...

    @abstractmethod
    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        """Return up to ``limit`` messages matching ``options.filter``.

        The filter is applied before ``start_position`` is skipped, so the
        offset counts matching messages only.
        """

    @abstractmethod
    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _clear(self, queue_name: str) -> None: ...

    @abstractmethod
    async def _queue_properties(self, queue_name: str) -> QueueProperties: ...

    @abstractmethod
    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        """Depth inquiries to try in order, most structured first."""

    async def _delete(self, queue_name: str, message_id: str) -> DeleteOutcome:
        raise UnsupportedOperationError(f"{self.display_name} cannot delete individual messages")

    async def _delete_many(self, queue_name: str, message_ids: list[str]) -> DeleteReport:
        deleted: list[str] = []
        retained: list[str] = []
        failed: dict[str, str] = {}
        for message_id in message_ids:
            try:
                outcome = await self._delete(queue_name, message_id)
            except MQExplorerError as exc:
                failed[message_id] = str(exc)
                continue
            except Exception as exc:
                failed[message_id] = f"{type(exc).__name__}: {exc}"
                continue
            if outcome is DeleteOutcome.CACHE_ONLY:
                retained.append(message_id)
            else:
                deleted.append(message_id)
        return DeleteReport(deleted=tuple(deleted), retained=tuple(retained), failed=failed)

    async def _list_topics(self, filter: str | None) -> Sequence[TopicInfo]:
        raise self._unsupported(Capability.TOPICS)

    async def _publish(self, topic: str, payload: Payload, properties: dict[str, Any]) -> None:
        raise self._unsupported(Capability.PUBLISH)

    async def _topic_properties(self, topic: str) -> TopicProperties:
        raise self._unsupported(Capability.TOPIC_PROPERTIES)

    async def _list_subscriptions(self, topic: str) -> Sequence[SubscriptionInfo]:
        raise self._unsupported(Capability.SUBSCRIPTIONS)

    async def _browse_subscription(
        self, topic: str, subscription: str, options: BrowseOptions
    ) -> Sequence[Message]:
        raise self._unsupported(Capability.SUBSCRIPTION_BROWSE)

    async def _list_channels(self, filter: str | None) -> Sequence[ChannelInfo]:
        raise self._unsupported(Capability.CHANNELS)

    async def _channel_properties(self, channel: str) -> ChannelProperties:
        raise self._unsupported(Capability.CHANNELS)

    async def _start_channel(self, channel: str) -> None:
        raise self._unsupported(Capability.CHANNEL_CONTROL)

    async def _stop_channel(self, channel: str) -> None:
        raise self._unsupported(Capability.CHANNEL_CONTROL)

    # -- helpers ---------------------------------------------------------

    def _parse_params(self, params: Mapping[str, Any]) -> Any:
        if self.params_model is None:
            return dict(params)
        return self.params_model.model_validate(dict(params))

    def _require_connection(self) -> None:
        if not self.is_connected():
            raise NotConnectedError(f"Not connected to {self.display_name}")

    def _require(self, capability: Capability) -> None:
        if not self.supports(capability):
            raise self._unsupported(capability)

    def _require_message_delete(self) -> None:
        if not self.supports_message_delete:
            raise UnsupportedOperationError(f"{self.display_name} cannot delete individual messages")

    def _unsupported(self, capability: Capability) -> UnsupportedOperationError:
        return UnsupportedOperationError(f"{self.display_name} does not support {capability.value}")

    def _emit(self, event: Event) -> None:
        if self._events is not None:
            self._events.emit(event)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self._emit(ConnectionStateChanged(self._profile_id, state))

    async def _after_mutation(self, queue_name: str) -> None:
        self._emit(QueueUpdated(self._profile_id, queue_name))
        if self._events is None or not self._events.listener_count:
            return
        depth = await self.get_queue_depth(queue_name)
        if depth is not UNKNOWN_DEPTH:
            self._emit(DepthChanged(self._profile_id, queue_name, depth))


__all__ = [
    "BINARY_PAYLOAD",
    "PAYLOAD_TYPE_KEY",
    "TEXT_PAYLOAD",
    "BaseProvider",
    "DepthProbe",
    "bounded",
    "decode_payload",
    "matches_filter",
    "payload_type",
    "release",
]
