"""Provider contract primitives shared between adapters and the connection manager."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from mqexplorer.models import (
    BrowseOptions,
    DeleteOutcome,
    DeleteReport,
    Message,
    Payload,
    QueueDepth,
    QueueInfo,
    QueueProperties,
)


class Capability(str, Enum):
    """Optional operations an adapter may expose beyond the mandatory set."""

    TOPICS = "topics"
    PUBLISH = "publish"
    TOPIC_PROPERTIES = "topic_properties"
    SUBSCRIPTIONS = "subscriptions"
    SUBSCRIPTION_BROWSE = "subscription_browse"
    CHANNELS = "channels"
    CHANNEL_CONTROL = "channel_control"


class ConnectionState(str, Enum):
    """Lifecycle of a provider session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


@runtime_checkable
class Provider(Protocol):
    """Mandatory operations implemented by every backend adapter."""

    async def connect(self, params: Mapping[str, Any]) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def supports(self, capability: Capability) -> bool: ...

    async def list_queues(self, filter: str | None = None) -> Sequence[QueueInfo]: ...

    async def browse_messages(self, queue_name: str, options: BrowseOptions | None = None) -> Sequence[Message]: ...

    async def put_message(
        self,
        queue_name: str,
        payload: Payload,
        properties: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def clear_queue(self, queue_name: str) -> None: ...

    async def delete_message(self, queue_name: str, message_id: str) -> DeleteOutcome: ...

    async def delete_messages(self, queue_name: str, message_ids: Sequence[str]) -> DeleteReport: ...

    async def get_queue_properties(self, queue_name: str) -> QueueProperties: ...

    async def get_queue_depth(self, queue_name: str) -> QueueDepth: ...


class MQExplorerError(RuntimeError):
    """Base error for provider and connection failures."""


class NotConnectedError(MQExplorerError):
    """Raised when an operation runs against a provider without a session."""


class ProviderConnectionError(MQExplorerError):
    """Raised when connecting fails; the adapter has already rolled back."""


class UnsupportedOperationError(MQExplorerError):
    """Raised when a backend does not implement the requested operation."""


class MessageNotFoundError(MQExplorerError):
    """Raised when a delete target is absent from the cache or the backend."""


class BrowseTimeoutError(MQExplorerError):
    """Raised internally when a bounded wait elapsed without a result."""


class BackendError(MQExplorerError):
    """Wraps an error reported by a native client library."""


__all__ = [
    "BackendError",
    "BrowseTimeoutError",
    "Capability",
    "ConnectionState",
    "MQExplorerError",
    "MessageNotFoundError",
    "NotConnectedError",
    "Provider",
    "ProviderConnectionError",
    "UnsupportedOperationError",
]
