"""Shared dataclasses used across provider and connection modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

Payload = bytes | str


class ProviderKind(str, Enum):
    """Backend technologies a connection profile can target."""

    IBMMQ = "ibmmq"
    KAFKA = "kafka"
    AWS_SQS = "awssqs"
    AZURE_SERVICE_BUS = "azureservicebus"
    MEMORY = "memory"


class DepthSentinel(Enum):
    """Marker returned when a queue depth cannot be determined."""

    UNKNOWN = "unknown"

    def __repr__(self) -> str:
        return "UNKNOWN_DEPTH"


UNKNOWN_DEPTH = DepthSentinel.UNKNOWN

QueueDepth = int | DepthSentinel


def _freeze(values: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of a connection profile."""

    id: str
    name: str
    kind: ProviderKind
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ProviderKind(self.kind))
        object.__setattr__(self, "params", _freeze(self.params))


@dataclass(frozen=True, slots=True)
class BrowseFilter:
    """Optional message selector applied while browsing."""

    message_id: str | None = None
    correlation_id: str | None = None

    def matches(self, message: "Message") -> bool:
        if self.message_id is not None and message.id != self.message_id:
            return False
        if self.correlation_id is not None and message.correlation_id != self.correlation_id:
            return False
        return True


@dataclass(frozen=True, slots=True)
class BrowseOptions:
    """Limit, logical start offset, and filter for a browse call."""

    limit: int = 10
    start_position: int = 0
    filter: BrowseFilter | None = None

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"Browse limit must be at least 1, got {self.limit}")
        if self.start_position < 0:
            raise ValueError(f"Browse start position cannot be negative, got {self.start_position}")

    @property
    def window(self) -> int:
        """Number of messages to read before slicing off the start offset."""

        return self.start_position + self.limit


@dataclass(frozen=True, slots=True)
class Message:
    """A message read from (or destined for) a queue or topic."""

    id: str
    payload: Payload
    correlation_id: str | None = None
    timestamp: datetime | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", _freeze(self.properties))

    @property
    def payload_bytes(self) -> bytes:
        if isinstance(self.payload, bytes):
            return self.payload
        return self.payload.encode("utf-8")

    @property
    def size(self) -> int:
        return len(self.payload_bytes)


@dataclass(frozen=True, slots=True)
class QueueInfo:
    """Queue summary shown in listings."""

    name: str
    depth: QueueDepth = UNKNOWN_DEPTH
    type: str | None = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class TopicInfo:
    """Topic summary shown in listings."""

    name: str
    topic_string: str
    type: str | None = None
    description: str | None = None
    status: str | None = None
    subscription_count: int | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionRule:
    """Filter rule attached to a topic subscription."""

    name: str
    filter_type: str
    filter: str | None = None
    action: str | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    """Topic subscription summary."""

    name: str
    topic_name: str
    message_count: int | None = None
    dead_letter_message_count: int | None = None
    status: str | None = None
    description: str | None = None
    rules: tuple[SubscriptionRule, ...] = ()


class ChannelStatus(str, Enum):
    INACTIVE = "Inactive"
    RUNNING = "Running"
    STARTING = "Starting"
    STOPPING = "Stopping"
    RETRYING = "Retrying"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    """Channel summary shown in listings."""

    name: str
    type: str | None = None
    connection_name: str | None = None
    status: ChannelStatus = ChannelStatus.UNKNOWN
    description: str | None = None


@dataclass(frozen=True, slots=True)
class QueueProperties:
    """Detailed queue attributes; backend-specific values live in ``extra``."""

    name: str
    depth: QueueDepth = UNKNOWN_DEPTH
    max_depth: int | None = None
    type: str | None = None
    description: str | None = None
    created_at: datetime | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", _freeze(self.extra))


@dataclass(frozen=True, slots=True)
class TopicProperties:
    """Detailed topic attributes; backend-specific values live in ``extra``."""

    name: str
    topic_string: str
    type: str | None = None
    description: str | None = None
    status: str | None = None
    created_at: datetime | None = None
    publish_count: int | None = None
    subscription_count: int | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", _freeze(self.extra))


@dataclass(frozen=True, slots=True)
class ChannelProperties:
    """Detailed channel attributes."""

    name: str
    type: str | None = None
    connection_name: str | None = None
    status: ChannelStatus = ChannelStatus.UNKNOWN
    description: str | None = None
    max_message_length: int | None = None
    heartbeat_interval: int | None = None
    batch_size: int | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", _freeze(self.extra))


class DeleteOutcome(str, Enum):
    """How a single delete was honoured by the backend."""

    DELETED = "deleted"
    CACHE_ONLY = "cache_only"


@dataclass(frozen=True, slots=True)
class DeleteReport:
    """Per-id result of a bulk delete."""

    deleted: tuple[str, ...] = ()
    retained: tuple[str, ...] = ()
    failed: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "failed", _freeze(self.failed))

    @property
    def succeeded(self) -> tuple[str, ...]:
        """Ids removed from the caller's view (durably or from the cache)."""

        return self.deleted + self.retained

    @property
    def ok(self) -> bool:
        return not self.failed


__all__ = [
    "BrowseFilter",
    "BrowseOptions",
    "ChannelInfo",
    "ChannelProperties",
    "ChannelStatus",
    "ConnectionProfile",
    "DeleteOutcome",
    "DeleteReport",
    "DepthSentinel",
    "Message",
    "Payload",
    "ProviderKind",
    "QueueDepth",
    "QueueInfo",
    "QueueProperties",
    "SubscriptionInfo",
    "SubscriptionRule",
    "TopicInfo",
    "TopicProperties",
    "UNKNOWN_DEPTH",
]
