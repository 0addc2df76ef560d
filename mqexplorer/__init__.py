"""Async core for exploring IBM MQ, Kafka, Amazon SQS and Azure Service Bus."""

__version__ = "0.1.0"

from .config import AppConfig, load_config
from .connections import ConnectionManager
from .events import ConnectionStateChanged, DepthChanged, EventBus, QueueUpdated
from .models import (
    UNKNOWN_DEPTH,
    BrowseFilter,
    BrowseOptions,
    ConnectionProfile,
    DeleteOutcome,
    DeleteReport,
    Message,
    ProviderKind,
)

__all__ = [
    "UNKNOWN_DEPTH",
    "AppConfig",
    "BrowseFilter",
    "BrowseOptions",
    "ConnectionManager",
    "ConnectionProfile",
    "ConnectionStateChanged",
    "DeleteOutcome",
    "DeleteReport",
    "DepthChanged",
    "EventBus",
    "Message",
    "ProviderKind",
    "QueueUpdated",
    "__version__",
    "load_config",
]
