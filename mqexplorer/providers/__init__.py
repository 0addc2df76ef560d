"""Backend adapters and the contract they implement."""

from .base import BaseProvider
from .registry import ProviderLoadError, ProviderRegistry
from .types import (
    BackendError,
    BrowseTimeoutError,
    Capability,
    ConnectionState,
    MessageNotFoundError,
    MQExplorerError,
    NotConnectedError,
    Provider,
    ProviderConnectionError,
    UnsupportedOperationError,
)

__all__ = [
    "BackendError",
    "BaseProvider",
    "BrowseTimeoutError",
    "Capability",
    "ConnectionState",
    "MQExplorerError",
    "MessageNotFoundError",
    "NotConnectedError",
    "Provider",
    "ProviderConnectionError",
    "ProviderLoadError",
    "ProviderRegistry",
    "UnsupportedOperationError",
]
