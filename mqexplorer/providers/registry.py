"""Resolve provider kinds to adapter classes via built-ins and entry points."""

from __future__ import annotations

import importlib.metadata as metadata
import logging
from typing import Any, Callable, Mapping

from mqexplorer.models import ProviderKind

from .base import BaseProvider
from .types import MQExplorerError

LOG = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "mqexplorer.providers"

BUILTIN_PROVIDERS: Mapping[str, str] = {
    ProviderKind.IBMMQ.value: "mqexplorer.providers.ibmmq:IbmMqProvider",
    ProviderKind.KAFKA.value: "mqexplorer.providers.kafka:KafkaProvider",
    ProviderKind.AWS_SQS.value: "mqexplorer.providers.sqs:SqsProvider",
    ProviderKind.AZURE_SERVICE_BUS.value: "mqexplorer.providers.servicebus:ServiceBusProvider",
    ProviderKind.MEMORY.value: "mqexplorer.providers.memory:MemoryProvider",
}

ProviderFactory = Callable[..., BaseProvider]


class ProviderLoadError(MQExplorerError):
    """Raised when no adapter can be loaded for a provider kind."""


def _kind_key(kind: ProviderKind | str) -> str:
    return kind.value if isinstance(kind, ProviderKind) else str(kind)


class ProviderRegistry:
    """Lazily imports adapters so unused backends never load their client libraries.

    Entry points published under ``mqexplorer.providers`` replace the built-in
    adapter for the kind they are named after.
    """

    def __init__(
        self,
        *,
        entry_point_group: str = ENTRY_POINT_GROUP,
        builtins: Mapping[str, str] | None = None,
        factories: Mapping[ProviderKind | str, ProviderFactory] | None = None,
    ) -> None:
        self._entry_point_group = entry_point_group
        self._builtins = dict(BUILTIN_PROVIDERS if builtins is None else builtins)
        self._factories: dict[str, ProviderFactory] = {
            _kind_key(kind): factory for kind, factory in (factories or {}).items()
        }
        self._targets: dict[str, metadata.EntryPoint] | None = None

    def register(self, kind: ProviderKind | str, factory: ProviderFactory) -> None:
        self._factories[_kind_key(kind)] = factory

    def kinds(self) -> list[str]:
        return sorted(set(self._factories) | set(self._discover()))

    def resolve(self, kind: ProviderKind | str) -> ProviderFactory:
        key = _kind_key(kind)
        factory = self._factories.get(key)
        if factory is not None:
            return factory
        target = self._discover().get(key)
        if target is None:
            raise ProviderLoadError(f"No provider registered for kind '{key}'")
        try:
            factory = target.load()
        except (ImportError, AttributeError) as exc:
            raise ProviderLoadError(f"Cannot load provider '{key}' from {target.value}: {exc}") from exc
        LOG.debug("Loaded provider", extra={"kind": key, "target": target.value})
        self._factories[key] = factory
        return factory

    def create(self, kind: ProviderKind | str, **kwargs: Any) -> BaseProvider:
        return self.resolve(kind)(**kwargs)

    def _discover(self) -> dict[str, metadata.EntryPoint]:
        if self._targets is not None:
            return self._targets
        targets = {
            kind: metadata.EntryPoint(name=kind, value=value, group=self._entry_point_group)
            for kind, value in self._builtins.items()
        }
        for entry_point in metadata.entry_points().select(group=self._entry_point_group):
            if entry_point.name in targets:
                LOG.info("Overriding built-in provider", extra={"kind": entry_point.name})
            targets[entry_point.name] = entry_point
        self._targets = targets
        return targets


__all__ = [
    "BUILTIN_PROVIDERS",
    "ENTRY_POINT_GROUP",
    "ProviderFactory",
    "ProviderLoadError",
    "ProviderRegistry",
]
