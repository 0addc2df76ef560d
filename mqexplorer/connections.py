"""Connection manager owning one adapter per connection profile."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from .config import AppConfig
from .events import EventBus, EventListener
from .models import ConnectionProfile
from .providers.base import BaseProvider
from .providers.registry import ProviderRegistry
from .providers.types import ConnectionState, NotConnectedError

LOG = logging.getLogger(__name__)


class ConnectionManager:
    """Keys adapters on profile id and reuses the same instance across calls.

    The manager is an ordinary value handed to whatever layer needs it; it
    keeps no module-level state.
    """

    def __init__(
        self,
        profiles: Iterable[ConnectionProfile] = (),
        *,
        config: AppConfig | None = None,
        registry: ProviderRegistry | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._registry = registry or ProviderRegistry()
        self._events = events or EventBus()
        self._profiles: dict[str, ConnectionProfile] = {}
        self._providers: dict[str, BaseProvider] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        for profile in profiles:
            self.add_profile(profile)

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs: Any) -> "ConnectionManager":
        profiles = [
            ConnectionProfile(id=entry.id, name=entry.name, kind=entry.kind, params=entry.params)
            for entry in config.profiles
        ]
        return cls(profiles, config=config, **kwargs)

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        return tuple(self._profiles.values())

    @property
    def events(self) -> EventBus:
        return self._events

    def add_profile(self, profile: ConnectionProfile) -> None:
        if profile.id in self._profiles:
            raise ValueError(f"Duplicate connection profile id '{profile.id}'")
        self._profiles[profile.id] = profile

    def profile(self, profile_id: str) -> ConnectionProfile:
        try:
            return self._profiles[profile_id]
        except KeyError:
            raise KeyError(f"Unknown connection profile '{profile_id}'") from None

    async def connect(self, profile_id: str) -> BaseProvider:
        """Connect the profile's adapter, creating it on first use.

        A failed attempt leaves the adapter in ``FAILED`` so the next call
        retries on the same instance.
        """

        profile = self.profile(profile_id)
        async with self._lock(profile_id):
            provider = self._providers.get(profile_id)
            if provider is None:
                provider = self._registry.create(
                    profile.kind,
                    config=self._config,
                    events=self._events,
                    profile_id=profile_id,
                )
                self._providers[profile_id] = provider
            await provider.connect(profile.params)
        LOG.info("Profile connected", extra={"profile": profile_id, "kind": profile.kind.value})
        return provider

    async def disconnect(self, profile_id: str) -> None:
        provider = self._providers.get(profile_id)
        if provider is None:
            return
        async with self._lock(profile_id):
            await provider.disconnect()

    async def disconnect_all(self) -> None:
        for profile_id in list(self._providers):
            await self.disconnect(profile_id)

    def get_provider(self, profile_id: str) -> BaseProvider | None:
        """Return the connected adapter for a profile, if any."""

        provider = self._providers.get(profile_id)
        if provider is None or not provider.is_connected():
            return None
        return provider

    def require_provider(self, profile_id: str) -> BaseProvider:
        provider = self.get_provider(profile_id)
        if provider is None:
            raise NotConnectedError(f"Profile '{profile_id}' is not connected")
        return provider

    def state(self, profile_id: str) -> ConnectionState:
        provider = self._providers.get(profile_id)
        return provider.state if provider is not None else ConnectionState.DISCONNECTED

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    def _lock(self, profile_id: str) -> asyncio.Lock:
        lock = self._locks.get(profile_id)
        if lock is None:
            lock = self._locks[profile_id] = asyncio.Lock()
        return lock


__all__ = ["ConnectionManager"]
