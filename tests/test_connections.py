"""Tests for the connection manager."""

from __future__ import annotations

import pytest

from mqexplorer.config import AppConfig, ConnectionProfileConfig, ProviderSettings
from mqexplorer.connections import ConnectionManager
from mqexplorer.events import ConnectionStateChanged, Event
from mqexplorer.models import ConnectionProfile, ProviderKind
from mqexplorer.providers.memory import MemoryProvider
from mqexplorer.providers.types import ConnectionState, NotConnectedError, ProviderConnectionError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _profile(profile_id: str = "demo", **params: object) -> ConnectionProfile:
    return ConnectionProfile(id=profile_id, name=profile_id.title(), kind=ProviderKind.MEMORY, params=params)


@pytest.mark.anyio
async def test_connect_reuses_adapter_instance() -> None:
    manager = ConnectionManager([_profile()])

    first = await manager.connect("demo")
    second = await manager.connect("demo")

    assert first is second
    assert isinstance(first, MemoryProvider)
    assert manager.get_provider("demo") is first
    assert manager.state("demo") is ConnectionState.CONNECTED


@pytest.mark.anyio
async def test_failed_connect_can_be_retried_on_same_adapter() -> None:
    manager = ConnectionManager([_profile(fail_connect=True)])

    with pytest.raises(ProviderConnectionError):
        await manager.connect("demo")

    assert manager.state("demo") is ConnectionState.FAILED
    assert manager.get_provider("demo") is None
    with pytest.raises(NotConnectedError):
        manager.require_provider("demo")


@pytest.mark.anyio
async def test_disconnect_is_idempotent_and_drops_lookup() -> None:
    manager = ConnectionManager([_profile()])
    await manager.connect("demo")

    await manager.disconnect("demo")
    await manager.disconnect("demo")
    await manager.disconnect("never-connected")

    assert manager.get_provider("demo") is None
    assert manager.state("demo") is ConnectionState.DISCONNECTED


@pytest.mark.anyio
async def test_subscribers_see_lifecycle_events() -> None:
    manager = ConnectionManager([_profile()])
    seen: list[Event] = []
    unsubscribe = manager.subscribe(seen.append)

    await manager.connect("demo")
    await manager.disconnect_all()
    unsubscribe()

    states = [event.state for event in seen if isinstance(event, ConnectionStateChanged)]
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    ]
    assert all(event.profile_id == "demo" for event in seen)


def test_unknown_profile_raises_key_error() -> None:
    manager = ConnectionManager()

    with pytest.raises(KeyError):
        manager.profile("missing")


def test_duplicate_profile_ids_are_rejected() -> None:
    manager = ConnectionManager([_profile()])

    with pytest.raises(ValueError):
        manager.add_profile(_profile())


@pytest.mark.anyio
async def test_from_config_builds_profiles_and_passes_settings() -> None:
    config = AppConfig(
        providers=ProviderSettings(default_browse_limit=1),
        profiles=[ConnectionProfileConfig(id="demo", name="Demo", kind=ProviderKind.MEMORY)],
    )
    manager = ConnectionManager.from_config(config)

    provider = await manager.connect("demo")
    messages = await provider.browse_messages("DEV.QUEUE.1")

    assert [profile.id for profile in manager.profiles] == ["demo"]
    assert len(messages) == 1
