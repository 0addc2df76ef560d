"""Service Bus adapter behaviour against fake messaging and management clients."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, AsyncIterator

import pytest
from azure.core.exceptions import AzureError
from azure.servicebus import ServiceBusReceiveMode
from azure.servicebus.amqp import AmqpMessageBodyType
from azure.servicebus.management import CorrelationRuleFilter, SqlRuleFilter, TrueRuleFilter

from mqexplorer.config import AppConfig, ProviderSettings, TimeoutSettings
from mqexplorer.models import BrowseFilter, BrowseOptions, DeleteOutcome
from mqexplorer.providers import servicebus as servicebus_module
from mqexplorer.providers.servicebus import ServiceBusProvider
from mqexplorer.providers.types import (
    BackendError,
    Capability,
    MessageNotFoundError,
    ProviderConnectionError,
)

CONNECTION_STRING = "Endpoint=sb://demo.servicebus.windows.net/;SharedAccessKeyName=k;SharedAccessKey=s"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@dataclass
class _RawMessage:
    sequence_number: int
    message_id: str | None
    body: Any
    body_type: AmqpMessageBodyType = AmqpMessageBodyType.DATA
    correlation_id: str | None = None
    content_type: str | None = None
    subject: str | None = None
    session_id: str | None = None
    delivery_count: int = 0
    application_properties: dict[Any, Any] | None = None
    enqueued_time_utc: datetime | None = None
    locked: bool = False


def _messages(count: int) -> list[_RawMessage]:
    return [_RawMessage(seq, f"m{seq}", [f"body {seq}".encode()]) for seq in range(1, count + 1)]


class _FakeReceiver:
    def __init__(self, entity: list[_RawMessage], mode: ServiceBusReceiveMode, page_size: int) -> None:
        self.entity = entity
        self.mode = mode
        self.page_size = page_size
        self.peeks: list[tuple[int, int]] = []
        self.abandoned: list[int] = []
        self.completed: list[int] = []
        self.entered = False
        self.exited = False
        self.fail_with: Exception | None = None
        self.stall_after: int | None = None

    async def __aenter__(self) -> _FakeReceiver:
        self.entered = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.exited = True

    async def peek_messages(self, max_message_count: int, sequence_number: int = 0) -> list[_RawMessage]:
        if self.fail_with is not None:
            raise self.fail_with
        if self.stall_after is not None and len(self.peeks) >= self.stall_after:
            await asyncio.Event().wait()
        self.peeks.append((max_message_count, sequence_number))
        visible = [message for message in self.entity if message.sequence_number >= sequence_number]
        return visible[: min(max_message_count, self.page_size)]

    async def receive_messages(self, max_message_count: int, max_wait_time: float) -> list[_RawMessage]:
        if self.fail_with is not None:
            raise self.fail_with
        if self.mode is ServiceBusReceiveMode.RECEIVE_AND_DELETE:
            batch = self.entity[:max_message_count]
            del self.entity[: len(batch)]
            return batch
        batch = [message for message in self.entity if not message.locked][:max_message_count]
        for message in batch:
            message.locked = True
        return batch

    async def complete_message(self, message: _RawMessage) -> None:
        self.completed.append(message.sequence_number)
        self.entity.remove(message)

    async def abandon_message(self, message: _RawMessage) -> None:
        self.abandoned.append(message.sequence_number)
        message.locked = False


class _FakeSender:
    def __init__(self, entity: str) -> None:
        self.entity = entity
        self.sent: list[Any] = []
        self.closed = False

    async def send_messages(self, message: Any) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True


class _FakeClient:
    def __init__(self, namespace: _Namespace) -> None:
        self.namespace = namespace
        self.receivers: list[_FakeReceiver] = []
        self.senders: list[_FakeSender] = []
        self.closed = False

    def _receiver(self, entity: list[_RawMessage], receive_mode: ServiceBusReceiveMode) -> _FakeReceiver:
        receiver = _FakeReceiver(entity, receive_mode, self.namespace.page_size)
        receiver.fail_with = self.namespace.receiver_error
        receiver.stall_after = self.namespace.stall_after
        self.receivers.append(receiver)
        return receiver

    def get_queue_receiver(
        self, queue_name: str, receive_mode: ServiceBusReceiveMode = ServiceBusReceiveMode.PEEK_LOCK
    ) -> _FakeReceiver:
        return self._receiver(self.namespace.queues[queue_name], receive_mode)

    def get_subscription_receiver(self, topic_name: str, subscription_name: str) -> _FakeReceiver:
        entity = self.namespace.subscriptions[topic_name][subscription_name]
        return self._receiver(entity, ServiceBusReceiveMode.PEEK_LOCK)

    def get_queue_sender(self, queue_name: str) -> _FakeSender:
        self.senders.append(_FakeSender(queue_name))
        return self.senders[-1]

    def get_topic_sender(self, topic_name: str) -> _FakeSender:
        self.senders.append(_FakeSender(f"topic:{topic_name}"))
        return self.senders[-1]

    async def close(self) -> None:
        self.closed = True


class _FakeAdmin:
    def __init__(self, namespace: _Namespace) -> None:
        self.namespace = namespace
        self.closed = False

    async def get_namespace_properties(self) -> SimpleNamespace:
        if self.namespace.probe_error is not None:
            raise self.namespace.probe_error
        return SimpleNamespace(name="demo")

    async def list_queues(self) -> AsyncIterator[SimpleNamespace]:
        for name in self.namespace.queues:
            yield SimpleNamespace(name=name, status="Active")

    async def get_queue_runtime_properties(self, queue_name: str) -> SimpleNamespace:
        return SimpleNamespace(active_message_count=len(self.namespace.queues[queue_name]))

    async def list_topics(self) -> AsyncIterator[SimpleNamespace]:
        for name in self.namespace.subscriptions:
            yield SimpleNamespace(name=name, status="Active")

    async def get_topic_runtime_properties(self, topic_name: str) -> SimpleNamespace:
        return SimpleNamespace(subscription_count=len(self.namespace.subscriptions[topic_name]))

    async def list_subscriptions(self, topic_name: str) -> AsyncIterator[SimpleNamespace]:
        for name in self.namespace.subscriptions[topic_name]:
            yield SimpleNamespace(name=name, status="Active", max_delivery_count=10)

    async def get_subscription_runtime_properties(self, topic_name: str, name: str) -> SimpleNamespace:
        return SimpleNamespace(
            active_message_count=len(self.namespace.subscriptions[topic_name][name]),
            dead_letter_message_count=1,
        )

    async def list_rules(self, topic_name: str, name: str) -> AsyncIterator[SimpleNamespace]:
        for rule in self.namespace.rules.get((topic_name, name), []):
            yield rule

    async def close(self) -> None:
        self.closed = True


@dataclass
class _Namespace:
    queues: dict[str, list[_RawMessage]] = field(default_factory=dict)
    subscriptions: dict[str, dict[str, list[_RawMessage]]] = field(default_factory=dict)
    rules: dict[tuple[str, str], list[SimpleNamespace]] = field(default_factory=dict)
    page_size: int = 100
    probe_error: Exception | None = None
    receiver_error: Exception | None = None
    stall_after: int | None = None
    client: _FakeClient | None = None
    admin: _FakeAdmin | None = None
    factory_calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)


class _Factory:
    def __init__(self, namespace: _Namespace, label: str, build: Any) -> None:
        self._namespace = namespace
        self._label = label
        self._build = build

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        self._namespace.factory_calls.append((f"{self._label}", args, kwargs))
        return self._build()

    def from_connection_string(self, *args: Any, **kwargs: Any) -> Any:
        self._namespace.factory_calls.append((f"{self._label}.from_connection_string", args, kwargs))
        return self._build()


@pytest.fixture
def namespace(monkeypatch: pytest.MonkeyPatch) -> _Namespace:
    space = _Namespace()

    def _client() -> _FakeClient:
        space.client = _FakeClient(space)
        return space.client

    def _admin() -> _FakeAdmin:
        space.admin = _FakeAdmin(space)
        return space.admin

    class _Credential:
        def __init__(self, *args: Any) -> None:
            space.factory_calls.append(("credential", args, {}))
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(servicebus_module, "ServiceBusClient", _Factory(space, "client", _client))
    monkeypatch.setattr(servicebus_module, "ServiceBusAdministrationClient", _Factory(space, "admin", _admin))
    monkeypatch.setattr(servicebus_module, "ClientSecretCredential", _Credential)
    return space


async def _connected(config: AppConfig | None = None) -> ServiceBusProvider:
    provider = ServiceBusProvider(config=config)
    await provider.connect({"connectionString": CONNECTION_STRING})
    return provider


@pytest.mark.anyio
async def test_connect_with_connection_string_passes_retry_options(namespace: _Namespace) -> None:
    provider = ServiceBusProvider()

    await provider.connect({"connectionString": CONNECTION_STRING, "retryOptions": {"maxRetries": 5}})

    [client_call, admin_call] = namespace.factory_calls
    assert client_call[0] == "client.from_connection_string"
    assert client_call[1] == (CONNECTION_STRING,)
    assert client_call[2]["retry_total"] == 5
    assert admin_call[0] == "admin.from_connection_string"
    assert provider.supports(Capability.SUBSCRIPTION_BROWSE)
    assert not provider.supports(Capability.CHANNELS)


@pytest.mark.anyio
async def test_connect_with_aad_credentials(namespace: _Namespace) -> None:
    provider = ServiceBusProvider()

    await provider.connect(
        {
            "useAadAuth": True,
            "fullyQualifiedNamespace": "demo.servicebus.windows.net",
            "credential": {"tenantId": "t", "clientId": "c", "clientSecret": "s"},
        }
    )

    labels = [call[0] for call in namespace.factory_calls]
    assert labels == ["credential", "client", "admin"]
    assert namespace.factory_calls[0][1] == ("t", "c", "s")
    assert namespace.factory_calls[1][1][0] == "demo.servicebus.windows.net"


@pytest.mark.anyio
async def test_params_without_any_credentials_are_rejected(namespace: _Namespace) -> None:
    provider = ServiceBusProvider()

    with pytest.raises(ProviderConnectionError):
        await provider.connect({"fullyQualifiedNamespace": "demo.servicebus.windows.net"})

    assert namespace.factory_calls == []


@pytest.mark.anyio
async def test_failed_probe_closes_both_clients(namespace: _Namespace) -> None:
    namespace.probe_error = AzureError("unauthorized")
    provider = ServiceBusProvider()

    with pytest.raises(ProviderConnectionError, match="unauthorized"):
        await provider.connect({"connectionString": CONNECTION_STRING})

    assert namespace.client is not None and namespace.client.closed
    assert namespace.admin is not None and namespace.admin.closed


@pytest.mark.anyio
async def test_list_queues_filters_and_sorts(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(3), "audit": [], "orders-dlq": _messages(1)}
    provider = await _connected()

    queues = await provider.list_queues("ORDERS")

    assert [(queue.name, queue.depth) for queue in queues] == [("orders", 3), ("orders-dlq", 1)]


@pytest.mark.anyio
async def test_browse_pages_peeks_by_sequence_number(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(10)}
    namespace.page_size = 3
    provider = await _connected()

    messages = await provider.browse_messages("orders", BrowseOptions(limit=5, start_position=2))

    assert [message.id for message in messages] == ["m3", "m4", "m5", "m6", "m7"]
    assert messages[0].payload == "body 3"
    assert messages[0].properties["sequence_number"] == 3
    receiver = namespace.client.receivers[-1]
    assert receiver.peeks == [(7, 0), (4, 4), (1, 7)]
    assert receiver.exited
    assert provider.cache.contains("orders", "m3")


@pytest.mark.anyio
async def test_browse_stops_when_queue_runs_dry(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(2)}
    provider = await _connected()

    messages = await provider.browse_messages("orders", BrowseOptions(limit=10))

    assert [message.id for message in messages] == ["m1", "m2"]


@pytest.mark.anyio
async def test_browse_empty_queue(namespace: _Namespace) -> None:
    namespace.queues = {"orders": []}
    provider = await _connected()

    assert await provider.browse_messages("orders") == []
    assert namespace.client.receivers[-1].exited


@pytest.mark.anyio
async def test_correlation_filter_reaches_past_limit(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(5)}
    namespace.queues["orders"][2].correlation_id = "c3"
    namespace.page_size = 2
    provider = await _connected()

    messages = await provider.browse_messages(
        "orders", BrowseOptions(limit=1, filter=BrowseFilter(correlation_id="c3"))
    )

    assert [message.id for message in messages] == ["m3"]


@pytest.mark.anyio
async def test_browse_returns_what_matched_before_a_stalled_peek(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(5)}
    namespace.page_size = 2
    namespace.stall_after = 1
    provider = await _connected(AppConfig(timeouts=TimeoutSettings(browse_wait_seconds=0.2)))

    messages = await asyncio.wait_for(provider.browse_messages("orders"), 2.0)

    assert [message.id for message in messages] == ["m1", "m2"]
    assert namespace.client.receivers[-1].exited


@pytest.mark.anyio
async def test_binary_payload_tag_keeps_utf8_bytes_binary(namespace: _Namespace) -> None:
    namespace.queues = {
        "orders": [
            _RawMessage(1, "bin", [b"hello"], application_properties={b"mqexplorer-payload-type": b"binary"}),
            _RawMessage(2, "txt", [b"hello"], application_properties={b"mqexplorer-payload-type": b"text"}),
        ]
    }
    provider = await _connected()

    binary, text = await provider.browse_messages("orders")

    assert binary.payload == b"hello"
    assert text.payload == "hello"
    assert binary.properties["application_properties"] == {}


@pytest.mark.anyio
async def test_browse_wraps_service_errors(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(2)}
    provider = await _connected()
    namespace.receiver_error = AzureError("link detached")

    with pytest.raises(BackendError, match="link detached"):
        await provider.browse_messages("orders")


@pytest.mark.anyio
async def test_delete_completes_match_and_abandons_each_mismatch_once(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(5)}
    provider = await _connected()
    await provider.browse_messages("orders")

    outcome = await provider.delete_message("orders", "m3")

    receiver = namespace.client.receivers[-1]
    assert outcome is DeleteOutcome.DELETED
    assert receiver.mode is ServiceBusReceiveMode.PEEK_LOCK
    assert receiver.completed == [3]
    assert receiver.abandoned == [1, 2]
    assert receiver.exited
    assert [message.sequence_number for message in namespace.queues["orders"]] == [1, 2, 4, 5]
    assert not any(message.locked for message in namespace.queues["orders"])
    assert not provider.cache.contains("orders", "m3")


@pytest.mark.anyio
async def test_delete_gives_up_after_scan_limit(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(5)}
    provider = await _connected(AppConfig(providers=ProviderSettings(delete_scan_limit=2)))
    await provider.browse_messages("orders")

    with pytest.raises(MessageNotFoundError, match="within 2 receives"):
        await provider.delete_message("orders", "m5")

    receiver = namespace.client.receivers[-1]
    assert receiver.abandoned == [1, 2]
    assert receiver.completed == []
    assert receiver.exited
    assert len(namespace.queues["orders"]) == 5


@pytest.mark.anyio
async def test_delete_of_message_consumed_elsewhere_is_not_found(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(3)}
    provider = await _connected()
    await provider.browse_messages("orders")
    del namespace.queues["orders"][1]

    with pytest.raises(MessageNotFoundError):
        await provider.delete_message("orders", "m2")

    assert namespace.client.receivers[-1].abandoned == [1, 3]


@pytest.mark.anyio
async def test_delete_requires_a_browsed_message(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(1)}
    provider = await _connected()

    with pytest.raises(MessageNotFoundError, match="browse the queue first"):
        await provider.delete_message("orders", "m1")

    assert namespace.client.receivers == []


@pytest.mark.anyio
async def test_abandon_failures_are_logged(namespace: _Namespace, caplog: pytest.LogCaptureFixture) -> None:
    namespace.queues = {"orders": _messages(3)}
    provider = await _connected()
    await provider.browse_messages("orders")

    async def _refuse(message: _RawMessage) -> None:
        raise AzureError("lock lost")

    make_receiver = namespace.client.get_queue_receiver

    def _receiver(queue_name: str, receive_mode: ServiceBusReceiveMode = ServiceBusReceiveMode.PEEK_LOCK) -> Any:
        receiver = make_receiver(queue_name, receive_mode)
        receiver.abandon_message = _refuse
        return receiver

    namespace.client.get_queue_receiver = _receiver  # type: ignore[method-assign]

    with caplog.at_level(logging.WARNING, logger="mqexplorer.providers.base"):
        outcome = await provider.delete_message("orders", "m2")

    assert outcome is DeleteOutcome.DELETED
    assert "lock on sequence 1" in caplog.text


@pytest.mark.anyio
async def test_clear_receives_and_deletes_in_batches(namespace: _Namespace) -> None:
    namespace.queues = {"orders": _messages(250)}
    provider = await _connected()

    await provider.clear_queue("orders")

    receiver = namespace.client.receivers[-1]
    assert receiver.mode is ServiceBusReceiveMode.RECEIVE_AND_DELETE
    assert namespace.queues["orders"] == []
    assert receiver.exited
    assert await provider.get_queue_depth("orders") == 0


@pytest.mark.anyio
async def test_put_reuses_sender_and_maps_properties(namespace: _Namespace) -> None:
    namespace.queues = {"orders": []}
    provider = await _connected()

    await provider.put_message(
        "orders",
        "hello",
        {
            "message_id": "fixed-id",
            "correlation_id": "c-1",
            "subject": "greeting",
            "time_to_live_seconds": 60,
            "application_properties": {"region": "eu"},
        },
    )
    await provider.put_message("orders", "again")

    [sender] = namespace.client.senders
    first, second = sender.sent
    assert first.message_id == "fixed-id"
    assert first.correlation_id == "c-1"
    assert first.subject == "greeting"
    assert first.time_to_live.total_seconds() == 60
    assert first.application_properties["region"] == "eu"
    assert first.application_properties["mqexplorer-payload-type"] == "text"
    assert second.message_id and second.message_id != "fixed-id"


@pytest.mark.anyio
async def test_publish_uses_topic_sender(namespace: _Namespace) -> None:
    namespace.subscriptions = {"events": {}}
    provider = await _connected()

    await provider.publish_message("events", b"payload")

    assert [sender.entity for sender in namespace.client.senders] == ["topic:events"]


@pytest.mark.anyio
async def test_disconnect_closes_senders_and_clients(namespace: _Namespace) -> None:
    namespace.queues = {"orders": []}
    provider = await _connected()
    await provider.put_message("orders", "x")

    await provider.disconnect()

    assert namespace.client.senders[0].closed
    assert namespace.client.closed
    assert namespace.admin.closed


@pytest.mark.anyio
async def test_topics_report_subscription_counts(namespace: _Namespace) -> None:
    namespace.subscriptions = {"events": {"audit": [], "billing": []}, "other": {}}
    provider = await _connected()

    topics = await provider.list_topics("ev")

    assert [(topic.name, topic.subscription_count) for topic in topics] == [("events", 2)]


@pytest.mark.anyio
async def test_subscriptions_describe_rules(namespace: _Namespace) -> None:
    namespace.subscriptions = {"events": {"audit": _messages(2)}}
    namespace.rules = {
        ("events", "audit"): [
            SimpleNamespace(name="$Default", filter=TrueRuleFilter(), action=None),
            SimpleNamespace(name="big", filter=SqlRuleFilter("amount > 100"), action=None),
            SimpleNamespace(
                name="eu",
                filter=CorrelationRuleFilter(correlation_id="c-1", properties={"region": "eu"}),
                action=None,
            ),
        ]
    }
    provider = await _connected()

    [subscription] = await provider.list_subscriptions("events")

    assert subscription.message_count == 2
    assert subscription.dead_letter_message_count == 1
    assert [(rule.name, rule.filter_type, rule.filter) for rule in subscription.rules] == [
        ("$Default", "true", "1=1"),
        ("big", "sql", "amount > 100"),
        ("eu", "correlation", "correlationId=c-1, region=eu"),
    ]
    assert await provider.get_subscription_info("events", "missing") is None


@pytest.mark.anyio
async def test_subscription_browse_decodes_bodies_and_properties(namespace: _Namespace) -> None:
    enqueued = datetime(2024, 3, 1, tzinfo=timezone.utc)
    namespace.subscriptions = {
        "events": {
            "audit": [
                _RawMessage(
                    7,
                    None,
                    {"kind": "created"},
                    body_type=AmqpMessageBodyType.VALUE,
                    application_properties={b"region": b"eu"},
                    enqueued_time_utc=enqueued,
                ),
                _RawMessage(8, "bin", [b"\xff\x00"]),
            ]
        }
    }
    provider = await _connected()

    first, second = await provider.browse_subscription_messages("events", "audit")

    assert first.id == "7"
    assert first.payload == '{"kind": "created"}'
    assert first.timestamp == enqueued
    assert first.properties["application_properties"] == {"region": "eu"}
    assert second.payload == b"\xff\x00"
