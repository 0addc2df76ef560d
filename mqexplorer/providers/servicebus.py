"""Azure Service Bus adapter: queues, topics and subscriptions."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from functools import partial
from typing import Any, Sequence
from uuid import uuid4

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity.aio import ClientSecretCredential
from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver, ServiceBusSender
from azure.servicebus.aio.management import ServiceBusAdministrationClient
from azure.servicebus.amqp import AmqpMessageBodyType
from azure.servicebus.management import (
    CorrelationRuleFilter,
    FalseRuleFilter,
    SqlRuleFilter,
    TrueRuleFilter,
)
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic.alias_generators import to_camel

from mqexplorer.models import (
    BrowseOptions,
    DeleteOutcome,
    Message,
    Payload,
    ProviderKind,
    QueueInfo,
    QueueProperties,
    SubscriptionInfo,
    SubscriptionRule,
    TopicInfo,
    TopicProperties,
)

from .base import (
    PAYLOAD_TYPE_KEY,
    BaseProvider,
    DepthProbe,
    bounded,
    decode_payload,
    matches_filter,
    payload_type,
    release,
)
from .types import BackendError, BrowseTimeoutError, Capability, MessageNotFoundError

LOG = logging.getLogger(__name__)

CLEAR_BATCH_SIZE = 100
PEEK_PAGE_SIZE = 100
SEQUENCE_NUMBER = "sequence_number"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServiceBusCredential(_CamelModel):
    tenant_id: str
    client_id: str
    client_secret: SecretStr


class ServiceBusRetry(_CamelModel):
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, gt=0)
    max_retry_delay_seconds: float = Field(default=30.0, gt=0)


class ServiceBusParams(_CamelModel):
    """Either a connection string or an Azure AD client-secret identity."""

    connection_string: SecretStr | None = None
    fully_qualified_namespace: str | None = None
    use_aad_auth: bool = False
    credential: ServiceBusCredential | None = None
    retry_options: ServiceBusRetry = Field(default_factory=ServiceBusRetry)

    @model_validator(mode="after")
    def _check_auth(self) -> "ServiceBusParams":
        if self.connection_string is not None:
            return self
        if self.use_aad_auth and self.credential is not None and self.fully_qualified_namespace:
            return self
        raise ValueError("Provide a connection string, or AAD credentials with a fully qualified namespace")


class ServiceBusProvider(BaseProvider):
    """Adapter over a messaging client and an administration client."""

    kind = ProviderKind.AZURE_SERVICE_BUS
    display_name = "Azure Service Bus"
    capabilities = frozenset(
        {
            Capability.TOPICS,
            Capability.PUBLISH,
            Capability.TOPIC_PROPERTIES,
            Capability.SUBSCRIPTIONS,
            Capability.SUBSCRIPTION_BROWSE,
        }
    )
    params_model = ServiceBusParams

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client: ServiceBusClient | None = None
        self._admin: ServiceBusAdministrationClient | None = None
        self._credential: ClientSecretCredential | None = None
        self._senders: dict[str, ServiceBusSender] = {}

    async def _open(self, params: ServiceBusParams) -> None:
        retry = {
            "retry_total": params.retry_options.max_retries,
            "retry_backoff_factor": params.retry_options.retry_delay_seconds,
            "retry_backoff_max": params.retry_options.max_retry_delay_seconds,
        }
        if params.connection_string is not None:
            connection_string = params.connection_string.get_secret_value()
            self._client = ServiceBusClient.from_connection_string(connection_string, **retry)
            self._admin = ServiceBusAdministrationClient.from_connection_string(connection_string)
        elif params.credential is not None and params.fully_qualified_namespace:
            self._credential = ClientSecretCredential(
                params.credential.tenant_id,
                params.credential.client_id,
                params.credential.client_secret.get_secret_value(),
            )
            self._client = ServiceBusClient(params.fully_qualified_namespace, self._credential, **retry)
            self._admin = ServiceBusAdministrationClient(params.fully_qualified_namespace, self._credential)
        else:
            raise BackendError("Service Bus profile has neither a connection string nor AAD credentials")
        try:
            namespace = await self._admin.get_namespace_properties()
        except AzureError as exc:
            raise BackendError(f"Service Bus namespace probe failed: {exc}") from exc
        LOG.info("Connected to Service Bus namespace %s", getattr(namespace, "name", "?"))

    async def _close(self) -> None:
        senders, self._senders = self._senders, {}
        for entity, sender in senders.items():
            await release(f"sender for {entity}", sender.close)
        client, self._client = self._client, None
        admin, self._admin = self._admin, None
        credential, self._credential = self._credential, None
        if client is not None:
            await release("Service Bus client", client.close)
        if admin is not None:
            await release("Service Bus administration client", admin.close)
        if credential is not None:
            await release("Azure AD credential", credential.close)

    # -- queues ----------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        admin = self._active_admin()
        queues: list[QueueInfo] = []
        try:
            async for queue in admin.list_queues():
                if not matches_filter(filter, queue.name):
                    continue
                queues.append(
                    QueueInfo(
                        name=queue.name,
                        depth=await self.get_queue_depth(queue.name),
                        type="Queue",
                        description=f"Status: {queue.status}",
                    )
                )
        except AzureError as exc:
            raise BackendError(f"Failed to list Service Bus queues: {exc}") from exc
        return sorted(queues, key=lambda queue: queue.name)

    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        receiver = self._active_client().get_queue_receiver(queue_name)
        return await self._peek(receiver, queue_name, options)

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        await self._send(queue_name, payload, properties, topic=False)

    async def _clear(self, queue_name: str) -> None:
        receiver = self._active_client().get_queue_receiver(
            queue_name,
            receive_mode=ServiceBusReceiveMode.RECEIVE_AND_DELETE,
        )
        removed = 0
        try:
            async with receiver:
                while True:
                    batch = await receiver.receive_messages(
                        max_message_count=CLEAR_BATCH_SIZE,
                        max_wait_time=self._timeouts.clear_wait_seconds,
                    )
                    if not batch:
                        break
                    removed += len(batch)
        except AzureError as exc:
            raise BackendError(f"Failed to clear queue {queue_name} after {removed} messages: {exc}") from exc
        LOG.info("Removed %d messages from %s", removed, queue_name)

    async def _delete(self, queue_name: str, message_id: str) -> DeleteOutcome:
        """Scan with peek-lock receives until the cached sequence number turns up."""

        cached = self._cache.get(queue_name, message_id)
        if cached is None or cached.properties.get(SEQUENCE_NUMBER) is None:
            raise MessageNotFoundError(
                f"Message {message_id} is not in the browse cache for {queue_name}; browse the queue first"
            )
        target = int(cached.properties[SEQUENCE_NUMBER])
        receiver = self._active_client().get_queue_receiver(
            queue_name,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
        )
        # Mismatches stay locked until the scan ends so the receive cursor moves forward.
        held: list[Any] = []
        try:
            async with receiver:
                try:
                    for attempt in range(1, self._settings.delete_scan_limit + 1):
                        received = await receiver.receive_messages(
                            max_message_count=1,
                            max_wait_time=self._timeouts.receive_wait_seconds,
                        )
                        if not received:
                            break
                        candidate = received[0]
                        if candidate.sequence_number == target:
                            await receiver.complete_message(candidate)
                            LOG.debug("Completed sequence %d after %d receives", target, attempt)
                            return DeleteOutcome.DELETED
                        held.append(candidate)
                finally:
                    for other in held:
                        await release(
                            f"lock on sequence {other.sequence_number}",
                            partial(receiver.abandon_message, other),
                        )
        except AzureError as exc:
            raise BackendError(f"Failed to delete message {message_id} from {queue_name}: {exc}") from exc
        raise MessageNotFoundError(
            f"Message {message_id} (sequence {target}) not found in {queue_name} "
            f"within {self._settings.delete_scan_limit} receives"
        )

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        admin = self._active_admin()
        try:
            queue = await admin.get_queue(queue_name)
            runtime = await admin.get_queue_runtime_properties(queue_name)
        except ResourceNotFoundError as exc:
            raise BackendError(f"Queue {queue_name} does not exist") from exc
        except AzureError as exc:
            raise BackendError(f"Failed to read properties of {queue_name}: {exc}") from exc
        return QueueProperties(
            name=queue_name,
            depth=runtime.active_message_count,
            max_depth=None,
            type="Queue",
            description=f"Status: {queue.status}",
            created_at=runtime.created_at_utc,
            extra={
                "dead_letter_message_count": runtime.dead_letter_message_count,
                "scheduled_message_count": runtime.scheduled_message_count,
                "transfer_message_count": runtime.transfer_message_count,
                "total_message_count": runtime.total_message_count,
                "size_in_bytes": runtime.size_in_bytes,
                "max_size_in_megabytes": queue.max_size_in_megabytes,
                "max_delivery_count": queue.max_delivery_count,
                "lock_duration": queue.lock_duration,
                "default_message_time_to_live": queue.default_message_time_to_live,
                "requires_session": queue.requires_session,
                "requires_duplicate_detection": queue.requires_duplicate_detection,
                "dead_lettering_on_message_expiration": queue.dead_lettering_on_message_expiration,
                "enable_partitioning": queue.enable_partitioning,
                "status": str(queue.status),
            },
        )

    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        async def _active() -> int:
            runtime = await self._active_admin().get_queue_runtime_properties(queue_name)
            return runtime.active_message_count

        return (("runtime properties", _active),)

    # -- topics and subscriptions ----------------------------------------

    async def _list_topics(self, filter: str | None) -> Sequence[TopicInfo]:
        admin = self._active_admin()
        topics: list[TopicInfo] = []
        try:
            async for topic in admin.list_topics():
                if not matches_filter(filter, topic.name):
                    continue
                runtime = await admin.get_topic_runtime_properties(topic.name)
                topics.append(
                    TopicInfo(
                        name=topic.name,
                        topic_string=topic.name,
                        type="Topic",
                        description=f"Status: {topic.status}",
                        status=str(topic.status),
                        subscription_count=runtime.subscription_count,
                    )
                )
        except AzureError as exc:
            raise BackendError(f"Failed to list Service Bus topics: {exc}") from exc
        return sorted(topics, key=lambda topic: topic.name)

    async def _publish(self, topic: str, payload: Payload, properties: dict[str, Any]) -> None:
        await self._send(topic, payload, properties, topic=True)

    async def _topic_properties(self, topic: str) -> TopicProperties:
        admin = self._active_admin()
        try:
            details = await admin.get_topic(topic)
            runtime = await admin.get_topic_runtime_properties(topic)
        except AzureError as exc:
            raise BackendError(f"Failed to read properties of topic {topic}: {exc}") from exc
        return TopicProperties(
            name=topic,
            topic_string=topic,
            type="Topic",
            description=f"Status: {details.status}",
            status=str(details.status),
            created_at=runtime.created_at_utc,
            subscription_count=runtime.subscription_count,
            extra={
                "size_in_bytes": runtime.size_in_bytes,
                "scheduled_message_count": runtime.scheduled_message_count,
                "max_size_in_megabytes": details.max_size_in_megabytes,
                "default_message_time_to_live": details.default_message_time_to_live,
                "requires_duplicate_detection": details.requires_duplicate_detection,
                "enable_partitioning": details.enable_partitioning,
                "support_ordering": details.support_ordering,
            },
        )

    async def _list_subscriptions(self, topic: str) -> Sequence[SubscriptionInfo]:
        admin = self._active_admin()
        subscriptions: list[SubscriptionInfo] = []
        try:
            async for subscription in admin.list_subscriptions(topic):
                runtime = await admin.get_subscription_runtime_properties(topic, subscription.name)
                rules = [_rule(rule) async for rule in admin.list_rules(topic, subscription.name)]
                subscriptions.append(
                    SubscriptionInfo(
                        name=subscription.name,
                        topic_name=topic,
                        message_count=runtime.active_message_count,
                        dead_letter_message_count=runtime.dead_letter_message_count,
                        status=str(subscription.status),
                        description=f"Max deliveries: {subscription.max_delivery_count}",
                        rules=tuple(rules),
                    )
                )
        except AzureError as exc:
            raise BackendError(f"Failed to list subscriptions of {topic}: {exc}") from exc
        return subscriptions

    async def _browse_subscription(
        self, topic: str, subscription: str, options: BrowseOptions
    ) -> Sequence[Message]:
        receiver = self._active_client().get_subscription_receiver(topic, subscription)
        return await self._peek(receiver, f"{topic}/{subscription}", options)

    # -- helpers ---------------------------------------------------------

    def _active_client(self) -> ServiceBusClient:
        if self._client is None:
            raise BackendError("Service Bus client is not open")
        return self._client

    def _active_admin(self) -> ServiceBusAdministrationClient:
        if self._admin is None:
            raise BackendError("Service Bus administration client is not open")
        return self._admin

    async def _peek(self, receiver: ServiceBusReceiver, entity: str, options: BrowseOptions) -> list[Message]:
        """Lock-free read bounded by ``browse_wait_seconds``; returns what matched in time."""

        matched: list[Message] = []
        try:
            await bounded(
                self._peek_into(receiver, options, matched),
                self._timeouts.browse_wait_seconds,
                f"peek of {entity}",
            )
        except BrowseTimeoutError as exc:
            LOG.warning("%s; returning %d matching messages", exc, len(matched))
        except AzureError as exc:
            raise BackendError(f"Failed to peek messages from {entity}: {exc}") from exc
        return matched[options.start_position : options.window]

    async def _peek_into(self, receiver: ServiceBusReceiver, options: BrowseOptions, matched: list[Message]) -> None:
        # Pages by sequence number; the broker may return fewer messages than asked.
        next_sequence = 0
        async with receiver:
            while len(matched) < options.window:
                wanted = PEEK_PAGE_SIZE if options.filter is not None else options.window - len(matched)
                batch = await receiver.peek_messages(max_message_count=wanted, sequence_number=next_sequence)
                if not batch:
                    return
                next_sequence = batch[-1].sequence_number + 1
                for raw in batch:
                    message = _to_message(raw)
                    if options.filter is None or options.filter.matches(message):
                        matched.append(message)

    async def _send(self, entity: str, payload: Payload, properties: dict[str, Any], *, topic: bool) -> None:
        sender = self._senders.get(entity)
        if sender is None:
            client = self._active_client()
            sender = client.get_topic_sender(entity) if topic else client.get_queue_sender(entity)
            self._senders[entity] = sender
        try:
            await sender.send_messages(_build_message(payload, properties))
        except AzureError as exc:
            raise BackendError(f"Failed to send message to {entity}: {exc}") from exc


def _build_message(payload: Payload, properties: dict[str, Any]) -> ServiceBusMessage:
    ttl = properties.get("time_to_live_seconds")
    return ServiceBusMessage(
        payload,
        message_id=str(properties.get("message_id") or uuid4()),
        correlation_id=properties.get("correlation_id"),
        content_type=properties.get("content_type"),
        subject=properties.get("subject"),
        session_id=properties.get("session_id"),
        reply_to=properties.get("reply_to"),
        time_to_live=timedelta(seconds=float(ttl)) if ttl is not None else None,
        application_properties={
            **dict(properties.get("application_properties") or {}),
            PAYLOAD_TYPE_KEY: payload_type(payload),
        },
    )


def _body(raw: Any, declared: Any) -> Payload:
    if raw.body_type == AmqpMessageBodyType.DATA:
        return decode_payload(b"".join(raw.body), declared)
    body = raw.body
    if isinstance(body, bytes):
        return body
    return json.dumps(body, default=str)


def _to_message(raw: Any) -> Message:
    application = {
        (key.decode("utf-8") if isinstance(key, bytes) else str(key)): (
            value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        )
        for key, value in (raw.application_properties or {}).items()
    }
    declared = application.pop(PAYLOAD_TYPE_KEY, None)
    return Message(
        id=str(raw.message_id or raw.sequence_number),
        payload=_body(raw, declared),
        correlation_id=raw.correlation_id,
        timestamp=raw.enqueued_time_utc,
        properties={
            SEQUENCE_NUMBER: raw.sequence_number,
            "message_id": raw.message_id,
            "content_type": raw.content_type,
            "subject": raw.subject,
            "session_id": raw.session_id,
            "delivery_count": raw.delivery_count,
            "application_properties": application,
        },
    )


def _rule(rule: Any) -> SubscriptionRule:
    rule_filter = rule.filter
    action = getattr(rule.action, "sql_expression", None)
    if isinstance(rule_filter, TrueRuleFilter):
        return SubscriptionRule(name=rule.name, filter_type="true", filter="1=1", action=action)
    if isinstance(rule_filter, FalseRuleFilter):
        return SubscriptionRule(name=rule.name, filter_type="false", filter="1=0", action=action)
    if isinstance(rule_filter, SqlRuleFilter):
        return SubscriptionRule(name=rule.name, filter_type="sql", filter=rule_filter.sql_expression, action=action)
    if isinstance(rule_filter, CorrelationRuleFilter):
        parts = [
            f"{field}={value}"
            for field, value in (
                ("correlationId", rule_filter.correlation_id),
                ("messageId", rule_filter.message_id),
                ("to", rule_filter.to),
                ("replyTo", rule_filter.reply_to),
                ("label", rule_filter.label),
                ("sessionId", rule_filter.session_id),
                ("contentType", rule_filter.content_type),
            )
            if value
        ]
        parts.extend(f"{key}={value}" for key, value in (rule_filter.properties or {}).items())
        return SubscriptionRule(name=rule.name, filter_type="correlation", filter=", ".join(parts), action=action)
    return SubscriptionRule(name=rule.name, filter_type=type(rule_filter).__name__, action=action)


__all__ = [
    "ServiceBusCredential",
    "ServiceBusParams",
    "ServiceBusProvider",
    "ServiceBusRetry",
]
