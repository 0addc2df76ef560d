"""Amazon SQS adapter built on aioboto3."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from mqexplorer.models import (
    UNKNOWN_DEPTH,
    BrowseOptions,
    DeleteOutcome,
    DeleteReport,
    Message,
    Payload,
    ProviderKind,
    QueueInfo,
    QueueProperties,
)

from .base import BaseProvider, DepthProbe, matches_filter, release
from .types import BackendError, MessageNotFoundError

LOG = logging.getLogger(__name__)

MAX_RECEIVE_BATCH = 10
MAX_DELETE_BATCH = 10
SHORT_POLL_SECONDS = 1
RECEIPT_HANDLE = "receipt_handle"
CORRELATION_ATTRIBUTE = "correlationId"
CONTENT_TYPE_ATTRIBUTE = "contentType"


class SqsParams(BaseModel):
    """Credentials, region and endpoint for an SQS account."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    session_token: SecretStr | None = None
    profile_name: str | None = None
    endpoint_url: str | None = None
    queue_url_prefix: str | None = None
    max_attempts: int = Field(default=3, ge=1)


@contextmanager
def _aws_errors(what: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        raise BackendError(f"{what} failed ({code}): {exc}") from exc
    except BotoCoreError as exc:
        raise BackendError(f"{what} failed: {exc}") from exc


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class SqsProvider(BaseProvider):
    """Adapter over one SQS client.

    SQS has no peek: browsing receives messages under a bounded visibility
    timeout, and deleting needs the receipt handle captured by that browse.
    """

    kind = ProviderKind.AWS_SQS
    display_name = "Amazon SQS"
    params_model = SqsParams

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._stack: AsyncExitStack | None = None
        self._client: Any = None
        self._queue_url_prefix: str | None = None
        self._queue_urls: dict[str, str] = {}

    async def _open(self, params: SqsParams) -> None:
        session = aioboto3.Session(
            aws_access_key_id=params.access_key_id,
            aws_secret_access_key=_secret(params.secret_access_key),
            aws_session_token=_secret(params.session_token),
            region_name=params.region,
            profile_name=params.profile_name,
        )
        self._stack = AsyncExitStack()
        self._client = await self._stack.enter_async_context(
            session.client(
                "sqs",
                endpoint_url=params.endpoint_url,
                config=BotoConfig(retries={"max_attempts": params.max_attempts, "mode": "standard"}),
            )
        )
        self._queue_url_prefix = params.queue_url_prefix.rstrip("/") if params.queue_url_prefix else None
        with _aws_errors("SQS connection check"):
            await self._client.list_queues(MaxResults=1)
        LOG.info("Connected to SQS in %s", params.region, extra={"endpoint": params.endpoint_url})

    async def _close(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        self._queue_urls.clear()
        if stack is not None:
            await release("SQS client", stack.aclose)

    # -- queues ----------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        client = self._active_client()
        urls: list[str] = []
        request: dict[str, Any] = {"MaxResults": 1000}
        with _aws_errors("ListQueues"):
            while True:
                response = await client.list_queues(**request)
                urls.extend(response.get("QueueUrls", []))
                token = response.get("NextToken")
                if not token:
                    break
                request["NextToken"] = token

        names: list[str] = []
        for url in urls:
            name = url.rstrip("/").rsplit("/", 1)[-1]
            self._queue_urls[name] = url
            if matches_filter(filter, name):
                names.append(name)
        names.sort()
        depths = await asyncio.gather(*(self.get_queue_depth(name) for name in names))
        return [
            QueueInfo(name=name, depth=depth, type=_queue_type(name), description=self._queue_urls[name])
            for name, depth in zip(names, depths)
        ]

    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        client = self._active_client()
        url = await self._queue_url(queue_name)
        received: list[dict[str, Any]] = []
        matched: list[tuple[dict[str, Any], Message]] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeouts.browse_wait_seconds
        try:
            with _aws_errors(f"ReceiveMessage on {queue_name}"):
                while len(matched) < options.window and loop.time() < deadline:
                    wanted = MAX_RECEIVE_BATCH if options.filter is not None else options.window - len(matched)
                    response = await client.receive_message(
                        QueueUrl=url,
                        MaxNumberOfMessages=min(MAX_RECEIVE_BATCH, wanted),
                        VisibilityTimeout=self._settings.visibility_timeout_seconds,
                        WaitTimeSeconds=SHORT_POLL_SECONDS,
                        AttributeNames=["All"],
                        MessageAttributeNames=["All"],
                    )
                    batch = response.get("Messages", [])
                    if not batch:
                        break
                    for raw in batch:
                        received.append(raw)
                        message = _to_message(raw)
                        if options.filter is None or options.filter.matches(message):
                            matched.append((raw, message))
        finally:
            returned = matched[options.start_position : options.window]
            kept = {raw["ReceiptHandle"] for raw, _ in returned}
            hidden = [raw for raw in received if raw["ReceiptHandle"] not in kept]
            if hidden:
                await self._restore_visibility(url, queue_name, hidden)
        return [message for _, message in returned]

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        client = self._active_client()
        url = await self._queue_url(queue_name)
        request: dict[str, Any] = {"QueueUrl": url, "MessageBody": _body_text(payload)}

        attributes: dict[str, dict[str, str]] = {}
        if properties.get("content_type"):
            attributes[CONTENT_TYPE_ATTRIBUTE] = _string_attribute(properties["content_type"])
        if properties.get("correlation_id"):
            attributes[CORRELATION_ATTRIBUTE] = _string_attribute(properties["correlation_id"])
        for name, value in (properties.get("headers") or {}).items():
            attributes[str(name)] = _string_attribute(value)
        if attributes:
            request["MessageAttributes"] = attributes
        if properties.get("delay_seconds") is not None:
            request["DelaySeconds"] = int(properties["delay_seconds"])
        if properties.get("message_group_id"):
            request["MessageGroupId"] = str(properties["message_group_id"])
        if properties.get("deduplication_id"):
            request["MessageDeduplicationId"] = str(properties["deduplication_id"])

        with _aws_errors(f"SendMessage to {queue_name}"):
            await client.send_message(**request)

    async def _clear(self, queue_name: str) -> None:
        client = self._active_client()
        url = await self._queue_url(queue_name)
        with _aws_errors(f"PurgeQueue on {queue_name}"):
            await client.purge_queue(QueueUrl=url)

    async def _delete(self, queue_name: str, message_id: str) -> DeleteOutcome:
        client = self._active_client()
        handle = self._receipt_handle(queue_name, message_id)
        url = await self._queue_url(queue_name)
        with _aws_errors(f"DeleteMessage on {queue_name}"):
            await client.delete_message(QueueUrl=url, ReceiptHandle=handle)
        return DeleteOutcome.DELETED

    async def _delete_many(self, queue_name: str, message_ids: list[str]) -> DeleteReport:
        client = self._active_client()
        url = await self._queue_url(queue_name)
        deleted: list[str] = []
        failed: dict[str, str] = {}

        entries: list[dict[str, str]] = []
        for index, message_id in enumerate(message_ids):
            cached = self._cache.get(queue_name, message_id)
            if cached is None or not cached.properties.get(RECEIPT_HANDLE):
                failed[message_id] = "no receipt handle cached; browse the queue first"
                continue
            entries.append({"Id": str(index), "ReceiptHandle": cached.properties[RECEIPT_HANDLE]})

        for chunk in _chunks(entries, MAX_DELETE_BATCH):
            by_entry = {entry["Id"]: message_ids[int(entry["Id"])] for entry in chunk}
            try:
                with _aws_errors(f"DeleteMessageBatch on {queue_name}"):
                    response = await client.delete_message_batch(QueueUrl=url, Entries=list(chunk))
            except BackendError as exc:
                failed.update({message_id: str(exc) for message_id in by_entry.values()})
                continue
            for success in response.get("Successful", []):
                deleted.append(by_entry[success["Id"]])
            for failure in response.get("Failed", []):
                failed[by_entry[failure["Id"]]] = failure.get("Message") or failure.get("Code", "unknown error")
        return DeleteReport(deleted=tuple(deleted), failed=failed)

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        attributes = await self._attributes(queue_name, ["All"])
        created = attributes.get("CreatedTimestamp")
        return QueueProperties(
            name=queue_name,
            depth=_int(attributes.get("ApproximateNumberOfMessages"), UNKNOWN_DEPTH),
            type=_queue_type(queue_name),
            description=self._queue_urls.get(queue_name),
            created_at=datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None,
            extra={
                "queue_arn": attributes.get("QueueArn"),
                "in_flight": _int(attributes.get("ApproximateNumberOfMessagesNotVisible"), None),
                "delayed": _int(attributes.get("ApproximateNumberOfMessagesDelayed"), None),
                "visibility_timeout": _int(attributes.get("VisibilityTimeout"), 30),
                "maximum_message_size": _int(attributes.get("MaximumMessageSize"), None),
                "message_retention_period": _int(attributes.get("MessageRetentionPeriod"), None),
                "delay_seconds": _int(attributes.get("DelaySeconds"), 0),
                "receive_message_wait_time_seconds": _int(attributes.get("ReceiveMessageWaitTimeSeconds"), 0),
                "fifo_queue": attributes.get("FifoQueue") == "true",
                "content_based_deduplication": attributes.get("ContentBasedDeduplication") == "true",
            },
        )

    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        async def _approximate() -> int | None:
            attributes = await self._attributes(queue_name, ["ApproximateNumberOfMessages"])
            return _int(attributes.get("ApproximateNumberOfMessages"), None)

        return (("ApproximateNumberOfMessages", _approximate),)

    # -- helpers ---------------------------------------------------------

    def _active_client(self) -> Any:
        if self._client is None:
            raise BackendError("SQS client is not open")
        return self._client

    async def _queue_url(self, queue_name: str) -> str:
        if queue_name.startswith(("https://", "http://")):
            return queue_name
        url = self._queue_urls.get(queue_name)
        if url is not None:
            return url
        if self._queue_url_prefix:
            url = f"{self._queue_url_prefix}/{queue_name}"
        else:
            with _aws_errors(f"GetQueueUrl for {queue_name}"):
                response = await self._active_client().get_queue_url(QueueName=queue_name)
            url = response["QueueUrl"]
        self._queue_urls[queue_name] = url
        return url

    async def _attributes(self, queue_name: str, names: list[str]) -> dict[str, str]:
        url = await self._queue_url(queue_name)
        with _aws_errors(f"GetQueueAttributes for {queue_name}"):
            response = await self._active_client().get_queue_attributes(QueueUrl=url, AttributeNames=names)
        return response.get("Attributes", {})

    def _receipt_handle(self, queue_name: str, message_id: str) -> str:
        cached = self._cache.get(queue_name, message_id)
        if cached is None or not cached.properties.get(RECEIPT_HANDLE):
            raise MessageNotFoundError(
                f"Message {message_id} is not in the browse cache for {queue_name}; browse the queue first"
            )
        return cached.properties[RECEIPT_HANDLE]

    async def _restore_visibility(self, url: str, queue_name: str, messages: Sequence[dict[str, Any]]) -> None:
        """Make received messages that the browse does not return visible again."""

        client = self._active_client()
        for chunk in _chunks(messages, MAX_DELETE_BATCH):
            entries = [
                {"Id": str(index), "ReceiptHandle": raw["ReceiptHandle"], "VisibilityTimeout": 0}
                for index, raw in enumerate(chunk)
            ]
            try:
                response = await client.change_message_visibility_batch(QueueUrl=url, Entries=entries)
            except (ClientError, BotoCoreError):
                LOG.warning("Could not restore visibility of skipped messages on %s", queue_name, exc_info=True)
                continue
            if response.get("Failed"):
                LOG.warning("%d skipped messages on %s stay invisible", len(response["Failed"]), queue_name)


def _to_message(raw: dict[str, Any]) -> Message:
    message_attributes: dict[str, Any] = {}
    for name, value in (raw.get("MessageAttributes") or {}).items():
        if "StringValue" in value:
            message_attributes[name] = value["StringValue"]
        else:
            message_attributes[name] = value.get("BinaryValue")
    attributes = raw.get("Attributes") or {}
    sent = attributes.get("SentTimestamp")
    correlation = message_attributes.get(CORRELATION_ATTRIBUTE)
    return Message(
        id=raw["MessageId"],
        payload=raw.get("Body", ""),
        correlation_id=correlation if isinstance(correlation, str) else None,
        timestamp=datetime.fromtimestamp(int(sent) / 1000, tz=timezone.utc) if sent else None,
        properties={
            RECEIPT_HANDLE: raw.get("ReceiptHandle"),
            "md5_of_body": raw.get("MD5OfBody"),
            "attributes": dict(attributes),
            "message_attributes": message_attributes,
        },
    )


def _body_text(payload: Payload) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BackendError("SQS message bodies must be valid UTF-8 text") from exc


def _string_attribute(value: Any) -> dict[str, str]:
    return {"DataType": "String", "StringValue": str(value)}


def _queue_type(name: str) -> str:
    return "FIFO" if name.endswith(".fifo") else "Standard"


def _int(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


__all__ = ["SqsParams", "SqsProvider"]
