"""In-process demo backend used for local exploration and tests."""

from __future__ import annotations

import itertools
from collections import deque
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field

from mqexplorer.models import (
    BrowseOptions,
    DeleteOutcome,
    Message,
    Payload,
    ProviderKind,
    QueueInfo,
    QueueProperties,
)

from .base import BaseProvider, DepthProbe, matches_filter
from .types import BackendError, MessageNotFoundError

DEMO_QUEUE_PRESETS: Mapping[str, Sequence[str]] = {
    "DEV.QUEUE.1": ("hello from the demo backend", '{"order": 1001, "status": "new"}'),
    "DEV.QUEUE.2": (),
    "DEV.DEAD.LETTER": ("undeliverable payload",),
}


class MemoryParams(BaseModel):
    """Connection parameters for the demo backend."""

    queues: dict[str, list[str]] | None = None
    max_depth: int = Field(default=5000, ge=1)
    fail_connect: bool = False


class MemoryProvider(BaseProvider):
    """Keeps queues in process memory; supports native per-message delete."""

    kind = ProviderKind.MEMORY
    display_name = "Demo backend"
    params_model = MemoryParams

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._queues: dict[str, deque[Message]] = {}
        self._max_depth = 5000
        self._sequence = itertools.count(1)

    async def _open(self, params: MemoryParams) -> None:
        if params.fail_connect:
            raise BackendError("Demo backend refused the connection")
        self._max_depth = params.max_depth
        seed = params.queues if params.queues is not None else DEMO_QUEUE_PRESETS
        self._queues = {}
        for name, payloads in seed.items():
            queue = self._queues.setdefault(name, deque())
            for payload in payloads:
                queue.append(self._build(payload, {}))

    async def _close(self) -> None:
        self._queues = {}

    async def _list_queues(self, filter: str | None) -> Sequence[QueueInfo]:
        return [
            QueueInfo(name=name, depth=len(queue), type="Local", description="Demo queue")
            for name, queue in sorted(self._queues.items())
            if matches_filter(filter, name)
        ]

    async def _browse(self, queue_name: str, options: BrowseOptions) -> Sequence[Message]:
        queue = self._queue(queue_name)
        candidates = [
            message for message in queue if options.filter is None or options.filter.matches(message)
        ]
        return candidates[options.start_position : options.window]

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        queue = self._queues.setdefault(queue_name, deque())
        if len(queue) >= self._max_depth:
            raise BackendError(f"Queue {queue_name} is full ({self._max_depth} messages)")
        queue.append(self._build(payload, properties))

    async def _clear(self, queue_name: str) -> None:
        self._queue(queue_name).clear()

    async def _delete(self, queue_name: str, message_id: str) -> DeleteOutcome:
        queue = self._queue(queue_name)
        for message in queue:
            if message.id == message_id:
                queue.remove(message)
                return DeleteOutcome.DELETED
        raise MessageNotFoundError(f"Message {message_id} not found in queue {queue_name}")

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        queue = self._queue(queue_name)
        return QueueProperties(
            name=queue_name,
            depth=len(queue),
            max_depth=self._max_depth,
            type="Local",
            description="Demo queue",
        )

    def _depth_probes(self, queue_name: str) -> Sequence[DepthProbe]:
        async def _length() -> int:
            return len(self._queue(queue_name))

        return (("queue length", _length),)

    def _queue(self, queue_name: str) -> deque[Message]:
        try:
            return self._queues[queue_name]
        except KeyError:
            raise BackendError(f"Queue {queue_name} does not exist") from None

    def _build(self, payload: Payload, properties: Mapping[str, Any]) -> Message:
        sequence = next(self._sequence)
        return Message(
            id=str(properties.get("message_id") or uuid4().hex),
            payload=payload,
            correlation_id=properties.get("correlation_id"),
            timestamp=datetime.now(tz=timezone.utc),
            properties={**properties, "sequence_number": sequence},
        )


__all__ = ["DEMO_QUEUE_PRESETS", "MemoryParams", "MemoryProvider"]
