"""Per-adapter message cache backing delete operations."""

from __future__ import annotations

from typing import Iterable

from .models import Message


class MessageCache:
    """Queue name -> message id -> message, populated by browse calls.

    Entries are snapshots taken when a browse returned them; they are not
    refreshed when the backend changes underneath.
    """

    def __init__(self) -> None:
        self._queues: dict[str, dict[str, Message]] = {}

    def store(self, queue_name: str, messages: Iterable[Message]) -> None:
        """Record browsed messages, replacing stale entries with the same id."""

        bucket = self._queues.setdefault(queue_name, {})
        for message in messages:
            bucket[message.id] = message

    def get(self, queue_name: str, message_id: str) -> Message | None:
        bucket = self._queues.get(queue_name)
        if bucket is None:
            return None
        return bucket.get(message_id)

    def contains(self, queue_name: str, message_id: str) -> bool:
        return self.get(queue_name, message_id) is not None

    def messages(self, queue_name: str) -> tuple[Message, ...]:
        return tuple(self._queues.get(queue_name, {}).values())

    def evict(self, queue_name: str, message_id: str) -> Message | None:
        """Remove a single entry, returning it if it was cached."""

        bucket = self._queues.get(queue_name)
        if bucket is None:
            return None
        message = bucket.pop(message_id, None)
        if not bucket:
            self._queues.pop(queue_name, None)
        return message

    def invalidate(self, queue_name: str) -> None:
        """Drop everything cached for a queue."""

        self._queues.pop(queue_name, None)

    def clear(self) -> None:
        self._queues.clear()

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._queues.values())

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._queues


__all__ = ["MessageCache"]
