"""
In-process domain events for boards, tickets, comments and attachments.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from .diff import jsonable

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class EventType(StrEnum):
    BOARD_CREATED = "board:created"
    BOARD_UPDATED = "board:updated"
    BOARD_DELETED = "board:deleted"

    TICKET_CREATED = "ticket:created"
    TICKET_UPDATED = "ticket:updated"
    TICKET_DELETED = "ticket:deleted"

    COMMENT_CREATED = "comment:created"

    ATTACHMENT_CREATED = "attachment:created"
    ATTACHMENT_DELETED = "attachment:deleted"


@dataclass
class DomainEvent:
    """A single notification handed to subscribers."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    board_id: str | None = None
    ticket_id: str | None = None
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "board_id": self.board_id,
            "ticket_id": self.ticket_id,
            "data": jsonable(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[DomainEvent], Awaitable[None] | None]


class EventBus:
    """Ordered publish/subscribe.

    Handlers run one after another in subscription order. A failing handler is
    logged and skipped unless ``propagate_errors`` is set, in which case the
    exception reaches the code that emitted the event.
    """

    def __init__(self, *, propagate_errors: bool = False) -> None:
        self.propagate_errors = propagate_errors
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscriptions.append((str(event_name), handler))

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        entry = (str(event_name), handler)
        if entry in self._subscriptions:
            self._subscriptions.remove(entry)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return [h for name, h in self._subscriptions if name in (event_name, ALL_EVENTS)]

    async def emit(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(event.type.value):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                if self.propagate_errors:
                    raise
                logger.exception("Event handler %r failed for %s", handler, event.type.value)


class RedisEventPublisher:
    """Bus subscriber that fans events out to Redis Pub/Sub, one channel per board."""

    def __init__(self, redis: Any, *, channel_prefix: str = "channel") -> None:
        self._redis = redis
        self._prefix = channel_prefix

    def channel_for(self, event: DomainEvent) -> str:
        if event.board_id:
            return f"{self._prefix}:board:{event.board_id}"
        return f"{self._prefix}:events"

    async def __call__(self, event: DomainEvent) -> None:
        try:
            await self._redis.publish(self.channel_for(event), json.dumps(event.to_dict()))
        except Exception as exc:
            logger.warning("Redis publish failed for %s: %s", event.type.value, exc)
