"""Typed events published by sync sessions.

Events are the only externally observable output of a session. They carry
their own account identifier, so the session manager re-publishes them
untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple

from ..errors import MailSyncError
from .email_parser import Message


logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NEW_EMAILS = "new_emails"
    SYNC_ERROR = "sync_error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncEvent:
    account_id: str
    occurred_at: datetime = field(default_factory=_utcnow, kw_only=True)

    kind: ClassVar[EventKind]

    def to_payload(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "occurred_at": self.occurred_at.isoformat()}


@dataclass(frozen=True)
class Connected(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.CONNECTED


@dataclass(frozen=True)
class Disconnected(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.DISCONNECTED


@dataclass(frozen=True)
class NewEmails(SyncEvent):
    """One fetch batch. Emitted once per successful non-empty search."""

    kind: ClassVar[EventKind] = EventKind.NEW_EMAILS

    messages: Tuple[Message, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["count"] = len(self.messages)
        payload["messages"] = [message.to_document() for message in self.messages]
        return payload


@dataclass(frozen=True)
class SyncError(SyncEvent):
    kind: ClassVar[EventKind] = EventKind.SYNC_ERROR

    error: MailSyncError = field(default_factory=MailSyncError)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["error"] = self.error.to_dict()
        return payload


_CLOSED = object()


class EventSubscription:
    """Queue-backed async iterator over events re-published by the manager.

    Delivery is best-effort: with a bounded ``maxsize`` events that do not
    fit are dropped and logged instead of blocking the sessions.
    """

    def __init__(
        self,
        maxsize: int = 0,
        *,
        on_close: Optional[Callable[["EventSubscription"], None]] = None,
    ) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize)
        self._on_close = on_close
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: SyncEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Subscriber queue full, dropping {event.kind.value} event",
                extra={"account_id": event.account_id},
            )
            return False
        return True

    async def get(self) -> Optional[SyncEvent]:
        """Next event, or None once the subscription is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> SyncEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


__all__ = [
    "Connected",
    "Disconnected",
    "EventKind",
    "EventSubscription",
    "NewEmails",
    "SyncError",
    "SyncEvent",
]
