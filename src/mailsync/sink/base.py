"""Interfaces of the downstream collaborators fed by the sync engine."""

from __future__ import annotations

from typing import Any, Dict, Protocol, Sequence, runtime_checkable

from ..imap.email_parser import Message


@runtime_checkable
class IndexSink(Protocol):
    """Search/index store receiving parsed messages.

    Delivery is at-least-once: ``index`` must upsert by message id.
    """

    async def index(self, messages: Sequence[Message]) -> None:
        ...

    async def update(self, message_id: str, fields: Dict[str, Any]) -> None:
        ...

    async def delete(self, message_id: str) -> None:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class EventBroadcaster(Protocol):
    """Fire-and-forget live event transport."""

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        ...


__all__ = ["EventBroadcaster", "IndexSink"]
