"""Forward session events to the index store and the live broadcaster.

Sink failures are logged and counted; they never reach the sessions.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..imap.events import EventSubscription, NewEmails, SyncEvent
from .base import EventBroadcaster, IndexSink


logger = logging.getLogger(__name__)


class SinkDispatcher:
    """Consume a manager subscription until it is closed."""

    def __init__(
        self,
        subscription: EventSubscription,
        *,
        index_sink: Optional[IndexSink] = None,
        broadcaster: Optional[EventBroadcaster] = None,
    ) -> None:
        self.subscription = subscription
        self.index_sink = index_sink
        self.broadcaster = broadcaster
        self.failures = 0

    async def run(self) -> None:
        async for event in self.subscription:
            await self.handle(event)

    async def handle(self, event: SyncEvent) -> None:
        if self.index_sink is not None and isinstance(event, NewEmails) and event.messages:
            try:
                await self.index_sink.index(list(event.messages))
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                logger.error(
                    f"Indexing {len(event.messages)} message(s) for {event.account_id} failed: {exc}",
                    extra={"account_id": event.account_id},
                    exc_info=exc,
                )

        if self.broadcaster is not None:
            try:
                await self.broadcaster.publish(event.kind.value, event.to_payload())
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                logger.error(
                    f"Broadcasting {event.kind.value} for {event.account_id} failed: {exc}",
                    extra={"account_id": event.account_id},
                    exc_info=exc,
                )


__all__ = ["SinkDispatcher"]
