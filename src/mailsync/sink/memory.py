"""In-process sink adapters used by the CLI and the tests."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import NotFoundError
from ..imap.email_parser import Message


logger = logging.getLogger(__name__)


class InMemoryIndexSink:
    """Index documents keyed by message id; re-indexing overwrites."""

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self._documents.get(message_id)

    def documents(self, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            document
            for document in self._documents.values()
            if account_id is None or document.get("account_id") == account_id
        ]

    async def index(self, messages: Sequence[Message]) -> None:
        for message in messages:
            self._documents[message.id] = message.to_document()
        logger.debug(f"Indexed {len(messages)} message(s)")

    async def update(self, message_id: str, fields: Dict[str, Any]) -> None:
        document = self._documents.get(message_id)
        if document is None:
            raise NotFoundError(
                f"Message {message_id!r} not indexed", details={"message_id": message_id}
            )
        document.update(fields)

    async def delete(self, message_id: str) -> None:
        self._documents.pop(message_id, None)

    async def ping(self) -> bool:
        return True


class LoggingBroadcaster:
    """Writes every published event to the log and keeps the last few."""

    def __init__(self, history: int = 100) -> None:
        self.history = history
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        account_id = payload.get("account_id")
        if kind == "new_emails":
            logger.info(f"[{account_id}] {kind}: {payload.get('count', 0)} message(s)")
        elif kind == "sync_error":
            error = payload.get("error") or {}
            logger.warning(f"[{account_id}] {kind}: {error.get('message')}")
        else:
            logger.info(f"[{account_id}] {kind}")

        self.published.append((kind, payload))
        if len(self.published) > self.history:
            del self.published[: len(self.published) - self.history]


__all__ = ["InMemoryIndexSink", "LoggingBroadcaster"]
