"""Per-account sync session.

A session owns exactly one IMAP connection and walks it through
``connecting -> authenticating -> backfilling -> idle <-> fetching``. Any
failure drops the connection back to ``disconnected``; the session then
waits for its reconnect policy and tries again until it is stopped.

Sessions never call back into their owner: everything they have to say is
put on the event channel handed to them by the session manager.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..configuration import SyncSettings
from ..errors import ConnectError, MailSyncError, ParseError
from .accounts import Account
from .connection import BODY_KEY, ConnectionState, ImapConnection
from .email_parser import Message, MessageParser, RawEnvelope
from .events import Connected, Disconnected, NewEmails, SyncError, SyncEvent
from .reconnect import ConstantDelayPolicy, ReconnectPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionStatus:
    """Point-in-time view of one session."""

    account_id: str
    connected: bool
    last_activity: Optional[datetime]
    state: ConnectionState = ConnectionState.DISCONNECTED
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "connected": self.connected,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "state": self.state.value,
            "retry_count": self.retry_count,
        }


class Session:
    """Sync loop for one account, run as a single asyncio task."""

    def __init__(
        self,
        account: Account,
        channel: "asyncio.Queue[SyncEvent]",
        *,
        settings: Optional[SyncSettings] = None,
        parser: Optional[MessageParser] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        connect_limiter: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self.account = account
        self.settings = settings or SyncSettings()
        self.parser = parser or MessageParser()
        self.reconnect_policy = reconnect_policy or ConstantDelayPolicy(
            self.settings.retry_delay_seconds
        )
        self._channel = channel
        self._connect_limiter = connect_limiter

        self.state = ConnectionState.DISCONNECTED
        self.last_activity: Optional[datetime] = None
        self.retry_count = 0

        self._connection: Optional[ImapConnection] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def connected(self) -> bool:
        return self.state.is_connected

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            account_id=self.account_id,
            connected=self.connected,
            last_activity=self.last_activity,
            state=self.state,
            retry_count=self.retry_count,
        )

    async def start(self) -> None:
        """Start the sync loop."""
        if self.running:
            raise RuntimeError(f"Session {self.account_id} already running")

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"mailsync-session-{self.account_id}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, interrupting any blocked IMAP call.

        Waits up to ``timeout`` seconds (``stop_timeout_seconds`` by default)
        for the loop to wind down, then cancels it.
        """
        self._stop_event.set()
        connection = self._connection
        if connection is not None:
            connection.abort()

        task = self._task
        if task is None:
            return
        timeout = self.settings.stop_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Session {self.account_id} did not stop within {timeout:.1f}s, cancelling",
                extra={"account_id": self.account_id},
            )
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None
            self.state = ConnectionState.DISCONNECTED

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._sync_once()
            if self._stop_event.is_set():
                break

            delay = self.reconnect_policy.next_delay(self.retry_count)
            self.retry_count += 1
            logger.info(
                f"Reconnecting {self.account_id} in {delay:.1f}s (attempt {self.retry_count})",
                extra={"account_id": self.account_id, "retry_count": self.retry_count},
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                # Timeout is expected - reconnect
                pass

    async def _sync_once(self) -> None:
        """One connection lifetime: connect, backfill, then idle until failure."""
        connection = ImapConnection(
            self.account,
            connection_timeout=self.settings.connect_timeout_seconds,
            verify_certificates=self.settings.verify_certificates,
        )
        self._connection = connection
        transport_open = False

        try:
            self._set_state(ConnectionState.CONNECTING)
            async with self._connect_slot():
                if self._stop_event.is_set():
                    return
                await asyncio.to_thread(connection.open)
                transport_open = True
                self._set_state(ConnectionState.AUTHENTICATING)
                await asyncio.to_thread(connection.login)
                info = await asyncio.to_thread(connection.select_mailbox, self.settings.mailbox)
            known_count = int(info.get(b"EXISTS", 0))

            opened_at = datetime.now(timezone.utc)
            self.retry_count = 0
            self._set_state(ConnectionState.BACKFILLING)
            logger.info(
                f"Opened {self.settings.mailbox} for {self.account_id}",
                extra={"account_id": self.account_id, "folder": self.settings.mailbox},
            )
            await self._emit(Connected(self.account_id))

            since = (opened_at - timedelta(days=self.settings.backfill_days)).date()
            await self._fetch_and_emit(["SINCE", since], label="backfill")

            use_idle = await asyncio.to_thread(connection.supports_idle)
            if use_idle:
                wait_timeout = self.settings.idle_renewal_seconds
            else:
                wait_timeout = self.settings.noop_poll_seconds
                logger.info(
                    f"Server for {self.account_id} lacks IDLE, polling every {wait_timeout:.0f}s",
                    extra={"account_id": self.account_id},
                )

            while not self._stop_event.is_set():
                # EXISTS sent during SEARCH/FETCH never reaches the IDLE reader.
                current_count = await asyncio.to_thread(
                    connection.message_count, self.settings.mailbox
                )
                if current_count > known_count:
                    known_count = current_count
                    self._set_state(ConnectionState.FETCHING)
                    await self._fetch_and_emit(["UNSEEN"], label="incremental")
                    continue
                known_count = current_count

                self._set_state(ConnectionState.IDLE)
                has_new_mail = await asyncio.to_thread(
                    connection.wait_for_changes, wait_timeout, use_idle
                )
                if self._stop_event.is_set():
                    break
                if has_new_mail:
                    self._set_state(ConnectionState.FETCHING)
                    known_count = await asyncio.to_thread(
                        connection.message_count, self.settings.mailbox
                    )
                    await self._fetch_and_emit(["UNSEEN"], label="incremental")

        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if not self._stop_event.is_set():
                await self._report_failure(exc)
        finally:
            self._connection = None
            await asyncio.to_thread(connection.close)
            self._set_state(ConnectionState.DISCONNECTED)
            if transport_open:
                await self._emit(Disconnected(self.account_id))

    async def _fetch_and_emit(self, criteria: Sequence[Any], *, label: str) -> None:
        """Search, fetch and parse; emit the batch unless the search was empty."""
        connection = self._connection
        if connection is None:
            return

        uids = await asyncio.to_thread(connection.search, criteria)
        if not uids:
            logger.debug(
                f"No messages for {label} fetch on {self.account_id}",
                extra={"account_id": self.account_id},
            )
            return

        messages: List[Message] = []
        batch_size = self.settings.fetch_batch_size
        for start in range(0, len(uids), batch_size):
            chunk = uids[start : start + batch_size]
            response = await asyncio.to_thread(connection.fetch, chunk)
            for uid in chunk:
                data = response.get(uid)
                if data is None:
                    logger.debug(
                        f"UID {uid} vanished before fetch",
                        extra={"account_id": self.account_id, "uid": uid},
                    )
                    continue
                message = self._parse(uid, data)
                if message is not None:
                    messages.append(message)

        logger.info(
            f"{label.capitalize()} fetch for {self.account_id}: "
            f"{len(messages)} of {len(uids)} message(s) parsed",
            extra={"account_id": self.account_id, "count": len(messages)},
        )
        await self._emit(NewEmails(self.account_id, messages=tuple(messages)))

    def _parse(self, uid: int, data: Dict[bytes, Any]) -> Optional[Message]:
        try:
            envelope = RawEnvelope(
                uid=data.get(b"UID", uid),
                account_id=self.account_id,
                folder=self.settings.mailbox,
                internal_date=data.get(b"INTERNALDATE"),
                size=data.get(b"RFC822.SIZE"),
            )
            return self.parser.parse(envelope, data.get(BODY_KEY), data.get(b"FLAGS", ()))
        except ParseError as exc:
            logger.warning(
                f"Dropping message {uid} for {self.account_id}: {exc.message}",
                extra={"account_id": self.account_id, "uid": uid, "error": exc.to_dict()},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Dropping message {uid} for {self.account_id}: unexpected {type(exc).__name__}: {exc}",
                extra={"account_id": self.account_id, "uid": uid},
                exc_info=True,
            )
        return None

    async def _report_failure(self, exc: Exception) -> None:
        if isinstance(exc, MailSyncError):
            error = exc
        else:
            error = ConnectError(
                f"{type(exc).__name__}: {exc}",
                details={"account_id": self.account_id, "stage": self.state.value},
            )
        logger.warning(
            f"Sync error for {self.account_id} while {self.state.value}: {error.message}",
            extra={"account_id": self.account_id, "error": error.to_dict()},
        )
        await self._emit(SyncError(self.account_id, error=error))

    def _connect_slot(self) -> Any:
        if self._connect_limiter is None:
            return contextlib.nullcontext()
        return self._connect_limiter

    def _set_state(self, state: ConnectionState) -> None:
        self.state = state
        self.last_activity = datetime.now(timezone.utc)

    async def _emit(self, event: SyncEvent) -> None:
        await self._channel.put(event)


__all__ = ["ConnectionStatus", "Session"]
