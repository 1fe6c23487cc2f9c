"""Session manager: the control surface of the sync engine.

One manager instance is constructed by the process entry point and passed to
whatever needs it. It owns the account-to-session mapping and serializes
every start and stop against each other. Each session publishes onto its own
channel; the manager pumps all channels into every open subscription.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from ..configuration import SyncSettings
from ..errors import NotFoundError
from .accounts import Account
from .email_parser import MessageParser
from .events import EventSubscription, SyncEvent
from .reconnect import ReconnectPolicy, build_reconnect_policy
from .session import ConnectionStatus, Session


logger = logging.getLogger(__name__)

_CHANNEL_CLOSED = object()


class SessionManager:
    """Start, stop and observe per-account sync sessions."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        parser: Optional[MessageParser] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        self._parser = parser or MessageParser()
        self._reconnect_policy = reconnect_policy or build_reconnect_policy(self.settings)
        self._limiter: Optional[asyncio.Semaphore] = None
        if self.settings.max_concurrent_connects:
            self._limiter = asyncio.Semaphore(self.settings.max_concurrent_connects)

        self._accounts: Dict[str, Account] = {}
        self._sessions: Dict[str, Session] = {}
        self._channels: Dict[str, "asyncio.Queue[object]"] = {}
        self._pumps: Dict[str, "asyncio.Task[None]"] = {}
        self._subscriptions: List[EventSubscription] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Accounts and subscriptions
    # ------------------------------------------------------------------

    def register(self, accounts: Iterable[Account]) -> None:
        """Make accounts known to the manager without starting them."""
        for account in accounts:
            self._accounts[account.id] = account

    def accounts(self) -> List[Account]:
        return list(self._accounts.values())

    def subscribe(self, maxsize: int = 0) -> EventSubscription:
        """Receive every event published from now on."""
        subscription = EventSubscription(maxsize, on_close=self._unsubscribe)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    async def start_all(self, accounts: Optional[Iterable[Account]] = None) -> None:
        """Start a session for every active account not already running."""
        if accounts is not None:
            self.register(accounts)

        async with self._lock:
            for account in list(self._accounts.values()):
                if not account.active:
                    logger.info(
                        f"Skipping inactive account {account.id}",
                        extra={"account_id": account.id},
                    )
                    continue
                if account.id in self._sessions:
                    continue
                await self._start_session(account)

        logger.info(f"{len(self._sessions)} sync session(s) running")

    async def start_one(self, account_id: str) -> None:
        """Start, or restart, the session of one registered account.

        Raises:
            NotFoundError: If ``account_id`` was never registered
        """
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(
                f"Account {account_id!r} not found", details={"account_id": account_id}
            )

        async with self._lock:
            if not account.active:
                logger.warning(
                    f"Account {account_id} is inactive, not starting",
                    extra={"account_id": account_id},
                )
                return
            if account_id in self._sessions:
                await self._stop_session(account_id)
            await self._start_session(account)

    async def stop_one(self, account_id: str) -> None:
        """Stop one session. Unknown or stopped accounts are a no-op."""
        async with self._lock:
            await self._stop_session(account_id)

    async def stop_all(self) -> None:
        async with self._lock:
            await asyncio.gather(
                *(self._stop_session(account_id) for account_id in list(self._sessions))
            )
        logger.info("All sync sessions stopped")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> List[ConnectionStatus]:
        return [session.status() for session in self._sessions.values()]

    def is_connected(self, account_id: str) -> bool:
        session = self._sessions.get(account_id)
        return session is not None and session.connected

    # ------------------------------------------------------------------
    # Internals (called with the lock held)
    # ------------------------------------------------------------------

    async def _start_session(self, account: Account) -> None:
        channel: "asyncio.Queue[object]" = asyncio.Queue()
        session = Session(
            account,
            channel,  # type: ignore[arg-type]
            settings=self.settings,
            parser=self._parser,
            reconnect_policy=self._reconnect_policy,
            connect_limiter=self._limiter,
        )
        self._sessions[account.id] = session
        self._channels[account.id] = channel
        self._pumps[account.id] = asyncio.get_running_loop().create_task(
            self._pump(channel), name=f"mailsync-pump-{account.id}"
        )
        await session.start()
        logger.info(f"Started session for {account.id}", extra={"account_id": account.id})

    async def _stop_session(self, account_id: str) -> None:
        session = self._sessions.pop(account_id, None)
        if session is None:
            return

        await session.stop()
        channel = self._channels.pop(account_id)
        pump = self._pumps.pop(account_id)
        # Events already queued are still delivered before the pump exits.
        await channel.put(_CHANNEL_CLOSED)
        await pump
        logger.info(f"Stopped session for {account_id}", extra={"account_id": account_id})

    async def _pump(self, channel: "asyncio.Queue[object]") -> None:
        while True:
            event = await channel.get()
            if event is _CHANNEL_CLOSED:
                return
            self._publish(event)  # type: ignore[arg-type]

    def _publish(self, event: SyncEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.deliver(event)


__all__ = ["SessionManager"]
