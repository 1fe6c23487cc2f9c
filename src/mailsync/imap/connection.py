"""Blocking IMAP connection owned by a single sync session.

The session drives every call here from a worker thread (``asyncio.to_thread``)
so a slow server only ever stalls its own account. ``abort`` is the one
method meant to be called from another thread: it shuts the socket down so a
blocked IDLE wait returns immediately.
"""

from __future__ import annotations

import logging
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from ..configuration import SecurityMode
from ..errors import ConnectError
from .accounts import Account


logger = logging.getLogger(__name__)

# BODY.PEEK keeps the sync engine from setting \Seen on fetched messages.
FETCH_ITEMS = ["UID", "FLAGS", "INTERNALDATE", "RFC822.SIZE", "BODY.PEEK[]"]
BODY_KEY = b"BODY[]"


class ConnectionState(str, Enum):
    """Lifecycle states of a sync session's connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    BACKFILLING = "backfilling"
    IDLE = "idle"
    FETCHING = "fetching"

    @property
    def is_connected(self) -> bool:
        return self in {ConnectionState.BACKFILLING, ConnectionState.IDLE, ConnectionState.FETCHING}


@dataclass
class ImapConnection:
    """One IMAP connection with TLS, STARTTLS or plaintext transport."""

    account: Account
    connection_timeout: float = 60.0
    verify_certificates: bool = True

    client: Optional[IMAPClient] = field(default=None, init=False)
    last_activity: Optional[datetime] = field(default=None, init=False)
    _aborted: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self.client is not None

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def open(self) -> None:
        """Establish the transport. Raises ConnectError on failure."""

        account = self.account
        details = {"account_id": account.id, "host": account.host, "port": account.port}
        logger.debug(f"Connecting to {account.host}:{account.port} ({account.security.value})", extra=details)
        try:
            if account.security is SecurityMode.TLS:
                client = IMAPClient(
                    host=account.host,
                    port=account.port,
                    ssl=True,
                    ssl_context=self._create_ssl_context(),
                    timeout=self.connection_timeout,
                    use_uid=True,
                )
            else:
                client = IMAPClient(
                    host=account.host,
                    port=account.port,
                    ssl=False,
                    timeout=self.connection_timeout,
                    use_uid=True,
                )
                if account.security is SecurityMode.STARTTLS:
                    self.client = client
                    client.starttls(ssl_context=self._create_ssl_context())
        except (IMAPClientError, OSError, ValueError) as exc:
            raise ConnectError(
                f"Could not connect to {account.host}:{account.port}: {exc}",
                details={**details, "stage": "connect"},
            ) from exc

        if self.aborted:
            # close() may already have run while the socket was being opened.
            self.client = None
            try:
                client.shutdown()
            except (IMAPClientError, OSError) as exc:
                logger.debug(f"Socket shutdown after abort failed: {exc}", extra=details)
            raise ConnectError("Connection aborted", details={**details, "stage": "connect"})
        self.client = client
        self._touch()

    def login(self) -> None:
        client = self._require_client()
        try:
            client.login(self.account.address, self.account.credential.get_secret_value())
        except LoginError as exc:
            raise ConnectError(
                f"Authentication failed for {self.account.address}",
                details={"account_id": self.account.id, "stage": "authenticate"},
            ) from exc
        except (IMAPClientError, OSError) as exc:
            raise ConnectError(
                f"Login aborted: {exc}",
                details={"account_id": self.account.id, "stage": "authenticate"},
            ) from exc
        self._touch()

    def select_mailbox(self, folder: str) -> Dict[bytes, Any]:
        """Open ``folder`` read-write so flag changes are observable."""

        client = self._require_client()
        try:
            info = client.select_folder(folder, readonly=False)
        except (IMAPClientError, OSError) as exc:
            raise ConnectError(
                f"Could not open mailbox {folder!r}: {exc}",
                details={"account_id": self.account.id, "folder": folder, "stage": "select"},
            ) from exc
        self._touch()
        return info

    def supports_idle(self) -> bool:
        return bool(self._require_client().has_capability("IDLE"))

    def search(self, criteria: Sequence[Any]) -> List[int]:
        uids = self._require_client().search(list(criteria))
        self._touch()
        return sorted(int(uid) for uid in uids)

    def fetch(self, uids: Iterable[int]) -> Dict[int, Dict[bytes, Any]]:
        uids = list(uids)
        if not uids:
            return {}
        response = self._require_client().fetch(uids, FETCH_ITEMS)
        self._touch()
        return response

    def message_count(self, folder: str) -> int:
        """Current EXISTS count of ``folder`` via STATUS MESSAGES."""

        status = self._require_client().folder_status(folder, [b"MESSAGES"])
        self._touch()
        return int(status.get(b"MESSAGES", 0))

    def wait_for_changes(self, timeout: float, use_idle: bool = True) -> bool:
        """Block until the server reports new mail or ``timeout`` elapses.

        Uses IDLE when available, otherwise sleeps and polls with NOOP.
        Returns True when an EXISTS response was seen.
        """

        client = self._require_client()
        if use_idle:
            client.idle()
            responses = list(client.idle_check(timeout=timeout) or [])
            if self.aborted:
                raise ConnectError("Connection aborted", details={"account_id": self.account.id})
            _, trailing = client.idle_done()
            responses.extend(trailing or [])
        else:
            if self._aborted.wait(timeout):
                raise ConnectError("Connection aborted", details={"account_id": self.account.id})
            _, responses = client.noop()
        self._touch()
        return _has_new_mail(responses)

    def close(self) -> None:
        """Log out, falling back to a hard socket shutdown."""

        client = self.client
        if client is None:
            return
        try:
            if not self.aborted:
                client.logout()
                return
            client.shutdown()
        except (IMAPClientError, OSError) as exc:
            logger.debug(f"Logout failed, shutting socket down: {exc}", extra={"account_id": self.account.id})
            try:
                client.shutdown()
            except (IMAPClientError, OSError):
                logger.debug("Socket already closed", extra={"account_id": self.account.id})
        finally:
            self.client = None

    def abort(self) -> None:
        """Interrupt any blocked call; safe to call from any thread."""

        self._aborted.set()
        client = self.client
        if client is None:
            return
        try:
            client.shutdown()
        except (IMAPClientError, OSError) as exc:
            logger.debug(f"Socket shutdown during abort failed: {exc}", extra={"account_id": self.account.id})

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if self.verify_certificates:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED
        else:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _require_client(self) -> IMAPClient:
        if self.client is None:
            raise ConnectError("Connection is not open", details={"account_id": self.account.id})
        return self.client

    def _touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)


def _has_new_mail(responses: Optional[Iterable[Any]]) -> bool:
    # Untagged responses look like: [(3, b'EXISTS'), (b'OK', b'Still here')]
    for response in responses or ():
        if not isinstance(response, (tuple, list)):
            continue
        for item in response:
            if isinstance(item, bytes):
                item = item.decode("ascii", errors="replace")
            if isinstance(item, str) and item.upper() == "EXISTS":
                return True
    return False


__all__ = ["BODY_KEY", "ConnectionState", "FETCH_ITEMS", "ImapConnection"]
