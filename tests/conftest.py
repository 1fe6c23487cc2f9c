"""Shared test fixtures and a fake IMAP server for mailsync tests."""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pytest
from imapclient.exceptions import LoginError

from mailsync.configuration import SyncSettings
from mailsync.imap.accounts import Account


# ============================================================================
# Message builders
# ============================================================================


def build_message(
    *,
    subject: str = "Hello",
    body: str = "Hello there",
    sender: str = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    sent_at: Optional[datetime] = None,
    message_id: str = "<msg-1@example.com>",
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = format_datetime(sent_at or datetime.now(timezone.utc))
    msg["Message-ID"] = message_id
    msg.set_content(body)
    return msg.as_bytes()


def build_corrupt_message(message_id: str = "<broken@example.com>") -> bytes:
    """A message whose body uses a charset no codec exists for."""
    return (
        b"From: alice@example.com\r\n"
        b"To: bob@example.com\r\n"
        b"Subject: broken\r\n"
        b"Date: Mon, 06 Oct 2025 10:00:00 +0000\r\n"
        b"Message-ID: " + message_id.encode() + b"\r\n"
        b"MIME-Version: 1.0\r\n"
        b"Content-Type: text/plain; charset=x-no-such-charset\r\n"
        b"\r\n"
        b"unreadable\r\n"
    )


# ============================================================================
# Fake IMAP server
# ============================================================================


class FakeIMAPClient:
    """In-process stand-in for ``imapclient.IMAPClient``."""

    def __init__(
        self,
        server: "FakeMailServer",
        host: str,
        port: int = 993,
        use_uid: bool = True,
        ssl: bool = True,
        ssl_context: Any = None,
        timeout: Any = None,
    ) -> None:
        self.server = server
        self.host = host
        self.port = port
        self.ssl = ssl
        self.ssl_context = ssl_context
        self.timeout = timeout
        self.starttls_called = False
        self.logged_in_as: Optional[str] = None
        self.selected: Optional[str] = None
        self.readonly: Optional[bool] = None
        self.closed = False
        self.logged_out = False
        self.idling = False
        self.search_calls: List[List[Any]] = []
        self.fetch_calls: List[List[int]] = []
        self._responses: List[Any] = []
        self._lock = threading.Lock()
        self._wakeup = threading.Event()

    def _check_open(self) -> None:
        if self.closed:
            raise OSError("socket closed")

    def starttls(self, ssl_context: Any = None) -> None:
        self.starttls_called = True
        self.ssl_context = ssl_context

    def login(self, username: str, password: str) -> bytes:
        self._check_open()
        if self.server.password is not None and password != self.server.password:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.server.enter_login()
        try:
            time.sleep(self.server.login_delay)
        finally:
            self.server.leave_login()
        self.logged_in_as = username
        return b"LOGIN completed"

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self._check_open()
        self.selected = folder
        self.readonly = readonly
        return {b"EXISTS": len(self.server.messages), b"UIDVALIDITY": 1}

    def folder_status(self, folder: str, what: Sequence[Any] = ()) -> Dict[bytes, Any]:
        self._check_open()
        return {b"MESSAGES": len(self.server.messages)}

    def has_capability(self, capability: str) -> bool:
        return capability.upper().encode() in self.server.capabilities

    def search(self, criteria: Sequence[Any]) -> List[int]:
        self._check_open()
        criteria = list(criteria)
        self.search_calls.append(criteria)
        return self.server.matching(criteria)

    def fetch(self, uids: Iterable[int], items: Sequence[str]) -> Dict[int, Dict[bytes, Any]]:
        self._check_open()
        uids = list(uids)
        self.fetch_calls.append(uids)
        if self.server.on_fetch is not None:
            self.server.on_fetch()
        response = {}
        for seq, uid in enumerate(uids, start=1):
            stored = self.server.messages.get(uid)
            if stored is None:
                continue
            response[uid] = {
                b"SEQ": seq,
                b"UID": uid,
                b"FLAGS": tuple(stored["flags"]),
                b"INTERNALDATE": stored["internal_date"],
                b"RFC822.SIZE": len(stored["raw"] or b""),
                b"BODY[]": stored["raw"],
            }
        return response

    def idle(self) -> None:
        self._check_open()
        if self.server.drop_pre_idle_responses:
            # imaplib keeps these in its own untagged store; IDLE never reports them.
            self._take_responses()
        self.idling = True

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        self._wakeup.wait(timeout)
        if self.closed:
            raise OSError("socket closed during IDLE")
        return self._take_responses()

    def idle_done(self) -> tuple:
        self.idling = False
        return (b"IDLE terminated", self._take_responses())

    def noop(self) -> tuple:
        self._check_open()
        return (b"NOOP completed", self._take_responses())

    def logout(self) -> bytes:
        self._check_open()
        self.logged_out = True
        self.closed = True
        return b"BYE"

    def shutdown(self) -> None:
        self.closed = True
        self._wakeup.set()

    def push(self, response: Any) -> None:
        with self._lock:
            self._responses.append(response)
        self._wakeup.set()

    def _take_responses(self) -> List[Any]:
        with self._lock:
            responses, self._responses = self._responses, []
            self._wakeup.clear()
        return responses


class FakeMailServer:
    """Mailbox contents plus the knobs tests use to inject failures."""

    def __init__(self) -> None:
        self.messages: Dict[int, Dict[str, Any]] = {}
        self.capabilities: List[bytes] = [b"IMAP4REV1", b"IDLE"]
        self.password: Optional[str] = None
        self.connect_error: Optional[BaseException] = None
        self.connect_attempts = 0
        self.clients: List[FakeIMAPClient] = []
        self.drop_pre_idle_responses = False
        self.on_fetch: Optional[Callable[[], None]] = None
        self.login_delay = 0.0
        self.logins_in_flight = 0
        self.peak_logins_in_flight = 0
        self._login_lock = threading.Lock()
        self._next_uid = 1

    def enter_login(self) -> None:
        with self._login_lock:
            self.logins_in_flight += 1
            self.peak_logins_in_flight = max(self.peak_logins_in_flight, self.logins_in_flight)

    def leave_login(self) -> None:
        with self._login_lock:
            self.logins_in_flight -= 1

    def __call__(self, host: str, **kwargs: Any) -> FakeIMAPClient:
        self.connect_attempts += 1
        if self.connect_error is not None:
            raise self.connect_error
        client = FakeIMAPClient(self, host, **kwargs)
        self.clients.append(client)
        return client

    @property
    def open_clients(self) -> List[FakeIMAPClient]:
        return [client for client in self.clients if not client.closed]

    @property
    def last_client(self) -> FakeIMAPClient:
        return self.clients[-1]

    def add_message(
        self,
        raw: bytes,
        *,
        flags: Sequence[bytes] = (),
        internal_date: Optional[datetime] = None,
    ) -> int:
        uid = self._next_uid
        self._next_uid += 1
        self.messages[uid] = {
            "raw": raw,
            "flags": list(flags),
            "internal_date": internal_date or datetime.now(timezone.utc),
        }
        return uid

    def deliver(self, raw: bytes, *, flags: Sequence[bytes] = ()) -> int:
        """Add a message and notify every idling client with EXISTS."""
        uid = self.add_message(raw, flags=flags)
        for client in self.open_clients:
            client.push((len(self.messages), b"EXISTS"))
        return uid

    def matching(self, criteria: List[Any]) -> List[int]:
        uids = []
        for uid, stored in sorted(self.messages.items()):
            if _matches(stored, criteria):
                uids.append(uid)
        return uids


def _matches(stored: Dict[str, Any], criteria: List[Any]) -> bool:
    items = iter(criteria)
    for item in items:
        key = str(item).upper()
        if key == "ALL":
            continue
        if key == "UNSEEN":
            if b"\\Seen" in stored["flags"]:
                return False
        elif key == "SINCE":
            since = next(items)
            if isinstance(since, datetime):
                since = since.date()
            assert isinstance(since, date)
            if stored["internal_date"].date() < since:
                return False
        else:
            raise AssertionError(f"Unsupported search key {item!r}")
    return True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_server(monkeypatch: pytest.MonkeyPatch) -> FakeMailServer:
    server = FakeMailServer()
    monkeypatch.setattr("mailsync.imap.connection.IMAPClient", server)
    return server


@pytest.fixture
def account() -> Account:
    return Account(
        id="account-1",
        address="alice@example.com",
        credential="app-password",
        host="imap.example.com",
    )


@pytest.fixture
def fast_settings() -> SyncSettings:
    return SyncSettings(
        retry_delay_seconds=0.05,
        idle_renewal_seconds=1.0,
        noop_poll_seconds=0.05,
        stop_timeout_seconds=2.0,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)
