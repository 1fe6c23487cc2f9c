"""Tests for sync events and subscriptions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from mailsync.errors import ConnectError
from mailsync.imap.email_parser import Message
from mailsync.imap.events import (
    Connected,
    Disconnected,
    EventKind,
    EventSubscription,
    NewEmails,
    SyncError,
)


def _message(uid: int = 1) -> Message:
    return Message(uid=uid, account_id="account-1", date=datetime(2025, 10, 1, tzinfo=timezone.utc))


def test_event_kinds():
    assert Connected("a").kind is EventKind.CONNECTED
    assert Disconnected("a").kind is EventKind.DISCONNECTED
    assert NewEmails("a").kind is EventKind.NEW_EMAILS
    assert SyncError("a", error=ConnectError()).kind is EventKind.SYNC_ERROR


def test_new_emails_payload():
    event = NewEmails("account-1", messages=(_message(1), _message(2)))

    payload = event.to_payload()

    assert payload["account_id"] == "account-1"
    assert payload["count"] == 2
    assert [m["uid"] for m in payload["messages"]] == [1, 2]


def test_sync_error_payload():
    error = ConnectError("refused", details={"stage": "connect"})

    payload = SyncError("account-1", error=error).to_payload()

    assert payload["error"]["code"] == "CONNECT_ERROR"
    assert payload["error"]["details"] == {"stage": "connect"}


def test_events_are_frozen():
    event = Connected("a")
    with pytest.raises(AttributeError):
        event.account_id = "b"  # type: ignore[misc]


@pytest.mark.asyncio
async def test_subscription_iterates_until_closed():
    subscription = EventSubscription()
    subscription.deliver(Connected("a"))
    subscription.deliver(Disconnected("a"))
    subscription.close()

    events = [event async for event in subscription]

    assert [type(e) for e in events] == [Connected, Disconnected]
    assert subscription.deliver(Connected("a")) is False


@pytest.mark.asyncio
async def test_bounded_subscription_drops_when_full(caplog):
    subscription = EventSubscription(maxsize=1)

    with caplog.at_level(logging.WARNING, logger="mailsync.imap.events"):
        assert subscription.deliver(Connected("a")) is True
        assert subscription.deliver(Connected("b")) is False

    assert subscription.dropped == 1
    assert "dropping connected event" in caplog.text
    event = await asyncio.wait_for(subscription.get(), timeout=1)
    assert event.account_id == "a"


@pytest.mark.asyncio
async def test_close_calls_back_once():
    closed = []
    subscription = EventSubscription(on_close=closed.append)

    subscription.close()
    subscription.close()

    assert closed == [subscription]
    assert await subscription.get() is None
