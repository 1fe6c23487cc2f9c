"""Tests for the account model and registry."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from mailsync.configuration import ImapDefaults, SecurityMode, Settings
from mailsync.imap.accounts import (
    ACCOUNTS_ENV_VAR,
    Account,
    AccountRegistry,
    parse_accounts_env,
)


# ============================================================================
# Account model
# ============================================================================


def test_account_defaults():
    account = Account(id="a", address="alice@example.com", credential="pw", host="imap.example.com")

    assert account.port == 993
    assert account.security is SecurityMode.TLS
    assert account.active is True
    assert account.last_synced_at is None


def test_account_credential_is_not_exposed():
    account = Account(id="a", address="alice@example.com", credential="hunter2", host="h")

    assert "hunter2" not in repr(account)
    assert account.credential.get_secret_value() == "hunter2"


@pytest.mark.parametrize(
    "field, value",
    [
        ("address", "not-an-address"),
        ("address", "a@b@c"),
        ("credential", ""),
        ("host", "bad host"),
        ("port", 0),
        ("port", 70000),
        ("id", "  "),
    ],
)
def test_account_validation(field, value):
    data = {"id": "a", "address": "alice@example.com", "credential": "pw", "host": "h"}
    data[field] = value

    with pytest.raises(ValidationError):
        Account(**data)


def test_account_is_immutable():
    account = Account(id="a", address="alice@example.com", credential="pw", host="h")

    with pytest.raises(ValidationError):
        account.active = False  # type: ignore[misc]


# ============================================================================
# Registry
# ============================================================================


def test_registry_applies_defaults_and_positional_ids():
    registry = AccountRegistry(
        [
            {"address": "alice@example.com", "credential": "pw1"},
            {"id": "work", "address": "bob@example.com", "credential": "pw2", "port": 1993},
        ],
        defaults=ImapDefaults(host="imap.example.com", port=993),
    )

    accounts = registry.load()

    assert [a.id for a in accounts] == ["account-1", "work"]
    assert accounts[0].host == "imap.example.com"
    assert accounts[1].port == 1993
    assert registry.get("work") is accounts[1]
    assert registry.get("missing") is None


def test_registry_accepts_legacy_keys():
    registry = AccountRegistry([{"email": "alice@example.com", "password": "pw", "tls": False}])

    (account,) = registry.load()

    assert account.address == "alice@example.com"
    assert account.credential.get_secret_value() == "pw"
    assert account.security is SecurityMode.PLAINTEXT


def test_registry_skips_malformed_entries(caplog):
    registry = AccountRegistry(
        [
            {"address": "alice@example.com", "credential": "pw"},
            {"address": "broken", "credential": "pw"},
            {"address": "carol@example.com"},
            "not-a-mapping",
            {"address": "dave@example.com", "credential": "pw"},
        ]
    )

    with caplog.at_level(logging.WARNING, logger="mailsync.imap.accounts"):
        accounts = registry.load()

    assert [a.address for a in accounts] == ["alice@example.com", "dave@example.com"]
    assert [a.id for a in accounts] == ["account-1", "account-5"]
    assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 3


def test_registry_skips_duplicate_ids(caplog):
    registry = AccountRegistry(
        [
            {"id": "same", "address": "alice@example.com", "credential": "pw"},
            {"id": "same", "address": "bob@example.com", "credential": "pw"},
        ]
    )

    with caplog.at_level(logging.WARNING, logger="mailsync.imap.accounts"):
        accounts = registry.load()

    assert [a.address for a in accounts] == ["alice@example.com"]
    assert "Duplicate account id" in caplog.text


def test_registry_empty_is_not_an_error():
    assert AccountRegistry([]).load() == []


def test_registry_never_logs_credentials(caplog):
    registry = AccountRegistry([{"address": "broken", "credential": "topsecret"}])

    with caplog.at_level(logging.DEBUG):
        registry.load()

    assert "topsecret" not in caplog.text


def test_from_settings_merges_environment():
    settings = Settings(
        accounts=[{"address": "alice@example.com", "credential": "pw"}],
    )
    environ = {ACCOUNTS_ENV_VAR: "bob@example.com:pw:with:colons, carol@example.com:pw3"}

    accounts = AccountRegistry.from_settings(settings, environ=environ).load()

    assert [a.id for a in accounts] == ["account-1", "account-2", "account-3"]
    assert accounts[1].credential.get_secret_value() == "pw:with:colons"
    assert accounts[2].address == "carol@example.com"


# ============================================================================
# Environment parsing
# ============================================================================


def test_parse_accounts_env():
    assert parse_accounts_env("a@example.com:pw, ,b@example.com") == [
        {"address": "a@example.com", "credential": "pw"},
        {"address": "b@example.com"},
    ]


def test_parse_accounts_env_empty():
    assert parse_accounts_env("") == []
