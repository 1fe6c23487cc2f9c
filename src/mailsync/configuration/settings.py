"""Typed settings management for mailsync.

This module wraps user configuration in Pydantic models so the sync engine
and CLI commands can rely on validated settings. Settings are read from a
JSON file and then overridden by ``MAILSYNC_*`` environment variables.
Account entries are kept as raw mappings here; the account registry owns
their validation so one bad entry never invalidates the whole file.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import ConfigError


DEFAULT_CONFIG_PATH = Path.home() / ".mailsync" / "config.json"


class SecurityMode(str, Enum):
    """Transport security for an IMAP connection."""

    PLAINTEXT = "plaintext"
    STARTTLS = "starttls"
    TLS = "tls"


class ReconnectStrategy(str, Enum):
    """Delay schedule applied between reconnect attempts."""

    CONSTANT = "constant"
    EXPONENTIAL = "exponential"


class ImapDefaults(BaseModel):
    """Server defaults applied to account entries that omit them."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    security: SecurityMode = Field(
        default=SecurityMode.TLS, description="Transport security mode"
    )


class SyncSettings(BaseModel):
    """Tunables for the per-account sync sessions."""

    mailbox: str = Field(default="INBOX", description="Mailbox opened per account")
    backfill_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Trailing window fetched right after the mailbox opens",
    )
    retry_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Delay before reconnecting after an unplanned disconnect",
    )
    reconnect_strategy: ReconnectStrategy = Field(
        default=ReconnectStrategy.CONSTANT,
        description="constant (retry forever at a fixed delay) or exponential",
    )
    max_retry_delay_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Upper bound for exponential reconnect delays",
    )
    idle_renewal_seconds: float = Field(
        default=600.0,
        gt=0.0,
        description="IDLE is re-issued after this many seconds without news",
    )
    noop_poll_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Polling interval for servers without IDLE support",
    )
    connect_timeout_seconds: float = Field(
        default=60.0, gt=0.0, description="Socket timeout for the IMAP connection"
    )
    fetch_batch_size: int = Field(
        default=250, ge=1, le=2000, description="UIDs requested per FETCH"
    )
    stop_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="How long stop waits for a session before cancelling it",
    )
    max_concurrent_connects: Optional[int] = Field(
        default=None,
        ge=1,
        description="Cap on simultaneous connection attempts (None = unbounded)",
    )
    verify_certificates: bool = Field(
        default=True, description="Verify server TLS certificates"
    )

    @field_validator("mailbox")
    @classmethod
    def _validate_mailbox(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("mailbox must not be empty")
        return value.strip()


class Settings(BaseModel):
    """Root configuration state."""

    imap: ImapDefaults = Field(default_factory=ImapDefaults)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    accounts: List[Any] = Field(
        default_factory=list,
        description="Raw account entries, validated by the account registry",
    )


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise ConfigError if missing or invalid."""

    if not path.exists():
        raise ConfigError(f"Settings file not found at {path}", details={"path": str(path)})
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Settings file {path} is not valid JSON: {exc}") from exc
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def resolve_settings(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from ``path`` when it exists, then apply env overrides."""

    path = path or DEFAULT_CONFIG_PATH
    environ = os.environ if environ is None else environ

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()

    merged = settings.model_dump(mode="python")
    merged = _apply_env_overrides(merged, environ)
    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid environment override: {exc}") from exc


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    imap = data.setdefault("imap", {})
    _set_env_override(imap, "host", "MAILSYNC_IMAP_HOST", environ)
    _set_env_override(imap, "port", "MAILSYNC_IMAP_PORT", environ, cast_int=True)
    tls = environ.get("MAILSYNC_IMAP_TLS")
    if tls is not None:
        imap["security"] = (
            SecurityMode.TLS if tls.lower() in {"1", "true", "yes"} else SecurityMode.PLAINTEXT
        )

    sync = data.setdefault("sync", {})
    _set_env_override(sync, "mailbox", "MAILSYNC_MAILBOX", environ)
    _set_env_override(sync, "retry_delay_seconds", "MAILSYNC_RETRY_DELAY", environ)
    _set_env_override(sync, "backfill_days", "MAILSYNC_BACKFILL_DAYS", environ, cast_int=True)
    _set_env_override(sync, "reconnect_strategy", "MAILSYNC_RECONNECT_STRATEGY", environ)
    _set_env_override(
        sync, "max_concurrent_connects", "MAILSYNC_MAX_CONCURRENT_CONNECTS", environ, cast_int=True
    )
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    environ: Mapping[str, str],
    *,
    cast_int: bool = False,
) -> None:
    raw = environ.get(env_name)
    if raw is None:
        return
    if cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ImapDefaults",
    "ReconnectStrategy",
    "SecurityMode",
    "Settings",
    "SyncSettings",
    "load_settings",
    "resolve_settings",
]
