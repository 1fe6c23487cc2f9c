"""Configuration loading utilities for mailsync."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    ImapDefaults,
    ReconnectStrategy,
    SecurityMode,
    Settings,
    SyncSettings,
    load_settings,
    resolve_settings,
)

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
