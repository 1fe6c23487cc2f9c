"""Centralized error definitions for mailsync.

Failures local to a single message or a single account never cross the
Session boundary as exceptions; they are converted into ``sync_error`` events.
Only control operations referencing an unknown account raise to the caller.

Usage:
    from mailsync.errors import MailSyncError, NotFoundError

    try:
        await manager.start_one("account-7")
    except NotFoundError as e:
        print(e.to_dict())
"""

from __future__ import annotations

from typing import Any, Dict, Optional


# =============================================================================
# Base Error
# =============================================================================


class MailSyncError(Exception):
    """Base exception for all mailsync errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MAILSYNC_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(MailSyncError):
    """Malformed configuration or account entry.

    Account entries raising this are skipped by the registry, never fatal.
    """

    code = "CONFIG_ERROR"
    default_message = "Invalid configuration"
    recoverable = False


# =============================================================================
# Sync Errors
# =============================================================================


class ConnectError(MailSyncError):
    """Transport, authentication or mailbox-open failure.

    Triggers the reconnect policy of the owning session and is reported as a
    ``sync_error`` event.
    """

    code = "CONNECT_ERROR"
    default_message = "Could not connect to the mail server"


class ParseError(MailSyncError):
    """A single message could not be turned into a Message record."""

    code = "PARSE_ERROR"
    default_message = "Message could not be parsed"


class NotFoundError(MailSyncError):
    """A control operation referenced an unknown account."""

    code = "NOT_FOUND"
    default_message = "Account not found"
    recoverable = False


__all__ = [
    "MailSyncError",
    "ConfigError",
    "ConnectError",
    "ParseError",
    "NotFoundError",
]
