"""IMAP sync engine: accounts, parser, sessions and the session manager."""

from .accounts import ACCOUNTS_ENV_VAR, Account, AccountRegistry, parse_accounts_env
from .connection import ConnectionState, ImapConnection
from .email_parser import Attachment, Message, MessageParser, RawEnvelope
from .events import (
    Connected,
    Disconnected,
    EventKind,
    EventSubscription,
    NewEmails,
    SyncError,
    SyncEvent,
)
from .reconnect import (
    ConstantDelayPolicy,
    ExponentialBackoffPolicy,
    ReconnectPolicy,
    build_reconnect_policy,
)
from .session import ConnectionStatus, Session
from .session_manager import SessionManager

__all__ = [
    "ACCOUNTS_ENV_VAR",
    "Account",
    "AccountRegistry",
    "Attachment",
    "Connected",
    "ConnectionState",
    "ConnectionStatus",
    "ConstantDelayPolicy",
    "Disconnected",
    "EventKind",
    "EventSubscription",
    "ExponentialBackoffPolicy",
    "ImapConnection",
    "Message",
    "MessageParser",
    "NewEmails",
    "RawEnvelope",
    "ReconnectPolicy",
    "Session",
    "SessionManager",
    "SyncError",
    "SyncEvent",
    "build_reconnect_policy",
    "parse_accounts_env",
]
