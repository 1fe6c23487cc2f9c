"""Mail account model and registry.

Accounts are loaded once per sync cycle and are immutable afterwards. The
registry validates every configured entry on its own: a malformed entry is
reported and skipped, it never prevents the remaining accounts from loading.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from ..configuration import ImapDefaults, SecurityMode, Settings
from ..errors import ConfigError


logger = logging.getLogger(__name__)

ACCOUNTS_ENV_VAR = "MAILSYNC_ACCOUNTS"


class Account(BaseModel):
    """A configured mail account."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Account identifier")
    address: str = Field(..., description="Mailbox email address, used as login")
    credential: SecretStr = Field(..., description="Password or app password")
    host: str = Field(..., description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port")
    security: SecurityMode = Field(
        default=SecurityMode.TLS, description="Transport security mode"
    )
    active: bool = Field(default=True, description="Whether the account is synced")
    last_synced_at: Optional[datetime] = Field(
        default=None, description="Timestamp of last successful sync"
    )

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("id must not be empty")
        return value.strip()

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.count("@") != 1:
            raise ValueError("Invalid email address")
        return value

    @field_validator("credential")
    @classmethod
    def _validate_credential(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("credential must not be empty")
        return value

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:
        value = value.strip()
        if not value or " " in value:
            raise ValueError("host must be a valid hostname")
        return value


class AccountRegistry:
    """Turns raw configuration entries into validated accounts."""

    def __init__(
        self,
        entries: Iterable[Any] = (),
        *,
        defaults: Optional[ImapDefaults] = None,
    ) -> None:
        self._entries = list(entries)
        self._defaults = defaults or ImapDefaults()
        self._accounts: Dict[str, Account] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AccountRegistry":
        """Collect entries from the settings file and ``MAILSYNC_ACCOUNTS``.

        The environment variable holds comma separated ``address:password``
        pairs. Ids are assigned positionally (``account-1``, ``account-2``...)
        across both sources unless an entry carries its own ``id``.
        """

        environ = os.environ if environ is None else environ
        entries: List[Any] = list(settings.accounts)
        entries.extend(parse_accounts_env(environ.get(ACCOUNTS_ENV_VAR, "")))
        return cls(entries, defaults=settings.imap)

    def load(self) -> List[Account]:
        """Validate every entry, skipping malformed ones with a warning."""

        accounts: List[Account] = []
        seen: Dict[str, Account] = {}

        for index, entry in enumerate(self._entries):
            try:
                account = self._build(index, entry)
                if account.id in seen:
                    raise ConfigError(
                        f"Duplicate account id {account.id!r}",
                        details={"index": index, "account_id": account.id},
                    )
            except ConfigError as exc:
                logger.warning(
                    f"Skipping account entry #{index + 1}: {exc.message}",
                    extra={"index": index, "error": exc.to_dict()},
                )
                continue

            seen[account.id] = account
            accounts.append(account)

        self._accounts = seen
        if not accounts:
            logger.info("No mail accounts configured; nothing to synchronize")
        else:
            logger.info(f"Loaded {len(accounts)} mail account(s)")
        return accounts

    def get(self, account_id: str) -> Optional[Account]:
        """Look up an account loaded by the last ``load`` call."""

        return self._accounts.get(account_id)

    def _build(self, index: int, entry: Any) -> Account:
        if not isinstance(entry, Mapping):
            raise ConfigError(
                f"Account entry must be an object, got {type(entry).__name__}",
                details={"index": index},
            )

        data: Dict[str, Any] = {
            "id": f"account-{index + 1}",
            "host": self._defaults.host,
            "port": self._defaults.port,
            "security": self._defaults.security,
        }
        data.update({key: value for key, value in entry.items() if value is not None})

        # Legacy "email:password" style entries use these key names.
        if "address" not in data and "email" in data:
            data["address"] = data.pop("email")
        if "credential" not in data and "password" in data:
            data["credential"] = data.pop("password")
        if "tls" in data:
            tls = data.pop("tls")
            if entry.get("security") is None:
                data["security"] = SecurityMode.TLS if tls else SecurityMode.PLAINTEXT

        try:
            return Account.model_validate(data)
        except ValidationError as exc:
            fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            raise ConfigError(
                f"Invalid account entry ({', '.join(fields) or 'unknown field'})",
                details={"index": index, "fields": fields},
            ) from exc


def parse_accounts_env(raw: str) -> List[Dict[str, Any]]:
    """Parse ``address:password,address2:password2`` into raw entries.

    A pair without a ``:`` separator yields an entry without credential so
    that the registry reports it instead of silently dropping it.
    """

    entries: List[Dict[str, Any]] = []
    for chunk in raw.split(","):
        if not chunk.strip():
            continue
        address, sep, password = chunk.partition(":")
        entry: Dict[str, Any] = {"address": address.strip()}
        if sep:
            entry["credential"] = password.strip()
        entries.append(entry)
    return entries


__all__ = ["ACCOUNTS_ENV_VAR", "Account", "AccountRegistry", "parse_accounts_env"]
