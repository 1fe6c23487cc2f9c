"""Message parser for RFC822/MIME payloads fetched over IMAP.

Turns a raw FETCH result (envelope data, body bytes and server flags) into a
canonical :class:`Message` record ready for indexing.

Tolerance rules:
- A body part that fails to decode is skipped; when no body survives the
  message is still returned with an empty text body
- Attachment parts without a Content-Type header are typed
  ``application/octet-stream``, parts without a filename are named ``unknown``
- A payload without a server UID, or without a readable body, raises
  :class:`~mailsync.errors.ParseError` and must be dropped by the caller
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple, Union

import html2text
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import ParseError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_FILENAME = "unknown"
SEEN_FLAG = "\\Seen"
FLAGGED_FLAG = "\\Flagged"

RawBody = Union[bytes, bytearray, memoryview, BinaryIO]


class RawEnvelope(BaseModel):
    """Per-message data returned by FETCH alongside the body."""

    uid: Optional[int] = Field(default=None, description="Server UID within the mailbox")
    account_id: str = Field(..., description="Owning account identifier")
    folder: str = Field(default="INBOX", description="Mailbox the message was fetched from")
    internal_date: Optional[datetime] = Field(
        default=None, description="Server INTERNALDATE"
    )
    size: Optional[int] = Field(default=None, ge=0, description="RFC822.SIZE")


class Attachment(BaseModel):
    """One attachment, identified by its position within the message."""

    filename: str = Field(default=DEFAULT_FILENAME, description="Attachment filename")
    content_type: str = Field(default=DEFAULT_CONTENT_TYPE, description="MIME type")
    size: int = Field(default=0, ge=0, description="Decoded size in bytes")
    content: bytes = Field(default=b"", repr=False, exclude=True)


class Message(BaseModel):
    """Canonical mail item emitted by the sync engine."""

    # Identity
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    uid: int = Field(..., ge=1, description="Server UID within the mailbox")
    account_id: str = Field(..., description="Owning account identifier")

    # Headers
    sender: str = Field(default="", description="From header")
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = Field(default="")
    date: datetime = Field(..., description="Sent date (UTC)")
    thread_id: Optional[str] = Field(default=None, description="Message-ID header")

    # Content
    text: str = Field(default="", description="Plain text body")
    html: Optional[str] = Field(default=None, description="HTML body, when present")
    attachments: List[Attachment] = Field(default_factory=list)
    size: int = Field(default=0, ge=0, description="Raw message size")

    # Mailbox state
    folder: str = Field(default="INBOX")
    flags: List[str] = Field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        if not value:
            raise ValueError("id must not be empty")
        return value

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def to_document(self) -> Dict[str, Any]:
        """Index document for the search sink; attachment bytes are left out."""

        document = self.model_dump(mode="json", exclude={"attachments"})
        document["attachments"] = [
            attachment.model_dump(mode="json") for attachment in self.attachments
        ]
        return document


class MessageParser:
    """Parse raw FETCH results into :class:`Message` records.

    Stateless apart from the html2text converter configuration, so a single
    instance may be shared by every session.
    """

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = False
        self.html_converter.body_width = 0  # No line wrapping

    def parse(
        self,
        envelope: RawEnvelope,
        body: Optional[RawBody],
        flags: Iterable[Union[bytes, str]] = (),
    ) -> Message:
        """Parse one fetched message.

        Args:
            envelope: UID, folder and server metadata for the message
            body: Full RFC822 payload as bytes or a readable binary stream
            flags: Server flags as returned by FETCH FLAGS

        Returns:
            Parsed Message

        Raises:
            ParseError: If the payload has no UID or no readable body
        """
        details = {"account_id": envelope.account_id, "uid": envelope.uid}
        if envelope.uid is None:
            raise ParseError("Message has no server UID", details=details)

        raw = self._read_body(body, details)

        try:
            msg = message_from_bytes(raw, policy=email_policy)
            sender = self._first(self._addresses(msg, "From"))
            to = self._addresses(msg, "To")
            cc = self._addresses(msg, "Cc")
            bcc = self._addresses(msg, "Bcc")
            subject = str(msg.get("Subject", "") or "").strip()
            thread_id = str(msg.get("Message-ID", "") or "").strip().strip("<>").strip()
            date = self._extract_date(msg, envelope)
        except Exception as exc:
            raise ParseError(f"Unreadable message headers: {exc}", details=details) from exc

        text, html = self._extract_body(msg, details)
        attachments = self._extract_attachments(msg)
        flag_list = normalize_flags(flags)
        lowered = {flag.lower() for flag in flag_list}

        try:
            return Message(
                uid=envelope.uid,
                account_id=envelope.account_id,
                sender=sender,
                to=to,
                cc=cc,
                bcc=bcc,
                subject=subject,
                date=date,
                thread_id=thread_id or None,
                text=text,
                html=html,
                attachments=attachments,
                size=envelope.size if envelope.size is not None else len(raw),
                folder=envelope.folder,
                flags=flag_list,
                is_read=SEEN_FLAG.lower() in lowered,
                is_starred=FLAGGED_FLAG.lower() in lowered,
            )
        except ValidationError as exc:
            raise ParseError(f"Invalid message record: {exc}", details=details) from exc

    def _read_body(self, body: Optional[RawBody], details: Dict[str, Any]) -> bytes:
        if body is None:
            raise ParseError("Message has no body payload", details=details)
        if isinstance(body, (bytes, bytearray, memoryview)):
            return bytes(body)
        try:
            data = body.read()
        except (OSError, ValueError) as exc:
            raise ParseError(f"Body stream could not be read: {exc}", details=details) from exc
        if not isinstance(data, (bytes, bytearray)):
            raise ParseError("Body stream did not yield bytes", details=details)
        return bytes(data)

    @staticmethod
    def _addresses(msg: StdEmailMessage, header: str) -> List[str]:
        value = msg.get(header)
        if not value:
            return []
        result = []
        for display_name, address in getaddresses([str(value)]):
            if not address:
                continue
            display_name = display_name.strip()
            result.append(f"{display_name} <{address}>" if display_name else address)
        return result

    @staticmethod
    def _first(values: List[str]) -> str:
        return values[0] if values else ""

    def _extract_date(self, msg: StdEmailMessage, envelope: RawEnvelope) -> datetime:
        """Date header, else the server INTERNALDATE, else the current time."""
        date_header = msg.get("Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(str(date_header))
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Failed to parse Date header '{date_header}': {e}",
                    extra={"account_id": envelope.account_id, "uid": envelope.uid},
                )
            else:
                if parsed.tzinfo is None:
                    return parsed.replace(tzinfo=timezone.utc)
                return parsed.astimezone(timezone.utc)

        if envelope.internal_date is not None:
            # imapclient hands back naive local times
            return envelope.internal_date.astimezone(timezone.utc)

        return datetime.now(timezone.utc)

    def _extract_body(
        self, msg: StdEmailMessage, details: Dict[str, Any]
    ) -> Tuple[str, Optional[str]]:
        """Return ``(text, html)``; text falls back to the HTML rendering."""
        body_plain: Optional[str] = None
        body_html: Optional[str] = None

        for part in msg.walk():
            if part.is_multipart() or _is_attachment(part):
                continue
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            if content_type == "text/plain" and body_plain is not None:
                continue
            if content_type == "text/html" and body_html is not None:
                continue

            try:
                content = part.get_content()
            except (LookupError, UnicodeError, ValueError, AssertionError) as e:
                logger.warning(
                    f"Failed to decode {content_type} body: {e}",
                    extra=details,
                )
                continue

            if content_type == "text/plain":
                body_plain = content
            else:
                body_html = content

        if body_plain is not None:
            return body_plain.strip(), body_html
        if body_html is not None:
            return self._html_to_text(body_html, details), body_html
        return "", None

    def _html_to_text(self, html: str, details: Dict[str, Any]) -> str:
        try:
            return self.html_converter.handle(html).strip()
        except Exception as e:
            logger.warning(f"HTML to text conversion failed: {e}", extra=details)
            return ""

    def _extract_attachments(self, msg: StdEmailMessage) -> List[Attachment]:
        attachments = []

        for part in msg.walk():
            if part.is_multipart() or not _is_attachment(part):
                continue

            content_type = (
                part.get_content_type() if part.get("Content-Type") else DEFAULT_CONTENT_TYPE
            )
            try:
                payload = part.get_payload(decode=True)
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to decode attachment payload: {e}")
                payload = None
            content = payload if isinstance(payload, bytes) else b""

            attachments.append(
                Attachment(
                    filename=part.get_filename() or DEFAULT_FILENAME,
                    content_type=content_type,
                    size=len(content),
                    content=content,
                )
            )

        return attachments


def _is_attachment(part: StdEmailMessage) -> bool:
    if part.get_content_disposition() == "attachment":
        return True
    if part.get_filename():
        return True
    return part.get_content_maintype() not in ("text", "multipart", "message")


def normalize_flags(flags: Iterable[Union[bytes, str]]) -> List[str]:
    """Decode server flags to ``str``, keeping order and dropping duplicates."""
    result: List[str] = []
    for flag in flags or ():
        if isinstance(flag, (bytes, bytearray)):
            flag = bytes(flag).decode("utf-8", errors="replace")
        flag = str(flag)
        if flag and flag not in result:
            result.append(flag)
    return result


__all__ = [
    "Attachment",
    "DEFAULT_CONTENT_TYPE",
    "DEFAULT_FILENAME",
    "Message",
    "MessageParser",
    "RawEnvelope",
    "normalize_flags",
]
