"""MIME parser: walks the whole message to extract addresses, threading
headers, bodies and attachments.
"""

from __future__ import annotations

import email
import email.policy
import email.utils
import hashlib
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.message import EmailMessage
from html import escape

from .models import UNKNOWN_SENDER, EmailAddress

_WHITESPACE = re.compile(r"\s+")
_MSGID = re.compile(r"<[^<>\s]+>")


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME email."""

    filename: str
    content_type: str
    payload: bytes
    content_id: str | None = None


@dataclass
class ParsedEmail:
    """Structured representation of a fully parsed email."""

    message_id: str
    subject: str
    sender: EmailAddress
    to: list[EmailAddress]
    cc: list[EmailAddress]
    bcc: list[EmailAddress]
    reply_to: list[EmailAddress]
    in_reply_to: str | None
    references: list[str]
    date: datetime | None
    body_text: str | None
    body_html: str | None
    headers: list[tuple[str, str]]
    attachments: list[ParsedAttachment] = field(default_factory=list)

    @property
    def text_as_html(self) -> str | None:
        if self.body_text is None:
            return None
        return f"<pre>{escape(self.body_text)}</pre>"

    def best_body(self) -> str | None:
        """HTML if present, else the text body rendered as HTML."""
        return self.body_html or self.text_as_html or self.body_text

    def snippet(self, length: int) -> str | None:
        if not self.body_text:
            return None
        return _WHITESPACE.sub(" ", self.body_text).strip()[:length]


class MimeParser:
    """Stateless parser: raw RFC 822 bytes -> ParsedEmail."""

    def parse(self, raw_bytes: bytes) -> ParsedEmail:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        body_text, body_html = self._extract_bodies(msg)
        senders = self._parse_address_list(msg.get_all("From"))

        return ParsedEmail(
            message_id=str(msg.get("Message-ID", "")).strip(),
            subject=str(msg.get("Subject", "")),
            sender=senders[0] if senders else UNKNOWN_SENDER,
            to=self._parse_address_list(msg.get_all("To")),
            cc=self._parse_address_list(msg.get_all("Cc")),
            bcc=self._parse_address_list(msg.get_all("Bcc")),
            reply_to=self._parse_address_list(msg.get_all("Reply-To")),
            in_reply_to=str(msg.get("In-Reply-To", "")).strip() or None,
            references=_MSGID.findall(str(msg.get("References", ""))),
            date=self._parse_date(msg.get("Date")),
            body_text=body_text,
            body_html=body_html,
            headers=[(k, str(v)) for k, v in msg.items()],
            attachments=self._extract_attachments(msg),
        )

    def _extract_bodies(self, msg: EmailMessage) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_disposition() == "attachment":
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = self._text_content(part)
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: EmailMessage) -> list[ParsedAttachment]:
        """Walk MIME parts and collect attachments."""
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            filename = part.get_filename()
            # Attachment: explicit disposition, or a named part
            if part.get_content_disposition() != "attachment" and not filename:
                continue

            payload = part.get_payload(decode=True)
            if payload is None:
                continue

            content_id = part.get("Content-ID")
            attachments.append(
                ParsedAttachment(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    payload=payload,
                    content_id=str(content_id).strip("<> ") if content_id else None,
                )
            )

        return attachments

    @staticmethod
    def _text_content(part: EmailMessage) -> str:
        try:
            content = part.get_content()
        except (LookupError, UnicodeDecodeError):
            # Unknown or lying charset: decode leniently
            raw = part.get_payload(decode=True) or b""
            return raw.decode("utf-8", errors="replace")
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content

    @staticmethod
    def _parse_date(value: object) -> datetime | None:
        if not value:
            return None
        try:
            parsed = email.utils.parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def _parse_address_list(values: list[object] | None) -> list[EmailAddress]:
        if not values:
            return []
        return [
            EmailAddress(name=name or None, address=addr)
            for name, addr in email.utils.getaddresses([str(v) for v in values])
            if addr
        ]


def derive_thread_id(parsed: ParsedEmail, fallback: str) -> str:
    """Stable thread key for a message.

    The root of the ``References`` chain identifies the conversation;
    replies without ``References`` fall back to ``In-Reply-To``, and a
    first message to its own Message-ID.  *fallback* is used when the
    message carries none of these.
    """
    if parsed.references:
        root = parsed.references[0]
    else:
        root = parsed.in_reply_to or parsed.message_id or fallback
    return hashlib.sha256(root.encode("utf-8")).hexdigest()[:32]
