"""Exceptions raised by the sync engine and the SMTP relay."""

from __future__ import annotations

import asyncio

import aiosmtplib


class ConnectionConfigError(ValueError):
    """A mailbox connection has no usable IMAP/SMTP configuration."""

    def __init__(self, connection_id: str, reason: str) -> None:
        super().__init__(f"Invalid configuration for connection {connection_id}: {reason}")
        self.connection_id = connection_id
        self.reason = reason


class SmtpConfigurationError(ConnectionConfigError):
    """The connection record lacks SMTP host or credentials."""


class SmtpDeliveryError(RuntimeError):
    """The SMTP server did not accept the message."""

    def __init__(self, message: str, *, temporary: bool, smtp_code: int | None = None) -> None:
        super().__init__(message)
        self.temporary = temporary
        self.smtp_code = smtp_code


_TEMPORARY_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)


def smtp_error_code(exc: BaseException) -> int | None:
    """Return the SMTP reply code carried by an aiosmtplib exception, if any."""
    if isinstance(exc, aiosmtplib.SMTPException):
        code = getattr(exc, "code", None)
        if isinstance(code, int) and code > 0:
            return code
    return None


def is_transient_smtp_error(exc: BaseException) -> bool:
    """Classify an SMTP failure as worth retrying.

    Network errors and 4xx replies are transient; 5xx replies and
    authentication failures are permanent.
    """
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiosmtplib.SMTPServerDisconnected)):
        return True
    if isinstance(exc, aiosmtplib.SMTPConnectError):
        return True

    code = smtp_error_code(exc)
    if code is not None:
        return 400 <= code < 500

    message = str(exc).lower()
    return any(pattern in message for pattern in _TEMPORARY_PATTERNS)
