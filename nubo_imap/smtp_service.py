"""Outbound relay: send a message through a connection's own SMTP server."""

from __future__ import annotations

import base64
import binascii
import email.utils
from email.message import EmailMessage

import aiosmtplib
import structlog

from .config import RetryConfig, SmtpRelayConfig
from .errors import (
    SmtpConfigurationError,
    SmtpDeliveryError,
    is_transient_smtp_error,
    smtp_error_code,
)
from .models import (
    AuthSettings,
    MailboxConnection,
    SendEmailRequest,
    SendEmailResponse,
    SmtpSettings,
)
from .retry import with_retry

logger = structlog.get_logger()


class SmtpService:
    """Delivers ``POST /send`` requests with aiosmtplib.

    Each send opens a fresh SMTP session with the connection's
    credentials.  Port 465 uses implicit TLS, any other port STARTTLS.
    """

    def __init__(self, config: SmtpRelayConfig, retry: RetryConfig) -> None:
        self._config = config
        self._retry = with_retry(retry, retry_if=is_transient_smtp_error)

    def resolve(self, connection: MailboxConnection) -> tuple[SmtpSettings, AuthSettings]:
        """Return SMTP server and credentials for *connection*."""
        try:
            config = connection.parsed_config()
        except SmtpConfigurationError:
            raise
        except ValueError as exc:
            raise SmtpConfigurationError(connection.id, getattr(exc, "reason", str(exc))) from exc
        if config.smtp is None or not config.smtp.host:
            raise SmtpConfigurationError(connection.id, "no smtp host")
        if not config.auth.user or not config.auth.password.get_secret_value():
            raise SmtpConfigurationError(connection.id, "missing smtp credentials")
        return config.smtp, config.auth

    async def send_email(
        self,
        connection: MailboxConnection,
        request: SendEmailRequest,
    ) -> SendEmailResponse:
        smtp, auth = self.resolve(connection)
        message = build_message(request, domain=_domain_of(request.sender) or smtp.host)
        envelope_from = email.utils.parseaddr(request.sender)[1] or request.sender
        recipients = [email.utils.parseaddr(r)[1] or r for r in request.recipients]

        log = logger.bind(connection_id=connection.id, host=smtp.host, port=smtp.port)

        @self._retry
        async def _send() -> tuple[dict, str]:
            return await aiosmtplib.send(
                message,
                sender=envelope_from,
                recipients=recipients,
                hostname=smtp.host,
                port=smtp.port,
                username=auth.user,
                password=auth.password.get_secret_value(),
                use_tls=smtp.implicit_tls,
                start_tls=not smtp.implicit_tls,
                timeout=self._config.timeout_seconds,
            )

        try:
            refused, _ = await _send()
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as exc:
            temporary = is_transient_smtp_error(exc)
            log.error("smtp_send_failed", error=str(exc), temporary=temporary)
            raise SmtpDeliveryError(
                str(exc) or type(exc).__name__,
                temporary=temporary,
                smtp_code=smtp_error_code(exc),
            ) from exc

        message_id = message["Message-ID"]
        if refused:
            # The server accepted the message for some recipients only.
            log.warning(
                "smtp_recipients_refused",
                message_id=message_id,
                refused={addr: str(reply) for addr, reply in refused.items()},
            )
        log.info(
            "smtp_send_succeeded",
            message_id=message_id,
            recipients=len(recipients) - len(refused),
        )
        return SendEmailResponse(message_id=message_id, rejected=sorted(refused))

    async def verify_connection(self, connection: MailboxConnection) -> None:
        """Connect and authenticate, then quit.  Raises on failure."""
        smtp, auth = self.resolve(connection)
        client = aiosmtplib.SMTP(
            hostname=smtp.host,
            port=smtp.port,
            use_tls=smtp.implicit_tls,
            start_tls=not smtp.implicit_tls,
            timeout=self._config.timeout_seconds,
        )
        await client.connect()
        try:
            await client.login(auth.user, auth.password.get_secret_value())
        finally:
            await client.quit()
        logger.info("smtp_connection_verified", connection_id=connection.id, host=smtp.host)


def build_message(request: SendEmailRequest, *, domain: str | None = None) -> EmailMessage:
    """Build the MIME message.  Bcc recipients are left out of the headers."""
    msg = EmailMessage()
    msg["From"] = request.sender
    msg["To"] = ", ".join(request.to)
    if request.cc:
        msg["Cc"] = ", ".join(request.cc)
    msg["Subject"] = request.subject
    msg["Date"] = email.utils.formatdate(localtime=False)
    msg["Message-ID"] = email.utils.make_msgid(domain=domain)
    if request.in_reply_to:
        msg["In-Reply-To"] = request.in_reply_to
    if request.references:
        msg["References"] = request.references

    if request.text is not None:
        msg.set_content(request.text)
        if request.html is not None:
            msg.add_alternative(request.html, subtype="html")
    elif request.html is not None:
        msg.set_content(request.html, subtype="html")
    else:
        msg.set_content("")

    for att in request.attachments:
        try:
            payload = base64.b64decode(att.content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"attachment {att.filename!r} is not valid base64") from exc
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(
            payload,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename,
        )
    return msg


def _domain_of(address: str) -> str | None:
    addr = email.utils.parseaddr(address)[1]
    if "@" not in addr:
        return None
    return addr.rsplit("@", 1)[1] or None
