"""Shared test fixtures for the nubo_imap test suite."""

from __future__ import annotations

from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from nubo_imap.config import (
    DatabaseConfig,
    RetryConfig,
    ServiceConfig,
    SmtpRelayConfig,
    StoreConfig,
    SyncConfig,
)
from nubo_imap.models import MailboxConnection


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(
        account_id="acct123",
        access_key_id="AKIDTEST",
        secret_access_key="secret",
        bucket_name="mail-bodies",
    )


@pytest.fixture
def database_config(tmp_path: Path) -> DatabaseConfig:
    return DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'mail.db'}")


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(poll_interval_seconds=0.05, batch_size=2)


@pytest.fixture
def smtp_relay_config() -> SmtpRelayConfig:
    return SmtpRelayConfig(api_key="test-key", timeout_seconds=5)


@pytest.fixture
def service_config(
    database_config: DatabaseConfig,
    store_config: StoreConfig,
    retry_config: RetryConfig,
    sync_config: SyncConfig,
    smtp_relay_config: SmtpRelayConfig,
) -> ServiceConfig:
    return ServiceConfig(
        name="imap-test",
        http_port=18081,
        log_json=False,
        log_level="INFO",
        database=database_config,
        store=store_config,
        retry=retry_config,
        sync=sync_config,
        smtp=smtp_relay_config,
    )


@pytest.fixture
def connection_config() -> dict:
    return {
        "imap": {"host": "imap.test.com", "port": 993, "secure": True},
        "smtp": {"host": "smtp.test.com", "port": 587},
        "auth": {"user": "testuser", "pass": "testpass"},
    }


@pytest.fixture
def mailbox_connection(connection_config: dict) -> MailboxConnection:
    return MailboxConnection(id="conn-1", email="testuser@test.com", config=connection_config)


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "Sender <sender@example.com>",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
    cc: str | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id:
        msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date
    if cc:
        msg["Cc"] = cc
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )
