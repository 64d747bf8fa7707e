"""Nubo IMAP service: mailbox sync into PostgreSQL + R2, and an SMTP relay.

Public API re-exported here for convenience::

    from nubo_imap import ImapService, ServiceConfig
"""

from .api import create_app
from .config import (
    DatabaseConfig,
    RetryConfig,
    ServiceConfig,
    SmtpRelayConfig,
    StoreConfig,
    SyncConfig,
)
from .db import Database
from .errors import ConnectionConfigError, SmtpConfigurationError, SmtpDeliveryError
from .imap_client import AsyncImapClient, FetchedEmail
from .logging import setup_logging
from .models import (
    ConnectionConfig,
    EmailBody,
    EmailMetadata,
    MailboxConnection,
    SendEmailRequest,
    SendEmailResponse,
    ServiceStatus,
    SyncCursor,
    SyncPassResult,
)
from .parser import MimeParser, ParsedAttachment, ParsedEmail, derive_thread_id
from .retry import with_retry
from .service import ImapService
from .shutdown import install_signal_handlers
from .smtp_service import SmtpService
from .store import BodyStore
from .sync_engine import SyncEngine

__all__ = [
    "AsyncImapClient",
    "BodyStore",
    "ConnectionConfig",
    "ConnectionConfigError",
    "Database",
    "DatabaseConfig",
    "EmailBody",
    "EmailMetadata",
    "FetchedEmail",
    "ImapService",
    "MailboxConnection",
    "MimeParser",
    "ParsedAttachment",
    "ParsedEmail",
    "RetryConfig",
    "SendEmailRequest",
    "SendEmailResponse",
    "ServiceConfig",
    "ServiceStatus",
    "SmtpConfigurationError",
    "SmtpDeliveryError",
    "SmtpRelayConfig",
    "SmtpService",
    "StoreConfig",
    "SyncConfig",
    "SyncCursor",
    "SyncEngine",
    "SyncPassResult",
    "create_app",
    "derive_thread_id",
    "install_signal_handlers",
    "setup_logging",
    "with_retry",
]
