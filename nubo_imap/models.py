"""Data models for the IMAP service."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import ConnectionConfigError

# ------------------------------------------------------------------
# Connection configuration (the ``config`` JSON of a connection row)
# ------------------------------------------------------------------


class ImapSettings(BaseModel):
    host: str
    port: int = 993
    secure: bool = True


class SmtpSettings(BaseModel):
    """Outbound server of a connection.

    Any stored ``secure`` flag is ignored: the port decides the
    protocol (465 is implicit TLS, everything else upgrades with
    STARTTLS).
    """

    host: str
    port: int = 587

    @property
    def implicit_tls(self) -> bool:
        return self.port == 465


class AuthSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: str
    password: SecretStr = Field(alias="pass")


class ConnectionConfig(BaseModel):
    """Parsed connection config.

    SMTP settings are stored either nested (``smtp.host``) or flat
    (``smtpHost``/``smtpPort``); both shapes are accepted.
    """

    imap: ImapSettings | None = None
    smtp: SmtpSettings | None = None
    auth: AuthSettings
    folders: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("smtp") and data.get("smtpHost"):
            data["smtp"] = {"host": data["smtpHost"], "port": data.get("smtpPort") or 587}
        if not data.get("imap") and data.get("imapHost"):
            data["imap"] = {
                "host": data["imapHost"],
                "port": data.get("imapPort") or 993,
                "secure": data.get("imapSecure", True),
            }
        return data


class MailboxConnection(BaseModel):
    """One ``mail0_connection`` row as seen by this service."""

    id: str
    email: str
    config: dict[str, Any] | str | None = None

    def parsed_config(self) -> ConnectionConfig:
        """Validate the stored config, raising :class:`ConnectionConfigError`."""
        raw = self.config
        if not raw:
            raise ConnectionConfigError(self.id, "no config")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ConnectionConfigError(self.id, "config is not valid JSON") from exc
        try:
            return ConnectionConfig.model_validate(raw)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise ConnectionConfigError(self.id, f"invalid fields: {', '.join(fields)}") from exc


# ------------------------------------------------------------------
# Synced email
# ------------------------------------------------------------------


class EmailAddress(BaseModel):
    name: str | None = None
    address: str


UNKNOWN_SENDER = EmailAddress(name="Unknown", address="unknown")


class AttachmentRef(BaseModel):
    """Attachment descriptor stored in the ``attachments`` JSON column."""

    filename: str
    content_type: str
    size: int
    content_id: str | None = None
    r2_key: str | None = None


class EmailMetadata(BaseModel):
    """One ``mail0_email`` row."""

    id: str = Field(description="Deterministic ID derived from the message identity")
    thread_id: str
    connection_id: str
    message_id: str
    in_reply_to: str | None = None
    references: str | None = None
    subject: str | None = None
    sender: EmailAddress = Field(description="Stored in the ``from`` column")
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    reply_to: list[EmailAddress] = Field(default_factory=list)
    snippet: str | None = None
    body_r2_key: str | None = None
    body_html: str | None = None
    internal_date: datetime
    is_read: bool = False
    is_starred: bool = False
    labels: list[str] = Field(default_factory=list)
    attachments: list[AttachmentRef] = Field(default_factory=list)


class HeaderEntry(BaseModel):
    name: str
    value: str


class BodyPayload(BaseModel):
    headers: list[HeaderEntry] = Field(default_factory=list)
    body: str | None = None


class EmailBody(BaseModel):
    """JSON document written to object storage for each message.

    Serialised with camelCase keys (``threadId``) for the web tier.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    thread_id: str
    snippet: str | None = None
    payload: BodyPayload


# ------------------------------------------------------------------
# Sync bookkeeping
# ------------------------------------------------------------------


class SyncCursor(BaseModel):
    """Incremental position within one folder of one connection."""

    folder: str
    uid_validity: int = 0
    last_uid: int = 0


class ConnectionSyncResult(BaseModel):
    connection_id: str
    folders_synced: int = 0
    failed_folders: list[str] = Field(default_factory=list)
    messages_synced: int = 0
    messages_skipped: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncPassResult(BaseModel):
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    connections: list[ConnectionSyncResult] = Field(default_factory=list)
    interrupted: bool = False

    @property
    def messages_synced(self) -> int:
        return sum(c.messages_synced for c in self.connections)

    @property
    def failed_connections(self) -> list[str]:
        return [c.connection_id for c in self.connections if not c.ok]


# ------------------------------------------------------------------
# Service status
# ------------------------------------------------------------------


class ServiceStatus(str, Enum):
    """Runtime status of the service process."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service: str = Field(description="Name of the service")
    status: ServiceStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    details: dict[str, Any] = Field(default_factory=dict)


# ------------------------------------------------------------------
# Outbound relay
# ------------------------------------------------------------------


class OutgoingAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(alias="name")
    content_type: str = Field(default="application/octet-stream", alias="type")
    content: str = Field(alias="base64", description="Base64-encoded payload")


class SendEmailRequest(BaseModel):
    """Body of ``POST /send``."""

    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(alias="connectionId", min_length=1)
    sender: str = Field(alias="from", min_length=1)
    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(min_length=1)
    text: str | None = None
    html: str | None = None
    in_reply_to: str | None = Field(default=None, alias="inReplyTo")
    references: str | None = None
    attachments: list[OutgoingAttachment] = Field(default_factory=list)

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc, *self.bcc]


class SendEmailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message_id: str = Field(alias="messageId")
    rejected: list[str] = Field(default_factory=list, description="Recipients the server refused")
