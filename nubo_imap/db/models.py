"""SQLAlchemy ORM models for the mail schema tables this service touches."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Connection(Base):
    """Mailbox connection; owned by the web tier, read-only here."""

    __tablename__ = "mail0_connection"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text)
    scope: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    provider_id: Mapped[str] = mapped_column(Text, nullable=False)
    config: Mapped[Any | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())


class Email(Base):
    __tablename__ = "mail0_email"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    thread_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("mail0_connection.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    message_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    in_reply_to: Mapped[str | None] = mapped_column(Text)
    references: Mapped[str | None] = mapped_column(Text)
    subject: Mapped[str | None] = mapped_column(Text)
    sender: Mapped[Any] = mapped_column("from", JSONType, nullable=False)
    to: Mapped[Any] = mapped_column(JSONType, nullable=False)
    cc: Mapped[Any | None] = mapped_column(JSONType)
    bcc: Mapped[Any | None] = mapped_column(JSONType)
    reply_to: Mapped[Any | None] = mapped_column(JSONType)
    snippet: Mapped[str | None] = mapped_column(Text)
    body_r2_key: Mapped[str | None] = mapped_column(Text)
    body_html: Mapped[str | None] = mapped_column(Text)
    internal_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    is_read: Mapped[bool | None] = mapped_column(Boolean, server_default=text("false"))
    is_starred: Mapped[bool | None] = mapped_column(Boolean, server_default=text("false"))
    labels: Mapped[Any | None] = mapped_column(JSONType)
    attachments: Mapped[Any | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())


class ImapSyncState(Base):
    """Per-folder sync cursor (UIDVALIDITY + highest stored UID)."""

    __tablename__ = "mail0_imap_sync_state"

    connection_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("mail0_connection.id", ondelete="CASCADE"),
        primary_key=True,
    )
    folder: Mapped[str] = mapped_column(Text, primary_key=True, server_default=text("'INBOX'"))
    last_synced_uid: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    uid_validity: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
