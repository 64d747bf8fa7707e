"""Async SQLAlchemy access to connections, email rows and sync cursors."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import func, inspect, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection as SqlConnection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import DatabaseConfig
from ..models import EmailMetadata, MailboxConnection, SyncCursor
from .models import Base, Connection, Email, ImapSyncState

logger = structlog.get_logger()

IMAP_PROVIDER = "imap"

# Columns a re-sync is allowed to overwrite; everything else keeps the
# value from the first insert.
_MUTABLE_EMAIL_COLUMNS = ("is_read", "is_starred", "labels", "body_html", "body_r2_key", "attachments")

_POSTGRES_COLUMN_FIXUPS = (
    'ALTER TABLE "mail0_email" ADD COLUMN IF NOT EXISTS "body_html" text',
    'ALTER TABLE "mail0_email" ADD COLUMN IF NOT EXISTS "attachments" jsonb',
)

_SYNC_STATE = ImapSyncState.__tablename__
_SYNC_STATE_OLD = f"{_SYNC_STATE}_old"


def _upgrade_sync_state(conn: SqlConnection) -> bool:
    """Move a connection-keyed ``mail0_imap_sync_state`` to per-folder cursors.

    Older schemas key the table on ``connection_id`` alone and have no
    ``folder`` column. Each existing cursor becomes the ``INBOX`` cursor
    of its connection. Returns True if the table was rewritten.
    """
    inspector = inspect(conn)
    if not inspector.has_table(_SYNC_STATE):
        return False
    if "folder" in {c["name"] for c in inspector.get_columns(_SYNC_STATE)}:
        return False

    if conn.dialect.name == "postgresql":
        pk_name = inspector.get_pk_constraint(_SYNC_STATE).get("name") or f"{_SYNC_STATE}_pkey"
        for statement in (
            f"ALTER TABLE \"{_SYNC_STATE}\" ADD COLUMN \"folder\" text NOT NULL DEFAULT 'INBOX'",
            f'ALTER TABLE "{_SYNC_STATE}" DROP CONSTRAINT "{pk_name}"',
            f'ALTER TABLE "{_SYNC_STATE}" ADD PRIMARY KEY ("connection_id", "folder")',
            f'ALTER TABLE "{_SYNC_STATE}" ALTER COLUMN "last_synced_uid" TYPE bigint, '
            f'ALTER COLUMN "uid_validity" TYPE bigint',
        ):
            conn.execute(text(statement))
        return True

    # SQLite cannot change a primary key in place: rebuild and copy.
    conn.execute(text(f'ALTER TABLE "{_SYNC_STATE}" RENAME TO "{_SYNC_STATE_OLD}"'))
    ImapSyncState.__table__.create(conn)
    conn.execute(
        text(
            f'INSERT INTO "{_SYNC_STATE}" '
            '("connection_id", "folder", "last_synced_uid", "uid_validity", "last_synced_at") '
            "SELECT \"connection_id\", 'INBOX', \"last_synced_uid\", \"uid_validity\", \"last_synced_at\" "
            f'FROM "{_SYNC_STATE_OLD}"'
        )
    )
    conn.execute(text(f'DROP TABLE "{_SYNC_STATE_OLD}"'))
    return True


def _make_engine(config: DatabaseConfig) -> AsyncEngine:
    if config.url.startswith("sqlite"):
        return create_async_engine(config.url, echo=False)
    return create_async_engine(
        config.url,
        echo=False,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_pre_ping=True,
    )


def _naive_utc(value: datetime) -> datetime:
    """Columns are ``timestamp without time zone`` holding UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Database:
    """Relational store used by the sync engine and the send endpoint.

    Created once at startup; call :meth:`start` before use and
    :meth:`close` on shutdown.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._session: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        assert self._engine is not None, "Database not started"
        return self._engine

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._engine = _make_engine(self._config)
        self._session = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        if self._config.ensure_schema:
            await self.ensure_schema()
        logger.info("database_started", dialect=self._engine.dialect.name)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session = None
            logger.info("database_closed")

    async def ensure_schema(self) -> None:
        """Create missing tables and bring older ones up to date.

        On PostgreSQL this also adds the newer ``mail0_email`` columns.
        """
        async with self.engine.begin() as conn:
            if await conn.run_sync(_upgrade_sync_state):
                logger.info("sync_state_table_upgraded", table=_SYNC_STATE)
            await conn.run_sync(Base.metadata.create_all)
            if conn.dialect.name == "postgresql":
                for statement in _POSTGRES_COLUMN_FIXUPS:
                    await conn.execute(text(statement))
        logger.info("database_schema_ensured")

    def _new_session(self) -> AsyncSession:
        assert self._session is not None, "Database not started"
        return self._session()

    def _insert(self, table):
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_imap_connections(self) -> list[MailboxConnection]:
        stmt = (
            select(Connection)
            .where(Connection.provider_id == IMAP_PROVIDER)
            .order_by(Connection.created_at, Connection.id)
        )
        async with self._new_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [MailboxConnection(id=r.id, email=r.email, config=r.config) for r in rows]

    async def get_connection_by_id(self, connection_id: str) -> MailboxConnection | None:
        async with self._new_session() as session:
            row = await session.get(Connection, connection_id)
        if row is None:
            return None
        return MailboxConnection(id=row.id, email=row.email, config=row.config)

    # ------------------------------------------------------------------
    # Email metadata
    # ------------------------------------------------------------------

    async def save_email_metadata(self, email: EmailMetadata) -> None:
        """Upsert one email row keyed by its message identity.

        Mutable fields are last-write-wins; immutable ones keep the
        originally inserted values.
        """
        table = Email.__table__
        values = {
            "id": email.id,
            "thread_id": email.thread_id,
            "connection_id": email.connection_id,
            "message_id": email.message_id,
            "in_reply_to": email.in_reply_to,
            "references": email.references,
            "subject": email.subject,
            "from": email.sender.model_dump(),
            "to": [a.model_dump() for a in email.to],
            "cc": [a.model_dump() for a in email.cc],
            "bcc": [a.model_dump() for a in email.bcc],
            "reply_to": [a.model_dump() for a in email.reply_to],
            "snippet": email.snippet,
            "body_r2_key": email.body_r2_key,
            "body_html": email.body_html,
            "internal_date": _naive_utc(email.internal_date),
            "is_read": email.is_read,
            "is_starred": email.is_starred,
            "labels": list(email.labels),
            "attachments": [a.model_dump() for a in email.attachments],
        }
        stmt = self._insert(table).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                **{name: stmt.excluded[name] for name in _MUTABLE_EMAIL_COLUMNS},
                "updated_at": func.now(),
            },
        )
        async with self._new_session() as session:
            await session.execute(stmt)
            await session.commit()

    async def count_emails(self, connection_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(Email)
        if connection_id is not None:
            stmt = stmt.where(Email.connection_id == connection_id)
        async with self._new_session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def get_email(self, email_id: str) -> Email | None:
        async with self._new_session() as session:
            return await session.get(Email, email_id)

    # ------------------------------------------------------------------
    # Sync cursors
    # ------------------------------------------------------------------

    async def get_sync_cursor(self, connection_id: str, folder: str) -> SyncCursor | None:
        async with self._new_session() as session:
            row = await session.get(ImapSyncState, (connection_id, folder))
        if row is None:
            return None
        return SyncCursor(folder=row.folder, uid_validity=row.uid_validity, last_uid=row.last_synced_uid)

    async def save_sync_cursor(self, connection_id: str, cursor: SyncCursor) -> None:
        table = ImapSyncState.__table__
        stmt = self._insert(table).values(
            connection_id=connection_id,
            folder=cursor.folder,
            last_synced_uid=cursor.last_uid,
            uid_validity=cursor.uid_validity,
            last_synced_at=_naive_utc(datetime.now(UTC)),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.connection_id, table.c.folder],
            set_={
                "last_synced_uid": stmt.excluded.last_synced_uid,
                "uid_validity": stmt.excluded.uid_validity,
                "last_synced_at": stmt.excluded.last_synced_at,
            },
        )
        async with self._new_session() as session:
            await session.execute(stmt)
            await session.commit()
