"""SyncEngine: one sync pass over every IMAP mailbox connection.

For each connection and folder the engine selects the folder, compares
UIDVALIDITY with the stored cursor, fetches messages above the cursor in
batches, writes each body to object storage, upserts the metadata row and
advances the cursor.
"""

from __future__ import annotations

import imaplib
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from botocore.exceptions import BotoCoreError

from .config import ServiceConfig
from .db import Database
from .errors import ConnectionConfigError
from .imap_client import AsyncImapClient, FetchedEmail
from .models import (
    AttachmentRef,
    BodyPayload,
    ConnectionConfig,
    ConnectionSyncResult,
    EmailBody,
    EmailMetadata,
    HeaderEntry,
    MailboxConnection,
    SyncCursor,
    SyncPassResult,
)
from .parser import MimeParser, derive_thread_id
from .retry import with_retry
from .store import BodyStore

logger = structlog.get_logger()

ImapClientFactory = Callable[[ConnectionConfig, float], AsyncImapClient]

# Namespace for deterministic email row IDs (connection + Message-ID).
EMAIL_ID_NAMESPACE = uuid.UUID("5d0c7a3e-8f4b-4f1e-9a57-2f6a1c3b9e10")


def message_identity(connection_id: str, message_id: str) -> str:
    """Row ID of a message: stable across passes, unique per connection."""
    return str(uuid.uuid5(EMAIL_ID_NAMESPACE, f"{connection_id}\x00{message_id}"))


def _default_client_factory(config: ConnectionConfig, timeout: float) -> AsyncImapClient:
    assert config.imap is not None
    return AsyncImapClient(config.imap, config.auth, timeout=timeout)


def _never_stop() -> bool:
    return False


class SyncEngine:
    """Runs sync passes.  Connections are processed one at a time."""

    def __init__(
        self,
        db: Database,
        store: BodyStore,
        config: ServiceConfig,
        *,
        client_factory: ImapClientFactory = _default_client_factory,
    ) -> None:
        self._db = db
        self._store = store
        self._config = config
        self._sync = config.sync
        self._client_factory = client_factory
        self._parser = MimeParser()
        self._retry_network = with_retry(
            config.retry,
            retryable_exceptions=(OSError, imaplib.IMAP4.abort),
        )
        self._retry_store = with_retry(
            config.retry,
            retryable_exceptions=(BotoCoreError, OSError),
        )

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run(self, should_stop: Callable[[], bool] = _never_stop) -> SyncPassResult:
        """Sync every IMAP connection once.

        A failure in one connection is logged and recorded; the pass
        continues with the next connection.  *should_stop* is checked
        between connections and between batches.
        """
        result = SyncPassResult()
        connections = await self._db.get_imap_connections()
        logger.info("sync_pass_started", connections=len(connections))

        for conn in connections:
            if should_stop():
                result.interrupted = True
                logger.info("sync_pass_interrupted", remaining_from=conn.id)
                break
            result.connections.append(await self._sync_isolated(conn, should_stop))

        result.finished_at = datetime.now(UTC)
        logger.info(
            "sync_pass_completed",
            connections=len(result.connections),
            messages=result.messages_synced,
            failed=len(result.failed_connections),
            duration_seconds=(result.finished_at - result.started_at).total_seconds(),
        )
        return result

    async def _sync_isolated(
        self,
        conn: MailboxConnection,
        should_stop: Callable[[], bool],
    ) -> ConnectionSyncResult:
        try:
            return await self.sync_connection(conn, should_stop)
        except ConnectionConfigError as exc:
            logger.warning("connection_skipped", connection_id=conn.id, reason=exc.reason)
            return ConnectionSyncResult(connection_id=conn.id, error=str(exc))
        except Exception as exc:
            logger.exception("connection_sync_failed", connection_id=conn.id)
            return ConnectionSyncResult(connection_id=conn.id, error=f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def sync_connection(
        self,
        conn: MailboxConnection,
        should_stop: Callable[[], bool] = _never_stop,
    ) -> ConnectionSyncResult:
        """Sync all configured folders of one connection."""
        config = conn.parsed_config()
        if config.imap is None:
            raise ConnectionConfigError(conn.id, "no imap settings")

        log = logger.bind(connection_id=conn.id, host=config.imap.host)
        log.info("connection_sync_started")

        result = ConnectionSyncResult(connection_id=conn.id)
        client = self._client_factory(config, self._sync.imap_timeout_seconds)
        await self._retry_network(client.connect)()
        try:
            for folder in config.folders or self._sync.default_folders:
                if should_stop():
                    break
                if await self._sync_folder(conn, config, client, folder, result, should_stop):
                    result.folders_synced += 1
        finally:
            await client.disconnect()

        log.info(
            "connection_sync_completed",
            folders=result.folders_synced,
            messages=result.messages_synced,
            skipped=result.messages_skipped,
            failed_folders=result.failed_folders,
        )
        return result

    async def _sync_folder(
        self,
        conn: MailboxConnection,
        config: ConnectionConfig,
        client: AsyncImapClient,
        folder: str,
        result: ConnectionSyncResult,
        should_stop: Callable[[], bool],
    ) -> bool:
        try:
            uid_validity = await client.select_folder(folder)
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            # Skip the folder; the remaining folders still sync.
            logger.warning("folder_select_failed", connection_id=conn.id, folder=folder, error=str(exc))
            result.failed_folders.append(folder)
            return False

        cursor = await self._db.get_sync_cursor(conn.id, folder)
        if cursor is None or cursor.uid_validity != uid_validity:
            if cursor is not None:
                logger.warning(
                    "uid_validity_changed",
                    connection_id=conn.id,
                    folder=folder,
                    previous=cursor.uid_validity,
                    current=uid_validity,
                )
            cursor = SyncCursor(folder=folder, uid_validity=uid_validity, last_uid=0)

        while True:
            batch = await client.fetch_since(cursor.last_uid, self._sync.batch_size)
            if not batch:
                break
            start_uid = cursor.last_uid
            try:
                for fetched in batch:
                    if await self._store_message(conn, config, folder, uid_validity, fetched):
                        result.messages_synced += 1
                    else:
                        result.messages_skipped += 1
                    cursor.last_uid = max(cursor.last_uid, fetched.uid)
            finally:
                # Keep progress made before a failure mid-batch.
                if cursor.last_uid != start_uid:
                    await self._db.save_sync_cursor(conn.id, cursor)
            if len(batch) < self._sync.batch_size or should_stop():
                break

        # First visit to an empty folder still records its UIDVALIDITY.
        if cursor.last_uid == 0:
            await self._db.save_sync_cursor(conn.id, cursor)
        return True

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    async def _store_message(
        self,
        conn: MailboxConnection,
        config: ConnectionConfig,
        folder: str,
        uid_validity: int,
        fetched: FetchedEmail,
    ) -> bool:
        """Persist one message.  Returns False when it was skipped."""
        assert config.imap is not None
        parsed = self._parser.parse(fetched.raw_bytes)

        internal_date = parsed.date or fetched.internal_date
        if internal_date is None:
            logger.warning("message_skipped_no_date", connection_id=conn.id, folder=folder, uid=fetched.uid)
            return False

        message_id = parsed.message_id or f"<{uid_validity}.{fetched.uid}.{folder}@{config.imap.host}>"
        email_id = message_identity(conn.id, message_id)
        thread_id = derive_thread_id(parsed, fallback=f"{conn.id}:{folder}:{uid_validity}:{fetched.uid}")
        snippet = parsed.snippet(self._sync.snippet_length)
        body_html = parsed.best_body()

        attachments: list[AttachmentRef] = []
        for att in parsed.attachments:
            key = None
            if self._sync.upload_attachments:
                key = await self._retry_store(self._store.save_attachment)(conn.id, email_id, att)
            attachments.append(
                AttachmentRef(
                    filename=att.filename,
                    content_type=att.content_type,
                    size=len(att.payload),
                    content_id=att.content_id,
                    r2_key=key,
                )
            )

        body = EmailBody(
            id=email_id,
            thread_id=thread_id,
            snippet=snippet,
            payload=BodyPayload(
                headers=[HeaderEntry(name=k, value=v) for k, v in parsed.headers],
                body=body_html,
            ),
        )
        body_key = await self._retry_store(self._store.save_email_body)(
            conn.id, folder, uid_validity, fetched.uid, body
        )

        await self._db.save_email_metadata(
            EmailMetadata(
                id=email_id,
                thread_id=thread_id,
                connection_id=conn.id,
                message_id=message_id,
                in_reply_to=parsed.in_reply_to,
                references=" ".join(parsed.references) or None,
                subject=parsed.subject or None,
                sender=parsed.sender,
                to=parsed.to,
                cc=parsed.cc,
                bcc=parsed.bcc,
                reply_to=parsed.reply_to,
                snippet=snippet,
                body_r2_key=body_key,
                body_html=body_html if self._sync.store_body_html else None,
                internal_date=internal_date,
                is_read=fetched.is_read,
                is_starred=fetched.is_starred,
                labels=[folder],
                attachments=attachments,
            )
        )
        logger.debug("message_saved", connection_id=conn.id, folder=folder, uid=fetched.uid, email_id=email_id)
        return True
