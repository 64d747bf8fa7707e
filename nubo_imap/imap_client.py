"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from .models import AuthSettings, ImapSettings

logger = structlog.get_logger()

_LIST_LINE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')


@dataclass
class FetchedEmail:
    """Raw email data fetched from IMAP."""

    uid: int
    raw_bytes: bytes
    flags: frozenset[str] = field(default_factory=frozenset)
    internal_date: datetime | None = None

    @property
    def is_read(self) -> bool:
        return "\\Seen" in self.flags

    @property
    def is_starred(self) -> bool:
        return "\\Flagged" in self.flags


class AsyncImapClient:
    """Async-friendly IMAP client for one mailbox connection.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.
    """

    def __init__(
        self,
        imap: ImapSettings,
        auth: AuthSettings,
        *,
        timeout: float | None = None,
    ) -> None:
        self._imap = imap
        self._auth = auth
        self._timeout = timeout
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._selected: str | None = None

    @property
    def host(self) -> str:
        return self._imap.host

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and log in."""
        await asyncio.to_thread(self._connect_sync)
        logger.info("imap_connected", host=self._imap.host, user=self._auth.user)

    def _connect_sync(self) -> None:
        if self._imap.secure:
            self._conn = imaplib.IMAP4_SSL(self._imap.host, self._imap.port, timeout=self._timeout)
        else:
            self._conn = imaplib.IMAP4(self._imap.host, self._imap.port, timeout=self._timeout)
        self._conn.login(self._auth.user, self._auth.password.get_secret_value())

    async def disconnect(self) -> None:
        """Close the selected mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            self._selected = None
            logger.info("imap_disconnected", host=self._imap.host)

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        if self._selected is not None:
            try:
                self._conn.close()
            except (imaplib.IMAP4.error, OSError):
                pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def list_folders(self) -> list[str]:
        """Return the names of all selectable folders."""
        assert self._conn is not None, "Not connected"
        status, data = await asyncio.to_thread(self._conn.list)
        if status != "OK":
            raise imaplib.IMAP4.error(f"LIST failed: {data!r}")
        return [name for line in data if (name := _parse_list_line(line))]

    async def select_folder(self, folder: str) -> int:
        """Select *folder* read-only and return its UIDVALIDITY."""
        assert self._conn is not None, "Not connected"
        return await asyncio.to_thread(self._select_sync, folder)

    def _select_sync(self, folder: str) -> int:
        assert self._conn is not None
        status, data = self._conn.select(_quote(folder), readonly=True)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SELECT {folder} failed: {data!r}")
        self._selected = folder
        _, values = self._conn.response("UIDVALIDITY")
        if not values or values[0] is None:
            return 0
        return int(values[-1])

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def fetch_since(self, last_uid: int, limit: int) -> list[FetchedEmail]:
        """Fetch up to *limit* messages with UID greater than *last_uid*.

        Results are in ascending UID order.
        """
        assert self._conn is not None, "Not connected"
        criteria = f"UID {last_uid + 1}:*"
        return await asyncio.to_thread(self._search_and_fetch, criteria, last_uid, limit)

    async def search_by_date_range(
        self,
        since: datetime,
        before: datetime,
    ) -> list[FetchedEmail]:
        """Search for messages within a date range (for backfill).

        IMAP date search is day-granular (not timestamp-granular).
        """
        assert self._conn is not None, "Not connected"
        since_str = since.strftime("%d-%b-%Y")
        before_str = before.strftime("%d-%b-%Y")
        criteria = f"SINCE {since_str} BEFORE {before_str}"
        return await asyncio.to_thread(self._search_and_fetch, criteria, 0, None)

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_and_fetch(
        self,
        criteria: str,
        min_uid: int,
        limit: int | None,
    ) -> list[FetchedEmail]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK" or not data or not data[0]:
            return []

        # "N:*" always matches the highest UID, even when it is below N
        uids = sorted(int(u) for u in data[0].split() if int(u) > min_uid)
        if limit is not None:
            uids = uids[:limit]

        results: list[FetchedEmail] = []
        for uid in uids:
            status, msg_data = self._conn.uid("FETCH", str(uid), "(FLAGS INTERNALDATE RFC822)")
            if status != "OK" or not msg_data or not msg_data[0]:
                logger.warning("imap_fetch_empty", uid=uid, host=self._imap.host)
                continue
            fetched = _parse_fetch_response(uid, msg_data)
            if fetched is not None:
                results.append(fetched)

        logger.debug("imap_fetch_complete", fetched=len(results), criteria=criteria)
        return results


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _quote(folder: str) -> str:
    if folder.startswith('"'):
        return folder
    escaped = folder.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _parse_list_line(line: bytes | tuple | None) -> str | None:
    """Parse one LIST response line; ``None`` for \\Noselect folders."""
    if line is None:
        return None
    if isinstance(line, tuple):
        # Literal folder name: (b'(flags) "/" {5}', b'INBOX')
        meta, literal = line[0], line[1]
        line = meta.rsplit(b" ", 1)[0] + b' "' + literal + b'"'
    match = _LIST_LINE.match(line)
    if not match:
        return None
    if b"\\noselect" in match.group("flags").lower():
        return None
    name = match.group("name").strip()
    if name.startswith(b'"') and name.endswith(b'"'):
        name = name[1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")
    return name.decode("utf-8", errors="replace")


def _parse_fetch_response(uid: int, msg_data: list) -> FetchedEmail | None:
    """Extract RFC822 bytes, flags and INTERNALDATE from a FETCH response.

    Servers may place FLAGS before or after the message literal, so all
    non-literal fragments are joined before parsing.
    """
    raw_bytes: bytes | None = None
    meta_parts: list[bytes] = []
    for item in msg_data:
        if isinstance(item, tuple):
            meta_parts.append(item[0])
            raw_bytes = item[1]
        elif isinstance(item, bytes):
            meta_parts.append(item)
    if raw_bytes is None:
        return None

    meta = b" ".join(meta_parts)
    flags = frozenset(f.decode() for f in imaplib.ParseFlags(meta))

    internal_date: datetime | None = None
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is not None:
        internal_date = datetime.fromtimestamp(time.mktime(parsed), tz=UTC)

    return FetchedEmail(uid=uid, raw_bytes=raw_bytes, flags=flags, internal_date=internal_date)
