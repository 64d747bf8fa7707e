"""ImapService — wires up infrastructure and runs the poll loop plus HTTP API."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any

import structlog
import uvicorn

from .api import create_app
from .config import ServiceConfig
from .db import Database
from .logging import setup_logging
from .models import ServiceStatus, SyncPassResult
from .shutdown import install_signal_handlers, remove_signal_handlers
from .smtp_service import SmtpService
from .store import BodyStore
from .sync_engine import SyncEngine

logger = structlog.get_logger()


class ImapService:
    """The long-running process.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the poll loop (one sync pass every ``poll_interval_seconds``)
    * the FastAPI server (health probes and ``POST /send``)

    Collaborators can be injected for tests.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        db: Database | None = None,
        store: BodyStore | None = None,
        smtp: SmtpService | None = None,
        engine: SyncEngine | None = None,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self.db = db if db is not None else Database(config.database)
        self.store = store if store is not None else BodyStore(config.store)
        self.smtp = smtp if smtp is not None else SmtpService(config.smtp, config.retry)
        self.engine = engine if engine is not None else SyncEngine(self.db, self.store, config)
        self._shutdown_event = asyncio.Event()

        self.passes_completed = 0
        self.messages_synced = 0
        self.last_pass: SyncPassResult | None = None
        self.last_pass_error: str | None = None

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def run_once(self) -> SyncPassResult:
        """Run a single sync pass and record its outcome."""
        result = await self.engine.run(should_stop=self._shutdown_event.is_set)
        self.passes_completed += 1
        self.messages_synced += result.messages_synced
        self.last_pass = result
        self.last_pass_error = None
        return result

    async def _run_poll_loop(self) -> None:
        interval = self.config.sync.poll_interval_seconds
        logger.info("poll_loop_started", interval_seconds=interval)
        self.status = ServiceStatus.RUNNING

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
                self.status = ServiceStatus.RUNNING
            except Exception as exc:
                self.status = ServiceStatus.DEGRADED
                self.last_pass_error = str(exc)
                logger.exception("sync_pass_failed")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                pass

        logger.info("poll_loop_stopped", passes=self.passes_completed)

    # ------------------------------------------------------------------
    # HTTP server
    # ------------------------------------------------------------------

    async def _run_http_server(self) -> None:
        """Serve the API and shut it down on signal."""
        app = create_app(self)
        config = uvicorn.Config(
            app,
            host=self.config.http_host,
            port=self.config.http_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        # Run until the shutdown event fires
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    async def health_check(self) -> dict[str, Any]:
        last = self.last_pass
        finished: datetime | None = last.finished_at if last else None
        return {
            "passes_completed": self.passes_completed,
            "messages_synced": self.messages_synced,
            "last_pass_finished_at": finished.isoformat() if finished else None,
            "last_pass_failed_connections": last.failed_connections if last else [],
            "last_pass_error": self.last_pass_error,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self) -> None:
        setup_logging(json=self.config.log_json, level=self.config.log_level, service=self.config.name)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info("service_starting", service=self.config.name)
        await self.db.start()
        await self.store.start()

    async def stop(self) -> None:
        self.status = ServiceStatus.STOPPING
        await self.store.stop()
        await self.db.close()
        self.status = ServiceStatus.STOPPED
        remove_signal_handlers()
        logger.info("service_stopped", service=self.config.name)

    async def run(self) -> None:
        """Start all subsystems and run until shutdown.

        ``asyncio.run(ImapService(config).run())``
        """
        await self.start()
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_poll_loop())
                tg.create_task(self._run_http_server())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            await self.stop()

    async def run_single_pass(self) -> SyncPassResult:
        """Start, run one pass, stop.  Used by ``sync-once``."""
        await self.start()
        try:
            return await self.run_once()
        finally:
            await self.stop()
