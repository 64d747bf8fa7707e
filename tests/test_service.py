"""Tests for nubo_imap.service (ImapService)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nubo_imap.config import ServiceConfig
from nubo_imap.models import ConnectionSyncResult, ServiceStatus, SyncPassResult
from nubo_imap.service import ImapService


def _pass(messages: int = 0, failed: bool = False) -> SyncPassResult:
    return SyncPassResult(
        connections=[
            ConnectionSyncResult(
                connection_id="conn-1",
                messages_synced=messages,
                error="boom" if failed else None,
            )
        ]
    )


@pytest.fixture
def engine() -> MagicMock:
    engine = MagicMock()
    engine.run = AsyncMock(return_value=_pass(messages=2))
    return engine


@pytest.fixture
def service(service_config: ServiceConfig, engine: MagicMock) -> ImapService:
    db = MagicMock()
    db.start = AsyncMock()
    db.close = AsyncMock()
    store = MagicMock()
    store.start = AsyncMock()
    store.stop = AsyncMock()
    return ImapService(service_config, db=db, store=store, smtp=MagicMock(), engine=engine)


class TestImapServiceInit:
    def test_initial_status(self, service: ImapService):
        assert service.status == ServiceStatus.STARTING
        assert service.passes_completed == 0
        assert isinstance(service.shutdown_event, asyncio.Event)

    def test_default_collaborators(self, service_config: ServiceConfig):
        svc = ImapService(service_config)
        assert svc.engine is not None
        assert svc.smtp is not None


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_records_pass(self, service: ImapService, engine: MagicMock):
        result = await service.run_once()

        assert result.messages_synced == 2
        assert service.passes_completed == 1
        assert service.messages_synced == 2
        details = await service.health_check()
        assert details["passes_completed"] == 1
        assert details["messages_synced"] == 2
        assert details["last_pass_failed_connections"] == []
        assert details["last_pass_finished_at"] is None

    @pytest.mark.asyncio
    async def test_stop_flag_passed_to_engine(self, service: ImapService, engine: MagicMock):
        await service.run_once()
        should_stop = engine.run.await_args.kwargs["should_stop"]
        assert should_stop() is False
        service.shutdown_event.set()
        assert should_stop() is True

    @pytest.mark.asyncio
    async def test_failed_connections_reported(self, service: ImapService, engine: MagicMock):
        engine.run.return_value = _pass(failed=True)
        await service.run_once()
        details = await service.health_check()
        assert details["last_pass_failed_connections"] == ["conn-1"]


class TestPollLoop:
    @pytest.mark.asyncio
    async def test_runs_repeatedly_until_shutdown(self, service: ImapService, engine: MagicMock):
        task = asyncio.create_task(service._run_poll_loop())
        await asyncio.sleep(0.18)
        service.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert engine.run.await_count >= 2
        assert service.status == ServiceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_failed_pass_degrades_then_recovers(self, service: ImapService, engine: MagicMock):
        statuses: list[ServiceStatus] = []
        calls = 0

        async def flaky_run(should_stop):
            nonlocal calls
            calls += 1
            statuses.append(service.status)
            if calls == 1:
                raise ConnectionError("database unreachable")
            if calls == 3:
                service.shutdown_event.set()
            return _pass()

        engine.run.side_effect = flaky_run
        await asyncio.wait_for(service._run_poll_loop(), timeout=2)

        assert calls == 3
        assert statuses[1] == ServiceStatus.DEGRADED
        assert service.status == ServiceStatus.RUNNING
        assert (await service.health_check())["last_pass_error"] is None

    @pytest.mark.asyncio
    async def test_shutdown_lets_current_pass_finish(self, service: ImapService, engine: MagicMock):
        finished = asyncio.Event()

        async def slow_run(should_stop):
            service.shutdown_event.set()
            await asyncio.sleep(0.05)
            finished.set()
            return _pass(messages=1)

        engine.run.side_effect = slow_run
        await asyncio.wait_for(service._run_poll_loop(), timeout=1)

        assert finished.is_set()
        assert engine.run.await_count == 1
        assert service.passes_completed == 1

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_wait(self, service_config: ServiceConfig, engine: MagicMock):
        slow = service_config.model_copy(
            update={"sync": service_config.sync.model_copy(update={"poll_interval_seconds": 60})}
        )
        svc = ImapService(slow, db=MagicMock(), store=MagicMock(), smtp=MagicMock(), engine=engine)
        task = asyncio.create_task(svc._run_poll_loop())
        await asyncio.sleep(0.05)
        svc.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)
        assert engine.run.await_count == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_lifecycle(self, service: ImapService, engine: MagicMock):
        async def run_then_stop(should_stop):
            service.shutdown_event.set()
            return _pass()

        engine.run.side_effect = run_then_stop
        service._run_http_server = AsyncMock()

        with (
            patch("nubo_imap.service.setup_logging") as mock_logging,
            patch("nubo_imap.service.install_signal_handlers") as mock_signals,
        ):
            await asyncio.wait_for(service.run(), timeout=2)

        mock_logging.assert_called_once_with(json=False, level="INFO", service="imap-test")
        mock_signals.assert_called_once_with(service.shutdown_event)
        service.db.start.assert_awaited_once()
        service.store.start.assert_awaited_once()
        service.store.stop.assert_awaited_once()
        service.db.close.assert_awaited_once()
        assert service.status == ServiceStatus.STOPPED

    @pytest.mark.asyncio
    async def test_run_single_pass(self, service: ImapService, engine: MagicMock):
        with (
            patch("nubo_imap.service.setup_logging"),
            patch("nubo_imap.service.install_signal_handlers"),
        ):
            result = await service.run_single_pass()

        assert result.messages_synced == 2
        engine.run.assert_awaited_once()
        service.db.close.assert_awaited_once()
        assert service.status == ServiceStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stops_cleanly_when_start_pass_raises(self, service: ImapService, engine: MagicMock):
        engine.run.side_effect = RuntimeError("boom")
        with (
            patch("nubo_imap.service.setup_logging"),
            patch("nubo_imap.service.install_signal_handlers"),
        ):
            with pytest.raises(RuntimeError):
                await service.run_single_pass()
        service.store.stop.assert_awaited_once()
        assert service.status == ServiceStatus.STOPPED
