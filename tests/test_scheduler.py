"""Tests for the background escalation scheduler."""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from alerting.services import scheduler as scheduler_module
from alerting.services.scheduler import (
    ESCALATION_JOB_ID,
    check_pending_escalations,
    get_scheduler,
    scheduler_lifespan,
    start_scheduler,
    stop_scheduler,
)


@pytest_asyncio.fixture(autouse=True)
async def _reset_scheduler():
    yield
    stop_scheduler()


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_registers_escalation_job(self, providers, monkeypatch):
        monkeypatch.setattr(scheduler_module.settings, "escalation_check_enabled", True)

        started = start_scheduler(providers)

        job = started.get_job(ESCALATION_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert get_scheduler() is started

    @pytest.mark.asyncio
    async def test_disabled_check_adds_no_job(self, providers, monkeypatch):
        monkeypatch.setattr(scheduler_module.settings, "escalation_check_enabled", False)

        assert start_scheduler(providers).get_jobs() == []

    @pytest.mark.asyncio
    async def test_second_start_returns_same_instance(self, providers):
        assert start_scheduler(providers) is start_scheduler(providers)

    @pytest.mark.asyncio
    async def test_lifespan_stops_scheduler(self, providers):
        with patch.object(scheduler_module, "setup_logging") as setup:
            async with scheduler_lifespan(providers):
                assert get_scheduler() is not None

        setup.assert_called_once_with()

        assert get_scheduler() is None


class TestCheckPendingEscalations:
    @pytest.mark.asyncio
    async def test_skipped_without_providers(self):
        with patch.object(scheduler_module, "process_pending_reminders") as process:
            await check_pending_escalations()

        process.assert_not_called()

    @pytest.mark.asyncio
    async def test_ticks_with_fresh_session(self, providers, monkeypatch):
        session = AsyncMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        monkeypatch.setattr(scheduler_module, "_providers", providers)
        monkeypatch.setattr(scheduler_module, "get_db_session", lambda: session)

        with patch.object(
            scheduler_module, "process_pending_reminders", AsyncMock(return_value=3)
        ) as process:
            await check_pending_escalations()

        process.assert_awaited_once_with(session, providers)

    @pytest.mark.asyncio
    async def test_failure_is_contained(self, providers, monkeypatch):
        session = AsyncMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        monkeypatch.setattr(scheduler_module, "_providers", providers)
        monkeypatch.setattr(scheduler_module, "get_db_session", lambda: session)

        with patch.object(
            scheduler_module,
            "process_pending_reminders",
            AsyncMock(side_effect=RuntimeError("db gone")),
        ):
            await check_pending_escalations()
