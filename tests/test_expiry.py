"""Tests for the expiry sweeper background task."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from labby import models
from labby.schemas import Lab, LabStatus
from labby.tasks import TaskRunner
from labby.tasks.expiry import (
    expiry_sweep_monitor,
    run_sweep,
    sweep_expired_labs,
    sweep_failed_labs,
)
from labby.utils import utcnow


def _store_lab(repository, lab_id: str, status: LabStatus, ends_in: timedelta, used=None) -> Lab:
    now = utcnow()
    lab = Lab(
        id=lab_id,
        name=f"lab-{lab_id}",
        status=status,
        owner_id="owner-1",
        started_at=now - timedelta(hours=1),
        ends_at=now + ends_in,
        used_services=used or ["alpha-config"],
    )
    return repository.create_lab(lab)


def _age_lab(session_factory, lab_id: str, age: timedelta) -> None:
    with session_factory() as session:
        row = session.get(models.Lab, lab_id)
        row.updated_at = utcnow() - age
        session.commit()


class TestSweepExpiredLabs:
    """Tests for sweep_expired_labs."""

    @pytest.mark.asyncio
    async def test_ready_lab_past_end_is_expired(self, lab_service, repository, tracker, fake_services):
        lab = _store_lab(repository, "exp00001", LabStatus.READY, timedelta(seconds=-1))
        tracker.init_progress(lab.id)

        count = await sweep_expired_labs(lab_service)

        assert count == 1
        assert repository.get_lab_by_id(lab.id).status == LabStatus.EXPIRED
        assert tracker.get_progress(lab.id) is None
        assert fake_services["alpha"].cleanup_calls == [lab.id]

    @pytest.mark.asyncio
    async def test_running_lab_untouched(self, lab_service, repository, fake_services):
        lab = _store_lab(repository, "run00001", LabStatus.READY, timedelta(hours=1))

        count = await sweep_expired_labs(lab_service)

        assert count == 0
        assert repository.get_lab_by_id(lab.id).status == LabStatus.READY
        assert fake_services["alpha"].cleanup_calls == []

    @pytest.mark.asyncio
    async def test_already_expired_lab_skipped(self, lab_service, repository, fake_services):
        _store_lab(repository, "old00001", LabStatus.EXPIRED, timedelta(hours=-3))

        assert await sweep_expired_labs(lab_service) == 0
        assert fake_services["alpha"].cleanup_calls == []

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_stop_sweep(self, lab_service, repository, fake_services):
        fake_services["alpha"].fail_cleanup = True
        _store_lab(repository, "bad00001", LabStatus.READY, timedelta(minutes=-5))
        _store_lab(repository, "bad00002", LabStatus.READY, timedelta(minutes=-5))

        count = await sweep_expired_labs(lab_service)

        assert count == 2
        assert repository.get_lab_by_id("bad00001").status == LabStatus.EXPIRED
        assert repository.get_lab_by_id("bad00002").status == LabStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_error_in_one_lab_does_not_stop_others(self, lab_service, repository, monkeypatch):
        _store_lab(repository, "err00001", LabStatus.READY, timedelta(minutes=-5))
        _store_lab(repository, "err00002", LabStatus.READY, timedelta(minutes=-5))
        original = lab_service.expire_lab

        async def flaky(lab_id):
            if lab_id == "err00001":
                raise RuntimeError("database hiccup")
            return await original(lab_id)

        monkeypatch.setattr(lab_service, "expire_lab", flaky)

        assert await sweep_expired_labs(lab_service) == 1
        assert repository.get_lab_by_id("err00002").status == LabStatus.EXPIRED


class TestSweepFailedLabs:
    """Tests for sweep_failed_labs."""

    @pytest.mark.asyncio
    async def test_stuck_error_lab_is_deleted(self, lab_service, repository, session_factory, fake_services):
        _store_lab(repository, "stk00001", LabStatus.ERROR, timedelta(hours=1))
        _age_lab(session_factory, "stk00001", timedelta(hours=2))

        count = await sweep_failed_labs(lab_service)

        assert count == 1
        assert repository.get_lab_by_id("stk00001") is None
        assert fake_services["alpha"].cleanup_calls == ["stk00001"]

    @pytest.mark.asyncio
    async def test_recent_error_lab_kept(self, lab_service, repository, session_factory):
        _store_lab(repository, "new00001", LabStatus.ERROR, timedelta(hours=1))
        _age_lab(session_factory, "new00001", timedelta(minutes=10))

        assert await sweep_failed_labs(lab_service) == 0
        assert repository.get_lab_by_id("new00001") is not None

    @pytest.mark.asyncio
    async def test_ready_lab_not_deleted(self, lab_service, repository, session_factory):
        _store_lab(repository, "rdy00001", LabStatus.READY, timedelta(hours=1))
        _age_lab(session_factory, "rdy00001", timedelta(hours=5))

        assert await sweep_failed_labs(lab_service) == 0

    @pytest.mark.asyncio
    async def test_deleted_even_when_cleanup_fails(self, lab_service, repository, session_factory, fake_services):
        fake_services["alpha"].fail_cleanup = True
        _store_lab(repository, "stk00002", LabStatus.ERROR, timedelta(hours=1))
        _age_lab(session_factory, "stk00002", timedelta(hours=2))

        assert await sweep_failed_labs(lab_service) == 1
        assert repository.get_lab_by_id("stk00002") is None


class TestMonitor:
    """Tests for the periodic monitor loop."""

    @pytest.mark.asyncio
    async def test_run_sweep_runs_both(self, lab_service):
        with patch("labby.tasks.expiry.sweep_expired_labs", new=AsyncMock(return_value=0)) as expired, \
             patch("labby.tasks.expiry.sweep_failed_labs", new=AsyncMock(return_value=0)) as failed:
            await run_sweep(lab_service)

        expired.assert_awaited_once_with(lab_service)
        failed.assert_awaited_once_with(lab_service)

    @pytest.mark.asyncio
    async def test_monitor_survives_errors_and_stops_on_cancel(self, lab_service, test_settings):
        test_settings.sweep_interval = 0
        calls = []

        async def flaky(service):
            calls.append(service)
            if len(calls) == 1:
                raise RuntimeError("boom")

        with patch("labby.tasks.expiry.run_sweep", new=flaky):
            task = asyncio.create_task(expiry_sweep_monitor(lab_service))
            for _ in range(50):
                await asyncio.sleep(0)
                if len(calls) >= 2:
                    break
            task.cancel()
            await task

        assert len(calls) >= 2
        assert task.done()


class TestTaskRunner:
    """Tests for the background task runner."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.Event().wait()

        runner = TaskRunner()
        runner.register("forever", forever)
        runner.start()
        await asyncio.wait_for(started.wait(), timeout=1)

        assert runner.running == ["forever"]

        await runner.stop()
        assert runner.running == []
        await runner.stop()

    @pytest.mark.asyncio
    async def test_runners_are_independent(self):
        calls = []

        async def once():
            calls.append(1)

        first = TaskRunner()
        first.register("once", once)
        second = TaskRunner()
        second.start()
        await asyncio.sleep(0)

        assert calls == []
        await second.stop()
        await first.stop()

    def test_duplicate_name_rejected(self):
        runner = TaskRunner()
        runner.register("sweep", AsyncMock())

        with pytest.raises(ValueError, match="sweep"):
            runner.register("sweep", AsyncMock())

    @pytest.mark.asyncio
    async def test_crashed_task_is_not_running(self):
        async def crash():
            raise RuntimeError("boom")

        runner = TaskRunner()
        runner.register("crash", crash)
        runner.start()
        for _ in range(3):
            await asyncio.sleep(0)

        assert runner.running == []
        await runner.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self):
        starts = []

        async def forever():
            starts.append(1)
            await asyncio.Event().wait()

        runner = TaskRunner()
        runner.register("forever", forever)
        runner.start()
        runner.start()
        await asyncio.sleep(0)

        assert starts == [1]
        await runner.stop()
