# backend/tests/scheduler/test_scheduler_registration.py
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

import wxconsensus.scheduler.jobs as jobs
from wxconsensus.errors import StorageError
from wxconsensus.scheduler.setup import ACCURACY_JOB_ID, configure_jobs, scheduler

from _helpers import build_service, default_handler


def test_configure_jobs_registers_accuracy_job() -> None:
    # Start from a clean slate so repeated test runs don't accumulate jobs
    scheduler.remove_all_jobs()

    configure_jobs()

    registered = [job for job in scheduler.get_jobs() if job.id == ACCURACY_JOB_ID]
    assert len(registered) == 1
    job = registered[0]
    assert job.func is jobs.run_accuracy_update
    assert job.trigger.interval == timedelta(minutes=60)
    assert job.max_instances == 1
    assert job.coalesce is True

    scheduler.remove_all_jobs()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_job_runs_cycle_and_shutdown_releases_lease(anyio_backend, memory_store, monkeypatch):
    service = build_service(memory_store, default_handler)
    monkeypatch.setattr(jobs, "get_accuracy_service", lambda: service)

    await jobs.run_accuracy_update()
    assert not memory_store.are_accuracy_stores_empty()
    assert memory_store.get_lease(service.lease.lease_id).holder_id == "test-holder"
    assert service.lease.renewal_running

    await jobs.release_leadership()
    assert memory_store.get_lease(service.lease.lease_id) is None
    assert not service.lease.renewal_running


class _FailingService:
    async def check_and_run_hourly_update(self):
        raise StorageError("database is locked")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_job_logs_cycle_failure_without_raising(anyio_backend, monkeypatch):
    monkeypatch.setattr(jobs, "get_accuracy_service", lambda: _FailingService())

    with capture_logs() as logs:
        await jobs.run_accuracy_update()

    assert any(e["event"] == "accuracy_job.error" and "locked" in e["error"] for e in logs)
