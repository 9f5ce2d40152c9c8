"""Periodic jobs: overlap handling and status reporting."""

from __future__ import annotations

import asyncio

import pytest

from lessonflow.scheduler import JobScheduler, PeriodicJob


@pytest.mark.asyncio
async def test_tick_is_skipped_while_previous_run_is_in_flight():
    release = asyncio.Event()
    runs = []

    async def sweep():
        runs.append(1)
        await release.wait()
        return "done"

    job = PeriodicJob("slow", sweep, interval_seconds=60)

    assert job.tick() is True
    await asyncio.sleep(0)
    assert job.tick() is False
    release.set()
    await asyncio.sleep(0.01)

    status = job.status()
    assert runs == [1]
    assert status.skipped_ticks == 1
    assert status.runs == 1
    assert status.last_result == "'done'"
    assert status.running is False


@pytest.mark.asyncio
async def test_run_once_records_errors_without_raising():
    async def sweep():
        raise RuntimeError("database unavailable")

    job = PeriodicJob("broken", sweep, interval_seconds=60)

    assert await job.run_once() is None
    status = job.status()
    assert status.last_error == "database unavailable"
    assert status.last_result is None
    assert status.as_dict()["last_finished"].endswith("Z")


@pytest.mark.asyncio
async def test_loop_waits_offset_then_runs_and_stops_cleanly():
    calls = []

    async def sweep():
        calls.append(1)

    job = PeriodicJob("fast", sweep, interval_seconds=0.02, offset_seconds=0.01)
    scheduler = JobScheduler([job])

    await scheduler.start()
    assert job.active is True
    await asyncio.sleep(0.08)
    await scheduler.stop()

    assert len(calls) >= 2
    assert job.active is False
    assert [s.name for s in scheduler.statuses()] == ["fast"]


def test_scheduler_rejects_duplicate_names():
    async def sweep():
        return None

    scheduler = JobScheduler([PeriodicJob("a", sweep, interval_seconds=1)])

    with pytest.raises(ValueError):
        scheduler.add(PeriodicJob("a", sweep, interval_seconds=1))
    assert scheduler.get("a") is not None
    assert scheduler.get("missing") is None


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicJob("bad", lambda: None, interval_seconds=0)
