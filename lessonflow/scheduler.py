"""In-process periodic jobs for the post-lesson sweeps.

Each job owns one asyncio task that waits ``offset`` seconds, then runs the
sweep every ``interval`` seconds. A tick that comes due while the previous run
is still going is skipped, never queued behind it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from lessonflow.telemetry import observe_sweep
from lessonflow.utils.time import isoformat_z, utcnow

logger = logging.getLogger(__name__)
pipeline_logger = logging.getLogger("lessonflow.pipeline")

SweepFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class JobStatus:
    name: str
    interval_seconds: float
    offset_seconds: float
    running: bool
    active: bool
    last_started: Optional[datetime]
    last_finished: Optional[datetime]
    last_result: Optional[str]
    last_error: Optional[str]
    runs: int
    skipped_ticks: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "offset_seconds": self.offset_seconds,
            "running": self.running,
            "active": self.active,
            "last_started": isoformat_z(self.last_started) if self.last_started else None,
            "last_finished": isoformat_z(self.last_finished) if self.last_finished else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "runs": self.runs,
            "skipped_ticks": self.skipped_ticks,
        }


class PeriodicJob:
    def __init__(
        self,
        name: str,
        sweep: SweepFn,
        *,
        interval_seconds: float,
        offset_seconds: float = 0.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self._sweep = sweep
        self._interval = interval_seconds
        self._offset = max(0.0, offset_seconds)
        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self._last_started: Optional[datetime] = None
        self._last_finished: Optional[datetime] = None
        self._last_result: Optional[str] = None
        self._last_error: Optional[str] = None
        self._runs = 0
        self._skipped = 0

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def active(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        async with self._lock:
            if self.active:
                return
            loop = asyncio.get_running_loop()
            self._loop_task = loop.create_task(self._loop(), name=f"job-{self.name}")
        logger.info(
            "Scheduled job %s every %ss (offset %ss)", self.name, self._interval, self._offset
        )

    async def stop(self) -> None:
        async with self._lock:
            loop_task, self._loop_task = self._loop_task, None
            current = self._current
        for task in (loop_task, current):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def tick(self) -> bool:
        """Start a run unless one is in flight; returns whether a run started."""

        if self.running:
            self._skipped += 1
            pipeline_logger.warning("Job %s still running; skipping this tick", self.name)
            return False
        self._current = asyncio.get_running_loop().create_task(
            self.run_once(), name=f"job-{self.name}-run"
        )
        return True

    async def run_once(self) -> Any:
        """Run the sweep now, recording outcome, duration and the last result."""

        self._last_started = utcnow()
        started = time.monotonic()
        pipeline_logger.info("Job %s started", self.name)
        try:
            result = await self._sweep()
        except asyncio.CancelledError:
            observe_sweep(self.name, "cancelled", time.monotonic() - started)
            raise
        except Exception as exc:  # noqa: BLE001 - a failed sweep must not kill the loop
            self._last_error = str(exc) or exc.__class__.__name__
            self._last_result = None
            observe_sweep(self.name, "error", time.monotonic() - started)
            pipeline_logger.exception("Job %s failed", self.name)
            return None
        finally:
            self._last_finished = utcnow()
            self._runs += 1

        self._last_error = None
        self._last_result = repr(result) if result is not None else "ok"
        duration = time.monotonic() - started
        observe_sweep(self.name, "ok", duration)
        pipeline_logger.info("Job %s finished in %.2fs: %s", self.name, duration, self._last_result)
        return result

    def status(self) -> JobStatus:
        return JobStatus(
            name=self.name,
            interval_seconds=self._interval,
            offset_seconds=self._offset,
            running=self.running,
            active=self.active,
            last_started=self._last_started,
            last_finished=self._last_finished,
            last_result=self._last_result,
            last_error=self._last_error,
            runs=self._runs,
            skipped_ticks=self._skipped,
        )

    async def _loop(self) -> None:
        if self._offset:
            await asyncio.sleep(self._offset)
        while True:
            self.tick()
            await asyncio.sleep(self._interval)


class JobScheduler:
    """Holds the named jobs so the app can start, stop and list them together."""

    def __init__(self, jobs: list[PeriodicJob] | None = None) -> None:
        self._jobs: dict[str, PeriodicJob] = {}
        for job in jobs or []:
            self.add(job)

    def add(self, job: PeriodicJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Duplicate job name: {job.name}")
        self._jobs[job.name] = job

    def get(self, name: str) -> Optional[PeriodicJob]:
        return self._jobs.get(name)

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    async def start(self) -> None:
        for job in self._jobs.values():
            await job.start()

    async def stop(self) -> None:
        for job in self._jobs.values():
            await job.stop()

    def statuses(self) -> list[JobStatus]:
        return [job.status() for job in self._jobs.values()]


__all__ = ["JobScheduler", "JobStatus", "PeriodicJob"]
