"""Clock and periodic-job scheduler shared by every monitor and loop.

All periodic work (agent ticks, security scans, the analytics cycle, the
state broadcast) registers against one ``Scheduler``. In production it runs
as a single asyncio task on the server's event loop. In tests a
``ManualClock`` is advanced by hand and ``Scheduler.advance`` fires jobs in
due-time order without any real waiting.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger("vigil.scheduler")


class Clock(Protocol):
    """Time source used by monitors for timestamps and eviction windows."""

    def now(self) -> float: ...

    def utcnow(self) -> datetime: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Virtual clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self._now, timezone.utc)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds

    def set(self, timestamp: float) -> None:
        if timestamp < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = float(timestamp)


@dataclass(slots=True)
class Job:
    """A registered periodic callback."""

    name: str
    interval: float
    callback: Callable[[], object]
    next_run: float
    runs: int = 0
    failures: int = 0
    last_error: str | None = None
    task: asyncio.Task | None = None

    def record_failure(self, exc: BaseException) -> None:
        self.failures += 1
        self.last_error = repr(exc)


class Scheduler:
    """Runs named callbacks on fixed intervals against a ``Clock``."""

    def __init__(self, clock: Clock | None = None, max_sleep: float = 1.0) -> None:
        self.clock: Clock = clock or SystemClock()
        self._jobs: dict[str, Job] = {}
        self._max_sleep = max_sleep
        self._task: asyncio.Task | None = None
        self._running = False

    def every(
        self,
        name: str,
        interval: float,
        callback: Callable[[], object],
        delay: float = 0.0,
    ) -> Job:
        """Register ``callback`` to run every ``interval`` seconds, first after ``delay``."""
        if interval <= 0:
            raise ValueError(f"Interval for job {name!r} must be positive")
        if name in self._jobs:
            raise ValueError(f"Job {name!r} is already registered")

        job = Job(
            name=name,
            interval=float(interval),
            callback=callback,
            next_run=self.clock.now() + max(0.0, delay),
        )
        self._jobs[name] = job
        logger.debug("Registered job %s every %.1fs (delay %.1fs)", name, interval, delay)
        return job

    def cancel(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def jobs(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.next_run)

    def seconds_until_next(self) -> float | None:
        if not self._jobs:
            return None
        return min(j.next_run for j in self._jobs.values()) - self.clock.now()

    def run_pending(self) -> int:
        """Run every due job once, oldest due first. Returns how many ran."""
        now = self.clock.now()
        due = sorted(
            (j for j in self._jobs.values() if j.next_run <= now),
            key=lambda j: j.next_run,
        )
        ran = 0
        for job in due:
            if self._jobs.get(job.name) is not job:
                continue  # cancelled by an earlier job this round
            if self._run_job(job):
                ran += 1
            job.next_run += job.interval
            if job.next_run <= now:
                # Missed ticks are skipped, not replayed in a burst
                missed = int((now - job.next_run) // job.interval) + 1
                job.next_run += missed * job.interval
        return ran

    def _run_job(self, job: Job) -> bool:
        if job.task is not None and not job.task.done():
            logger.warning("Job %s is still running; skipping this tick", job.name)
            return False
        job.runs += 1
        try:
            result = job.callback()
            if inspect.isawaitable(result):
                job.task = self._spawn(job, result)
        except Exception as exc:
            job.record_failure(exc)
            logger.exception("Job %s failed; will retry on next tick", job.name)
        return True

    def _spawn(self, job: Job, awaitable) -> asyncio.Task:
        """Run an async job's awaitable as a task on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RuntimeError(f"Job {job.name!r} needs a running event loop") from None

        task = loop.create_task(awaitable, name=f"vigil-job-{job.name}")

        def finished(done: asyncio.Task) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                job.record_failure(exc)
                logger.error(
                    "Job %s failed; will retry on next tick", job.name, exc_info=exc
                )

        task.add_done_callback(finished)
        return task

    def advance(self, seconds: float) -> int:
        """Move a ``ManualClock`` forward, firing jobs at their due times."""
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        if seconds < 0:
            raise ValueError("Cannot advance by a negative amount")

        target = self.clock.now() + seconds
        ran = 0
        while True:
            upcoming = min((j.next_run for j in self._jobs.values()), default=None)
            if upcoming is None or upcoming > target:
                break
            if upcoming > self.clock.now():
                self.clock.set(upcoming)
            ran += self.run_pending()
        self.clock.set(target)
        return ran

    # -- asyncio runner ---------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def run_forever(self) -> None:
        """Sleep until the next due job, run it, repeat."""
        while self._running:
            self.run_pending()
            delay = self.seconds_until_next()
            if delay is None:
                delay = self._max_sleep
            await asyncio.sleep(min(max(delay, 0.0), self._max_sleep))

    async def start(self) -> None:
        """Start the background task on the running loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self.run_forever())
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        """Cancel the background task and any async jobs, and wait for them."""
        self._running = False
        tasks = [j.task for j in self._jobs.values() if j.task is not None and not j.task.done()]
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        for job in self._jobs.values():
            job.task = None
        logger.info("Scheduler stopped")
