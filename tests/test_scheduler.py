"""Tests for the clock and periodic scheduler."""

import asyncio

import pytest

from vigil.core.scheduler import ManualClock, Scheduler, SystemClock


class TestManualClock:
    def test_advance(self):
        clock = ManualClock(100.0)
        clock.advance(5)
        assert clock.now() == 105.0
        assert clock.utcnow().timestamp() == 105.0

    def test_no_backwards(self):
        clock = ManualClock(100.0)
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            clock.set(50.0)


class TestRegistration:
    def test_rejects_non_positive_interval(self, clock):
        scheduler = Scheduler(clock)
        with pytest.raises(ValueError):
            scheduler.every("bad", 0, lambda: None)

    def test_rejects_duplicate_name(self, clock):
        scheduler = Scheduler(clock)
        scheduler.every("job", 5, lambda: None)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.every("job", 5, lambda: None)

    def test_delay_sets_first_run(self, clock):
        scheduler = Scheduler(clock)
        job = scheduler.every("job", 5, lambda: None, delay=2)
        assert job.next_run == clock.now() + 2
        assert scheduler.seconds_until_next() == 2

    def test_cancel(self, clock):
        scheduler = Scheduler(clock)
        scheduler.every("job", 5, lambda: None)
        assert scheduler.cancel("job") is True
        assert scheduler.cancel("job") is False
        assert scheduler.seconds_until_next() is None


class TestRunPending:
    def test_runs_due_jobs(self, clock):
        calls = []
        scheduler = Scheduler(clock)
        scheduler.every("now", 5, lambda: calls.append("now"))
        scheduler.every("later", 5, lambda: calls.append("later"), delay=3)
        assert scheduler.run_pending() == 1
        assert calls == ["now"]

    def test_failure_is_isolated(self, clock):
        calls = []

        def boom():
            raise RuntimeError("kaput")

        scheduler = Scheduler(clock)
        failing = scheduler.every("boom", 5, boom)
        scheduler.every("ok", 5, lambda: calls.append(1))
        assert scheduler.run_pending() == 2
        assert calls == [1]
        assert failing.failures == 1
        assert "kaput" in failing.last_error
        assert failing.next_run == clock.now() + 5

    def test_missed_ticks_are_skipped(self, clock):
        scheduler = Scheduler(clock)
        job = scheduler.every("job", 5, lambda: None)
        start = clock.now()
        scheduler.run_pending()
        clock.advance(23)
        assert scheduler.run_pending() == 1
        assert job.runs == 2
        assert job.next_run == start + 25


class TestAdvance:
    def test_fires_in_due_order(self, clock):
        start = clock.now()
        calls = []
        scheduler = Scheduler(clock)
        scheduler.every("a", 3, lambda: calls.append(("a", clock.now() - start)))
        scheduler.every("b", 2, lambda: calls.append(("b", clock.now() - start)))
        ran = scheduler.advance(5)
        assert calls == [("a", 0), ("b", 0), ("b", 2), ("a", 3), ("b", 4)]
        assert ran == 5
        assert clock.now() == start + 5

    def test_counts_runs(self, clock):
        scheduler = Scheduler(clock)
        job = scheduler.every("job", 5, lambda: None)
        assert scheduler.advance(10) == 3
        assert job.runs == 3

    def test_requires_manual_clock(self):
        scheduler = Scheduler(SystemClock())
        with pytest.raises(TypeError):
            scheduler.advance(1)

    def test_negative(self, clock):
        with pytest.raises(ValueError):
            Scheduler(clock).advance(-1)


class TestAsyncRunner:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        calls = []
        scheduler = Scheduler(clock, max_sleep=0.01)
        scheduler.every("job", 60, lambda: calls.append(1))

        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.running is False
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, clock):
        scheduler = Scheduler(clock, max_sleep=0.01)
        await scheduler.start()
        await scheduler.start()
        await scheduler.stop()
        assert scheduler.running is False


class TestAsyncJobs:
    @pytest.mark.asyncio
    async def test_coroutine_job_runs_as_task(self, clock):
        calls = []

        async def job():
            await asyncio.sleep(0)
            calls.append(1)

        scheduler = Scheduler(clock)
        registered = scheduler.every("refresh", 60, job)
        assert scheduler.run_pending() == 1
        await registered.task
        assert calls == [1]
        assert registered.failures == 0

    @pytest.mark.asyncio
    async def test_coroutine_failure_is_recorded(self, clock):
        async def job():
            raise RuntimeError("refresh failed")

        scheduler = Scheduler(clock)
        registered = scheduler.every("refresh", 60, job)
        scheduler.run_pending()
        with pytest.raises(RuntimeError):
            await registered.task
        assert registered.failures == 1
        assert "refresh failed" in registered.last_error

    @pytest.mark.asyncio
    async def test_slow_job_is_not_stacked(self, clock):
        release = asyncio.Event()

        async def job():
            await release.wait()

        scheduler = Scheduler(clock)
        registered = scheduler.every("refresh", 10, job)
        scheduler.run_pending()
        clock.advance(10)
        scheduler.run_pending()
        assert registered.runs == 1

        release.set()
        await registered.task
        clock.advance(10)
        scheduler.run_pending()
        assert registered.runs == 2
        await registered.task

    @pytest.mark.asyncio
    async def test_stop_cancels_running_jobs(self, clock):
        async def job():
            await asyncio.sleep(60)

        scheduler = Scheduler(clock, max_sleep=0.01)
        registered = scheduler.every("refresh", 60, job)
        await scheduler.start()
        await asyncio.sleep(0.05)
        task = registered.task
        assert task is not None
        await scheduler.stop()
        assert task.cancelled()
        assert registered.failures == 0

    def test_coroutine_job_without_loop_fails_softly(self, clock):
        async def job():
            pass

        scheduler = Scheduler(clock)
        registered = scheduler.every("refresh", 60, job)
        assert scheduler.run_pending() == 1
        assert registered.failures == 1
        assert registered.task is None
