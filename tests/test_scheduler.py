"""Tests for the sweep scheduler and the engine container."""

import asyncio

import pytest

from config import Settings, UserRole
from core import NotFoundError
from cases.application import SweepReport
from cases.container import CaseEngine
from cases.infrastructure import CaseScheduler

from conftest import T0, FrozenClock, RecordingNotifier, make_user


class CountingJob:
    """Job body that records concurrency and optionally blocks."""

    def __init__(self, delay: float = 0.0, error: str = None):
        self.delay = delay
        self.error = error
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def __call__(self) -> SweepReport:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return SweepReport(sweep="counting", started_at=T0, processed=self.calls, error=self.error)


async def _explode() -> SweepReport:
    raise RuntimeError("store unreachable")


class TestCaseScheduler:
    """Tests for job registration and manual control."""

    async def test_register_and_status(self):
        scheduler = CaseScheduler()
        scheduler.register("counting", CountingJob(), "interval", description="Count things", seconds=30)
        scheduler.register("nightly", CountingJob(), "cron", hour=8, minute=0)

        status = {job["name"]: job for job in scheduler.jobs_status()}

        assert scheduler.job_names() == ["counting", "nightly"]
        assert status["counting"]["description"] == "Count things"
        assert status["counting"]["paused"] is False
        assert status["counting"]["runs"] == 0
        assert status["counting"]["last_report"] is None
        assert status["nightly"]["description"] == "nightly"

    async def test_run_job_now(self):
        scheduler = CaseScheduler()
        scheduler.register("counting", CountingJob(), "interval", seconds=30)

        report = await scheduler.run_job_now("counting")

        assert report.processed == 1
        [status] = scheduler.jobs_status()
        assert status["runs"] == 1
        assert status["last_report"]["processed"] == 1
        assert status["last_error"] is None

    async def test_report_error_is_surfaced(self):
        scheduler = CaseScheduler()
        scheduler.register("counting", CountingJob(error="selection failed"), "interval", seconds=30)

        await scheduler.run_job_now("counting")

        assert scheduler.jobs_status()[0]["last_error"] == "selection failed"

    async def test_job_exception_is_contained(self):
        scheduler = CaseScheduler()
        scheduler.register("explode", _explode, "interval", seconds=30)

        assert await scheduler.run_job_now("explode") is None
        [status] = scheduler.jobs_status()
        assert status["runs"] == 0
        assert status["last_error"] == "store unreachable"

    async def test_unknown_job(self):
        scheduler = CaseScheduler()

        with pytest.raises(NotFoundError):
            await scheduler.run_job_now("missing")
        with pytest.raises(NotFoundError):
            scheduler.pause_job("missing")

    async def test_runs_of_one_job_never_overlap(self):
        scheduler = CaseScheduler()
        job = CountingJob(delay=0.05)
        scheduler.register("counting", job, "interval", seconds=30)

        await asyncio.gather(scheduler.run_job_now("counting"), scheduler.run_job_now("counting"))

        assert job.calls == 2
        assert job.max_active == 1

    async def test_pause_and_resume(self):
        scheduler = CaseScheduler()
        scheduler.register("counting", CountingJob(), "interval", seconds=30)
        scheduler.start()
        try:
            scheduler.pause_job("counting")
            [paused] = scheduler.jobs_status()
            scheduler.resume_job("counting")
            [resumed] = scheduler.jobs_status()
        finally:
            scheduler.stop()

        assert paused["paused"] is True
        assert paused["next_run_time"] is None
        assert resumed["paused"] is False
        assert resumed["next_run_time"] is not None

    async def test_start_and_stop(self):
        scheduler = CaseScheduler()

        scheduler.start()
        scheduler.start()
        assert scheduler.is_running is True

        scheduler.stop()
        scheduler.stop()
        assert scheduler.is_running is False


@pytest.fixture
def engine_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        store_backend="memory",
        scheduler_enabled=False,
        sla_config_path=tmp_path / "sla_config.yaml",
    )


class TestCaseEngine:
    """Tests for wiring the engine from settings."""

    async def test_memory_engine_runs_every_sweep(self, engine_settings):
        notifier = RecordingNotifier()
        clock = FrozenClock()
        engine = CaseEngine.from_settings(engine_settings, clock=clock, notifier=notifier)
        await engine.prepare(watch_config=False)
        engine.register_jobs()
        await engine.users.insert(make_user("alice", supervisor="sam"))
        await engine.users.insert(make_user("sam", role=UserRole.SENIOR_ANALYST, daily_digest=True))
        await engine.lifecycle.create(
            {"title": "Beacon", "description": "C2 traffic", "priority": "P1", "assigned_to": "alice"}
        )
        clock.advance(hours=3)

        reports = {name: await engine.scheduler.run_job_now(name) for name in engine.scheduler.job_names()}
        await engine.stop()

        assert set(reports) == {
            "sla_breach", "escalation", "workload_reconciliation", "daily_digest", "liveness"
        }
        assert reports["sla_breach"].processed == 1
        assert reports["escalation"].processed == 1
        assert engine.liveness.last_snapshot.overdue_cases == 1
        assert "escalation" in notifier.kinds_for("sam")
        assert engine.config_manager.get_config().deadline_hours["P1"] == 1

    async def test_sql_engine_prepares_tables(self, engine_settings, tmp_path):
        sql_settings = engine_settings.model_copy(update={
            "store_backend": "sql",
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        })
        engine = CaseEngine.from_settings(sql_settings, clock=FrozenClock(), notifier=RecordingNotifier())

        await engine.prepare(watch_config=False)
        await engine.users.insert(make_user("alice"))
        case = await engine.lifecycle.create({"title": "a", "description": "b", "assigned_to": "alice"})
        stored = await engine.cases.get(case.id)
        await engine.stop()

        assert stored.case_id == case.case_id
