from pathlib import Path

import pytest

from fluzio_points.observability.scheduler import get_job_scheduler_store
from fluzio_points.scheduling import JobDefinition, JobScheduler, RetryPolicy, ScheduleConfig
from fluzio_points.scheduling.config import load_job_definitions

NO_BACKOFF = RetryPolicy(
    max_attempts=3,
    base_backoff_seconds=0.0,
    backoff_multiplier=1.0,
    max_backoff_seconds=0.0,
    jitter_seconds=0.0,
)


def _job(job_id: str, *, retry: RetryPolicy = NO_BACKOFF) -> JobDefinition:
    return JobDefinition(id=job_id, task="tests.inline", cron="* * * * *", kwargs={}, retry=retry)


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_job_scheduler_store()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"settled": 3}

    job = _job("job-alpha")
    result = await scheduler._run_with_retries(flaky_job, job)

    assert result == {"settled": 3}
    assert attempts == 2
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.last_success_at is not None
    assert job_snapshot.last_error is None
    assert job_snapshot.consecutive_failures == 0
    assert job_snapshot.last_summary == {"settled": 3}


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_job_scheduler_store()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("job-failure", retry=RetryPolicy(max_attempts=2, base_backoff_seconds=0.0, jitter_seconds=0.0))
    assert await scheduler._run_with_retries(failing_job, job) is None

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    assert snapshot.totals["attempt_failures"] == 2
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.consecutive_failures == 2
    assert job_snapshot.last_error == "boom"
    assert job_snapshot.last_error_at is not None


@pytest.mark.asyncio
async def test_scheduler_waits_between_attempts(tmp_path: Path, monkeypatch) -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("fluzio_points.scheduling.runner.asyncio.sleep", fake_sleep)
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    policy = RetryPolicy(
        max_attempts=3,
        base_backoff_seconds=10.0,
        backoff_multiplier=2.0,
        max_backoff_seconds=15.0,
        jitter_seconds=0.0,
    )
    await scheduler._run_with_retries(failing_job, _job("job-backoff", retry=policy))

    assert delays == [10.0, 15.0]
    assert get_job_scheduler_store().snapshot().jobs["job-backoff"].last_retry_delay_seconds == 15.0


def test_retry_policy_delay_adds_bounded_jitter() -> None:
    policy = RetryPolicy(base_backoff_seconds=4.0, backoff_multiplier=3.0, max_backoff_seconds=30.0, jitter_seconds=2.0)

    assert 4.0 <= policy.delay_for(1) <= 6.0
    assert 12.0 <= policy.delay_for(2) <= 14.0
    assert 30.0 <= policy.delay_for(3) <= 32.0


@pytest.mark.asyncio
async def test_build_runner_invokes_configured_task(tmp_path: Path, session_factory) -> None:
    scheduler = JobScheduler(session_factory=session_factory, config_path=tmp_path / "noop.toml")
    job = JobDefinition(
        id="settlement_sweep",
        task="fluzio_points.jobs.settlement.run_settlement_sweep",
        cron="*/5 * * * *",
        kwargs={"batch_size": 10},
        retry=NO_BACKOFF,
    )

    runner = scheduler.build_runner(job)
    summary = await runner()

    assert summary == {"scanned": 0, "settled": 0, "noop": 0, "errors": []}
    assert get_job_scheduler_store().snapshot().jobs["settlement_sweep"].last_summary == summary


def test_build_runner_rejects_unknown_tasks(tmp_path: Path) -> None:
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    with pytest.raises(ValueError):
        scheduler.build_runner(JobDefinition(id="bare", task="no_module", cron="* * * * *"))
    with pytest.raises(AttributeError):
        scheduler.build_runner(
            JobDefinition(id="missing", task="fluzio_points.jobs.settlement.not_a_task", cron="* * * * *")
        )
    with pytest.raises(TypeError):
        scheduler.build_runner(
            JobDefinition(id="sync", task="fluzio_points.scheduling.config.load_job_definitions", cron="* * * * *")
        )


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health")
    await scheduler._run_with_retries(successful_job, job)
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["max_attempts"] == 3
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "UTC"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.sample.kwargs]
        limit = 25

        [jobs.disabled]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false

        [jobs.broken]
        cron = "* * * * *"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "UTC"
    assert [job.id for job in config.jobs] == ["sample", "disabled"]
    assert [job.id for job in config.enabled_jobs] == ["sample"]
    job = config.jobs[0]
    assert job.kwargs == {"limit": 25}
    assert job.retry.max_attempts == 5
    assert job.retry.base_backoff_seconds == 2.0
    assert job.retry.backoff_multiplier == 3.0
    assert job.retry.max_backoff_seconds == 30.0
    assert job.retry.jitter_seconds == 1.5


def test_bundled_schedule_registers_settlement_jobs() -> None:
    config_path = Path(__file__).resolve().parent.parent / "config" / "schedules.toml"

    config = load_job_definitions(config_path)

    tasks = {job.id: job.task for job in config.enabled_jobs}
    assert tasks == {
        "settlement_sweep": "fluzio_points.jobs.settlement.run_settlement_sweep",
        "referral_expiry": "fluzio_points.jobs.settlement.run_referral_expiry",
    }


def test_missing_schedule_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "absent.toml")
