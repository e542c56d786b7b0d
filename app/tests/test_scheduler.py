from unittest.mock import ANY, MagicMock, patch
import pytest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from compliancehub.core.config import Settings
from compliancehub.services import scheduler


def _failing(db):
    raise RuntimeError("boom")


def test_retry_delay_follows_backoff(settings):
    assert settings.backoff_schedule() == [30, 120, 300]
    assert scheduler._retry_delay(1) == 30
    assert scheduler._retry_delay(2) == 120
    assert scheduler._retry_delay(5) == 300


def test_run_job_returns_result(db, monkeypatch):
    monkeypatch.setitem(scheduler.JOBS, "status_update", lambda session: {"changed": 0})
    assert scheduler._run_job("status_update") == {"changed": 0}


def test_failed_job_is_retried_with_backoff(db, monkeypatch):
    fake = MagicMock(running=True)
    monkeypatch.setattr(scheduler, "scheduler", fake)
    monkeypatch.setitem(scheduler.JOBS, "status_update", _failing)

    with patch("compliancehub.services.jobs.record_job_failure") as record:
        assert scheduler._run_job("status_update") is None

    record.assert_not_called()
    kwargs = fake.add_job.call_args.kwargs
    assert kwargs["args"] == ["status_update", 2]
    assert kwargs["id"] == "status_update_retry"
    assert isinstance(kwargs["trigger"], DateTrigger)


def test_last_attempt_records_failure(db, monkeypatch):
    fake = MagicMock(running=True)
    monkeypatch.setattr(scheduler, "scheduler", fake)
    monkeypatch.setitem(scheduler.JOBS, "status_update", _failing)

    with patch("compliancehub.services.jobs.record_job_failure") as record:
        scheduler._run_job("status_update", attempt=3)

    fake.add_job.assert_not_called()
    record.assert_called_once_with(ANY, "status_update", ANY, 3)
    assert str(record.call_args.args[2]) == "boom"


def test_overlapping_run_is_skipped(db, monkeypatch):
    job = MagicMock(return_value={})
    monkeypatch.setitem(scheduler.JOBS, "status_update", job)

    assert scheduler._acquire("status_update")
    try:
        assert scheduler._run_job("status_update") is None
        with pytest.raises(scheduler.JobAlreadyRunning):
            scheduler.run_job_now("status_update")
    finally:
        scheduler._release("status_update")

    job.assert_not_called()
    assert scheduler.run_job_now("status_update") == {}


def test_retry_blocked_by_running_job_is_rescheduled(db, monkeypatch):
    fake = MagicMock(running=True)
    monkeypatch.setattr(scheduler, "scheduler", fake)
    job = MagicMock(return_value={})
    monkeypatch.setitem(scheduler.JOBS, "status_update", job)

    assert scheduler._acquire("status_update")
    try:
        assert scheduler._run_job("status_update", attempt=2) is None
    finally:
        scheduler._release("status_update")

    job.assert_not_called()
    kwargs = fake.add_job.call_args.kwargs
    assert kwargs["args"] == ["status_update", 2]
    assert kwargs["id"] == "status_update_retry"


def test_run_job_now_rejects_unknown_job():
    with pytest.raises(KeyError):
        scheduler.run_job_now("does_not_exist")


def test_start_scheduler_registers_jobs(monkeypatch, settings):
    fresh = BackgroundScheduler(timezone="UTC")
    monkeypatch.setattr(scheduler, "scheduler", fresh)
    monkeypatch.setattr(settings, "backup_enabled", True)
    monkeypatch.setattr(settings, "hris_enabled", True)

    scheduler.start_scheduler()
    try:
        jobs = {job.id: job for job in fresh.get_jobs()}
        assert set(jobs) == {
            "status_update",
            "expiry_notifications",
            "expired_notifications",
            "compliance_audit",
            "container_health",
            "storage_backup",
            "hris_sync",
        }
        assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())
        assert all(job.misfire_grace_time == settings.job_timeout_seconds for job in jobs.values())
    finally:
        scheduler.shutdown_scheduler()


def test_backup_job_is_opt_in(monkeypatch, settings):
    fresh = BackgroundScheduler(timezone="UTC")
    monkeypatch.setattr(scheduler, "scheduler", fresh)
    monkeypatch.setattr(settings, "backup_enabled", Settings.model_fields["backup_enabled"].default)
    monkeypatch.setattr(settings, "hris_enabled", False)

    scheduler.start_scheduler()
    try:
        assert settings.backup_enabled is False
        assert "storage_backup" not in {job.id for job in fresh.get_jobs()}
    finally:
        scheduler.shutdown_scheduler()
