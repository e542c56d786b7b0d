from datetime import datetime, timedelta, UTC
import logging
import threading
import time
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from compliancehub.db.session import SessionLocal
from compliancehub.core.config import get_settings
from compliancehub.services import hris, jobs

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")

JOBS = {
    "status_update": jobs.run_status_update,
    "expiry_notifications": jobs.send_expiry_notifications,
    "expired_notifications": jobs.send_expired_certificate_notifications,
    "compliance_audit": jobs.run_compliance_audit,
    "container_health": jobs.run_container_health,
    "storage_backup": jobs.run_storage_backup,
    "hris_sync": hris.run_hris_sync,
}

_running: set[str] = set()
_lock = threading.Lock()


class JobAlreadyRunning(RuntimeError):
    pass


def _acquire(job_id: str) -> bool:
    with _lock:
        if job_id in _running:
            return False
        _running.add(job_id)
        return True


def _release(job_id: str) -> None:
    with _lock:
        _running.discard(job_id)


def _retry_delay(attempt: int) -> int:
    backoff = get_settings().backoff_schedule()
    if not backoff:
        return 60
    return backoff[min(attempt - 1, len(backoff) - 1)]


def _schedule_retry(job_id: str, next_attempt: int) -> None:
    delay = _retry_delay(next_attempt - 1)
    scheduler.add_job(
        _run_job,
        trigger=DateTrigger(run_date=datetime.now(UTC) + timedelta(seconds=delay)),
        args=[job_id, next_attempt],
        id=f"{job_id}_retry",
        replace_existing=True,
    )
    logger.warning("job retry scheduled", extra={"job": job_id, "attempt": next_attempt, "delay_seconds": delay})


def _record_failure(job_id: str, exc: BaseException, attempt: int) -> None:
    db = SessionLocal()
    try:
        jobs.record_job_failure(db, job_id, exc, attempt)
    except Exception:
        logger.exception("could not record job failure", extra={"job": job_id})
    finally:
        db.close()


def _run_job(job_id: str, attempt: int = 1) -> dict | None:
    if not _acquire(job_id):
        if attempt > 1 and scheduler.running:
            # a pending retry keeps its attempt number until the lock frees up
            _schedule_retry(job_id, attempt)
        else:
            logger.warning("job still running, skipping", extra={"job": job_id})
        return None

    started = time.monotonic()
    db = SessionLocal()
    try:
        result = JOBS[job_id](db)
        logger.info("job completed", extra={"job": job_id, "attempt": attempt})
        return result
    except Exception as exc:
        db.rollback()
        logger.exception("job failed", extra={"job": job_id, "attempt": attempt})
        if attempt < get_settings().job_tries and scheduler.running:
            _schedule_retry(job_id, attempt + 1)
        else:
            _record_failure(job_id, exc, attempt)
        return None
    finally:
        db.close()
        _release(job_id)
        elapsed = time.monotonic() - started
        if elapsed > get_settings().job_timeout_seconds:
            logger.warning("job exceeded time limit", extra={"job": job_id, "elapsed_seconds": round(elapsed, 1)})


def run_job_now(job_id: str) -> dict:
    """Run a registered job in the calling thread and return its result.

    Errors propagate to the caller; no retry is scheduled.
    """
    if job_id not in JOBS:
        raise KeyError(job_id)
    if not _acquire(job_id):
        raise JobAlreadyRunning(job_id)

    db = SessionLocal()
    try:
        return JOBS[job_id](db)
    finally:
        db.close()
        _release(job_id)


def _add(job_id: str, trigger: CronTrigger) -> None:
    scheduler.add_job(
        _run_job,
        trigger=trigger,
        args=[job_id],
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=get_settings().job_timeout_seconds,
    )


def start_scheduler() -> None:
    settings = get_settings()
    if scheduler.running:
        return

    _add("status_update", CronTrigger(minute=0))
    _add("expiry_notifications", CronTrigger(hour=8, minute=0))
    _add("expired_notifications", CronTrigger(hour=8, minute=30))
    _add("compliance_audit", CronTrigger(day=1, hour=9, minute=0))
    _add("container_health", CronTrigger(hour=2, minute=30))
    if settings.backup_enabled:
        _add("storage_backup", CronTrigger(hour=1, minute=0))
    if settings.hris_enabled:
        minute, hour, day, month, dow = settings.hris_sync_cron.split(" ")
        _add("hris_sync", CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=dow))
    scheduler.start()
    logger.info("scheduler started", extra={"jobs": [job.id for job in scheduler.get_jobs()]})


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
