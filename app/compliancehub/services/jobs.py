"""Batch jobs shared by the scheduler, the CLI and the system API.

Every job takes an open session, returns a plain result dict and leaves a
summary row in ``system_logs``. Per-item failures are counted and logged;
anything that escapes a job is handled by the scheduler's retry wrapper.
"""

from collections.abc import Iterator
from datetime import date, datetime, timedelta, UTC
import logging
import shutil
import time
from pathlib import Path
from sqlalchemy.orm import Query, Session
from compliancehub.core.config import get_settings
from compliancehub.models import Certificate, Employee, SystemLog, TrainingRecord
from compliancehub.services import containers, notifications
from compliancehub.services.certifications import refresh_record_status, update_all_statuses
from compliancehub.services.compliance import compliance_report, employee_compliance
from compliancehub.services.files import storage_root

logger = logging.getLogger(__name__)

STANDARD_PERIODS = (90, 60, 30, 7)


def queue_for(days: int | None) -> str:
    if days is not None and days <= 7:
        return "urgent"
    if days is not None and days <= 30:
        return "high"
    return "normal"


def _active_certificates(db: Session) -> Query:
    return (
        db.query(Certificate)
        .join(Certificate.training_record)
        .join(TrainingRecord.employee)
        .filter(Employee.status == "active", Certificate.expiry_date.isnot(None))
    )


def _batches(query: Query, size: int) -> Iterator[list[Certificate]]:
    last_id = 0
    while True:
        chunk = query.filter(Certificate.id > last_id).order_by(Certificate.id.asc()).limit(size).all()
        if not chunk:
            return
        yield chunk
        last_id = chunk[-1].id


def _log_summary(db: Session, message: str, context: dict, level: str = "info") -> None:
    db.add(SystemLog(level=level, message=message, context=context, channel="jobs"))
    db.commit()


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _process_period(db: Session, days: int, batch_size: int, today: date) -> dict:
    result = {"processed": 0, "success": 0, "skipped": 0, "errors": 0, "error_details": []}
    query = _active_certificates(db).filter(Certificate.expiry_date == today + timedelta(days=days))
    for chunk in _batches(query, batch_size):
        for certificate in chunk:
            result["processed"] += 1
            try:
                if notifications.was_recently_notified(db, certificate, notifications.RENEWAL, days):
                    result["skipped"] += 1
                    continue
                notifications.send_renewal_reminder(db, certificate, days)
                result["success"] += 1
            except Exception as exc:
                db.rollback()
                logger.exception("renewal reminder failed", extra={"certificate_id": certificate.id, "days": days})
                result["errors"] += 1
                result["error_details"].append({"certificate_id": certificate.id, "error": str(exc)})
    return result


def send_expiry_notifications(
    db: Session,
    days_to_expiry: int | None = None,
    batch_size: int | None = None,
    today: date | None = None,
) -> dict:
    settings = get_settings()
    if not settings.notifications_enabled:
        return {"skipped": True, "reason": "notifications disabled"}

    today = today or date.today()
    batch_size = batch_size or settings.notification_batch_size
    periods = [days_to_expiry] if days_to_expiry is not None else list(STANDARD_PERIODS)
    start = time.perf_counter()
    totals = {"processed": 0, "success": 0, "skipped": 0, "errors": 0, "error_details": []}

    for days in periods:
        logger.info("processing expiry reminders", extra={"days": days, "queue": queue_for(days)})
        period = _process_period(db, days, batch_size, today)
        for key in ("processed", "success", "skipped", "errors"):
            totals[key] += period[key]
        totals["error_details"].extend(period["error_details"])

    context = {
        "job": "expiry_notifications",
        "days_to_expiry": days_to_expiry,
        "periods": periods,
        "total_processed": totals["processed"],
        "success_count": totals["success"],
        "skipped_count": totals["skipped"],
        "error_count": totals["errors"],
        "execution_time_ms": _elapsed_ms(start),
        "success_rate": round(totals["success"] / totals["processed"] * 100, 2) if totals["processed"] else 0,
    }
    logger.info("expiry notifications completed", extra=context)
    _log_summary(db, "Expiry notifications job completed", context, "warning" if totals["errors"] else "info")
    return {**totals, "periods": periods}


def log_compliance_issues(db: Session, today: date | None = None) -> int:
    """Alert HR about active employees whose mandatory training has lapsed."""
    affected = []
    for employee in db.query(Employee).filter_by(status="active").all():
        expired = [i for i in employee_compliance(db, employee, today)["critical_issues"] if i["type"] == "expired"]
        if expired:
            affected.append({
                "employee_id": employee.employee_id,
                "name": employee.name,
                "department": employee.department.name if employee.department else None,
                "expired_mandatory_trainings": [
                    {"training": i["training"], "days_expired": i["expired_days"]} for i in expired
                ],
            })
    if not affected:
        return 0

    logger.critical("critical compliance issues detected", extra={"affected_employees": len(affected)})
    lines = "\n".join(
        f"- {a['name']} ({a['employee_id']}): "
        + ", ".join(t["training"] for t in a["expired_mandatory_trainings"])
        for a in affected
    )
    notifications.notify_department(
        db,
        get_settings().hr_department_code,
        "Critical compliance issues detected",
        f"{len(affected)} active employee(s) hold expired mandatory training:\n{lines}",
        "urgent",
        data={"kind": "compliance_alert", "affected": affected},
    )
    return len(affected)


def send_expired_certificate_notifications(
    db: Session,
    batch_size: int | None = None,
    check_days_back: int | None = None,
    today: date | None = None,
) -> dict:
    settings = get_settings()
    if not settings.notifications_enabled:
        return {"skipped": True, "reason": "notifications disabled"}

    today = today or date.today()
    batch_size = batch_size or settings.notification_batch_size
    check_days_back = check_days_back if check_days_back is not None else settings.expired_check_days_back
    start = time.perf_counter()
    result = {"processed": 0, "success": 0, "skipped": 0, "errors": 0, "error_details": []}

    query = _active_certificates(db).filter(
        Certificate.expiry_date >= today - timedelta(days=check_days_back),
        Certificate.expiry_date < today,
    )
    for chunk in _batches(query, batch_size):
        for certificate in chunk:
            result["processed"] += 1
            try:
                if notifications.was_recently_notified(db, certificate, notifications.EXPIRED):
                    result["skipped"] += 1
                    continue
                notifications.send_expired_certificate_notification(db, certificate)
                refresh_record_status(certificate.training_record, today)
                db.commit()
                result["success"] += 1
            except Exception as exc:
                db.rollback()
                logger.exception("expired certificate notification failed", extra={"certificate_id": certificate.id})
                result["errors"] += 1
                result["error_details"].append({"certificate_id": certificate.id, "error": str(exc)})

    result["critical_employees"] = log_compliance_issues(db, today)
    context = {
        "job": "expired_certificate_notifications",
        "check_days_back": check_days_back,
        "total_processed": result["processed"],
        "success_count": result["success"],
        "error_count": result["errors"],
        "critical_employees": result["critical_employees"],
        "execution_time_ms": _elapsed_ms(start),
    }
    logger.info("expired certificate notifications completed", extra=context)
    _log_summary(db, "Expired certificate notifications job completed", context, "warning" if result["errors"] else "info")
    return result


def run_status_update(db: Session, today: date | None = None) -> dict:
    result = update_all_statuses(db, today)
    _log_summary(db, "Training status update completed", {"job": "status_update", **result})
    return result


def run_compliance_audit(db: Session, today: date | None = None) -> dict:
    from compliancehub.services.exports import compliance_report_workbook

    today = today or date.today()
    report = compliance_report(db, today)
    folder = storage_root() / "reports"
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / f"compliance_{today:%Y%m%d}.xlsx"
    path.write_bytes(compliance_report_workbook(db, today))

    context = {"job": "compliance_audit", "report": str(path.relative_to(storage_root())), **report["summary"]}
    level = "warning" if report["summary"]["non_compliant"] else "info"
    _log_summary(db, "Compliance audit completed", context, level)
    return context


def run_container_health(db: Session) -> dict:
    results = containers.run_health_check(db, repair=get_settings().container_health_repair)
    summary = {key: value for key, value in results.items() if key != "details"}
    summary["attention"] = [d["employee_id"] for d in results["details"] if d["status"] != "healthy"]
    level = "warning" if results["critical"] or results["error"] else "info"
    _log_summary(db, "Container health check completed", {"job": "container_health", **summary}, level)
    return summary


def run_storage_backup(db: Session) -> dict:
    settings = get_settings()
    if not settings.backup_enabled:
        return {"skipped": True, "reason": "backups disabled"}

    backup_dir = Path(settings.backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    archive = shutil.make_archive(str(backup_dir / f"storage_{stamp}"), "zip", root_dir=storage_root())

    cutoff = time.time() - settings.backup_retention_days * 86400
    pruned = 0
    for old in backup_dir.glob("storage_*.zip"):
        if old.stat().st_mtime < cutoff:
            old.unlink()
            pruned += 1

    result = {"archive": archive, "pruned": pruned}
    _log_summary(db, "Storage backup completed", {"job": "storage_backup", **result})
    return result


def record_job_failure(db: Session, job_id: str, exc: BaseException, attempts: int) -> int:
    """Tell IT staff that a job exhausted its retries."""
    failed_at = datetime.now(UTC).isoformat()
    logger.error("job failed permanently", extra={"job": job_id, "attempts": attempts, "error": str(exc)})
    _log_summary(
        db,
        "Scheduled job failed permanently",
        {"job": job_id, "attempts": attempts, "error": str(exc), "failed_at": failed_at},
        "error",
    )
    return notifications.notify_department(
        db,
        get_settings().it_department_code,
        f"Scheduled Job Failed: {job_id}",
        f"The {job_id} job has failed permanently after {attempts} attempt(s). Error: {exc}",
        "urgent",
        data={"kind": "job_failure", "job": job_id, "error": str(exc), "failed_at": failed_at},
    )
