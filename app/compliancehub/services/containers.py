"""Per-employee document containers on the private storage root.

A container is ``employees/{employee_id}/`` with one directory per document
category and a ``container_metadata.json`` sidecar that mirrors file counts
and the employee identity. The sidecar duplicates what the database and the
disk already know, so the health check looks for drift between the three and
``repair_container`` resynchronises them.
"""

from datetime import date, datetime, UTC
import json
import logging
import shutil
from pathlib import Path
from fastapi import UploadFile
from sqlalchemy import or_
from sqlalchemy.orm import Session
from compliancehub.models import Employee
from compliancehub.services.certifications import ACTIVE, EXPIRED, EXPIRING_SOON, status_for_expiry, warning_days_for
from compliancehub.services.files import storage_root, store_upload

logger = logging.getLogger(__name__)

CONTAINER_ROOT = "employees"
ARCHIVE_ROOT = "archived_containers"
SUBDIRECTORIES = ("certificates", "background_checks", "documents", "photos")
METADATA_FILE = "container_metadata.json"
CONTAINER_VERSION = "1.0"
REQUIRED_KEYS = (
    "employee_id",
    "employee_name",
    "container_created",
    "container_version",
    "total_files",
    "total_size",
    "last_updated",
    "directories",
)


def _iso_now() -> str:
    return datetime.now(UTC).isoformat()


def container_path(employee: Employee) -> str:
    return f"{CONTAINER_ROOT}/{employee.employee_id}"


def _container_dir(employee: Employee) -> Path:
    return storage_root() / container_path(employee)


def _default_metadata(employee: Employee) -> dict:
    now = _iso_now()
    return {
        "employee_id": employee.employee_id,
        "employee_name": employee.name,
        "container_created": now,
        "container_version": CONTAINER_VERSION,
        "total_files": 0,
        "total_size": 0,
        "last_updated": now,
        "directories": {name: {"created": now, "file_count": 0} for name in SUBDIRECTORIES},
    }


def read_metadata(employee: Employee) -> dict | None:
    path = _container_dir(employee) / METADATA_FILE
    if not path.is_file():
        return None
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("container metadata is not an object")
    return data


def _write_metadata(employee: Employee, metadata: dict) -> None:
    path = _container_dir(employee) / METADATA_FILE
    path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")


def _scan(employee: Employee) -> dict[str, tuple[int, int]]:
    root = _container_dir(employee)
    result = {}
    for name in SUBDIRECTORIES:
        folder = root / name
        files = [p for p in folder.iterdir() if p.is_file()] if folder.is_dir() else []
        result[name] = (len(files), sum(p.stat().st_size for p in files))
    return result


def _apply_scan(employee: Employee, metadata: dict) -> int:
    scan = _scan(employee)
    directories = metadata.setdefault("directories", {})
    now = _iso_now()
    for name, (count, _) in scan.items():
        directories.setdefault(name, {"created": now})["file_count"] = count
    total = sum(count for count, _ in scan.values())
    metadata["total_files"] = total
    metadata["total_size"] = sum(size for _, size in scan.values())
    metadata["employee_id"] = employee.employee_id
    metadata["employee_name"] = employee.name
    metadata["last_updated"] = now
    employee.container_file_count = total
    employee.container_last_updated = datetime.now(UTC)
    return total


def has_container(employee: Employee) -> bool:
    return employee.container_created_at is not None and _container_dir(employee).is_dir()


def initialize_container(db: Session, employee: Employee) -> bool:
    try:
        if has_container(employee):
            logger.info("container already exists", extra={"employee_id": employee.employee_id})
            return True

        root = _container_dir(employee)
        for name in SUBDIRECTORIES:
            (root / name).mkdir(parents=True, exist_ok=True)

        try:
            metadata = read_metadata(employee)
        except ValueError:
            metadata = None
        metadata = metadata or _default_metadata(employee)
        _apply_scan(employee, metadata)
        _write_metadata(employee, metadata)

        employee.container_created_at = datetime.now(UTC)
        employee.container_status = "active"
        db.commit()
        logger.info("container initialized", extra={"employee_id": employee.employee_id})
        return True
    except OSError:
        db.rollback()
        logger.exception("container initialization failed", extra={"employee_id": employee.employee_id})
        return False


def refresh_metadata(db: Session, employee: Employee) -> dict | None:
    """Recount files on disk and write them to the sidecar and the employee row."""
    if not _container_dir(employee).is_dir():
        return None
    try:
        metadata = read_metadata(employee) or _default_metadata(employee)
    except ValueError:
        logger.warning("unreadable container metadata", extra={"employee_id": employee.employee_id})
        return None
    _apply_scan(employee, metadata)
    _write_metadata(employee, metadata)
    db.commit()
    return metadata


def container_health(employee: Employee) -> dict:
    issues: list[str] = []
    warnings: list[str] = []
    try:
        if employee.container_created_at is None:
            issues.append("Container not initialized")

        root = _container_dir(employee)
        if not root.is_dir():
            issues.append("Container directory missing")
        else:
            for name in SUBDIRECTORIES:
                if not (root / name).is_dir():
                    warnings.append(f"Missing directory: {name}")

            metadata = None
            if not (root / METADATA_FILE).is_file():
                issues.append("Metadata file missing")
            else:
                try:
                    metadata = read_metadata(employee)
                except ValueError:
                    issues.append("Metadata file unreadable")

            actual = sum(count for count, _ in _scan(employee).values())
            if metadata is not None:
                for key in REQUIRED_KEYS:
                    if key not in metadata:
                        warnings.append(f"Metadata key missing: {key}")
                if metadata.get("employee_id", employee.employee_id) != employee.employee_id:
                    warnings.append("Metadata employee id does not match")
                if metadata.get("employee_name", employee.name) != employee.name:
                    warnings.append("Metadata employee name is out of date")
                if metadata.get("total_files", actual) != actual:
                    warnings.append(f"Metadata file count {metadata.get('total_files')} != {actual} on disk")
            if (employee.container_file_count or 0) != actual:
                warnings.append(f"Recorded file count {employee.container_file_count} != {actual} on disk")

        for entry in employee.background_check_files or []:
            if not (storage_root() / entry.get("path", "")).is_file():
                warnings.append(f"Background check file missing: {entry.get('original_name', entry.get('path'))}")
    except Exception as exc:
        logger.exception("container health check failed", extra={"employee_id": employee.employee_id})
        return {"status": "error", "score": 0, "issues": [str(exc)], "warnings": []}

    score = max(0, 100 - 25 * len(issues) - 10 * len(warnings))
    if issues:
        status = "critical"
    elif warnings:
        status = "warning"
    else:
        status = "healthy"
    return {"status": status, "score": score, "issues": issues, "warnings": warnings}


def repair_container(db: Session, employee: Employee) -> dict:
    repairs: list[str] = []
    try:
        root = _container_dir(employee)
        if not root.is_dir():
            root.mkdir(parents=True)
            repairs.append("Created container directory")
        for name in SUBDIRECTORIES:
            if not (root / name).is_dir():
                (root / name).mkdir()
                repairs.append(f"Created directory: {name}")

        defaults = _default_metadata(employee)
        try:
            metadata = read_metadata(employee)
            if metadata is None:
                repairs.append("Created metadata file")
        except ValueError:
            metadata = None
            repairs.append("Rebuilt unreadable metadata file")

        if metadata is None:
            metadata = defaults
        else:
            for key in REQUIRED_KEYS:
                if key not in metadata:
                    metadata[key] = defaults[key]
                    repairs.append(f"Backfilled metadata key: {key}")
            if not isinstance(metadata["directories"], dict):
                metadata["directories"] = defaults["directories"]
                repairs.append("Backfilled metadata key: directories")
            if metadata["employee_id"] != employee.employee_id:
                repairs.append("Corrected metadata employee id")
            if metadata["employee_name"] != employee.name:
                repairs.append("Corrected metadata employee name")

        kept = [e for e in employee.background_check_files or [] if (storage_root() / e.get("path", "")).is_file()]
        if len(kept) != len(employee.background_check_files or []):
            repairs.append(f"Removed {len(employee.background_check_files) - len(kept)} missing background check file(s)")
            employee.background_check_files = kept

        recorded = (metadata.get("total_files"), employee.container_file_count)
        total = _apply_scan(employee, metadata)
        if recorded != (total, total):
            repairs.append("Resynchronised file counts")
        _write_metadata(employee, metadata)

        if employee.container_created_at is None:
            employee.container_created_at = datetime.now(UTC)
            repairs.append("Marked container as initialized")
        employee.container_status = "active"
        db.commit()
        logger.info("container repaired", extra={"employee_id": employee.employee_id, "repairs": repairs})
        return {"success": True, "repairs_made": repairs, "errors": []}
    except OSError as exc:
        db.rollback()
        logger.exception("container repair failed", extra={"employee_id": employee.employee_id})
        return {"success": False, "repairs_made": repairs, "errors": [str(exc)]}


def rename_container(db: Session, employee: Employee, old_employee_id: str) -> bool:
    old_dir = storage_root() / CONTAINER_ROOT / old_employee_id
    new_dir = _container_dir(employee)
    if old_employee_id == employee.employee_id or not old_dir.is_dir() or new_dir.exists():
        return False

    new_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(old_dir), str(new_dir))
    prefix = f"{CONTAINER_ROOT}/{old_employee_id}/"
    employee.background_check_files = [
        {**e, "path": container_path(employee) + "/" + e["path"][len(prefix):]} if e.get("path", "").startswith(prefix) else e
        for e in employee.background_check_files or []
    ]
    for record in employee.training_records:
        for cert in record.certificates:
            if cert.file_path and cert.file_path.startswith(prefix):
                cert.file_path = container_path(employee) + "/" + cert.file_path[len(prefix):]

    try:
        metadata = read_metadata(employee) or _default_metadata(employee)
    except ValueError:
        metadata = _default_metadata(employee)
    metadata.setdefault("id_change_history", []).append({
        "old_id": old_employee_id,
        "new_id": employee.employee_id,
        "changed_at": _iso_now(),
    })
    _apply_scan(employee, metadata)
    _write_metadata(employee, metadata)
    db.commit()
    logger.info("container moved", extra={"old_id": old_employee_id, "new_id": employee.employee_id})
    return True


def archive_container(employee: Employee, archived_by: int | None = None) -> str | None:
    root = _container_dir(employee)
    if not root.is_dir():
        return None
    now = datetime.now(UTC)
    relative = f"{ARCHIVE_ROOT}/{now:%Y/%m}/{employee.employee_id}_{now:%Y%m%d_%H%M%S}"
    target = storage_root() / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(root), str(target))
    (target / "archive_metadata.json").write_text(
        json.dumps(
            {
                "original_employee_id": employee.employee_id,
                "employee_name": employee.name,
                "archived_at": now.isoformat(),
                "archived_by": archived_by,
                "original_container_path": container_path(employee),
                "archive_reason": "employee_deleted",
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    logger.info("container archived", extra={"employee_id": employee.employee_id, "archive": relative})
    return relative


def restore_archived_container(employee: Employee, archive: str) -> bool:
    source = storage_root() / archive
    root = _container_dir(employee)
    if not source.is_dir() or root.exists():
        return False
    (source / "archive_metadata.json").unlink(missing_ok=True)
    root.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(root))
    logger.warning("container restored from archive", extra={"employee_id": employee.employee_id, "archive": archive})
    return True


def store_container_file(db: Session, employee: Employee, category: str, upload: UploadFile) -> dict:
    if category not in SUBDIRECTORIES:
        raise ValueError(f"unknown container category: {category}")
    if not has_container(employee):
        initialize_container(db, employee)
    path, size, checksum = store_upload(upload, f"{container_path(employee)}/{category}")
    refresh_metadata(db, employee)
    return {
        "path": path,
        "original_name": upload.filename or "file",
        "file_size": size,
        "mime_type": upload.content_type or "application/octet-stream",
        "checksum_sha256": checksum,
    }


def list_container_files(employee: Employee) -> dict[str, list[dict]]:
    root = _container_dir(employee)
    listing = {}
    for name in SUBDIRECTORIES:
        folder = root / name
        entries = []
        if folder.is_dir():
            for path in sorted(folder.iterdir()):
                if path.is_file():
                    stat = path.stat()
                    entries.append({
                        "name": path.name,
                        "path": f"{container_path(employee)}/{name}/{path.name}",
                        "size": stat.st_size,
                        "modified": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
                    })
        listing[name] = entries
    return listing


def add_background_check_file(
    db: Session, employee: Employee, upload: UploadFile, uploaded_by: str | None = None
) -> dict:
    stored = store_container_file(db, employee, "background_checks", upload)
    entry = {
        "path": stored["path"],
        "original_name": stored["original_name"],
        "file_size": stored["file_size"],
        "mime_type": stored["mime_type"],
        "uploaded_at": _iso_now(),
        "uploaded_by": uploaded_by or "System",
    }
    employee.background_check_files = [*(employee.background_check_files or []), entry]
    db.commit()
    return entry


def remove_background_check_file(db: Session, employee: Employee, index: int) -> bool:
    files = list(employee.background_check_files or [])
    if index < 0 or index >= len(files):
        return False
    removed = files.pop(index)
    path = storage_root() / removed.get("path", "")
    if path.is_file():
        path.unlink()
    employee.background_check_files = files
    db.commit()
    refresh_metadata(db, employee)
    return True


def calculate_total_files(employee: Employee) -> int:
    certificate_files = sum(
        1 for record in employee.training_records for cert in record.certificates if cert.file_path
    )
    return len(employee.background_check_files or []) + certificate_files


def container_data(employee: Employee, today: date | None = None) -> dict:
    today = today or date.today()
    grouped: dict[int, list] = {}
    for record in employee.training_records:
        grouped.setdefault(record.training_type_id, []).append(record)

    certificates_by_type = []
    for records in grouped.values():
        training_type = records[0].training_type
        warning = warning_days_for(training_type)
        records = sorted(records, key=lambda r: r.issue_date or date.min, reverse=True)
        statuses = [status_for_expiry(r.expiry_date, warning, today) for r in records]
        current = next((r for r, s in zip(records, statuses) if s != EXPIRED), None)
        certificates_by_type.append({
            "training_type": {"id": training_type.id, "code": training_type.code, "name": training_type.name},
            "current_record_id": current.id if current else None,
            "history_record_ids": [r.id for r in records if r is not current],
            "total_count": len(records),
            "status_summary": {
                ACTIVE: statuses.count(ACTIVE),
                EXPIRED: statuses.count(EXPIRED),
                EXPIRING_SOON: statuses.count(EXPIRING_SOON),
            },
        })

    files = employee.background_check_files or []
    created = employee.container_created_at
    if created is not None and created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return {
        "employee_id": employee.employee_id,
        "name": employee.name,
        "background_check": {
            "files": files,
            "status": employee.background_check_status,
            "date": employee.background_check_date.isoformat() if employee.background_check_date else None,
            "notes": employee.background_check_notes,
            "files_count": len(files),
        },
        "certificates_by_type": certificates_by_type,
        "container_stats": {
            "total_records": len(employee.training_records),
            "active_records": sum(1 for r in employee.training_records if r.compliance_status != EXPIRED),
            "background_check_status": employee.background_check_status,
            "has_background_check": bool(files),
            "total_files": calculate_total_files(employee),
            "container_age_days": (datetime.now(UTC) - created).days if created else 0,
        },
    }


def initialize_missing_containers(db: Session) -> dict:
    employees = (
        db.query(Employee)
        .filter(
            or_(
                Employee.container_created_at.is_(None),
                Employee.container_status.is_(None),
                Employee.container_status != "active",
            )
        )
        .all()
    )
    results = {"total_processed": len(employees), "success": 0, "failed": 0, "errors": []}
    for employee in employees:
        if initialize_container(db, employee):
            results["success"] += 1
        else:
            results["failed"] += 1
            results["errors"].append(f"Failed to initialize container for {employee.name}")
    return results


def run_health_check(db: Session, repair: bool = False, employee_id: str | None = None) -> dict:
    query = db.query(Employee)
    if employee_id:
        query = query.filter(Employee.employee_id == employee_id)

    results = {
        "total_checked": 0,
        "healthy": 0,
        "warning": 0,
        "critical": 0,
        "error": 0,
        "repaired": 0,
        "repair_errors": 0,
        "details": [],
    }
    for employee in query.order_by(Employee.employee_id.asc()).all():
        health = container_health(employee)
        results["total_checked"] += 1
        results[health["status"]] += 1
        detail = {
            "employee_id": employee.employee_id,
            "name": employee.name,
            **health,
            "repaired": False,
        }
        if repair and health["status"] in {"warning", "critical"}:
            outcome = repair_container(db, employee)
            if outcome["success"]:
                results["repaired"] += 1
                detail["repaired"] = True
                detail["repairs_made"] = outcome["repairs_made"]
            else:
                results["repair_errors"] += 1
                detail["repair_errors"] = outcome["errors"]
        results["details"].append(detail)
    return results


def container_statistics(db: Session) -> dict:
    total = db.query(Employee).count()
    with_containers = db.query(Employee).filter(Employee.container_created_at.isnot(None)).count()
    active = db.query(Employee).filter_by(container_status="active").count()
    return {
        "total_employees": total,
        "with_containers": with_containers,
        "without_containers": total - with_containers,
        "active_containers": active,
        "coverage_percentage": round(with_containers / total * 100, 2) if total else 0,
    }
