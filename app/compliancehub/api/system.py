from datetime import date
import zipfile
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.orm import Session
from compliancehub.db.session import get_db
from compliancehub.models import SystemLog
from compliancehub.schemas.api import SettingsUpdate
from compliancehub.services import containers, exports, scheduler
from compliancehub.services.audit import write_audit
from compliancehub.services.auth import get_current_user, require_role
from compliancehub.services.compliance import (
    compliance_report,
    dashboard_stats,
    department_compliance,
    training_type_statistics,
)
from compliancehub.services.hris import sync_hris_employees
from compliancehub.services.imports import import_employees, import_training_records
from compliancehub.services.settings_store import list_settings, set_setting

router = APIRouter(prefix="/api")


def _xlsx(content: bytes, name: str) -> Response:
    filename = f"{name}_{date.today():%Y%m%d}.xlsx"
    return Response(
        content,
        media_type=exports.XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/system/stats")
def api_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return dashboard_stats(db)


@router.get("/system/compliance")
def api_compliance(department_id: int | None = None, db: Session = Depends(get_db), _=Depends(get_current_user)):
    if department_id:
        return department_compliance(db, department_id)
    return compliance_report(db)


@router.get("/system/training-types/statistics")
def api_training_type_statistics(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return training_type_statistics(db)


@router.post("/system/health-check")
def api_health_check(
    repair: bool = False,
    employee_id: str | None = None,
    db: Session = Depends(get_db),
    user=Depends(require_role("admin")),
):
    result = containers.run_health_check(db, repair=repair, employee_id=employee_id)
    if repair:
        write_audit(db, user, "repair", "containers", employee_id or "all", {"repaired": result["repaired"]})
    return result


@router.get("/system/containers")
def api_container_stats(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return containers.container_statistics(db)


@router.post("/system/containers/initialize")
def api_initialize_containers(db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    result = containers.initialize_missing_containers(db)
    write_audit(db, user, "initialize", "containers", "all", {"success": result["success"]})
    return result


@router.post("/system/jobs/{job_id}/run")
def api_run_job(job_id: str, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    if job_id not in scheduler.JOBS:
        raise HTTPException(status_code=404, detail="Unknown job")
    try:
        result = scheduler.run_job_now(job_id)
    except scheduler.JobAlreadyRunning:
        raise HTTPException(status_code=409, detail="Job is already running")
    write_audit(db, user, "run", "job", job_id)
    return {"job": job_id, "result": result}


@router.get("/system/logs")
def api_system_logs(
    level: str = "",
    channel: str = "",
    limit: int = 100,
    db: Session = Depends(get_db),
    _=Depends(require_role("admin")),
):
    query = db.query(SystemLog)
    if level:
        query = query.filter(SystemLog.level == level)
    if channel:
        query = query.filter(SystemLog.channel == channel)
    rows = query.order_by(SystemLog.created_at.desc(), SystemLog.id.desc()).limit(min(limit, 500)).all()
    return [
        {
            "id": row.id,
            "level": row.level,
            "message": row.message,
            "context": row.context,
            "channel": row.channel,
            "created_at": row.created_at,
        }
        for row in rows
    ]


@router.get("/exports/employees")
def api_export_employees(
    include_certificates: bool = False,
    department_id: int | None = None,
    status: str = "",
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    content = exports.employees_workbook(db, include_certificates, department_id, status or None)
    return _xlsx(content, "employees")


@router.get("/exports/certificates")
def api_export_certificates(status: str = "", db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _xlsx(exports.certificates_workbook(db, status or None), "certificates")


@router.get("/exports/training-records")
def api_export_training_records(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _xlsx(exports.training_records_workbook(db), "training_records")


@router.get("/exports/compliance-report")
def api_export_compliance(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _xlsx(exports.compliance_report_workbook(db), "compliance_report")


@router.post("/imports/employees")
def api_import_employees(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    try:
        result = import_employees(db, file.file.read())
    except (ValueError, zipfile.BadZipFile, InvalidFileException) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid employee workbook: {exc}")
    write_audit(db, user, "import", "employee", "bulk", {"created": result["created"], "updated": result["updated"]})
    return result


@router.post("/imports/training-records")
def api_import_training_records(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    try:
        result = import_training_records(db, file.file.read())
    except (ValueError, zipfile.BadZipFile, InvalidFileException) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid training record workbook: {exc}")
    write_audit(
        db, user, "import", "training_record", "bulk",
        {"created": result["created"], "updated": result["updated"], "skipped": result["skipped"]},
    )
    return result


@router.get("/admin/settings")
def api_get_settings(db: Session = Depends(get_db), _=Depends(require_role("admin"))):
    return list_settings(db)


@router.post("/admin/settings")
def api_update_settings(
    payload: SettingsUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_role("admin")),
):
    changed = payload.model_dump(exclude_none=True)
    for key, value in changed.items():
        set_setting(db, key, value.strip())
    write_audit(db, user, "update", "settings", "admin", {"keys": sorted(changed)})
    return {"ok": True}


@router.post("/admin/sync/hris")
def api_sync_hris(db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    result = sync_hris_employees(db)
    write_audit(db, user, "sync", "hris", "employees", result)
    return result
