import logging
import re
import httpx
from sqlalchemy.orm import Session
from compliancehub.core.config import get_settings
from compliancehub.models import Department, Employee
from compliancehub.services.containers import initialize_container
from compliancehub.services.settings_store import get_setting

logger = logging.getLogger(__name__)


def _resolve_config(db: Session) -> tuple[str, str]:
    settings = get_settings()
    url = get_setting(db, "hris_api_url", settings.hris_api_url).strip()
    key = get_setting(db, "hris_api_key", settings.hris_api_key).strip()
    return url, key


def _extract_employee(raw: dict) -> dict:
    name = raw.get("name") or " ".join(
        part for part in (raw.get("first_name"), raw.get("last_name")) if part
    )
    active = raw.get("status", "active") == "active" and not raw.get("terminated_on")
    return {
        "employee_id": str(raw.get("employee_id") or raw.get("id") or ""),
        "nip": raw.get("nip") or None,
        "name": name or "N/A",
        "email": raw.get("email"),
        "phone": raw.get("phone"),
        "position": raw.get("position") or raw.get("job_title"),
        "status": "active" if active else "inactive",
        "department": raw.get("department") or "",
    }


def _department_code(db: Session, name: str) -> str:
    base = re.sub(r"[^A-Z0-9]", "", name.upper())[:10] or "DEPT"
    code = base
    suffix = 2
    while db.query(Department).filter_by(code=code).first():
        code = f"{base[:8]}{suffix}"
        suffix += 1
    return code


def department_by_name(db: Session, name: str) -> Department | None:
    """Look up a department by name, creating it if it does not exist yet."""
    name = (name or "").strip()
    if not name:
        return None
    department = db.query(Department).filter_by(name=name).first()
    if department is None:
        department = Department(name=name, code=_department_code(db, name), is_active=True)
        db.add(department)
        db.flush()
        logger.info("department created", extra={"department": name, "code": department.code})
    return department


def _fetch_employees(url: str, key: str, timeout: float) -> list[dict]:
    items: list[dict] = []
    cursor: str | None = None
    with httpx.Client(timeout=timeout) as client:
        while True:
            params = {"cursor": cursor} if cursor else {}
            resp = client.get(url, params=params, headers={"x-api-key": key, "accept": "application/json"})
            resp.raise_for_status()
            payload = resp.json()
            page = payload.get("data") if isinstance(payload, dict) else payload
            if isinstance(page, list):
                items.extend(page)

            meta = payload.get("meta", {}) if isinstance(payload, dict) else {}
            cursor = meta.get("end_cursor")
            if not meta.get("has_next_page") or not cursor:
                return items


def sync_hris_employees(db: Session) -> dict:
    url, key = _resolve_config(db)
    if not url or not key:
        return {"ok": False, "message": "HRIS config missing", "created": 0, "updated": 0}

    try:
        items = _fetch_employees(url, key, get_settings().hris_timeout)
    except (httpx.HTTPError, ValueError) as exc:
        logger.exception("HRIS sync failed")
        return {"ok": False, "message": f"HRIS unavailable: {exc}", "created": 0, "updated": 0}

    created = 0
    updated = 0
    new_employees = []
    for row in items:
        parsed = _extract_employee(row)
        if not parsed["employee_id"]:
            continue
        department = department_by_name(db, parsed.pop("department"))
        parsed["department_id"] = department.id if department else None

        employee = db.query(Employee).filter_by(employee_id=parsed["employee_id"]).first()
        if employee is None:
            employee = Employee(**parsed)
            db.add(employee)
            new_employees.append(employee)
            created += 1
        else:
            for field, value in parsed.items():
                setattr(employee, field, value)
            updated += 1

    db.commit()
    for employee in new_employees:
        initialize_container(db, employee)
    logger.info("HRIS sync completed", extra={"created": created, "updated": updated})
    return {"ok": True, "message": "Sync completed", "created": created, "updated": updated}


def run_hris_sync(db: Session) -> dict:
    result = sync_hris_employees(db)
    if not result["ok"]:
        raise RuntimeError(result["message"])
    return result
