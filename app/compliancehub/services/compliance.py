from datetime import date
from sqlalchemy import or_
from sqlalchemy.orm import Session
from compliancehub.models import Department, Employee, TrainingRecord, TrainingType
from compliancehub.services.certifications import (
    ACTIVE,
    EXPIRED,
    EXPIRING_SOON,
    days_until_expiry,
    certificate_analytics,
    status_for_expiry,
    warning_days_for,
)

URGENT_EXPIRY_DAYS = 7

PRIORITY_LEVELS = {
    "Safety": 1,
    "Security": 2,
    "Aviation": 2,
    "Technical": 3,
    "Quality": 4,
    "Service": 5,
}


def _priority(category: str | None) -> int:
    return PRIORITY_LEVELS.get(category or "", 3)


def required_training_types(db: Session, employee: Employee) -> list[TrainingType]:
    query = db.query(TrainingType).filter(TrainingType.is_active.is_(True))
    if employee.department_id:
        query = query.filter(
            or_(
                TrainingType.is_mandatory.is_(True),
                TrainingType.required_departments.any(Department.id == employee.department_id),
            )
        )
    else:
        query = query.filter(TrainingType.is_mandatory.is_(True))
    return query.order_by(TrainingType.name.asc()).all()


def _best_record(records: list[TrainingRecord]) -> TrainingRecord | None:
    # a record without expiry never lapses
    if not records:
        return None
    return max(records, key=lambda r: r.expiry_date or date.max)


def employee_compliance(db: Session, employee: Employee, today: date | None = None) -> dict:
    today = today or date.today()
    required = required_training_types(db, employee)
    records_by_type: dict[int, list[TrainingRecord]] = {}
    for record in employee.training_records:
        records_by_type.setdefault(record.training_type_id, []).append(record)

    result = {
        "employee_id": employee.employee_id,
        "name": employee.name,
        "overall_status": "compliant",
        "is_compliant": True,
        "compliance_score": 100.0,
        "total_mandatory": len(required),
        "completed_mandatory": 0,
        "critical_issues": [],
        "warnings": [],
    }

    for training in required:
        record = _best_record(records_by_type.get(training.id, []))
        if record is None:
            result["critical_issues"].append({
                "type": "missing_mandatory",
                "training": training.name,
                "training_type_id": training.id,
                "priority": _priority(training.category),
                "action": "Schedule immediately",
            })
            result["overall_status"] = "non_compliant"
            continue

        status = status_for_expiry(record.expiry_date, warning_days_for(training), today)
        days_left = days_until_expiry(record.expiry_date, today)
        if status == EXPIRED:
            result["critical_issues"].append({
                "type": "expired",
                "training": training.name,
                "training_type_id": training.id,
                "expired_days": abs(days_left),
                "priority": _priority(training.category),
                "action": "Renew immediately",
            })
            result["overall_status"] = "non_compliant"
            continue

        result["completed_mandatory"] += 1
        if days_left is not None and days_left <= URGENT_EXPIRY_DAYS:
            result["critical_issues"].append({
                "type": "urgent_renewal",
                "training": training.name,
                "training_type_id": training.id,
                "days_left": days_left,
                "priority": _priority(training.category),
                "action": "Schedule renewal within 3 days",
            })
            if result["overall_status"] in {"compliant", "warning"}:
                result["overall_status"] = "at_risk"
        elif status != "active":
            result["warnings"].append({
                "type": "expiring_soon",
                "training": training.name,
                "training_type_id": training.id,
                "days_left": days_left,
                "priority": _priority(training.category),
                "action": "Schedule renewal",
            })
            if result["overall_status"] == "compliant":
                result["overall_status"] = "warning"

    if required:
        result["compliance_score"] = round(result["completed_mandatory"] / len(required) * 100, 2)
    result["is_compliant"] = result["overall_status"] != "non_compliant"
    return result


def department_compliance(db: Session, department_id: int | None = None, today: date | None = None) -> list[dict]:
    query = db.query(Department).filter(Department.is_active.is_(True))
    if department_id:
        query = query.filter(Department.id == department_id)

    rows = []
    for department in query.order_by(Department.name.asc()).all():
        employees = [e for e in department.employees if e.status == "active"]
        compliant = sum(1 for e in employees if employee_compliance(db, e, today)["is_compliant"])
        rows.append({
            "department_id": department.id,
            "department": department.name,
            "code": department.code,
            "employees": len(employees),
            "compliant": compliant,
            "non_compliant": len(employees) - compliant,
            "compliance_rate": round(compliant / len(employees) * 100, 2) if employees else 100.0,
        })
    return rows


def compliance_report(db: Session, today: date | None = None) -> dict:
    today = today or date.today()
    employees = db.query(Employee).filter_by(status="active").order_by(Employee.name.asc()).all()
    statuses = [employee_compliance(db, e, today) for e in employees]
    compliant = sum(1 for s in statuses if s["is_compliant"])
    return {
        "generated_on": today.isoformat(),
        "summary": {
            "total_employees": len(statuses),
            "compliant": compliant,
            "non_compliant": len(statuses) - compliant,
            "at_risk": sum(1 for s in statuses if s["overall_status"] == "at_risk"),
            "warning": sum(1 for s in statuses if s["overall_status"] == "warning"),
            "compliance_rate": round(compliant / len(statuses) * 100, 2) if statuses else 100.0,
        },
        "departments": department_compliance(db, today=today),
        "issues": [s for s in statuses if s["critical_issues"] or s["warnings"]],
    }


def dashboard_stats(db: Session, today: date | None = None) -> dict:
    total = db.query(Employee).count()
    active = db.query(Employee).filter_by(status="active").count()
    with_containers = db.query(Employee).filter(Employee.container_created_at.isnot(None)).count()
    report = compliance_report(db, today)
    return {
        "employees": {"total": total, "active": active},
        "certificates": certificate_analytics(db, today),
        "compliance": report["summary"],
        "containers": {
            "with_containers": with_containers,
            "coverage_percentage": round(with_containers / total * 100, 2) if total else 0,
        },
    }


def _risk_level(compliance_rate: float, is_mandatory: bool) -> str:
    if not is_mandatory or compliance_rate >= 90:
        return "low"
    if compliance_rate >= 75:
        return "medium"
    if compliance_rate >= 50:
        return "high"
    return "critical"


def training_type_statistics(db: Session, today: date | None = None) -> list[dict]:
    """Per training type record counts and coverage of the employees it targets.

    A type with no mandatory flag and no department requirement targets every
    active employee. Rows are ordered by priority score, highest first.
    """
    today = today or date.today()
    active_employees = db.query(Employee).filter_by(status="active").all()

    rows = []
    for training_type in db.query(TrainingType).filter(TrainingType.is_active.is_(True)).all():
        warning = warning_days_for(training_type)
        counts = {ACTIVE: 0, EXPIRING_SOON: 0, EXPIRED: 0}
        current_holders = set()
        for record in training_type.training_records:
            status = status_for_expiry(record.expiry_date, warning, today)
            counts[status] += 1
            if status != EXPIRED:
                current_holders.add(record.employee_id)

        department_ids = {d.id for d in training_type.required_departments}
        if training_type.is_mandatory or not department_ids:
            targets = active_employees
        else:
            targets = [e for e in active_employees if e.department_id in department_ids]
        trained = sum(1 for e in targets if e.id in current_holders)
        rate = round(trained / len(targets) * 100, 2) if targets else 100.0

        score = 50 if training_type.is_mandatory else 0
        score += counts[EXPIRED] * 5 + counts[EXPIRING_SOON] * 3
        if "safety" in f"{training_type.name} {training_type.category or ''}".lower():
            score += 20

        rows.append({
            "id": training_type.id,
            "code": training_type.code,
            "name": training_type.name,
            "category": training_type.category,
            "is_mandatory": training_type.is_mandatory,
            "validity_months": training_type.validity_months,
            "total_records": len(training_type.training_records),
            "active": counts[ACTIVE],
            "expiring_soon": counts[EXPIRING_SOON],
            "expired": counts[EXPIRED],
            "target_employees": len(targets),
            "employees_trained": trained,
            "employees_need_training": len(targets) - trained,
            "compliance_rate": rate,
            "risk_level": _risk_level(rate, training_type.is_mandatory),
            "priority_score": score,
        })

    rows.sort(key=lambda r: (-r["priority_score"], r["name"]))
    return rows
