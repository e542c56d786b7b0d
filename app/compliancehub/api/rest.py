from datetime import date, timedelta
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import or_
from sqlalchemy.orm import Session
from compliancehub.core.config import get_settings
from compliancehub.core.rate_limit import LoginRateLimiter
from compliancehub.db.session import get_db
from compliancehub.models import (
    Certificate,
    Department,
    Employee,
    Notification,
    TrainingProvider,
    TrainingRecord,
    TrainingType,
    User,
)
from compliancehub.schemas.api import (
    BackgroundCheckUpdate,
    CertificateIn,
    DepartmentIn,
    EmployeeIn,
    LoginRequest,
    TrainingProviderIn,
    TrainingRecordIn,
    TrainingTypeIn,
)
from compliancehub.services import containers, notifications
from compliancehub.services.audit import write_audit
from compliancehub.services.auth import authenticate, get_current_user, require_role
from compliancehub.services.certifications import (
    calculate_expiry_date,
    certificate_status,
    extend_record_expiry,
    generate_certificate_number,
    generate_verification_code,
    mark_verified,
    refresh_record_status,
    warning_days_for,
)
from compliancehub.services.compliance import employee_compliance
from compliancehub.services.employees import ContainerMoveError, create_employee, delete_employee, update_employee
from compliancehub.services.files import delete_stored, resolve

router = APIRouter(prefix="/api")
rate_limiter = LoginRateLimiter(
    max_attempts=get_settings().login_rate_limit_attempts,
    window_seconds=get_settings().login_rate_limit_window_seconds,
)


def _get_or_404(db: Session, model, object_id: int, label: str):
    row = db.get(model, object_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def _user_out(user: User) -> dict:
    return {"id": user.id, "email": user.email, "full_name": user.full_name, "role": user.role}


def _department_out(d: Department) -> dict:
    return {"id": d.id, "name": d.name, "code": d.code, "description": d.description, "is_active": d.is_active}


def _employee_out(e: Employee) -> dict:
    return {
        "id": e.id,
        "employee_id": e.employee_id,
        "nip": e.nip,
        "name": e.name,
        "email": e.email,
        "phone": e.phone,
        "position": e.position,
        "department_id": e.department_id,
        "department": e.department.name if e.department else None,
        "supervisor_id": e.supervisor_id,
        "status": e.status,
        "hire_date": e.hire_date,
        "background_check_status": e.background_check_status,
        "container_status": e.container_status,
        "container_file_count": e.container_file_count,
    }


def _training_type_out(t: TrainingType) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "code": t.code,
        "category": t.category,
        "description": t.description,
        "is_mandatory": t.is_mandatory,
        "validity_months": t.validity_months,
        "warning_days": warning_days_for(t),
        "is_active": t.is_active,
        "required_department_ids": [d.id for d in t.required_departments],
    }


def _provider_out(p: TrainingProvider) -> dict:
    return {"id": p.id, "name": p.name, "contact_email": p.contact_email, "is_active": p.is_active}


def _record_out(r: TrainingRecord) -> dict:
    return {
        "id": r.id,
        "employee_id": r.employee_id,
        "employee": r.employee.name,
        "training_type_id": r.training_type_id,
        "training_type": r.training_type.name,
        "training_provider_id": r.training_provider_id,
        "issue_date": r.issue_date,
        "completion_date": r.completion_date,
        "expiry_date": r.expiry_date,
        "status": r.status,
        "compliance_status": r.compliance_status,
        "notes": r.notes,
        "certificate_ids": [c.id for c in r.certificates],
    }


def _certificate_out(c: Certificate, today: date | None = None) -> dict:
    return {
        "id": c.id,
        "training_record_id": c.training_record_id,
        "employee_id": c.employee.id,
        "employee": c.employee.name,
        "training_type": c.training_type.name,
        "certificate_number": c.certificate_number,
        "verification_code": c.verification_code,
        "issued_by": c.issued_by,
        "issue_date": c.issue_date,
        "expiry_date": c.expiry_date,
        "status": certificate_status(c, today),
        "is_verified": c.is_verified,
        "verification_date": c.verification_date,
        "has_file": bool(c.file_path),
    }


def _notification_out(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "priority": n.priority,
        "status": n.status,
        "related_type": n.related_type,
        "related_id": n.related_id,
        "data": n.data,
        "read_at": n.read_at,
        "created_at": n.created_at,
    }


# auth


@router.post("/auth/login")
def api_login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    client_ip = request.client.host if request.client else "unknown"
    if rate_limiter.is_limited(client_ip):
        raise HTTPException(status_code=429, detail="Too many login attempts, try again later")

    user = authenticate(db, payload.email, payload.password)
    if user is None:
        rate_limiter.add_attempt(client_ip)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    rate_limiter.reset(client_ip)
    request.session["user_id"] = user.id
    return _user_out(user)


@router.post("/auth/logout")
def api_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@router.get("/auth/me")
def api_me(user: User = Depends(get_current_user)):
    return _user_out(user)


# departments


@router.get("/departments")
def api_departments(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return [_department_out(d) for d in db.query(Department).order_by(Department.name.asc()).all()]


def _check_department_unique(db: Session, payload: DepartmentIn, exclude_id: int | None = None) -> None:
    query = db.query(Department).filter(or_(Department.name == payload.name, Department.code == payload.code))
    if exclude_id:
        query = query.filter(Department.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=409, detail="Department name or code already exists")


@router.post("/departments", status_code=201)
def api_create_department(payload: DepartmentIn, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    _check_department_unique(db, payload)
    department = Department(**payload.model_dump())
    db.add(department)
    db.commit()
    write_audit(db, user, "create", "department", department.id, {"code": department.code})
    return _department_out(department)


@router.get("/departments/{department_id}")
def api_department(department_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    department = _get_or_404(db, Department, department_id, "Department")
    return {**_department_out(department), "employee_count": len(department.employees)}


@router.put("/departments/{department_id}")
def api_update_department(
    department_id: int,
    payload: DepartmentIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    department = _get_or_404(db, Department, department_id, "Department")
    _check_department_unique(db, payload, exclude_id=department_id)
    for field, value in payload.model_dump().items():
        setattr(department, field, value)
    db.commit()
    write_audit(db, user, "update", "department", department_id)
    return _department_out(department)


@router.delete("/departments/{department_id}")
def api_delete_department(department_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    department = _get_or_404(db, Department, department_id, "Department")
    if department.employees:
        raise HTTPException(status_code=409, detail="Department still has employees")
    db.delete(department)
    db.commit()
    write_audit(db, user, "delete", "department", department_id)
    return {"ok": True}


# employees


@router.get("/employees")
def api_employees(
    q: str = "",
    department_id: int | None = None,
    status: str = "",
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(Employee)
    if q:
        like = f"%{q}%"
        query = query.filter(
            Employee.name.ilike(like) | Employee.employee_id.ilike(like) | Employee.nip.ilike(like)
            | Employee.email.ilike(like)
        )
    if department_id:
        query = query.filter(Employee.department_id == department_id)
    if status:
        query = query.filter(Employee.status == status)
    return [_employee_out(e) for e in query.order_by(Employee.name.asc()).all()]


def _check_employee_unique(db: Session, employee_id: str | None, nip: str | None, exclude_id: int | None = None):
    clauses = []
    if employee_id:
        clauses.append(Employee.employee_id == employee_id)
    if nip:
        clauses.append(Employee.nip == nip)
    if not clauses:
        return
    query = db.query(Employee).filter(or_(*clauses))
    if exclude_id:
        query = query.filter(Employee.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=409, detail="Employee ID or NIP already exists")


@router.post("/employees", status_code=201)
def api_create_employee(payload: EmployeeIn, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    _check_employee_unique(db, payload.employee_id, payload.nip)
    if payload.department_id:
        _get_or_404(db, Department, payload.department_id, "Department")
    employee = create_employee(db, **payload.model_dump())
    write_audit(db, user, "create", "employee", employee.id, {"employee_id": employee.employee_id})
    return _employee_out(employee)


@router.get("/employees/{employee_id}")
def api_employee(employee_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    return {**_employee_out(employee), "training_records": [_record_out(r) for r in employee.training_records]}


@router.put("/employees/{employee_id}")
def api_update_employee(
    employee_id: int,
    payload: EmployeeIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    _check_employee_unique(db, payload.employee_id, payload.nip, exclude_id=employee_id)
    if payload.supervisor_id == employee_id:
        raise HTTPException(status_code=400, detail="Employee cannot supervise themselves")
    fields = payload.model_dump()
    if not fields["employee_id"]:
        fields.pop("employee_id")
    old_id = employee.employee_id
    try:
        update_employee(db, employee, **fields)
    except ContainerMoveError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    write_audit(db, user, "update", "employee", employee_id, {"old_employee_id": old_id})
    return _employee_out(employee)


@router.delete("/employees/{employee_id}")
def api_delete_employee(employee_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    business_id = employee.employee_id
    archive = delete_employee(db, employee, user.id)
    write_audit(db, user, "delete", "employee", employee_id, {"employee_id": business_id, "archive": archive})
    return {"ok": True, "archive": archive}


@router.get("/employees/{employee_id}/compliance")
def api_employee_compliance(employee_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    return employee_compliance(db, employee)


@router.get("/employees/{employee_id}/container")
def api_employee_container(employee_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    return {
        "has_container": containers.has_container(employee),
        "path": containers.container_path(employee),
        **containers.container_data(employee),
    }


@router.post("/employees/{employee_id}/container/initialize")
def api_initialize_container(employee_id: int, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    if not containers.initialize_container(db, employee):
        raise HTTPException(status_code=500, detail="Container initialization failed")
    write_audit(db, user, "initialize", "container", employee_id)
    return {"ok": True, "path": containers.container_path(employee)}


@router.get("/employees/{employee_id}/container/files")
def api_container_files(employee_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    return containers.list_container_files(employee)


@router.post("/employees/{employee_id}/container/files", status_code=201)
def api_upload_container_file(
    employee_id: int,
    category: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    try:
        stored = containers.store_container_file(db, employee, category, file)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    write_audit(db, user, "upload", "container_file", employee_id, {"path": stored["path"]})
    return stored


@router.get("/employees/{employee_id}/container/health")
def api_container_health(employee_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    return containers.container_health(employee)


@router.post("/employees/{employee_id}/container/repair")
def api_container_repair(employee_id: int, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    result = containers.repair_container(db, employee)
    write_audit(db, user, "repair", "container", employee_id, {"repairs_made": result["repairs_made"]})
    return {**result, "health": containers.container_health(employee)}


@router.put("/employees/{employee_id}/background-check")
def api_update_background_check(
    employee_id: int,
    payload: BackgroundCheckUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    employee.background_check_status = payload.status
    employee.background_check_date = payload.check_date
    employee.background_check_notes = payload.notes
    db.commit()
    write_audit(db, user, "update", "background_check", employee_id, {"status": payload.status})
    return containers.container_data(employee)["background_check"]


@router.post("/employees/{employee_id}/background-checks", status_code=201)
def api_upload_background_check(
    employee_id: int,
    files: list[UploadFile] = File(...),
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    created = []
    for f in files:
        entry = containers.add_background_check_file(db, employee, f, uploaded_by=user.full_name)
        write_audit(db, user, "create", "background_check_file", employee_id, {"path": entry["path"]})
        created.append(entry)
    return created


@router.delete("/employees/{employee_id}/background-checks/{index}")
def api_delete_background_check(
    employee_id: int,
    index: int,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    employee = _get_or_404(db, Employee, employee_id, "Employee")
    if not containers.remove_background_check_file(db, employee, index):
        raise HTTPException(status_code=404, detail="Background check file not found")
    write_audit(db, user, "delete", "background_check_file", employee_id, {"index": index})
    return {"ok": True}


# training types and providers


@router.get("/training-types")
def api_training_types(mandatory: bool | None = None, db: Session = Depends(get_db), _=Depends(get_current_user)):
    query = db.query(TrainingType)
    if mandatory is not None:
        query = query.filter(TrainingType.is_mandatory.is_(mandatory))
    return [_training_type_out(t) for t in query.order_by(TrainingType.name.asc()).all()]


def _apply_training_type(db: Session, training_type: TrainingType, payload: TrainingTypeIn) -> None:
    fields = payload.model_dump(exclude={"required_department_ids"})
    for field, value in fields.items():
        setattr(training_type, field, value)
    departments = []
    for department_id in payload.required_department_ids:
        departments.append(_get_or_404(db, Department, department_id, "Department"))
    training_type.required_departments = departments


@router.post("/training-types", status_code=201)
def api_create_training_type(
    payload: TrainingTypeIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    if db.query(TrainingType).filter_by(code=payload.code).first():
        raise HTTPException(status_code=409, detail="Training type code already exists")
    training_type = TrainingType()
    _apply_training_type(db, training_type, payload)
    db.add(training_type)
    db.commit()
    write_audit(db, user, "create", "training_type", training_type.id, {"code": training_type.code})
    return _training_type_out(training_type)


@router.get("/training-types/{type_id}")
def api_training_type(type_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _training_type_out(_get_or_404(db, TrainingType, type_id, "Training type"))


@router.put("/training-types/{type_id}")
def api_update_training_type(
    type_id: int,
    payload: TrainingTypeIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    training_type = _get_or_404(db, TrainingType, type_id, "Training type")
    clash = db.query(TrainingType).filter(TrainingType.code == payload.code, TrainingType.id != type_id).first()
    if clash:
        raise HTTPException(status_code=409, detail="Training type code already exists")
    _apply_training_type(db, training_type, payload)
    db.commit()
    write_audit(db, user, "update", "training_type", type_id)
    return _training_type_out(training_type)


@router.delete("/training-types/{type_id}")
def api_delete_training_type(type_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    training_type = _get_or_404(db, TrainingType, type_id, "Training type")
    if training_type.training_records:
        raise HTTPException(status_code=409, detail="Training type has training records")
    db.delete(training_type)
    db.commit()
    write_audit(db, user, "delete", "training_type", type_id)
    return {"ok": True}


@router.get("/training-providers")
def api_training_providers(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return [_provider_out(p) for p in db.query(TrainingProvider).order_by(TrainingProvider.name.asc()).all()]


@router.post("/training-providers", status_code=201)
def api_create_provider(
    payload: TrainingProviderIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    if db.query(TrainingProvider).filter_by(name=payload.name).first():
        raise HTTPException(status_code=409, detail="Training provider already exists")
    provider = TrainingProvider(**payload.model_dump())
    db.add(provider)
    db.commit()
    write_audit(db, user, "create", "training_provider", provider.id)
    return _provider_out(provider)


@router.put("/training-providers/{provider_id}")
def api_update_provider(
    provider_id: int,
    payload: TrainingProviderIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    provider = _get_or_404(db, TrainingProvider, provider_id, "Training provider")
    for field, value in payload.model_dump().items():
        setattr(provider, field, value)
    db.commit()
    write_audit(db, user, "update", "training_provider", provider_id)
    return _provider_out(provider)


@router.delete("/training-providers/{provider_id}")
def api_delete_provider(provider_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    provider = _get_or_404(db, TrainingProvider, provider_id, "Training provider")
    if provider.training_records:
        raise HTTPException(status_code=409, detail="Training provider has training records")
    db.delete(provider)
    db.commit()
    write_audit(db, user, "delete", "training_provider", provider_id)
    return {"ok": True}


# training records


@router.get("/training-records")
def api_training_records(
    employee_id: int | None = None,
    training_type_id: int | None = None,
    compliance_status: str = "",
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(TrainingRecord)
    if employee_id:
        query = query.filter(TrainingRecord.employee_id == employee_id)
    if training_type_id:
        query = query.filter(TrainingRecord.training_type_id == training_type_id)
    if compliance_status:
        query = query.filter(TrainingRecord.compliance_status == compliance_status)
    return [_record_out(r) for r in query.order_by(TrainingRecord.expiry_date.asc()).all()]


def _apply_record(db: Session, record: TrainingRecord, payload: TrainingRecordIn) -> None:
    _get_or_404(db, Employee, payload.employee_id, "Employee")
    training_type = _get_or_404(db, TrainingType, payload.training_type_id, "Training type")
    if payload.training_provider_id:
        _get_or_404(db, TrainingProvider, payload.training_provider_id, "Training provider")
    for field, value in payload.model_dump().items():
        setattr(record, field, value)
    if record.expiry_date is None and record.issue_date is not None:
        record.expiry_date = calculate_expiry_date(record.issue_date, training_type.validity_months)
    record.training_type = training_type
    refresh_record_status(record)


@router.post("/training-records", status_code=201)
def api_create_training_record(
    payload: TrainingRecordIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    record = TrainingRecord(created_by=user.id, updated_by=user.id)
    _apply_record(db, record, payload)
    db.add(record)
    db.commit()
    write_audit(db, user, "create", "training_record", record.id, {"employee_id": record.employee_id})
    return _record_out(record)


@router.get("/training-records/{record_id}")
def api_training_record(record_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _record_out(_get_or_404(db, TrainingRecord, record_id, "Training record"))


@router.put("/training-records/{record_id}")
def api_update_training_record(
    record_id: int,
    payload: TrainingRecordIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    record = _get_or_404(db, TrainingRecord, record_id, "Training record")
    _apply_record(db, record, payload)
    record.updated_by = user.id
    db.commit()
    write_audit(db, user, "update", "training_record", record_id, {"employee_id": record.employee_id})
    return _record_out(record)


@router.delete("/training-records/{record_id}")
def api_delete_training_record(record_id: int, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    record = _get_or_404(db, TrainingRecord, record_id, "Training record")
    employee_id = record.employee_id
    for certificate in record.certificates:
        delete_stored(certificate.file_path)
    db.delete(record)
    db.commit()
    write_audit(db, user, "delete", "training_record", record_id, {"employee_id": employee_id})
    return {"ok": True}


# certificates


@router.get("/certificates")
def api_certificates(
    status: str = "",
    employee_id: int | None = None,
    expires_within_days: int = 0,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    today = date.today()
    query = db.query(Certificate).join(Certificate.training_record)
    if employee_id:
        query = query.filter(TrainingRecord.employee_id == employee_id)
    if expires_within_days > 0:
        query = query.filter(
            Certificate.expiry_date.isnot(None),
            Certificate.expiry_date <= today + timedelta(days=expires_within_days),
        )

    response = []
    for c in query.order_by(Certificate.expiry_date.asc()).all():
        row = _certificate_out(c, today)
        if status and row["status"] != status:
            continue
        response.append(row)
    return response


@router.post("/certificates", status_code=201)
def api_create_certificate(payload: CertificateIn, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    record = _get_or_404(db, TrainingRecord, payload.training_record_id, "Training record")
    number = payload.certificate_number or generate_certificate_number(
        db, record.training_type.code, payload.issue_date
    )
    if db.query(Certificate).filter_by(certificate_number=number).first():
        raise HTTPException(status_code=409, detail="Certificate number already exists")

    expiry = payload.expiry_date or calculate_expiry_date(payload.issue_date, record.training_type.validity_months)
    certificate = Certificate(
        training_record_id=record.id,
        certificate_number=number,
        verification_code=generate_verification_code(db),
        issued_by=payload.issued_by,
        issue_date=payload.issue_date,
        expiry_date=expiry,
        notes=payload.notes,
    )
    db.add(certificate)
    extend_record_expiry(record, expiry)
    refresh_record_status(record)
    db.commit()
    write_audit(db, user, "create", "certificate", certificate.id, {"certificate_number": number})
    return _certificate_out(certificate)


@router.get("/certificates/{certificate_id}")
def api_certificate(certificate_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _certificate_out(_get_or_404(db, Certificate, certificate_id, "Certificate"))


@router.put("/certificates/{certificate_id}")
def api_update_certificate(
    certificate_id: int,
    payload: CertificateIn,
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    certificate = _get_or_404(db, Certificate, certificate_id, "Certificate")
    if payload.training_record_id != certificate.training_record_id:
        raise HTTPException(status_code=400, detail="Certificate cannot move to another training record")
    if payload.certificate_number and payload.certificate_number != certificate.certificate_number:
        if db.query(Certificate).filter_by(certificate_number=payload.certificate_number).first():
            raise HTTPException(status_code=409, detail="Certificate number already exists")
        certificate.certificate_number = payload.certificate_number
    record = certificate.training_record
    certificate.issued_by = payload.issued_by
    certificate.issue_date = payload.issue_date
    certificate.expiry_date = payload.expiry_date or calculate_expiry_date(
        payload.issue_date, record.training_type.validity_months
    )
    certificate.notes = payload.notes
    extend_record_expiry(record, certificate.expiry_date)
    refresh_record_status(record)
    db.commit()
    write_audit(db, user, "update", "certificate", certificate_id)
    return _certificate_out(certificate)


@router.delete("/certificates/{certificate_id}")
def api_delete_certificate(certificate_id: int, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    certificate = _get_or_404(db, Certificate, certificate_id, "Certificate")
    delete_stored(certificate.file_path)
    number = certificate.certificate_number
    db.delete(certificate)
    db.commit()
    write_audit(db, user, "delete", "certificate", certificate_id, {"certificate_number": number})
    return {"ok": True}


@router.post("/certificates/{certificate_id}/verify")
def api_verify_certificate(certificate_id: int, db: Session = Depends(get_db), user=Depends(require_role("manager"))):
    certificate = _get_or_404(db, Certificate, certificate_id, "Certificate")
    mark_verified(certificate, user.id)
    db.commit()
    write_audit(db, user, "verify", "certificate", certificate_id)
    return _certificate_out(certificate)


@router.post("/certificates/{certificate_id}/file")
def api_upload_certificate_file(
    certificate_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user=Depends(require_role("manager")),
):
    certificate = _get_or_404(db, Certificate, certificate_id, "Certificate")
    stored = containers.store_container_file(db, certificate.employee, "certificates", file)
    previous = certificate.file_path
    certificate.file_path = stored["path"]
    certificate.file_checksum = stored["checksum_sha256"]
    db.commit()
    if previous and previous != stored["path"]:
        delete_stored(previous)
        containers.refresh_metadata(db, certificate.employee)
    write_audit(db, user, "upload", "certificate_file", certificate_id, {"path": stored["path"]})
    return {"ok": True, "path": stored["path"], "file_size": stored["file_size"]}


@router.get("/certificates/{certificate_id}/download")
def api_download_certificate(certificate_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    certificate = _get_or_404(db, Certificate, certificate_id, "Certificate")
    if not certificate.file_path:
        raise HTTPException(status_code=404, detail="Certificate has no file")
    path = resolve(certificate.file_path)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Certificate file missing")
    return FileResponse(path, filename=f"{certificate.certificate_number}{path.suffix}")


# notifications


def _recipient(db: Session, user: User, employee_id: int | None) -> Employee:
    if employee_id is not None:
        return _get_or_404(db, Employee, employee_id, "Employee")
    employee = db.query(Employee).filter(Employee.email == user.email).first()
    if employee is None:
        raise HTTPException(status_code=404, detail="No employee profile for this user")
    return employee


@router.get("/notifications")
def api_notifications(
    employee_id: int | None = None,
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    employee = _recipient(db, user, employee_id)
    if unread_only:
        rows = notifications.unread_for(db, employee.id, limit)
    else:
        rows = (
            db.query(Notification)
            .filter(Notification.recipient_id == employee.id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
            .all()
        )
    return [_notification_out(n) for n in rows]


@router.get("/notifications/unread-count")
def api_unread_count(
    employee_id: int | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    employee = _recipient(db, user, employee_id)
    count = (
        db.query(Notification)
        .filter(Notification.recipient_id == employee.id, Notification.read_at.is_(None))
        .count()
    )
    return {"count": count}


@router.post("/notifications/{notification_id}/read")
def api_mark_read(notification_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    notification = _get_or_404(db, Notification, notification_id, "Notification")
    notifications.mark_as_read(db, notification)
    return _notification_out(notification)


@router.post("/notifications/read-all")
def api_mark_all_read(
    employee_id: int | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    employee = _recipient(db, user, employee_id)
    return {"updated": notifications.mark_all_read(db, employee.id)}
