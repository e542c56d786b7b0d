import io
import logging
import re
from datetime import date, datetime
from openpyxl import load_workbook
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from compliancehub.models import Certificate, Employee, TrainingProvider, TrainingRecord, TrainingType
from compliancehub.services.certifications import (
    calculate_expiry_date,
    generate_certificate_number,
    generate_verification_code,
    refresh_record_status,
)
from compliancehub.services.employees import create_employee
from compliancehub.services.hris import department_by_name

logger = logging.getLogger(__name__)

HEADER_ALIASES = {
    "nip": "nip",
    "nama": "name",
    "name": "name",
    "departemen": "department",
    "department": "department",
    "email": "email",
    "jabatan": "position",
    "position": "position",
    "telepon": "phone",
    "phone": "phone",
}

RECORD_HEADER_ALIASES = {
    "nip": "nip",
    "nama": "name",
    "name": "name",
    "employee_name": "name",
    "departemen": "department",
    "department": "department",
    "jabatan": "position",
    "position": "position",
    "training_code": "training_code",
    "kode_training": "training_code",
    "training_name": "training_name",
    "nama_training": "training_name",
    "nama_sertifikat": "training_name",
    "training_type": "category",
    "kategori": "category",
    "category": "category",
    "certificate_number": "certificate_number",
    "nomor_sertifikat": "certificate_number",
    "issuer": "issued_by",
    "issued_by": "issued_by",
    "penerbit": "issued_by",
    "training_provider": "provider",
    "provider": "provider",
    "penyelenggara": "provider",
    "completion_date": "completion_date",
    "tanggal_selesai": "completion_date",
    "issue_date": "issue_date",
    "tanggal_terbit": "issue_date",
    "expiry_date": "expiry_date",
    "tanggal_expired": "expiry_date",
    "validity_months": "validity_months",
    "masa_berlaku": "validity_months",
    "notes": "notes",
    "catatan": "notes",
    "keterangan": "notes",
}

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")


def _header_map(row: tuple, aliases: dict[str, str] = HEADER_ALIASES) -> dict[str, int]:
    mapping = {}
    for index, value in enumerate(row):
        label = re.sub(r"\s+", "_", str(value or "").strip().lower())
        key = aliases.get(label)
        if key and key not in mapping:
            mapping[key] = index
    return mapping


def import_employees(db: Session, content: bytes) -> dict:
    """Create or update employees from the first sheet of an xlsx file.

    Rows are matched on NIP. Departments that do not exist yet are created.
    """
    wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    rows = wb.active.iter_rows(values_only=True)
    header = next(rows, None)
    columns = _header_map(header or ())
    if "nip" not in columns or "name" not in columns:
        wb.close()
        raise ValueError("NIP and Nama columns are required")

    result = {"created": 0, "updated": 0, "errors": []}
    for line, row in enumerate(rows, start=2):
        values = {key: row[i] if i < len(row) else None for key, i in columns.items()}
        nip = str(values["nip"] or "").strip()
        name = str(values["name"] or "").strip()
        if not nip and not name:
            continue
        if not nip or not name:
            result["errors"].append({"row": line, "error": "NIP and name are required"})
            continue

        department = department_by_name(db, str(values.get("department") or ""))
        fields = {
            "name": name,
            "department_id": department.id if department else None,
        }
        for key in ("email", "position", "phone"):
            if values.get(key):
                fields[key] = str(values[key]).strip()

        employee = db.query(Employee).filter_by(nip=nip).first()
        if employee is None:
            create_employee(db, nip=nip, **fields)
            result["created"] += 1
        else:
            for field, value in fields.items():
                setattr(employee, field, value)
            db.commit()
            result["updated"] += 1

    wb.close()
    logger.info("employee import finished", extra={"created": result["created"], "updated": result["updated"],
                                                   "errors": len(result["errors"])})
    return result


def _text(value) -> str:
    return str(value if value is not None else "").strip()


def _parse_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _text(value)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date: {text}")


def _months_between(start: date, end: date) -> int | None:
    months = (end.year - start.year) * 12 + end.month - start.month
    return months if months > 0 else None


def _training_type_code(db: Session, name: str) -> str:
    base = re.sub(r"[^A-Z0-9]", "", name.upper())[:8] or "TRN"
    code = base
    suffix = 2
    while db.query(TrainingType).filter_by(code=code).first():
        code = f"{base[:6]}{suffix}"
        suffix += 1
    return code


def _training_type_for(db: Session, values: dict, issue: date | None, expiry: date | None) -> TrainingType:
    code = _text(values.get("training_code")).upper()
    name = _text(values.get("training_name"))
    if code:
        training_type = db.query(TrainingType).filter_by(code=code).first()
        if training_type is not None:
            return training_type
    training_type = db.query(TrainingType).filter(func.lower(TrainingType.name) == name.lower()).first()
    if training_type is not None:
        return training_type

    validity = values.get("validity_months")
    if validity not in (None, ""):
        validity = int(validity)
    elif issue and expiry:
        validity = _months_between(issue, expiry)
    else:
        validity = None
    training_type = TrainingType(
        name=name,
        code=code or _training_type_code(db, name),
        category=_text(values.get("category")) or "General Training",
        is_mandatory=False,
        validity_months=validity,
        is_active=True,
    )
    db.add(training_type)
    db.flush()
    logger.info("training type created", extra={"training_type": name, "code": training_type.code})
    return training_type


def _provider_for(db: Session, name: str) -> TrainingProvider | None:
    if not name:
        return None
    provider = db.query(TrainingProvider).filter_by(name=name).first()
    if provider is None:
        provider = TrainingProvider(name=name, is_active=True)
        db.add(provider)
        db.flush()
    return provider


def _import_record_row(db: Session, values: dict, today: date | None) -> str:
    nip = _text(values.get("nip"))
    name = _text(values.get("name"))
    employee = db.query(Employee).filter_by(nip=nip).first()
    if employee is None:
        department = department_by_name(db, _text(values.get("department")))
        employee = create_employee(
            db,
            nip=nip,
            name=name,
            department_id=department.id if department else None,
            position=_text(values.get("position")) or None,
        )

    completion = _parse_date(values.get("completion_date"))
    issue = _parse_date(values.get("issue_date")) or completion
    expiry = _parse_date(values.get("expiry_date"))
    training_type = _training_type_for(db, values, issue, expiry)
    if expiry is None and issue is not None:
        expiry = calculate_expiry_date(issue, training_type.validity_months)

    existing = (
        db.query(TrainingRecord)
        .filter_by(employee_id=employee.id, training_type_id=training_type.id)
        .order_by(TrainingRecord.issue_date.desc())
        .first()
    )
    if existing is not None and existing.issue_date and issue and issue < existing.issue_date:
        db.rollback()
        return "skipped"
    if existing is not None and existing.issue_date == issue:
        record, outcome = existing, "updated"
    else:
        record = TrainingRecord(employee=employee, training_type=training_type, issue_date=issue)
        db.add(record)
        outcome = "created"

    provider = _provider_for(db, _text(values.get("provider")))
    if provider is not None:
        record.training_provider = provider
    record.completion_date = completion or record.completion_date
    record.expiry_date = expiry
    if values.get("notes"):
        record.notes = _text(values["notes"])

    number = _text(values.get("certificate_number"))
    certificate = None
    if number:
        certificate = db.query(Certificate).filter_by(certificate_number=number).first()
        if certificate is not None and certificate.training_record is not record:
            raise ValueError(f"certificate number {number} belongs to another record")
    elif record.certificates:
        certificate = record.certificates[0]
    if certificate is None:
        certificate = Certificate(
            training_record=record,
            certificate_number=number or generate_certificate_number(db, training_type.code, issue),
            verification_code=generate_verification_code(db),
        )
        db.add(certificate)
    certificate.issued_by = _text(values.get("issued_by")) or certificate.issued_by
    certificate.issue_date = issue or today or date.today()
    certificate.expiry_date = expiry

    refresh_record_status(record, today)
    db.commit()
    return outcome


def import_training_records(db: Session, content: bytes, today: date | None = None) -> dict:
    """Create training records and certificates from the first sheet of an xlsx file.

    Employees are matched on NIP and created when missing; unknown training
    types are created from the row. A row older than the employee's latest
    record of the same type is skipped, a row with the same issue date
    updates that record. Stored statuses are recomputed for every row.
    """
    wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    rows = wb.active.iter_rows(values_only=True)
    header = next(rows, None)
    columns = _header_map(header or (), RECORD_HEADER_ALIASES)
    missing = [key for key in ("nip", "name", "training_name") if key not in columns]
    if missing:
        wb.close()
        raise ValueError(f"missing required columns: {', '.join(missing)}")

    result = {"created": 0, "updated": 0, "skipped": 0, "errors": []}
    for line, row in enumerate(rows, start=2):
        values = {key: row[i] if i < len(row) else None for key, i in columns.items()}
        required = [_text(values[key]) for key in ("nip", "name", "training_name")]
        if not any(required):
            continue
        if not all(required):
            result["errors"].append({"row": line, "error": "NIP, name and training name are required"})
            continue
        try:
            outcome = _import_record_row(db, values, today)
        except (ValueError, SQLAlchemyError) as exc:
            db.rollback()
            result["errors"].append({"row": line, "error": str(exc)})
            continue
        result[outcome] += 1

    wb.close()
    logger.info("training record import finished", extra={"created": result["created"], "updated": result["updated"],
                                                          "skipped": result["skipped"], "errors": len(result["errors"])})
    return result
