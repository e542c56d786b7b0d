import io
from datetime import date, timedelta
import pytest
from openpyxl import Workbook, load_workbook
from compliancehub.models import Department, Employee, TrainingRecord, TrainingType
from compliancehub.services import exports
from compliancehub.services.imports import import_employees, import_training_records


def _rows(content: bytes, sheet: str | None = None) -> list[tuple]:
    wb = load_workbook(io.BytesIO(content))
    ws = wb[sheet] if sheet else wb.active
    return list(ws.iter_rows(values_only=True))


def _xlsx(rows: list[list]) -> bytes:
    wb = Workbook()
    for row in rows:
        wb.active.append(row)
    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


def test_employees_export_with_certificate_columns(db, make_department, make_employee, make_training_type,
                                                   make_certificate):
    ops = make_department()
    employee = make_employee("Rina", department=ops)
    make_employee("Former", status="inactive")
    make_certificate(employee, make_training_type(), date.today() + timedelta(days=10))

    rows = _rows(exports.employees_workbook(db, include_certificates=True, status="active"))
    header, data = rows[0], rows[1:]
    assert header[:3] == ("Employee ID", "NIP", "Name")
    assert header[-4:] == ("Certificates", "Active", "Expiring Soon", "Expired")
    assert len(data) == 1
    assert data[0][2] == "Rina"
    assert data[0][4] == "Operations"
    assert data[0][-4:] == (1, 0, 1, 0)


def test_certificates_export_filters_by_status(db, make_employee, make_training_type, make_certificate):
    employee = make_employee()
    make_certificate(employee, make_training_type(code="A"), date.today() - timedelta(days=1))
    make_certificate(employee, make_training_type(code="B"), date.today() + timedelta(days=200))

    rows = _rows(exports.certificates_workbook(db, status="expired"))
    assert len(rows) == 2
    assert rows[1][0] == "A-TEST-0001"
    assert rows[1][8] == "expired"


def test_training_records_export(db, make_employee, make_training_type, make_certificate):
    make_certificate(make_employee(), make_training_type(), date.today() + timedelta(days=200))
    rows = _rows(exports.training_records_workbook(db))
    assert rows[1][2] == "AVSEC"
    assert rows[1][-1] == "compliant"


def test_compliance_report_has_three_sheets(db, make_department, make_employee, make_training_type):
    make_training_type()
    make_employee("Missing", department=make_department())

    content = exports.compliance_report_workbook(db)
    assert load_workbook(io.BytesIO(content)).sheetnames == ["Summary", "Departments", "Issues"]
    summary = dict(_rows(content, "Summary")[1:])
    assert summary["Non Compliant"] == 1
    issues = _rows(content, "Issues")
    assert issues[1][3] == "missing_mandatory"
    assert _rows(content, "Departments")[1][0] == "Operations"


def test_import_creates_and_updates_by_nip(db, make_employee):
    existing = make_employee("Old Name")
    existing.nip = "198001"
    db.commit()

    content = _xlsx([
        ["NIP", "Nama", "Departemen", "Email"],
        ["198001", "Updated Name", "Finance", None],
        [198002, "New Person", "Finance", "new@example.test"],
        ["198003", None, "Finance", None],
    ])
    result = import_employees(db, content)

    assert result["created"] == 1
    assert result["updated"] == 1
    assert result["errors"] == [{"row": 4, "error": "NIP and name are required"}]
    db.expire_all()
    assert db.query(Employee).filter_by(nip="198001").one().name == "Updated Name"
    created = db.query(Employee).filter_by(nip="198002").one()
    assert created.employee_id == "EMP0002"
    assert created.email == "new@example.test"
    assert created.department.name == "Finance"
    assert db.query(Department).count() == 1


def test_import_accepts_english_headers(db):
    result = import_employees(db, _xlsx([["nip", "name", "department"], ["7001", "Ayu", "Cargo"]]))
    assert result["created"] == 1


def test_import_requires_key_columns(db):
    with pytest.raises(ValueError):
        import_employees(db, _xlsx([["Email", "Phone"], ["a@b.test", "123"]]))


def test_training_record_import(db, make_employee, make_training_type, make_certificate):
    employee = make_employee("Budi")
    employee.nip = "4001"
    db.commit()
    avsec = make_training_type()
    make_certificate(employee, avsec, date(2025, 1, 1), issue_date=date(2024, 1, 1))

    content = _xlsx([
        ["NIP", "Nama", "Departemen", "Kode Training", "Nama Training", "Kategori", "Tanggal Terbit",
         "Tanggal Expired", "Nomor Sertifikat"],
        ["4001", "Budi", None, "AVSEC", "Aviation Security", None, "2023-06-01", None, None],
        ["4001", "Budi", None, "AVSEC", "Aviation Security", None, "01/01/2024", None, None],
        ["4002", "Dewi", "Ground Handling", None, "Fire Safety", "Safety", date(2025, 3, 1), date(2026, 3, 1), None],
        ["4002", "Dewi", "Ground Handling", None, None, None, None, None, None],
        ["4001", "Budi", None, None, "Fire Safety", None, "2025-02-01", None, "AVSEC-TEST-0001"],
    ])
    result = import_training_records(db, content, today=date(2025, 6, 1))

    assert (result["created"], result["updated"], result["skipped"]) == (1, 1, 1)
    assert [error["row"] for error in result["errors"]] == [5, 6]
    db.expire_all()
    renewed = db.query(TrainingRecord).filter_by(employee_id=employee.id, training_type_id=avsec.id).one()
    assert renewed.expiry_date == date(2026, 1, 1)
    assert renewed.compliance_status == "compliant"
    assert [c.expiry_date for c in renewed.certificates] == [date(2026, 1, 1)]

    fire = db.query(TrainingType).filter_by(name="Fire Safety").one()
    assert (fire.code, fire.validity_months, fire.category, fire.is_mandatory) == ("FIRESAFE", 12, "Safety", False)
    dewi = db.query(Employee).filter_by(nip="4002").one()
    assert dewi.department.name == "Ground Handling"
    record = dewi.training_records[0]
    assert record.compliance_status == "compliant"
    assert record.certificates[0].certificate_number == "FIRESAFE-202503-0001"
    assert db.query(TrainingRecord).filter_by(employee_id=employee.id, training_type_id=fire.id).count() == 0


def test_training_record_import_requires_key_columns(db):
    with pytest.raises(ValueError):
        import_training_records(db, _xlsx([["NIP", "Nama"], ["4001", "Budi"]]))
