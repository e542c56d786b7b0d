"""Excel workbooks for the export endpoints and the monthly audit.

Each builder returns the serialized ``.xlsx`` bytes.
"""

from datetime import date
import io
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session
from compliancehub.models import Certificate, Employee, TrainingRecord
from compliancehub.services.certifications import certificate_status, status_for_expiry, warning_days_for
from compliancehub.services.compliance import compliance_report, employee_compliance

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _cell(value):
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return value


def _fill_sheet(ws, headers: list[str], rows: list[list]) -> None:
    ws.append(headers)
    for col, _ in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
    for row in rows:
        ws.append([_cell(v) for v in row])

    for col, header in enumerate(headers, start=1):
        longest = max([len(str(header))] + [len(str(r[col - 1])) for r in rows if r[col - 1] is not None])
        ws.column_dimensions[get_column_letter(col)].width = min(max(longest + 2, 10), 60)
    ws.freeze_panes = "A2"


def _to_bytes(wb: Workbook) -> bytes:
    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


def employees_workbook(
    db: Session,
    include_certificates: bool = False,
    department_id: int | None = None,
    status: str | None = None,
    today: date | None = None,
) -> bytes:
    query = db.query(Employee)
    if department_id:
        query = query.filter(Employee.department_id == department_id)
    if status:
        query = query.filter(Employee.status == status)
    employees = query.order_by(Employee.employee_id.asc()).all()

    headers = ["Employee ID", "NIP", "Name", "Email", "Department", "Position", "Status", "Hire Date",
               "Background Check", "Compliance"]
    if include_certificates:
        headers += ["Certificates", "Active", "Expiring Soon", "Expired"]

    rows = []
    for e in employees:
        row = [
            e.employee_id,
            e.nip,
            e.name,
            e.email,
            e.department.name if e.department else None,
            e.position,
            e.status,
            e.hire_date,
            e.background_check_status,
            employee_compliance(db, e, today)["overall_status"],
        ]
        if include_certificates:
            statuses = [
                status_for_expiry(r.expiry_date, warning_days_for(r.training_type), today)
                for r in e.training_records
            ]
            row += [len(statuses), statuses.count("active"), statuses.count("expiring_soon"),
                    statuses.count("expired")]
        rows.append(row)

    wb = Workbook()
    ws = wb.active
    ws.title = "Employees"
    _fill_sheet(ws, headers, rows)
    return _to_bytes(wb)


def certificates_workbook(db: Session, status: str | None = None, today: date | None = None) -> bytes:
    headers = ["Certificate Number", "Verification Code", "Employee ID", "Employee", "Training", "Issued By",
               "Issue Date", "Expiry Date", "Status", "Verified"]
    rows = []
    for c in db.query(Certificate).order_by(Certificate.expiry_date.asc()).all():
        computed = certificate_status(c, today)
        if status and computed != status:
            continue
        rows.append([
            c.certificate_number,
            c.verification_code,
            c.employee.employee_id,
            c.employee.name,
            c.training_type.name,
            c.issued_by,
            c.issue_date,
            c.expiry_date,
            computed,
            "Yes" if c.is_verified else "No",
        ])

    wb = Workbook()
    ws = wb.active
    ws.title = "Certificates"
    _fill_sheet(ws, headers, rows)
    return _to_bytes(wb)


def training_records_workbook(db: Session, today: date | None = None) -> bytes:
    headers = ["Employee ID", "Employee", "Training Code", "Training", "Provider", "Issue Date",
               "Completion Date", "Expiry Date", "Status", "Compliance Status"]
    rows = []
    records = db.query(TrainingRecord).order_by(TrainingRecord.employee_id, TrainingRecord.training_type_id).all()
    for r in records:
        rows.append([
            r.employee.employee_id,
            r.employee.name,
            r.training_type.code,
            r.training_type.name,
            r.training_provider.name if r.training_provider else None,
            r.issue_date,
            r.completion_date,
            r.expiry_date,
            r.status,
            r.compliance_status,
        ])

    wb = Workbook()
    ws = wb.active
    ws.title = "Training Records"
    _fill_sheet(ws, headers, rows)
    return _to_bytes(wb)


def compliance_report_workbook(db: Session, today: date | None = None) -> bytes:
    report = compliance_report(db, today)
    summary = report["summary"]

    wb = Workbook()
    ws = wb.active
    ws.title = "Summary"
    _fill_sheet(
        ws,
        ["Metric", "Value"],
        [
            ["Generated On", report["generated_on"]],
            ["Total Employees", summary["total_employees"]],
            ["Compliant", summary["compliant"]],
            ["Non Compliant", summary["non_compliant"]],
            ["At Risk", summary["at_risk"]],
            ["Warning", summary["warning"]],
            ["Compliance Rate (%)", summary["compliance_rate"]],
        ],
    )

    _fill_sheet(
        wb.create_sheet("Departments"),
        ["Department", "Code", "Employees", "Compliant", "Non Compliant", "Compliance Rate (%)"],
        [
            [d["department"], d["code"], d["employees"], d["compliant"], d["non_compliant"], d["compliance_rate"]]
            for d in report["departments"]
        ],
    )

    issue_rows = []
    for employee in report["issues"]:
        for issue in employee["critical_issues"] + employee["warnings"]:
            issue_rows.append([
                employee["employee_id"],
                employee["name"],
                employee["overall_status"],
                issue["type"],
                issue["training"],
                issue["action"],
            ])
    _fill_sheet(
        wb.create_sheet("Issues"),
        ["Employee ID", "Employee", "Overall Status", "Issue", "Training", "Action"],
        issue_rows,
    )
    return _to_bytes(wb)
