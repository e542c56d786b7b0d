from datetime import date, timedelta
from compliancehub.services.compliance import (
    compliance_report,
    dashboard_stats,
    department_compliance,
    employee_compliance,
    required_training_types,
    training_type_statistics,
)

TODAY = date(2026, 10, 19)


def test_employee_without_requirements_is_fully_compliant(db, make_employee, make_training_type):
    make_training_type(mandatory=False)
    employee = make_employee()

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "compliant"
    assert result["is_compliant"] is True
    assert result["compliance_score"] == 100.0
    assert result["total_mandatory"] == 0


def test_missing_mandatory_training_is_non_compliant(db, make_employee, make_training_type):
    make_training_type()
    employee = make_employee()

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "non_compliant"
    assert result["is_compliant"] is False
    assert result["compliance_score"] == 0
    assert [i["type"] for i in result["critical_issues"]] == ["missing_mandatory"]


def test_expired_mandatory_training_is_non_compliant(db, make_employee, make_training_type, make_certificate):
    employee = make_employee()
    make_certificate(employee, make_training_type(), TODAY - timedelta(days=4))

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "non_compliant"
    issue = result["critical_issues"][0]
    assert issue["type"] == "expired"
    assert issue["expired_days"] == 4


def test_renewed_training_supersedes_expired_record(db, make_employee, make_training_type, make_certificate):
    employee = make_employee()
    training_type = make_training_type()
    make_certificate(employee, training_type, TODAY - timedelta(days=400))
    make_certificate(employee, training_type, TODAY + timedelta(days=300))

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "compliant"
    assert result["completed_mandatory"] == 1


def test_urgent_renewal_is_at_risk(db, make_employee, make_training_type, make_certificate):
    employee = make_employee()
    make_certificate(employee, make_training_type(), TODAY + timedelta(days=5))

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "at_risk"
    assert result["is_compliant"] is True
    assert result["critical_issues"][0]["type"] == "urgent_renewal"


def test_expiring_soon_is_warning(db, make_employee, make_training_type, make_certificate):
    employee = make_employee()
    make_certificate(employee, make_training_type(), TODAY + timedelta(days=20))

    result = employee_compliance(db, employee, TODAY)
    assert result["overall_status"] == "warning"
    assert result["warnings"][0]["days_left"] == 20


def test_department_requirement_applies_only_to_that_department(db, make_department, make_employee, make_training_type):
    ops = make_department("Operations", "OPS")
    finance = make_department("Finance", "FIN")
    make_training_type(code="RAMP", name="Ramp Safety", mandatory=False, departments=[ops])

    assert [t.code for t in required_training_types(db, make_employee(department=ops))] == ["RAMP"]
    assert required_training_types(db, make_employee(department=finance)) == []


def test_department_compliance_and_report(db, make_department, make_employee, make_training_type, make_certificate):
    ops = make_department()
    training_type = make_training_type()
    good = make_employee("Good Employee", department=ops)
    make_employee("Missing Training", department=ops)
    make_employee("Former Employee", department=ops, status="inactive")
    make_certificate(good, training_type, TODAY + timedelta(days=300))

    rows = department_compliance(db, ops.id, TODAY)
    assert rows == [{
        "department_id": ops.id,
        "department": "Operations",
        "code": "OPS",
        "employees": 2,
        "compliant": 1,
        "non_compliant": 1,
        "compliance_rate": 50.0,
    }]

    report = compliance_report(db, TODAY)
    assert report["summary"]["total_employees"] == 2
    assert report["summary"]["non_compliant"] == 1
    assert [i["name"] for i in report["issues"]] == ["Missing Training"]


def test_dashboard_stats(db, make_employee, make_training_type):
    make_training_type(mandatory=False)
    make_employee()
    make_employee(status="inactive")

    stats = dashboard_stats(db, TODAY)
    assert stats["employees"] == {"total": 2, "active": 1}
    assert stats["containers"]["with_containers"] == 0
    assert stats["compliance"]["compliance_rate"] == 100.0


def test_training_type_statistics(db, make_department, make_employee, make_training_type, make_certificate):
    ops = make_department()
    cargo = make_department("Cargo", "CGO")
    first = make_employee("Agus", department=ops)
    second = make_employee("Sari", department=cargo)
    make_employee("Former", department=cargo, status="inactive")
    safety = make_training_type(code="FIRE", name="Fire Safety")
    service = make_training_type(code="CS", name="Customer Service", mandatory=False, departments=[cargo])
    make_certificate(first, safety, TODAY + timedelta(days=200))
    make_certificate(second, safety, TODAY - timedelta(days=5))
    make_certificate(second, service, TODAY + timedelta(days=10))

    rows = training_type_statistics(db, today=TODAY)

    assert [row["code"] for row in rows] == ["FIRE", "CS"]
    fire, customer = rows
    assert (fire["total_records"], fire["active"], fire["expired"]) == (2, 1, 1)
    assert (fire["target_employees"], fire["employees_trained"], fire["employees_need_training"]) == (2, 1, 1)
    assert fire["compliance_rate"] == 50.0
    assert fire["risk_level"] == "high"
    assert fire["priority_score"] == 75
    assert customer["expiring_soon"] == 1
    assert customer["target_employees"] == 1
    assert customer["compliance_rate"] == 100.0
    assert customer["risk_level"] == "low"
    assert customer["priority_score"] == 3
