import os
import tempfile
from datetime import date

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="compliancehub-storage-")
os.environ["SMTP_HOST"] = ""
os.environ["WEBHOOK_URL"] = ""
os.environ["HRIS_INTEGRATION_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from compliancehub.core.config import get_settings
from compliancehub.db.base import Base
from compliancehub.db.session import SessionLocal, engine
from compliancehub.models import Certificate, Department, Employee, TrainingRecord, TrainingType
from compliancehub.services.certifications import refresh_record_status

ADMIN_EMAIL = "admin@example.local"
ADMIN_PASSWORD = "admin1234"


@pytest.fixture(autouse=True)
def settings(tmp_path):
    # Own MonkeyPatch so a test's monkeypatch.undo() does not revert these overrides.
    cfg = get_settings()
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(cfg, "storage_dir", str(tmp_path / "storage"))
        mp.setattr(cfg, "backup_dir", str(tmp_path / "backups"))
        mp.setattr(cfg, "webhook_url", "")
        mp.setattr(cfg, "smtp_host", "")
        (tmp_path / "storage").mkdir()
        yield cfg


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db):
    from compliancehub.api.rest import rate_limiter
    from compliancehub.main import app

    rate_limiter.reset()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def admin_client(client):
    res = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    return client


@pytest.fixture()
def make_department(db):
    def factory(name="Operations", code="OPS"):
        department = Department(name=name, code=code, is_active=True)
        db.add(department)
        db.commit()
        return department

    return factory


@pytest.fixture()
def make_employee(db):
    counter = {"n": 0}

    def factory(name="Budi Santoso", department=None, status="active", email=None, supervisor=None):
        counter["n"] += 1
        employee = Employee(
            employee_id=f"EMP{counter['n']:04d}",
            name=name,
            email=email,
            status=status,
            department_id=department.id if department else None,
            supervisor_id=supervisor.id if supervisor else None,
        )
        db.add(employee)
        db.commit()
        return employee

    return factory


@pytest.fixture()
def make_training_type(db):
    def factory(code="AVSEC", name="Aviation Security", mandatory=True, warning_days=None, validity_months=24,
                departments=()):
        training_type = TrainingType(
            code=code,
            name=name,
            category="Security",
            is_mandatory=mandatory,
            warning_days=warning_days,
            validity_months=validity_months,
            is_active=True,
        )
        training_type.required_departments = list(departments)
        db.add(training_type)
        db.commit()
        return training_type

    return factory


@pytest.fixture()
def make_certificate(db):
    counter = {"n": 0}

    def factory(employee, training_type, expiry_date, issue_date=date(2024, 1, 1)):
        counter["n"] += 1
        record = TrainingRecord(
            employee_id=employee.id,
            training_type_id=training_type.id,
            issue_date=issue_date,
            expiry_date=expiry_date,
        )
        record.training_type = training_type
        refresh_record_status(record)
        db.add(record)
        db.flush()
        certificate = Certificate(
            training_record_id=record.id,
            certificate_number=f"{training_type.code}-TEST-{counter['n']:04d}",
            verification_code=f"CERT-TEST{counter['n']:04d}",
            issue_date=issue_date,
            expiry_date=expiry_date,
        )
        db.add(certificate)
        db.commit()
        db.refresh(employee)
        return certificate

    return factory
