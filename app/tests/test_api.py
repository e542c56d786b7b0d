import io
import os
from datetime import date, timedelta
from openpyxl import Workbook, load_workbook
from compliancehub.api.rest import rate_limiter
from compliancehub.models import AuditLog
from compliancehub.services import notifications, scheduler
from compliancehub.services.certifications import calculate_expiry_date
from compliancehub.services.exports import XLSX_MEDIA_TYPE
from compliancehub.services.files import storage_root

ADMIN_EMAIL = "admin@example.local"
ADMIN_PASSWORD = "admin1234"
PDF = ("scan.pdf", b"%PDF-1.4 test", "application/pdf")


def _setup_training(client) -> tuple[dict, dict, dict]:
    department = client.post("/api/departments", json={"name": "Security", "code": "SEC"}).json()
    employee = client.post("/api/employees", json={"name": "Rina Putri", "department_id": department["id"]}).json()
    training_type = client.post(
        "/api/training-types",
        json={"name": "Aviation Security", "code": "AVSEC", "is_mandatory": True, "validity_months": 24,
              "required_department_ids": [department["id"]]},
    ).json()
    return department, employee, training_type


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_login_rejects_bad_password(client):
    res = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong"})
    assert res.status_code == 401
    assert client.get("/api/auth/me").status_code == 401


def test_login_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "max_attempts", 2)
    for _ in range(2):
        client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong"})
    res = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 429


def test_login_and_logout(admin_client):
    me = admin_client.get("/api/auth/me").json()
    assert me["email"] == ADMIN_EMAIL
    assert me["role"] == "admin"
    admin_client.post("/api/auth/logout")
    assert admin_client.get("/api/departments").status_code == 401


def test_employee_crud(admin_client, db):
    department = admin_client.post("/api/departments", json={"name": "Cargo", "code": "CGO"}).json()
    assert admin_client.post("/api/departments", json={"name": "Cargo", "code": "X"}).status_code == 409

    res = admin_client.post("/api/employees", json={"name": "Budi", "nip": "1001", "department_id": department["id"]})
    assert res.status_code == 201
    employee = res.json()
    assert employee["employee_id"] == "EMP0001"
    assert employee["container_status"] == "active"
    assert admin_client.post("/api/employees", json={"name": "Other", "nip": "1001"}).status_code == 409
    assert admin_client.delete(f"/api/departments/{department['id']}").status_code == 409

    res = admin_client.put(
        f"/api/employees/{employee['id']}",
        json={"name": "Budi Santoso", "nip": "1001", "employee_id": "EMP0100", "department_id": department["id"]},
    )
    assert res.json()["employee_id"] == "EMP0100"
    assert admin_client.get(f"/api/employees/{employee['id']}/container").json()["path"] == "employees/EMP0100"
    assert [e["name"] for e in admin_client.get("/api/employees", params={"q": "santoso"}).json()] == ["Budi Santoso"]

    res = admin_client.delete(f"/api/employees/{employee['id']}")
    assert res.json()["archive"].startswith("archived_containers/")
    assert admin_client.get(f"/api/employees/{employee['id']}").status_code == 404
    actions = {(a.action, a.entity) for a in db.query(AuditLog).all()}
    assert {("create", "employee"), ("update", "employee"), ("delete", "employee")} <= actions


def test_deleting_supervisor_clears_subordinates(admin_client):
    boss = admin_client.post("/api/employees", json={"name": "Kepala Regu"}).json()
    staff = admin_client.post("/api/employees", json={"name": "Anggota", "supervisor_id": boss["id"]}).json()
    assert staff["supervisor_id"] == boss["id"]

    res = admin_client.delete(f"/api/employees/{boss['id']}")
    assert res.status_code == 200
    assert res.json()["archive"].startswith("archived_containers/")
    assert admin_client.get(f"/api/employees/{staff['id']}").json()["supervisor_id"] is None


def test_employee_id_change_rejected_when_container_cannot_move(admin_client):
    employee = admin_client.post("/api/employees", json={"name": "Budi", "nip": "2001"}).json()
    (storage_root() / "employees" / "EMP0100").mkdir(parents=True)

    res = admin_client.put(f"/api/employees/{employee['id']}", json={"name": "Budi", "employee_id": "EMP0100"})
    assert res.status_code == 409
    assert admin_client.get(f"/api/employees/{employee['id']}").json()["employee_id"] == employee["employee_id"]
    container = admin_client.get(f"/api/employees/{employee['id']}/container").json()
    assert container["path"] == f"employees/{employee['employee_id']}"
    assert (storage_root() / "employees" / employee["employee_id"]).is_dir()


def test_certificate_lifecycle(admin_client):
    _, employee, training_type = _setup_training(admin_client)
    compliance = admin_client.get(f"/api/employees/{employee['id']}/compliance").json()
    assert compliance["overall_status"] == "non_compliant"

    issued = date.today() - timedelta(days=30)
    record = admin_client.post(
        "/api/training-records",
        json={"employee_id": employee["id"], "training_type_id": training_type["id"], "issue_date": issued.isoformat()},
    ).json()
    assert record["compliance_status"] == "compliant"
    assert record["expiry_date"] is not None

    res = admin_client.post("/api/certificates", json={"training_record_id": record["id"], "issue_date": issued.isoformat()})
    assert res.status_code == 201
    certificate = res.json()
    assert certificate["certificate_number"] == f"AVSEC-{issued:%Y%m}-0001"
    assert certificate["verification_code"].startswith("CERT-")
    assert certificate["status"] == "active"
    duplicate = {"training_record_id": record["id"], "issue_date": issued.isoformat(),
                 "certificate_number": certificate["certificate_number"]}
    assert admin_client.post("/api/certificates", json=duplicate).status_code == 409

    assert admin_client.post(f"/api/certificates/{certificate['id']}/verify").json()["is_verified"] is True
    public = admin_client.get(f"/verify/{certificate['verification_code'].lower()}").json()
    assert public["valid"] is True
    assert public["employee"] == "Rina Putri"
    assert admin_client.get("/verify/CERT-NOPE").status_code == 404

    compliance = admin_client.get(f"/api/employees/{employee['id']}/compliance").json()
    assert compliance["overall_status"] == "compliant"


def test_certificate_update_renews_training_record(admin_client):
    _, employee, training_type = _setup_training(admin_client)
    lapsed = date.today() - timedelta(days=10)
    issued = date.today() - timedelta(days=740)
    record = admin_client.post(
        "/api/training-records",
        json={"employee_id": employee["id"], "training_type_id": training_type["id"],
              "issue_date": issued.isoformat(), "expiry_date": lapsed.isoformat()},
    ).json()
    certificate = admin_client.post(
        "/api/certificates",
        json={"training_record_id": record["id"], "issue_date": issued.isoformat(), "expiry_date": lapsed.isoformat()},
    ).json()
    assert admin_client.get(f"/api/training-records/{record['id']}").json()["compliance_status"] == "expired"

    renewed = date.today() + timedelta(days=365)
    res = admin_client.put(
        f"/api/certificates/{certificate['id']}",
        json={"training_record_id": record["id"], "issue_date": date.today().isoformat(),
              "expiry_date": renewed.isoformat()},
    )
    assert res.status_code == 200
    updated = admin_client.get(f"/api/training-records/{record['id']}").json()
    assert updated["expiry_date"] == renewed.isoformat()
    assert updated["compliance_status"] == "compliant"
    assert admin_client.get(f"/api/employees/{employee['id']}/compliance").json()["overall_status"] == "compliant"

    res = admin_client.put(
        f"/api/certificates/{certificate['id']}",
        json={"training_record_id": record["id"], "issue_date": date.today().isoformat()},
    )
    assert res.json()["expiry_date"] == calculate_expiry_date(date.today(), 24).isoformat()


def test_certificate_file_upload_and_download(admin_client):
    _, employee, training_type = _setup_training(admin_client)
    record = admin_client.post(
        "/api/training-records",
        json={"employee_id": employee["id"], "training_type_id": training_type["id"],
              "issue_date": date.today().isoformat()},
    ).json()
    certificate = admin_client.post(
        "/api/certificates", json={"training_record_id": record["id"], "issue_date": date.today().isoformat()}
    ).json()
    assert admin_client.get(f"/api/certificates/{certificate['id']}/download").status_code == 404

    res = admin_client.post(f"/api/certificates/{certificate['id']}/file", files={"file": PDF})
    assert res.status_code == 200
    assert res.json()["path"].startswith(f"employees/{employee['employee_id']}/certificates/")

    download = admin_client.get(f"/api/certificates/{certificate['id']}/download")
    assert download.status_code == 200
    assert download.content == PDF[1]
    files = admin_client.get(f"/api/employees/{employee['id']}/container/files").json()
    assert len(files["certificates"]) == 1

    bad = admin_client.post(f"/api/certificates/{certificate['id']}/file", files={"file": ("x.exe", b"MZ", "application/x-msdownload")})
    assert bad.status_code == 400


def test_container_health_and_repair(admin_client, settings):
    employee = admin_client.post("/api/employees", json={"name": "Dewi"}).json()
    assert admin_client.get(f"/api/employees/{employee['id']}/container/health").json()["status"] == "healthy"

    metadata = f"{settings.storage_dir}/employees/{employee['employee_id']}/container_metadata.json"
    os.remove(metadata)
    assert admin_client.get(f"/api/employees/{employee['id']}/container/health").json()["status"] == "critical"

    repaired = admin_client.post(f"/api/employees/{employee['id']}/container/repair").json()
    assert repaired["success"] is True
    assert repaired["health"]["status"] == "healthy"

    upload = admin_client.post(
        f"/api/employees/{employee['id']}/container/files", data={"category": "nowhere"}, files={"file": PDF}
    )
    assert upload.status_code == 400


def test_background_check_files(admin_client):
    employee = admin_client.post("/api/employees", json={"name": "Andi"}).json()
    res = admin_client.put(f"/api/employees/{employee['id']}/background-check", json={"status": "cleared"})
    assert res.json()["status"] == "cleared"

    created = admin_client.post(f"/api/employees/{employee['id']}/background-checks", files=[("files", PDF)]).json()
    assert len(created) == 1
    assert admin_client.delete(f"/api/employees/{employee['id']}/background-checks/0").json() == {"ok": True}
    assert admin_client.delete(f"/api/employees/{employee['id']}/background-checks/0").status_code == 404


def test_notifications_for_current_user(admin_client, db, make_employee):
    employee = make_employee("Admin Person", email=ADMIN_EMAIL)
    first = notifications.create_notification(db, employee, "One", "Body")
    notifications.create_notification(db, employee, "Two", "Body")

    assert admin_client.get("/api/notifications/unread-count").json() == {"count": 2}
    assert admin_client.post(f"/api/notifications/{first.id}/read").json()["read_at"] is not None
    unread = admin_client.get("/api/notifications", params={"unread_only": True}).json()
    assert [n["title"] for n in unread] == ["Two"]
    assert admin_client.post("/api/notifications/read-all").json() == {"updated": 1}


def test_notifications_without_employee_profile(admin_client):
    assert admin_client.get("/api/notifications").status_code == 404


def test_run_job_endpoint(admin_client, monkeypatch):
    monkeypatch.setitem(scheduler.JOBS, "status_update", lambda db: {"changed": 3})
    res = admin_client.post("/api/system/jobs/status_update/run")
    assert res.json() == {"job": "status_update", "result": {"changed": 3}}
    assert admin_client.post("/api/system/jobs/unknown/run").status_code == 404


def test_admin_settings_mask_secrets(admin_client):
    res = admin_client.post("/api/admin/settings", json={"hris_api_url": " https://hris.test ", "hris_api_key": "k"})
    assert res.json() == {"ok": True}
    stored = admin_client.get("/api/admin/settings").json()
    assert stored == {"hris_api_url": "https://hris.test", "hris_api_key": "********", "webhook_url": ""}


def test_exports_and_import(admin_client):
    _setup_training(admin_client)
    res = admin_client.get("/api/exports/employees", params={"include_certificates": True})
    assert res.headers["content-type"] == XLSX_MEDIA_TYPE
    assert f"employees_{date.today():%Y%m%d}.xlsx" in res.headers["content-disposition"]
    rows = list(load_workbook(io.BytesIO(res.content)).active.iter_rows(values_only=True))
    assert rows[1][2] == "Rina Putri"

    res = admin_client.get("/api/exports/compliance-report")
    assert load_workbook(io.BytesIO(res.content)).sheetnames == ["Summary", "Departments", "Issues"]

    wb = Workbook()
    wb.active.append(["NIP", "Nama", "Departemen"])
    wb.active.append(["5001", "Imported Person", "Security"])
    buffer = io.BytesIO()
    wb.save(buffer)
    res = admin_client.post("/api/imports/employees", files={"file": ("staff.xlsx", buffer.getvalue(), XLSX_MEDIA_TYPE)})
    assert res.json() == {"created": 1, "updated": 0, "errors": []}

    res = admin_client.post("/api/imports/employees", files={"file": ("staff.xlsx", b"not a workbook", XLSX_MEDIA_TYPE)})
    assert res.status_code == 400


def test_system_endpoints_require_login(client):
    assert client.get("/api/system/stats").status_code == 401
    assert client.get("/api/exports/employees").status_code == 401
    assert client.get("/api/system/training-types/statistics").status_code == 401


def test_system_stats(admin_client, make_employee):
    make_employee("Counted")
    stats = admin_client.get("/api/system/stats").json()
    assert stats["employees"] == {"total": 1, "active": 1}
    assert stats["containers"]["with_containers"] == 0


def test_training_record_import_and_type_statistics(admin_client):
    _, employee, training_type = _setup_training(admin_client)
    nip = "3001"
    admin_client.put(f"/api/employees/{employee['id']}", json={"name": "Rina Putri", "nip": nip,
                                                              "department_id": employee["department_id"]})
    issued = date.today() - timedelta(days=30)

    wb = Workbook()
    wb.active.append(["NIP", "Nama", "Training Code", "Training Name", "Issue Date", "Certificate Number"])
    wb.active.append([nip, "Rina Putri", "AVSEC", "Aviation Security", issued, "AVSEC-IMP-0001"])
    buffer = io.BytesIO()
    wb.save(buffer)
    res = admin_client.post(
        "/api/imports/training-records", files={"file": ("records.xlsx", buffer.getvalue(), XLSX_MEDIA_TYPE)}
    )
    assert res.json() == {"created": 1, "updated": 0, "skipped": 0, "errors": []}
    assert admin_client.get(f"/api/employees/{employee['id']}/compliance").json()["overall_status"] == "compliant"

    res = admin_client.post(
        "/api/imports/training-records", files={"file": ("records.xlsx", b"not a workbook", XLSX_MEDIA_TYPE)}
    )
    assert res.status_code == 400

    stats = admin_client.get("/api/system/training-types/statistics").json()
    assert [row["code"] for row in stats] == [training_type["code"]]
    assert stats[0]["employees_trained"] == 1
    assert stats[0]["compliance_rate"] == 100.0
