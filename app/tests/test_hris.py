from unittest.mock import patch
import httpx
import pytest
from compliancehub.models import Department, Employee
from compliancehub.services import hris
from compliancehub.services.settings_store import set_setting

PAGES = {
    None: {
        "data": [
            {"employee_id": "EMP0100", "name": "Siti Rahma", "department": "Ground Handling", "email": "siti@x.test"},
            {"employee_id": "EMP0101", "first_name": "Andi", "last_name": "Wijaya", "department": "Ground Handling"},
        ],
        "meta": {"has_next_page": True, "end_cursor": "page-2"},
    },
    "page-2": {
        "data": [{"employee_id": "EMP0102", "name": "Dewi", "status": "terminated", "department": "Security"}],
        "meta": {"has_next_page": False},
    },
}


def _mock_client(handler):
    real = httpx.Client(transport=httpx.MockTransport(handler))
    return patch("compliancehub.services.hris.httpx.Client", return_value=real)


@pytest.fixture()
def configured(settings, monkeypatch):
    monkeypatch.setattr(settings, "hris_api_url", "https://hris.example.test/api/employees")
    monkeypatch.setattr(settings, "hris_api_key", "secret")
    return settings


def test_sync_without_config(db):
    result = hris.sync_hris_employees(db)
    assert result["ok"] is False
    assert result["message"] == "HRIS config missing"


def test_sync_pages_and_upserts(db, configured, make_employee):
    existing = make_employee("Old Name")
    existing.employee_id = "EMP0100"
    db.commit()
    seen = []

    def handler(request):
        assert request.headers["x-api-key"] == "secret"
        cursor = request.url.params.get("cursor")
        seen.append(cursor)
        return httpx.Response(200, json=PAGES[cursor])

    with _mock_client(handler):
        result = hris.sync_hris_employees(db)

    assert seen == [None, "page-2"]
    assert result == {"ok": True, "message": "Sync completed", "created": 2, "updated": 1}
    db.expire_all()
    assert db.query(Employee).filter_by(employee_id="EMP0100").one().name == "Siti Rahma"
    assert db.query(Employee).filter_by(employee_id="EMP0101").one().name == "Andi Wijaya"
    assert db.query(Employee).filter_by(employee_id="EMP0102").one().status == "inactive"
    assert {d.name for d in db.query(Department).all()} == {"Ground Handling", "Security"}
    assert db.query(Employee).filter_by(employee_id="EMP0101").one().container_status == "active"


def test_stored_settings_override_environment(db, settings, monkeypatch):
    monkeypatch.setattr(settings, "hris_api_url", "https://ignored.example.test")
    set_setting(db, "hris_api_url", "https://hris.example.test/v2")
    set_setting(db, "hris_api_key", "stored-key")
    seen = []

    def handler(request):
        seen.append((str(request.url), request.headers["x-api-key"]))
        return httpx.Response(200, json={"data": []})

    with _mock_client(handler):
        assert hris.sync_hris_employees(db)["ok"] is True
    assert seen == [("https://hris.example.test/v2", "stored-key")]


def test_sync_failure_is_reported(db, configured):
    with _mock_client(lambda request: httpx.Response(503)):
        result = hris.sync_hris_employees(db)
    assert result["ok"] is False
    assert result["message"].startswith("HRIS unavailable")

    with _mock_client(lambda request: httpx.Response(503)):
        with pytest.raises(RuntimeError):
            hris.run_hris_sync(db)


def test_department_codes_are_unique(db):
    first = hris.department_by_name(db, "Ground Handling")
    db.add(Department(name="Other", code="GROUNDHA2"))
    db.flush()
    second = hris.department_by_name(db, "Ground-Handling")
    assert first.code == "GROUNDHAND"
    assert second.code == "GROUNDHA3"
    assert hris.department_by_name(db, "  ") is None
