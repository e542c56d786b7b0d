from datetime import date
from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class DepartmentIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    code: str = Field(min_length=1, max_length=20)
    description: str | None = None
    is_active: bool = True


class EmployeeIn(BaseModel):
    employee_id: str | None = Field(default=None, max_length=32)
    nip: str | None = Field(default=None, max_length=32)
    name: str = Field(min_length=2, max_length=255)
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    department_id: int | None = None
    supervisor_id: int | None = None
    status: str = Field(default="active", pattern="^(active|inactive)$")
    hire_date: date | None = None


class BackgroundCheckUpdate(BaseModel):
    status: str = Field(pattern="^(not_started|in_progress|cleared|failed)$")
    check_date: date | None = None
    notes: str | None = None


class TrainingTypeIn(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    code: str = Field(min_length=1, max_length=20)
    category: str | None = None
    description: str | None = None
    is_mandatory: bool = False
    validity_months: int | None = Field(default=None, ge=1)
    warning_days: int | None = Field(default=None, ge=0)
    is_active: bool = True
    required_department_ids: list[int] = []


class TrainingProviderIn(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    contact_email: str | None = None
    is_active: bool = True


class TrainingRecordIn(BaseModel):
    employee_id: int
    training_type_id: int
    training_provider_id: int | None = None
    issue_date: date | None = None
    completion_date: date | None = None
    expiry_date: date | None = None
    notes: str | None = None


class CertificateIn(BaseModel):
    training_record_id: int
    certificate_number: str | None = Field(default=None, max_length=64)
    issued_by: str | None = None
    issue_date: date
    expiry_date: date | None = None
    notes: str | None = None


class SettingsUpdate(BaseModel):
    hris_api_url: str | None = None
    hris_api_key: str | None = None
    webhook_url: str | None = None
