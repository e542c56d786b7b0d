from functools import lru_cache
from pydantic import BaseModel
import os


class Settings(BaseModel):
    app_name: str = os.getenv("APP_NAME", "Training Compliance Hub")
    environment: str = os.getenv("ENVIRONMENT", "production")
    secret_key: str = os.getenv("SECRET_KEY", "change-me")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+psycopg2://compliance:compliance@db:5432/compliance_hub",
    )
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    session_cookie_name: str = os.getenv("SESSION_COOKIE_NAME", "ch_session")
    session_https_only: bool = os.getenv("SESSION_HTTPS_ONLY", "false").lower() == "true"
    storage_dir: str = os.getenv("STORAGE_DIR", "/data/storage")
    max_upload_mb: int = int(os.getenv("MAX_UPLOAD_MB", "20"))

    expiry_warning_days: int = int(os.getenv("EXPIRY_WARNING_DAYS", "30"))
    notifications_enabled: bool = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"
    email_notifications_enabled: bool = os.getenv("EMAIL_NOTIFICATIONS_ENABLED", "true").lower() == "true"
    notification_batch_size: int = int(os.getenv("NOTIFICATION_BATCH_SIZE", "50"))
    expired_check_days_back: int = int(os.getenv("EXPIRED_CHECK_DAYS_BACK", "7"))
    it_department_code: str = os.getenv("IT_DEPARTMENT_CODE", "IT")
    hr_department_code: str = os.getenv("HR_DEPARTMENT_CODE", "HR")

    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_user: str = os.getenv("SMTP_USER", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_from: str = os.getenv("SMTP_FROM", "")
    smtp_tls: bool = os.getenv("SMTP_TLS", "true").lower() == "true"

    webhook_url: str = os.getenv("WEBHOOK_URL", "")
    cors_origins: str = os.getenv("CORS_ORIGINS", "")

    login_rate_limit_attempts: int = int(os.getenv("LOGIN_RATE_LIMIT_ATTEMPTS", "10"))
    login_rate_limit_window_seconds: int = int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_SECONDS", "300"))

    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    job_tries: int = int(os.getenv("JOB_TRIES", "3"))
    job_backoff_seconds: str = os.getenv("JOB_BACKOFF_SECONDS", "30,120,300")
    job_timeout_seconds: int = int(os.getenv("JOB_TIMEOUT_SECONDS", "300"))
    container_health_repair: bool = os.getenv("CONTAINER_HEALTH_REPAIR", "false").lower() == "true"

    hris_enabled: bool = os.getenv("HRIS_INTEGRATION_ENABLED", "false").lower() == "true"
    hris_api_url: str = os.getenv("HRIS_API_URL", "")
    hris_api_key: str = os.getenv("HRIS_API_KEY", "")
    hris_timeout: float = float(os.getenv("HRIS_TIMEOUT", "30"))
    hris_sync_cron: str = os.getenv("HRIS_SYNC_CRON", "0 2 * * *")

    backup_enabled: bool = os.getenv("BACKUP_ENABLED", "false").lower() == "true"
    backup_dir: str = os.getenv("BACKUP_DIR", "/data/backups")
    backup_retention_days: int = int(os.getenv("BACKUP_RETENTION_DAYS", "30"))

    def backoff_schedule(self) -> list[int]:
        return [int(x) for x in self.job_backoff_seconds.split(",") if x.strip().isdigit()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
