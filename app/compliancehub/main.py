from contextlib import asynccontextmanager
import logging
from pathlib import Path
from fastapi import Depends, FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from compliancehub.core.config import get_settings
from compliancehub.core.logging import configure_logging
from compliancehub.db.session import SessionLocal, get_db
from compliancehub.models import Certificate, User
from compliancehub.core.security import hash_password
from compliancehub.api.rest import router as api_router
from compliancehub.api.system import router as system_router
from compliancehub.services.certifications import certificate_status
from compliancehub.services.scheduler import start_scheduler, shutdown_scheduler

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()


def seed_admin() -> None:
    db = SessionLocal()
    try:
        if db.query(User).count() == 0:
            user = User(
                email="admin@example.local",
                full_name="Admin",
                password_hash=hash_password("admin1234"),
                role="admin",
                is_active=True,
            )
            db.add(user)
            db.commit()
            logger.info("created default admin user", extra={"email": user.email})
    finally:
        db.close()


@asynccontextmanager
async def lifespan(_: FastAPI):
    Path(settings.storage_dir).mkdir(parents=True, exist_ok=True)
    seed_admin()
    if settings.scheduler_enabled:
        start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie=settings.session_cookie_name,
    https_only=settings.session_https_only,
    same_site="lax",
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[x.strip() for x in settings.cors_origins.split(",") if x.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

app.include_router(api_router)
app.include_router(system_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error", extra={"path": request.url.path})
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


@app.get("/health")
def health():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return JSONResponse({"status": "ok"})
    finally:
        db.close()


@app.get("/verify/{code}")
def verify_certificate(code: str, db: Session = Depends(get_db)):
    certificate = db.query(Certificate).filter_by(verification_code=code.strip().upper()).first()
    if certificate is None:
        raise HTTPException(status_code=404, detail="Certificate not found")
    return {
        "valid": certificate_status(certificate) != "expired",
        "certificate_number": certificate.certificate_number,
        "employee": certificate.employee.name,
        "training_type": certificate.training_type.name,
        "issue_date": certificate.issue_date,
        "expiry_date": certificate.expiry_date,
        "status": certificate_status(certificate),
        "is_verified": certificate.is_verified,
    }
