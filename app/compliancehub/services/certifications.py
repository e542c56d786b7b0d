"""Date-derived certificate and training record status."""

from calendar import monthrange
from datetime import date, datetime, UTC
from sqlalchemy.orm import Session
from compliancehub.core.config import get_settings
from compliancehub.core.security import random_code
from compliancehub.models import Certificate, TrainingRecord, TrainingType

ACTIVE = "active"
EXPIRING_SOON = "expiring_soon"
EXPIRED = "expired"
COMPLIANT = "compliant"


def days_until_expiry(expiry_date: date | None, today: date | None = None) -> int | None:
    if expiry_date is None:
        return None
    return (expiry_date - (today or date.today())).days


def warning_days_for(training_type: TrainingType | None) -> int:
    if training_type is not None and training_type.warning_days is not None:
        return training_type.warning_days
    return get_settings().expiry_warning_days


def status_for_expiry(
    expiry_date: date | None,
    warning_days: int | None = None,
    today: date | None = None,
) -> str:
    # no expiry date means a permanent certificate
    if expiry_date is None:
        return ACTIVE
    if warning_days is None:
        warning_days = get_settings().expiry_warning_days
    days = days_until_expiry(expiry_date, today)
    if days < 0:
        return EXPIRED
    if days <= warning_days:
        return EXPIRING_SOON
    return ACTIVE


def compliance_status_for_expiry(
    expiry_date: date | None,
    warning_days: int | None = None,
    today: date | None = None,
) -> str:
    status = status_for_expiry(expiry_date, warning_days, today)
    return COMPLIANT if status == ACTIVE else status


def certificate_status(certificate: Certificate, today: date | None = None) -> str:
    training_type = certificate.training_record.training_type if certificate.training_record else None
    return status_for_expiry(certificate.expiry_date, warning_days_for(training_type), today)


def extend_record_expiry(record: TrainingRecord, expiry_date: date | None) -> bool:
    """Move the record expiry forward to a newer certificate expiry."""
    if expiry_date is None:
        return False
    if record.expiry_date is None or expiry_date > record.expiry_date:
        record.expiry_date = expiry_date
        return True
    return False


def refresh_record_status(record: TrainingRecord, today: date | None = None) -> bool:
    """Recompute the stored status columns of a training record.

    Returns True when either column changed.
    """
    compliance = compliance_status_for_expiry(
        record.expiry_date, warning_days_for(record.training_type), today
    )
    if compliance == EXPIRED:
        status = EXPIRED
    elif record.status == EXPIRED:
        status = ACTIVE
    else:
        status = record.status or ACTIVE

    changed = compliance != record.compliance_status or status != record.status
    record.compliance_status = compliance
    record.status = status
    return changed


def update_all_statuses(db: Session, today: date | None = None) -> dict:
    counts = {COMPLIANT: 0, EXPIRING_SOON: 0, EXPIRED: 0}
    changed = 0
    for record in db.query(TrainingRecord).all():
        if refresh_record_status(record, today):
            changed += 1
        counts[record.compliance_status] += 1
    db.commit()
    return {"changed": changed, **counts}


def generate_verification_code(db: Session) -> str:
    while True:
        code = f"CERT-{random_code(8)}"
        if not db.query(Certificate).filter_by(verification_code=code).first():
            return code


def generate_certificate_number(db: Session, type_code: str | None, issue_date: date | None = None) -> str:
    issued = issue_date or date.today()
    prefix = f"{(type_code or 'GAP').upper()}-{issued:%Y%m}-"
    last = (
        db.query(Certificate.certificate_number)
        .filter(Certificate.certificate_number.like(f"{prefix}%"))
        .order_by(Certificate.certificate_number.desc())
        .first()
    )
    sequence = 1
    if last:
        tail = last[0].rsplit("-", 1)[-1]
        if tail.isdigit():
            sequence = int(tail) + 1
    return f"{prefix}{sequence:04d}"


def calculate_expiry_date(issue_date: date, validity_months: int | None) -> date | None:
    if not validity_months:
        return None
    month_index = issue_date.month - 1 + validity_months
    year = issue_date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(issue_date.day, monthrange(year, month)[1])
    return date(year, month, day)


def mark_verified(certificate: Certificate, user_id: int | None) -> None:
    certificate.is_verified = True
    certificate.verification_date = datetime.now(UTC)
    certificate.verified_by_id = user_id


def certificate_analytics(db: Session, today: date | None = None) -> dict:
    certs = db.query(Certificate).all()
    total = len(certs)
    by_status = {ACTIVE: 0, EXPIRING_SOON: 0, EXPIRED: 0}
    for cert in certs:
        by_status[certificate_status(cert, today)] += 1
    verified = sum(1 for c in certs if c.is_verified)
    valid = by_status[ACTIVE] + by_status[EXPIRING_SOON]
    return {
        "total": total,
        "active": by_status[ACTIVE],
        "expiring_soon": by_status[EXPIRING_SOON],
        "expired": by_status[EXPIRED],
        "verified": verified,
        "verification_rate": round(verified / total * 100, 2) if total else 0,
        "compliance_rate": round(valid / total * 100, 2) if total else 0,
    }
