from datetime import datetime, timedelta, UTC
from email.message import EmailMessage
import logging
import smtplib
import httpx
from sqlalchemy.orm import Session
from compliancehub.core.config import get_settings
from compliancehub.models import Certificate, Department, Employee, Notification
from compliancehub.services.certifications import certificate_status, days_until_expiry

logger = logging.getLogger(__name__)

RENEWAL = "renewal_reminder"
EXPIRED = "certificate_expired"


def determine_priority(days_until: int) -> str:
    if days_until <= 7:
        return "urgent"
    if days_until <= 30:
        return "high"
    if days_until <= 60:
        return "normal"
    return "low"


def _smtp_config() -> dict:
    settings = get_settings()
    return {
        "host": settings.smtp_host,
        "port": settings.smtp_port,
        "user": settings.smtp_user,
        "password": settings.smtp_password,
        "from": settings.smtp_from,
        "tls": settings.smtp_tls,
    }


def _send_email(recipients: list[str], subject: str, body: str, smtp_cfg: dict) -> None:
    if not recipients or not smtp_cfg.get("host") or not smtp_cfg.get("from"):
        return
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = smtp_cfg["from"]
    msg["To"] = ", ".join(recipients)
    msg.set_content(body)

    with smtplib.SMTP(smtp_cfg["host"], smtp_cfg["port"], timeout=10) as server:
        if smtp_cfg["tls"]:
            server.starttls()
        if smtp_cfg.get("user"):
            server.login(smtp_cfg["user"], smtp_cfg["password"])
        server.send_message(msg)


def _send_webhook(url: str, payload: dict) -> None:
    if not url:
        return
    with httpx.Client(timeout=10.0) as client:
        client.post(url, json=payload).raise_for_status()


def create_notification(
    db: Session,
    recipient: Employee,
    title: str,
    message: str,
    priority: str = "normal",
    type_: str = "system",
    related: Certificate | None = None,
    data: dict | None = None,
    email: bool = True,
) -> Notification:
    """Store an in-app notification and mail it to the recipient if possible."""
    settings = get_settings()
    notification = Notification(
        recipient_id=recipient.id,
        type=type_,
        title=title,
        message=message,
        priority=priority,
        related_type="certificate" if related is not None else None,
        related_id=related.id if related is not None else None,
        data=data or {},
    )
    db.add(notification)
    db.flush()

    if email and recipient.email and settings.email_notifications_enabled:
        try:
            _send_email([recipient.email], title, message, _smtp_config())
        except (smtplib.SMTPException, OSError):
            logger.exception("notification email failed", extra={"notification_id": notification.id})
            notification.status = "failed"
            db.commit()
            return notification

    notification.status = "sent"
    notification.sent_at = datetime.now(UTC)
    db.commit()
    return notification


def was_recently_notified(
    db: Session,
    certificate: Certificate,
    kind: str,
    days: int | None = None,
    hours: int = 24,
) -> bool:
    threshold = datetime.now(UTC) - timedelta(hours=hours)
    recent = (
        db.query(Notification)
        .filter(
            Notification.recipient_id == certificate.employee.id,
            Notification.related_type == "certificate",
            Notification.related_id == certificate.id,
            Notification.created_at >= threshold,
        )
        .all()
    )
    for notification in recent:
        data = notification.data or {}
        if data.get("kind") == kind and (days is None or data.get("days_until_expiry") == days):
            return True
    return False


def _certificate_lines(certificate: Certificate) -> str:
    employee = certificate.employee
    training = certificate.training_type
    provider = certificate.training_record.training_provider
    return (
        f"Employee: {employee.name} ({employee.employee_id})\n"
        f"Training: {training.name} ({training.code})\n"
        f"Certificate: {certificate.certificate_number}\n"
        f"Provider: {provider.name if provider else 'N/A'}\n"
        f"Expiry date: {certificate.expiry_date.isoformat() if certificate.expiry_date else 'No expiry'}\n"
    )


def send_renewal_reminder(db: Session, certificate: Certificate, days: int) -> bool:
    employee = certificate.employee
    training = certificate.training_type
    priority = determine_priority(days)
    title = f"Certificate renewal: {training.name} expires in {days} days"
    message = (
        f"Dear {employee.name},\n\n"
        f"Your {training.name} certificate expires in {days} days. "
        f"Please schedule the renewal training.\n\n" + _certificate_lines(certificate)
    )
    data = {
        "kind": RENEWAL,
        "certificate_id": certificate.id,
        "days_until_expiry": days,
        "status": certificate_status(certificate),
        "action_required": True,
    }
    create_notification(db, employee, title, message, priority, related=certificate, data=data)

    if days <= 7 and employee.supervisor is not None and employee.supervisor.status == "active":
        create_notification(
            db,
            employee.supervisor,
            f"Team member certificate expiring: {employee.name}",
            f"{employee.name}'s {training.name} certificate expires in {days} days.\n\n"
            + _certificate_lines(certificate),
            "high",
            data={**data, "kind": "supervisor_" + RENEWAL, "employee_id": employee.employee_id},
        )

    _dispatch_webhook({
        "event": RENEWAL,
        "certificate_id": certificate.id,
        "employee_id": employee.employee_id,
        "days_until_expiry": days,
        "priority": priority,
    })
    return True


def send_expired_certificate_notification(db: Session, certificate: Certificate) -> bool:
    employee = certificate.employee
    training = certificate.training_type
    days_expired = abs(days_until_expiry(certificate.expiry_date) or 0)
    title = f"Certificate Has Expired: {training.name}"
    message = (
        f"Dear {employee.name},\n\n"
        f"Your {training.name} certificate expired {days_expired} day(s) ago. "
        f"Renew it immediately to stay compliant.\n\n" + _certificate_lines(certificate)
    )
    data = {"kind": EXPIRED, "certificate_id": certificate.id, "days_expired": days_expired}
    create_notification(db, employee, title, message, "urgent", related=certificate, data=data)

    notify_department(
        db,
        get_settings().hr_department_code,
        f"Employee certificate expired: {employee.name}",
        f"{employee.name}'s {training.name} certificate has expired.\n\n" + _certificate_lines(certificate),
        "high",
        data={**data, "kind": "hr_" + EXPIRED, "employee_id": employee.employee_id},
        exclude_id=employee.id,
    )
    _dispatch_webhook({
        "event": EXPIRED,
        "certificate_id": certificate.id,
        "employee_id": employee.employee_id,
        "days_expired": days_expired,
    })
    return True


def department_staff(db: Session, code: str) -> list[Employee]:
    return (
        db.query(Employee)
        .join(Employee.department)
        .filter(Department.code == code, Employee.status == "active")
        .all()
    )


def notify_department(
    db: Session,
    code: str,
    title: str,
    message: str,
    priority: str = "normal",
    data: dict | None = None,
    exclude_id: int | None = None,
) -> int:
    sent = 0
    for staff in department_staff(db, code):
        if staff.id == exclude_id:
            continue
        create_notification(db, staff, title, message, priority, data=data)
        sent += 1
    return sent


def _dispatch_webhook(payload: dict) -> None:
    url = get_settings().webhook_url
    if not url:
        return
    try:
        _send_webhook(url, payload)
    except httpx.HTTPError:
        logger.exception("webhook dispatch failed", extra={"event": payload.get("event")})


def mark_as_read(db: Session, notification: Notification) -> None:
    if notification.read_at is None:
        notification.read_at = datetime.now(UTC)
        db.commit()


def mark_all_read(db: Session, employee_id: int) -> int:
    now = datetime.now(UTC)
    rows = db.query(Notification).filter(
        Notification.recipient_id == employee_id, Notification.read_at.is_(None)
    ).all()
    for row in rows:
        row.read_at = now
    db.commit()
    return len(rows)


def unread_for(db: Session, employee_id: int, limit: int = 10) -> list[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.recipient_id == employee_id, Notification.read_at.is_(None))
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .all()
    )
