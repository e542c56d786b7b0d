import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from compliancehub.models import Employee
from compliancehub.services import containers

logger = logging.getLogger(__name__)

EMPLOYEE_ID_PREFIX = "EMP"


class ContainerMoveError(RuntimeError):
    pass


def next_employee_id(db: Session) -> str:
    highest = 0
    rows = db.query(Employee.employee_id).filter(Employee.employee_id.like(f"{EMPLOYEE_ID_PREFIX}%")).all()
    for (value,) in rows:
        suffix = value[len(EMPLOYEE_ID_PREFIX):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{EMPLOYEE_ID_PREFIX}{highest + 1:04d}"


def create_employee(db: Session, **fields) -> Employee:
    if not fields.get("employee_id"):
        fields["employee_id"] = next_employee_id(db)
    employee = Employee(**fields)
    db.add(employee)
    db.commit()
    db.refresh(employee)
    if not containers.initialize_container(db, employee):
        logger.warning("employee created without container", extra={"employee_id": employee.employee_id})
    return employee


def update_employee(db: Session, employee: Employee, **fields) -> Employee:
    """Apply field changes; an employee ID change also moves the container.

    Raises ContainerMoveError and rolls the change back when an existing
    container cannot be moved to the new ID.
    """
    old_id = employee.employee_id
    old_dir = containers.storage_root() / containers.CONTAINER_ROOT / old_id
    moving = (
        fields.get("employee_id", old_id) != old_id
        and employee.container_created_at is not None
        and old_dir.is_dir()
    )

    for field, value in fields.items():
        setattr(employee, field, value)
    if moving:
        try:
            moved = containers.rename_container(db, employee, old_id)
        except OSError as exc:
            db.rollback()
            raise ContainerMoveError(f"container for {old_id} could not be moved: {exc}") from exc
        if not moved:
            db.rollback()
            raise ContainerMoveError(f"container for {fields['employee_id']} already exists")
        return employee

    db.commit()
    if containers.has_container(employee):
        containers.refresh_metadata(db, employee)
    return employee


def delete_employee(db: Session, employee: Employee, deleted_by: int | None = None) -> str | None:
    """Delete the row, then archive the container.

    The row is flushed first so database errors surface before any file moves;
    the container is put back if the final commit fails.
    """
    db.query(Employee).filter(Employee.supervisor_id == employee.id).update({Employee.supervisor_id: None})
    db.delete(employee)
    db.flush()

    try:
        archive = containers.archive_container(employee, deleted_by)
    except OSError:
        db.rollback()
        raise
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        if archive:
            containers.restore_archived_container(employee, archive)
        raise
    return archive
