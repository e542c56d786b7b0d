from compliancehub.models.models import (
    User,
    Department,
    Employee,
    TrainingType,
    TrainingProvider,
    TrainingRecord,
    Certificate,
    Notification,
    SystemLog,
    Setting,
    AuditLog,
    training_type_departments,
)

__all__ = [
    "User",
    "Department",
    "Employee",
    "TrainingType",
    "TrainingProvider",
    "TrainingRecord",
    "Certificate",
    "Notification",
    "SystemLog",
    "Setting",
    "AuditLog",
    "training_type_departments",
]
