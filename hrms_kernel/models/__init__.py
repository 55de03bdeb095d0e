"""Domain models for the HRMS kernel."""

from hrms_kernel.models.audit_event import AuditAction, AuditEvent
from hrms_kernel.models.employee import EmployeeModel, EmployeeRole, EmployeeType
from hrms_kernel.models.notification_outbox import (
    NotificationOutboxModel,
    OutboxStatus,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "EmployeeModel",
    "EmployeeRole",
    "EmployeeType",
    "NotificationOutboxModel",
    "OutboxStatus",
]
