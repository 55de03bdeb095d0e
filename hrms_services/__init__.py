"""
hrms_services -- Package init and public API.

Responsibility:
    Stateful services that run outside a business transaction and talk to
    the outside world.  Today that is notification delivery from the
    kernel outbox.

Architecture position:
    Services -- may import from hrms_kernel; hrms_kernel must never import
    from this package.
"""

from hrms_services.notification_dispatcher import (
    DispatchReport,
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationMessage,
    NotificationSender,
)

__all__ = [
    "DispatchReport",
    "LoggingNotificationSender",
    "NotificationDispatcher",
    "NotificationMessage",
    "NotificationSender",
]
