"""
Notification outbox dispatcher.

Delivers PENDING rows from ``notification_outbox`` through a
``NotificationSender`` after the business transaction that wrote them has
committed.  Delivery is at-least-once with a bounded number of attempts;
a failed send is logged and retried on the next run, and never reaches
back into the transaction that produced the row.

Usage:
    dispatcher = NotificationDispatcher(session, LoggingNotificationSender())
    report = dispatcher.dispatch_pending()
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.notification_outbox import NotificationOutboxModel, OutboxStatus

logger = get_logger("services.notification_dispatcher")

SUBJECTS = {
    "REIMBURSEMENT_PROCESSING": "Reimbursement processing - batch {batchNumber}",
    "REIMBURSEMENT_COMPLETED": "Reimbursement completed - batch {batchNumber}",
    "REIMBURSEMENT_FAILED": "Reimbursement delayed - batch {batchNumber}",
    "FINANCE_BATCH_CREATED": "New reimbursement batch {batchNumber}",
    "FINANCE_BATCH_FAILED": "Reimbursement batch {batchNumber} failed",
}


@dataclass(frozen=True)
class NotificationMessage:
    recipient: str
    template_kind: str
    subject: str
    payload: Mapping[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    """Delivers one message or raises; must honour ``timeout`` seconds."""

    def send(self, message: NotificationMessage, timeout: float) -> None: ...


class LoggingNotificationSender:
    """Sender that only writes the message to the structured log."""

    def send(self, message: NotificationMessage, timeout: float) -> None:
        logger.info(
            "notification_sent",
            extra={
                "recipient": message.recipient,
                "template_kind": message.template_kind,
                "subject": message.subject,
            },
        )


@dataclass(frozen=True)
class DispatchReport:
    sent: int = 0
    retried: int = 0
    failed: int = 0


def render_subject(template_kind: str, payload: Mapping[str, Any]) -> str:
    template = SUBJECTS.get(template_kind)
    if template is None:
        return template_kind.replace("_", " ").title()
    try:
        return template.format(**payload)
    except KeyError:
        return template_kind.replace("_", " ").title()


class NotificationDispatcher:
    """Drains the notification outbox."""

    def __init__(
        self,
        session: Session,
        sender: NotificationSender,
        clock: Clock | None = None,
        max_attempts: int = 5,
        timeout_seconds: float = 10.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session = session
        self._sender = sender
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts
        self._timeout = timeout_seconds

    def dispatch_pending(self, limit: int = 100) -> DispatchReport:
        """
        Send up to ``limit`` pending notifications, oldest first, and commit
        their new delivery state.
        """
        rows = self._session.execute(
            select(NotificationOutboxModel)
            .where(NotificationOutboxModel.status == OutboxStatus.PENDING.value)
            .order_by(NotificationOutboxModel.created_at, NotificationOutboxModel.id)
            .limit(limit)
        ).scalars().all()

        sent = retried = failed = 0
        for row in rows:
            message = NotificationMessage(
                recipient=row.recipient,
                template_kind=row.template_kind,
                subject=render_subject(row.template_kind, row.payload or {}),
                payload=dict(row.payload or {}),
            )
            row.attempts += 1
            try:
                self._sender.send(message, self._timeout)
            except Exception as exc:
                # Delivery failures stay in the outbox for the next run
                row.last_error = str(exc)
                if row.attempts >= self._max_attempts:
                    row.status = OutboxStatus.FAILED.value
                    failed += 1
                else:
                    retried += 1
                logger.warning(
                    "notification_delivery_failed",
                    extra={
                        "outbox_id": str(row.id),
                        "recipient": row.recipient,
                        "template_kind": row.template_kind,
                        "attempts": row.attempts,
                        "gave_up": row.status == OutboxStatus.FAILED.value,
                    },
                    exc_info=True,
                )
                continue
            row.status = OutboxStatus.SENT.value
            row.sent_at = self._clock.now()
            row.last_error = None
            sent += 1

        self._session.commit()
        report = DispatchReport(sent=sent, retried=retried, failed=failed)
        if rows:
            logger.info(
                "notification_dispatch_completed",
                extra={"sent": sent, "retried": retried, "failed": failed},
            )
        return report
