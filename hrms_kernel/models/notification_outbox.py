"""
Module: hrms_kernel.models.notification_outbox
Responsibility: Durable outbox for notifications produced inside a business
    transaction and delivered after it commits.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A row is written in the same transaction as the state change that
      caused it, so a rolled-back batch never notifies anyone.
    - status moves PENDING -> SENT, or PENDING -> FAILED once attempts
      reach the dispatcher's limit.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hrms_kernel.db.base import TrackedBase, UUIDString


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationOutboxModel(TrackedBase):
    """One pending or delivered notification."""

    __tablename__ = "notification_outbox"

    __table_args__ = (
        Index("idx_outbox_status", "status"),
        Index("idx_outbox_batch", "batch_id"),
    )

    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    template_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<NotificationOutbox {self.template_kind} -> {self.recipient} [{self.status}]>"
