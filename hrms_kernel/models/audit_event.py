"""
Module: hrms_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      validated by AuditorService.validate_chain().
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    AuditEvent IS the audit trail.  Claim submission, approval decisions,
    mileage generation, reimbursement batching and banking integration all
    produce an AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from hrms_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Claim lifecycle
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_CANCELLED = "CLAIM_CANCELLED"
    CLAIM_AUTO_APPROVED = "CLAIM_AUTO_APPROVED"

    # Approval lifecycle
    APPROVALS_CREATED = "APPROVALS_CREATED"
    APPROVAL_GRANTED = "APPROVAL_GRANTED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"

    # Mileage
    MILEAGE_CLAIM_GENERATED = "MILEAGE_CLAIM_GENERATED"
    MILEAGE_CLAIM_REGENERATED = "MILEAGE_CLAIM_REGENERATED"

    # Reimbursement
    REIMBURSEMENT_PROCESSED = "REIMBURSEMENT_PROCESSED"
    BATCH_STATUS_CHANGED = "BATCH_STATUS_CHANGED"
    BANKING_INTEGRATION_PROCESSED = "BANKING_INTEGRATION_PROCESSED"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # e.g. "ExpenseClaim", "ReimbursementBatch"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # {"before": ..., "after": ...}
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
