"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Persists ``(actor, action, resource type, resource id, before, after)``
    records as hash-chained audit events.  Provides chain validation for
    tamper detection and trace queries for forensic review.

Architecture position:
    Kernel > Services -- imperative shell, called by the expense module's
    approval manager, mileage generator, reimbursement batcher and banking
    adapter.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Chain integrity: every event carries a cryptographic link to its
      predecessor.
    - Append-only: events are never modified or deleted.

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
    - ``record_best_effort`` never raises on persistence errors; it rolls
      back its savepoint and logs ``audit_record_failed``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.exceptions import AuditChainBrokenError
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.audit_event import AuditAction, AuditEvent
from hrms_kernel.services.sequence_service import SequenceService
from hrms_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one resource, in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(e.action for e in self.entries)


class AuditorService:
    """
    Audit collaborator for the expense engine.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

        return last_event.hash if last_event else None

    def record(
        self,
        actor_id: UUID,
        action: AuditAction,
        resource_type: str,
        resource_id: UUID,
        before_state: dict[str, Any] | None = None,
        after_state: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Persist one audit event with hash chain linkage.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a monotonically
              increasing ``seq`` and a valid chain link.

        Raises:
            SQLAlchemyError: On persistence failure.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe({"before": before_state, "after": after_state})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=resource_type,
            entity_id=str(resource_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=resource_type,
            entity_id=resource_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": resource_type,
                "entity_id": str(resource_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    def record_best_effort(
        self,
        actor_id: UUID,
        action: AuditAction,
        resource_type: str,
        resource_id: UUID,
        before_state: dict[str, Any] | None = None,
        after_state: dict[str, Any] | None = None,
    ) -> AuditEvent | None:
        """
        Fire-and-forget variant of ``record``.

        Runs inside a savepoint so a failed audit write never poisons the
        caller's transaction.  Returns None when the write failed.
        """
        savepoint = self._session.begin_nested()
        try:
            event = self.record(
                actor_id, action, resource_type, resource_id,
                before_state=before_state, after_state=after_state,
            )
            savepoint.commit()
            return event
        except SQLAlchemyError:
            savepoint.rollback()
            logger.warning(
                "audit_record_failed",
                extra={
                    "action": action.value,
                    "entity_type": resource_type,
                    "entity_id": str(resource_id),
                },
                exc_info=True,
            )
            return None

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"audit_event_id": str(events[0].id)})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"audit_event_id": str(event.id)})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0:
                expected_prev = events[i - 1].hash
                if event.prev_hash != expected_prev:
                    logger.critical("audit_chain_broken", extra={"audit_event_id": str(event.id)})
                    raise AuditChainBrokenError(
                        str(event.id), expected_prev, event.prev_hash or "None",
                    )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Trace queries

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Get the complete audit trace for a resource."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)
