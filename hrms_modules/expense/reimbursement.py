"""
Reimbursement Batcher (``hrms_modules.expense.reimbursement``).

Responsibility
--------------
Group approved claims into a payment batch and mark them REIMBURSED with
at-most-once semantics; move batches to their terminal state.

Architecture position
---------------------
**Modules layer** -- flushes on the caller's session; the facade commits.
Notifications are written to the kernel outbox in the same transaction and
delivered after commit by ``NotificationDispatcher``.

Invariants enforced
-------------------
* A claim joins at most one batch: eligible rows are locked, then updated
  under ``status = APPROVED AND reimbursed_at IS NULL``; any shortfall in
  affected rows aborts the whole unit.
* ``batch.total_amount`` is the exact Decimal sum of the claim amounts.
* Batch status moves only PROCESSING -> COMPLETED | FAILED.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.exceptions import (
    BatchNotFoundError,
    ClaimsNotEligibleError,
    InvalidRequestError,
    OptimisticLockError,
)
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.audit_event import AuditAction
from hrms_kernel.models.employee import EmployeeModel
from hrms_kernel.models.notification_outbox import NotificationOutboxModel, OutboxStatus
from hrms_kernel.services.auditor_service import AuditorService
from hrms_kernel.services.sequence_service import SequenceService
from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.models import (
    BatchStatus,
    ClaimStatus,
    PaymentMethod,
    ReimbursementBatch,
    ReimbursementBatchSummary,
)
from hrms_modules.expense.orm import ExpenseClaimModel, ReimbursementBatchModel
from hrms_modules.expense.workflows import BATCH_WORKFLOW, CLAIM_WORKFLOW, require_transition

logger = get_logger("modules.expense.reimbursement")

# Outbox template kinds
REIMBURSEMENT_PROCESSING = "REIMBURSEMENT_PROCESSING"
REIMBURSEMENT_COMPLETED = "REIMBURSEMENT_COMPLETED"
REIMBURSEMENT_FAILED = "REIMBURSEMENT_FAILED"
FINANCE_BATCH_CREATED = "FINANCE_BATCH_CREATED"
FINANCE_BATCH_FAILED = "FINANCE_BATCH_FAILED"

_STATUS_ACTIONS = {
    BatchStatus.COMPLETED: "complete",
    BatchStatus.FAILED: "fail",
}


def format_batch_number(seq: int) -> str:
    return f"REIMB-{seq:06d}"


class ReimbursementBatcher:
    """Creates reimbursement batches and drives their status."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ExpenseConfig | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or ExpenseConfig()
        self._auditor = auditor
        self._sequence = SequenceService(session)

    def process_batch(
        self,
        claim_ids: Sequence[UUID],
        payment_method: PaymentMethod,
        actor_id: UUID,
        reimbursement_date: datetime | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> ReimbursementBatchSummary:
        """
        Batch the given approved claims for payment.

        Preconditions:
            - ``claim_ids`` is non-empty and has no duplicates.
            - Every claim is APPROVED, reimbursable, unpaid and unbatched.

        Postconditions:
            - One PROCESSING batch exists whose total equals the sum of
              the claim amounts; every claim is REIMBURSED and linked to it.
            - One outbox row per employee plus one finance summary row.

        Raises:
            InvalidRequestError: Empty or duplicated id list.
            ClaimsNotEligibleError: Some ids are not eligible; nothing mutated.
            OptimisticLockError: A concurrent batcher claimed a row first.
        """
        requested = list(claim_ids)
        if not requested:
            raise InvalidRequestError("claim_ids", "at least one claim id is required")
        if len(set(requested)) != len(requested):
            raise InvalidRequestError("claim_ids", "duplicate claim ids")

        eligible = self._session.execute(
            select(ExpenseClaimModel)
            .where(
                ExpenseClaimModel.id.in_(requested),
                ExpenseClaimModel.status == ClaimStatus.APPROVED.value,
                ExpenseClaimModel.is_reimbursable.is_(True),
                ExpenseClaimModel.reimbursed_at.is_(None),
                ExpenseClaimModel.reimbursement_batch_id.is_(None),
            )
            .order_by(ExpenseClaimModel.id)
            .with_for_update()
        ).scalars().all()

        if len(eligible) != len(requested):
            found = {c.id for c in eligible}
            ineligible = [str(cid) for cid in requested if cid not in found]
            logger.warning(
                "reimbursement_claims_not_eligible",
                extra={"requested": len(requested), "ineligible": ineligible},
            )
            raise ClaimsNotEligibleError(len(requested), ineligible)

        reimburse = require_transition(
            CLAIM_WORKFLOW, "ExpenseClaim", eligible[0].id, ClaimStatus.APPROVED.value, "reimburse",
        )
        total = sum((c.amount for c in eligible), Decimal("0"))
        employee_ids = sorted({c.employee_id for c in eligible}, key=str)
        now = self._clock.now()
        batch_number = format_batch_number(
            self._sequence.next_value(SequenceService.REIMBURSEMENT_BATCH)
        )

        batch = ReimbursementBatchModel(
            batch_number=batch_number,
            total_amount=total,
            total_claims=len(eligible),
            payment_method=payment_method.value,
            status=BatchStatus.PROCESSING.value,
            reference_number=reference_number,
            notes=notes,
            processed_by=actor_id,
            processed_at=now,
            created_by_id=actor_id,
        )
        self._session.add(batch)
        self._session.flush()

        result = self._session.execute(
            update(ExpenseClaimModel)
            .where(
                ExpenseClaimModel.id.in_(requested),
                ExpenseClaimModel.status == ClaimStatus.APPROVED.value,
                ExpenseClaimModel.reimbursed_at.is_(None),
                ExpenseClaimModel.reimbursement_batch_id.is_(None),
            )
            .values(
                status=reimburse.to_state,
                reimbursed_at=reimbursement_date or now,
                reimbursed_by=actor_id,
                reimbursement_amount=ExpenseClaimModel.amount,
                reimbursement_batch_id=batch.id,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != len(requested):
            logger.error(
                "reimbursement_update_conflict",
                extra={
                    "batch_id": str(batch.id),
                    "requested": len(requested),
                    "updated": result.rowcount,
                },
            )
            raise OptimisticLockError("ReimbursementBatch", str(batch.id))

        self._enqueue_batch_created(batch, eligible)

        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.REIMBURSEMENT_PROCESSED, "ReimbursementBatch", batch.id,
                after_state={
                    "batch_number": batch_number,
                    "claim_ids": sorted(str(c.id) for c in eligible),
                    "total_amount": total,
                    "payment_method": payment_method.value,
                },
            )
        logger.info(
            "reimbursement_batch_created",
            extra={
                "batch_id": str(batch.id),
                "batch_number": batch_number,
                "claim_count": len(eligible),
                "employee_count": len(employee_ids),
                "total_amount": str(total),
                "payment_method": payment_method.value,
            },
        )
        return ReimbursementBatchSummary(
            batch_id=batch.id,
            batch_number=batch_number,
            total_amount=total,
            claim_count=len(eligible),
            employee_count=len(employee_ids),
            payment_method=payment_method,
            status=BatchStatus.PROCESSING,
            claim_ids=tuple(c.id for c in eligible),
        )

    def update_batch_status(
        self,
        batch_id: UUID,
        status: BatchStatus,
        actor_id: UUID,
        failure_reason: str | None = None,
        reference_number: str | None = None,
    ) -> ReimbursementBatch:
        """
        Move a PROCESSING batch to COMPLETED or FAILED.

        Raises:
            InvalidRequestError: Target status is not terminal.
            BatchNotFoundError: Unknown batch.
            InvalidStateTransitionError: Batch is not PROCESSING.
        """
        action = _STATUS_ACTIONS.get(status)
        if action is None:
            raise InvalidRequestError("status", f"cannot move a batch to {status.value}")

        batch = self._session.execute(
            select(ReimbursementBatchModel)
            .where(ReimbursementBatchModel.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError(str(batch_id))

        from_state = batch.status
        transition = require_transition(
            BATCH_WORKFLOW, "ReimbursementBatch", batch_id, from_state, action,
        )
        now = self._clock.now()
        batch.status = transition.to_state
        batch.updated_by_id = actor_id
        if reference_number is not None:
            batch.reference_number = reference_number
        if status == BatchStatus.COMPLETED:
            batch.completed_at = now
        else:
            batch.failed_at = now
            batch.failure_reason = failure_reason
        self._session.flush()

        self._enqueue_status_change(batch)

        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.BATCH_STATUS_CHANGED, "ReimbursementBatch", batch_id,
                before_state={"status": from_state},
                after_state={"status": batch.status, "failure_reason": failure_reason},
            )
        logger.info(
            "reimbursement_batch_status_changed",
            extra={
                "batch_id": str(batch_id),
                "from_status": from_state,
                "to_status": batch.status,
            },
        )
        return batch.to_dto()

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def _enqueue(
        self, batch: ReimbursementBatchModel, recipient: str, template_kind: str, payload: dict,
    ) -> None:
        if not recipient:
            logger.warning(
                "notification_recipient_missing",
                extra={"batch_id": str(batch.id), "template_kind": template_kind},
            )
            return
        self._session.add(NotificationOutboxModel(
            recipient=recipient,
            template_kind=template_kind,
            payload=payload,
            batch_id=batch.id,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_by_id=batch.updated_by_id or batch.created_by_id,
        ))

    def _employee_totals(self, claims: Sequence[ExpenseClaimModel]) -> dict[UUID, tuple[int, Decimal]]:
        totals: dict[UUID, tuple[int, Decimal]] = {}
        for claim in claims:
            count, amount = totals.get(claim.employee_id, (0, Decimal("0")))
            totals[claim.employee_id] = (count + 1, amount + claim.amount)
        return totals

    def _employees(self, employee_ids) -> list[EmployeeModel]:
        return list(self._session.execute(
            select(EmployeeModel)
            .where(EmployeeModel.id.in_(list(employee_ids)))
            .order_by(EmployeeModel.employee_code)
        ).scalars().all())

    def _enqueue_batch_created(
        self, batch: ReimbursementBatchModel, claims: Sequence[ExpenseClaimModel],
    ) -> None:
        totals = self._employee_totals(claims)
        for employee in self._employees(totals):
            count, amount = totals[employee.id]
            self._enqueue(batch, employee.email, REIMBURSEMENT_PROCESSING, {
                "employeeName": employee.full_name,
                "batchNumber": batch.batch_number,
                "claimCount": count,
                "amount": str(amount),
                "paymentMethod": batch.payment_method,
            })
        self._enqueue(batch, self._config.finance_notification_address, FINANCE_BATCH_CREATED, {
            "batchNumber": batch.batch_number,
            "claimCount": batch.total_claims,
            "employeeCount": len(totals),
            "totalAmount": str(batch.total_amount),
            "paymentMethod": batch.payment_method,
        })
        self._session.flush()

    def _enqueue_status_change(self, batch: ReimbursementBatchModel) -> None:
        claims = self._session.execute(
            select(ExpenseClaimModel).where(ExpenseClaimModel.reimbursement_batch_id == batch.id)
        ).scalars().all()
        totals = self._employee_totals(claims)

        if batch.status == BatchStatus.COMPLETED.value:
            for employee in self._employees(totals):
                count, amount = totals[employee.id]
                self._enqueue(batch, employee.email, REIMBURSEMENT_COMPLETED, {
                    "employeeName": employee.full_name,
                    "batchNumber": batch.batch_number,
                    "claimCount": count,
                    "amount": str(amount),
                    "referenceNumber": batch.reference_number,
                })
        else:
            for employee in self._employees(totals):
                count, amount = totals[employee.id]
                self._enqueue(batch, employee.email, REIMBURSEMENT_FAILED, {
                    "employeeName": employee.full_name,
                    "batchNumber": batch.batch_number,
                    "claimCount": count,
                    "amount": str(amount),
                })
            self._enqueue(batch, self._config.finance_notification_address, FINANCE_BATCH_FAILED, {
                "batchNumber": batch.batch_number,
                "totalAmount": str(batch.total_amount),
                "failureReason": batch.failure_reason,
            })
        self._session.flush()
