"""
Approval Record Manager (``hrms_modules.expense.approvals``).

Responsibility
--------------
Create the per-level approval records for a claim, record each approver's
decision, and drive the claim to its aggregate outcome.

Architecture position
---------------------
**Modules layer** -- stateful component operating on the caller's session.
It flushes but never commits; ``ExpenseService`` owns the transaction.

Invariants enforced
-------------------
* Approval records are created once per claim, levels 1..N.
* Claim status is APPROVED iff every record is APPROVED and REJECTED iff
  any record is REJECTED, regardless of the order decisions arrive in.
* Decisions on a claim are serialized: the claim row is locked
  (``SELECT ... FOR UPDATE``) and the status change is a conditional
  UPDATE guarded by ``status = 'PENDING'``.

Failure modes
-------------
* ``ClaimNotFoundError`` -- unknown claim.
* ``ClaimNotPendingError`` -- claim already decided, cancelled or paid.
* ``NoPendingApprovalError`` -- caller holds no PENDING record on the claim.
* ``ApprovalsAlreadyExistError`` -- chain created twice.
* ``OptimisticLockError`` -- status changed underneath the lock.

Audit relevance
---------------
Every decision produces an APPROVAL_GRANTED or APPROVAL_REJECTED audit
event carrying the before/after claim status.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.exceptions import (
    ApprovalsAlreadyExistError,
    ClaimNotFoundError,
    ClaimNotPendingError,
    InvalidRequestError,
    NoPendingApprovalError,
    OptimisticLockError,
)
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.audit_event import AuditAction
from hrms_kernel.services.auditor_service import AuditorService
from hrms_modules.expense.helpers import aggregate_status
from hrms_modules.expense.models import (
    ApprovalDecision,
    ApprovalStatus,
    ClaimStatus,
    DecisionOutcome,
    ExpenseApproval,
    ExpenseClaim,
)
from hrms_modules.expense.orm import ExpenseApprovalModel, ExpenseClaimModel
from hrms_modules.expense.workflows import CLAIM_WORKFLOW, require_transition

logger = get_logger("modules.expense.approvals")


class CompensationHook(Protocol):
    """Undo a side effect of a claim that has just been rejected or cancelled."""

    def restore(self, claim: ExpenseClaim, actor_id: UUID) -> None: ...


class ApprovalRecordManager:
    """Creates and resolves approval records for expense claims."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        compensation_hooks: Sequence[CompensationHook] = (),
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor
        self._compensation_hooks = tuple(compensation_hooks)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_approvals(
        self,
        claim_id: UUID,
        approver_ids: Sequence[UUID],
        actor_id: UUID,
    ) -> tuple[ExpenseApproval, ...]:
        """
        One PENDING record per approver at ``level = index + 1``.

        Raises:
            InvalidRequestError: Empty or duplicated approver list.
            ApprovalsAlreadyExistError: The claim already has records.
        """
        if not approver_ids:
            raise InvalidRequestError("approver_ids", "at least one approver is required")
        if len(set(approver_ids)) != len(approver_ids):
            raise InvalidRequestError("approver_ids", "approvers must be distinct")

        existing = self._session.execute(
            select(func.count(ExpenseApprovalModel.id))
            .where(ExpenseApprovalModel.claim_id == claim_id)
        ).scalar_one()
        if existing:
            raise ApprovalsAlreadyExistError(str(claim_id))

        models = [
            ExpenseApprovalModel(
                claim_id=claim_id,
                level=index + 1,
                approver_id=approver_id,
                status=ApprovalStatus.PENDING.value,
                created_by_id=actor_id,
            )
            for index, approver_id in enumerate(approver_ids)
        ]
        self._session.add_all(models)
        self._session.flush()

        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.APPROVALS_CREATED, "ExpenseClaim", claim_id,
                after_state={"approver_ids": list(approver_ids)},
            )
        logger.info(
            "approval_records_created",
            extra={"claim_id": str(claim_id), "levels": len(models)},
        )
        return tuple(m.to_dto() for m in models)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def record_decision(
        self,
        claim_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision,
        comments: str | None = None,
    ) -> DecisionOutcome:
        """
        Record ``approver_id``'s decision and recompute the claim outcome.

        Preconditions:
            - Claim is PENDING and the approver holds a PENDING record on it.
        Postconditions:
            - The approver's record is APPROVED or REJECTED with timestamp
              and comments.
            - Claim is REJECTED if any record is rejected, APPROVED if all
              are approved, otherwise still PENDING.
        """
        claim = self._lock_claim(claim_id)
        if claim.status != ClaimStatus.PENDING.value:
            raise ClaimNotPendingError(str(claim_id), claim.status)

        approval = self._session.execute(
            select(ExpenseApprovalModel)
            .where(
                ExpenseApprovalModel.claim_id == claim_id,
                ExpenseApprovalModel.approver_id == approver_id,
                ExpenseApprovalModel.status == ApprovalStatus.PENDING.value,
            )
            .order_by(ExpenseApprovalModel.level)
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()
        if approval is None:
            raise NoPendingApprovalError(str(claim_id), str(approver_id))

        now = self._clock.now()
        if decision == ApprovalDecision.APPROVE:
            approval.status = ApprovalStatus.APPROVED.value
            approval.approved_at = now
        else:
            approval.status = ApprovalStatus.REJECTED.value
            approval.rejected_at = now
        approval.comments = comments
        approval.updated_by_id = approver_id
        self._session.flush()

        statuses = self._session.execute(
            select(ExpenseApprovalModel.status)
            .where(ExpenseApprovalModel.claim_id == claim_id)
        ).scalars().all()
        outcome = aggregate_status(ApprovalStatus(s) for s in statuses)

        before_status = claim.status
        if outcome == ApprovalStatus.REJECTED:
            rejected = self._transition_claim(claim_id, "reject", approver_id, {
                "rejected_at": now,
                "rejected_by": approver_id,
                "rejection_reason": comments,
            }).to_dto()
            for hook in self._compensation_hooks:
                hook.restore(rejected, approver_id)
        elif outcome == ApprovalStatus.APPROVED:
            self._transition_claim(claim_id, "approve", approver_id, {
                "approved_at": now,
                "approved_by": approver_id,
            })

        claim_status = ClaimStatus(claim.status)
        if self._auditor:
            self._auditor.record_best_effort(
                approver_id,
                AuditAction.APPROVAL_GRANTED
                if decision == ApprovalDecision.APPROVE else AuditAction.APPROVAL_REJECTED,
                "ExpenseClaim",
                claim_id,
                before_state={"status": before_status},
                after_state={
                    "status": claim_status.value,
                    "level": approval.level,
                    "comments": comments,
                },
            )
        logger.info(
            "approval_decision_recorded",
            extra={
                "claim_id": str(claim_id),
                "approver_id": str(approver_id),
                "level": approval.level,
                "decision": decision.value,
                "claim_status": claim_status.value,
            },
        )
        return DecisionOutcome(
            claim_id=claim_id,
            approval_id=approval.id,
            level=approval.level,
            approval_status=ApprovalStatus(approval.status),
            claim_status=claim_status,
        )

    def auto_approve(self, claim_id: UUID, actor_id: UUID) -> ExpenseClaim:
        """Approve a claim whose category and rules require no approvers."""
        claim = self._transition_claim(claim_id, "auto_approve", actor_id, {
            "approved_at": self._clock.now(),
            "approved_by": actor_id,
        })
        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.CLAIM_AUTO_APPROVED, "ExpenseClaim", claim_id,
                before_state={"status": ClaimStatus.PENDING.value},
                after_state={"status": ClaimStatus.APPROVED.value},
            )
        logger.info("claim_auto_approved", extra={"claim_id": str(claim_id)})
        return claim.to_dto()

    def cancel(self, claim_id: UUID, actor_id: UUID) -> ExpenseClaim:
        """
        Withdraw a PENDING claim.  Pending approval records are left as they
        are; decisions on a cancelled claim are refused.
        """
        claim = self._lock_claim(claim_id)
        if claim.status != ClaimStatus.PENDING.value:
            raise ClaimNotPendingError(str(claim_id), claim.status)

        cancelled = self._transition_claim(claim_id, "cancel", actor_id, {}).to_dto()
        for hook in self._compensation_hooks:
            hook.restore(cancelled, actor_id)

        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.CLAIM_CANCELLED, "ExpenseClaim", claim_id,
                before_state={"status": ClaimStatus.PENDING.value},
                after_state={"status": ClaimStatus.CANCELLED.value},
            )
        logger.info("claim_cancelled", extra={"claim_id": str(claim_id), "actor_id": str(actor_id)})
        return cancelled

    def approvals_for(self, claim_id: UUID) -> tuple[ExpenseApproval, ...]:
        rows = self._session.execute(
            select(ExpenseApprovalModel)
            .where(ExpenseApprovalModel.claim_id == claim_id)
            .order_by(ExpenseApprovalModel.level)
        ).scalars().all()
        return tuple(r.to_dto() for r in rows)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_claim(self, claim_id: UUID) -> ExpenseClaimModel:
        claim = self._session.execute(
            select(ExpenseClaimModel)
            .where(ExpenseClaimModel.id == claim_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if claim is None:
            raise ClaimNotFoundError(str(claim_id))
        return claim

    def _transition_claim(
        self,
        claim_id: UUID,
        action: str,
        actor_id: UUID,
        values: dict[str, Any],
    ) -> ExpenseClaimModel:
        transition = require_transition(
            CLAIM_WORKFLOW, "ExpenseClaim", claim_id, ClaimStatus.PENDING.value, action,
        )
        result = self._session.execute(
            update(ExpenseClaimModel)
            .where(
                ExpenseClaimModel.id == claim_id,
                ExpenseClaimModel.status == transition.from_state,
            )
            .values(status=transition.to_state, updated_by_id=actor_id, **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise OptimisticLockError("ExpenseClaim", str(claim_id))
        # bulk UPDATE does not refresh objects already loaded in this session
        return self._session.execute(
            select(ExpenseClaimModel)
            .where(ExpenseClaimModel.id == claim_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
