"""
Read-only reimbursement queries.

Selectors accept the caller's session and never add, flush or commit.
They return frozen DTOs, not ORM rows.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hrms_modules.expense.helpers import quantize_money
from hrms_modules.expense.models import (
    ClaimStatus,
    EmployeeReimbursementSummary,
    ReimbursementStats,
)
from hrms_modules.expense.orm import ExpenseClaimModel, ReimbursementBatchModel


class ReimbursementSelector:
    """Reimbursement summaries per employee and across the organisation."""

    def __init__(self, session: Session):
        self.session = session

    def _count_and_sum(self, *criteria) -> tuple[int, Decimal]:
        count, total = self.session.execute(
            select(
                func.count(ExpenseClaimModel.id),
                func.coalesce(func.sum(ExpenseClaimModel.amount), 0),
            ).where(*criteria)
        ).one()
        return int(count), quantize_money(Decimal(str(total)))

    def reimbursement_summary(self, employee_id: UUID) -> EmployeeReimbursementSummary:
        """Totals for one employee; cancelled claims are ignored."""
        own = ExpenseClaimModel.employee_id == employee_id
        total_claims, total_amount = self._count_and_sum(
            own, ExpenseClaimModel.status != ClaimStatus.CANCELLED.value,
        )
        reimbursed_claims, reimbursed_amount = self._count_and_sum(
            own, ExpenseClaimModel.status == ClaimStatus.REIMBURSED.value,
        )
        pending_claims, pending_amount = self._count_and_sum(
            own,
            ExpenseClaimModel.status == ClaimStatus.APPROVED.value,
            ExpenseClaimModel.is_reimbursable.is_(True),
        )
        return EmployeeReimbursementSummary(
            employee_id=employee_id,
            total_claims=total_claims,
            total_amount=total_amount,
            reimbursed_claims=reimbursed_claims,
            reimbursed_amount=reimbursed_amount,
            pending_reimbursement_claims=pending_claims,
            pending_reimbursement_amount=pending_amount,
        )

    def reimbursement_stats(self) -> ReimbursementStats:
        awaiting_count, awaiting_amount = self._count_and_sum(
            ExpenseClaimModel.status == ClaimStatus.APPROVED.value,
            ExpenseClaimModel.is_reimbursable.is_(True),
            ExpenseClaimModel.reimbursement_batch_id.is_(None),
        )
        reimbursed_count, reimbursed_amount = self._count_and_sum(
            ExpenseClaimModel.status == ClaimStatus.REIMBURSED.value,
        )
        batches = self.session.execute(
            select(ReimbursementBatchModel.status, func.count(ReimbursementBatchModel.id))
            .group_by(ReimbursementBatchModel.status)
        ).all()
        return ReimbursementStats(
            approved_awaiting_payment=awaiting_count,
            approved_awaiting_amount=awaiting_amount,
            reimbursed_claims=reimbursed_count,
            reimbursed_amount=reimbursed_amount,
            batches_by_status={status: int(count) for status, count in batches},
        )
