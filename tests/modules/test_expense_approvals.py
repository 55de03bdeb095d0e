"""
Tests for approval records, decisions and claim cancellation.

Covers:
- Level creation from a resolved approver list
- Order-independent aggregation (property-based over decision orders)
- Refusal paths: no pending record, claim already decided, cancelled
- Claimant-only cancellation
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from hrms_kernel.exceptions import (
    ApprovalsAlreadyExistError,
    ClaimNotFoundError,
    ClaimNotPendingError,
    InvalidRequestError,
    NoPendingApprovalError,
    OptimisticLockError,
)
from hrms_kernel.models.audit_event import AuditAction, AuditEvent
from hrms_modules.expense.approvals import ApprovalRecordManager
from hrms_modules.expense.models import ApprovalDecision, ApprovalStatus, ClaimStatus
from hrms_modules.expense.orm import ExpenseApprovalModel, ExpenseClaimModel
from tests.conftest import TEST_ACTOR_ID, user_id_for

APPROVER_IDS = [UUID(int=0xA100 + n) for n in range(1, 6)]


@pytest.fixture
def manager(session, clock) -> ApprovalRecordManager:
    return ApprovalRecordManager(session, clock=clock)


@pytest.fixture
def pending_claim(make_employee, make_category, make_claim):
    """A PENDING claim with no approval records yet."""
    employee = make_employee("EMP001")
    category = make_category("TRAVEL")
    return make_claim(employee, category, status=ClaimStatus.PENDING)


def _approval_rows(session, claim_id):
    return session.execute(
        select(ExpenseApprovalModel)
        .where(ExpenseApprovalModel.claim_id == claim_id)
        .order_by(ExpenseApprovalModel.level)
    ).scalars().all()


# =============================================================================
# Creation
# =============================================================================


class TestCreateApprovals:

    def test_levels_follow_approver_order(self, manager, pending_claim):
        approvals = manager.create_approvals(pending_claim.id, APPROVER_IDS[:3], TEST_ACTOR_ID)

        assert [a.level for a in approvals] == [1, 2, 3]
        assert [a.approver_id for a in approvals] == APPROVER_IDS[:3]
        assert all(a.status == ApprovalStatus.PENDING for a in approvals)

    def test_empty_list_rejected(self, manager, pending_claim):
        with pytest.raises(InvalidRequestError):
            manager.create_approvals(pending_claim.id, [], TEST_ACTOR_ID)

    def test_duplicate_approvers_rejected(self, manager, pending_claim):
        with pytest.raises(InvalidRequestError):
            manager.create_approvals(
                pending_claim.id, [APPROVER_IDS[0], APPROVER_IDS[0]], TEST_ACTOR_ID,
            )

    def test_second_creation_rejected(self, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:1], TEST_ACTOR_ID)

        with pytest.raises(ApprovalsAlreadyExistError):
            manager.create_approvals(pending_claim.id, APPROVER_IDS[1:2], TEST_ACTOR_ID)


class TestAutoApprove:

    def test_returns_approver_fields(self, manager, pending_claim):
        claim = manager.auto_approve(pending_claim.id, TEST_ACTOR_ID)

        assert claim.status == ClaimStatus.APPROVED
        assert claim.approved_by == TEST_ACTOR_ID
        assert claim.approved_at is not None

    def test_loaded_claim_sees_update(self, session, manager, pending_claim):
        manager.auto_approve(pending_claim.id, TEST_ACTOR_ID)

        loaded = session.get(ExpenseClaimModel, pending_claim.id)
        assert loaded is pending_claim
        assert loaded.status == ClaimStatus.APPROVED.value
        assert loaded.approved_by == TEST_ACTOR_ID
        assert loaded.approved_at is not None

    def test_non_pending_claim_refused(self, manager, make_employee, make_category, make_claim):
        claim = make_claim(make_employee("EMP002"), make_category("MEALS"))

        with pytest.raises(OptimisticLockError):
            manager.auto_approve(claim.id, TEST_ACTOR_ID)


# =============================================================================
# Decisions
# =============================================================================


class TestRecordDecision:

    def test_single_level_approval(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:1], TEST_ACTOR_ID)
        session.commit()

        outcome = service.record_decision(
            pending_claim.id, APPROVER_IDS[0], ApprovalDecision.APPROVE, "ok",
        )

        assert outcome.level == 1
        assert outcome.approval_status == ApprovalStatus.APPROVED
        assert outcome.claim_status == ClaimStatus.APPROVED
        claim = service.get_claim(pending_claim.id)
        assert claim.approved_by == APPROVER_IDS[0]
        assert claim.approved_at is not None

    def test_partial_approval_keeps_claim_pending(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:2], TEST_ACTOR_ID)
        session.commit()

        outcome = service.record_decision(pending_claim.id, APPROVER_IDS[1], ApprovalDecision.APPROVE)

        assert outcome.claim_status == ClaimStatus.PENDING
        assert service.get_claim(pending_claim.id).approved_at is None

    def test_rejection_is_immediate_and_records_reason(
        self, service, session, manager, pending_claim,
    ):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:3], TEST_ACTOR_ID)
        session.commit()

        outcome = service.record_decision(
            pending_claim.id, APPROVER_IDS[2], ApprovalDecision.REJECT, "duplicate receipt",
        )

        assert outcome.claim_status == ClaimStatus.REJECTED
        claim = service.get_claim(pending_claim.id)
        assert claim.rejected_by == APPROVER_IDS[2]
        assert claim.rejection_reason == "duplicate receipt"
        statuses = [row.status for row in _approval_rows(session, pending_claim.id)]
        assert statuses == ["PENDING", "PENDING", "REJECTED"]

    def test_decision_after_rejection_refused(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:2], TEST_ACTOR_ID)
        session.commit()
        service.record_decision(pending_claim.id, APPROVER_IDS[0], ApprovalDecision.REJECT)

        with pytest.raises(ClaimNotPendingError):
            service.record_decision(pending_claim.id, APPROVER_IDS[1], ApprovalDecision.APPROVE)

    def test_non_approver_refused(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:1], TEST_ACTOR_ID)
        session.commit()

        with pytest.raises(NoPendingApprovalError):
            service.record_decision(pending_claim.id, APPROVER_IDS[4], ApprovalDecision.APPROVE)

        assert service.get_claim(pending_claim.id).status == ClaimStatus.PENDING

    def test_same_approver_cannot_decide_twice(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:2], TEST_ACTOR_ID)
        session.commit()
        service.record_decision(pending_claim.id, APPROVER_IDS[0], ApprovalDecision.APPROVE)

        with pytest.raises(NoPendingApprovalError):
            service.record_decision(pending_claim.id, APPROVER_IDS[0], ApprovalDecision.APPROVE)

    def test_unknown_claim(self, service):
        with pytest.raises(ClaimNotFoundError):
            service.record_decision(uuid4(), APPROVER_IDS[0], ApprovalDecision.APPROVE)

    def test_decisions_are_audited(self, service, session, manager, pending_claim):
        manager.create_approvals(pending_claim.id, APPROVER_IDS[:2], TEST_ACTOR_ID)
        session.commit()

        service.record_decision(pending_claim.id, APPROVER_IDS[0], ApprovalDecision.APPROVE)
        service.record_decision(pending_claim.id, APPROVER_IDS[1], ApprovalDecision.REJECT)

        actions = session.execute(
            select(AuditEvent.action)
            .where(AuditEvent.entity_id == pending_claim.id)
            .order_by(AuditEvent.seq)
        ).scalars().all()
        assert actions == [
            AuditAction.APPROVAL_GRANTED.value,
            AuditAction.APPROVAL_REJECTED.value,
        ]


class TestDecisionOrderProperty:
    """Outcome depends on the set of decisions, never on their order."""

    @given(
        data=st.data(),
        levels=st.integers(min_value=1, max_value=5),
    )
    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    def test_any_order_aggregates_correctly(
        self, data, levels, service, session, manager, make_employee, make_category, make_claim,
    ):
        code = f"EMP{uuid4().hex[:8].upper()}"
        claim = make_claim(
            make_employee(code), make_category(f"CAT{code}"), status=ClaimStatus.PENDING,
        )
        approvers = APPROVER_IDS[:levels]
        manager.create_approvals(claim.id, approvers, TEST_ACTOR_ID)
        session.commit()

        decisions = data.draw(st.lists(
            st.sampled_from(ApprovalDecision), min_size=levels, max_size=levels,
        ))
        order = data.draw(st.permutations(range(levels)))

        final_status = ClaimStatus.PENDING
        for step, index in enumerate(order):
            outcome = service.record_decision(claim.id, approvers[index], decisions[index])
            final_status = outcome.claim_status
            decided = [decisions[i] for i in order[:step + 1]]
            if ApprovalDecision.REJECT in decided:
                assert final_status == ClaimStatus.REJECTED
                break
            if step + 1 < levels:
                assert final_status == ClaimStatus.PENDING

        if ApprovalDecision.REJECT in decisions:
            assert final_status == ClaimStatus.REJECTED
        else:
            assert final_status == ClaimStatus.APPROVED


# =============================================================================
# Cancellation
# =============================================================================


class TestCancelClaim:

    def test_claimant_cancels_pending_claim(self, service, session, make_employee, make_category):
        lead = make_employee("MGR001")
        employee = make_employee("EMP001", manager=lead)
        category = make_category("TRAVEL")
        submitted = service.submit_claim(
            employee.id, category.id, "Hotel", Decimal("2500"), date(2024, 3, 5),
            actor_id=user_id_for("EMP001"),
        )

        cancelled = service.cancel_claim(submitted.claim.id, user_id_for("EMP001"))

        assert cancelled.status == ClaimStatus.CANCELLED
        with pytest.raises(ClaimNotPendingError):
            service.record_decision(
                submitted.claim.id, user_id_for("MGR001"), ApprovalDecision.APPROVE,
            )

    def test_other_user_cannot_cancel(self, service, make_employee, make_category, make_claim):
        employee = make_employee("EMP001")
        claim = make_claim(employee, make_category("TRAVEL"), status=ClaimStatus.PENDING)

        with pytest.raises(InvalidRequestError):
            service.cancel_claim(claim.id, user_id_for("EMP999"))

        assert service.get_claim(claim.id).status == ClaimStatus.PENDING

    def test_approved_claim_cannot_be_cancelled(
        self, service, make_employee, make_category, make_claim,
    ):
        employee = make_employee("EMP001")
        claim = make_claim(employee, make_category("TRAVEL"), status=ClaimStatus.APPROVED)

        with pytest.raises(ClaimNotPendingError):
            service.cancel_claim(claim.id, user_id_for("EMP001"))

    def test_unknown_claim(self, service):
        with pytest.raises(ClaimNotFoundError):
            service.cancel_claim(uuid4(), TEST_ACTOR_ID)

    def test_cancellation_audited(self, service, session, make_employee, make_category, make_claim):
        employee = make_employee("EMP001")
        claim = make_claim(employee, make_category("TRAVEL"), status=ClaimStatus.PENDING)

        service.cancel_claim(claim.id, user_id_for("EMP001"))

        event = session.execute(
            select(AuditEvent).where(
                AuditEvent.entity_id == claim.id,
                AuditEvent.action == AuditAction.CLAIM_CANCELLED.value,
            )
        ).scalar_one()
        assert event.actor_id == user_id_for("EMP001")
        assert session.get(ExpenseClaimModel, claim.id).status == "CANCELLED"
