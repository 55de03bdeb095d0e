"""
Concurrency tests for the expense engine.

Each worker runs in its own thread with its own session, and a barrier
releases them together so the row locks and unique keys are actually
contended.

Expected behavior:
- A claim lands in at most one reimbursement batch; the losing batcher
  fails and writes nothing.
- Concurrent mileage generation for the same (employee, month, year)
  produces exactly one monthly record and one claim.
- Concurrent approvals on a multi-level claim all land, and the claim
  resolves once.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from decimal import Decimal
from threading import Barrier

import pytest
from sqlalchemy import func, select

from hrms_kernel.db.engine import get_session_factory
from hrms_kernel.domain.clock import DeterministicClock
from hrms_kernel.exceptions import ClaimsNotEligibleError, OptimisticLockError
from hrms_kernel.models.employee import EmployeeModel, EmployeeRole
from hrms_modules.expense.models import (
    ApprovalDecision,
    ApprovalStatus,
    ClaimStatus,
    MileageOutcome,
    PaymentMethod,
)
from hrms_modules.expense.orm import (
    DailyDistanceRecordModel,
    ExpenseApprovalModel,
    ExpenseCategoryModel,
    ExpenseClaimModel,
    MonthlyPetrolExpenseModel,
    PetrolExpenseConfigModel,
    ReimbursementBatchModel,
)
from hrms_modules.expense.service import ExpenseService
from tests.conftest import TEST_ACTOR_ID, TEST_NOW, truncate_all_tables, user_id_for


pytestmark = [pytest.mark.postgres]

WORKERS = 4


@pytest.fixture
def session_factory(db_tables, db_engine):
    truncate_all_tables(db_engine)
    yield get_session_factory()
    truncate_all_tables(db_engine)


def _employee(session, code, manager=None, role=EmployeeRole.EMPLOYEE):
    employee = EmployeeModel(
        employee_code=code,
        first_name=code.title(),
        last_name="Test",
        email=f"{code.lower()}@company.test",
        user_id=user_id_for(code),
        role=role.value,
        manager_id=manager.id if manager is not None else None,
        bank_account_number="123456789012",
        bank_ifsc="HDFC0001234",
        bank_name="HDFC Bank",
        pan_number="ABCDE1234F",
        created_by_id=TEST_ACTOR_ID,
    )
    session.add(employee)
    session.flush()
    return employee


def _category(session, code, requires_approval=True, approval_levels=1):
    category = ExpenseCategoryModel(
        name=code.title(),
        code=code,
        currency="INR",
        requires_approval=requires_approval,
        approval_levels=approval_levels,
        created_by_id=TEST_ACTOR_ID,
    )
    session.add(category)
    session.flush()
    return category


def _run_together(fn, count=WORKERS):
    """Run ``fn(index)`` on ``count`` threads released by one barrier."""
    barrier = Barrier(count)

    def _worker(index):
        barrier.wait()
        try:
            return ("ok", fn(index))
        except Exception as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=count) as executor:
        return list(executor.map(_worker, range(count)))


class TestReimbursementRace:

    def test_claim_batched_at_most_once(self, session_factory):
        with session_factory() as setup:
            employee = _employee(setup, "EMP001")
            category = _category(setup, "TRAVEL")
            claims = [
                ExpenseClaimModel(
                    employee_id=employee.id,
                    category_id=category.id,
                    title="Client visit",
                    amount=Decimal("250.00"),
                    currency="INR",
                    expense_date=date(2024, 3, 10),
                    status=ClaimStatus.APPROVED.value,
                    created_by_id=TEST_ACTOR_ID,
                )
                for _ in range(3)
            ]
            setup.add_all(claims)
            setup.commit()
            claim_ids = [c.id for c in claims]

        def _batch(_index):
            with session_factory() as session:
                service = ExpenseService(
                    session, clock=DeterministicClock(TEST_NOW), auto_dispatch=False,
                )
                return service.process_reimbursement(
                    claim_ids, PaymentMethod.BANK_TRANSFER, TEST_ACTOR_ID,
                )

        results = _run_together(_batch)

        successes = [r for kind, r in results if kind == "ok"]
        failures = [r for kind, r in results if kind == "error"]
        assert len(successes) == 1
        assert all(isinstance(f, (ClaimsNotEligibleError, OptimisticLockError)) for f in failures)

        with session_factory() as check:
            assert check.execute(select(func.count(ReimbursementBatchModel.id))).scalar() == 1
            batch_ids = set(
                check.execute(
                    select(ExpenseClaimModel.reimbursement_batch_id)
                    .where(ExpenseClaimModel.id.in_(claim_ids))
                ).scalars()
            )
            assert batch_ids == {successes[0].batch_id}


class TestMileageRace:

    def test_single_monthly_record(self, session_factory):
        with session_factory() as setup:
            employee = _employee(setup, "FLD001")
            _category(setup, "PETROL", requires_approval=False)
            setup.add(PetrolExpenseConfigModel(
                rate_per_km=Decimal("8.50"),
                currency="INR",
                effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
                is_active=True,
                created_by_id=TEST_ACTOR_ID,
            ))
            setup.add(DailyDistanceRecordModel(
                employee_id=employee.id,
                record_date=date(2024, 2, 10),
                total_distance=Decimal("100"),
                created_by_id=TEST_ACTOR_ID,
            ))
            setup.commit()
            employee_id = employee.id

        def _generate(_index):
            with session_factory() as session:
                service = ExpenseService(
                    session, clock=DeterministicClock(TEST_NOW), auto_dispatch=False,
                )
                return service.generate_mileage_claim(employee_id, 2, 2024, TEST_ACTOR_ID)

        results = _run_together(_generate)

        assert all(kind == "ok" for kind, _ in results), results
        outcomes = [r.outcome for _, r in results]
        assert outcomes.count(MileageOutcome.GENERATED) == 1
        assert outcomes.count(MileageOutcome.SKIPPED_EXISTING) == WORKERS - 1

        with session_factory() as check:
            assert check.execute(select(func.count(MonthlyPetrolExpenseModel.id))).scalar() == 1
            assert check.execute(select(func.count(ExpenseClaimModel.id))).scalar() == 1


class TestApprovalRace:

    def test_parallel_approvers_resolve_claim_once(self, session_factory):
        with session_factory() as setup:
            top = _employee(setup, "MGR002")
            manager = _employee(setup, "MGR001", manager=top)
            employee = _employee(setup, "EMP001", manager=manager)
            category = _category(setup, "TRAVEL", approval_levels=2)
            setup.commit()
            employee_id, category_id = employee.id, category.id
            employee_user = employee.user_id

        with session_factory() as session:
            submitted = ExpenseService(
                session, clock=DeterministicClock(TEST_NOW), auto_dispatch=False,
            ).submit_claim(
                employee_id, category_id, "Conference", Decimal("900"),
                date(2024, 3, 14), employee_user,
            )
        claim_id = submitted.claim.id
        approvers = [user_id_for("MGR001"), user_id_for("MGR002")]

        def _approve(index):
            with session_factory() as session:
                service = ExpenseService(
                    session, clock=DeterministicClock(TEST_NOW), auto_dispatch=False,
                )
                return service.record_decision(claim_id, approvers[index], ApprovalDecision.APPROVE)

        results = _run_together(_approve, count=2)

        assert all(kind == "ok" for kind, _ in results), results
        with session_factory() as check:
            claim = check.get(ExpenseClaimModel, claim_id)
            assert claim.status == ClaimStatus.APPROVED.value
            decided = check.execute(
                select(func.count(ExpenseApprovalModel.id))
                .where(
                    ExpenseApprovalModel.claim_id == claim_id,
                    ExpenseApprovalModel.status == ApprovalStatus.APPROVED.value,
                )
            ).scalar()
            assert decided == 2
