"""
Mileage Claim Generator (``hrms_modules.expense.mileage``).

Responsibility
--------------
Turn a month of daily distance telemetry into one monthly petrol aggregate
and one linked expense claim per employee, priced from the effective-dated
rate table, and route the claim into approval.

Architecture position
---------------------
**Modules layer** -- operates on the caller's session (flush, never
commit).  Approver resolution and approval records are delegated to
``ApprovalHierarchyResolver`` and ``ApprovalRecordManager``.

Invariants enforced
-------------------
* Idempotency key (employee, month, year): the database unique constraint
  makes generate-or-skip atomic even under concurrent triggers; losing the
  race is reported as SKIPPED_EXISTING.
* A month with zero distance creates nothing.
* amount = total_distance x rate, rounded half-up to 2 places.
* Forced regeneration never replaces a claim that was already reimbursed
  or batched.
* In batch mode each employee runs in its own savepoint, so one failure
  never aborts the others.

Failure modes
-------------
* ``InvalidRequestError`` -- month/year out of range.
* ``EmployeeNotFoundError`` -- unknown employee.
* ``NoActiveRateError`` -- no rate configuration effective now.
* ``MileageCategoryNotConfiguredError`` -- mileage category missing.
* ``NoEligibleApproverError`` -- approval required but nobody resolves.
* ``ClaimAlreadyReimbursedError`` -- forced regeneration of a paid claim.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.exceptions import (
    ClaimAlreadyReimbursedError,
    EmployeeNotFoundError,
    HrmsKernelError,
    InvalidRequestError,
    MileageCategoryNotConfiguredError,
    NoActiveRateError,
    NoEligibleApproverError,
)
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.audit_event import AuditAction
from hrms_kernel.models.employee import EmployeeModel, EmployeeType
from hrms_kernel.services.auditor_service import AuditorService
from hrms_modules.expense.approvals import ApprovalRecordManager
from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.helpers import calculate_mileage_amount, month_bounds
from hrms_modules.expense.hierarchy import ApprovalHierarchyResolver
from hrms_modules.expense.models import (
    ClaimStatus,
    ExpenseClaim,
    MileageBatchSummary,
    MileageFailure,
    MileageGenerationResult,
    MileageOutcome,
    MileagePreview,
    PetrolExpenseConfig,
)
from hrms_modules.expense.orm import (
    DailyDistanceRecordModel,
    ExpenseApprovalModel,
    ExpenseCategoryModel,
    ExpenseClaimModel,
    MonthlyPetrolExpenseModel,
    PetrolExpenseConfigModel,
)

logger = get_logger("modules.expense.mileage")


class MileageClaimGenerator:
    """Generates monthly petrol claims from distance telemetry."""

    def __init__(
        self,
        session: Session,
        resolver: ApprovalHierarchyResolver,
        approvals: ApprovalRecordManager,
        clock: Clock | None = None,
        config: ExpenseConfig | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._resolver = resolver
        self._approvals = approvals
        self._clock = clock or SystemClock()
        self._config = config or ExpenseConfig()
        self._auditor = auditor

    # ------------------------------------------------------------------
    # Single employee
    # ------------------------------------------------------------------

    def generate(
        self,
        employee_id: UUID,
        month: int,
        year: int,
        actor_id: UUID,
        force_regenerate: bool = False,
    ) -> MileageGenerationResult:
        """
        Generate (or skip) the monthly petrol claim for one employee.

        Postconditions:
            - GENERATED: one monthly record and one linked claim exist for
              the key, with approval records or auto-approval applied.
            - SKIPPED_EXISTING / SKIPPED_NO_DISTANCE: nothing was written.
        """
        self._validate_period(month, year)
        if self._session.get(EmployeeModel, employee_id) is None:
            raise EmployeeNotFoundError(str(employee_id))

        existing = self._find_existing(employee_id, month, year)
        regenerated = False
        if existing is not None:
            if not force_regenerate:
                logger.info(
                    "mileage_generation_skipped_existing",
                    extra={"employee_id": str(employee_id), "month": month, "year": year},
                )
                return MileageGenerationResult(
                    employee_id=employee_id,
                    month=month,
                    year=year,
                    outcome=MileageOutcome.SKIPPED_EXISTING,
                    monthly_expense_id=existing.id,
                    claim_id=existing.expense_claim_id,
                    total_distance=existing.total_distance,
                    rate_per_km=existing.rate_per_km,
                    total_amount=existing.total_amount,
                )
            self._delete_existing(existing)
            regenerated = True

        total_distance, _record_count = self._month_distance(employee_id, month, year)
        if total_distance <= 0:
            logger.info(
                "mileage_generation_skipped_no_distance",
                extra={"employee_id": str(employee_id), "month": month, "year": year},
            )
            return MileageGenerationResult(
                employee_id=employee_id,
                month=month,
                year=year,
                outcome=MileageOutcome.SKIPPED_NO_DISTANCE,
            )

        rate = self.current_rate()
        category = self._mileage_category()
        amount = calculate_mileage_amount(total_distance, rate.rate_per_km)
        _first_day, last_day = month_bounds(year, month)

        monthly = MonthlyPetrolExpenseModel(
            employee_id=employee_id,
            month=month,
            year=year,
            total_distance=total_distance,
            rate_per_km=rate.rate_per_km,
            total_amount=amount,
            status=ClaimStatus.PENDING.value,
            is_auto_generated=True,
            created_by_id=actor_id,
        )
        try:
            with self._session.begin_nested():
                self._session.add(monthly)
                self._session.flush()
        except IntegrityError:
            # A concurrent generator inserted the same key first
            logger.info(
                "mileage_generation_lost_race",
                extra={"employee_id": str(employee_id), "month": month, "year": year},
            )
            return MileageGenerationResult(
                employee_id=employee_id,
                month=month,
                year=year,
                outcome=MileageOutcome.SKIPPED_EXISTING,
            )

        claim = ExpenseClaimModel(
            employee_id=employee_id,
            category_id=category.id,
            title=f"Petrol Expense - {month:02d}/{year}",
            description=(
                f"Auto-generated petrol expense: {total_distance.normalize()} km "
                f"at {rate.rate_per_km.normalize()} {rate.currency}/km"
            ),
            amount=amount,
            currency=rate.currency,
            expense_date=last_day,
            status=ClaimStatus.PENDING.value,
            is_reimbursable=True,
            is_petrol_expense=True,
            distance_traveled=total_distance,
            has_gps_location=True,
            monthly_petrol_expense_id=monthly.id,
            created_by_id=actor_id,
        )
        self._session.add(claim)
        self._session.flush()
        monthly.expense_claim_id = claim.id
        self._session.flush()

        approver_ids: list[UUID] = []
        if category.requires_approval:
            approver_ids = self._resolver.resolve(employee_id, category.approval_levels)
            if not approver_ids:
                raise NoEligibleApproverError(str(employee_id), category.approval_levels)
            self._approvals.create_approvals(claim.id, approver_ids, actor_id)
        else:
            self._approvals.auto_approve(claim.id, actor_id)
            monthly.status = ClaimStatus.APPROVED.value
            self._session.flush()

        if self._auditor:
            self._auditor.record_best_effort(
                actor_id,
                AuditAction.MILEAGE_CLAIM_REGENERATED if regenerated
                else AuditAction.MILEAGE_CLAIM_GENERATED,
                "ExpenseClaim",
                claim.id,
                after_state={
                    "monthly_expense_id": monthly.id,
                    "month": month,
                    "year": year,
                    "total_distance": total_distance,
                    "rate_per_km": rate.rate_per_km,
                    "amount": amount,
                },
            )
        logger.info(
            "mileage_claim_generated",
            extra={
                "employee_id": str(employee_id),
                "month": month,
                "year": year,
                "claim_id": str(claim.id),
                "total_distance": str(total_distance),
                "amount": str(amount),
                "approver_count": len(approver_ids),
                "regenerated": regenerated,
            },
        )
        return MileageGenerationResult(
            employee_id=employee_id,
            month=month,
            year=year,
            outcome=MileageOutcome.GENERATED,
            monthly_expense_id=monthly.id,
            claim_id=claim.id,
            total_distance=total_distance,
            rate_per_km=rate.rate_per_km,
            total_amount=amount,
            approver_ids=tuple(approver_ids),
        )

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    def generate_many(
        self,
        employee_ids: Sequence[UUID],
        month: int,
        year: int,
        actor_id: UUID,
        force_regenerate: bool = False,
    ) -> MileageBatchSummary:
        """
        Run ``generate`` for every employee, isolating failures per employee.

        Domain and database errors are collected as ``MileageFailure`` and
        the employee's savepoint is rolled back; the rest continue.
        """
        self._validate_period(month, year)
        unique_ids = list(dict.fromkeys(employee_ids))
        results: list[MileageGenerationResult] = []
        failures: list[MileageFailure] = []

        for employee_id in unique_ids:
            try:
                with self._session.begin_nested():
                    results.append(self.generate(
                        employee_id, month, year, actor_id,
                        force_regenerate=force_regenerate,
                    ))
            except HrmsKernelError as exc:
                failures.append(MileageFailure(employee_id, exc.code, str(exc)))
                logger.warning(
                    "mileage_generation_failed",
                    extra={"employee_id": str(employee_id), "error_code": exc.code},
                    exc_info=True,
                )
            except SQLAlchemyError as exc:
                failures.append(MileageFailure(employee_id, "DATABASE_ERROR", str(exc)))
                logger.error(
                    "mileage_generation_failed",
                    extra={"employee_id": str(employee_id), "error_code": "DATABASE_ERROR"},
                    exc_info=True,
                )

        summary = MileageBatchSummary(
            month=month,
            year=year,
            total_employees=len(unique_ids),
            results=tuple(results),
            failures=tuple(failures),
        )
        logger.info(
            "mileage_batch_completed",
            extra={
                "month": month,
                "year": year,
                "total_employees": summary.total_employees,
                "successful": summary.successful,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        return summary

    def field_employee_ids(self) -> list[UUID]:
        """Active field employees, ordered by employee code."""
        return list(self._session.execute(
            select(EmployeeModel.id)
            .where(
                EmployeeModel.employee_type == EmployeeType.FIELD_EMPLOYEE.value,
                EmployeeModel.is_active.is_(True),
            )
            .order_by(EmployeeModel.employee_code)
        ).scalars().all())

    # ------------------------------------------------------------------
    # Read-only
    # ------------------------------------------------------------------

    def preview(self, employee_id: UUID, month: int, year: int) -> MileagePreview:
        """What ``generate`` would produce, without writing anything."""
        self._validate_period(month, year)
        total_distance, record_count = self._month_distance(employee_id, month, year)
        existing = self._find_existing(employee_id, month, year)
        try:
            rate = self.current_rate()
        except NoActiveRateError:
            rate = None
        return MileagePreview(
            employee_id=employee_id,
            month=month,
            year=year,
            total_distance=total_distance,
            rate_per_km=rate.rate_per_km if rate else None,
            estimated_amount=(
                calculate_mileage_amount(total_distance, rate.rate_per_km) if rate else None
            ),
            record_count=record_count,
            already_generated=existing is not None,
            existing_claim_id=existing.expense_claim_id if existing else None,
        )

    def current_rate(self, as_of: datetime | None = None) -> PetrolExpenseConfig:
        """
        The rate configuration effective at ``as_of`` (default: now).

        Raises:
            NoActiveRateError: If no active window contains ``as_of``.
        """
        as_of = as_of or self._clock.now()
        row = self._session.execute(
            select(PetrolExpenseConfigModel)
            .where(
                PetrolExpenseConfigModel.is_active.is_(True),
                PetrolExpenseConfigModel.effective_from <= as_of,
                or_(
                    PetrolExpenseConfigModel.effective_to.is_(None),
                    PetrolExpenseConfigModel.effective_to > as_of,
                ),
            )
            .order_by(PetrolExpenseConfigModel.effective_from.desc())
            .limit(1)
        ).scalar_one_or_none()
        if row is None:
            raise NoActiveRateError(as_of.isoformat())
        return row.to_dto()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_period(self, month: int, year: int) -> None:
        if not 1 <= month <= 12:
            raise InvalidRequestError("month", f"must be in 1..12, got {month}")
        if not self._config.min_year <= year <= self._config.max_year:
            raise InvalidRequestError(
                "year",
                f"must be in {self._config.min_year}..{self._config.max_year}, got {year}",
            )

    def _find_existing(self, employee_id: UUID, month: int, year: int) -> MonthlyPetrolExpenseModel | None:
        return self._session.execute(
            select(MonthlyPetrolExpenseModel).where(
                MonthlyPetrolExpenseModel.employee_id == employee_id,
                MonthlyPetrolExpenseModel.month == month,
                MonthlyPetrolExpenseModel.year == year,
            )
        ).scalar_one_or_none()

    def _month_distance(self, employee_id: UUID, month: int, year: int) -> tuple[Decimal, int]:
        start, end = month_bounds(year, month)
        distances = self._session.execute(
            select(DailyDistanceRecordModel.total_distance).where(
                DailyDistanceRecordModel.employee_id == employee_id,
                DailyDistanceRecordModel.record_date >= start,
                DailyDistanceRecordModel.record_date <= end,
            )
        ).scalars().all()
        return sum(distances, Decimal("0")), len(distances)

    def _mileage_category(self) -> ExpenseCategoryModel:
        code = self._config.mileage_category_code
        category = self._session.execute(
            select(ExpenseCategoryModel).where(
                ExpenseCategoryModel.code == code,
                ExpenseCategoryModel.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if category is None:
            raise MileageCategoryNotConfiguredError(code)
        return category

    def _delete_existing(self, existing: MonthlyPetrolExpenseModel) -> None:
        claim_id = existing.expense_claim_id
        if claim_id is not None:
            claim = self._session.get(ExpenseClaimModel, claim_id)
            if claim is not None and (
                claim.status == ClaimStatus.REIMBURSED.value
                or claim.reimbursement_batch_id is not None
            ):
                raise ClaimAlreadyReimbursedError(str(claim_id))
            existing.expense_claim_id = None
            self._session.flush()
            self._session.execute(
                delete(ExpenseApprovalModel).where(ExpenseApprovalModel.claim_id == claim_id)
            )
            if claim is not None:
                self._session.delete(claim)
        self._session.delete(existing)
        self._session.flush()
        logger.info(
            "mileage_record_deleted_for_regeneration",
            extra={
                "monthly_expense_id": str(existing.id),
                "claim_id": str(claim_id) if claim_id else None,
            },
        )


class MileageRejectionCompensator:
    """
    ``CompensationHook`` that mirrors a rejected or cancelled petrol claim
    onto its monthly aggregate so the month can be regenerated.
    """

    def __init__(self, session: Session):
        self._session = session

    def restore(self, claim: ExpenseClaim, actor_id: UUID) -> None:
        if not claim.is_petrol_expense or claim.monthly_petrol_expense_id is None:
            return
        monthly = self._session.get(MonthlyPetrolExpenseModel, claim.monthly_petrol_expense_id)
        if monthly is None:
            return
        monthly.status = claim.status.value
        monthly.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "mileage_aggregate_released",
            extra={
                "claim_id": str(claim.id),
                "monthly_expense_id": str(monthly.id),
                "status": claim.status.value,
            },
        )
