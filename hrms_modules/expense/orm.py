"""
SQLAlchemy ORM persistence models for the Expense module.

Responsibility
--------------
Provide database-backed persistence for expense governance entities:
categories and their policy rules, claims and approval records, daily
distance telemetry, monthly mileage aggregates, the effective-dated petrol
rate table, and reimbursement batches.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by the expense engine components
for persistence.  Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* All monetary and distance fields use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Enum fields stored as String for readability and portability.
* ``MonthlyPetrolExpenseModel`` is unique per (employee, month, year).
* ``ExpenseApprovalModel`` is unique per (claim, level).
* ``DailyDistanceRecordModel`` is unique per (employee, record_date).

Audit relevance
---------------
* Claim status plus the approved/rejected/reimbursed stamps record who moved
  a claim through its lifecycle and when.
* ``reimbursement_batch_id`` links every paid claim to exactly one batch.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from hrms_kernel.db.base import TrackedBase, UUIDString


# ---------------------------------------------------------------------------
# ExpenseCategoryModel
# ---------------------------------------------------------------------------


class ExpenseCategoryModel(TrackedBase):
    """
    Policy container for claims.

    Maps to the ``ExpenseCategory`` DTO in ``hrms_modules.expense.models``.
    """

    __tablename__ = "expense_categories"

    __table_args__ = (
        UniqueConstraint("code", name="uq_expense_category_code"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    requires_receipt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    approval_levels: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from hrms_modules.expense.models import ExpenseCategory

        return ExpenseCategory(
            id=self.id,
            name=self.name,
            code=self.code,
            currency=self.currency,
            max_amount=self.max_amount,
            requires_receipt=self.requires_receipt,
            requires_approval=self.requires_approval,
            approval_levels=self.approval_levels,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "ExpenseCategoryModel":
        return cls(
            id=dto.id,
            name=dto.name,
            code=dto.code,
            currency=dto.currency,
            max_amount=dto.max_amount,
            requires_receipt=dto.requires_receipt,
            requires_approval=dto.requires_approval,
            approval_levels=dto.approval_levels,
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<ExpenseCategoryModel {self.code} max={self.max_amount}>"


# ---------------------------------------------------------------------------
# PolicyRuleModel
# ---------------------------------------------------------------------------


class PolicyRuleModel(TrackedBase):
    """
    A configurable rule attached to one category.

    ``rule_value`` is stored as JSON; ``to_dto`` parses it into the typed
    variant for ``rule_type`` and raises ``RuleConfigurationError`` when the
    stored shape does not match.
    """

    __tablename__ = "expense_policy_rules"

    __table_args__ = (
        Index("idx_policy_rule_category_active", "category_id", "is_active"),
    )

    category_id: Mapped[UUID] = mapped_column(ForeignKey("expense_categories.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    rule_value: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from hrms_modules.expense.models import PolicyRule, parse_rule_value

        return PolicyRule(
            id=self.id,
            category_id=self.category_id,
            name=self.name,
            value=parse_rule_value(self.rule_type, self.rule_value),
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "PolicyRuleModel":
        return cls(
            id=dto.id,
            category_id=dto.category_id,
            name=dto.name,
            rule_type=dto.rule_type.value,
            rule_value=dto.value.to_payload(),
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<PolicyRuleModel {self.rule_type} {self.rule_value}>"


# ---------------------------------------------------------------------------
# ExpenseClaimModel
# ---------------------------------------------------------------------------


class ExpenseClaimModel(TrackedBase):
    """
    An employee expense claim.

    Guarantees:
        - ``status`` follows PENDING -> APPROVED | REJECTED | CANCELLED,
          APPROVED -> REIMBURSED.
        - ``reimbursed_at`` is set iff ``status`` is REIMBURSED.
        - ``reimbursement_batch_id`` is set at most once.
    """

    __tablename__ = "expense_claims"

    __table_args__ = (
        Index("idx_claim_employee_category_date", "employee_id", "category_id", "expense_date"),
        Index("idx_claim_status", "status"),
        Index("idx_claim_batch", "reimbursement_batch_id"),
    )

    employee_id: Mapped[UUID] = mapped_column(ForeignKey("employees.id"), nullable=False)
    category_id: Mapped[UUID] = mapped_column(ForeignKey("expense_categories.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    is_reimbursable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_petrol_expense: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    distance_traveled: Mapped[Decimal | None] = mapped_column(nullable=True)
    has_receipt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_gps_location: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    reimbursed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reimbursed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reimbursement_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    reimbursement_batch_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("reimbursement_batches.id"), nullable=True,
    )

    # Back-link to the generating aggregate; the forward FK lives on the aggregate
    monthly_petrol_expense_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self):
        from hrms_modules.expense.models import ClaimStatus, ExpenseClaim

        return ExpenseClaim(
            id=self.id,
            employee_id=self.employee_id,
            category_id=self.category_id,
            title=self.title,
            description=self.description,
            amount=self.amount,
            currency=self.currency,
            expense_date=self.expense_date,
            status=ClaimStatus(self.status),
            is_reimbursable=self.is_reimbursable,
            is_petrol_expense=self.is_petrol_expense,
            distance_traveled=self.distance_traveled,
            has_receipt=self.has_receipt,
            has_gps_location=self.has_gps_location,
            approved_at=self.approved_at,
            approved_by=self.approved_by,
            rejected_at=self.rejected_at,
            rejected_by=self.rejected_by,
            rejection_reason=self.rejection_reason,
            reimbursed_at=self.reimbursed_at,
            reimbursed_by=self.reimbursed_by,
            reimbursement_amount=self.reimbursement_amount,
            reimbursement_batch_id=self.reimbursement_batch_id,
            monthly_petrol_expense_id=self.monthly_petrol_expense_id,
        )

    def __repr__(self) -> str:
        return f"<ExpenseClaimModel {self.title} [{self.status}] {self.amount}>"


# ---------------------------------------------------------------------------
# ExpenseApprovalModel
# ---------------------------------------------------------------------------


class ExpenseApprovalModel(TrackedBase):
    """One approver's decision slot on a claim."""

    __tablename__ = "expense_approvals"

    __table_args__ = (
        UniqueConstraint("claim_id", "level", name="uq_expense_approval_level"),
        Index("idx_expense_approval_approver", "approver_id", "status"),
    )

    claim_id: Mapped[UUID] = mapped_column(ForeignKey("expense_claims.id"), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self):
        from hrms_modules.expense.models import ApprovalStatus, ExpenseApproval

        return ExpenseApproval(
            id=self.id,
            claim_id=self.claim_id,
            level=self.level,
            approver_id=self.approver_id,
            status=ApprovalStatus(self.status),
            approved_at=self.approved_at,
            rejected_at=self.rejected_at,
            comments=self.comments,
        )

    def __repr__(self) -> str:
        return f"<ExpenseApprovalModel claim={self.claim_id} L{self.level} [{self.status}]>"


# ---------------------------------------------------------------------------
# DailyDistanceRecordModel
# ---------------------------------------------------------------------------


class DailyDistanceRecordModel(TrackedBase):
    """Distance travelled by a field employee on one day (km)."""

    __tablename__ = "daily_distance_records"

    __table_args__ = (
        UniqueConstraint("employee_id", "record_date", name="uq_daily_distance_employee_date"),
    )

    employee_id: Mapped[UUID] = mapped_column(ForeignKey("employees.id"), nullable=False)
    record_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_distance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    def __repr__(self) -> str:
        return f"<DailyDistanceRecordModel {self.employee_id} {self.record_date} {self.total_distance}km>"


# ---------------------------------------------------------------------------
# MonthlyPetrolExpenseModel
# ---------------------------------------------------------------------------


class MonthlyPetrolExpenseModel(TrackedBase):
    """
    Monthly mileage aggregate.

    Guarantees:
        - At most one row per (employee_id, month, year); the unique
          constraint is what makes concurrent generation idempotent.
    """

    __tablename__ = "monthly_petrol_expenses"

    __table_args__ = (
        UniqueConstraint("employee_id", "month", "year", name="uq_monthly_petrol_employee_period"),
    )

    employee_id: Mapped[UUID] = mapped_column(ForeignKey("employees.id"), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_distance: Mapped[Decimal] = mapped_column(nullable=False)
    rate_per_km: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    is_auto_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expense_claim_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("expense_claims.id"), nullable=True,
    )

    def to_dto(self):
        from hrms_modules.expense.models import ClaimStatus, MonthlyPetrolExpense

        return MonthlyPetrolExpense(
            id=self.id,
            employee_id=self.employee_id,
            month=self.month,
            year=self.year,
            total_distance=self.total_distance,
            rate_per_km=self.rate_per_km,
            total_amount=self.total_amount,
            status=ClaimStatus(self.status),
            is_auto_generated=self.is_auto_generated,
            expense_claim_id=self.expense_claim_id,
        )

    def __repr__(self) -> str:
        return f"<MonthlyPetrolExpenseModel {self.employee_id} {self.month:02d}/{self.year} {self.total_amount}>"


# ---------------------------------------------------------------------------
# PetrolExpenseConfigModel
# ---------------------------------------------------------------------------


class PetrolExpenseConfigModel(TrackedBase):
    """Effective-dated rate per kilometre."""

    __tablename__ = "petrol_expense_configs"

    __table_args__ = (
        Index("idx_petrol_config_effective", "is_active", "effective_from"),
    )

    rate_per_km: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from hrms_modules.expense.models import PetrolExpenseConfig

        return PetrolExpenseConfig(
            id=self.id,
            rate_per_km=self.rate_per_km,
            currency=self.currency,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "PetrolExpenseConfigModel":
        return cls(
            id=dto.id,
            rate_per_km=dto.rate_per_km,
            currency=dto.currency,
            effective_from=dto.effective_from,
            effective_to=dto.effective_to,
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<PetrolExpenseConfigModel {self.rate_per_km}/km from {self.effective_from}>"


# ---------------------------------------------------------------------------
# ReimbursementBatchModel
# ---------------------------------------------------------------------------


class ReimbursementBatchModel(TrackedBase):
    """
    A payment run grouping approved claims.

    Guarantees:
        - ``total_amount`` equals the sum of the grouped claims' amounts at
          creation.
        - Only ``status`` and its timestamps/failure reason change afterwards.
    """

    __tablename__ = "reimbursement_batches"

    __table_args__ = (
        UniqueConstraint("batch_number", name="uq_reimbursement_batch_number"),
        Index("idx_reimbursement_batch_status", "status"),
    )

    batch_number: Mapped[str] = mapped_column(String(50), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_claims: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PROCESSING")
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self):
        from hrms_modules.expense.models import BatchStatus, PaymentMethod, ReimbursementBatch

        return ReimbursementBatch(
            id=self.id,
            batch_number=self.batch_number,
            total_amount=self.total_amount,
            total_claims=self.total_claims,
            payment_method=PaymentMethod(self.payment_method),
            status=BatchStatus(self.status),
            reference_number=self.reference_number,
            notes=self.notes,
            processed_by=self.processed_by,
            processed_at=self.processed_at,
            completed_at=self.completed_at,
            failed_at=self.failed_at,
            failure_reason=self.failure_reason,
        )

    def __repr__(self) -> str:
        return f"<ReimbursementBatchModel {self.batch_number} [{self.status}] {self.total_amount}>"
