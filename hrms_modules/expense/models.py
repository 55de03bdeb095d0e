"""
Expense Governance Domain Models.

The nouns of expense governance: categories, policy rules, claims,
approvals, mileage aggregates, rate configurations and reimbursement
batches, plus the value objects returned by the engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from hrms_kernel.exceptions import RuleConfigurationError
from hrms_kernel.logging_config import get_logger

logger = get_logger("modules.expense.models")


class ClaimStatus(Enum):
    """Expense claim lifecycle states."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REIMBURSED = "REIMBURSED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(Enum):
    """Per-level approval record states."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalDecision(Enum):
    """Decision an approver records on a claim."""
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class RuleType(Enum):
    AMOUNT_LIMIT = "AMOUNT_LIMIT"
    RECEIPT_REQUIRED = "RECEIPT_REQUIRED"
    GPS_REQUIRED = "GPS_REQUIRED"
    FREQUENCY_LIMIT = "FREQUENCY_LIMIT"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class FrequencyPeriod(Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class Severity(Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class BatchStatus(Enum):
    """Reimbursement batch lifecycle states."""
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentMethod(Enum):
    """How a reimbursement batch is paid out."""
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"
    CHEQUE = "CHEQUE"


class BankProvider(Enum):
    ICICI = "ICICI"
    HDFC = "HDFC"
    SBI = "SBI"
    AXIS = "AXIS"
    KOTAK = "KOTAK"
    MANUAL = "MANUAL"


class PaymentMode(Enum):
    NEFT = "NEFT"
    RTGS = "RTGS"
    IMPS = "IMPS"
    UPI = "UPI"


class MileageOutcome(Enum):
    GENERATED = "GENERATED"
    SKIPPED_EXISTING = "SKIPPED_EXISTING"
    SKIPPED_NO_DISTANCE = "SKIPPED_NO_DISTANCE"


# =============================================================================
# Policy rule values -- one variant per RuleType
# =============================================================================


def _decimal(rule_type: RuleType, payload: dict, key: str, required: bool = False) -> Decimal | None:
    raw = payload.get(key)
    if raw is None:
        if required:
            raise RuleConfigurationError(rule_type.value, f"{key} is required")
        return None
    if isinstance(raw, bool):
        raise RuleConfigurationError(rule_type.value, f"{key} must be a number")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise RuleConfigurationError(rule_type.value, f"{key} must be a number, got {raw!r}")
    if value < 0:
        raise RuleConfigurationError(rule_type.value, f"{key} cannot be negative")
    return value


def _flag(rule_type: RuleType, payload: dict, key: str, default: bool) -> bool:
    raw = payload.get(key, default)
    if not isinstance(raw, bool):
        raise RuleConfigurationError(rule_type.value, f"{key} must be a boolean")
    return raw


@dataclass(frozen=True)
class AmountLimit:
    rule_type: ClassVar[RuleType] = RuleType.AMOUNT_LIMIT
    max_amount: Decimal | None = None
    min_amount: Decimal | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "AmountLimit":
        value = cls(
            max_amount=_decimal(cls.rule_type, payload, "maxAmount"),
            min_amount=_decimal(cls.rule_type, payload, "minAmount"),
        )
        if value.max_amount is None and value.min_amount is None:
            raise RuleConfigurationError(cls.rule_type.value, "maxAmount or minAmount is required")
        if (value.max_amount is not None and value.min_amount is not None
                and value.min_amount > value.max_amount):
            raise RuleConfigurationError(cls.rule_type.value, "minAmount exceeds maxAmount")
        return value

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {}
        if self.max_amount is not None:
            payload["maxAmount"] = str(self.max_amount)
        if self.min_amount is not None:
            payload["minAmount"] = str(self.min_amount)
        return payload


@dataclass(frozen=True)
class ReceiptRequired:
    rule_type: ClassVar[RuleType] = RuleType.RECEIPT_REQUIRED
    required: bool = True

    @classmethod
    def from_payload(cls, payload: dict) -> "ReceiptRequired":
        return cls(required=_flag(cls.rule_type, payload, "required", True))

    def to_payload(self) -> dict:
        return {"required": self.required}


@dataclass(frozen=True)
class GpsRequired:
    rule_type: ClassVar[RuleType] = RuleType.GPS_REQUIRED
    required: bool = True

    @classmethod
    def from_payload(cls, payload: dict) -> "GpsRequired":
        return cls(required=_flag(cls.rule_type, payload, "required", True))

    def to_payload(self) -> dict:
        return {"required": self.required}


@dataclass(frozen=True)
class FrequencyLimit:
    rule_type: ClassVar[RuleType] = RuleType.FREQUENCY_LIMIT
    period: FrequencyPeriod
    max_count: int

    @classmethod
    def from_payload(cls, payload: dict) -> "FrequencyLimit":
        try:
            period = FrequencyPeriod(payload.get("period"))
        except ValueError:
            raise RuleConfigurationError(
                cls.rule_type.value, f"unknown period {payload.get('period')!r}",
            )
        max_count = payload.get("maxCount")
        if isinstance(max_count, bool) or not isinstance(max_count, int) or max_count < 1:
            raise RuleConfigurationError(cls.rule_type.value, "maxCount must be a positive integer")
        return cls(period=period, max_count=max_count)

    def to_payload(self) -> dict:
        return {"period": self.period.value, "maxCount": self.max_count}


@dataclass(frozen=True)
class ApprovalRequired:
    rule_type: ClassVar[RuleType] = RuleType.APPROVAL_REQUIRED
    min_amount: Decimal = Decimal("0")
    levels: int = 1

    @classmethod
    def from_payload(cls, payload: dict) -> "ApprovalRequired":
        levels = payload.get("levels", 1)
        if isinstance(levels, bool) or not isinstance(levels, int) or not 1 <= levels <= 5:
            raise RuleConfigurationError(cls.rule_type.value, "levels must be an integer in 1..5")
        return cls(
            min_amount=_decimal(cls.rule_type, payload, "minAmount") or Decimal("0"),
            levels=levels,
        )

    def to_payload(self) -> dict:
        return {"minAmount": str(self.min_amount), "levels": self.levels}


RuleValue = AmountLimit | ReceiptRequired | GpsRequired | FrequencyLimit | ApprovalRequired

_RULE_VALUE_TYPES: dict[RuleType, type] = {
    RuleType.AMOUNT_LIMIT: AmountLimit,
    RuleType.RECEIPT_REQUIRED: ReceiptRequired,
    RuleType.GPS_REQUIRED: GpsRequired,
    RuleType.FREQUENCY_LIMIT: FrequencyLimit,
    RuleType.APPROVAL_REQUIRED: ApprovalRequired,
}


def parse_rule_value(rule_type: RuleType | str, payload: dict | None) -> RuleValue:
    """
    Build the typed rule value for ``rule_type`` from its stored JSON payload.

    Raises:
        RuleConfigurationError: Unknown rule type or payload of the wrong shape.
    """
    try:
        rule_type = RuleType(rule_type)
    except ValueError:
        raise RuleConfigurationError(str(rule_type), "unknown rule type")
    if not isinstance(payload, dict):
        raise RuleConfigurationError(rule_type.value, "rule value must be an object")
    return _RULE_VALUE_TYPES[rule_type].from_payload(payload)


# =============================================================================
# Entities
# =============================================================================


@dataclass(frozen=True)
class ExpenseCategory:
    """Policy container that claims reference."""
    id: UUID
    name: str
    code: str
    currency: str = "INR"
    max_amount: Decimal | None = None
    requires_receipt: bool = False
    requires_approval: bool = True
    approval_levels: int = 1
    is_active: bool = True


@dataclass(frozen=True)
class PolicyRule:
    id: UUID
    category_id: UUID
    name: str
    value: RuleValue
    is_active: bool = True

    @property
    def rule_type(self) -> RuleType:
        return self.value.rule_type


@dataclass(frozen=True)
class ExpenseClaim:
    """An employee's claim for reimbursement."""
    id: UUID
    employee_id: UUID
    category_id: UUID
    title: str
    amount: Decimal
    expense_date: date
    currency: str = "INR"
    description: str | None = None
    status: ClaimStatus = ClaimStatus.PENDING
    is_reimbursable: bool = True
    is_petrol_expense: bool = False
    distance_traveled: Decimal | None = None
    has_receipt: bool = False
    has_gps_location: bool = False
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    rejected_at: datetime | None = None
    rejected_by: UUID | None = None
    rejection_reason: str | None = None
    reimbursed_at: datetime | None = None
    reimbursed_by: UUID | None = None
    reimbursement_amount: Decimal | None = None
    reimbursement_batch_id: UUID | None = None
    monthly_petrol_expense_id: UUID | None = None


@dataclass(frozen=True)
class ExpenseApproval:
    id: UUID
    claim_id: UUID
    level: int
    approver_id: UUID
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    comments: str | None = None


@dataclass(frozen=True)
class MonthlyPetrolExpense:
    id: UUID
    employee_id: UUID
    month: int
    year: int
    total_distance: Decimal
    rate_per_km: Decimal
    total_amount: Decimal
    status: ClaimStatus = ClaimStatus.PENDING
    is_auto_generated: bool = True
    expense_claim_id: UUID | None = None


@dataclass(frozen=True)
class PetrolExpenseConfig:
    """One row of the effective-dated mileage rate table."""
    id: UUID
    rate_per_km: Decimal
    effective_from: datetime
    effective_to: datetime | None = None
    currency: str = "INR"
    is_active: bool = True


@dataclass(frozen=True)
class ReimbursementBatch:
    id: UUID
    batch_number: str
    total_amount: Decimal
    total_claims: int
    payment_method: PaymentMethod
    status: BatchStatus = BatchStatus.PROCESSING
    reference_number: str | None = None
    notes: str | None = None
    processed_by: UUID | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None


# =============================================================================
# Engine results
# =============================================================================


@dataclass(frozen=True)
class ClaimFacts:
    """Facts about a claim being validated."""
    employee_id: UUID
    amount: Decimal
    expense_date: date
    has_receipt: bool = False
    has_gps_location: bool = False


@dataclass(frozen=True)
class PolicyViolation:
    """A detected policy violation or advisory warning."""
    rule: str  # CATEGORY, CATEGORY_MAX_AMOUNT, or a RuleType value
    severity: Severity
    message: str
    limit: Decimal | None = None
    actual: Decimal | None = None


@dataclass(frozen=True)
class PolicyEvaluation:
    is_valid: bool
    violations: tuple[PolicyViolation, ...] = ()
    warnings: tuple[PolicyViolation, ...] = ()
    requires_approval: bool = False
    required_approval_levels: int = 0

    @property
    def messages(self) -> tuple[str, ...]:
        return tuple(v.message for v in self.violations)


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of recording one approver's decision."""
    claim_id: UUID
    approval_id: UUID
    level: int
    approval_status: ApprovalStatus
    claim_status: ClaimStatus


@dataclass(frozen=True)
class SubmittedClaim:
    claim: ExpenseClaim
    evaluation: PolicyEvaluation
    approvals: tuple[ExpenseApproval, ...] = ()


@dataclass(frozen=True)
class MileageGenerationResult:
    employee_id: UUID
    month: int
    year: int
    outcome: MileageOutcome
    monthly_expense_id: UUID | None = None
    claim_id: UUID | None = None
    total_distance: Decimal = Decimal("0")
    rate_per_km: Decimal | None = None
    total_amount: Decimal | None = None
    approver_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class MileagePreview:
    employee_id: UUID
    month: int
    year: int
    total_distance: Decimal
    rate_per_km: Decimal | None
    estimated_amount: Decimal | None
    record_count: int
    already_generated: bool
    existing_claim_id: UUID | None = None


@dataclass(frozen=True)
class MileageFailure:
    employee_id: UUID
    code: str
    message: str


@dataclass(frozen=True)
class MileageBatchSummary:
    month: int
    year: int
    total_employees: int
    results: tuple[MileageGenerationResult, ...] = ()
    failures: tuple[MileageFailure, ...] = ()

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.outcome == MileageOutcome.GENERATED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.outcome != MileageOutcome.GENERATED)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class ReimbursementBatchSummary:
    batch_id: UUID
    batch_number: str
    total_amount: Decimal
    claim_count: int
    employee_count: int
    payment_method: PaymentMethod
    status: BatchStatus
    claim_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class EmployeeReimbursementSummary:
    """Per-employee totals, as reported by the selectors."""
    employee_id: UUID
    total_claims: int
    total_amount: Decimal
    reimbursed_claims: int
    reimbursed_amount: Decimal
    pending_reimbursement_claims: int
    pending_reimbursement_amount: Decimal


@dataclass(frozen=True)
class ReimbursementStats:
    approved_awaiting_payment: int
    approved_awaiting_amount: Decimal
    reimbursed_claims: int
    reimbursed_amount: Decimal
    batches_by_status: dict[str, int] = field(default_factory=dict)
