"""
Policy Rule Evaluator (``hrms_modules.expense.policy``).

Responsibility
--------------
Evaluate an expense category's limits and its active policy rules against
the facts of a claim, producing violations (blocking), warnings
(advisory) and the number of approval levels the claim needs.

Architecture position
---------------------
**Modules layer** -- the evaluator itself is pure: the only external input
is the historical claim count, supplied through the ``ClaimCounter``
callable.  ``load_policy`` and ``SqlClaimCounter`` are the read-only
database adapters used by ``ExpenseService``.

Invariants enforced
-------------------
* Only active rules of the claim's own category are evaluated.
* A missing or inactive category is a violation, never an exception.
* Frequency counts exclude CANCELLED claims only; REJECTED claims still
  count against the limit.
* Evaluation never writes, so repeated validation is idempotent.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hrms_kernel.logging_config import get_logger
from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.helpers import frequency_window, quantize_money
from hrms_modules.expense.models import (
    AmountLimit,
    ApprovalRequired,
    ClaimFacts,
    ClaimStatus,
    ExpenseCategory,
    FrequencyLimit,
    FrequencyPeriod,
    GpsRequired,
    PolicyEvaluation,
    PolicyRule,
    PolicyViolation,
    ReceiptRequired,
    Severity,
)
from hrms_modules.expense.orm import (
    ExpenseCategoryModel,
    ExpenseClaimModel,
    PolicyRuleModel,
)

logger = get_logger("modules.expense.policy")

_PERIOD_NOUN = {
    FrequencyPeriod.DAILY: "day",
    FrequencyPeriod.WEEKLY: "week",
    FrequencyPeriod.MONTHLY: "month",
}


class ClaimCounter(Protocol):
    """Count an employee's non-cancelled claims in a category between two dates (inclusive)."""

    def __call__(self, employee_id: UUID, category_id: UUID, start: date, end: date) -> int: ...


def _fmt(amount: Decimal, currency: str) -> str:
    return f"{quantize_money(amount)} {currency}"


class PolicyRuleEvaluator:
    """
    Evaluates claims against category policy.

    Contract:
        ``evaluate`` returns a ``PolicyEvaluation``; callers decide whether
        to reject submission when ``is_valid`` is False.
    """

    def __init__(self, config: ExpenseConfig | None = None):
        self._config = config or ExpenseConfig()

    def evaluate(
        self,
        category: ExpenseCategory | None,
        rules: Sequence[PolicyRule],
        facts: ClaimFacts,
        count_claims: ClaimCounter,
    ) -> PolicyEvaluation:
        if category is None or not category.is_active:
            logger.info(
                "policy_category_unavailable",
                extra={"employee_id": str(facts.employee_id)},
            )
            return PolicyEvaluation(
                is_valid=False,
                violations=(PolicyViolation(
                    rule="CATEGORY",
                    severity=Severity.ERROR,
                    message="Expense category not found or inactive",
                ),),
            )

        violations: list[PolicyViolation] = []
        warnings: list[PolicyViolation] = []
        currency = category.currency

        # Category-level checks first
        if category.max_amount is not None and facts.amount > category.max_amount:
            violations.append(PolicyViolation(
                rule="CATEGORY_MAX_AMOUNT",
                severity=Severity.ERROR,
                message=(
                    f"Amount {_fmt(facts.amount, currency)} exceeds maximum limit of "
                    f"{_fmt(category.max_amount, currency)} for category {category.code}"
                ),
                limit=category.max_amount,
                actual=facts.amount,
            ))
        if category.requires_receipt and not facts.has_receipt:
            violations.append(PolicyViolation(
                rule="CATEGORY_RECEIPT",
                severity=Severity.ERROR,
                message=f"Receipt is required for category {category.code}",
            ))

        requires_approval = category.requires_approval
        levels = category.approval_levels if category.requires_approval else 0

        for rule in rules:
            if not rule.is_active or rule.category_id != category.id:
                continue
            value = rule.value

            if isinstance(value, AmountLimit):
                if value.max_amount is not None and facts.amount > value.max_amount:
                    violations.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.ERROR,
                        message=(
                            f"Amount {_fmt(facts.amount, currency)} exceeds maximum limit of "
                            f"{_fmt(value.max_amount, currency)} set by rule '{rule.name}'"
                        ),
                        limit=value.max_amount,
                        actual=facts.amount,
                    ))
                if value.min_amount is not None and facts.amount < value.min_amount:
                    violations.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.ERROR,
                        message=(
                            f"Amount {_fmt(facts.amount, currency)} is below minimum of "
                            f"{_fmt(value.min_amount, currency)} set by rule '{rule.name}'"
                        ),
                        limit=value.min_amount,
                        actual=facts.amount,
                    ))

            elif isinstance(value, ReceiptRequired):
                if value.required and not facts.has_receipt:
                    violations.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.ERROR,
                        message=f"Receipt is required by rule '{rule.name}'",
                    ))

            elif isinstance(value, GpsRequired):
                if value.required and not facts.has_gps_location:
                    violations.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.ERROR,
                        message=f"GPS location is required by rule '{rule.name}'",
                    ))

            elif isinstance(value, FrequencyLimit):
                start, end = frequency_window(value.period, facts.expense_date)
                count = count_claims(facts.employee_id, category.id, start, end)
                noun = _PERIOD_NOUN[value.period]
                if count >= value.max_count:
                    violations.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.ERROR,
                        message=(
                            f"Frequency limit exceeded: {count} of {value.max_count} "
                            f"claims already submitted this {noun}"
                        ),
                        limit=Decimal(value.max_count),
                        actual=Decimal(count),
                    ))
                elif count >= value.max_count * self._config.frequency_warning_ratio:
                    warnings.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.WARNING,
                        message=(
                            f"Approaching frequency limit: {count} of {value.max_count} "
                            f"claims already submitted this {noun}"
                        ),
                        limit=Decimal(value.max_count),
                        actual=Decimal(count),
                    ))

            elif isinstance(value, ApprovalRequired):
                if facts.amount >= value.min_amount:
                    requires_approval = True
                    levels = max(levels, value.levels)
                    warnings.append(PolicyViolation(
                        rule=value.rule_type.value,
                        severity=Severity.INFO,
                        message=(
                            f"Amount {_fmt(facts.amount, currency)} requires "
                            f"{value.levels} level(s) of approval"
                        ),
                        limit=value.min_amount,
                        actual=facts.amount,
                    ))

        result = PolicyEvaluation(
            is_valid=not violations,
            violations=tuple(violations),
            warnings=tuple(warnings),
            requires_approval=requires_approval,
            required_approval_levels=levels if requires_approval else 0,
        )
        logger.info(
            "policy_evaluated",
            extra={
                "employee_id": str(facts.employee_id),
                "category_code": category.code,
                "amount": str(facts.amount),
                "is_valid": result.is_valid,
                "violation_count": len(result.violations),
                "warning_count": len(result.warnings),
                "required_approval_levels": result.required_approval_levels,
            },
        )
        return result


# ---------------------------------------------------------------------------
# Database adapters
# ---------------------------------------------------------------------------


def load_policy(session: Session, category_id: UUID) -> tuple[ExpenseCategory | None, list[PolicyRule]]:
    """Category DTO (or None) and its active rules."""
    category = session.get(ExpenseCategoryModel, category_id)
    if category is None:
        return None, []
    rule_rows = session.execute(
        select(PolicyRuleModel)
        .where(
            PolicyRuleModel.category_id == category_id,
            PolicyRuleModel.is_active.is_(True),
        )
        .order_by(PolicyRuleModel.created_at, PolicyRuleModel.id)
    ).scalars().all()
    return category.to_dto(), [row.to_dto() for row in rule_rows]


class SqlClaimCounter:
    """``ClaimCounter`` over the claims table."""

    def __init__(self, session: Session):
        self._session = session

    def __call__(self, employee_id: UUID, category_id: UUID, start: date, end: date) -> int:
        return self._session.execute(
            select(func.count(ExpenseClaimModel.id)).where(
                ExpenseClaimModel.employee_id == employee_id,
                ExpenseClaimModel.category_id == category_id,
                ExpenseClaimModel.expense_date >= start,
                ExpenseClaimModel.expense_date <= end,
                ExpenseClaimModel.status != ClaimStatus.CANCELLED.value,
            )
        ).scalar_one()
