"""
Expense Helpers (``hrms_modules.expense.helpers``).

Responsibility
--------------
Pure calculation functions for expense governance: frequency windows,
calendar-month bounds, money rounding, mileage amounts, aggregate approval
status, and payout-detail checks (IFSC, PAN, account number, masking).

Architecture position
---------------------
**Modules layer** -- pure helper functions.  No I/O, no session, no
clock, no database access.  Called by the engine components and tests.

Invariants enforced
-------------------
* All numeric inputs and outputs use ``Decimal`` -- NEVER ``float``.
* Masking never returns more than the last four characters in clear.
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterable
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from hrms_modules.expense.models import ApprovalStatus, FrequencyPeriod

MONEY_QUANTUM = Decimal("0.01")

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{9,18}$")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """
    First and last calendar day of a month.

    Raises:
        ValueError: If ``month`` is outside 1..12.
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be in 1..12, got {month}")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def frequency_window(period: FrequencyPeriod, anchor: date) -> tuple[date, date]:
    """
    Inclusive date window for a frequency rule anchored on ``anchor``.

    DAILY is the anchor day, WEEKLY is the Sunday-to-Saturday week holding
    the anchor, MONTHLY is the anchor's calendar month.
    """
    if period == FrequencyPeriod.DAILY:
        return anchor, anchor
    if period == FrequencyPeriod.WEEKLY:
        # date.weekday(): Monday=0 .. Sunday=6
        start = anchor - timedelta(days=(anchor.weekday() + 1) % 7)
        return start, start + timedelta(days=6)
    return month_bounds(anchor.year, anchor.month)


def previous_month(today: date) -> tuple[int, int]:
    """(month, year) of the month before ``today``."""
    first = today.replace(day=1)
    last_of_previous = first - timedelta(days=1)
    return last_of_previous.month, last_of_previous.year


def calculate_mileage_amount(total_distance: Decimal, rate_per_km: Decimal) -> Decimal:
    """
    Mileage reimbursement for a month.

    Raises:
        ValueError: If distance or rate is negative.
    """
    if total_distance < 0:
        raise ValueError(f"Distance must be non-negative, got {total_distance}")
    if rate_per_km < 0:
        raise ValueError(f"Rate per km must be non-negative, got {rate_per_km}")
    return quantize_money(total_distance * rate_per_km)


def aggregate_status(statuses: Iterable[ApprovalStatus]) -> ApprovalStatus:
    """
    Claim-level outcome of its approval records.

    REJECTED if any record is rejected, APPROVED if every record is
    approved, PENDING otherwise.  An empty chain is APPROVED.
    """
    seen = list(statuses)
    if any(s == ApprovalStatus.REJECTED for s in seen):
        return ApprovalStatus.REJECTED
    if all(s == ApprovalStatus.APPROVED for s in seen):
        return ApprovalStatus.APPROVED
    return ApprovalStatus.PENDING


def mask_sensitive(value: str | None, visible: int = 4) -> str | None:
    """
    Mask all but the last ``visible`` characters.

    Values no longer than ``visible`` are masked entirely.
    """
    if value is None:
        return None
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def is_valid_ifsc(code: str) -> bool:
    return bool(IFSC_PATTERN.match(code))


def is_valid_pan(pan: str) -> bool:
    return bool(PAN_PATTERN.match(pan))


def is_valid_account_number(number: str) -> bool:
    return bool(ACCOUNT_NUMBER_PATTERN.match(number))


def bank_detail_issues(
    account_number: str | None,
    ifsc: str | None,
    bank_name: str | None,
    pan_number: str | None,
) -> list[str]:
    """Human-readable problems with an employee's payout details, in a fixed order."""
    issues: list[str] = []
    if not account_number:
        issues.append("Bank account number missing")
    elif not is_valid_account_number(account_number):
        issues.append("Invalid bank account number format")
    if not ifsc:
        issues.append("IFSC code missing")
    elif not is_valid_ifsc(ifsc):
        issues.append("Invalid IFSC code format")
    if not bank_name or not bank_name.strip():
        issues.append("Bank name missing")
    if not pan_number:
        issues.append("PAN number missing")
    elif not is_valid_pan(pan_number):
        issues.append("Invalid PAN number format")
    return issues
