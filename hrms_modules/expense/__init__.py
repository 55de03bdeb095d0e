"""
Expense Governance Module (``hrms_modules.expense``).

Responsibility
--------------
Policy-driven control of employee expense claims: rule evaluation,
multi-level approval routing, monthly mileage claim generation from
distance telemetry, reimbursement batching, and bank file/payment
integration.

Architecture position
---------------------
**Modules layer** -- ORM models, pure helpers and rule evaluation, the
stateful components that flush on a shared session, and the
``ExpenseService`` facade that owns the transaction boundary.

Invariants enforced
-------------------
* A claim reaches exactly one terminal approval outcome.
* At most one mileage claim per employee per month.
* A claim is reimbursed at most once and belongs to at most one batch.
* A batch with any incomplete payee never produces a bank file.

Audit relevance
---------------
Submissions, decisions, mileage generation, batching and banking
integration are recorded in the kernel hash-chained audit log.
"""

from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.models import (
    AmountLimit,
    ApprovalRequired,
    ClaimStatus,
    ExpenseApproval,
    ExpenseCategory,
    ExpenseClaim,
    FrequencyLimit,
    GpsRequired,
    PolicyEvaluation,
    PolicyRule,
    PolicyViolation,
    ReceiptRequired,
)
from hrms_modules.expense.workflows import BATCH_WORKFLOW, CLAIM_WORKFLOW

__all__ = [
    "ExpenseCategory",
    "PolicyRule",
    "AmountLimit",
    "ReceiptRequired",
    "GpsRequired",
    "FrequencyLimit",
    "ApprovalRequired",
    "ExpenseClaim",
    "ExpenseApproval",
    "ClaimStatus",
    "PolicyEvaluation",
    "PolicyViolation",
    "CLAIM_WORKFLOW",
    "BATCH_WORKFLOW",
    "ExpenseConfig",
]
