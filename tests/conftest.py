"""
Pytest fixtures for the expense engine test suite.

Provides:
- Database sessions with per-test rollback isolation
- A deterministic clock and default config
- Factories for employees, categories, rules, claims, rates and telemetry

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the database to test against.
  If not set, an in-memory SQLite database is used.  Tests marked
  ``postgres`` are skipped unless DATABASE_URL points at PostgreSQL.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import NAMESPACE_URL, UUID, uuid5

import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from hrms_kernel.db.base import Base
from hrms_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from hrms_kernel.domain.clock import DeterministicClock
from hrms_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from hrms_kernel.models.employee import EmployeeModel, EmployeeRole, EmployeeType
from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.models import ClaimStatus, RuleValue
from hrms_modules.expense.orm import (
    DailyDistanceRecordModel,
    ExpenseCategoryModel,
    ExpenseClaimModel,
    PetrolExpenseConfigModel,
    PolicyRuleModel,
)
from hrms_modules.expense.service import ExpenseService


# Test actor ID for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-00000000a001")

# 2024-03-15 10:00 UTC, a Friday
TEST_NOW = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)

DEFAULT_DATABASE_URL = "sqlite://"


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def user_id_for(employee_code: str) -> UUID:
    """Stable login identity for an employee code."""
    return uuid5(NAMESPACE_URL, f"hrms-user:{employee_code}")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


def pytest_collection_modifyitems(config, items):
    if make_url(get_database_url()).get_backend_name() == "postgresql":
        return
    skip_pg = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture hrms_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.submit_claim(...)
            logs = captured_logs()
            assert any(r["message"] == "claim_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("hrms_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session."""
    eng = init_engine_from_url(get_database_url(), echo=False, pool_size=10, max_overflow=10)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables()
    create_tables()
    yield
    drop_tables()


def truncate_all_tables(engine) -> None:
    """Delete every row; used by tests that perform real commits."""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection; any
    ``session.commit()`` inside the test releases a savepoint, and the outer
    transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def config() -> ExpenseConfig:
    return ExpenseConfig()


@pytest.fixture
def service(session, clock, config) -> ExpenseService:
    """Expense service that leaves outbox rows PENDING for inspection."""
    return ExpenseService(session, clock=clock, config=config, auto_dispatch=False)


@pytest.fixture
def make_employee(session):
    """
    Create an employee with valid payout details unless overridden.

    Factories commit so that a failing operation, which rolls the session
    back, leaves the fixture data in place.

    ``user_id`` defaults to ``user_id_for(code)``; pass ``user_id=None`` for
    an employee without a login.
    """
    _missing = object()

    def _make(
        code: str,
        first_name: str | None = None,
        last_name: str = "Test",
        manager: EmployeeModel | None = None,
        role: EmployeeRole = EmployeeRole.EMPLOYEE,
        employee_type: EmployeeType = EmployeeType.REGULAR,
        user_id=_missing,
        is_active: bool = True,
        **bank_overrides,
    ) -> EmployeeModel:
        bank = {
            "bank_account_number": "123456789012",
            "bank_ifsc": "HDFC0001234",
            "bank_name": "HDFC Bank",
            "bank_branch": "MG Road",
            "pan_number": "ABCDE1234F",
        }
        bank.update(bank_overrides)
        employee = EmployeeModel(
            employee_code=code,
            first_name=first_name or code.title(),
            last_name=last_name,
            email=f"{code.lower()}@company.test",
            user_id=user_id_for(code) if user_id is _missing else user_id,
            role=role.value,
            employee_type=employee_type.value,
            manager_id=manager.id if manager is not None else None,
            is_active=is_active,
            created_by_id=TEST_ACTOR_ID,
            **bank,
        )
        session.add(employee)
        session.commit()
        return employee

    return _make


@pytest.fixture
def make_category(session):
    def _make(
        code: str,
        max_amount: Decimal | None = None,
        requires_receipt: bool = False,
        requires_approval: bool = True,
        approval_levels: int = 1,
        is_active: bool = True,
        currency: str = "INR",
    ) -> ExpenseCategoryModel:
        category = ExpenseCategoryModel(
            name=code.title(),
            code=code,
            currency=currency,
            max_amount=max_amount,
            requires_receipt=requires_receipt,
            requires_approval=requires_approval,
            approval_levels=approval_levels,
            is_active=is_active,
            created_by_id=TEST_ACTOR_ID,
        )
        session.add(category)
        session.commit()
        return category

    return _make


@pytest.fixture
def make_rule(session):
    def _make(
        category: ExpenseCategoryModel,
        value: RuleValue,
        name: str | None = None,
        is_active: bool = True,
    ) -> PolicyRuleModel:
        rule = PolicyRuleModel(
            category_id=category.id,
            name=name or value.rule_type.value.replace("_", " ").title(),
            rule_type=value.rule_type.value,
            rule_value=value.to_payload(),
            is_active=is_active,
            created_by_id=TEST_ACTOR_ID,
        )
        session.add(rule)
        session.commit()
        return rule

    return _make


@pytest.fixture
def make_claim(session):
    """Insert a claim directly, bypassing policy and approval."""

    def _make(
        employee: EmployeeModel,
        category: ExpenseCategoryModel,
        amount: Decimal = Decimal("100.00"),
        expense_date: date = date(2024, 3, 10),
        status: ClaimStatus = ClaimStatus.APPROVED,
        **fields,
    ) -> ExpenseClaimModel:
        claim = ExpenseClaimModel(
            employee_id=employee.id,
            category_id=category.id,
            title=fields.pop("title", f"{category.code} claim"),
            amount=amount,
            currency=category.currency,
            expense_date=expense_date,
            status=status.value,
            created_by_id=TEST_ACTOR_ID,
            **fields,
        )
        session.add(claim)
        session.commit()
        return claim

    return _make


@pytest.fixture
def make_rate(session):
    def _make(
        rate_per_km: Decimal,
        effective_from: datetime,
        effective_to: datetime | None = None,
        is_active: bool = True,
    ) -> PetrolExpenseConfigModel:
        rate = PetrolExpenseConfigModel(
            rate_per_km=rate_per_km,
            currency="INR",
            effective_from=effective_from,
            effective_to=effective_to,
            is_active=is_active,
            created_by_id=TEST_ACTOR_ID,
        )
        session.add(rate)
        session.commit()
        return rate

    return _make


@pytest.fixture
def add_distance(session):
    def _add(employee: EmployeeModel, record_date: date, km: Decimal) -> DailyDistanceRecordModel:
        record = DailyDistanceRecordModel(
            employee_id=employee.id,
            record_date=record_date,
            total_distance=km,
            created_by_id=TEST_ACTOR_ID,
        )
        session.add(record)
        session.commit()
        return record

    return _add


@pytest.fixture
def finance_user(make_employee) -> EmployeeModel:
    """A back-office user in the default approver pool."""
    return make_employee("FIN001", first_name="Fiona", role=EmployeeRole.FINANCE)
