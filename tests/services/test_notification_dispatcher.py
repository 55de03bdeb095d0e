"""
Tests for the notification outbox dispatcher.

Covers delivery, bounded retries, subject rendering, and the service's
post-commit dispatch where a delivery failure never unwinds the batch.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from hrms_kernel.exceptions import NotificationDeliveryError
from hrms_kernel.models.notification_outbox import NotificationOutboxModel, OutboxStatus
from hrms_modules.expense.models import ClaimStatus, PaymentMethod
from hrms_modules.expense.service import ExpenseService
from hrms_services.notification_dispatcher import (
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationMessage,
    render_subject,
)
from tests.conftest import TEST_ACTOR_ID


class RecordingSender:
    def __init__(self):
        self.messages: list[NotificationMessage] = []
        self.timeouts: list[float] = []

    def send(self, message: NotificationMessage, timeout: float) -> None:
        self.messages.append(message)
        self.timeouts.append(timeout)


class FailingSender:
    def __init__(self, fail_for: set[str] | None = None):
        self.fail_for = fail_for
        self.delivered: list[str] = []

    def send(self, message: NotificationMessage, timeout: float) -> None:
        if self.fail_for is None or message.recipient in self.fail_for:
            raise NotificationDeliveryError(message.recipient, "SMTP 451 try again later")
        self.delivered.append(message.recipient)


@pytest.fixture
def add_outbox(session):
    def _add(recipient: str, template_kind: str = "REIMBURSEMENT_PROCESSING", **payload):
        row = NotificationOutboxModel(
            recipient=recipient,
            template_kind=template_kind,
            payload=payload or {"batchNumber": "REIMB-000001"},
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_by_id=TEST_ACTOR_ID,
        )
        session.add(row)
        session.commit()
        return row

    return _add


class TestRenderSubject:

    def test_known_template(self):
        assert render_subject("FINANCE_BATCH_FAILED", {"batchNumber": "REIMB-000003"}) == (
            "Reimbursement batch REIMB-000003 failed"
        )

    def test_missing_placeholder_falls_back(self):
        assert render_subject("REIMBURSEMENT_COMPLETED", {}) == "Reimbursement Completed"

    def test_unknown_template(self):
        assert render_subject("POLICY_DIGEST", {}) == "Policy Digest"


class TestDispatchPending:

    def test_sends_and_marks_rows(self, session, clock, add_outbox):
        first = add_outbox("a@company.test")
        second = add_outbox("b@company.test")
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(session, sender, clock=clock, timeout_seconds=3.0)

        report = dispatcher.dispatch_pending()

        assert (report.sent, report.retried, report.failed) == (2, 0, 0)
        assert {m.recipient for m in sender.messages} == {"a@company.test", "b@company.test"}
        assert sender.messages[0].subject == "Reimbursement processing - batch REIMB-000001"
        assert sender.timeouts == [3.0, 3.0]
        for row in (first, second):
            session.refresh(row)
            assert row.status == OutboxStatus.SENT.value
            assert row.attempts == 1
            assert row.sent_at is not None

    def test_sent_rows_not_resent(self, session, clock, add_outbox):
        add_outbox("a@company.test")
        sender = RecordingSender()
        dispatcher = NotificationDispatcher(session, sender, clock=clock)

        dispatcher.dispatch_pending()
        report = dispatcher.dispatch_pending()

        assert report.sent == 0
        assert len(sender.messages) == 1

    def test_failure_retried_then_given_up(self, session, clock, add_outbox, captured_logs):
        row = add_outbox("a@company.test")
        dispatcher = NotificationDispatcher(session, FailingSender(), clock=clock, max_attempts=2)

        first = dispatcher.dispatch_pending()
        session.refresh(row)
        assert (first.retried, first.failed) == (1, 0)
        assert row.status == OutboxStatus.PENDING.value
        assert "SMTP 451" in row.last_error

        second = dispatcher.dispatch_pending()
        session.refresh(row)
        assert (second.retried, second.failed) == (0, 1)
        assert row.status == OutboxStatus.FAILED.value
        assert row.attempts == 2

        third = dispatcher.dispatch_pending()
        assert (third.sent, third.retried, third.failed) == (0, 0, 0)
        failures = [r for r in captured_logs() if r["message"] == "notification_delivery_failed"]
        assert len(failures) == 2

    def test_one_failure_does_not_block_others(self, session, clock, add_outbox):
        add_outbox("bad@company.test")
        add_outbox("good@company.test")
        sender = FailingSender(fail_for={"bad@company.test"})
        dispatcher = NotificationDispatcher(session, sender, clock=clock)

        report = dispatcher.dispatch_pending()

        assert (report.sent, report.retried) == (1, 1)
        assert sender.delivered == ["good@company.test"]

    def test_limit(self, session, clock, add_outbox):
        for n in range(3):
            add_outbox(f"user{n}@company.test")
        dispatcher = NotificationDispatcher(session, RecordingSender(), clock=clock)

        assert dispatcher.dispatch_pending(limit=2).sent == 2
        assert dispatcher.dispatch_pending(limit=2).sent == 1

    def test_invalid_max_attempts(self, session):
        with pytest.raises(ValueError):
            NotificationDispatcher(session, LoggingNotificationSender(), max_attempts=0)

    def test_logging_sender_logs(self, captured_logs):
        LoggingNotificationSender().send(
            NotificationMessage("a@company.test", "FINANCE_BATCH_CREATED", "subject"), 1.0,
        )

        assert any(r["message"] == "notification_sent" for r in captured_logs())


class TestPostCommitDispatch:

    def _batch(self, service, make_employee, make_category, make_claim):
        claim = make_claim(make_employee("EMP001"), make_category("TRAVEL"), amount=Decimal("75"))
        return claim, service.process_reimbursement([claim.id], PaymentMethod.CASH, TEST_ACTOR_ID)

    def test_notifications_sent_after_commit(
        self, session, clock, config, make_employee, make_category, make_claim,
    ):
        sender = RecordingSender()
        service = ExpenseService(session, clock=clock, config=config, notification_sender=sender)

        self._batch(service, make_employee, make_category, make_claim)

        assert sorted(m.template_kind for m in sender.messages) == [
            "FINANCE_BATCH_CREATED", "REIMBURSEMENT_PROCESSING",
        ]
        statuses = session.execute(select(NotificationOutboxModel.status)).scalars().all()
        assert set(statuses) == {OutboxStatus.SENT.value}

    def test_delivery_failure_keeps_batch(
        self, session, clock, config, make_employee, make_category, make_claim,
    ):
        service = ExpenseService(
            session, clock=clock, config=config, notification_sender=FailingSender(),
        )

        claim, batch = self._batch(service, make_employee, make_category, make_claim)

        assert service.get_claim(claim.id).status == ClaimStatus.REIMBURSED
        assert service.get_claim(claim.id).reimbursement_batch_id == batch.batch_id
        rows = session.execute(select(NotificationOutboxModel)).scalars().all()
        assert all(r.status == OutboxStatus.PENDING.value and r.attempts == 1 for r in rows)

    def test_manual_dispatch_when_auto_disabled(
        self, service, make_employee, make_category, make_claim,
    ):
        self._batch(service, make_employee, make_category, make_claim)

        report = service.dispatch_notifications()

        assert report.sent == 2
