"""
Expense Governance Service (``hrms_modules.expense.service``).

Responsibility
--------------
Single public entry point for expense governance: claim submission and
policy checks, approval decisions, monthly mileage generation,
reimbursement batching, and bank file/payment integration.

Architecture position
---------------------
**Modules layer** -- thin orchestration.  ``ExpenseService`` wires the
stateful components (``ApprovalHierarchyResolver``,
``ApprovalRecordManager``, ``MileageClaimGenerator``,
``ReimbursementBatcher``, ``BankingAdapter``) onto one session and owns the
transaction boundary.

Invariants enforced
-------------------
* Each public write method commits on success and rolls back on any
  exception, re-raising it.
* Notifications are dispatched only after the commit that produced them;
  a delivery problem never unwinds business state.

Failure modes
-------------
All typed errors from ``hrms_kernel.exceptions`` propagate to the caller
after rollback.  Batch mileage generation collects per-employee failures
in its summary instead of raising.

Usage::

    service = ExpenseService(session, clock=clock, config=config)
    submitted = service.submit_claim(
        employee_id=employee_id, category_id=travel_id, title="Taxi",
        amount=Decimal("450.00"), expense_date=date(2024, 3, 4),
        actor_id=user_id, has_receipt=True,
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.exceptions import (
    CategoryNotFoundError,
    ClaimNotFoundError,
    EmployeeNotFoundError,
    InvalidRequestError,
    NoEligibleApproverError,
    PolicyViolationError,
)
from hrms_kernel.logging_config import LogContext, get_logger
from hrms_kernel.models.audit_event import AuditAction
from hrms_kernel.models.employee import EmployeeModel
from hrms_kernel.services.auditor_service import AuditorService
from hrms_modules.expense.approvals import ApprovalRecordManager
from hrms_modules.expense.banking import (
    BankingAdapter,
    BankingIntegrationResult,
    BankValidationReport,
)
from hrms_modules.expense.config import ExpenseConfig
from hrms_modules.expense.helpers import previous_month
from hrms_modules.expense.hierarchy import (
    ApprovalHierarchyResolver,
    ApproverPoolProvider,
    OrgChartReportingLines,
    RoleApproverPool,
)
from hrms_modules.expense.mileage import MileageClaimGenerator, MileageRejectionCompensator
from hrms_modules.expense.models import (
    ApprovalDecision,
    BankProvider,
    BatchStatus,
    ClaimFacts,
    ClaimStatus,
    DecisionOutcome,
    EmployeeReimbursementSummary,
    ExpenseClaim,
    MileageBatchSummary,
    MileageGenerationResult,
    MileagePreview,
    PaymentMethod,
    PaymentMode,
    PolicyEvaluation,
    ReimbursementBatch,
    ReimbursementBatchSummary,
    ReimbursementStats,
    SubmittedClaim,
)
from hrms_modules.expense.orm import ExpenseClaimModel
from hrms_modules.expense.payments import PaymentProcessorRegistry
from hrms_modules.expense.policy import PolicyRuleEvaluator, SqlClaimCounter, load_policy
from hrms_modules.expense.reimbursement import ReimbursementBatcher
from hrms_modules.expense.selectors import ReimbursementSelector
from hrms_services.notification_dispatcher import (
    DispatchReport,
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationSender,
)

logger = get_logger("modules.expense.service")


class ExpenseService:
    """
    Orchestrates expense governance operations.

    Guarantees
    ----------
    * Session is committed only when the whole operation succeeded.
    * Clock, approver pool, notification sender and payment processors are
      injectable for deterministic testing.

    Non-goals
    ---------
    * Does NOT authenticate callers; ``actor_id`` is trusted.
    * Does NOT retry failed payments; a FAILED response is returned as-is.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ExpenseConfig | None = None,
        approver_pool: ApproverPoolProvider | None = None,
        notification_sender: NotificationSender | None = None,
        payment_processors: PaymentProcessorRegistry | None = None,
        auto_dispatch: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or ExpenseConfig()
        self._auto_dispatch = auto_dispatch

        self._auditor = AuditorService(session, self._clock)
        self._policy = PolicyRuleEvaluator(self._config)
        self._resolver = ApprovalHierarchyResolver(
            OrgChartReportingLines(session),
            approver_pool or RoleApproverPool(session, self._config.fallback_approver_roles),
        )
        self._approvals = ApprovalRecordManager(
            session,
            clock=self._clock,
            auditor=self._auditor,
            compensation_hooks=(MileageRejectionCompensator(session),),
        )
        self._mileage = MileageClaimGenerator(
            session,
            self._resolver,
            self._approvals,
            clock=self._clock,
            config=self._config,
            auditor=self._auditor,
        )
        self._batcher = ReimbursementBatcher(
            session, clock=self._clock, config=self._config, auditor=self._auditor,
        )
        self._banking = BankingAdapter(
            session,
            processors=payment_processors or PaymentProcessorRegistry.simulated(
                success_rate=self._config.payment_success_rate,
                delay_range=self._config.payment_delay_seconds,
                timeout_seconds=self._config.payment_timeout_seconds,
                clock=self._clock,
            ),
            auditor=self._auditor,
        )
        self._selector = ReimbursementSelector(session)
        self._dispatcher = NotificationDispatcher(
            session,
            notification_sender or LoggingNotificationSender(),
            clock=self._clock,
            max_attempts=self._config.max_notification_attempts,
            timeout_seconds=self._config.notification_timeout_seconds,
        )

    # =========================================================================
    # Claims
    # =========================================================================

    def validate_policy(
        self,
        employee_id: UUID,
        category_id: UUID,
        amount: Decimal,
        expense_date: date,
        has_receipt: bool = False,
        has_gps_location: bool = False,
    ) -> PolicyEvaluation:
        """Evaluate a prospective claim without writing anything."""
        category, rules = load_policy(self._session, category_id)
        return self._policy.evaluate(
            category,
            rules,
            ClaimFacts(
                employee_id=employee_id,
                amount=amount,
                expense_date=expense_date,
                has_receipt=has_receipt,
                has_gps_location=has_gps_location,
            ),
            SqlClaimCounter(self._session),
        )

    def submit_claim(
        self,
        employee_id: UUID,
        category_id: UUID,
        title: str,
        amount: Decimal,
        expense_date: date,
        actor_id: UUID,
        description: str | None = None,
        has_receipt: bool = False,
        has_gps_location: bool = False,
        is_reimbursable: bool = True,
    ) -> SubmittedClaim:
        """
        Evaluate policy, create the claim and route it into approval.

        Raises:
            InvalidRequestError: Non-positive amount or blank title.
            EmployeeNotFoundError / CategoryNotFoundError: Unknown references.
            PolicyViolationError: The claim breaks an ERROR-severity rule.
            NoEligibleApproverError: Approval required but nobody resolves.
        """
        with LogContext.bind(actor_id=actor_id, employee_id=employee_id):
            try:
                if amount <= 0:
                    raise InvalidRequestError("amount", "must be positive")
                if not title or not title.strip():
                    raise InvalidRequestError("title", "cannot be blank")
                if self._session.get(EmployeeModel, employee_id) is None:
                    raise EmployeeNotFoundError(str(employee_id))

                category, rules = load_policy(self._session, category_id)
                if category is None:
                    raise CategoryNotFoundError(str(category_id))
                evaluation = self._policy.evaluate(
                    category,
                    rules,
                    ClaimFacts(
                        employee_id=employee_id,
                        amount=amount,
                        expense_date=expense_date,
                        has_receipt=has_receipt,
                        has_gps_location=has_gps_location,
                    ),
                    SqlClaimCounter(self._session),
                )
                if not evaluation.is_valid:
                    raise PolicyViolationError(
                        str(category_id), [v.message for v in evaluation.violations],
                    )

                claim = ExpenseClaimModel(
                    employee_id=employee_id,
                    category_id=category_id,
                    title=title.strip(),
                    description=description,
                    amount=amount,
                    currency=category.currency,
                    expense_date=expense_date,
                    status=ClaimStatus.PENDING.value,
                    is_reimbursable=is_reimbursable,
                    has_receipt=has_receipt,
                    has_gps_location=has_gps_location,
                    created_by_id=actor_id,
                )
                self._session.add(claim)
                self._session.flush()
                self._auditor.record_best_effort(
                    actor_id, AuditAction.CLAIM_SUBMITTED, "ExpenseClaim", claim.id,
                    after_state={
                        "employee_id": employee_id,
                        "category_id": category_id,
                        "amount": amount,
                        "expense_date": expense_date,
                        "warnings": [w.message for w in evaluation.warnings],
                    },
                )

                approvals = ()
                if evaluation.requires_approval:
                    levels = evaluation.required_approval_levels
                    approver_ids = self._resolver.resolve(employee_id, levels)
                    if not approver_ids:
                        raise NoEligibleApproverError(str(employee_id), levels)
                    approvals = self._approvals.create_approvals(claim.id, approver_ids, actor_id)
                else:
                    self._approvals.auto_approve(claim.id, actor_id)

                self._session.commit()
                logger.info(
                    "claim_submitted",
                    extra={
                        "claim_id": str(claim.id),
                        "amount": str(amount),
                        "approval_levels": len(approvals),
                        "warnings": len(evaluation.warnings),
                    },
                )
                return SubmittedClaim(
                    claim=self._claim_dto(claim.id),
                    evaluation=evaluation,
                    approvals=approvals,
                )
            except Exception:
                self._session.rollback()
                raise

    def cancel_claim(self, claim_id: UUID, actor_id: UUID) -> ExpenseClaim:
        """Withdraw a PENDING claim; only the claimant may do so."""
        with LogContext.bind(actor_id=actor_id, claim_id=claim_id):
            try:
                claim = self._session.get(ExpenseClaimModel, claim_id)
                if claim is None:
                    raise ClaimNotFoundError(str(claim_id))
                owner = self._session.get(EmployeeModel, claim.employee_id)
                if owner is None or owner.user_id != actor_id:
                    raise InvalidRequestError("actor_id", "only the claimant can cancel a claim")
                cancelled = self._approvals.cancel(claim_id, actor_id)
                self._session.commit()
                return cancelled
            except Exception:
                self._session.rollback()
                raise

    def record_decision(
        self,
        claim_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision,
        comments: str | None = None,
    ) -> DecisionOutcome:
        with LogContext.bind(actor_id=approver_id, claim_id=claim_id):
            try:
                outcome = self._approvals.record_decision(claim_id, approver_id, decision, comments)
                self._session.commit()
                return outcome
            except Exception:
                self._session.rollback()
                raise

    def get_claim(self, claim_id: UUID) -> ExpenseClaim:
        return self._claim_dto(claim_id)

    def _claim_dto(self, claim_id: UUID) -> ExpenseClaim:
        claim = self._session.get(ExpenseClaimModel, claim_id)
        if claim is None:
            raise ClaimNotFoundError(str(claim_id))
        return claim.to_dto()

    # =========================================================================
    # Mileage
    # =========================================================================

    def generate_mileage_claim(
        self,
        employee_id: UUID,
        month: int,
        year: int,
        actor_id: UUID,
        force_regenerate: bool = False,
    ) -> MileageGenerationResult:
        with LogContext.bind(actor_id=actor_id, employee_id=employee_id):
            try:
                result = self._mileage.generate(
                    employee_id, month, year, actor_id, force_regenerate=force_regenerate,
                )
                self._session.commit()
                return result
            except Exception:
                self._session.rollback()
                raise

    def generate_mileage_claims(
        self,
        employee_ids: Sequence[UUID],
        month: int,
        year: int,
        actor_id: UUID,
        force_regenerate: bool = False,
    ) -> MileageBatchSummary:
        with LogContext.bind(actor_id=actor_id):
            try:
                summary = self._mileage.generate_many(
                    employee_ids, month, year, actor_id, force_regenerate=force_regenerate,
                )
                self._session.commit()
                return summary
            except Exception:
                self._session.rollback()
                raise

    def generate_field_mileage_claims(
        self,
        actor_id: UUID,
        month: int | None = None,
        year: int | None = None,
        force_regenerate: bool = False,
    ) -> MileageBatchSummary:
        """Run monthly generation for every active field employee.

        ``month`` and ``year`` default to the month before today.
        """
        if month is None or year is None:
            default_month, default_year = previous_month(self._clock.today())
            month = month if month is not None else default_month
            year = year if year is not None else default_year
        employee_ids = self._mileage.field_employee_ids()
        logger.info(
            "field_mileage_run_started",
            extra={"month": month, "year": year, "employee_count": len(employee_ids)},
        )
        return self.generate_mileage_claims(
            employee_ids, month, year, actor_id, force_regenerate=force_regenerate,
        )

    def preview_mileage(self, employee_id: UUID, month: int, year: int) -> MileagePreview:
        return self._mileage.preview(employee_id, month, year)

    # =========================================================================
    # Reimbursement
    # =========================================================================

    def process_reimbursement(
        self,
        claim_ids: Sequence[UUID],
        payment_method: PaymentMethod,
        actor_id: UUID,
        reimbursement_date: datetime | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> ReimbursementBatchSummary:
        with LogContext.bind(actor_id=actor_id):
            try:
                summary = self._batcher.process_batch(
                    claim_ids,
                    payment_method,
                    actor_id,
                    reimbursement_date=reimbursement_date,
                    reference_number=reference_number,
                    notes=notes,
                )
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
            self._dispatch_after_commit()
            return summary

    def update_batch_status(
        self,
        batch_id: UUID,
        status: BatchStatus,
        actor_id: UUID,
        failure_reason: str | None = None,
        reference_number: str | None = None,
    ) -> ReimbursementBatch:
        with LogContext.bind(actor_id=actor_id, batch_id=batch_id):
            try:
                batch = self._batcher.update_batch_status(
                    batch_id,
                    status,
                    actor_id,
                    failure_reason=failure_reason,
                    reference_number=reference_number,
                )
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
            self._dispatch_after_commit()
            return batch

    def reimbursement_summary(self, employee_id: UUID) -> EmployeeReimbursementSummary:
        return self._selector.reimbursement_summary(employee_id)

    def reimbursement_stats(self) -> ReimbursementStats:
        return self._selector.reimbursement_stats()

    # =========================================================================
    # Banking
    # =========================================================================

    def validate_bank_details(self, employee_ids: Sequence[UUID]) -> BankValidationReport:
        return self._banking.validate_bank_details(employee_ids)

    def integrate_banking(
        self,
        batch_id: UUID,
        provider: BankProvider,
        payment_mode: PaymentMode,
        actor_id: UUID,
        generate_file: bool = True,
        process_payment: bool = False,
    ) -> BankingIntegrationResult:
        with LogContext.bind(actor_id=actor_id, batch_id=batch_id):
            try:
                result = self._banking.integrate(
                    batch_id,
                    provider,
                    payment_mode,
                    actor_id,
                    generate_file=generate_file,
                    process_payment=process_payment,
                )
                self._session.commit()
                return result
            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Notifications
    # =========================================================================

    def dispatch_notifications(self, limit: int = 100) -> DispatchReport:
        return self._dispatcher.dispatch_pending(limit)

    def _dispatch_after_commit(self) -> None:
        if not self._auto_dispatch:
            return
        try:
            self._dispatcher.dispatch_pending()
        except SQLAlchemyError:
            self._session.rollback()
            logger.warning("notification_dispatch_failed", exc_info=True)
