"""
Typed Exception Hierarchy for the HRMS Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from HrmsKernelError:

    HrmsKernelError (base)
    |
    +-- ValidationError                 (bad request, surfaced to caller)
    |   +-- InvalidRequestError
    |   +-- PolicyViolationError
    |   +-- RuleConfigurationError
    |   +-- IncompleteBankDetailsError
    |
    +-- StateConflictError              (entity not in the expected state)
    |   +-- ClaimNotPendingError
    |   +-- NoPendingApprovalError
    |   +-- ApprovalsAlreadyExistError
    |   +-- ClaimsNotEligibleError
    |   +-- ClaimAlreadyReimbursedError
    |   +-- BatchNotProcessingError
    |   +-- InvalidStateTransitionError
    |
    +-- NotFoundError
    |   +-- ClaimNotFoundError
    |   +-- BatchNotFoundError
    |   +-- EmployeeNotFoundError
    |   +-- CategoryNotFoundError
    |
    +-- ResolutionError                 (administrative gap, not a bad request)
    |   +-- NoActiveRateError
    |   +-- NoEligibleApproverError
    |   +-- MileageCategoryNotConfiguredError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- DownstreamError                 (best-effort collaborators)
    |   +-- NotificationDeliveryError
    |   +-- PaymentProcessorError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                           | When Raised
----------------|--------------------------------|--------------------------------------
Validation      | INVALID_REQUEST                | Malformed input (empty ids, bad month)
                | POLICY_VIOLATION               | Claim violates category/rule policy
                | RULE_CONFIGURATION_INVALID     | rule_value shape does not match type
                | INCOMPLETE_BANK_DETAILS        | Batch payees missing bank details
----------------|--------------------------------|--------------------------------------
State           | CLAIM_NOT_PENDING              | Decision/cancel on a decided claim
                | NO_PENDING_APPROVAL            | Caller has no pending approval record
                | APPROVALS_ALREADY_EXIST        | Approval chain created twice
                | CLAIMS_NOT_ELIGIBLE            | Batch request includes ineligible claims
                | CLAIM_ALREADY_REIMBURSED       | Regenerating a paid mileage claim
                | BATCH_NOT_PROCESSING           | Banking integration on a closed batch
                | INVALID_STATE_TRANSITION       | Workflow does not allow the action
----------------|--------------------------------|--------------------------------------
Not found       | CLAIM_NOT_FOUND / BATCH_NOT_FOUND / EMPLOYEE_NOT_FOUND / CATEGORY_NOT_FOUND
----------------|--------------------------------|--------------------------------------
Resolution      | NO_ACTIVE_RATE                 | No effective petrol rate configuration
                | NO_ELIGIBLE_APPROVER           | Approval required but nobody resolves
                | MILEAGE_CATEGORY_NOT_CONFIGURED| Mileage category code missing/inactive
----------------|--------------------------------|--------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT       | Concurrent modification detected
----------------|--------------------------------|--------------------------------------
Downstream      | NOTIFICATION_DELIVERY_FAILED   | Sender raised or timed out
                | PAYMENT_PROCESSOR_FAILED       | Payment processor raised
----------------|--------------------------------|--------------------------------------
Audit           | AUDIT_CHAIN_BROKEN             | Hash chain validation failed

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        service.process_reimbursement(claim_ids, PaymentMethod.BANK_TRANSFER, actor_id)
    except ClaimsNotEligibleError as e:
        return {"error": e.code, "ineligible": [str(i) for i in e.ineligible_ids]}
    except ResolutionError as e:
        alert_administrators(e.code)

Validation and state-conflict errors go back to the immediate caller.
Resolution errors inside multi-employee runs are collected per item.
Downstream errors are logged at the boundary and never unwind committed
state.
"""

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal


class HrmsKernelError(Exception):
    """
    Base exception for all HRMS kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "HRMS_KERNEL_ERROR"


# Validation


class ValidationError(HrmsKernelError):
    """Base exception for malformed or policy-violating input."""

    code: str = "VALIDATION_FAILED"


class InvalidRequestError(ValidationError):
    """A request argument is malformed."""

    code: str = "INVALID_REQUEST"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class PolicyViolationError(ValidationError):
    """Claim violates one or more expense policy rules."""

    code: str = "POLICY_VIOLATION"

    def __init__(self, category_id: str, violations: Sequence[str]):
        self.category_id = category_id
        self.violations = tuple(violations)
        super().__init__(
            f"Expense policy violated for category {category_id}: "
            + "; ".join(self.violations)
        )


class RuleConfigurationError(ValidationError):
    """Stored rule_value payload does not match its rule_type."""

    code: str = "RULE_CONFIGURATION_INVALID"

    def __init__(self, rule_type: str, reason: str):
        self.rule_type = rule_type
        self.reason = reason
        super().__init__(f"Invalid {rule_type} rule configuration: {reason}")


class IncompleteBankDetailsError(ValidationError):
    """One or more payees in a batch have missing or malformed bank details."""

    code: str = "INCOMPLETE_BANK_DETAILS"

    def __init__(
        self,
        batch_id: str,
        missing: Mapping[str, Sequence[str]],
        valid_payment_count: int,
        total_valid_amount: Decimal,
    ):
        self.batch_id = batch_id
        self.missing = {name: tuple(issues) for name, issues in missing.items()}
        self.valid_payment_count = valid_payment_count
        self.total_valid_amount = total_valid_amount
        super().__init__(
            f"Batch {batch_id} has {len(self.missing)} employee(s) with "
            f"incomplete bank details: {', '.join(sorted(self.missing))}"
        )


# State conflicts


class StateConflictError(HrmsKernelError):
    """Base exception for acting on an entity in the wrong state."""

    code: str = "STATE_CONFLICT"


class ClaimNotPendingError(StateConflictError):
    """Claim has already left the PENDING state."""

    code: str = "CLAIM_NOT_PENDING"

    def __init__(self, claim_id: str, status: str):
        self.claim_id = claim_id
        self.status = status
        super().__init__(f"Claim {claim_id} is {status}, expected PENDING")


class NoPendingApprovalError(StateConflictError):
    """Approver has no PENDING approval record on the claim."""

    code: str = "NO_PENDING_APPROVAL"

    def __init__(self, claim_id: str, approver_id: str):
        self.claim_id = claim_id
        self.approver_id = approver_id
        super().__init__(
            f"No pending approval for approver {approver_id} on claim {claim_id}"
        )


class ApprovalsAlreadyExistError(StateConflictError):
    """Approval records were already created for the claim."""

    code: str = "APPROVALS_ALREADY_EXIST"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Approval records already exist for claim {claim_id}")


class ClaimsNotEligibleError(StateConflictError):
    """Requested claims are not all eligible for reimbursement."""

    code: str = "CLAIMS_NOT_ELIGIBLE"

    def __init__(self, requested_count: int, ineligible_ids: Iterable[str]):
        self.requested_count = requested_count
        self.ineligible_ids = tuple(sorted(str(i) for i in ineligible_ids))
        super().__init__(
            f"{len(self.ineligible_ids)} of {requested_count} claim(s) are not "
            f"eligible for reimbursement: {', '.join(self.ineligible_ids)}"
        )


class ClaimAlreadyReimbursedError(StateConflictError):
    """Claim has been paid and can no longer be replaced."""

    code: str = "CLAIM_ALREADY_REIMBURSED"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim {claim_id} is already reimbursed or batched")


class BatchNotProcessingError(StateConflictError):
    """Reimbursement batch is no longer PROCESSING."""

    code: str = "BATCH_NOT_PROCESSING"

    def __init__(self, batch_id: str, status: str):
        self.batch_id = batch_id
        self.status = status
        super().__init__(f"Batch {batch_id} is {status}, expected PROCESSING")


class InvalidStateTransitionError(StateConflictError):
    """Workflow has no transition for the action from the current state."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, from_state: str, action: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_state = from_state
        self.action = action
        super().__init__(
            f"Cannot {action} {entity_type} {entity_id} from state {from_state}"
        )


# Not found


class NotFoundError(HrmsKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class ClaimNotFoundError(NotFoundError):
    code: str = "CLAIM_NOT_FOUND"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Expense claim not found: {claim_id}")


class BatchNotFoundError(NotFoundError):
    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Reimbursement batch not found: {batch_id}")


class EmployeeNotFoundError(NotFoundError):
    code: str = "EMPLOYEE_NOT_FOUND"

    def __init__(self, employee_id: str):
        self.employee_id = employee_id
        super().__init__(f"Employee not found: {employee_id}")


class CategoryNotFoundError(NotFoundError):
    code: str = "CATEGORY_NOT_FOUND"

    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__(f"Expense category not found: {category_id}")


# Resolution (configuration gaps)


class ResolutionError(HrmsKernelError):
    """Base exception for administrative configuration gaps."""

    code: str = "RESOLUTION_FAILED"


class NoActiveRateError(ResolutionError):
    """No petrol rate configuration is effective at the given instant."""

    code: str = "NO_ACTIVE_RATE"

    def __init__(self, as_of: str):
        self.as_of = as_of
        super().__init__(
            f"No active petrol expense configuration found as of {as_of}"
        )


class NoEligibleApproverError(ResolutionError):
    """Approval is required but neither the chain nor the pool yields anyone."""

    code: str = "NO_ELIGIBLE_APPROVER"

    def __init__(self, employee_id: str, required_levels: int):
        self.employee_id = employee_id
        self.required_levels = required_levels
        super().__init__(
            f"No eligible approver for employee {employee_id} "
            f"({required_levels} level(s) required)"
        )


class MileageCategoryNotConfiguredError(ResolutionError):
    """The expense category used for mileage claims is missing or inactive."""

    code: str = "MILEAGE_CATEGORY_NOT_CONFIGURED"

    def __init__(self, category_code: str):
        self.category_code = category_code
        super().__init__(
            f"Mileage expense category {category_code} is not configured"
        )


# Concurrency


class ConcurrencyError(HrmsKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Downstream collaborators


class DownstreamError(HrmsKernelError):
    """Base exception for best-effort collaborator failures."""

    code: str = "DOWNSTREAM_FAILED"


class NotificationDeliveryError(DownstreamError):
    code: str = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Notification to {recipient} failed: {reason}")


class PaymentProcessorError(DownstreamError):
    code: str = "PAYMENT_PROCESSOR_FAILED"

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Payment processor {provider} failed: {reason}")


# Audit


class AuditError(HrmsKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
