"""Expense Governance Workflows.

State machines for expense claims and reimbursement batches.
"""

from hrms_kernel.domain.workflow import Guard, Transition, Workflow
from hrms_kernel.exceptions import InvalidStateTransitionError
from hrms_kernel.logging_config import get_logger

logger = get_logger("modules.expense.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

WITHIN_POLICY = Guard(
    name="within_policy",
    description="Claim passed policy evaluation at submission",
)

ALL_LEVELS_APPROVED = Guard(
    name="all_levels_approved",
    description="Every approval record on the claim is APPROVED",
)

ANY_LEVEL_REJECTED = Guard(
    name="any_level_rejected",
    description="At least one approval record on the claim is REJECTED",
)

NO_APPROVAL_REQUIRED = Guard(
    name="no_approval_required",
    description="Category and policy rules require no approval",
)

ELIGIBLE_FOR_PAYMENT = Guard(
    name="eligible_for_payment",
    description="Claim is reimbursable and not yet linked to a batch",
)


# -----------------------------------------------------------------------------
# Expense claim
# -----------------------------------------------------------------------------

CLAIM_WORKFLOW = Workflow(
    name="expense_claim",
    description="Expense claim from submission to reimbursement",
    initial_state="PENDING",
    states=("PENDING", "APPROVED", "REJECTED", "REIMBURSED", "CANCELLED"),
    transitions=(
        Transition("PENDING", "APPROVED", action="approve", guard=ALL_LEVELS_APPROVED),
        Transition("PENDING", "APPROVED", action="auto_approve", guard=NO_APPROVAL_REQUIRED),
        Transition("PENDING", "REJECTED", action="reject", guard=ANY_LEVEL_REJECTED),
        Transition("PENDING", "CANCELLED", action="cancel"),
        Transition("APPROVED", "REIMBURSED", action="reimburse", guard=ELIGIBLE_FOR_PAYMENT),
    ),
    terminal_states=("REJECTED", "REIMBURSED", "CANCELLED"),
)


# -----------------------------------------------------------------------------
# Reimbursement batch
# -----------------------------------------------------------------------------

BATCH_WORKFLOW = Workflow(
    name="reimbursement_batch",
    description="Payment run lifecycle",
    initial_state="PROCESSING",
    states=("PROCESSING", "COMPLETED", "FAILED"),
    transitions=(
        Transition("PROCESSING", "COMPLETED", action="complete"),
        Transition("PROCESSING", "FAILED", action="fail"),
    ),
    terminal_states=("COMPLETED", "FAILED"),
)

logger.info(
    "expense_workflows_defined",
    extra={"workflows": [CLAIM_WORKFLOW.name, BATCH_WORKFLOW.name]},
)


def require_transition(
    workflow: Workflow,
    entity_type: str,
    entity_id: object,
    from_state: str,
    action: str,
) -> Transition:
    """
    Look up the transition or fail.

    Raises:
        InvalidStateTransitionError: If ``action`` is not allowed from ``from_state``.
    """
    transition = workflow.find_transition(from_state, action)
    if transition is None:
        raise InvalidStateTransitionError(entity_type, str(entity_id), from_state, action)
    return transition
