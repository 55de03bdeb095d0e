"""
Approval Hierarchy Resolver (``hrms_modules.expense.hierarchy``).

Responsibility
--------------
Build the ordered list of approver identities for a claim: the claimant's
manager chain first, then back-office users from an approver pool when the
chain runs out.

Architecture position
---------------------
**Modules layer**.  The resolver depends only on two protocols:
``ReportingLineSource`` (who is this employee's manager) and
``ApproverPoolProvider`` (who may approve when the chain is exhausted).
``OrgChartReportingLines`` and ``RoleApproverPool`` are the database-backed
implementations.

Invariants enforced
-------------------
* The result never exceeds ``required_levels`` entries and never repeats
  an identity.
* The walk makes at most ``required_levels`` hops and stops on a missing
  manager row or a revisited employee (cycle).
* The claimant never approves their own claim.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.employee import EmployeeModel

logger = get_logger("modules.expense.hierarchy")


@dataclass(frozen=True)
class ReportingNode:
    """One employee on a reporting line."""
    employee_id: UUID
    user_id: UUID | None


class ReportingLineSource(Protocol):
    def employee(self, employee_id: UUID) -> ReportingNode | None:
        """The employee's own node, or None if unknown."""
        ...

    def manager_of(self, employee_id: UUID) -> ReportingNode | None:
        """The employee's direct manager, or None when the chain ends."""
        ...


class ApproverPoolProvider(Protocol):
    def candidates(self) -> Sequence[UUID]:
        """Fallback approver identities in a stable order."""
        ...


class ApprovalHierarchyResolver:
    """Resolves approver identities for an employee."""

    def __init__(self, reporting_lines: ReportingLineSource, approver_pool: ApproverPoolProvider):
        self._reporting_lines = reporting_lines
        self._approver_pool = approver_pool

    def resolve(self, employee_id: UUID, required_levels: int) -> list[UUID]:
        """
        Ordered approver identities, length <= ``required_levels``.

        Preconditions:
            - ``required_levels`` >= 0.  Zero returns an empty list.
        Postconditions:
            - Managers nearest the claimant come first, then pool members.
            - No duplicates; the claimant's own identity is excluded.
        """
        if required_levels <= 0:
            return []

        claimant = self._reporting_lines.employee(employee_id)
        excluded: set[UUID] = set()
        if claimant is not None and claimant.user_id is not None:
            excluded.add(claimant.user_id)

        approvers: list[UUID] = []
        visited: set[UUID] = {employee_id}
        current_id = employee_id
        for _hop in range(required_levels):
            manager = self._reporting_lines.manager_of(current_id)
            if manager is None:
                break
            if manager.employee_id in visited:
                logger.warning(
                    "reporting_line_cycle_detected",
                    extra={
                        "employee_id": str(employee_id),
                        "revisited_employee_id": str(manager.employee_id),
                    },
                )
                break
            visited.add(manager.employee_id)
            if (manager.user_id is not None
                    and manager.user_id not in excluded
                    and manager.user_id not in approvers):
                approvers.append(manager.user_id)
            current_id = manager.employee_id

        chain_count = len(approvers)
        if len(approvers) < required_levels:
            for candidate in self._approver_pool.candidates():
                if len(approvers) >= required_levels:
                    break
                if candidate in excluded or candidate in approvers:
                    continue
                approvers.append(candidate)

        result = approvers[:required_levels]
        logger.info(
            "approval_hierarchy_resolved",
            extra={
                "employee_id": str(employee_id),
                "required_levels": required_levels,
                "chain_approvers": chain_count,
                "fallback_approvers": len(result) - min(chain_count, len(result)),
                "resolved": len(result),
            },
        )
        return result


# ---------------------------------------------------------------------------
# Database-backed collaborators
# ---------------------------------------------------------------------------


class OrgChartReportingLines:
    """``ReportingLineSource`` over the employees table."""

    def __init__(self, session: Session):
        self._session = session

    def employee(self, employee_id: UUID) -> ReportingNode | None:
        row = self._session.get(EmployeeModel, employee_id)
        if row is None:
            return None
        return ReportingNode(employee_id=row.id, user_id=row.user_id)

    def manager_of(self, employee_id: UUID) -> ReportingNode | None:
        row = self._session.get(EmployeeModel, employee_id)
        if row is None or row.manager_id is None:
            return None
        manager = self._session.get(EmployeeModel, row.manager_id)
        if manager is None:
            logger.warning(
                "reporting_line_manager_missing",
                extra={"employee_id": str(employee_id), "manager_id": str(row.manager_id)},
            )
            return None
        return ReportingNode(employee_id=manager.id, user_id=manager.user_id)


class RoleApproverPool:
    """``ApproverPoolProvider`` returning active employees holding one of ``roles``."""

    def __init__(self, session: Session, roles: Sequence[str]):
        self._session = session
        self._roles = tuple(roles)

    def candidates(self) -> list[UUID]:
        return list(self._session.execute(
            select(EmployeeModel.user_id)
            .where(
                EmployeeModel.role.in_(self._roles),
                EmployeeModel.is_active.is_(True),
                EmployeeModel.user_id.is_not(None),
            )
            .order_by(EmployeeModel.user_id)
        ).scalars().all())


class StaticApproverPool:
    """Fixed pool, for callers that manage fallback approvers outside the org chart."""

    def __init__(self, user_ids: Sequence[UUID]):
        self._user_ids = tuple(user_ids)

    def candidates(self) -> tuple[UUID, ...]:
        return self._user_ids
