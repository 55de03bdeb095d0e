"""
Module: hrms_kernel.models.employee
Responsibility: ORM persistence for employees -- the claimant, approver and
    payee identity shared by every HR module.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - employee_code is unique (uq_employee_code).
    - user_id (login identity, used as approver identity) is unique when set.
    - manager_id references another employee; a dangling or circular
      reference is tolerated here and handled by the hierarchy resolver.

Audit relevance:
    Bank account number and PAN are sensitive.  They are never logged and
    are only returned masked by the banking adapter.
"""

from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hrms_kernel.db.base import TrackedBase, UUIDString


class EmployeeRole(str, Enum):
    """Role string attached to the employee's login identity."""

    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    HR = "HR"
    FINANCE = "FINANCE"
    ADMIN = "ADMIN"


class EmployeeType(str, Enum):
    REGULAR = "REGULAR"
    FIELD_EMPLOYEE = "FIELD_EMPLOYEE"


class EmployeeModel(TrackedBase):
    """Employee with reporting line and payout details."""

    __tablename__ = "employees"

    __table_args__ = (
        UniqueConstraint("employee_code", name="uq_employee_code"),
        UniqueConstraint("user_id", name="uq_employee_user"),
        Index("idx_employee_manager", "manager_id"),
        Index("idx_employee_role_active", "role", "is_active"),
        Index("idx_employee_type_active", "employee_type", "is_active"),
    )

    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=EmployeeRole.EMPLOYEE.value)
    employee_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmployeeType.REGULAR.value,
    )
    manager_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("employees.id"), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Payout details
    bank_account_number: Mapped[str | None] = mapped_column(String(34), nullable=True)
    bank_ifsc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_branch: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pan_number: Mapped[str | None] = mapped_column(String(10), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<EmployeeModel {self.employee_code}: {self.full_name}>"
