"""
Expense Governance Configuration Schema.

Defines the structure and defaults for expense engine settings.  Actual
values are loaded from a YAML file or a dict at runtime.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Self

import yaml

from hrms_kernel.logging_config import get_logger

logger = get_logger("modules.expense.config")

DEFAULT_FALLBACK_ROLES = ("HR", "FINANCE", "ADMIN")


@dataclass(frozen=True)
class ExpenseConfig:
    """
    Configuration schema for the expense engine.

        config = ExpenseConfig(
            fallback_approver_roles=("FINANCE",),
            finance_notification_address="payouts@example.com",
        )
    """

    # Approver backfill when the manager chain runs out
    fallback_approver_roles: tuple[str, ...] = field(default_factory=lambda: DEFAULT_FALLBACK_ROLES)

    # Policy
    frequency_warning_ratio: Decimal = Decimal("0.8")
    default_currency: str = "INR"

    # Mileage
    mileage_category_code: str = "PETROL"
    min_year: int = 2020
    max_year: int = 2100

    # Notifications
    finance_notification_address: str = "finance@company.local"
    notification_timeout_seconds: float = 10.0
    max_notification_attempts: int = 5

    # Simulated payments
    payment_timeout_seconds: float = 5.0
    payment_success_rate: Decimal = Decimal("0.95")
    payment_delay_seconds: tuple[float, float] = (1.0, 3.0)

    def __post_init__(self):
        if not self.fallback_approver_roles:
            raise ValueError("fallback_approver_roles cannot be empty")

        if not Decimal("0") < self.frequency_warning_ratio <= Decimal("1"):
            raise ValueError("frequency_warning_ratio must be in (0, 1]")

        if len(self.default_currency) != 3:
            raise ValueError(
                f"default_currency must be a 3-letter code, got '{self.default_currency}'"
            )

        if not self.mileage_category_code or not self.mileage_category_code.strip():
            raise ValueError("mileage_category_code cannot be empty")

        if self.min_year > self.max_year:
            raise ValueError(
                f"min_year ({self.min_year}) cannot exceed max_year ({self.max_year})"
            )

        if self.notification_timeout_seconds <= 0:
            raise ValueError("notification_timeout_seconds must be positive")
        if self.max_notification_attempts < 1:
            raise ValueError("max_notification_attempts must be at least 1")

        if self.payment_timeout_seconds <= 0:
            raise ValueError("payment_timeout_seconds must be positive")
        if not Decimal("0") <= self.payment_success_rate <= Decimal("1"):
            raise ValueError("payment_success_rate must be in [0, 1]")

        low, high = self.payment_delay_seconds
        if low < 0 or high < low:
            raise ValueError(
                f"payment_delay_seconds must be a non-negative (low, high) range, "
                f"got {self.payment_delay_seconds}"
            )

        logger.info(
            "expense_config_initialized",
            extra={
                "fallback_approver_roles": list(self.fallback_approver_roles),
                "mileage_category_code": self.mileage_category_code,
                "frequency_warning_ratio": str(self.frequency_warning_ratio),
                "payment_success_rate": str(self.payment_success_rate),
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        logger.info("expense_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g., loaded from a file)."""
        logger.info(
            "expense_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        data = dict(data)
        if "fallback_approver_roles" in data:
            data["fallback_approver_roles"] = tuple(data["fallback_approver_roles"])
        if "payment_delay_seconds" in data:
            data["payment_delay_seconds"] = tuple(float(v) for v in data["payment_delay_seconds"])
        for key in ("frequency_warning_ratio", "payment_success_rate"):
            if key in data:
                data[key] = Decimal(str(data[key]))
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """
        Load config from a YAML file.

        The file may hold the settings at top level or under an ``expense:`` key.

        Raises:
            FileNotFoundError: if the file does not exist.
            yaml.YAMLError: if the file contains invalid YAML.
            TypeError: if the file contains unknown settings.
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "expense" in data and isinstance(data["expense"], dict):
            data = data["expense"]
        logger.info("expense_config_loading_from_yaml", extra={"path": str(path)})
        return cls.from_dict(data)
