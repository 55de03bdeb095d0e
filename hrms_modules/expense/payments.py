"""
Payment processor contract and implementations.

A ``PaymentProcessor`` accepts one formatted bank file for a batch and
returns a ``PaymentResponse``.  Real bank connectors implement the same
interface; ``SimulatedPaymentProcessor`` stands in for them with a
configurable success rate and bounded latency, and
``ScriptedPaymentProcessor`` returns canned responses for tests.

Processors never raise for an ordinary bank-side failure; they return a
FAILED response.  Unexpected errors are wrapped by the caller.
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from hrms_kernel.domain.clock import Clock, SystemClock
from hrms_kernel.logging_config import get_logger
from hrms_modules.expense.models import BankProvider, PaymentMode

logger = get_logger("modules.expense.payments")


class PaymentStatus(Enum):
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentInstruction:
    """One bank file submission for a batch."""

    batch_id: UUID
    batch_number: str
    provider: BankProvider
    payment_mode: PaymentMode
    file_name: str
    file_format: str
    content: str
    total_amount: Decimal
    payment_count: int


@dataclass(frozen=True)
class PaymentResponse:
    status: PaymentStatus
    provider: BankProvider
    reference_id: str | None = None
    transaction_id: str | None = None
    estimated_settlement: datetime | None = None
    error_code: str | None = None
    message: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUBMITTED


class PaymentProcessor(ABC):
    """Submits bank files to a payment provider."""

    @abstractmethod
    def submit(self, instruction: PaymentInstruction) -> PaymentResponse:
        """Submit one instruction; return a FAILED response on bank-side failure."""


# Submitted files settle the next day
SETTLEMENT_LEAD_TIME = timedelta(days=1)


class SimulatedPaymentProcessor(PaymentProcessor):
    """
    Stand-in for a bank API.

    Latency is drawn from ``delay_range`` but never exceeds
    ``timeout_seconds``.  ``rng`` and ``sleep`` are injectable so tests run
    instantly and deterministically.
    """

    def __init__(
        self,
        provider: BankProvider,
        success_rate: Decimal = Decimal("0.95"),
        delay_range: tuple[float, float] = (1.0, 3.0),
        timeout_seconds: float = 5.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock | None = None,
    ):
        if not Decimal("0") <= success_rate <= Decimal("1"):
            raise ValueError(f"success_rate must be in [0, 1], got {success_rate}")
        low, high = delay_range
        if low < 0 or high < low:
            raise ValueError(f"invalid delay_range {delay_range}")
        self._provider = provider
        self._success_rate = float(success_rate)
        self._delay_range = delay_range
        self._timeout = timeout_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock or SystemClock()

    def submit(self, instruction: PaymentInstruction) -> PaymentResponse:
        delay = min(self._rng.uniform(*self._delay_range), self._timeout)
        self._sleep(delay)

        if self._rng.random() >= self._success_rate:
            logger.warning(
                "payment_submission_failed",
                extra={
                    "batch_id": str(instruction.batch_id),
                    "provider": self._provider.value,
                    "error_code": "BANK_ERROR_001",
                },
            )
            return PaymentResponse(
                status=PaymentStatus.FAILED,
                provider=self._provider,
                error_code="BANK_ERROR_001",
                message="Temporary banking service unavailable. Please retry later.",
            )

        now = self._clock.now()
        stamp = now.strftime("%Y%m%d%H%M%S")
        suffix = self._rng.randrange(100000, 1000000)
        response = PaymentResponse(
            status=PaymentStatus.SUBMITTED,
            provider=self._provider,
            reference_id=f"{self._provider.value}_{stamp}_{suffix}",
            transaction_id=f"TXN{stamp}{suffix}",
            estimated_settlement=now + SETTLEMENT_LEAD_TIME,
            message="Payment file accepted for processing",
            details={
                "fileName": instruction.file_name,
                "paymentCount": instruction.payment_count,
                "totalAmount": str(instruction.total_amount),
            },
        )
        logger.info(
            "payment_submitted",
            extra={
                "batch_id": str(instruction.batch_id),
                "provider": self._provider.value,
                "reference_id": response.reference_id,
                "delay_seconds": round(delay, 3),
            },
        )
        return response


class ScriptedPaymentProcessor(PaymentProcessor):
    """Returns queued responses in order; records every instruction it saw."""

    def __init__(self, provider: BankProvider, responses: Iterable[PaymentResponse] = ()):
        self._provider = provider
        self._responses = list(responses)
        self.submitted: list[PaymentInstruction] = []

    def submit(self, instruction: PaymentInstruction) -> PaymentResponse:
        self.submitted.append(instruction)
        if self._responses:
            return self._responses.pop(0)
        return PaymentResponse(
            status=PaymentStatus.SUBMITTED,
            provider=self._provider,
            reference_id=f"{self._provider.value}_{instruction.batch_number}",
            transaction_id=f"TXN-{instruction.batch_number}",
        )


class PaymentProcessorRegistry:
    """Maps each bank provider to the processor that submits its files."""

    def __init__(self, processors: Mapping[BankProvider, PaymentProcessor] | None = None):
        self._processors: dict[BankProvider, PaymentProcessor] = dict(processors or {})

    def register(self, provider: BankProvider, processor: PaymentProcessor) -> None:
        self._processors[provider] = processor

    def get(self, provider: BankProvider) -> PaymentProcessor | None:
        return self._processors.get(provider)

    @classmethod
    def simulated(
        cls,
        success_rate: Decimal = Decimal("0.95"),
        delay_range: tuple[float, float] = (1.0, 3.0),
        timeout_seconds: float = 5.0,
        clock: Clock | None = None,
    ) -> PaymentProcessorRegistry:
        """A registry with a simulated processor for every provider."""
        return cls({
            provider: SimulatedPaymentProcessor(
                provider,
                success_rate=success_rate,
                delay_range=delay_range,
                timeout_seconds=timeout_seconds,
                clock=clock,
            )
            for provider in BankProvider
        })
