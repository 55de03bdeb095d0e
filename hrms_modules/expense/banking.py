"""
Banking File/Payment Adapter (``hrms_modules.expense.banking``).

Responsibility
--------------
Validate employee payout details, turn a PROCESSING reimbursement batch
into a provider-specific bank file, and optionally submit it through a
``PaymentProcessor``.

Invariants enforced
-------------------
* Fail closed: if any payee in the batch has incomplete or malformed
  details, no file is produced and no payment is attempted.
* File content and name depend only on the payment list, the payment mode
  and the batch number.
* Account and PAN numbers are masked to their last four characters in
  every validation result and summary.
* Payment processor failures never raise out of ``integrate``; they come
  back as a FAILED ``PaymentResponse``.
"""

from __future__ import annotations

import csv
import io
import json
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from hrms_kernel.exceptions import (
    BatchNotFoundError,
    BatchNotProcessingError,
    IncompleteBankDetailsError,
    PaymentProcessorError,
)
from hrms_kernel.logging_config import get_logger
from hrms_kernel.models.audit_event import AuditAction
from hrms_kernel.models.employee import EmployeeModel
from hrms_kernel.services.auditor_service import AuditorService
from hrms_modules.expense.helpers import bank_detail_issues, mask_sensitive, quantize_money
from hrms_modules.expense.models import BankProvider, BatchStatus, PaymentMode
from hrms_modules.expense.orm import ExpenseClaimModel, ReimbursementBatchModel
from hrms_modules.expense.payments import (
    PaymentInstruction,
    PaymentProcessorRegistry,
    PaymentResponse,
    PaymentStatus,
)

logger = get_logger("modules.expense.banking")

EMPLOYEE_NOT_FOUND = "Employee record not found"
COMMON_ISSUE_LIMIT = 5


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BankDetailsValidation:
    employee_id: UUID
    employee_code: str | None
    employee_name: str | None
    email: str | None
    is_valid: bool
    issues: tuple[str, ...] = ()
    masked_account_number: str | None = None
    ifsc_code: str | None = None
    bank_name: str | None = None
    bank_branch: str | None = None
    masked_pan_number: str | None = None


@dataclass(frozen=True)
class BankValidationReport:
    results: tuple[BankDetailsValidation, ...]
    valid_count: int
    invalid_count: int
    common_issues: tuple[tuple[str, int], ...] = ()


@dataclass(frozen=True)
class EmployeePayment:
    """One payee line: all of an employee's claims in the batch, summed."""

    employee_id: UUID
    employee_code: str
    employee_name: str
    account_number: str
    ifsc_code: str
    bank_name: str
    bank_branch: str | None
    email: str | None
    pan_number: str | None
    amount: Decimal
    claim_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class BankingFile:
    file_name: str
    content: str
    format: str
    total_records: int
    total_amount: Decimal


@dataclass(frozen=True)
class MaskedPayment:
    employee_code: str
    employee_name: str
    amount: Decimal
    masked_account_number: str


@dataclass(frozen=True)
class BankingIntegrationResult:
    batch_id: UUID
    batch_number: str
    provider: BankProvider
    payment_mode: PaymentMode
    total_payments: int
    total_amount: Decimal
    banking_file: BankingFile | None = None
    payment_response: PaymentResponse | None = None
    payments: tuple[MaskedPayment, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# File formatters
# ---------------------------------------------------------------------------


def _amount(value: Decimal) -> str:
    return str(quantize_money(value))


def _total(payments: Sequence[EmployeePayment]) -> Decimal:
    return sum((p.amount for p in payments), Decimal("0"))


def format_icici(payments: Sequence[EmployeePayment], mode: PaymentMode, batch_number: str) -> tuple[str, str, str]:
    """Comma-delimited bulk upload: one H header record then one D record per payee."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["H", mode.value, batch_number, len(payments), _amount(_total(payments))])
    for index, p in enumerate(payments, start=1):
        writer.writerow([
            "D",
            index,
            p.account_number,
            p.ifsc_code,
            p.employee_name,
            _amount(p.amount),
            "Reimbursement Payment",
            p.employee_code,
        ])
    return buffer.getvalue().rstrip("\n"), "txt", "ICICI_BULK_UPLOAD"


def format_hdfc(payments: Sequence[EmployeePayment], mode: PaymentMode, batch_number: str) -> tuple[str, str, str]:
    records = [
        {
            "srNo": index,
            "beneficiaryName": p.employee_name,
            "accountNumber": p.account_number,
            "ifscCode": p.ifsc_code,
            "amount": _amount(p.amount),
            "paymentMode": mode.value,
            "narration": f"Reimbursement - {p.employee_code}",
        }
        for index, p in enumerate(payments, start=1)
    ]
    return json.dumps(records, indent=2), "json", "HDFC_JSON"


SBI_HEADER = ["Sr No", "Beneficiary Name", "Account Number", "IFSC Code", "Amount", "Payment Mode", "Narration"]


def format_sbi(payments: Sequence[EmployeePayment], mode: PaymentMode, batch_number: str) -> tuple[str, str, str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(SBI_HEADER)
    for index, p in enumerate(payments, start=1):
        writer.writerow([
            index,
            p.employee_name,
            p.account_number,
            p.ifsc_code,
            _amount(p.amount),
            mode.value,
            f"Reimbursement - {p.employee_code}",
        ])
    return buffer.getvalue().rstrip("\n"), "csv", "SBI_CSV"


def format_generic(payments: Sequence[EmployeePayment], mode: PaymentMode, batch_number: str) -> tuple[str, str, str]:
    records = [
        {
            "serialNumber": index,
            "beneficiaryName": p.employee_name,
            "accountNumber": p.account_number,
            "ifscCode": p.ifsc_code,
            "bankName": p.bank_name,
            "amount": _amount(p.amount),
            "paymentMode": mode.value,
            "narration": f"Expense Reimbursement - {p.employee_code}",
            "email": p.email,
            "panNumber": p.pan_number,
        }
        for index, p in enumerate(payments, start=1)
    ]
    return json.dumps(records, indent=2), "json", "GENERIC_JSON"


Formatter = Callable[[Sequence[EmployeePayment], PaymentMode, str], tuple[str, str, str]]

FORMATTERS: dict[BankProvider, Formatter] = {
    BankProvider.ICICI: format_icici,
    BankProvider.HDFC: format_hdfc,
    BankProvider.SBI: format_sbi,
    BankProvider.AXIS: format_generic,
    BankProvider.KOTAK: format_generic,
    BankProvider.MANUAL: format_generic,
}


def build_banking_file(
    payments: Sequence[EmployeePayment],
    provider: BankProvider,
    mode: PaymentMode,
    batch_number: str,
) -> BankingFile:
    content, extension, file_format = FORMATTERS[provider](payments, mode, batch_number)
    return BankingFile(
        file_name=f"{provider.value}_{mode.value}_{batch_number}.{extension}",
        content=content,
        format=file_format,
        total_records=len(payments),
        total_amount=_total(payments),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def _failed_response(provider: BankProvider, error: PaymentProcessorError) -> PaymentResponse:
    return PaymentResponse(
        status=PaymentStatus.FAILED,
        provider=provider,
        error_code=error.code,
        message=str(error),
    )


def _validate_employee(employee: EmployeeModel) -> BankDetailsValidation:
    issues = bank_detail_issues(
        employee.bank_account_number,
        employee.bank_ifsc,
        employee.bank_name,
        employee.pan_number,
    )
    return BankDetailsValidation(
        employee_id=employee.id,
        employee_code=employee.employee_code,
        employee_name=employee.full_name,
        email=employee.email,
        is_valid=not issues,
        issues=tuple(issues),
        masked_account_number=mask_sensitive(employee.bank_account_number),
        ifsc_code=employee.bank_ifsc,
        bank_name=employee.bank_name,
        bank_branch=employee.bank_branch,
        masked_pan_number=mask_sensitive(employee.pan_number),
    )


class BankingAdapter:
    """Bank-detail validation, bank file generation and payment submission."""

    def __init__(
        self,
        session: Session,
        processors: PaymentProcessorRegistry | None = None,
        auditor: AuditorService | None = None,
    ):
        self._session = session
        self._processors = processors or PaymentProcessorRegistry()
        self._auditor = auditor

    def validate_bank_details(self, employee_ids: Sequence[UUID]) -> BankValidationReport:
        """Per-employee payout readiness, with the most frequent issues first."""
        unique_ids = list(dict.fromkeys(employee_ids))
        employees = {
            e.id: e for e in self._session.execute(
                select(EmployeeModel).where(EmployeeModel.id.in_(unique_ids))
            ).scalars().all()
        }

        results: list[BankDetailsValidation] = []
        for employee_id in unique_ids:
            employee = employees.get(employee_id)
            if employee is None:
                results.append(BankDetailsValidation(
                    employee_id=employee_id,
                    employee_code=None,
                    employee_name=None,
                    email=None,
                    is_valid=False,
                    issues=(EMPLOYEE_NOT_FOUND,),
                ))
            else:
                results.append(_validate_employee(employee))

        issue_counts = Counter(issue for r in results for issue in r.issues)
        report = BankValidationReport(
            results=tuple(results),
            valid_count=sum(1 for r in results if r.is_valid),
            invalid_count=sum(1 for r in results if not r.is_valid),
            common_issues=tuple(issue_counts.most_common(COMMON_ISSUE_LIMIT)),
        )
        logger.info(
            "bank_details_validated",
            extra={
                "employee_count": len(results),
                "valid_count": report.valid_count,
                "invalid_count": report.invalid_count,
            },
        )
        return report

    def integrate(
        self,
        batch_id: UUID,
        provider: BankProvider,
        payment_mode: PaymentMode,
        actor_id: UUID,
        generate_file: bool = True,
        process_payment: bool = False,
    ) -> BankingIntegrationResult:
        """
        Produce the bank file for a batch and optionally submit it.

        Raises:
            BatchNotFoundError: Unknown batch.
            BatchNotProcessingError: Batch is not PROCESSING.
            IncompleteBankDetailsError: Any payee's details are invalid.
        """
        batch = self._session.get(ReimbursementBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        if batch.status != BatchStatus.PROCESSING.value:
            raise BatchNotProcessingError(str(batch_id), batch.status)

        payments, missing = self._group_payments(batch_id)
        if missing:
            valid_total = _total(payments)
            logger.warning(
                "banking_integration_incomplete_details",
                extra={
                    "batch_id": str(batch_id),
                    "invalid_employees": len(missing),
                    "valid_payments": len(payments),
                },
            )
            raise IncompleteBankDetailsError(str(batch_id), missing, len(payments), valid_total)

        banking_file = None
        if generate_file:
            banking_file = build_banking_file(payments, provider, payment_mode, batch.batch_number)

        payment_response = None
        if process_payment:
            payment_response = self._submit(batch, payments, provider, payment_mode, banking_file)

        total = _total(payments)
        if self._auditor:
            self._auditor.record_best_effort(
                actor_id, AuditAction.BANKING_INTEGRATION_PROCESSED, "ReimbursementBatch", batch_id,
                after_state={
                    "batch_number": batch.batch_number,
                    "provider": provider.value,
                    "payment_mode": payment_mode.value,
                    "total_payments": len(payments),
                    "total_amount": total,
                    "file_generated": banking_file is not None,
                    "payment_status": payment_response.status.value if payment_response else None,
                },
            )
        logger.info(
            "banking_integration_processed",
            extra={
                "batch_id": str(batch_id),
                "provider": provider.value,
                "payment_mode": payment_mode.value,
                "total_payments": len(payments),
                "total_amount": str(total),
            },
        )
        return BankingIntegrationResult(
            batch_id=batch_id,
            batch_number=batch.batch_number,
            provider=provider,
            payment_mode=payment_mode,
            total_payments=len(payments),
            total_amount=total,
            banking_file=banking_file,
            payment_response=payment_response,
            payments=tuple(
                MaskedPayment(
                    employee_code=p.employee_code,
                    employee_name=p.employee_name,
                    amount=p.amount,
                    masked_account_number=mask_sensitive(p.account_number),
                )
                for p in payments
            ),
        )

    def _group_payments(self, batch_id: UUID) -> tuple[list[EmployeePayment], dict[str, list[str]]]:
        rows = self._session.execute(
            select(ExpenseClaimModel, EmployeeModel)
            .join(EmployeeModel, EmployeeModel.id == ExpenseClaimModel.employee_id)
            .where(ExpenseClaimModel.reimbursement_batch_id == batch_id)
            .order_by(EmployeeModel.employee_code, ExpenseClaimModel.id)
        ).all()

        grouped: dict[UUID, tuple[EmployeeModel, list[ExpenseClaimModel]]] = {}
        for claim, employee in rows:
            grouped.setdefault(employee.id, (employee, []))[1].append(claim)

        payments: list[EmployeePayment] = []
        missing: dict[str, list[str]] = {}
        for employee, claims in grouped.values():
            validation = _validate_employee(employee)
            if not validation.is_valid:
                missing[f"{employee.full_name} ({employee.employee_code})"] = list(validation.issues)
                continue
            payments.append(EmployeePayment(
                employee_id=employee.id,
                employee_code=employee.employee_code,
                employee_name=employee.full_name,
                account_number=employee.bank_account_number,
                ifsc_code=employee.bank_ifsc,
                bank_name=employee.bank_name,
                bank_branch=employee.bank_branch,
                email=employee.email,
                pan_number=employee.pan_number,
                amount=sum((c.amount for c in claims), Decimal("0")),
                claim_ids=tuple(c.id for c in claims),
            ))
        return payments, missing

    def _submit(
        self,
        batch: ReimbursementBatchModel,
        payments: Sequence[EmployeePayment],
        provider: BankProvider,
        payment_mode: PaymentMode,
        banking_file: BankingFile | None,
    ) -> PaymentResponse:
        processor = self._processors.get(provider)
        if processor is None:
            logger.error("payment_processor_missing", extra={"provider": provider.value})
            return _failed_response(provider, PaymentProcessorError(provider.value, "no processor registered"))

        bank_file = banking_file or build_banking_file(payments, provider, payment_mode, batch.batch_number)
        instruction = PaymentInstruction(
            batch_id=batch.id,
            batch_number=batch.batch_number,
            provider=provider,
            payment_mode=payment_mode,
            file_name=bank_file.file_name,
            file_format=bank_file.format,
            content=bank_file.content,
            total_amount=bank_file.total_amount,
            payment_count=bank_file.total_records,
        )
        try:
            return processor.submit(instruction)
        except Exception as exc:
            # Processor failures are reported, never propagated
            logger.error(
                "payment_processor_error",
                extra={"batch_id": str(batch.id), "provider": provider.value},
                exc_info=True,
            )
            return _failed_response(provider, PaymentProcessorError(provider.value, str(exc)))
