"""Structured results returned across the engine boundary.

Callers (UI, export, bank-file generation) read these instead of
catching exceptions.  `outcome` separates the cases a caller must treat
differently:

    completed                everything ran
    completed_with_warnings  ran, some growers skipped
    not_run                  validation / business rule failure, nothing changed
    conflict                 lost a race, nothing changed, safe to retry
    fatal                    infrastructure failure, nothing changed
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from growerpay.utils.money import ZERO

Outcome = Literal["completed", "completed_with_warnings", "not_run", "conflict", "fatal"]


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[str] = []
    warnings: list[str] = []


class DeductionLine(BaseModel):
    advance_cheque_id: str
    deduction_id: str | None = None
    amount: Decimal
    remaining_outstanding: Decimal


class DeductionResult(BaseModel):
    gross_amount: Decimal
    net_amount: Decimal
    deductions: list[DeductionLine] = []

    @property
    def total_deducted(self) -> Decimal:
        return sum((d.amount for d in self.deductions), ZERO)


class PostingResult(BaseModel):
    batch_id: str
    cheques_generated: int = 0
    cheque_ids: list[str] = []
    transactions_created: int = 0
    receipts_updated: int = 0
    growers_posted: int = 0
    deductions_applied: Decimal = ZERO
    total_amount: Decimal = ZERO
    errors: list[str] = []
    warnings: list[str] = []


class VoidingResult(BaseModel):
    outcome: Outcome = "completed"
    entity_type: str
    entity_id: str
    already_voided: bool = False
    replacement_cheque_id: str | None = None
    cheques_voided: int = 0
    allocations_voided: int = 0
    ledger_entries_voided: int = 0
    deductions_reversed: int = 0
    amount_reversed: Decimal = ZERO
    errors: list[str] = []
    warnings: list[str] = []

    @property
    def success(self) -> bool:
        return self.outcome in ("completed", "completed_with_warnings")


class BatchOperationResult(BaseModel):
    outcome: Outcome
    batch_id: str | None = None
    batch_number: str | None = None
    status: str | None = None
    errors: list[str] = []
    warnings: list[str] = []
    posting: PostingResult | None = None
    voiding: VoidingResult | None = None

    @property
    def success(self) -> bool:
        return self.outcome in ("completed", "completed_with_warnings")


class DistributionResult(BaseModel):
    outcome: Outcome
    distribution_id: str | None = None
    distribution_number: str | None = None
    cheques_generated: int = 0
    cheque_ids: list[str] = []
    total_amount: Decimal = ZERO
    errors: list[str] = []
    warnings: list[str] = []

    @property
    def success(self) -> bool:
        return self.outcome in ("completed", "completed_with_warnings")
