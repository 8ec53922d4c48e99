"""Pydantic schemas for payment calculation previews and batch inputs."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, field_validator, model_validator

from growerpay.utils.money import ZERO


class BatchFilters(BaseModel):
    """Restricts which growers and receipts a payment run covers."""
    grower_ids: list[str] = []
    exclude_grower_ids: list[str] = []
    pay_groups: list[str] = []
    exclude_pay_groups: list[str] = []
    products: list[str] = []
    processes: list[str] = []

    @model_validator(mode="after")
    def no_overlap(self) -> "BatchFilters":
        both = set(self.grower_ids) & set(self.exclude_grower_ids)
        if both:
            raise ValueError(
                f"Growers both included and excluded: {', '.join(sorted(both))}"
            )
        both = set(self.pay_groups) & set(self.exclude_pay_groups)
        if both:
            raise ValueError(
                f"Pay groups both included and excluded: {', '.join(sorted(both))}"
            )
        return self


class ReceiptDetail(BaseModel):
    receipt_id: str
    receipt_number: str
    receipt_date: date
    product: str
    process: str
    grade: str | None = None
    net_weight: Decimal
    tier: int

    price_schedule_id: str | None = None
    # Cumulative price for this tier and the incremental price actually paid
    cumulative_price: Decimal = ZERO
    price_per_lb: Decimal = ZERO
    premium_per_lb: Decimal = ZERO
    marketing_rate: Decimal = ZERO

    advance_amount: Decimal = ZERO
    premium_amount: Decimal = ZERO
    deduction_amount: Decimal = ZERO
    # Final payment only: advances already paid on this receipt
    prior_advances: Decimal = ZERO
    amount: Decimal = ZERO

    error: str | None = None

    @property
    def is_final(self) -> bool:
        return self.tier == 0


class GrowerPayment(BaseModel):
    """One grower's computed payment.  Not a ledger row until posted."""
    grower_id: str
    grower_number: str | None = None
    grower_name: str | None = None
    currency: str = "CAD"
    receipts: list[ReceiptDetail] = []

    advance_amount: Decimal = ZERO
    premium_amount: Decimal = ZERO
    deduction_amount: Decimal = ZERO
    # Sum of receipt amounts: what allocations and ledger rows will total
    total_amount: Decimal = ZERO
    # FIFO projection of outstanding advance cheques recovered at posting
    projected_advance_deductions: Decimal = ZERO
    net_amount: Decimal = ZERO

    errors: list[str] = []
    warnings: list[str] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors


class CalculationResult(BaseModel):
    tier: int
    crop_year: int
    payment_date: date
    cutoff_date: date
    growers: list[GrowerPayment] = []
    general_errors: list[str] = []

    @property
    def valid_growers(self) -> list[GrowerPayment]:
        return [g for g in self.growers if g.is_valid]

    @property
    def flagged_growers(self) -> list[GrowerPayment]:
        return [g for g in self.growers if not g.is_valid]

    @property
    def total_amount(self) -> Decimal:
        return sum((g.total_amount for g in self.valid_growers), ZERO)

    @property
    def total_receipts(self) -> int:
        return sum(len(g.receipts) for g in self.valid_growers)


class DraftBatchRequest(BaseModel):
    tier: int
    crop_year: int
    payment_date: date
    cutoff_date: date
    filters: BatchFilters = BatchFilters()
    cheque_mode: str = "per_batch"
    notes: str | None = None

    @field_validator("tier")
    @classmethod
    def tier_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("tier must be 0 (final) or an advance number ≥ 1")
        return v

    @field_validator("cheque_mode")
    @classmethod
    def valid_mode(cls, v: str) -> str:
        if v not in ("per_batch", "consolidated"):
            raise ValueError("cheque_mode must be 'per_batch' or 'consolidated'")
        return v

    @model_validator(mode="after")
    def cutoff_not_after_payment(self) -> "DraftBatchRequest":
        if self.cutoff_date > self.payment_date:
            raise ValueError("cutoff_date cannot be after payment_date")
        return self
