"""Payment tiers and the cumulative price sequence of a receipt.

A crop year has an open-ended run of advances (1, 2, 3, ...) followed by
the final payment.  Prices are configured cumulatively: the advance-N
price is the total per lb a receipt should have received once advance N
is paid.  Each tier therefore pays the difference between its price and
what earlier tiers already paid, and a price lower than that running
total is a regression the operator has to fix.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from growerpay.exceptions import TierPriceRegressionError, ValidationFailedError
from growerpay.utils.money import ZERO, to_decimal

FINAL_TIER = 0


@dataclass(frozen=True, order=True)
class AdvanceTier:
    number: int

    def __post_init__(self):
        if self.number < 0:
            raise ValidationFailedError(f"Invalid payment tier {self.number}")

    @classmethod
    def advance(cls, number: int) -> "AdvanceTier":
        if number < 1:
            raise ValidationFailedError(f"Advance number must be 1 or more, got {number}")
        return cls(number)

    @classmethod
    def final(cls) -> "AdvanceTier":
        return cls(FINAL_TIER)

    @property
    def is_final(self) -> bool:
        return self.number == FINAL_TIER

    @property
    def type_code(self) -> str:
        return "FINAL" if self.is_final else f"ADV{self.number}"

    @property
    def label(self) -> str:
        return "final" if self.is_final else f"advance {self.number}"

    @property
    def carries_premium(self) -> bool:
        """Time premium and marketing deduction settle on the first advance
        and are counted again in the final receipt value."""
        return self.number in (1, FINAL_TIER)

    def precedes(self, other: "AdvanceTier") -> bool:
        """True when this tier is paid before `other` (final comes last)."""
        if self == other or self.is_final:
            return False
        return other.is_final or self.number < other.number


@dataclass
class TierPriceSequence:
    """Incremental prices already paid on one receipt, by tier."""
    paid: dict[int, Decimal] = field(default_factory=dict)

    @classmethod
    def from_allocations(cls, allocations) -> "TierPriceSequence":
        seq = cls()
        for alloc in allocations:
            seq.paid[alloc.tier] = to_decimal(alloc.price_per_lb)
        return seq

    def paid_before(self, tier: AdvanceTier) -> Decimal:
        """Cumulative price paid by every tier that precedes `tier`."""
        return sum(
            (price for number, price in self.paid.items()
             if AdvanceTier(number).precedes(tier)),
            ZERO,
        )

    def incremental_for(self, tier: AdvanceTier, cumulative_price) -> Decimal:
        """Price per lb this tier must pay to reach `cumulative_price`.

        Raises TierPriceRegressionError when the configured price is below
        what earlier tiers have already paid.
        """
        cumulative_price = to_decimal(cumulative_price)
        previous = self.paid_before(tier)
        if cumulative_price < previous:
            raise TierPriceRegressionError(tier.number, cumulative_price, previous)
        return cumulative_price - previous
