"""Error taxonomy for the payment engine.

Errors are raised inside services and converted into structured result
objects at the batch manager and voiding boundaries, so callers never
have to infer partial success from an exception.
"""

from decimal import Decimal


class GrowerPayError(Exception):
    """Base exception for payment engine errors."""

    def __init__(self, message: str, error_code: str = "INTERNAL_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ValidationFailedError(GrowerPayError):
    """A pre-condition was not met; nothing was written."""

    def __init__(self, messages: list[str] | str):
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__("; ".join(self.messages), error_code="VALIDATION_FAILED")


class ConcurrencyConflictError(GrowerPayError):
    """A racing operation claimed a number or receipt first.  Retryable."""

    def __init__(self, message: str):
        super().__init__(message, error_code="CONCURRENCY_CONFLICT")


class BusinessRuleError(GrowerPayError):
    """Exception for accounting rule violations."""

    def __init__(self, message: str, error_code: str = "BUSINESS_RULE_VIOLATION"):
        super().__init__(message, error_code=error_code)


class DeductionExceedsBalanceError(BusinessRuleError):
    def __init__(self, advance_id: str, amount: Decimal, outstanding: Decimal):
        self.advance_id = advance_id
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            f"Deduction {amount} exceeds outstanding balance {outstanding} "
            f"on advance {advance_id}",
            error_code="DEDUCTION_EXCEEDS_BALANCE",
        )


class TierPriceRegressionError(BusinessRuleError):
    def __init__(self, tier: int, price: Decimal, previous: Decimal):
        self.tier = tier
        self.price = price
        self.previous = previous
        super().__init__(
            f"Advance {tier} price {price} is lower than previously paid "
            f"price {previous}",
            error_code="TIER_PRICE_REGRESSION",
        )


class InvalidTransitionError(GrowerPayError):
    """Exception for state machine violations."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"{entity} cannot move from {current} to {target}",
            error_code="INVALID_TRANSITION",
        )


class ResourceNotFoundError(GrowerPayError):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            error_code="RESOURCE_NOT_FOUND",
        )


class CalculationCancelled(GrowerPayError):
    def __init__(self):
        super().__init__("Calculation cancelled", error_code="CANCELLED")
