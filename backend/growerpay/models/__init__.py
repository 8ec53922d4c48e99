from growerpay.models.grower import Grower
from growerpay.models.receipt import Receipt
from growerpay.models.price_schedule import PriceSchedule, PriceDetail
from growerpay.models.distribution import PaymentDistribution, PaymentDistributionItem
from growerpay.models.payment_batch import PaymentBatch
from growerpay.models.cheque import ChequeSeries, Cheque
from growerpay.models.advance import AdvanceCheque, AdvanceDeduction
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.account import Account
from growerpay.models.price_lock import PriceScheduleLock
from growerpay.models.audit import PaymentAuditLog, PaymentException
from growerpay.models.sequence import NumberSequence

__all__ = [
    "Grower",
    "Receipt",
    "PriceSchedule",
    "PriceDetail",
    "PaymentDistribution",
    "PaymentDistributionItem",
    "PaymentBatch",
    "ChequeSeries",
    "Cheque",
    "AdvanceCheque",
    "AdvanceDeduction",
    "ReceiptPaymentAllocation",
    "Account",
    "PriceScheduleLock",
    "PaymentAuditLog",
    "PaymentException",
    "NumberSequence",
]
