from app.models.booking import Booking
from app.models.earning import EARNING_STATUSES, EarningsRecord
from app.models.fee_policy import FeePolicy
from app.models.payment_event import PaymentEventLog
from app.models.provider import Provider, Service
from app.models.refund import REFUND_STATUSES, RefundRecord

__all__ = [
    "Booking",
    "EarningsRecord",
    "EARNING_STATUSES",
    "FeePolicy",
    "PaymentEventLog",
    "Provider",
    "Service",
    "RefundRecord",
    "REFUND_STATUSES",
]
