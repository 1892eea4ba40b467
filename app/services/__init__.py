from app.services.booking_service import BookingService
from app.services.earnings_service import EarningsService
from app.services.fee_policy_service import FeePolicyService
from app.services.payment_event_service import PaymentEventService
from app.services.refund_service import RefundService

__all__ = [
    "BookingService",
    "EarningsService",
    "FeePolicyService",
    "PaymentEventService",
    "RefundService",
]
