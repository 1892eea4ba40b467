from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from app.decorators import role_required
from app.extensions import limiter
from app.services import BookingService, RefundService
from app.services.booking_service import ResolveDispute
from app.services.refund_service import RefundCommand, refund_response

api_admin_bp = Blueprint("api_admin", __name__)


def _refund_ratelimit():
    return current_app.config.get("REFUND_RATELIMIT", "30 per minute")


@api_admin_bp.post("/bookings/<booking_id>/refunds")
@limiter.limit(_refund_ratelimit)
@role_required("admin")
def create_refund(booking_id):
    payload = request.get_json(silent=True) or {}
    refund = RefundService.process_refund(
        RefundCommand(
            booking_id=booking_id,
            amount=payload.get("amount"),
            reason=payload.get("reason", ""),
            description=payload.get("description"),
            admin_id=current_user.id,
        )
    )
    return jsonify(refund_response(refund)), 201


@api_admin_bp.get("/bookings/<booking_id>/refunds")
@role_required("admin")
def list_refunds(booking_id):
    refunds = RefundService.list_for_booking(booking_id)
    booking = BookingService.get(booking_id)
    return jsonify(
        {
            "bookingId": booking.id,
            "chargedAmount": booking.charged_amount,
            "remainingRefundable": RefundService.remaining_refundable(booking),
            "refunds": [
                {
                    **refund_response(r),
                    "reason": r.reason,
                    "source": r.source,
                    "platformFeeRefunded": r.platform_fee_refunded,
                    "providerAmountRefunded": r.provider_amount_refunded,
                    "failureReason": r.failure_reason,
                    "processedBy": r.processed_by,
                    "processedAt": r.processed_at.isoformat() if r.processed_at else None,
                }
                for r in refunds
            ],
        }
    )


@api_admin_bp.post("/bookings/<booking_id>/dispute/resolve")
@role_required("admin")
def resolve_dispute(booking_id):
    payload = request.get_json(silent=True) or {}
    booking, refund = BookingService.resolve_dispute(
        ResolveDispute(
            booking_id=booking_id,
            outcome=(payload.get("outcome") or "").strip().lower(),
            admin_id=current_user.id,
            note=payload.get("note"),
        )
    )
    return jsonify(
        {
            "bookingId": booking.id,
            "status": booking.status,
            "refund": refund_response(refund) if refund is not None else None,
        }
    )
