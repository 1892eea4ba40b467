from flask import Blueprint, jsonify, request

from app.decorators import role_required
from app.services import EarningsService

api_earnings_bp = Blueprint("api_earnings", __name__)


@api_earnings_bp.get("/by-provider")
@role_required("admin", "payout")
def net_by_provider():
    statuses = [s.strip().lower() for s in request.args.getlist("status") if s.strip()]
    return jsonify(EarningsService.net_by_provider(statuses or None))


@api_earnings_bp.post("/<booking_id>/payout")
@role_required("admin", "payout")
def record_payout(booking_id):
    payload = request.get_json(silent=True) or {}
    record = EarningsService.record_payout(booking_id, payload.get("transfer_reference"))
    return jsonify(
        {
            "bookingId": record.booking_id,
            "providerId": record.provider_id,
            "status": record.status,
            "netAmount": record.net_amount,
            "payableNetAmount": record.payable_net_amount,
            "transferReference": record.transfer_reference,
        }
    )
