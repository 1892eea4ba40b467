import stripe
from flask import Blueprint, current_app, jsonify, request

from app.extensions import limiter
from app.services import PaymentEventService
from app.services.gateway import get_gateway
from app.services.payment_event_service import event_from_stripe

api_webhook_bp = Blueprint("api_webhook", __name__)


@api_webhook_bp.post("/stripe")
@limiter.exempt
def stripe_webhook():
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        return jsonify({"error": "Webhook secret not configured."}), 500

    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature", "")
    try:
        stripe_event = get_gateway().construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        current_app.logger.warning("Rejected Stripe webhook: %s", exc)
        return jsonify({"error": "Invalid webhook signature."}), 400

    event = event_from_stripe(stripe_event)
    if event is None:
        return jsonify({"received": True, "outcome": "ignored"})

    result = PaymentEventService.reconcile(event)
    if not result.acknowledge:
        return jsonify({"received": False, "outcome": result.outcome.value}), 503
    return jsonify({"received": True, "outcome": result.outcome.value, "bookingId": result.booking_id})
