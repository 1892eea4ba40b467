from collections import namedtuple

import stripe
from flask import current_app

from app.errors import GatewayError, GatewayTimeout

GatewayRefund = namedtuple("GatewayRefund", ["reference", "status", "failure_reason"])
ChargeInfo = namedtuple("ChargeInfo", ["amount", "application_fee_amount", "has_transfer"])

# Stripe refund status -> refund ledger status.
REFUND_STATUS_MAP = {
    "succeeded": "completed",
    "pending": "processing",
    "requires_action": "processing",
    "failed": "failed",
    "canceled": "failed",
}


def stripe_field(obj, name):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def to_gateway_refund(refund):
    status = REFUND_STATUS_MAP.get(stripe_field(refund, "status"), "processing")
    failure_reason = stripe_field(refund, "failure_reason") if status == "failed" else None
    return GatewayRefund(reference=stripe_field(refund, "id"), status=status, failure_reason=failure_reason)


class StripeGateway:
    """Thin adapter over the ``stripe`` library used by the refund processor."""

    def __init__(self, api_key, timeout_seconds=10, max_network_retries=2):
        self.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            timeout_seconds=config.get("STRIPE_TIMEOUT_SECONDS", 10),
            max_network_retries=config.get("STRIPE_MAX_NETWORK_RETRIES", 2),
        )

    def charge_info(self, payment_reference):
        """Describe the Connect side of the payment's latest charge."""
        intent = stripe.PaymentIntent.retrieve(payment_reference, api_key=self.api_key, expand=["latest_charge"])
        charge = stripe_field(intent, "latest_charge")
        if not charge:
            return ChargeInfo(amount=None, application_fee_amount=None, has_transfer=False)
        if isinstance(charge, str):
            charge = stripe.Charge.retrieve(charge, api_key=self.api_key)
        fee = stripe_field(charge, "application_fee_amount")
        return ChargeInfo(
            amount=stripe_field(charge, "amount"),
            application_fee_amount=fee if isinstance(fee, int) else None,
            has_transfer=bool(stripe_field(charge, "transfer")),
        )

    def create_refund(self, payment_reference, amount, idempotency_key, metadata=None):
        try:
            charge = self.charge_info(payment_reference)
            params = {}
            # Stripe rejects these flags on charges without a transfer or fee.
            if charge.has_transfer:
                params["reverse_transfer"] = True
            if charge.application_fee_amount:
                params["refund_application_fee"] = True
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment_reference,
                amount=amount,
                reason="requested_by_customer",
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.APIConnectionError as exc:
            current_app.logger.warning("Stripe refund for %s timed out: %s", payment_reference, exc)
            raise GatewayTimeout("Payment processor did not respond in time.") from exc
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or "Payment processor error."
            raise GatewayError(message) from exc
        return to_gateway_refund(refund)

    def find_refund(self, payment_reference, refund_id, gateway_reference=None):
        """Look a refund up by its processor id, or by the ``refund_id`` metadata we attached."""
        try:
            if gateway_reference:
                return to_gateway_refund(stripe.Refund.retrieve(gateway_reference, api_key=self.api_key))
            refunds = stripe.Refund.list(payment_intent=payment_reference, limit=100, api_key=self.api_key)
            for refund in refunds.auto_paging_iter():
                if stripe_field(stripe_field(refund, "metadata") or {}, "refund_id") == refund_id:
                    return to_gateway_refund(refund)
        except stripe.APIConnectionError as exc:
            raise GatewayTimeout("Payment processor did not respond in time.") from exc
        except stripe.StripeError as exc:
            raise GatewayError(str(exc) or "Payment processor error.") from exc
        return None

    def construct_event(self, payload, signature, secret):
        return stripe.Webhook.construct_event(payload, signature, secret)


def get_gateway():
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        gateway = StripeGateway.from_config(current_app.config)
        current_app.extensions["payment_gateway"] = gateway
    return gateway
