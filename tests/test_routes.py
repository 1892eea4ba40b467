from unittest.mock import patch

import pytest
import stripe

from app.errors import GatewayTimeout
from app.extensions import db
from app.models import Booking, RefundRecord
from app.services import BookingService, EarningsService, FeePolicyService, RefundService
from app.services.gateway import GatewayRefund
from app.services.refund_service import RefundCommand


def _stripe_event(event_id, booking_id, reference, event_type="payment_intent.succeeded"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": reference, "amount_received": 10000, "metadata": {"bookingId": booking_id}}},
    }


def _post_webhook(client, body=b"{}", signature="t=1,v1=sig"):
    return client.post(
        "/api/v1/webhooks/stripe",
        data=body,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def test_webhook_applies_payment(client, make_booking):
    booking = make_booking()
    event = _stripe_event("evt_http_1", booking.id, "pi_http_1")

    with patch("stripe.Webhook.construct_event", return_value=event) as construct:
        response = _post_webhook(client)
        again = _post_webhook(client)

    assert construct.call_args[0][2] == "whsec_test"
    assert response.status_code == 200
    assert response.get_json()["outcome"] == "applied"
    assert again.status_code == 200
    assert again.get_json()["outcome"] == "noop"
    assert db.session.get(Booking, booking.id).status == "paid"


def test_webhook_rejects_bad_signature(client):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=sig")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        response = _post_webhook(client)

    assert response.status_code == 400


def test_webhook_rejects_bad_payload(client):
    with patch("stripe.Webhook.construct_event", side_effect=ValueError("not json")):
        response = _post_webhook(client, body=b"garbage")

    assert response.status_code == 400


def test_webhook_without_secret_is_a_server_error(app, client):
    app.config["STRIPE_WEBHOOK_SECRET"] = None

    response = _post_webhook(client)

    assert response.status_code == 500


def test_webhook_acknowledges_illegal_transition(client, make_booking):
    booking = make_booking(status="declined")
    event = _stripe_event("evt_http_2", booking.id, "pi_http_2")

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "rejected"


def test_webhook_ignores_unhandled_event_types(client):
    event = {"id": "evt_http_3", "type": "invoice.paid", "data": {"object": {}}}
    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "ignored"


def test_webhook_asks_for_redelivery_on_transient_failure(client, make_booking, monkeypatch):
    booking = make_booking()
    event = _stripe_event("evt_http_4", booking.id, "pi_http_4")

    def boom(*_args, **_kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(EarningsService, "upsert_for_booking", staticmethod(boom))
    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.status_code == 503
    assert response.get_json()["received"] is False


def test_admin_refund_endpoint(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()

    response = client.post(
        f"/api/v1/admin/bookings/{booking.id}/refunds",
        json={"amount": 5000, "reason": "customer_request", "description": "late arrival"},
        headers=admin_headers,
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["amount"] == 5000
    assert body["status"] == "completed"
    assert body["gatewayRefundReference"] == "re_1"
    refund = db.session.get(RefundRecord, body["refundId"])
    assert refund.processed_by == "admin_1"
    assert refund.description == "late arrival"


def test_admin_refund_requires_admin(client, gateway, paid_booking):
    booking = paid_booking()
    url = f"/api/v1/admin/bookings/{booking.id}/refunds"

    assert client.post(url, json={"amount": 100, "reason": "x"}).status_code == 401
    forbidden = client.post(
        url, json={"amount": 100, "reason": "x"}, headers={"X-Actor-Id": "prov_1", "X-Actor-Role": "provider"}
    )
    assert forbidden.status_code == 403
    assert gateway.calls == []


def test_each_request_resolves_its_own_actor(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()
    url = f"/api/v1/admin/bookings/{booking.id}/refunds"
    provider_headers = {"X-Actor-Id": "prov_1", "X-Actor-Role": "provider"}

    assert client.get(url, headers=admin_headers).status_code == 200
    assert client.get(url, headers=provider_headers).status_code == 403
    assert client.get(url).status_code == 401
    assert client.get(url, headers=admin_headers).status_code == 200


def test_admin_refund_error_mapping(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()
    url = f"/api/v1/admin/bookings/{booking.id}/refunds"

    missing = client.post("/api/v1/admin/bookings/bkg_nope/refunds", json={"amount": 1, "reason": "x"}, headers=admin_headers)
    over = client.post(url, json={"amount": 10001, "reason": "x"}, headers=admin_headers)
    assert missing.status_code == 404
    assert over.status_code == 400

    gateway.results.append(GatewayRefund(reference="re_x", status="failed", failure_reason="insufficient_funds"))
    failed = client.post(url, json={"amount": 100, "reason": "x"}, headers=admin_headers)
    assert failed.status_code == 502
    assert db.session.get(RefundRecord, failed.get_json()["refundId"]).status == "failed"


def test_list_refunds(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()
    client.post(
        f"/api/v1/admin/bookings/{booking.id}/refunds", json={"amount": 2500, "reason": "x"}, headers=admin_headers
    )

    response = client.get(f"/api/v1/admin/bookings/{booking.id}/refunds", headers=admin_headers)

    body = response.get_json()
    assert response.status_code == 200
    assert body["remainingRefundable"] == 7500
    assert [r["amount"] for r in body["refunds"]] == [2500]
    assert body["refunds"][0]["platformFeeRefunded"] == 250


def test_resolve_dispute_endpoint(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()
    BookingService.open_dispute(booking.id)

    response = client.post(
        f"/api/v1/admin/bookings/{booking.id}/dispute/resolve", json={"outcome": "refunded"}, headers=admin_headers
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "refunded"
    assert body["refund"]["amount"] == 10000


def test_earnings_by_provider_and_payout(client, paid_booking):
    headers = {"X-Actor-Id": "payouts", "X-Actor-Role": "payout"}
    first = paid_booking()
    paid_booking(provider=first.provider)
    BookingService.complete(first.id)

    held = client.get("/api/v1/earnings/by-provider?status=held", headers=headers).get_json()
    everything = client.get("/api/v1/earnings/by-provider", headers=headers).get_json()

    assert held == [
        {
            "provider_id": first.provider_id,
            "records": 1,
            "net_amount": 9000,
            "refunded_net_amount": 0,
            "payable_net_amount": 9000,
        }
    ]
    assert everything[0]["records"] == 2
    assert everything[0]["net_amount"] == 18000

    payout = client.post(f"/api/v1/earnings/{first.id}/payout", json={"transfer_reference": "tr_9"}, headers=headers)
    repeat = client.post(f"/api/v1/earnings/{first.id}/payout", json={"transfer_reference": "tr_9"}, headers=headers)
    conflict = client.post(f"/api/v1/earnings/{first.id}/payout", json={"transfer_reference": "tr_10"}, headers=headers)

    assert payout.status_code == 200
    assert payout.get_json()["status"] == "paid_out"
    assert repeat.status_code == 200
    assert conflict.status_code == 400


def test_earnings_rejects_unknown_status(client):
    response = client.get(
        "/api/v1/earnings/by-provider?status=bogus", headers={"X-Actor-Id": "a", "X-Actor-Role": "admin"}
    )
    assert response.status_code == 400


def test_payout_requires_completed_booking(client, paid_booking):
    booking = paid_booking()

    response = client.post(
        f"/api/v1/earnings/{booking.id}/payout",
        json={"transfer_reference": "tr_early"},
        headers={"X-Actor-Id": "payouts", "X-Actor-Role": "payout"},
    )

    assert response.status_code == 400
    assert EarningsService.for_booking(booking.id).status == "held"


def test_refunds_reconcile_cli(app, gateway, paid_booking):
    booking = paid_booking()
    gateway.results.append(GatewayTimeout("timed out"))
    RefundService.process_refund(RefundCommand(booking.id, 1000, "x", "admin_1"))
    refund = RefundRecord.query.filter_by(booking_id=booking.id).one()
    gateway.lookups[refund.id] = GatewayRefund(reference="re_cli", status="completed", failure_reason=None)

    result = app.test_cli_runner().invoke(args=["refunds", "reconcile", "--older-than", "0"])

    assert result.exit_code == 0
    assert "completed=1" in result.output
    assert db.session.get(RefundRecord, refund.id).status == "completed"


def test_provider_summary(app, gateway, paid_booking):
    first = paid_booking()
    second = paid_booking(provider=first.provider)
    BookingService.complete(first.id)
    RefundService.process_refund(RefundCommand(second.id, 10000, "x", "admin_1"))

    summary = EarningsService.summary_for_provider(first.provider_id)

    assert summary["awaiting_payout"] == {"gross": 10000, "fee": 1000, "gst": 0, "net": 9000}
    assert summary["refunded"]["net"] == 9000
    assert summary["held"] == {"gross": 0, "fee": 0, "gst": 0, "net": 0}
    assert summary["paid_out"]["gross"] == 0


def _refund_event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _left_processing(gateway, booking, amount):
    gateway.results.append(GatewayTimeout("timed out"))
    return RefundService.process_refund(RefundCommand(booking.id, amount, "x", "admin_1"))


def test_admin_refund_timeout_is_accepted_as_processing(client, gateway, paid_booking, admin_headers):
    booking = paid_booking()
    gateway.results.append(GatewayTimeout("timed out"))

    response = client.post(
        f"/api/v1/admin/bookings/{booking.id}/refunds", json={"amount": 4000, "reason": "x"}, headers=admin_headers
    )

    body = response.get_json()
    assert response.status_code == 201
    assert body["status"] == "processing"
    assert body["gatewayRefundReference"] is None
    assert db.session.get(RefundRecord, body["refundId"]).status == "processing"


def test_refund_updated_webhook_settles_processing_refund(client, gateway, paid_booking):
    booking = paid_booking()
    refund = _left_processing(gateway, booking, 10000)
    event = _refund_event(
        "evt_refund_ok",
        "refund.updated",
        {
            "id": "re_hook",
            "object": "refund",
            "status": "succeeded",
            "payment_intent": booking.payment_reference,
            "metadata": {"refund_id": refund.id, "booking_id": booking.id},
        },
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)
        again = _post_webhook(client)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "applied"
    assert response.get_json()["bookingId"] == booking.id
    assert again.get_json()["outcome"] == "noop"
    settled = db.session.get(RefundRecord, refund.id)
    assert settled.status == "completed"
    assert settled.gateway_refund_reference == "re_hook"
    assert db.session.get(Booking, booking.id).status == "refunded"
    assert EarningsService.for_booking(booking.id).refunded_net_amount == 9000


def test_refund_updated_webhook_records_processor_failure(client, gateway, paid_booking):
    booking = paid_booking()
    refund = _left_processing(gateway, booking, 6000)
    event = _refund_event(
        "evt_refund_failed",
        "refund.updated",
        {
            "id": "re_failed_hook",
            "status": "failed",
            "failure_reason": "lost_or_stolen_card",
            "payment_intent": booking.payment_reference,
            "metadata": {"refund_id": refund.id},
        },
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.get_json()["outcome"] == "applied"
    failed = db.session.get(RefundRecord, refund.id)
    assert failed.status == "failed"
    assert failed.failure_reason == "lost_or_stolen_card"
    assert RefundService.remaining_refundable(db.session.get(Booking, booking.id)) == 10000


def test_refund_webhook_for_unknown_refund_is_a_noop(client, gateway, paid_booking):
    booking = paid_booking()
    event = _refund_event(
        "evt_refund_stranger",
        "refund.updated",
        {"id": "re_elsewhere", "status": "succeeded", "payment_intent": booking.payment_reference, "metadata": {}},
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "noop"
    assert db.session.get(Booking, booking.id).status == "paid"


def test_charge_refunded_webhook_looks_up_in_flight_refunds(client, gateway, paid_booking):
    booking = paid_booking()
    refund = _left_processing(gateway, booking, 3000)
    gateway.lookups[refund.id] = GatewayRefund(reference="re_charge", status="completed", failure_reason=None)
    event = _refund_event(
        "evt_charge_refunded",
        "charge.refunded",
        {"id": "ch_1", "object": "charge", "payment_intent": booking.payment_reference, "amount_refunded": 3000},
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.get_json()["outcome"] == "applied"
    assert db.session.get(RefundRecord, refund.id).status == "completed"
    assert db.session.get(Booking, booking.id).status == "paid"


def test_charge_refunded_webhook_leaves_unrecorded_refunds_in_flight(client, gateway, paid_booking):
    booking = paid_booking()
    refund = _left_processing(gateway, booking, 3000)
    event = _refund_event(
        "evt_charge_refunded_early", "charge.refunded", {"id": "ch_2", "payment_intent": booking.payment_reference}
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.get_json()["outcome"] == "noop"
    assert db.session.get(RefundRecord, refund.id).status == "processing"


def test_refund_webhook_asks_for_redelivery_when_lookup_fails(client, gateway, paid_booking):
    booking = paid_booking()
    refund = _left_processing(gateway, booking, 3000)
    gateway.lookups[refund.id] = GatewayTimeout("still down")
    event = _refund_event(
        "evt_charge_refunded_down", "charge.refunded", {"id": "ch_3", "payment_intent": booking.payment_reference}
    )

    with patch("stripe.Webhook.construct_event", return_value=event):
        response = _post_webhook(client)

    assert response.status_code == 503
    assert db.session.get(RefundRecord, refund.id).status == "processing"


def test_fee_policy_endpoints(client, admin_headers, make_provider, make_booking):
    provider = make_provider(plan="pro")

    created = client.put("/api/v1/admin/fee-policies/Pro", json={"platformFeeBps": 750}, headers=admin_headers)
    listing = client.get("/api/v1/admin/fee-policies", headers=admin_headers).get_json()

    assert created.status_code == 200
    assert created.get_json()["plan"] == "pro"
    assert created.get_json()["updatedBy"] == "admin_1"
    assert listing["defaultPlatformFeeBps"] == 1000
    assert [(p["plan"], p["platformFeeBps"]) for p in listing["policies"]] == [("pro", 750)]
    assert FeePolicyService.platform_fee_bps_for(provider) == 750

    override = client.put(
        f"/api/v1/admin/providers/{provider.id}/fee-override", json={"platformFeeBps": 0}, headers=admin_headers
    )
    assert override.get_json()["effectivePlatformFeeBps"] == 0
    cleared = client.put(
        f"/api/v1/admin/providers/{provider.id}/fee-override", json={"platformFeeBps": None}, headers=admin_headers
    )
    assert cleared.get_json()["platformFeeBps"] is None
    assert cleared.get_json()["effectivePlatformFeeBps"] == 750


@pytest.mark.parametrize("value", [10001, -1, "500", 12.5, True, None])
def test_fee_policy_rejects_bad_rates(client, admin_headers, value):
    response = client.put("/api/v1/admin/fee-policies/pro", json={"platformFeeBps": value}, headers=admin_headers)

    assert response.status_code == 400
    assert FeePolicyService.list_plan_policies() == []


def test_fee_policy_endpoints_are_admin_only(client, make_provider):
    provider = make_provider()
    headers = {"X-Actor-Id": "prov_1", "X-Actor-Role": "provider"}

    assert client.get("/api/v1/admin/fee-policies", headers=headers).status_code == 403
    assert client.put("/api/v1/admin/fee-policies/pro", json={"platformFeeBps": 1}).status_code == 401
    missing = client.put(
        "/api/v1/admin/providers/prov_missing/fee-override",
        json={"platformFeeBps": 1},
        headers={"X-Actor-Id": "a", "X-Actor-Role": "admin"},
    )
    assert missing.status_code == 404
    assert provider.platform_fee_bps is None
