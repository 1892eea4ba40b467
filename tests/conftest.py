import stripe
import pytest
from flask import g

from app import create_app
from app.extensions import db
from app.models import Booking, Provider, Service
from app.services import booking_state as states
from app.services.gateway import GatewayRefund


class FakeGateway:
    """Records refund calls and answers with a scripted result or exception."""

    def __init__(self):
        self.calls = []
        self.results = []
        self.lookups = {}

    def create_refund(self, payment_reference, amount, idempotency_key, metadata=None):
        self.calls.append(
            {
                "payment_reference": payment_reference,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return GatewayRefund(reference=f"re_{len(self.calls)}", status="completed", failure_reason=None)

    def find_refund(self, payment_reference, refund_id, gateway_reference=None):
        result = self.lookups.get(refund_id)
        if isinstance(result, Exception):
            raise result
        return result

    def construct_event(self, payload, signature, secret):
        return stripe.Webhook.construct_event(payload, signature, secret)


@pytest.fixture()
def app():
    app = create_app("testing")

    @app.before_request
    def forget_previous_actor():
        # Requests share the fixture's app context, and with it Flask-Login's cached user.
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def gateway(app):
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    return fake


@pytest.fixture()
def admin_headers():
    return {"X-Actor-Id": "admin_1", "X-Actor-Role": "admin"}


@pytest.fixture()
def make_provider():
    def _make(plan="starter", charges_gst=False, platform_fee_bps=None):
        provider = Provider(
            display_name="Kiwi Cleaners",
            plan=plan,
            charges_gst=charges_gst,
            platform_fee_bps=platform_fee_bps,
        )
        db.session.add(provider)
        db.session.commit()
        return provider

    return _make


@pytest.fixture()
def make_booking(make_provider):
    counter = {"n": 0}

    def _make(status=states.ACCEPTED, charged_amount=10000, provider=None, charges_gst=None, payment_reference=None):
        counter["n"] += 1
        provider = provider or make_provider()
        service = Service(provider_id=provider.id, title="Deep clean", charges_gst=charges_gst)
        db.session.add(service)
        db.session.flush()
        booking = Booking(
            provider_id=provider.id,
            service_id=service.id,
            customer_id=f"cust_{counter['n']}",
            status=status,
            charged_amount=charged_amount,
            payment_reference=payment_reference,
        )
        db.session.add(booking)
        db.session.commit()
        return booking

    return _make


@pytest.fixture()
def paid_booking(make_booking):
    """A 10000 booking at a 10% platform fee with no GST, already paid and in the ledger."""
    from app.services.payment_event_service import PaymentEvent, PaymentEventService

    def _make(charged_amount=10000, **kwargs):
        booking = make_booking(charged_amount=charged_amount, **kwargs)
        reference = f"pi_{booking.id}"
        result = PaymentEventService.reconcile(
            PaymentEvent(
                event_id=f"evt_paid_{booking.id}",
                kind="payment_succeeded",
                payment_reference=reference,
                metadata_booking_id=booking.id,
            )
        )
        assert result.outcome.value == "applied"
        return db.session.get(Booking, booking.id)

    return _make
