"""Reconciliation of verified payment-processor events against bookings.

Processors redeliver, reorder and duplicate events. Every path here is
idempotent: the booking status only ever moves forward through the transition
table, the earnings ledger is upserted by booking id, and a booking that is
already settled is never re-split.

Refund notifications settle refunds left ``processing`` by a gateway timeout
or a pending processor status.

``reconcile`` never raises. It returns a :class:`ReconcileResult` and the
caller acknowledges the delivery unless the outcome is ``TRANSIENT_FAILURE``.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from app.errors import IllegalTransition, TransientInfraError
from app.extensions import db
from app.models import Booking, EarningsRecord, PaymentEventLog
from app.services import booking_state as states
from app.services.booking_service import BookingService
from app.services.earnings_service import EarningsService
from app.services.gateway import stripe_field, to_gateway_refund
from app.services.refund_service import RefundService

SESSION_COMPLETED = "session_completed"
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
EVENT_KINDS = (SESSION_COMPLETED, PAYMENT_SUCCEEDED, PAYMENT_FAILED)

STRIPE_EVENT_KINDS = {
    "checkout.session.completed": SESSION_COMPLETED,
    "checkout.session.async_payment_succeeded": SESSION_COMPLETED,
    "checkout.session.async_payment_failed": PAYMENT_FAILED,
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
}

REFUND_UPDATED = "refund_updated"
CHARGE_REFUNDED = "charge_refunded"

STRIPE_REFUND_EVENT_KINDS = {
    "refund.updated": REFUND_UPDATED,
    "charge.refund.updated": REFUND_UPDATED,
    "charge.refunded": CHARGE_REFUNDED,
}

MAX_STATUS_RACES = 3


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    kind: str
    payment_reference: str
    metadata_booking_id: Optional[str] = None
    charged_amount_hint: Optional[int] = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    booking_id: Optional[str] = None
    detail: str = ""

    @property
    def acknowledge(self):
        return self.outcome is not Outcome.TRANSIENT_FAILURE


@dataclass(frozen=True)
class RefundEvent:
    event_id: str
    kind: str
    payment_reference: Optional[str]
    # (refund_id metadata, GatewayRefund) for each refund the event carries.
    refunds: tuple = ()


def _reference_from(value):
    if isinstance(value, str):
        return value
    return stripe_field(value, "id") if value is not None else None


def event_from_stripe(stripe_event):
    """Normalise a verified Stripe event into a PaymentEvent or RefundEvent, or None if we ignore it."""
    event_type = stripe_field(stripe_event, "type")
    if event_type in STRIPE_REFUND_EVENT_KINDS:
        return _refund_event_from_stripe(stripe_event, event_type)
    kind = STRIPE_EVENT_KINDS.get(event_type)
    if kind is None:
        return None

    obj = stripe_field(stripe_field(stripe_event, "data"), "object")
    metadata = stripe_field(obj, "metadata") or {}
    booking_id = stripe_field(metadata, "bookingId") or stripe_field(metadata, "booking_id")

    if event_type.startswith("checkout.session."):
        if stripe_field(obj, "mode") not in (None, "payment"):
            return None
        reference = _reference_from(stripe_field(obj, "payment_intent"))
        amount = stripe_field(obj, "amount_total")
    else:
        reference = stripe_field(obj, "id")
        amount = stripe_field(obj, "amount_received") or stripe_field(obj, "amount")

    return PaymentEvent(
        event_id=stripe_field(stripe_event, "id"),
        kind=kind,
        payment_reference=reference,
        metadata_booking_id=(booking_id or "").strip() or None,
        charged_amount_hint=amount if isinstance(amount, int) else None,
    )


def _refund_event_from_stripe(stripe_event, event_type):
    obj = stripe_field(stripe_field(stripe_event, "data"), "object")
    if event_type == "charge.refunded":
        # Only present when the API version still embeds the refund list.
        refunds = stripe_field(stripe_field(obj, "refunds") or {}, "data") or []
    else:
        refunds = [obj]

    pairs = []
    for refund in refunds:
        metadata = stripe_field(refund, "metadata") or {}
        refund_id = stripe_field(metadata, "refund_id") or stripe_field(metadata, "refundId")
        pairs.append(((refund_id or "").strip() or None, to_gateway_refund(refund)))

    return RefundEvent(
        event_id=stripe_field(stripe_event, "id"),
        kind=STRIPE_REFUND_EVENT_KINDS[event_type],
        payment_reference=_reference_from(stripe_field(obj, "payment_intent")),
        refunds=tuple(pairs),
    )


class PaymentEventService:
    @staticmethod
    def reconcile(event):
        try:
            result = PaymentEventService._reconcile(event)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Payment event %s (%s) failed; asking the sender to redeliver", event.event_id, event.kind
            )
            return ReconcileResult(Outcome.TRANSIENT_FAILURE, detail="transient failure")

        current_app.logger.info(
            "Payment event %s (%s) for booking %s: %s %s",
            event.event_id,
            event.kind,
            result.booking_id,
            result.outcome.value,
            result.detail,
        )
        return result

    @staticmethod
    def _reconcile(event):
        if isinstance(event, RefundEvent):
            return PaymentEventService._reconcile_refunds(event)
        if event.kind not in EVENT_KINDS:
            return ReconcileResult(Outcome.NOOP, detail=f"unsupported event kind '{event.kind}'")

        prior = db.session.get(PaymentEventLog, event.event_id)
        if prior is not None and prior.outcome == Outcome.APPLIED.value:
            return ReconcileResult(Outcome.NOOP, booking_id=prior.booking_id, detail="duplicate delivery")

        booking = PaymentEventService.resolve_booking(event)
        if booking is None:
            result = ReconcileResult(Outcome.NOOP, detail="no matching booking")
        elif event.kind == PAYMENT_FAILED:
            result = PaymentEventService._apply_failure(booking, event)
        else:
            result = PaymentEventService._apply_success(booking, event)

        PaymentEventService._record(event, result, prior)
        db.session.commit()
        return result

    @staticmethod
    def _reconcile_refunds(event):
        prior = db.session.get(PaymentEventLog, event.event_id)
        if prior is not None and prior.outcome == Outcome.APPLIED.value:
            return ReconcileResult(Outcome.NOOP, booking_id=prior.booking_id, detail="duplicate delivery")

        booking = BookingService.find_by_payment_reference(event.payment_reference)
        if event.refunds:
            settled = [
                RefundService.sync_from_gateway(refund_id, gateway_refund) for refund_id, gateway_refund in event.refunds
            ]
            settled = [refund for refund in settled if refund is not None]
        elif booking is not None:
            settled = RefundService.sync_booking_refunds(booking.id)
        else:
            settled = []

        booking_id = booking.id if booking is not None else None
        if settled:
            booking_id = settled[0].booking_id
            detail = ", ".join(f"{refund.id} {refund.status}" for refund in settled)
            result = ReconcileResult(Outcome.APPLIED, booking_id, f"refunds settled: {detail}")
        else:
            result = ReconcileResult(Outcome.NOOP, booking_id, "no in-flight refund changed")

        PaymentEventService._record(event, result, prior)
        db.session.commit()
        return result

    @staticmethod
    def resolve_booking(event):
        if event.metadata_booking_id:
            booking = db.session.get(Booking, event.metadata_booking_id)
            if booking is not None:
                return booking
        return BookingService.find_by_payment_reference(event.payment_reference)

    @staticmethod
    def _apply_success(booking, event):
        if not event.payment_reference:
            return ReconcileResult(Outcome.REJECTED, booking.id, "event carries no payment reference")

        for _ in range(MAX_STATUS_RACES):
            current = booking.status
            if states.is_settled_or_later(current):
                return PaymentEventService._relink(booking, event)

            try:
                states.assert_transition(current, states.PAID)
            except IllegalTransition as exc:
                current_app.logger.warning(
                    "Ignoring %s for booking %s: %s", event.kind, booking.id, exc.message
                )
                return ReconcileResult(Outcome.REJECTED, booking.id, f"illegal transition {current} -> paid")

            if not PaymentEventService._reference_available(booking, event.payment_reference):
                return ReconcileResult(Outcome.REJECTED, booking.id, "payment reference belongs to another booking")

            if BookingService.compare_and_set_status(
                booking.id, current, states.PAID, payment_reference=event.payment_reference
            ):
                if event.charged_amount_hint is not None and event.charged_amount_hint != booking.charged_amount:
                    current_app.logger.warning(
                        "Booking %s charged %s but event %s reports %s; ledger uses the booking amount",
                        booking.id,
                        booking.charged_amount,
                        event.event_id,
                        event.charged_amount_hint,
                    )
                EarningsService.upsert_for_booking(booking, event.payment_reference)
                return ReconcileResult(Outcome.APPLIED, booking.id, "booking marked paid")

            # Lost the race; reload and decide again.
            db.session.expire(booking)

        raise TransientInfraError(f"Booking {booking.id} status kept changing during reconciliation.")

    @staticmethod
    def _apply_failure(booking, event):
        if booking.payment_reference or not event.payment_reference:
            return ReconcileResult(Outcome.NOOP, booking.id, "payment failure recorded, booking unchanged")
        if not PaymentEventService._reference_available(booking, event.payment_reference):
            return ReconcileResult(Outcome.REJECTED, booking.id, "payment reference belongs to another booking")

        linked = (
            Booking.query.filter(Booking.id == booking.id, Booking.payment_reference.is_(None))
            .update({"payment_reference": event.payment_reference}, synchronize_session=False)
        )
        if linked:
            return ReconcileResult(Outcome.APPLIED, booking.id, "payment reference linked after failure")
        return ReconcileResult(Outcome.NOOP, booking.id, "payment failure recorded, booking unchanged")

    @staticmethod
    def _relink(booking, event):
        if booking.payment_reference == event.payment_reference:
            return ReconcileResult(Outcome.NOOP, booking.id, "already settled")
        if not PaymentEventService._reference_available(booking, event.payment_reference):
            return ReconcileResult(Outcome.REJECTED, booking.id, "payment reference belongs to another booking")

        Booking.query.filter(Booking.id == booking.id).update(
            {"payment_reference": event.payment_reference}, synchronize_session=False
        )
        EarningsRecord.query.filter(EarningsRecord.booking_id == booking.id).update(
            {"payment_reference": event.payment_reference}, synchronize_session=False
        )
        current_app.logger.info(
            "Booking %s relinked from %s to %s", booking.id, booking.payment_reference, event.payment_reference
        )
        return ReconcileResult(Outcome.APPLIED, booking.id, "payment reference relinked")

    @staticmethod
    def _reference_available(booking, payment_reference):
        owner = BookingService.find_by_payment_reference(payment_reference)
        return owner is None or owner.id == booking.id

    @staticmethod
    def _record(event, result, prior):
        entry = prior or PaymentEventLog(event_id=event.event_id)
        entry.kind = event.kind
        entry.payment_reference = event.payment_reference
        entry.booking_id = result.booking_id
        entry.outcome = result.outcome.value
        entry.detail = (result.detail or "")[:255]
        if prior is None:
            db.session.add(entry)
