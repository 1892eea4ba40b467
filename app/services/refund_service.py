"""Admin-initiated refunds against the payment processor.

A refund runs in three steps:

1. Claim. In one transaction the booking's refundable balance is checked, the
   booking's ``refund_version`` is bumped with a conditional update, and a
   ``processing`` refund row is inserted. Two claims racing on the same
   booking cannot both win the version bump.
2. Gateway call, outside any transaction, keyed by an idempotency key derived
   from ``(booking_id, amount, refund_id)``.
3. Finalise. The ``processing`` row moves to ``completed`` or ``failed`` with a
   conditional update. Completion holds the booking row lock while the earnings
   ledger absorbs the prorated split, and a refund that exhausts the charge
   moves the booking to ``refunded``.

Rows left in ``processing`` (timeouts, pending refunds, crashes) are settled
by processor webhooks through :meth:`RefundService.sync_from_gateway`, or later
by :meth:`RefundService.reconcile_stuck_refunds`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app
from sqlalchemy import func

from app.errors import ConcurrencyConflict, GatewayError, GatewayTimeout, NotFoundError, ValidationError
from app.extensions import db
from app.models import Booking, RefundRecord
from app.models.base import new_id
from app.services import booking_state as states
from app.services.booking_service import BookingService
from app.services.earnings_service import EarningsService
from app.services.gateway import get_gateway

MAX_REASON_LENGTH = 100


@dataclass(frozen=True)
class RefundCommand:
    booking_id: str
    amount: int
    reason: str
    admin_id: str
    description: Optional[str] = None


def refund_idempotency_key(booking_id, amount, refund_id):
    return f"admin_refund:{booking_id}:{amount}:{refund_id}"


def refund_response(refund):
    return {
        "refundId": refund.id,
        "gatewayRefundReference": refund.gateway_refund_reference,
        "amount": refund.amount,
        "status": refund.status,
    }


class RefundService:
    @staticmethod
    def _sum_amount(booking_id, statuses):
        total = (
            db.session.query(func.coalesce(func.sum(RefundRecord.amount), 0))
            .filter(RefundRecord.booking_id == booking_id, RefundRecord.status.in_(statuses))
            .scalar()
        )
        return int(total or 0)

    @staticmethod
    def completed_total(booking_id):
        return RefundService._sum_amount(booking_id, ("completed",))

    @staticmethod
    def remaining_refundable(booking):
        # In-flight refunds hold their amount until they settle one way or the other.
        reserved = RefundService._sum_amount(booking.id, ("completed", "processing"))
        return max(booking.charged_amount - reserved, 0)

    @staticmethod
    def list_for_booking(booking_id):
        BookingService.get(booking_id)
        return (
            RefundRecord.query.filter_by(booking_id=booking_id)
            .order_by(RefundRecord.created_at.asc(), RefundRecord.id.asc())
            .all()
        )

    @staticmethod
    def _validate(command):
        amount = command.amount
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Refund amount must be an integer of minor units.")
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero.")
        reason = (command.reason or "").strip()
        if not reason:
            raise ValidationError("Refund reason is required.")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Refund reason must be at most {MAX_REASON_LENGTH} characters.")
        if not command.admin_id:
            raise ValidationError("Refund must name the admin processing it.")
        return amount, reason

    @staticmethod
    def claim(command, source="admin"):
        amount, reason = RefundService._validate(command)

        booking = (
            Booking.query.filter_by(id=command.booking_id).populate_existing().with_for_update().first()
        )
        if booking is None:
            raise NotFoundError("Booking not found.")
        if not booking.payment_reference:
            raise ValidationError("Booking has no payment to refund.")

        refundable = states.REFUNDABLE_STATUSES
        if source == "dispute":
            refundable = refundable | {states.DISPUTED}
        if booking.status not in refundable:
            raise ValidationError(f"Bookings in status '{booking.status}' cannot be refunded.")

        version = booking.refund_version
        remaining = RefundService.remaining_refundable(booking)
        if amount > remaining:
            raise ValidationError(f"Refund amount exceeds the remaining refundable balance of {remaining}.")

        claimed = (
            Booking.query.filter(Booking.id == booking.id, Booking.refund_version == version)
            .update({"refund_version": version + 1}, synchronize_session=False)
        )
        if claimed != 1:
            db.session.rollback()
            raise ConcurrencyConflict("Another refund for this booking is in progress. Reload and retry.")

        refund_id = new_id("refund")
        refund = RefundRecord(
            id=refund_id,
            booking_id=booking.id,
            amount=amount,
            reason=reason,
            description=(command.description or "").strip() or None,
            source=source,
            status="processing",
            idempotency_key=refund_idempotency_key(booking.id, amount, refund_id),
            processed_by=command.admin_id,
        )
        db.session.add(refund)
        db.session.commit()
        current_app.logger.info(
            "Refund %s claimed for booking %s (amount=%s, remaining before=%s)", refund_id, booking.id, amount, remaining
        )
        return refund

    @staticmethod
    def process_refund(command, source="admin"):
        refund = RefundService.claim(command, source=source)
        booking = BookingService.get(refund.booking_id)
        payment_reference = booking.payment_reference

        try:
            result = get_gateway().create_refund(
                payment_reference,
                refund.amount,
                refund.idempotency_key,
                metadata={
                    "booking_id": booking.id,
                    "refund_id": refund.id,
                    "processed_by": command.admin_id,
                    "reason": refund.reason,
                    "source": f"{source}_booking_refund",
                },
            )
        except GatewayTimeout:
            # The processor may still act on the idempotency key; the row stays
            # processing until a webhook or the reconciliation pass settles it.
            current_app.logger.warning("Refund %s left processing after gateway timeout", refund.id)
            db.session.refresh(refund)
            return refund
        except GatewayError as exc:
            current_app.logger.error("Refund %s failed at the payment processor: %s", refund.id, exc.message)
            RefundService._mark_failed(refund.id, exc.message, None)
            exc.refund_id = refund.id
            raise

        refund = RefundService.finalize(refund.id, result)
        if refund.status == "failed":
            raise GatewayError(
                refund.failure_reason or "Payment processor declined the refund.", refund_id=refund.id
            )
        return refund

    @staticmethod
    def finalize(refund_id, gateway_refund):
        refund = db.session.get(RefundRecord, refund_id)
        if refund is None:
            raise NotFoundError("Refund not found.")

        if gateway_refund.status == "failed":
            RefundService._mark_failed(refund_id, gateway_refund.failure_reason, gateway_refund.reference)
        elif gateway_refund.status == "processing":
            if gateway_refund.reference and not refund.gateway_refund_reference:
                refund.gateway_refund_reference = gateway_refund.reference
                db.session.commit()
        else:
            RefundService._mark_completed(refund, gateway_refund.reference)

        db.session.refresh(refund)
        return refund

    @staticmethod
    def _mark_failed(refund_id, failure_reason, gateway_reference):
        values = {
            "status": "failed",
            "failure_reason": failure_reason or "Refund failed at the payment processor.",
            "processed_at": datetime.now(timezone.utc),
        }
        if gateway_reference:
            values["gateway_refund_reference"] = gateway_reference
        RefundRecord.query.filter_by(id=refund_id, status="processing").update(values, synchronize_session=False)
        db.session.commit()

    @staticmethod
    def _mark_completed(refund, gateway_reference):
        # Finalisations on one booking queue behind this lock, so the completed
        # total below includes every refund finalised before us.
        booking = (
            Booking.query.filter_by(id=refund.booking_id).populate_existing().with_for_update().first()
        )
        if booking is None:
            raise NotFoundError("Booking not found.")
        parts = EarningsService.prorate_refund(booking, refund.amount)

        updated = (
            RefundRecord.query.filter_by(id=refund.id, status="processing")
            .update(
                {
                    "status": "completed",
                    "gateway_refund_reference": gateway_reference or refund.gateway_refund_reference,
                    "platform_fee_refunded": parts.platform_fee_amount,
                    "provider_amount_refunded": refund.amount - parts.platform_fee_amount,
                    "processed_at": datetime.now(timezone.utc),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            # Already finalised by another path (webhook, reconciliation pass or a retry).
            db.session.rollback()
            return

        fully_refunded = RefundService.completed_total(booking.id) >= booking.charged_amount
        EarningsService.apply_refund(booking.id, parts, fully_refunded)
        if fully_refunded:
            RefundService._mark_booking_refunded(booking.id)
        db.session.commit()
        current_app.logger.info(
            "Refund %s completed for booking %s (fee=%s, provider=%s, full=%s)",
            refund.id,
            booking.id,
            parts.platform_fee_amount,
            refund.amount - parts.platform_fee_amount,
            fully_refunded,
        )

    @staticmethod
    def _mark_booking_refunded(booking_id, attempts=3):
        for _ in range(attempts):
            current = db.session.query(Booking.status).filter(Booking.id == booking_id).scalar()
            if current == states.REFUNDED:
                return
            if not states.can_transition(current, states.REFUNDED):
                current_app.logger.error(
                    "Booking %s fully refunded but cannot move from '%s' to 'refunded'", booking_id, current
                )
                return
            if BookingService.compare_and_set_status(booking_id, current, states.REFUNDED):
                return
        current_app.logger.error("Booking %s kept changing status while being marked refunded", booking_id)

    @staticmethod
    def reconcile_stuck_refunds(older_than=None, limit=50):
        """Resolve ``processing`` refunds older than the cut-off against the gateway."""
        if older_than is None:
            older_than = timedelta(minutes=current_app.config.get("REFUND_STUCK_AFTER_MINUTES", 15))
        cutoff = datetime.now(timezone.utc) - older_than
        stuck = (
            RefundRecord.query.filter(RefundRecord.status == "processing", RefundRecord.created_at <= cutoff)
            .order_by(RefundRecord.created_at.asc())
            .limit(limit)
            .all()
        )

        counts = {"completed": 0, "failed": 0, "processing": 0, "errors": 0}
        gateway = get_gateway()
        for refund in stuck:
            try:
                refund = RefundService._settle_with_gateway(gateway, refund, fail_unknown=True)
            except GatewayError as exc:
                current_app.logger.warning("Could not look up refund %s: %s", refund.id, exc.message)
                counts["errors"] += 1
                continue
            counts[refund.status] += 1

        current_app.logger.info("Refund reconciliation finished: %s", counts)
        return counts

    @staticmethod
    def _settle_with_gateway(gateway, refund, fail_unknown=False):
        booking = db.session.get(Booking, refund.booking_id)
        result = gateway.find_refund(booking.payment_reference, refund.id, refund.gateway_refund_reference)
        if result is None:
            if fail_unknown:
                # The idempotency key was never consumed, so no money moved.
                RefundService._mark_failed(refund.id, "Refund was never recorded by the payment processor.", None)
                db.session.refresh(refund)
            return refund
        return RefundService.finalize(refund.id, result)

    @staticmethod
    def sync_from_gateway(refund_id, gateway_refund):
        """Apply a processor notification about one refund.

        The refund is matched by the ``refund_id`` we attached as metadata, then
        by the processor's refund id. Returns the refund when this call settled
        it, or None when it is unknown, already settled or still in flight.
        """
        refund = db.session.get(RefundRecord, refund_id) if refund_id else None
        if refund is None and gateway_refund.reference:
            refund = RefundRecord.query.filter_by(gateway_refund_reference=gateway_refund.reference).first()
        if refund is None:
            current_app.logger.info("Processor refund %s matches no refund record", gateway_refund.reference)
            return None

        if refund.status != "processing":
            if gateway_refund.status not in ("processing", refund.status):
                current_app.logger.warning(
                    "Refund %s is %s here but %s at the payment processor",
                    refund.id,
                    refund.status,
                    gateway_refund.status,
                )
            return None

        refund = RefundService.finalize(refund.id, gateway_refund)
        return refund if refund.status != "processing" else None

    @staticmethod
    def sync_booking_refunds(booking_id):
        """Look up every in-flight refund on a booking and settle those the processor has finished."""
        gateway = get_gateway()
        in_flight = (
            RefundRecord.query.filter_by(booking_id=booking_id, status="processing")
            .order_by(RefundRecord.created_at.asc())
            .all()
        )
        settled = []
        for refund in in_flight:
            refund = RefundService._settle_with_gateway(gateway, refund)
            if refund.status != "processing":
                settled.append(refund)
        return settled
