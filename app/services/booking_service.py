from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from flask import current_app

from app.errors import ConcurrencyConflict, NotFoundError, ValidationError
from app.extensions import db
from app.models import Booking, Service
from app.services import booking_state as states
from app.services.earnings_service import EarningsService

# Lifecycle timestamp written alongside each target status.
STATUS_TIMESTAMPS = {
    states.ACCEPTED: "accepted_at",
    states.PAID: "paid_at",
    states.COMPLETED: "completed_at",
    states.COMPLETED_BY_PROVIDER: "completed_at",
    states.CANCELED_CUSTOMER: "canceled_at",
    states.CANCELED_PROVIDER: "canceled_at",
    states.DECLINED: "canceled_at",
    states.DISPUTED: "disputed_at",
    states.REFUNDED: "refunded_at",
}


@dataclass(frozen=True)
class CreateBooking:
    customer_id: str
    service_id: str
    charged_amount: int


@dataclass(frozen=True)
class CancelBooking:
    booking_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ResolveDispute:
    booking_id: str
    outcome: str
    admin_id: str
    note: Optional[str] = None


class BookingService:
    @staticmethod
    def get(booking_id):
        booking = db.session.get(Booking, booking_id) if booking_id else None
        if booking is None:
            raise NotFoundError("Booking not found.")
        return booking

    @staticmethod
    def find_by_payment_reference(payment_reference):
        if not payment_reference:
            return None
        return Booking.query.filter_by(payment_reference=payment_reference).first()

    @staticmethod
    def create_booking(command):
        try:
            amount = int(command.charged_amount)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Charged amount must be an integer of minor units.") from exc
        if amount < 0:
            raise ValidationError("Charged amount cannot be negative.")

        service = db.session.get(Service, command.service_id)
        if service is None:
            raise NotFoundError("Service not found.")

        booking = Booking(
            provider_id=service.provider_id,
            service_id=service.id,
            customer_id=command.customer_id,
            charged_amount=amount,
            status=states.PENDING,
        )
        db.session.add(booking)
        db.session.commit()
        return booking

    @staticmethod
    def compare_and_set_status(booking_id, expected, target, **fields):
        """Move ``booking_id`` from ``expected`` to ``target`` if nobody got there first.

        Validates the edge, then issues ``UPDATE ... WHERE status = expected``.
        Returns True when this caller won. Does not commit.
        """
        states.assert_transition(expected, target)
        values = {"status": target, "updated_at": datetime.now(timezone.utc)}
        column = STATUS_TIMESTAMPS.get(target)
        if column:
            values[column] = values["updated_at"]
        values.update(fields)
        updated = (
            Booking.query.filter(Booking.id == booking_id, Booking.status == expected)
            .update(values, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def transition(booking_id, target, **fields):
        booking = BookingService.get(booking_id)
        current = booking.status
        if not BookingService.compare_and_set_status(booking_id, current, target, **fields):
            db.session.rollback()
            raise ConcurrencyConflict("Booking status changed concurrently. Reload and retry.")
        db.session.commit()
        db.session.refresh(booking)
        current_app.logger.info("Booking %s moved %s -> %s", booking_id, current, target)
        return booking

    @staticmethod
    def accept(booking_id):
        return BookingService.transition(booking_id, states.ACCEPTED)

    @staticmethod
    def decline(booking_id):
        return BookingService.transition(booking_id, states.DECLINED)

    @staticmethod
    def cancel_by_customer(command):
        return BookingService.transition(
            command.booking_id, states.CANCELED_CUSTOMER, cancel_reason=(command.reason or "").strip() or None
        )

    @staticmethod
    def cancel_by_provider(command):
        return BookingService.transition(
            command.booking_id, states.CANCELED_PROVIDER, cancel_reason=(command.reason or "").strip() or None
        )

    @staticmethod
    def complete(booking_id):
        booking = BookingService.transition(booking_id, states.COMPLETED)
        BookingService._release_earnings(booking_id)
        return booking

    @staticmethod
    def complete_by_provider(booking_id):
        booking = BookingService.transition(booking_id, states.COMPLETED_BY_PROVIDER)
        BookingService._release_earnings(booking_id)
        return booking

    @staticmethod
    def open_dispute(booking_id):
        return BookingService.transition(booking_id, states.DISPUTED)

    @staticmethod
    def resolve_dispute(command):
        """Close a dispute as ``completed`` or ``refunded``.

        A ``refunded`` outcome refunds whatever balance remains through the
        refund processor; the booking reaches ``refunded`` once that refund
        completes, never before.
        """
        booking = BookingService.get(command.booking_id)
        if booking.status != states.DISPUTED:
            raise ValidationError("Booking is not under dispute.")

        if command.outcome == states.COMPLETED:
            booking = BookingService.transition(command.booking_id, states.COMPLETED)
            BookingService._release_earnings(command.booking_id)
            return booking, None

        if command.outcome == states.REFUNDED:
            from app.services.refund_service import RefundCommand, RefundService

            remaining = RefundService.remaining_refundable(booking)
            if remaining <= 0:
                raise ValidationError("Nothing left to refund for this booking.")
            refund = RefundService.process_refund(
                RefundCommand(
                    booking_id=booking.id,
                    amount=remaining,
                    reason="dispute_resolution",
                    description=command.note,
                    admin_id=command.admin_id,
                ),
                source="dispute",
            )
            return BookingService.get(command.booking_id), refund

        raise ValidationError("Dispute outcome must be 'completed' or 'refunded'.")

    @staticmethod
    def _release_earnings(booking_id):
        if EarningsService.mark_awaiting_payout(booking_id):
            db.session.commit()
            current_app.logger.info("Earnings for booking %s are awaiting payout", booking_id)
