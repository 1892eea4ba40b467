from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.errors import NotFoundError, ValidationError
from app.extensions import db
from app.models import EARNING_STATUSES, EarningsRecord
from app.services.earnings_split import split
from app.services.fee_policy_service import FeePolicyService

PAYOUT_QUERY_STATUSES = ("held", "awaiting_payout", "paid_out")


class EarningsService:
    @staticmethod
    def for_booking(booking_id):
        return EarningsRecord.query.filter_by(booking_id=booking_id).first()

    @staticmethod
    def upsert_for_booking(booking, payment_reference):
        """Create the booking's ledger row, or refresh it if one already exists.

        Runs inside the caller's transaction. The unique ``booking_id`` column is
        the arbiter when two workers race on the insert: the loser's savepoint is
        rolled back and it updates the winner's row instead.
        """
        platform_fee_bps = FeePolicyService.platform_fee_bps_for(booking.provider)
        charges_gst = FeePolicyService.charges_gst(booking)
        parts = split(booking.charged_amount, platform_fee_bps, charges_gst, FeePolicyService.gst_rule())

        record = EarningsService.for_booking(booking.id)
        if record is None:
            record = EarningsRecord(
                booking_id=booking.id,
                provider_id=booking.provider_id,
                gross_amount=booking.charged_amount,
                platform_fee_amount=parts.platform_fee_amount,
                gst_amount=parts.gst_amount,
                net_amount=parts.net_amount,
                platform_fee_bps=platform_fee_bps,
                charges_gst=charges_gst,
                status="held",
                payment_reference=payment_reference,
            )
            try:
                with db.session.begin_nested():
                    db.session.add(record)
                return record
            except IntegrityError:
                current_app.logger.info("Earnings row for booking %s created concurrently", booking.id)
                record = EarningsService.for_booking(booking.id)

        if record.status != "held":
            # Past the point where a late payment event may rewrite the split.
            if not record.payment_reference:
                record.payment_reference = payment_reference
            return record

        record.gross_amount = booking.charged_amount
        record.platform_fee_amount = parts.platform_fee_amount
        record.gst_amount = parts.gst_amount
        record.net_amount = parts.net_amount
        record.platform_fee_bps = platform_fee_bps
        record.charges_gst = charges_gst
        record.payment_reference = payment_reference
        return record

    @staticmethod
    def prorate_refund(booking, amount):
        """Split a refund with the fee inputs used when the booking was paid."""
        record = EarningsService.for_booking(booking.id)
        if record is not None:
            platform_fee_bps = record.platform_fee_bps
            charges_gst = record.charges_gst
        else:
            platform_fee_bps = FeePolicyService.platform_fee_bps_for(booking.provider)
            charges_gst = FeePolicyService.charges_gst(booking)
        return split(amount, platform_fee_bps, charges_gst, FeePolicyService.gst_rule())

    @staticmethod
    def apply_refund(booking_id, parts, fully_refunded):
        """Add a refund's split to the ledger row as in-database increments."""
        updated = (
            EarningsRecord.query.filter_by(booking_id=booking_id)
            .update(
                {
                    EarningsRecord.refunded_platform_fee: EarningsRecord.refunded_platform_fee
                    + parts.platform_fee_amount,
                    EarningsRecord.refunded_gst_amount: EarningsRecord.refunded_gst_amount + parts.gst_amount,
                    EarningsRecord.refunded_net_amount: EarningsRecord.refunded_net_amount + parts.net_amount,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            current_app.logger.warning("Refund applied to booking %s without an earnings row", booking_id)
            return False
        if fully_refunded:
            EarningsRecord.query.filter(
                EarningsRecord.booking_id == booking_id, EarningsRecord.status != "paid_out"
            ).update({"status": "refunded"}, synchronize_session=False)
        return True

    @staticmethod
    def mark_awaiting_payout(booking_id):
        updated = (
            EarningsRecord.query.filter_by(booking_id=booking_id, status="held")
            .update({"status": "awaiting_payout"}, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def record_payout(booking_id, transfer_reference):
        transfer_reference = (transfer_reference or "").strip()
        if not transfer_reference:
            raise ValidationError("Transfer reference is required.")

        record = EarningsService.for_booking(booking_id)
        if record is None:
            raise NotFoundError("Earnings record not found.")
        if record.status == "paid_out":
            if record.transfer_reference == transfer_reference:
                return record
            raise ValidationError("Earnings already paid out under a different transfer.")
        if record.status != "awaiting_payout":
            raise ValidationError(f"Earnings in status '{record.status}' cannot be paid out.")

        updated = (
            EarningsRecord.query.filter_by(id=record.id, status="awaiting_payout")
            .update(
                {
                    "status": "paid_out",
                    "transfer_reference": transfer_reference,
                    "paid_out_at": datetime.now(timezone.utc),
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        db.session.refresh(record)
        if not updated and record.transfer_reference != transfer_reference:
            raise ValidationError("Earnings were paid out concurrently under a different transfer.")
        current_app.logger.info("Earnings for booking %s paid out via %s", booking_id, transfer_reference)
        return record

    @staticmethod
    def net_by_provider(statuses=None):
        statuses = list(statuses or PAYOUT_QUERY_STATUSES)
        unknown = [s for s in statuses if s not in EARNING_STATUSES]
        if unknown:
            raise ValidationError(f"Unknown earnings status: {', '.join(unknown)}.")

        rows = (
            db.session.query(
                EarningsRecord.provider_id,
                func.count(EarningsRecord.id),
                func.coalesce(func.sum(EarningsRecord.net_amount), 0),
                func.coalesce(func.sum(EarningsRecord.refunded_net_amount), 0),
            )
            .filter(EarningsRecord.status.in_(statuses))
            .group_by(EarningsRecord.provider_id)
            .order_by(EarningsRecord.provider_id)
            .all()
        )
        return [
            {
                "provider_id": provider_id,
                "records": int(count),
                "net_amount": int(net),
                "refunded_net_amount": int(refunded),
                "payable_net_amount": int(net) - int(refunded),
            }
            for provider_id, count, net, refunded in rows
        ]

    @staticmethod
    def summary_for_provider(provider_id):
        rows = (
            db.session.query(
                EarningsRecord.status,
                func.coalesce(func.sum(EarningsRecord.gross_amount), 0),
                func.coalesce(func.sum(EarningsRecord.platform_fee_amount), 0),
                func.coalesce(func.sum(EarningsRecord.gst_amount), 0),
                func.coalesce(func.sum(EarningsRecord.net_amount), 0),
            )
            .filter(EarningsRecord.provider_id == provider_id)
            .group_by(EarningsRecord.status)
            .all()
        )
        summary = {status: {"gross": 0, "fee": 0, "gst": 0, "net": 0} for status in EARNING_STATUSES}
        for status, gross, fee, gst, net in rows:
            summary[status] = {"gross": int(gross), "fee": int(fee), "gst": int(gst), "net": int(net)}
        return summary
