from app.extensions import db
from app.models.base import IdType, TimestampMixin, new_id

EARNING_STATUSES = ("held", "awaiting_payout", "paid_out", "refunded")


class EarningsRecord(TimestampMixin, db.Model):
    __tablename__ = "provider_earnings"

    id = db.Column(IdType, primary_key=True, default=lambda: new_id("earn"))
    booking_id = db.Column(IdType, db.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    provider_id = db.Column(IdType, db.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)

    gross_amount = db.Column(db.Integer, nullable=False)
    platform_fee_amount = db.Column(db.Integer, nullable=False)
    gst_amount = db.Column(db.Integer, nullable=False, default=0)
    net_amount = db.Column(db.Integer, nullable=False)
    # Fee inputs at payment time; refunds are prorated with the same inputs.
    platform_fee_bps = db.Column(db.Integer, nullable=False)
    charges_gst = db.Column(db.Boolean, nullable=False)

    refunded_platform_fee = db.Column(db.Integer, nullable=False, default=0)
    refunded_gst_amount = db.Column(db.Integer, nullable=False, default=0)
    refunded_net_amount = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(24), nullable=False, default="held", index=True)
    payment_reference = db.Column(db.String(255), nullable=True)
    transfer_reference = db.Column(db.String(255), nullable=True, unique=True)
    paid_out_at = db.Column(db.DateTime(timezone=True), nullable=True)

    booking = db.relationship("Booking", back_populates="earnings")

    __table_args__ = (
        db.Index("ix_provider_earnings_provider_status", "provider_id", "status"),
        db.CheckConstraint(
            "gross_amount = platform_fee_amount + gst_amount + net_amount",
            name="ck_earnings_split_sums_to_gross",
        ),
    )

    @property
    def payable_net_amount(self):
        return self.net_amount - self.refunded_net_amount
