from app.extensions import db
from app.models.base import IdType, TimestampMixin, new_id


class Booking(TimestampMixin, db.Model):
    __tablename__ = "bookings"

    id = db.Column(IdType, primary_key=True, default=lambda: new_id("bkg"))
    provider_id = db.Column(IdType, db.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = db.Column(IdType, db.ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_id = db.Column(IdType, nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_reference = db.Column(db.String(255), nullable=True, unique=True, index=True)
    # Minor units. Written once at creation and never changed.
    charged_amount = db.Column(db.Integer, nullable=False)
    # Bumped by every refund claim; the conditional bump serialises claims per booking.
    refund_version = db.Column(db.Integer, nullable=False, default=0)

    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    disputed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    provider = db.relationship("Provider")
    service = db.relationship("Service")
    earnings = db.relationship("EarningsRecord", back_populates="booking", uselist=False)
    refunds = db.relationship("RefundRecord", back_populates="booking", lazy="dynamic")

    __table_args__ = (
        db.Index("ix_bookings_provider_status", "provider_id", "status"),
        db.CheckConstraint("charged_amount >= 0", name="ck_booking_charged_amount_non_negative"),
    )
