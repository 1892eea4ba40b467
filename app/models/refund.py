from app.extensions import db
from app.models.base import IdType, TimestampMixin, new_id

REFUND_STATUSES = ("processing", "completed", "failed")


class RefundRecord(TimestampMixin, db.Model):
    __tablename__ = "refunds"

    id = db.Column(IdType, primary_key=True, default=lambda: new_id("refund"))
    booking_id = db.Column(IdType, db.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(24), nullable=False, default="admin")

    platform_fee_refunded = db.Column(db.Integer, nullable=False, default=0)
    provider_amount_refunded = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default="processing", index=True)
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True)
    gateway_refund_reference = db.Column(db.String(255), nullable=True, unique=True)
    failure_reason = db.Column(db.Text, nullable=True)
    processed_by = db.Column(db.String(64), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    booking = db.relationship("Booking", back_populates="refunds")

    __table_args__ = (
        db.Index("ix_refunds_booking_status", "booking_id", "status"),
        db.CheckConstraint("amount > 0", name="ck_refund_amount_positive"),
    )
