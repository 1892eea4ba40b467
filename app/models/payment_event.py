from app.extensions import db
from app.models.base import IdType, TimestampMixin


class PaymentEventLog(TimestampMixin, db.Model):
    __tablename__ = "payment_events"

    event_id = db.Column(db.String(255), primary_key=True)
    kind = db.Column(db.String(32), nullable=False)
    payment_reference = db.Column(db.String(255), nullable=True, index=True)
    booking_id = db.Column(IdType, nullable=True, index=True)
    outcome = db.Column(db.String(24), nullable=False)
    detail = db.Column(db.String(255), nullable=True)
