from app.extensions import db
from app.models.base import TimestampMixin


class FeePolicy(TimestampMixin, db.Model):
    __tablename__ = "fee_policies"

    plan = db.Column(db.String(24), primary_key=True)
    platform_fee_bps = db.Column(db.Integer, nullable=False)
    updated_by = db.Column(db.String(64), nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "platform_fee_bps >= 0 AND platform_fee_bps <= 10000",
            name="ck_fee_policy_bps_range",
        ),
    )
