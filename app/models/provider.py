from app.extensions import db
from app.models.base import IdType, TimestampMixin, new_id


class Provider(TimestampMixin, db.Model):
    __tablename__ = "providers"

    id = db.Column(IdType, primary_key=True, default=lambda: new_id("prov"))
    display_name = db.Column(db.String(140), nullable=False)
    plan = db.Column(db.String(24), nullable=False, default="starter", index=True)
    charges_gst = db.Column(db.Boolean, nullable=False, default=True)
    # Per-provider override; falls back to the plan's fee policy when null.
    platform_fee_bps = db.Column(db.Integer, nullable=True)

    services = db.relationship("Service", back_populates="provider", lazy="dynamic")

    __table_args__ = (
        db.CheckConstraint(
            "platform_fee_bps IS NULL OR (platform_fee_bps >= 0 AND platform_fee_bps <= 10000)",
            name="ck_provider_fee_bps_range",
        ),
    )


class Service(TimestampMixin, db.Model):
    __tablename__ = "services"

    id = db.Column(IdType, primary_key=True, default=lambda: new_id("svc"))
    provider_id = db.Column(IdType, db.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(140), nullable=False)
    charges_gst = db.Column(db.Boolean, nullable=True)

    provider = db.relationship("Provider", back_populates="services")
