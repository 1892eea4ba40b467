from flask import current_app

from app.errors import NotFoundError
from app.extensions import cache, db
from app.models import FeePolicy, Provider
from app.services.earnings_split import NO_GST, GstRule


class FeePolicyService:
    @staticmethod
    @cache.memoize()
    def plan_fee_bps(plan):
        policy = db.session.get(FeePolicy, plan)
        if not policy:
            return None
        return policy.platform_fee_bps

    @staticmethod
    def _checked_bps(platform_fee_bps):
        if isinstance(platform_fee_bps, bool) or not isinstance(platform_fee_bps, int):
            raise ValueError("platform_fee_bps must be an integer")
        if not 0 <= platform_fee_bps <= 10000:
            raise ValueError("platform_fee_bps must be between 0 and 10000")
        return platform_fee_bps

    @staticmethod
    def list_plan_policies():
        return FeePolicy.query.order_by(FeePolicy.plan.asc()).all()

    @staticmethod
    def set_plan_fee_bps(plan, platform_fee_bps, updated_by=None):
        bps = FeePolicyService._checked_bps(platform_fee_bps)
        policy = db.session.get(FeePolicy, plan)
        if policy:
            policy.platform_fee_bps = bps
            policy.updated_by = updated_by
        else:
            policy = FeePolicy(plan=plan, platform_fee_bps=bps, updated_by=updated_by)
            db.session.add(policy)
        db.session.commit()
        cache.delete_memoized(FeePolicyService.plan_fee_bps, plan)
        return policy

    @staticmethod
    def set_provider_fee_bps(provider_id, platform_fee_bps):
        """Set or, with None, clear a provider's own fee. Only later splits see the change."""
        provider = db.session.get(Provider, provider_id)
        if provider is None:
            raise NotFoundError("Provider not found.")
        provider.platform_fee_bps = (
            None if platform_fee_bps is None else FeePolicyService._checked_bps(platform_fee_bps)
        )
        db.session.commit()
        current_app.logger.info("Provider %s platform fee set to %s bps", provider_id, provider.platform_fee_bps)
        return provider

    @staticmethod
    def platform_fee_bps_for(provider):
        if provider.platform_fee_bps is not None:
            return provider.platform_fee_bps
        plan_bps = FeePolicyService.plan_fee_bps(provider.plan)
        if plan_bps is not None:
            return plan_bps
        return int(current_app.config["PLATFORM_FEE_BPS"])

    @staticmethod
    def charges_gst(booking):
        if booking.service is not None and booking.service.charges_gst is not None:
            return booking.service.charges_gst
        return bool(booking.provider.charges_gst)

    @staticmethod
    def gst_rule():
        rate = int(current_app.config.get("GST_RATE_BPS", 0))
        if rate <= 0:
            return NO_GST
        return GstRule(rate_bps=rate, inclusive=bool(current_app.config.get("GST_INCLUSIVE", True)))
