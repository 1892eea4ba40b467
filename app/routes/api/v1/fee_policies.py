from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from app.decorators import role_required
from app.errors import ValidationError
from app.services import FeePolicyService

api_fee_policy_bp = Blueprint("api_fee_policy", __name__)

MAX_PLAN_LENGTH = 24


def _policy_response(policy):
    return {
        "plan": policy.plan,
        "platformFeeBps": policy.platform_fee_bps,
        "updatedBy": policy.updated_by,
        "updatedAt": policy.updated_at.isoformat() if policy.updated_at else None,
    }


@api_fee_policy_bp.get("/fee-policies")
@role_required("admin")
def list_fee_policies():
    return jsonify(
        {
            "defaultPlatformFeeBps": int(current_app.config["PLATFORM_FEE_BPS"]),
            "policies": [_policy_response(p) for p in FeePolicyService.list_plan_policies()],
        }
    )


@api_fee_policy_bp.put("/fee-policies/<plan>")
@role_required("admin")
def set_plan_fee(plan):
    plan = plan.strip().lower()
    if not plan or len(plan) > MAX_PLAN_LENGTH:
        raise ValidationError(f"Plan name must be 1 to {MAX_PLAN_LENGTH} characters.")
    payload = request.get_json(silent=True) or {}
    try:
        policy = FeePolicyService.set_plan_fee_bps(plan, payload.get("platformFeeBps"), updated_by=current_user.id)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    current_app.logger.info("Plan %s platform fee set to %s bps by %s", plan, policy.platform_fee_bps, current_user.id)
    return jsonify(_policy_response(policy))


@api_fee_policy_bp.put("/providers/<provider_id>/fee-override")
@role_required("admin")
def set_provider_fee(provider_id):
    payload = request.get_json(silent=True) or {}
    if "platformFeeBps" not in payload:
        raise ValidationError("platformFeeBps is required; send null to clear the override.")
    try:
        provider = FeePolicyService.set_provider_fee_bps(provider_id, payload["platformFeeBps"])
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return jsonify(
        {
            "providerId": provider.id,
            "plan": provider.plan,
            "platformFeeBps": provider.platform_fee_bps,
            "effectivePlatformFeeBps": FeePolicyService.platform_fee_bps_for(provider),
        }
    )
