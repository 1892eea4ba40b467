from flask import Blueprint

from app.routes.api.v1.earnings import api_earnings_bp
from app.routes.api.v1.fee_policies import api_fee_policy_bp
from app.routes.api.v1.refunds import api_admin_bp
from app.routes.api.v1.webhooks import api_webhook_bp

api_v1_bp = Blueprint("api_v1", __name__)
api_v1_bp.register_blueprint(api_webhook_bp, url_prefix="/webhooks")
api_v1_bp.register_blueprint(api_admin_bp, url_prefix="/admin")
api_v1_bp.register_blueprint(api_fee_policy_bp, url_prefix="/admin")
api_v1_bp.register_blueprint(api_earnings_bp, url_prefix="/earnings")
