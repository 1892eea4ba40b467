from flask import current_app, jsonify
from sqlalchemy.exc import IntegrityError, OperationalError


class AppError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message}


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class IllegalTransition(AppError):
    status_code = 409

    def __init__(self, current, target):
        super().__init__(f"Invalid booking status transition from '{current}' to '{target}'.")
        self.current = current
        self.target = target

    def to_dict(self):
        return {"error": self.message, "current": self.current, "target": self.target}


class ConcurrencyConflict(AppError):
    status_code = 409


class GatewayError(AppError):
    """The payment processor rejected or failed a call.

    ``refund_id`` points at the durable refund record when one exists so the
    caller can follow up on it.
    """

    status_code = 502

    def __init__(self, message, refund_id=None, status_code=None):
        super().__init__(message, status_code)
        self.refund_id = refund_id

    def to_dict(self):
        payload = {"error": self.message}
        if self.refund_id:
            payload["refundId"] = self.refund_id
        return payload


class GatewayTimeout(GatewayError):
    status_code = 504


class TransientInfraError(AppError):
    status_code = 503


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(err):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(_err):
        app.logger.warning("Database integrity error")
        return jsonify({"error": "Conflict. Resource already exists."}), 409

    @app.errorhandler(OperationalError)
    def handle_operational_error(_err):
        current_app.logger.exception("Data store unavailable")
        return jsonify({"error": "Service temporarily unavailable"}), 503

    @app.errorhandler(400)
    def bad_request(_err):
        return jsonify({"error": "Bad request"}), 400

    @app.errorhandler(401)
    def unauthorized(_err):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(_err):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(_err):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_err):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def server_error(_err):
        app.logger.exception("Internal server error")
        return jsonify({"error": "Internal server error"}), 500
