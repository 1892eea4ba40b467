import os
from datetime import timedelta

import click
from dotenv import load_dotenv
from flask import Flask
from flask.cli import AppGroup
from werkzeug.middleware.proxy_fix import ProxyFix

from app.config import config_by_env
from app.decorators import Actor
from app.errors import register_error_handlers
from app.extensions import cache, db, limiter, login_manager, migrate
from app.routes.api.v1 import api_v1_bp
from app.services import RefundService

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


@login_manager.request_loader
def load_actor(request):
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip().lower()
    if not actor_id or not role:
        return None
    return Actor(actor_id, role)


refunds_cli = AppGroup("refunds", help="Refund ledger maintenance.")


@refunds_cli.command("reconcile")
@click.option("--older-than", "older_than", type=int, default=None, help="Minutes a refund must have been processing.")
@click.option("--limit", type=int, default=50, show_default=True)
def reconcile_refunds_command(older_than, limit):
    """Resolve refunds stuck in processing against the payment processor."""
    window = timedelta(minutes=older_than) if older_than is not None else None
    counts = RefundService.reconcile_stuck_refunds(older_than=window, limit=limit)
    click.echo(
        "completed={completed} failed={failed} processing={processing} errors={errors}".format(**counts)
    )


def create_app(env=None):
    load_dotenv()
    env = env or os.getenv("FLASK_ENV", "development")

    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_by_env.get(env, config_by_env["development"]))
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if db_uri.startswith("sqlite:///") and not db_uri.startswith("sqlite:////") and db_uri != "sqlite:///:memory:":
        relative_path = db_uri.replace("sqlite:///", "", 1)
        absolute_path = os.path.join(project_root, relative_path)
        os.makedirs(os.path.dirname(absolute_path), exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{absolute_path}"

    db.init_app(app)
    migrate.init_app(app, db)
    cache.init_app(app)
    limiter.init_app(app)
    login_manager.init_app(app)
    _init_sentry(app, env)

    register_error_handlers(app)

    app.register_blueprint(api_v1_bp, url_prefix="/api/v1")
    app.cli.add_command(refunds_cli)

    if env in ("development", "testing"):
        with app.app_context():
            db.create_all()

    return app


def _init_sentry(app, env):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05")),
            environment=env,
        )
        app.logger.info("Sentry initialized.")
    except Exception as exc:
        app.logger.warning("Sentry initialization failed: %s", exc)
