import json
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from settlement.errors import SettlementError
from settlement.extensions import db, migrate, cors
from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.messaging.factory import messaging_health
from settlement.integrations.payouts.factory import payout_health
from settlement.models import User
from settlement.segments.segment_admin_ops import admin_ops_bp
from settlement.segments.segment_orders_api import orders_bp
from settlement.segments.segment_payment_webhooks import webhooks_bp
from settlement.segments.segment_reconciliation_admin import reconciliation_admin_bp
from settlement.segments.segment_risk_admin import risk_admin_bp, risk_bp
from settlement.utils.auth import reset_request_user
from settlement.utils.jwt_utils import create_access_token
from settlement.utils.observability import init_sentry, install_request_observers
from settlement.utils.settings import get_settings


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(value, maximum))


def _error_response(payload: dict, status: int):
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), status


def _dev_env(env: str) -> bool:
    return env in ("dev", "development", "local", "test")


def create_app(config: dict | None = None):
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("SETTLEMENT_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SETTLEMENT_ENV"] = env

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'settlement.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    if config:
        app.config.update(config)
        if str(app.config.get("SQLALCHEMY_DATABASE_URI", "")).startswith("sqlite://"):
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_pre_ping": True}

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    app.before_request(reset_request_user)

    @app.errorhandler(SettlementError)
    def _api_settlement_error(error: SettlementError):
        level = app.logger.error if int(error.http_status) >= 500 else app.logger.info
        level("settlement_error code=%s status=%s path=%s", error.code, error.http_status, request.path)
        return _error_response(error.to_dict(), int(error.http_status))

    @app.errorhandler(IntegrationDisabledError)
    @app.errorhandler(IntegrationMisconfiguredError)
    def _api_integration_error(error: Exception):
        app.logger.warning("integration_unavailable path=%s err=%s", request.path, error)
        code = "INTEGRATION_DISABLED" if isinstance(error, IntegrationDisabledError) else "INTEGRATION_MISCONFIGURED"
        return _error_response({"ok": False, "error": code, "message": str(error) or code, "status": 503}, 503)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return _error_response(payload, int(error.code or 500))

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return _error_response(payload, 500)

    app.register_blueprint(orders_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_ops_bp)
    app.register_blueprint(risk_bp)
    app.register_blueprint(risk_admin_bp)
    app.register_blueprint(reconciliation_admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "settlement-engine",
            "env": env,
            "db": db_state,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_state == "ok":
            try:
                settings = get_settings()
                payload["payouts"] = payout_health(settings)
                payload["messaging"] = messaging_health(settings)
            except Exception:
                db.session.rollback()
                payload["integrations"] = "unavailable"
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if not _dev_env(env) and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or SETTLEMENT_ENV=dev.")
        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        if not email:
            raise click.ClickException("ADMIN_EMAIL must be set.")
        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.role = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, role="admin")
                db.session.add(u)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")
        click.echo(f"admin_bootstrap_ok {u.email}")

    @app.cli.command("issue-token")
    @click.option("--user-id", "user_id", type=int, required=True, help="User to issue a bearer token for")
    @click.option("--ttl", "ttl", type=int, default=3600, show_default=True, help="Token lifetime in seconds")
    def issue_token(user_id: int, ttl: int):
        if not _dev_env(env) and (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() != "1":
            raise click.ClickException("Token issuing disabled outside dev.")
        if db.session.get(User, int(user_id)) is None:
            raise click.ClickException("User not found.")
        click.echo(create_access_token(int(user_id), ttl_seconds=int(ttl)))

    @app.cli.command("settlement-run")
    def settlement_run():
        from settlement.jobs.settlement_runner import run_settlement_cycle

        click.echo(json.dumps(run_settlement_cycle(), default=str))

    @app.cli.command("risk-sweep")
    def risk_sweep():
        from settlement.jobs.risk_runner import run_risk_sweep

        click.echo(json.dumps(run_risk_sweep(), default=str))

    return app
