import os
from pathlib import Path

import click
import sentry_sdk
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from carmarket.extensions import cors, db, migrate
from carmarket.integrations.messaging.factory import messaging_health
from carmarket.integrations.payments.factory import payment_health
from carmarket.models import User
from carmarket.segments.segment_admin import admin_bp
from carmarket.segments.segment_admin_disputes import disputes_bp
from carmarket.segments.segment_admin_moderation import moderation_bp
from carmarket.segments.segment_admin_rentals import admin_rentals_bp
from carmarket.segments.segment_analytics import analytics_bp
from carmarket.segments.segment_auth import auth_bp
from carmarket.segments.segment_availability import availability_bp
from carmarket.segments.segment_bookings import bookings_bp
from carmarket.segments.segment_categories import categories_bp
from carmarket.segments.segment_commissions import commissions_bp
from carmarket.segments.segment_content import content_admin_bp, content_bp
from carmarket.segments.segment_fleet import fleet_bp
from carmarket.segments.segment_listings import listings_bp
from carmarket.segments.segment_notifications import notifications_bp
from carmarket.segments.segment_payments import payments_bp
from carmarket.segments.segment_rentals import rentals_bp
from carmarket.segments.segment_reviews import reviews_bp
from carmarket.segments.segment_search import search_bp
from carmarket.segments.segment_seo import seo_bp
from carmarket.segments.segment_subscriptions import subscriptions_bp
from carmarket.segments.segment_users import users_bp
from carmarket.services.notification_service import enqueue_request_deliveries
from carmarket.utils.http import error_response
from carmarket.utils.jwt_utils import decode_access_token, get_bearer_token
from carmarket.utils.observability import init_sentry, install_request_observers
from carmarket.utils.rate_limit import guard_request, rate_limit_enabled


SERVICE_NAME = "kenya-car-marketplace"
PRODUCTION_ENVS = ("prod", "production")
ADMIN_BOOTSTRAP_ENVS = ("dev", "development", "local", "test")
MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"

BLUEPRINTS = (
    auth_bp,
    users_bp,
    categories_bp,
    listings_bp,
    rentals_bp,
    bookings_bp,
    availability_bp,
    fleet_bp,
    payments_bp,
    reviews_bp,
    notifications_bp,
    subscriptions_bp,
    commissions_bp,
    search_bp,
    analytics_bp,
    admin_bp,
    moderation_bp,
    disputes_bp,
    admin_rentals_bp,
    content_admin_bp,
    content_bp,
    seo_bp,
)


def _truthy(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in ("1", "true", "yes", "on")


def _bounded_env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int((os.getenv(name) or "").strip() or default)
    except ValueError:
        value = default
    return max(low, min(value, high))


def _alembic_head() -> str:
    from alembic.config import Config
    from alembic.script import ScriptDirectory
    from alembic.util import CommandError

    cfg = Config(str(MIGRATIONS_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    try:
        heads = ScriptDirectory.from_config(cfg).get_heads()
    except (CommandError, OSError):
        return "unknown"
    return heads[0] if heads else "unknown"


def _release() -> str:
    return (os.getenv("GIT_SHA") or os.getenv("SOURCE_VERSION") or "").strip() or "unknown"


def _database_url() -> str:
    url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not url:
        instance_dir = MIGRATIONS_DIR.parent / "instance"
        instance_dir.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{(instance_dir / 'carmarket.db').as_posix()}"
    # Heroku-style URLs still use the deprecated scheme.
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def _engine_options(database_url: str) -> dict:
    options = {
        "pool_pre_ping": True,
        "pool_recycle": _bounded_env_int("DB_POOL_RECYCLE_SECONDS", 1800, 60, 86400),
    }
    if database_url.startswith("sqlite://"):
        return options
    options.update(
        pool_reset_on_return="rollback",
        pool_size=_bounded_env_int("DB_POOL_SIZE", 10, 1, 200),
        max_overflow=_bounded_env_int("DB_MAX_OVERFLOW", 20, 0, 500),
        pool_timeout=_bounded_env_int("DB_POOL_TIMEOUT_SECONDS", 30, 1, 300),
    )
    return options


def _check_production_settings(env: str) -> None:
    if env not in PRODUCTION_ENVS:
        return
    if len((os.getenv("SECRET_KEY") or "").strip()) < 16:
        raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
    if not (os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
        raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_error(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        return error_response(error.description or error.name, int(error.code or 500), error=error.name)

    @app.errorhandler(Exception)
    def _unhandled_error(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        return error_response("Internal server error", 500, error="InternalServerError")


def _register_meta_routes(app: Flask, env: str) -> None:
    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": SERVICE_NAME, "env": env})

    @app.get("/api/version")
    def version():
        return jsonify({"ok": True, "alembic_head": _alembic_head(), "git_sha": _release()})

    @app.get("/api/health")
    def health():
        payload = {"ok": True, "service": SERVICE_NAME, "env": env, "db": "ok", "git_sha": _release()}
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            payload.update(ok=False, db="fail", db_error=str(exc)[:300])
        payload["alembic_head"] = _alembic_head()
        payload["integrations"] = {"payments": payment_health(), "sms": messaging_health()}
        return jsonify(payload), 200 if payload["ok"] else 503


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def _identify_caller():
        g.auth_user_id = None
        g.auth_role = None
        claims = decode_access_token(get_bearer_token(request.headers.get("Authorization", "")) or "")
        if not claims:
            return
        try:
            g.auth_user_id = int(claims.get("sub"))
        except (TypeError, ValueError):
            return
        g.auth_role = (claims.get("role") or "").strip().lower() or None
        sentry_sdk.set_user({"id": str(g.auth_user_id)})
        if g.auth_role:
            sentry_sdk.set_tag("auth_role", g.auth_role)

    @app.before_request
    def _apply_rate_tiers():
        if app.config.get("TESTING") and not _truthy("RATE_LIMIT_IN_TESTS"):
            return None
        if not rate_limit_enabled(True):
            return None
        return guard_request()

    @app.before_request
    def _fresh_session():
        db.session.rollback()

    @app.after_request
    def _flush_notification_queue(response):
        if response.status_code < 500:
            enqueue_request_deliveries()
        return response

    @app.teardown_request
    def _close_session(exc):
        if exc is not None:
            db.session.rollback()
        db.session.remove()


def _register_cli(app: Flask) -> None:
    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        """Create or promote the admin named by ADMIN_EMAIL / ADMIN_PASSWORD."""
        cli_env = (os.getenv("CARMARKET_ENV") or os.getenv("FLASK_ENV") or "dev").strip().lower()
        if cli_env not in ADMIN_BOOTSTRAP_ENVS and not _truthy("ALLOW_ADMIN_BOOTSTRAP"):
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or CARMARKET_ENV=dev.")
        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")
        if len(password) < 8:
            raise click.ClickException("ADMIN_PASSWORD must be at least 8 characters.")

        admin = User.query.filter_by(email=email).first()
        if admin is None:
            admin = User(name=email.split("@")[0], email=email, is_verified=True)
            db.session.add(admin)
        admin.role = "admin"
        admin.is_active = True
        admin.set_password(password)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.") from exc
        click.echo(f"admin_bootstrap_ok {admin.email}")

    @app.cli.command("expire-listings")
    def expire_listings_command():
        """Run one expiry sweep over listings, rentals and subscriptions."""
        from carmarket.services.listing_service import expire_listings

        result = expire_listings()
        click.echo(" ".join(["expire_listings_ok"] + [f"{key}={value}" for key, value in sorted(result.items())]))


def create_app():
    env = (os.getenv("CARMARKET_ENV") or "dev").strip().lower()
    _check_production_settings(env)

    app = Flask(__name__)
    init_sentry(app)

    database_url = _database_url()
    app.config.update(
        SECRET_KEY=os.getenv("SECRET_KEY", "dev-secret"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SQLALCHEMY_DATABASE_URI=database_url,
        SQLALCHEMY_ENGINE_OPTIONS=_engine_options(database_url),
    )

    origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "").split(",") if o.strip()]
    if not origins and env not in PRODUCTION_ENVS:
        origins = ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    _register_error_handlers(app)
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)
    _register_meta_routes(app, env)
    _register_request_hooks(app)
    _register_cli(app)
    return app
