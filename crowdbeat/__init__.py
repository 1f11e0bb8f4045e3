"""
CrowdBeat Session Core
Flask Application Factory.

Usage:
    from crowdbeat import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, abort, g, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from crowdbeat.config import config
from crowdbeat.core.exceptions import DomainError
from crowdbeat.models import db
from crowdbeat.middleware.diagnostics import run_startup_diagnostics
from crowdbeat.middleware.identity import init_identity
from crowdbeat.middleware.logging_config import configure_logging
from crowdbeat.middleware.rate_limiter import init_rate_limits
from crowdbeat.middleware.security_headers import init_security_headers
from crowdbeat.middleware.timing import init_request_timing
from crowdbeat.services.event_publisher import init_event_publisher
from crowdbeat.utils.errors import E, KIND_TO_CODE, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
# Storage comes from RATELIMIT_STORAGE_URI (Redis in production, memory for dev)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
)


def create_app(config_name=None, event_publisher=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        event_publisher: Optional publisher replacing the configured one
                         (tests pass a recorder).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Caller identity (trusted gateway headers → g.user_*) ─────────────
    init_identity(app)

    # ── Security headers ─────────────────────────────────────────────────
    init_security_headers(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Session event fan-out ────────────────────────────────────────────
    init_event_publisher(app, event_publisher)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 256 * 1024)  # 256 KB

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        # Content-Type validation for mutating methods
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from crowdbeat.models import session as _session_models          # noqa: F401
    from crowdbeat.models import element as _element_models          # noqa: F401
    from crowdbeat.models import competition as _competition_models  # noqa: F401
    from crowdbeat.models import lyrics as _lyrics_models            # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from crowdbeat.blueprints.session_bp import session_bp
    from crowdbeat.blueprints.moderation_bp import moderation_bp
    from crowdbeat.blueprints.element_bp import element_bp
    from crowdbeat.blueprints.competition_bp import competition_bp
    from crowdbeat.blueprints.lyrics_bp import lyrics_bp
    from crowdbeat.blueprints.health_bp import health_bp

    app.register_blueprint(session_bp)
    app.register_blueprint(moderation_bp)
    app.register_blueprint(element_bp)
    app.register_blueprint(competition_bp)
    app.register_blueprint(lyrics_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(DomainError)
    def domain_error(exc):
        db.session.rollback()
        code = KIND_TO_CODE.get(exc.kind, E.BAD_REQUEST)
        logger.info(
            "Refused %s %s: %s", request.method, request.path, exc.message,
            extra={"user_id": getattr(g, "user_id", None)},
        )
        return api_error(code, exc.message, details=getattr(exc, "details", None))

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.BAD_REQUEST, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(Exception)
    def unexpected_error(exc):
        if isinstance(exc, HTTPException):
            return api_error(E.BAD_REQUEST, exc.description or exc.name, status=exc.code)
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
