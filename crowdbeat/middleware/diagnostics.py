"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database, Redis and the identity service settings and logs a
summary banner.
"""

import logging
import sys

import redis as redis_lib
from flask import Flask
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from crowdbeat.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        table_count = "?"
        try:
            db.session.execute(db.text("SELECT 1"))
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found — run 'flask db upgrade'")
        except SQLAlchemyError as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        # ── Redis (events + limiter storage) ─────────────────────────
        redis_status = "not configured"
        redis_url = app.config.get("EVENTS_REDIS_URL") or app.config.get("REDIS_URL", "")
        if redis_url and "redis" in redis_url:
            try:
                redis_lib.from_url(redis_url, socket_timeout=2).ping()
                redis_status = "ok"
            except redis_lib.RedisError:
                redis_status = "unreachable"
                issues.append("Redis unreachable — session events and rate limits may not work")

        identity = "configured" if app.config.get("IDENTITY_SERVICE_URL") else "NOT SET"
        if identity == "NOT SET":
            issues.append("IDENTITY_SERVICE_URL not set — competition prizes will not be awarded")

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  CrowdBeat Session Core — Startup Diagnostics                ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {f'{db_type} ({db_status})':<46s}║
║  Tables      : {str(table_count):<46s}║
║  Redis       : {redis_status:<46s}║
║  Identity    : {identity:<46s}║
║  Vote limit  : {str(app.config.get('VOTE_RATE_LIMIT')):<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
