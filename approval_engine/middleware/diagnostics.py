"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database and that every configured role holder resolves in the
directory, then logs a summary banner.
"""

import logging
import sys

from flask import Flask

from approval_engine.models import db
from approval_engine.services.engine import get_engine

logger = logging.getLogger(__name__)

_ROLE_SETTINGS = (
    ("Finance", "APPROVAL_FINANCE_OFFICER_KEY"),
    ("Business head", "APPROVAL_BUSINESS_HEAD_KEY"),
    ("Supply chain", "APPROVAL_SUPPLY_CHAIN_COORDINATOR_KEY"),
    ("Grading fallback", "APPROVAL_GRADING_FALLBACK_KEY"),
)


def _role_status(directory, key):
    if not key:
        return "NOT SET"
    identity = directory.resolve(key)
    if identity is None:
        return f"{key} (NOT FOUND)"
    if not identity.is_active:
        return f"{key} (INACTIVE)"
    return key


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        # ── Python version ───────────────────────────────────────────
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Role holders ─────────────────────────────────────────────
        engine = get_engine()
        roles = []
        for label, setting in _ROLE_SETTINGS:
            try:
                status = _role_status(engine.directory, app.config.get(setting))
            except Exception as exc:
                status = "lookup failed"
                issues.append(f"Directory lookup failed: {exc}")
            if "NOT" in status or "INACTIVE" in status:
                issues.append(f"{setting}: {status}")
            roles.append((label, status))
        db.session.rollback()

        # ── Banner ───────────────────────────────────────────────────
        role_lines = "\n".join(f"║  {label:<17s}: {status[:41]:<41s}║" for label, status in roles)
        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Approval Workflow Engine — Startup Diagnostics             ║
╠══════════════════════════════════════════════════════════════╣
║  Python           : {py:<41s}║
║  Debug            : {str(app.debug):<41s}║
║  Database         : {f'{db_type} ({db_status})'[:41]:<41s}║
║  Directory        : {type(engine.directory).__name__:<41s}║
║  Notifications    : {type(engine.notifier).__name__:<41s}║
║  Max levels       : {str(engine.builder.max_levels):<41s}║
{role_lines}
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
