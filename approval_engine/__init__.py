"""
Approval Workflow Engine
Flask Application Factory.

Usage:
    from approval_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate

from approval_engine.config import config
from approval_engine.models import db
from approval_engine.middleware.logging_config import configure_logging
from approval_engine.middleware.diagnostics import run_startup_diagnostics
from approval_engine.services.engine import init_engine

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


def create_app(config_name=None, directory=None, notifier=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        directory: Optional Directory adapter overriding APPROVAL_DIRECTORY_FILE.
        notifier: Optional NotificationPort overriding APPROVAL_NOTIFICATIONS.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from approval_engine.models import approval as _approval_models        # noqa: F401
    from approval_engine.models import directory as _directory_models      # noqa: F401
    from approval_engine.models import notification as _notification_models  # noqa: F401
    from approval_engine.models import performance as _performance_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        if str(app.config.get("SQLALCHEMY_DATABASE_URI", "")).startswith("sqlite:///") and \
                ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Engine collaborators (directory, builder, notifications) ─────────
    init_engine(app, directory=directory, notifier=notifier)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-directory")
    def seed_directory_cmd():
        """Load APPROVAL_DIRECTORY_FILE (or the sample org chart) into the employees table."""
        from approval_engine.services.directory_admin import seed_employees
        count = seed_employees(app.config.get("APPROVAL_DIRECTORY_FILE"))
        logger.info("Seeded %s employees.", count)

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    return app
