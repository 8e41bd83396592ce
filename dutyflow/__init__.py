"""
Duty Verification & Settlement Engine
Flask Application Factory.

Usage:
    from dutyflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_migrate import Migrate

from dutyflow.config import config, validate_duty_config
from dutyflow.middleware.identity import init_identity_middleware
from dutyflow.middleware.logging_config import configure_logging
from dutyflow.models import db

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


def _enable_sqlite_savepoints(engine):
    """Let SQLAlchemy, not pysqlite, own BEGIN so SAVEPOINTs nest correctly.

    pysqlite defers BEGIN until the first DML statement, so a SAVEPOINT
    issued earlier becomes the outermost transaction and RELEASE commits it.
    The vote upsert relies on ``begin_nested()`` inside the outer unit of
    work, hence the documented SQLAlchemy recipe.
    """
    if engine.dialect.name != "sqlite":
        return

    @_sa_event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @_sa_event.listens_for(engine, "begin")
    def _emit_begin(conn):
        # In-memory databases share one DBAPI connection across sessions.
        if not conn.connection.dbapi_connection.in_transaction:
            conn.exec_driver_sql("BEGIN")


def _register_notifier(app):
    from dutyflow.services.notification import InAppNotificationDispatcher

    app.extensions.setdefault("duty_notifier", InAppNotificationDispatcher())


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: invalid duty-engine settings (quorum threshold,
            admin roles).
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Engine settings are checked before anything touches the DB ───────
    validate_duty_config(app.config)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    _register_notifier(app)

    # ── Caller identity (sets g.caller from X-User-Id / X-User-Role) ─────
    init_identity_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from dutyflow.models import duty as _duty_models              # noqa: F401
    from dutyflow.models import claim as _claim_models            # noqa: F401
    from dutyflow.models import settlement as _settlement_models  # noqa: F401
    from dutyflow.models import activity as _activity_models      # noqa: F401
    from dutyflow.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        _enable_sqlite_savepoints(db.engine)
        if not app.config.get("TESTING") and db.engine.dialect.name == "sqlite":
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from dutyflow.blueprints.duty_bp import duty_bp
    from dutyflow.blueprints.notification_bp import notification_bp

    app.register_blueprint(duty_bp)
    app.register_blueprint(notification_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("check-settlements")
    def check_settlements_cmd():
        """List approved/paid duties whose final amount disagrees with their settlements."""
        from dutyflow.services.settlement_calculator import find_invariant_violations

        violations = find_invariant_violations()
        for v in violations:
            click.echo(json.dumps(v, default=str))
        logger.info("check-settlements: %d violation(s).", len(violations))
        if violations:
            raise SystemExit(1)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "dutyflow"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    return app
