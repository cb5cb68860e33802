"""
Accounting Admin Console
Flask Application Factory.

Usage:
    from admin_console import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from admin_console.config import config
from admin_console.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    ValidationError,
)
from admin_console.middleware.jwt_auth import init_jwt_middleware
from admin_console.middleware.logging_config import configure_logging
from admin_console.middleware.rate_limiter import init_rate_limits
from admin_console.middleware.tenant_context import init_tenant_context
from admin_console.middleware.timing import init_request_timing
from admin_console.models import db
from admin_console.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite: FK enforcement + real SAVEPOINT support (global engine events) ──
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _configure_sqlite(dbapi_conn, connection_record):
    """Enable foreign keys and hand transaction control to SQLAlchemy."""
    if "sqlite" in type(dbapi_conn).__module__:
        # pysqlite's implicit BEGIN breaks nested transactions
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # limits applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

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
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, resources={r"/api/*": {"origins": [o.strip() for o in cors_origins.split(",") if o.strip()]}})
    else:
        CORS(app, resources={r"/api/*": {"origins": "*"}})

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── JWT auth middleware (sets g.jwt_user_id / tenant / role) ─────────
    init_jwt_middleware(app)

    # ── Tenant context middleware (sets g.tenant from JWT) ───────────────
    init_tenant_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.get_data(cache=True) and "json" not in ct:
                return api_error(E.UNSUPPORTED_MEDIA, "Content-Type must be application/json")
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from admin_console.models import audit as _audit_models               # noqa: F401
    from admin_console.models import auth as _auth_models                 # noqa: F401
    from admin_console.models import bulk_operation as _bulk_models       # noqa: F401
    from admin_console.models import settings as _settings_models         # noqa: F401
    from admin_console.models import workflow as _workflow_models         # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS; tests manage their own) ─
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except SQLAlchemyError as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from admin_console.blueprints.admin_users_bp import admin_users_bp
    from admin_console.blueprints.audit_bp import audit_bp
    from admin_console.blueprints.bulk_operations_bp import bulk_operations_bp
    from admin_console.blueprints.dashboard_bp import dashboard_bp
    from admin_console.blueprints.entities_bp import entities_bp
    from admin_console.blueprints.health_bp import health_bp
    from admin_console.blueprints.menu_bp import menu_bp
    from admin_console.blueprints.permissions_bp import permissions_bp
    from admin_console.blueprints.settings_bp import settings_bp
    from admin_console.blueprints.workflows_bp import workflows_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(admin_users_bp)
    app.register_blueprint(workflows_bp)
    app.register_blueprint(bulk_operations_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(menu_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(permissions_bp)
    app.register_blueprint(entities_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app


def _register_error_handlers(app):
    """Map service exceptions and HTTP errors to the standard error body."""

    @app.errorhandler(NotFoundError)
    def _not_found_error(e):
        # str(e) carries ids and tenant scope; keep those in the log only
        logger.info("Not found: %s", e)
        return api_error(E.NOT_FOUND, f"{e.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        return api_error(E.VALIDATION_RULE, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def _conflict_error(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(StateTransitionError)
    def _state_error(e):
        return api_error(
            E.CONFLICT_STATE,
            str(e),
            details={"current_status": e.current_status, "action": e.action},
        )

    @app.errorhandler(PermissionDeniedError)
    def _permission_error(e):
        details = {"required": e.required} if e.required else None
        return api_error(E.FORBIDDEN, str(e), details=details)

    @app.errorhandler(SQLAlchemyError)
    def _database_error(e):
        db.session.rollback()
        logger.error("Database error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return api_error(E.DATABASE, "Database unavailable")

    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large")

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    @app.errorhandler(Exception)
    def _unhandled(e):
        if isinstance(e, HTTPException):
            return e
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    """Operational commands (flask --app wsgi <command>)."""

    @app.cli.command("seed-demo")
    def seed_demo_cmd():
        """Create a demo firm with an admin, a team and a few users."""
        from admin_console.services.demo_seed import seed_demo_data
        result = seed_demo_data()
        logger.info("Seeded demo tenant %s (%d users created).", result["tenant_slug"], result["created"])

    @app.cli.command("dispatch-notifications")
    def dispatch_notifications_cmd():
        """Send queued workflow e-mails."""
        from admin_console.services.notification_manager import NotificationManager
        stats = NotificationManager.dispatch_pending()
        logger.info("Notification dispatch finished: %s", stats)

    @app.cli.command("run-scheduled-workflows")
    def run_scheduled_workflows_cmd():
        """Execute workflows whose scheduled_for has passed."""
        from admin_console.services.workflow_executor import execute_due_workflows
        results = execute_due_workflows()
        logger.info("Executed %d scheduled workflows.", len(results))
