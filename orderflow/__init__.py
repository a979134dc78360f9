"""
Order Workflow Platform
Flask Application Factory.

Usage:
    from orderflow import create_app
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

from orderflow.config import config
from orderflow.models import db
from orderflow.middleware.logging_config import configure_logging
from orderflow.middleware.timing import init_request_timing
from orderflow.middleware.rate_limiter import init_rate_limits
from orderflow.middleware.jwt_auth import init_jwt_middleware
from orderflow.middleware.tenant_context import init_tenant_context

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit: apply per-blueprint
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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Tenant context middleware (sets g.tenant from JWT) ───────────────
    init_tenant_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from orderflow.models import auth as _auth_models          # noqa: F401
    from orderflow.models import order as _order_models        # noqa: F401
    from orderflow.models import workflow as _workflow_models  # noqa: F401
    from orderflow.models import history as _history_models    # noqa: F401
    from orderflow.models import audit as _audit_models        # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from orderflow.blueprints.health_bp import health_bp
    from orderflow.blueprints.orders_bp import orders_bp
    from orderflow.blueprints.screens_bp import screens_bp
    from orderflow.blueprints.workflow_bp import workflow_bp
    from orderflow.blueprints.public_bp import public_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(screens_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(public_bp)

    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow")
    def seed_workflow_cmd():
        """Seed permissions, system roles and default screen contracts."""
        from orderflow.services.workflow_seed import seed_all
        result = seed_all()
        logger.info("Seeded workflow data: %s", result)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    return app
