"""
Student Complaint Portal
Flask Application Factory.

Usage:
    from complaint_portal import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from complaint_portal.config import config
from complaint_portal.models import db
from complaint_portal.middleware.logging_config import configure_logging
from complaint_portal.middleware.rate_limiter import init_rate_limits
from complaint_portal.middleware.jwt_auth import init_jwt_middleware
from complaint_portal.middleware.tenant_context import init_tenant_context
from complaint_portal.utils.errors import register_error_handlers

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
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
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
    # Instantiated so ProductionConfig can refuse to start without its env vars
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

    # ── JWT auth middleware (sets g.jwt_*) ───────────────────────────────
    init_jwt_middleware(app)

    # ── Tenant context middleware (sets g.tenant from JWT) ───────────────
    init_tenant_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if (_req.content_length or 0) > 0 and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from complaint_portal.models import auth as _auth_models                  # noqa: F401
    from complaint_portal.models import complaint as _complaint_models        # noqa: F401
    from complaint_portal.models import history as _history_models            # noqa: F401
    from complaint_portal.models import escalation as _escalation_models      # noqa: F401
    from complaint_portal.models import notification as _notification_models  # noqa: F401
    from complaint_portal.models import announcement as _announcement_models  # noqa: F401
    from complaint_portal.models import vote as _vote_models                  # noqa: F401
    from complaint_portal.models import template as _template_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()
        app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from complaint_portal.blueprints.auth_bp import auth_bp
    from complaint_portal.blueprints.users_bp import users_bp
    from complaint_portal.blueprints.complaints_bp import complaints_bp
    from complaint_portal.blueprints.escalation_bp import escalation_bp
    from complaint_portal.blueprints.notification_bp import notification_bp
    from complaint_portal.blueprints.announcement_bp import announcement_bp
    from complaint_portal.blueprints.vote_bp import vote_bp
    from complaint_portal.blueprints.template_bp import template_bp
    from complaint_portal.blueprints.health_bp import health_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(complaints_bp)
    app.register_blueprint(escalation_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(announcement_bp)
    app.register_blueprint(vote_bp)
    app.register_blueprint(template_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("complaint_portal.services.scheduled_jobs")  # registers @register_job handlers
    from complaint_portal.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    @click.option("--tenant-id", type=int, default=None, help="Limit the job to one institution.")
    def run_job_cmd(job_name, tenant_id):
        """Run a registered job once (cron entry point)."""
        kwargs = {"tenant_id": tenant_id} if tenant_id is not None else {}
        result = SchedulerService.run_job(job_name, **kwargs)
        click.echo(json.dumps(result, default=str, indent=2))
        if result["status"] != "success":
            raise SystemExit(1)

    @app.cli.command("list-jobs")
    def list_jobs_cmd():
        """List registered jobs."""
        for job in SchedulerService.list_jobs():
            click.echo(f"{job['job_name']}: {job['description']}")

    return app
