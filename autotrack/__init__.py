"""
AutoTrack: software subscription requests, HOD approval, finance
verification and payment tracking.

    from autotrack import create_app

    app = create_app("testing")

``flask --app wsgi`` exposes the CLI commands registered here
(``import-departments``, ``import-users``, ``seed-demo``, ``run-job``).
"""

import importlib
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from autotrack.config import config
from autotrack.middleware.jwt_auth import init_jwt_middleware
from autotrack.middleware.logging_config import configure_logging, init_request_logging
from autotrack.middleware.rate_limiter import init_rate_limits
from autotrack.models import db
from autotrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # per-blueprint limits only
)


def create_app(config_name=None):
    """Build the app for *config_name* (``APP_ENV`` when omitted, else development)."""
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_logging(app)
    init_jwt_middleware(app)

    # ── Models (register tables with SQLAlchemy metadata) ─────────────────
    from autotrack.models import audit as _audit_models                # noqa: F401
    from autotrack.models import directory as _directory_models        # noqa: F401
    from autotrack.models import notification as _notification_models  # noqa: F401
    from autotrack.models import subscription as _subscription_models  # noqa: F401

    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and not db_uri.endswith(":memory:"):
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)

    with app.app_context():
        db.create_all()

    # ── Blueprints ────────────────────────────────────────────────────────
    from autotrack.blueprints.auth_bp import auth_bp
    from autotrack.blueprints.directory_bp import directory_bp
    from autotrack.blueprints.health_bp import health_bp
    from autotrack.blueprints.notification_bp import notification_bp
    from autotrack.blueprints.subscription_bp import subscription_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(directory_bp)
    app.register_blueprint(health_bp)

    _register_cli(app)

    # ── App-level error handlers (routing errors, rate limit) ─────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    init_rate_limits(app, limiter)

    importlib.import_module("autotrack.services.scheduled_jobs")  # registers @register_job handlers
    from autotrack.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app


def _register_cli(app):
    """Flask CLI commands: CSV import, demo seed, manual job trigger."""

    @app.cli.command("import-departments")
    @click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
    @click.option("--batch-size", type=int, default=None, help="Rows per commit (default IMPORT_BATCH_SIZE).")
    def import_departments_cmd(csv_path, batch_size):
        """Import departments with their HOD / APA / AM contacts from CSV."""
        from autotrack.services.bulk_import_service import BulkImportError, import_departments

        with open(csv_path, "rb") as fh:
            try:
                result = import_departments(fh.read(), batch_size=batch_size)
            except BulkImportError as exc:
                raise click.ClickException(exc.message) from None
        click.echo(
            f"Departments created: {result['departments_created']}, users created: "
            f"{result['users_created']}, skipped: {result['skipped']}, batches: {result['batches']}"
        )
        for err in result["errors"]:
            click.echo(f"  row {err['row_num']}: {'; '.join(err['errors'])}", err=True)

    @app.cli.command("import-users")
    @click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
    @click.option("--batch-size", type=int, default=None, help="Rows per commit (default IMPORT_BATCH_SIZE).")
    def import_users_cmd(csv_path, batch_size):
        """Import users from CSV (email, name, role, sub_role, department, is_hod, password)."""
        from autotrack.services.bulk_import_service import BulkImportError, import_users

        with open(csv_path, "rb") as fh:
            try:
                result = import_users(fh.read(), batch_size=batch_size)
            except BulkImportError as exc:
                raise click.ClickException(exc.message) from None
        click.echo(f"Users created: {result['created']}, batches: {result['batches']}")
        for err in result["errors"]:
            click.echo(f"  row {err['row_num']} ({err['email']}): {'; '.join(err['errors'])}", err=True)

    @app.cli.command("seed-demo")
    @click.option("--password", default="password123", show_default=True, help="Password for every demo user.")
    def seed_demo_cmd(password):
        """Seed demo departments and users."""
        from autotrack.services.seed_service import seed_demo

        created = seed_demo(password)
        click.echo(f"Seeded {created['departments']} departments and {created['users']} users.")

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once (lifecycle_sweep, renewal_alerts)."""
        from autotrack.services.scheduler_service import SchedulerService

        outcome = SchedulerService.run_job(job_name)
        click.echo(f"{job_name}: {outcome['status']} {outcome.get('result') or outcome.get('error') or ''}")
        if outcome["status"] != "success":
            raise SystemExit(1)
