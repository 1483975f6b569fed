"""
stockroom/__init__.py

Flask application factory for the Stockroom IT equipment request & inventory service.

Requirements:
- JSON API only; every permission check is server-side (security.authorize).
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev/tests.
- Every DB call is bounded by DB_TIMEOUT_SECONDS.
- Errors are rendered in one place (AppError handlers below); routes never catch them.
"""

from __future__ import annotations

import click
from flask import Flask, jsonify, request
from flask_login import current_user
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException

from . import notifications
from .errors import AppError, InternalError
from .extensions import configure_sqlite_locking, csrf, db, login_manager, migrate
from .logging_config import configure_logging, ensure_request_id
from .models import User

# Blueprint imports kept inside create_app() where possible to reduce import side effects.


def _engine_options(uri: str, timeout: int) -> dict:
    """Bounded DB calls: SQLite busy timeout / PostgreSQL connect + statement timeout."""
    if uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout, "check_same_thread": False}}
    if uri.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "connect_timeout": timeout,
                "options": f"-c statement_timeout={timeout * 1000}",
            },
        }
    return {"pool_pre_ping": True}


def create_app(config_object: object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    if isinstance(config_object, type):
        # Instantiate so Config.__init__ can refuse unsafe production settings.
        config_object = config_object()
    app.config.from_object(config_object)

    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        _engine_options(app.config["SQLALCHEMY_DATABASE_URI"], int(app.config.get("DB_TIMEOUT_SECONDS", 15))),
    )

    configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)
    notifications.init_app(app)

    with app.app_context():
        configure_sqlite_locking(db.engine)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def _unauthorized():
        request_id = ensure_request_id()
        return (
            jsonify(
                {
                    "error": "unauthenticated",
                    "message": "Authentication required.",
                    "request_id": request_id,
                }
            ),
            401,
        )

    _register_error_handlers(app)

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.dashboard import dashboard_bp
    from .blueprints.requests import history_bp, requests_bp
    from .blueprints.stock import stock_bp
    from .blueprints.users import users_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(requests_bp)
    app.register_blueprint(history_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(dashboard_bp)

    _register_cli(app)

    # ----------------------------------------------------------------------
    # Home
    # ----------------------------------------------------------------------
    @app.get("/")
    def index():
        """Service banner."""
        return jsonify(
            {
                "name": app.config.get("APP_NAME", "Stockroom"),
                "authenticated": bool(current_user.is_authenticated),
            }
        )

    return app


# ----------------------------------------------------------------------
# Error handlers
# ----------------------------------------------------------------------
def _register_error_handlers(app: Flask) -> None:
    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(CSRFError)
    def _handle_csrf_error(exc: CSRFError):
        request_id = ensure_request_id()
        app.logger.warning("csrf_failed", extra={"request_id": request_id, "details": exc.description})
        return (
            jsonify({"error": "csrf_failed", "message": exc.description, "request_id": request_id}),
            400,
        )

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):
        request_id = ensure_request_id()
        code = (exc.name or "http_error").lower().replace(" ", "_")
        return (
            jsonify({"error": code, "message": exc.description, "request_id": request_id}),
            exc.code or 500,
        )

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return _handle_http_error(exc)

        request_id = ensure_request_id()
        db.session.rollback()
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        mapped = InternalError(details=str(exc))
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------
def _register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development; use `flask db upgrade` with migrations)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-demo")
    @click.option("--password", default="demo1234", show_default=True, help="Password for new demo users.")
    def seed_demo_command(password: str):
        """Seed demo users (one per role) and stock items."""
        from .seed import seed_demo

        created = seed_demo(password=password)
        click.echo(f"Demo data seeded: {created['users']} user(s), {created['stock_items']} stock item(s).")

    @app.cli.command("create-admin")
    @click.argument("username")
    @click.password_option()
    @click.option("--full-name", default="Administrator", show_default=True)
    def create_admin_command(username: str, password: str, full_name: str):
        """Create or promote an admin account."""
        from .seed import create_admin

        user = create_admin(username, password, full_name=full_name)
        click.echo(f"Admin '{user.username}' ready.")

    @app.cli.command("check-alerts")
    def check_alerts_command():
        """Recompute stock alert levels for all items."""
        from .stock import check_all_alerts
        from .utils import unit_of_work

        with unit_of_work():
            created = check_all_alerts()
        click.echo(f"{len(created)} new stock alert(s).")
