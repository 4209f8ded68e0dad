"""Flask application factory for the traffic alert reporting API."""
import os
from typing import Mapping, Optional

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

from extensions import csrf, db, login_manager, migrate
from utils.errors import AuthenticationError, ServiceError
from utils.logger import init_logging
from utils.security import apply_security_headers, bearer_token


def _error_body(message: str, detail: Optional[str] = None) -> dict:
    body = {"success": False, "message": message}
    if detail:
        body["error"] = detail
    return body


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def service_error(error: ServiceError):
        body = error.to_dict()
        if error.status_code >= 500:
            app.logger.error(
                "Service error",
                extra={"path": request.path, "method": request.method, "error_type": type(error).__name__},
            )
            if app.debug and error.__cause__ is not None:
                body["error"] = str(error.__cause__)
        return jsonify(body), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return jsonify(_error_body("Route not found")), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify(_error_body("Method not allowed")), 405

    @app.errorhandler(413)
    def payload_too_large(error):
        return jsonify(_error_body("Upload exceeds the allowed size")), 413

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        return jsonify(_error_body(error.description or error.name)), error.code

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        original = getattr(error, "original_exception", None)
        detail = str(original or error) if app.debug else None
        return jsonify(_error_body("Internal server error", detail)), 500


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default admin can sign in without registering."""
    from models import Role, User  # Local import to avoid circular dependency

    default_roles = [
        ("user", "Reports and votes on traffic incidents"),
        ("admin", "Moderates reports and changes their status"),
    ]
    role_cache = {name: Role.get_or_create(name, description=description) for name, description in default_roles}

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_role = role_cache["admin"]
    admin_user = User.query.filter_by(email=admin_email).first()
    if admin_user:
        if admin_user.role != admin_role or not admin_user.is_active:
            admin_user.role = admin_role
            admin_user.is_active = True
            db.session.commit()
        return

    admin_user = User(name="System Administrator", email=admin_email, role=admin_role, is_active=True)
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def register_cli(app: Flask) -> None:
    from utils.lifecycle import sweep_expired
    from utils.report_service import reconcile_user_stats

    @app.cli.command("reports-sweep-expired")
    @click.option("--batch-size", default=500, show_default=True, help="Reports deleted per transaction.")
    def reports_sweep_expired(batch_size):
        """Delete reports past their expiry time (schedule this via cron)."""
        result = sweep_expired(batch_size=batch_size)
        click.echo(f"Removed {result['removed']} expired reports ({result['image_failures']} image deletions failed)")

    @app.cli.command("users-reconcile-stats")
    def users_reconcile_stats():
        """Recompute user report counters from stored reports."""
        changed = reconcile_user_stats()
        click.echo(f"Updated statistics for {changed} users")


def create_app(config_name: Optional[str] = None, test_config: Optional[Mapping] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())
    if test_config:
        app.config.update(test_config)
    else:
        # Optional instance-specific overrides
        app.config.from_pyfile("config.py", silent=True)

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])
    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["IMAGE_UPLOAD_FOLDER"], exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.request_loader
    def load_user_from_request(req):
        from models import ApiToken

        token = ApiToken.resolve(bearer_token(req))
        if token is None or not token.user.is_active:
            return None
        return token.user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError("Authentication required")

    from routes import auth_bp, main_bp, reports_bp, users_bp

    for blueprint in (main_bp, auth_bp, reports_bp, users_bp):
        # Token-authenticated JSON API: no cookie session to forge.
        csrf.exempt(blueprint)
    app.register_blueprint(main_bp, url_prefix="/api")
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(reports_bp, url_prefix="/api/reports")
    app.register_blueprint(users_bp, url_prefix="/api/users")

    register_error_handlers(app)
    register_cli(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
