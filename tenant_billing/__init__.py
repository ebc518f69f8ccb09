"""Flask application factory for the tenant billing and AI entitlement service."""
import os

import click
from flask import Flask
from flask.cli import AppGroup
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from .config import DevelopmentConfig, ProductionConfig
from .extensions import db
from .routes.main import main_bp
from .routes.manual_payments import manual_payments_bp
from .routes.webhooks import webhooks_bp
from .services.errors import BillingError


def create_app(config_object=None):
    """Application factory to create configured Flask app instances."""
    app = Flask(__name__, instance_relative_config=True)

    # Ensure instance folder exists for SQLite
    os.makedirs(app.instance_path, exist_ok=True)

    _configure_app(app, config_object)
    _register_extensions(app)
    _register_blueprints(app)
    _register_shellcontext(app)
    _register_commands(app)
    _register_security_headers(app)
    _register_error_handlers(app)
    _setup_db(app)

    return app


def _configure_app(app, config_object=None):
    env = os.environ.get("FLASK_ENV") or os.environ.get("APP_ENV") or "development"
    if config_object:
        app.config.from_object(config_object)
    elif env.lower() == "production":
        app.config.from_object(ProductionConfig)
    else:
        app.config.from_object(DevelopmentConfig)


def _register_extensions(app):
    db.init_app(app)


def _register_blueprints(app):
    app.register_blueprint(main_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(manual_payments_bp)


def _register_shellcontext(app):
    @app.shell_context_processor
    def make_shell_context():
        from .models import (  # noqa: WPS433
            AuditLog,
            ManualPayment,
            ManualPaymentStatus,
            ProcessedWebhookEvent,
            Subscription,
            SubscriptionPlan,
            SubscriptionStatus,
            Tenant,
        )

        return {
            "db": db,
            "Tenant": Tenant,
            "SubscriptionPlan": SubscriptionPlan,
            "Subscription": Subscription,
            "SubscriptionStatus": SubscriptionStatus,
            "ManualPayment": ManualPayment,
            "ManualPaymentStatus": ManualPaymentStatus,
            "AuditLog": AuditLog,
            "ProcessedWebhookEvent": ProcessedWebhookEvent,
        }


def _register_commands(app):
    billing_cli = AppGroup("billing", help="Subscription and entitlement maintenance.")

    @billing_cli.command("sweep-lapsed")
    def sweep_lapsed():
        """Cancel manually approved subscriptions whose period has ended."""
        from .services.subscription_service import sweep_lapsed_manual_subscriptions  # noqa: WPS433

        stats = sweep_lapsed_manual_subscriptions()
        click.echo(f"due={stats['due']} canceled={stats['canceled']} failed={stats['failed']}")
        if stats["failed"]:
            raise SystemExit(1)

    app.cli.add_command(billing_cli)


def _setup_db(app):
    with app.app_context():
        # Import models to ensure metadata is loaded before table creation
        from . import models  # noqa: WPS433,F401

        # Auto-create SQLite database file and parent directory when missing
        database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
        try:
            url = make_url(database_uri)
        except Exception:
            url = None

        if url and url.drivername.startswith("sqlite") and url.database:
            db_dir = os.path.dirname(url.database)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            if not os.path.exists(url.database):
                app.logger.info("Initializing SQLite database at %s", url.database)

        db.create_all()


def _register_security_headers(app):
    @app.after_request
    def add_security_headers(response):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        if app.config.get("ENV") == "production":
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response


def _register_error_handlers(app):
    @app.errorhandler(BillingError)
    def _billing_error(error):
        return error.to_dict(), error.http_status

    @app.errorhandler(SQLAlchemyError)
    def _datastore_error(error):
        db.session.rollback()
        app.logger.exception("Datastore failure", exc_info=error)
        return {"error": "DATASTORE_UNAVAILABLE", "message": "Please try again."}, 503

    @app.errorhandler(HTTPException)
    def _http_error(error):
        return {"error": error.name, "message": error.description}, error.code

    @app.errorhandler(Exception)
    def _unhandled(error):
        db.session.rollback()
        app.logger.exception("Unhandled exception", exc_info=error)
        return {"error": "INTERNAL_ERROR", "message": "An unexpected error occurred."}, 500
