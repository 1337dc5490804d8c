import logging
import os
import uuid

import click
from flask import Flask, current_app, g, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate
from utils.audit import log_event
from utils.errors import PortalError
from utils.providers import build_providers
from utils.session import SessionEvents


def _audit_session_change(event, principal):
    log_event(f"auth.{event}", "users", principal.user_id if principal else None, user_id=principal.user_id if principal else None)
    db.session.commit()


def _register_hooks(app):
    @app.before_request
    def _assign_request_id():
        g.request_id = uuid.uuid4().hex[:16]
        # g outlives the request when an app context was already pushed
        g.pop("portal_session", None)

    # Security headers on every response; the portal serves JSON only
    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        resp.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
        resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        if "request_id" in g:
            resp.headers.setdefault("X-Request-ID", g.request_id)
        return resp


def _register_error_handlers(app):
    @app.errorhandler(PortalError)
    def _portal_error(e):
        if e.status_code >= 500:
            current_app.logger.warning("%s: %s", type(e).__name__, e.message)
        return jsonify({"ok": False, "error": e.message}), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def _store_error(e):
        db.session.rollback()
        current_app.logger.exception("Database error (request %s)", g.get("request_id"))
        return jsonify({"ok": False, "error": "Something went wrong. Please try again."}), 500

    @app.errorhandler(404)
    def _not_found(e):
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(413)
    def _too_large(e):
        return jsonify({"ok": False, "error": "Upload is too large"}), 413


def _register_cli(app):
    @app.cli.command("sweep-payments")
    @click.option("--ttl", type=int, default=None, help="Minutes a payment may stay pending.")
    def sweep_payments(ttl):
        """Resolve or fail payments stuck in pending."""
        from utils.reconcile import expire_stale_payments

        stats = expire_stale_payments(ttl_minutes=ttl)
        click.echo(f"checked={stats['checked']} completed={stats['completed']} failed={stats['failed']} left_pending={stats['left_pending']}")

    @app.cli.command("mark-overdue")
    def mark_overdue():
        """Flag issued invoices past their due date as overdue."""
        from utils.invoices import mark_overdue_invoices
        from utils.timezone_helpers import east_africa_today

        count = mark_overdue_invoices(east_africa_today())
        db.session.commit()
        click.echo(f"{count} invoice(s) marked overdue")


def create_app(overrides=None):
    app = Flask(__name__, instance_relative_config=False)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    limiter.init_app(app)

    app.extensions["payment_providers"] = build_providers(app)
    events = SessionEvents()
    events.subscribe(_audit_session_change)
    app.extensions["portal_session_events"] = events

    _register_hooks(app)
    _register_error_handlers(app)
    _register_cli(app)

    from routes.admin_routes import admin_bp
    from routes.auth_routes import auth_bp
    from routes.card_routes import card_bp
    from routes.guardian_routes import guardian_bp
    from routes.mpesa_routes import mpesa_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(guardian_bp)
    app.register_blueprint(mpesa_bp)
    app.register_blueprint(card_bp)
    app.register_blueprint(admin_bp)

    if app.config.get("AUTO_CREATE_TABLES"):
        with app.app_context():
            import models  # noqa: F401

            db.create_all()

    if app.config.get("ENABLE_SCHEDULER") and not app.testing:
        from scheduler import start_scheduler

        app.extensions["scheduler"] = start_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=os.environ.get("FLASK_DEBUG") == "1")
