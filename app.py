"""Application factory and entry point for the billing service."""

from __future__ import annotations

import atexit
import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

from config import apply_config, enable_sqlite_fks, load_config, reload_config
from errors import BillingError, LedgerInconsistency
from extensions import csrf, db, limiter
from models import AppSetting
from routes import CSRF_EXEMPT_BLUEPRINTS, register_blueprints
from seed_data import seed_plans
from services.autopay import AutoPayScheduler
from services.notifications import EXTENSION_KEY, build_sink

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SCHEDULER_KEY = "autopay_scheduler"


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def _start_scheduler(app: Flask) -> None:
    """Start the background billing cycle once per process."""
    # The debug reloader imports the app twice; only the child serves requests
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        return
    scheduler = AutoPayScheduler(app)
    scheduler.start()
    app.extensions[SCHEDULER_KEY] = scheduler
    atexit.register(scheduler.stop)


def create_app():
    """Create and configure the Flask application."""
    *configs, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    apply_config(app, configs)
    app.secret_key = app.config["APP_CONFIG"].secret_key

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        seed_plans()
        has_overrides = AppSetting.query.first() is not None
    if has_overrides:
        reload_config(app)

    app.extensions[EXTENSION_KEY] = build_sink(app.config["EMAIL_CONFIG"])

    # Register all blueprints; the JSON API does not use cookie sessions
    register_blueprints(app)
    for bp in CSRF_EXEMPT_BLUEPRINTS:
        csrf.exempt(bp)

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        db.session.rollback()
        if isinstance(error, LedgerInconsistency):
            logger.critical("Ledger inconsistency: %s", error.message)
        elif error.status_code >= 500:
            logger.error("%s: %s", error.error_code, error.message)
        else:
            logger.info("%s: %s", error.error_code, error.message)
        return jsonify({"error": error.message, "code": error.error_code}), error.status_code

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found", "code": "NotFoundError"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"error": "Method not allowed", "code": "METHOD_NOT_ALLOWED"}), 405

    @app.errorhandler(429)
    def ratelimit_handler(error):
        description = getattr(error, "description", None) or "Too many requests"
        return jsonify({"error": f"Rate limit exceeded: {description}",
                        "code": "RATE_LIMITED"}), 429

    @app.errorhandler(500)
    def server_error(error):
        db.session.rollback()
        original = getattr(error, "original_exception", None)
        if original is not None:
            logger.error("Unhandled error: %r", original)
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500

    if app.config["BILLING_CONFIG"].scheduler_enabled:
        _start_scheduler(app)
    else:
        logger.info("Auto-pay scheduler disabled")

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
