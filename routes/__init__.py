"""Blueprint registration."""

from routes.admin import admin_bp
from routes.autopay import autopay_bp
from routes.payments import payments_bp
from routes.subscriptions import subscriptions_bp
from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    subscriptions_bp,
    payments_bp,
    autopay_bp,
    webhooks_bp,
    admin_bp,
]

# JSON API blueprints; clients authenticate with keys or signatures, not cookies
CSRF_EXEMPT_BLUEPRINTS = ALL_BLUEPRINTS


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
