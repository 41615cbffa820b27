"""Authorization helpers for the billing API.

End-user authentication belongs to the host application; this service only
guards its admin surface with a shared API key.
"""

from __future__ import annotations

import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request

from services import ledger

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Key"


def _admin_key() -> str:
    return current_app.config["APP_CONFIG"].admin_api_key


def is_admin_request() -> bool:
    """Return True when the request carries the configured admin key."""
    expected = _admin_key()
    supplied = request.headers.get(ADMIN_KEY_HEADER, "")
    if not expected or not supplied:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


def admin_required(f):
    """Decorator that rejects requests without a valid ``X-Admin-Key`` header."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not _admin_key():
            return jsonify({"error": "Admin API is disabled", "code": "ADMIN_DISABLED"}), 403
        if not request.headers.get(ADMIN_KEY_HEADER):
            return jsonify({"error": "Admin key required", "code": "UNAUTHORIZED"}), 401
        if not is_admin_request():
            logger.warning("Rejected admin request from %s to %s",
                           request.remote_addr, request.path)
            return jsonify({"error": "Invalid admin key", "code": "FORBIDDEN"}), 403
        return f(*args, **kwargs)

    return decorated


def require_site(f):
    """Decorator that resolves ``site_id`` from the URL or answers 404."""

    @wraps(f)
    def decorated(*args, **kwargs):
        ledger.get_site(kwargs["site_id"])
        return f(*args, **kwargs)

    return decorated
