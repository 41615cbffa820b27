"""Billing error taxonomy.

Every error carries the HTTP status the API answers with; the Flask error
handler in ``app.py`` turns them into ``{"error": ..., "code": ...}`` bodies.
"""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors."""

    status_code = 400

    def __init__(self, message: str, *, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__


class ValidationError(BillingError):
    """Malformed or semantically invalid request."""

    status_code = 400


class NotFoundError(BillingError):
    """Unknown site, subscription, plan, invoice or payment."""

    status_code = 404


class SignatureError(BillingError):
    """Webhook or callback signature did not verify."""

    status_code = 400


class GatewayError(BillingError):
    """Gateway returned an error that is neither a decline nor transient."""

    status_code = 502


class GatewayTransientError(GatewayError):
    """Timeout, connection failure or 5xx from a gateway.

    ``timed_out`` is set when the request may have reached the gateway, i.e.
    the charge could still have succeeded out of band.
    """

    status_code = 503

    def __init__(self, message: str, *, timed_out: bool = False, error_code: Optional[str] = None):
        super().__init__(message, error_code=error_code or ("TIMEOUT" if timed_out else "TRANSIENT"))
        self.timed_out = timed_out


class GatewayDeclinedError(GatewayError):
    """Explicit decline reported by the gateway."""

    status_code = 402


class ConcurrencyConflict(BillingError):
    """Optimistic-lock or expected-state mismatch on a subscription write."""

    status_code = 409


class LedgerInconsistency(BillingError):
    """A ledger invariant is violated; never repaired automatically."""

    status_code = 500
