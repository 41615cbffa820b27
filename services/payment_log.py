"""Payment audit trail.

Every gateway call, webhook and client-side payment event ends up as a
``PaymentLog`` row.  Request/response payloads are stored as JSON with
sensitive keys masked.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import Optional

from flask import has_request_context, request

from extensions import db
from models import PaymentLog
from utils import dump_json

logger = logging.getLogger(__name__)

MASK = "***MASKED***"

SENSITIVE_KEYS = {
    "password", "secret", "key", "token", "cvv", "cvc", "card_number",
    "cardnumber", "card", "api_key", "apikey", "authorization", "auth",
}


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    if lowered in SENSITIVE_KEYS:
        return True
    return any(part in SENSITIVE_KEYS for part in lowered.replace("-", "_").split("_"))


def mask_sensitive(value):
    """Return a copy of *value* with sensitive mapping keys masked, recursively."""
    if isinstance(value, dict):
        return {
            k: (MASK if _is_sensitive(str(k)) and v not in (None, "") else mask_sensitive(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask_sensitive(v) for v in value]
    return value


def _serialize(data) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, (bytes, str)):
        try:
            data = json.loads(data)
        except ValueError:
            return data.decode("utf-8", "replace") if isinstance(data, bytes) else data
    return json.dumps(mask_sensitive(data), default=str, sort_keys=True)


def log_payment_event(
    action: str,
    status: str,
    *,
    gateway: Optional[str] = None,
    site_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    payment_method_id: Optional[int] = None,
    request_data=None,
    response_data=None,
    error_message: Optional[str] = None,
    error_code: Optional[str] = None,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    amount=None,
    currency: Optional[str] = None,
    metadata: Optional[dict] = None,
    duration_ms: Optional[int] = None,
) -> PaymentLog:
    """Add a PaymentLog row.

    NOTE: This does NOT commit; the caller owns the transaction.
    """
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.headers.get("X-Forwarded-For", request.remote_addr)
        user_agent = (request.headers.get("User-Agent") or "")[:255] or None

    entry = PaymentLog(
        action=action,
        status=status,
        gateway=gateway,
        site_id=site_id,
        subscription_id=subscription_id,
        payment_id=payment_id,
        payment_method_id=payment_method_id,
        request_data=_serialize(request_data),
        response_data=_serialize(response_data),
        error_message=error_message,
        error_code=error_code,
        transaction_id=transaction_id,
        order_id=order_id,
        payment_reference=payment_reference,
        amount=amount,
        currency=currency,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=dump_json(mask_sensitive(metadata) if metadata else None),
        duration_ms=duration_ms,
    )
    db.session.add(entry)
    if status in ("failed", "error", "timeout"):
        logger.warning(
            "Payment %s %s via %s: %s (%s)", action, status, gateway, error_message, error_code
        )
    else:
        logger.info("Payment %s %s via %s", action, status, gateway)
    return entry


class Timer:
    elapsed_ms: int = 0


@contextmanager
def timed():
    """Measure a gateway call in milliseconds::

        with timed() as t:
            result = adapter.charge_stored_method(...)
        log_payment_event(..., duration_ms=t.elapsed_ms)
    """
    timer = Timer()
    started = time.monotonic()
    try:
        yield timer
    finally:
        timer.elapsed_ms = int((time.monotonic() - started) * 1000)
