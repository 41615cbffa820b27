"""Automatic renewal charges and the background billing scheduler.

Each candidate subscription is charged at most once per billing period: a
durable claim (``autopay_processed_<id>_<YYYYMMDD>``) is inserted before the
gateway call and only released again when the call provably never reached
the gateway.
"""

from __future__ import annotations

import datetime
import logging
import threading
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import BillingError, GatewayTransientError, NotFoundError
from extensions import db
from models import Invoice, Subscription, SubscriptionPlan
from services import gateways, ledger, lifecycle, notifications, reconciler
from services.payment_log import log_payment_event, timed
from utils import as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)

AUTOPAY_STATUSES = ("trialing", "active", "past_due")


def _billing_config():
    return current_app.config["BILLING_CONFIG"]


def _claim_period(key: str, now: datetime.datetime) -> bool:
    """Claim *key* for a charge, or retake it after an earlier timeout."""
    if ledger.claim_event(key, source="autopay"):
        return True
    config = _billing_config()
    return ledger.reclaim_timed_out_event(
        key, now, datetime.timedelta(minutes=config.autopay_retry_minutes),
        config.autopay_max_attempts,
    )


def _charge_currency(plan: SubscriptionPlan, gateway: str) -> str:
    if gateway == "razorpay" and plan.inr_enabled:
        return "INR"
    return plan.currency


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

def find_autopay_candidates(now=None, lead_hours: Optional[int] = None) -> list[Subscription]:
    """Subscriptions whose next charge falls within the lead window (or is overdue).

    Stripe-managed subscriptions are renewed by Stripe itself and excluded.
    """
    now = as_utc(now) or utc_now()
    if lead_hours is None:
        lead_hours = _billing_config().autopay_lead_hours
    horizon = now + datetime.timedelta(hours=lead_hours)

    rows = (
        db.session.query(Subscription, SubscriptionPlan)
        .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .filter(
            Subscription.status.in_(AUTOPAY_STATUSES),
            Subscription.auto_pay_enabled.is_(True),
            Subscription.default_payment_method_id.isnot(None),
            Subscription.cancel_at_period_end.is_(False),
            Subscription.stripe_subscription_id.is_(None),
        )
        .order_by(Subscription.id)
        .all()
    )
    return [
        sub for sub, plan in rows
        if not lifecycle.is_free_plan(plan) and lifecycle.billing_boundary(sub) <= horizon
    ]


# ---------------------------------------------------------------------------
# Charging
# ---------------------------------------------------------------------------

def process_autopay_candidate(subscription_id: int, now=None) -> str:
    """Charge one subscription's renewal.

    Returns one of ``renewed``, ``declined``, ``pending``, ``duplicate``,
    ``skipped`` or ``error``.
    """
    now = as_utc(now) or utc_now()
    sub = ledger.get_subscription(subscription_id)
    if (
        sub.status not in AUTOPAY_STATUSES
        or not sub.auto_pay_enabled
        or not sub.default_payment_method_id
        or sub.cancel_at_period_end
    ):
        return "skipped"

    period_end = as_utc(sub.current_period_end)
    boundary = lifecycle.billing_boundary(sub)
    key = lifecycle.autopay_claim_key(sub)
    if not _claim_period(key, now):
        db.session.rollback()
        return "duplicate"
    db.session.commit()

    sub = ledger.get_subscription(subscription_id)
    plan = ledger.get_plan(sub.plan_id)
    method = ledger.get_payment_method(sub.default_payment_method_id, sub.site_id)
    gateway = sub.preferred_gateway or method.gateway
    site_id, plan_id, plan_name, cycle = sub.site_id, plan.id, plan.name, sub.billing_cycle
    db.session.expunge(method)
    try:
        if gateway != method.gateway:
            raise NotFoundError(f"No {gateway} payment method on file")
        adapter = gateways.get_adapter(gateway)
        amount, currency = lifecycle.resolve_price(plan, cycle, _charge_currency(plan, gateway))
    except BillingError as e:
        ledger.release_event(key)
        log_payment_event("autopay_charge", "error", gateway=gateway, site_id=site_id,
                          subscription_id=subscription_id, payment_method_id=method.id,
                          error_message=e.message, error_code=e.error_code)
        db.session.commit()
        return "error"

    metadata = {"autopay": "1", "subscription_id": subscription_id, "site_id": site_id,
                "period_end": isoformat(period_end)}
    log_context = dict(gateway=gateway, site_id=site_id, subscription_id=subscription_id,
                       payment_method_id=method.id, amount=amount, currency=currency,
                       request_data=metadata)
    db.session.commit()

    with timed() as t:
        try:
            result = adapter.charge_stored_method(
                method, amount, currency,
                idempotency_key=key,
                description=f"{plan_name} ({cycle}) renewal",
                metadata=metadata,
            )
        except GatewayTransientError as e:
            # A timed-out charge may have gone through; later sweeps retry it
            # under the same idempotency key
            if e.timed_out:
                ledger.mark_event_timed_out(key, now)
            else:
                ledger.release_event(key)
            log_payment_event("autopay_charge", "timeout", error_message=e.message,
                              error_code=e.error_code, duration_ms=t.elapsed_ms, **log_context)
            db.session.commit()
            return "pending"
        except BillingError as e:
            ledger.release_event(key)
            log_payment_event("autopay_charge", "error", error_message=e.message,
                              error_code=e.error_code, duration_ms=t.elapsed_ms, **log_context)
            db.session.commit()
            return "error"

    if not result.success:
        payment = ledger.create_payment(
            gateway=gateway, amount=amount, currency=currency, site_id=site_id,
            subscription_id=subscription_id, payment_method_id=method.id, plan_id=plan_id,
            billing_cycle=cycle, status="failed", gateway_order_id=result.order_id,
            gateway_payment_id=result.gateway_reference, metadata=metadata,
        )
        payment.failure_reason = result.failure_reason
        log_payment_event("autopay_charge", "failed", payment_id=payment.id,
                          error_message=result.failure_reason, error_code=result.failure_code,
                          response_data=result.raw, duration_ms=t.elapsed_ms, **log_context)
        db.session.commit()
        if now >= boundary:
            lifecycle.mark_renewal_failed(subscription_id, result.failure_reason or "Card declined",
                                          actor="autopay")
        return "declined"

    invoice = ledger.create_invoice(
        site_id=site_id, subscription_id=subscription_id, subtotal=amount, currency=currency,
        status="paid", description=f"{plan_name} ({cycle}) renewal",
    )
    payment = ledger.create_payment(
        gateway=gateway, amount=amount, currency=currency, site_id=site_id,
        invoice_id=invoice.id, subscription_id=subscription_id, payment_method_id=method.id,
        plan_id=plan_id, billing_cycle=cycle, status="succeeded",
        gateway_order_id=result.order_id, gateway_payment_id=result.gateway_reference,
        metadata=metadata,
    )
    log_payment_event("autopay_charge", "success", payment_id=payment.id,
                      transaction_id=result.gateway_reference, order_id=result.order_id,
                      response_data=result.raw, duration_ms=t.elapsed_ms, **log_context)
    invoice_id = invoice.id
    db.session.commit()

    renewed = lifecycle.renew_with_retry(subscription_id, period_end, invoice_id, actor="autopay")
    if renewed is None:
        sub = ledger.get_subscription(subscription_id)
        invoice = db.session.get(Invoice, invoice_id)
        invoice.period_start = sub.current_period_start
        invoice.period_end = sub.current_period_end
        db.session.commit()
        logger.warning("Auto-pay charge for subscription %s recorded but period already advanced",
                       subscription_id)
        return "recorded"
    logger.info("Auto-pay renewed subscription %s (%s %s)", subscription_id, amount, currency)
    return "renewed"


def charge_invoice(sub: Subscription, invoice, actor: str = "system") -> bool:
    """Charge the default payment method for an open invoice of *sub*.

    Returns True when the invoice was paid.
    """
    method = ledger.get_payment_method(sub.default_payment_method_id, sub.site_id)
    gateway = sub.preferred_gateway or method.gateway
    adapter = gateways.get_adapter(gateway)
    metadata = {"invoice_id": invoice.id, "subscription_id": sub.id, "site_id": sub.site_id}
    amount, currency, number = invoice.total, invoice.currency, invoice.number
    sub_id, site_id, plan_id, cycle, invoice_id, method_id = (
        sub.id, sub.site_id, sub.plan_id, sub.billing_cycle, invoice.id, method.id
    )
    db.session.expunge(method)
    log_context = dict(gateway=gateway, site_id=site_id, subscription_id=sub_id,
                       payment_method_id=method_id, amount=amount, currency=currency,
                       request_data=metadata)
    db.session.commit()

    with timed() as t:
        try:
            result = adapter.charge_stored_method(
                method, amount, currency, idempotency_key=f"invoice_{invoice_id}",
                description=f"Invoice {number}", metadata=metadata,
            )
        except BillingError as e:
            status = "timeout" if isinstance(e, GatewayTransientError) else "error"
            log_payment_event("invoice_charge", status, error_message=e.message,
                              error_code=e.error_code, duration_ms=t.elapsed_ms, **log_context)
            db.session.commit()
            return False

    payment = ledger.create_payment(
        gateway=gateway, amount=amount, currency=currency, site_id=site_id,
        invoice_id=invoice_id, subscription_id=sub_id, payment_method_id=method_id,
        plan_id=plan_id, billing_cycle=cycle, gateway_order_id=result.order_id,
        metadata=metadata,
    )
    if not result.success:
        ledger.transition_payment(payment, "failed", failure_reason=result.failure_reason,
                                  gateway_payment_id=result.gateway_reference)
        log_payment_event("invoice_charge", "failed", payment_id=payment.id,
                          error_message=result.failure_reason, error_code=result.failure_code,
                          duration_ms=t.elapsed_ms, **log_context)
        db.session.commit()
        return False

    notes: list = []
    reconciler.settle_payment(payment, result.gateway_reference, actor, notes)
    log_payment_event("invoice_charge", "success", payment_id=payment.id,
                      transaction_id=result.gateway_reference, duration_ms=t.elapsed_ms,
                      **log_context)
    lifecycle.commit()
    notifications.dispatch(notes)
    return True


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

def run_autopay_sweep(now=None) -> dict:
    now = as_utc(now) or utc_now()
    candidate_ids = [sub.id for sub in find_autopay_candidates(now)]
    results: dict = {}
    for sub_id in candidate_ids:
        try:
            outcome = process_autopay_candidate(sub_id, now)
        except (BillingError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error("Auto-pay failed for subscription %s: %s", sub_id, e)
            outcome = "error"
        results[outcome] = results.get(outcome, 0) + 1
    if candidate_ids:
        logger.info("Auto-pay sweep over %d candidate(s): %s", len(candidate_ids), results)
    return results


def run_billing_cycle(now=None) -> dict:
    """One full pass: auto-pay charges, boundary transitions, trial warnings."""
    now = as_utc(now) or utc_now()
    return {
        "autopay": run_autopay_sweep(now),
        "boundaries": lifecycle.process_period_boundaries(now),
        "trialWarnings": lifecycle.send_trial_warnings(now),
    }


class AutoPayScheduler:
    """Runs :func:`run_billing_cycle` on a daemon thread until stopped."""

    def __init__(self, app, interval_seconds: Optional[int] = None):
        self.app = app
        self.interval_seconds = (
            interval_seconds or app.config["BILLING_CONFIG"].scheduler_interval_seconds
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="autopay-scheduler", daemon=True)
        self._thread.start()
        logger.info("Auto-pay scheduler started (interval %ss)", self.interval_seconds)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("Auto-pay scheduler stopped")

    def run_once(self, now=None) -> dict:
        with self.app.app_context():
            try:
                return run_billing_cycle(now)
            finally:
                db.session.remove()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the next tick retries
                logger.exception("Billing cycle failed")
            self._stop_event.wait(self.interval_seconds)


# ---------------------------------------------------------------------------
# Settings view
# ---------------------------------------------------------------------------

def get_autopay_settings(site_id: int) -> dict:
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no active subscription")
    plan = ledger.get_plan(sub.plan_id)
    method = None
    if sub.default_payment_method_id:
        method = ledger.get_payment_method(sub.default_payment_method_id, site_id)
    gateway = sub.preferred_gateway or (method.gateway if method else None)

    next_charge_at = amount = currency = None
    if not lifecycle.is_free_plan(plan) and not sub.cancel_at_period_end:
        lead = datetime.timedelta(hours=_billing_config().autopay_lead_hours)
        next_charge_at = isoformat(lifecycle.billing_boundary(sub) - lead)
        price, currency = lifecycle.resolve_price(
            plan, sub.billing_cycle, _charge_currency(plan, gateway) if gateway else None
        )
        amount = str(price)
    return {
        "enabled": bool(sub.auto_pay_enabled),
        "gateway": gateway,
        "paymentMethodId": method.id if method else None,
        "paymentMethod": {
            "brand": method.brand,
            "last4": method.last4,
            "gateway": method.gateway,
        } if method else None,
        "managedByStripe": bool(sub.stripe_subscription_id),
        "nextChargeAt": next_charge_at if sub.auto_pay_enabled else None,
        "amount": amount,
        "currency": currency,
    }
