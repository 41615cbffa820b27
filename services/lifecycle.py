"""Subscription lifecycle manager.

This module is the only writer of ``Subscription.status`` and of the
current period bounds.  Public operations commit their own transaction and
dispatch notifications afterwards; the underscore helpers leave the
transaction open so the reconciler can combine them with ledger writes.

Periods are half-open ``[current_period_start, current_period_end)``.  A
renewal moves the start to the old end and the end forward by exactly one
cycle, so consecutive periods never overlap or leave a gap.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from errors import BillingError, ConcurrencyConflict, NotFoundError, ValidationError
from extensions import db
from models import VALID_BILLING_CYCLES, VALID_GATEWAYS, Invoice, Subscription, SubscriptionPlan
from services import ledger, notifications, usage
from utils import Patch, as_utc, utc_now

logger = logging.getLogger(__name__)

CYCLE_DAYS = {"monthly": 30, "annual": 365}

# Stripe subscription states mapped onto local ones
REMOTE_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


# ---------------------------------------------------------------------------
# Pricing helpers
# ---------------------------------------------------------------------------

def cycle_length(billing_cycle: str) -> datetime.timedelta:
    try:
        return datetime.timedelta(days=CYCLE_DAYS[billing_cycle])
    except KeyError:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")


def is_free_plan(plan: SubscriptionPlan) -> bool:
    return not Decimal(plan.monthly_price or 0) and not Decimal(plan.annual_price or 0)


def resolve_price(plan: SubscriptionPlan, billing_cycle: str, currency: Optional[str] = None):
    """Return ``(amount, currency)`` for one cycle of *plan*.

    The secondary INR price pair is usable only when the plan enables it.
    """
    cycle_length(billing_cycle)
    currency = (currency or plan.currency).upper()
    if currency == plan.currency.upper():
        amount = plan.monthly_price if billing_cycle == "monthly" else plan.annual_price
    elif currency == "INR":
        if not plan.inr_enabled:
            raise ValidationError(f"Plan {plan.name} is not available in INR")
        amount = plan.monthly_price_inr if billing_cycle == "monthly" else plan.annual_price_inr
    else:
        raise ValidationError(f"Plan {plan.name} is not priced in {currency}")
    if amount is None:
        raise ValidationError(f"Plan {plan.name} has no {billing_cycle} price in {currency}")
    return Decimal(str(amount)), currency


def monthly_equivalent(plan: SubscriptionPlan, billing_cycle: str) -> Decimal:
    if billing_cycle == "annual" and plan.annual_price is not None:
        return Decimal(plan.annual_price) / 12
    return Decimal(plan.monthly_price or 0)


def _grace_days() -> int:
    return current_app.config["BILLING_CONFIG"].grace_period_days


def _validate_cycle(billing_cycle: str) -> str:
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")
    return billing_cycle


def autopay_claim_key(sub: Subscription) -> str:
    """Idempotency key for the auto-pay charge of the current billing period."""
    return f"autopay_processed_{sub.id}_{as_utc(sub.current_period_end):%Y%m%d}"


def billing_boundary(sub: Subscription) -> datetime.datetime:
    """When the next charge is due: trial end for trials, period end otherwise."""
    if sub.status == "trialing" and sub.trial_end:
        return as_utc(sub.trial_end)
    return as_utc(sub.current_period_end)


def next_billing_period(sub: Optional[Subscription], plan_id: int, billing_cycle: str, now=None):
    """Period a payment for *plan_id*/*billing_cycle* would buy, as ``(start, end)``."""
    now = now or utc_now()
    length = cycle_length(billing_cycle)
    if sub is None or sub.plan_id != plan_id or sub.billing_cycle != billing_cycle:
        return now, now + length
    if ledger.find_open_invoice(sub.id, sub.current_period_start):
        return as_utc(sub.current_period_start), as_utc(sub.current_period_end)
    start = billing_boundary(sub)
    return start, start + length


# ---------------------------------------------------------------------------
# Transaction helpers
# ---------------------------------------------------------------------------

def commit() -> None:
    """Commit, turning an optimistic-lock failure into :class:`ConcurrencyConflict`."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning("Concurrent subscription update detected, transaction rolled back")
        raise ConcurrencyConflict("Subscription was modified concurrently")


def _live_or_404(site_id: int) -> Subscription:
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no active subscription")
    return sub


def _close(sub: Subscription, now, *, action: str, reason: Optional[str], actor: str) -> None:
    from_status = sub.status
    sub.status = "canceled"
    sub.canceled_at = now
    sub.grace_ends_at = None
    ledger.add_history(sub, action, actor=actor, reason=reason, from_status=from_status)
    db.session.flush()


def _enter_grace(sub: Subscription, now, *, reason: str, actor: str, notes: list) -> None:
    from_status = sub.status
    period_end = as_utc(sub.current_period_end)
    sub.status = "past_due"
    sub.grace_ends_at = max(now, period_end) + datetime.timedelta(days=_grace_days())
    ledger.add_history(sub, "renewal_failed", actor=actor, reason=reason, from_status=from_status)
    notes.append(("payment_failed", sub.site_id, {"reason": reason}))


def _open_row(
    site_id: int,
    plan: SubscriptionPlan,
    billing_cycle: str,
    status: str,
    start,
    end,
    *,
    previous: Optional[Subscription] = None,
    trial_start=None,
    trial_end=None,
) -> Subscription:
    sub = Subscription(
        site_id=site_id,
        plan_id=plan.id,
        status=status,
        billing_cycle=billing_cycle,
        current_period_start=start,
        current_period_end=end,
        trial_start=trial_start,
        trial_end=trial_end,
    )
    if previous is not None:
        sub.auto_pay_enabled = previous.auto_pay_enabled
        sub.preferred_gateway = previous.preferred_gateway
        sub.default_payment_method_id = previous.default_payment_method_id
        sub.stripe_customer_id = previous.stripe_customer_id
    db.session.add(sub)
    db.session.flush()
    return sub


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

def start_subscription(
    site_id: int,
    plan_id: int,
    billing_cycle: str = "monthly",
    actor: str = "user",
    *,
    payment_method_id: Optional[int] = None,
) -> Subscription:
    """Subscribe *site_id* to *plan_id*, replacing any live subscription.

    Paid plans without a trial get an open invoice for the first period and
    an immediate charge of the default payment method; without a method (or
    on decline) the new row goes straight to ``past_due``.
    """
    _validate_cycle(billing_cycle)
    ledger.get_site(site_id)
    plan = ledger.get_plan(plan_id, active_only=True)
    now = utc_now()
    notes: list = []

    previous = ledger.get_live_subscription(site_id)
    if previous is not None:
        _close(previous, now, action="superseded", reason=f"Replaced by plan {plan.slug}", actor=actor)

    trial_days = plan.trial_days or 0
    if trial_days > 0 and not ledger.site_has_used_trial(site_id):
        trial_end = now + datetime.timedelta(days=trial_days)
        sub = _open_row(site_id, plan, billing_cycle, "trialing", now, trial_end,
                        previous=previous, trial_start=now, trial_end=trial_end)
    else:
        sub = _open_row(site_id, plan, billing_cycle, "active", now, now + cycle_length(billing_cycle),
                        previous=previous)
    if previous is not None:
        previous.superseded_by_id = sub.id
        usage.carry_over_gauges(previous, sub)
    if payment_method_id is not None:
        method = ledger.get_payment_method(payment_method_id, site_id)
        sub.default_payment_method_id = method.id
        sub.preferred_gateway = method.gateway
    ledger.add_history(sub, "created", actor=actor,
                       from_plan_id=previous.plan_id if previous else plan.id)

    invoice = None
    if sub.status == "active" and not is_free_plan(plan):
        amount, currency = resolve_price(plan, billing_cycle)
        invoice = ledger.create_invoice(
            site_id=site_id,
            subscription_id=sub.id,
            subtotal=amount,
            currency=currency,
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
            description=f"{plan.name} ({billing_cycle})",
        )
    commit()
    logger.info("Site %s subscribed to plan %s (%s)", site_id, plan.slug, sub.status)

    if invoice is not None:
        _collect_first_invoice(sub, invoice, actor, notes)
    notifications.dispatch(notes)
    return sub


def _collect_first_invoice(sub: Subscription, invoice: Invoice, actor: str, notes: list) -> None:
    from services import autopay

    charged = False
    if sub.default_payment_method_id:
        try:
            charged = autopay.charge_invoice(sub, invoice, actor=actor)
        except BillingError as e:
            logger.warning("First charge for subscription %s failed: %s", sub.id, e.message)
    if not charged:
        sub = ledger.get_subscription(sub.id)
        if sub.status == "active":
            now = utc_now()
            from_status = sub.status
            sub.status = "past_due"
            sub.grace_ends_at = now + datetime.timedelta(days=_grace_days())
            ledger.add_history(sub, "renewal_failed", actor="system", from_status=from_status,
                               reason="Initial payment not collected")
            notes.append(("payment_failed", sub.site_id, {"reason": "Initial payment not collected"}))
            commit()


# ---------------------------------------------------------------------------
# Payments and renewals
# ---------------------------------------------------------------------------

def apply_successful_payment(payment, invoice: Optional[Invoice], actor: str, notes: list) -> Subscription:
    """Apply a settled payment to the site's subscription.  Does not commit."""
    now = utc_now()
    sub = ledger.get_live_subscription(payment.site_id)
    plan_id = payment.plan_id or (sub.plan_id if sub else None)
    billing_cycle = payment.billing_cycle or (sub.billing_cycle if sub else "monthly")
    plan = ledger.get_plan(plan_id)

    if sub is None:
        sub = _open_row(payment.site_id, plan, billing_cycle, "active", now,
                        now + cycle_length(billing_cycle))
        ledger.add_history(sub, "created", actor=actor, reason="Paid signup")
    elif sub.plan_id != plan.id or sub.billing_cycle != billing_cycle:
        sub = _replace_row(sub, plan, billing_cycle, "active", now, now + cycle_length(billing_cycle),
                           actor=actor, reason="Plan purchased")
        notes.append(("plan_changed", sub.site_id, {"plan": plan.name}))
    elif invoice is not None and invoice.period_start is not None and (
        as_utc(invoice.period_start) == as_utc(sub.current_period_start)
    ):
        # Payment for the current, not yet paid, period
        if sub.status == "past_due":
            from_status = sub.status
            sub.status = "active"
            sub.grace_ends_at = None
            ledger.add_history(sub, "renewed", actor=actor, from_status=from_status,
                               reason="Outstanding invoice paid")
    else:
        apply_renewal(sub, sub.current_period_end, invoice, actor, notes)

    if invoice is not None:
        invoice.subscription_id = sub.id
        if invoice.period_start is None:
            invoice.period_start = sub.current_period_start
            invoice.period_end = sub.current_period_end
    payment.subscription_id = sub.id
    notes.append(("payment_succeeded", sub.site_id, {"amount": str(payment.amount),
                                                     "currency": payment.currency}))
    return sub


def apply_renewal(sub: Subscription, expected_period_end, invoice: Optional[Invoice], actor: str,
           notes: list) -> bool:
    if sub.status == "canceled":
        logger.info("Not renewing canceled subscription %s", sub.id)
        return False
    if as_utc(sub.current_period_end) != as_utc(expected_period_end):
        logger.info("Subscription %s already renewed past %s", sub.id, expected_period_end)
        return False

    from_status = sub.status
    start = billing_boundary(sub)
    sub.current_period_start = start
    sub.current_period_end = start + cycle_length(sub.billing_cycle)
    sub.status = "active"
    sub.grace_ends_at = None
    if invoice is not None:
        invoice.subscription_id = sub.id
        invoice.period_start = sub.current_period_start
        invoice.period_end = sub.current_period_end
        ledger.mark_invoice_paid(invoice)
    action = "trial_converted" if from_status == "trialing" else "renewed"
    ledger.add_history(sub, action, actor=actor, from_status=from_status)
    notes.append(("subscription_renewed", sub.site_id,
                  {"period_end": as_utc(sub.current_period_end).isoformat()}))
    return True


def renew_subscription(
    subscription_id: int,
    expected_period_end,
    invoice: Optional[Invoice] = None,
    actor: str = "system",
) -> Optional[Subscription]:
    """Advance the subscription by one cycle if it still ends at *expected_period_end*.

    Returns None when the renewal was a no-op (already renewed or canceled).
    """
    sub = ledger.get_subscription(subscription_id)
    notes: list = []
    if not apply_renewal(sub, expected_period_end, invoice, actor, notes):
        return None
    commit()
    notifications.dispatch(notes)
    return sub


def renew_with_retry(subscription_id: int, expected_period_end, invoice_id: Optional[int] = None,
                     actor: str = "system") -> Optional[Subscription]:
    """Renew, retrying once on :class:`ConcurrencyConflict`."""
    for attempt in (1, 2):
        invoice = db.session.get(Invoice, invoice_id) if invoice_id else None
        try:
            return renew_subscription(subscription_id, expected_period_end, invoice, actor)
        except ConcurrencyConflict:
            if attempt == 2:
                logger.error("Renewal of subscription %s conflicted twice, skipping", subscription_id)
                raise
            logger.info("Retrying renewal of subscription %s after conflict", subscription_id)
    return None


def _fail_renewal(sub: Subscription, reason: str, actor: str, notes: list, now) -> bool:
    if sub.status == "trialing":
        _close(sub, now, action="trial_expired", reason=reason, actor=actor)
        notes.append(("trial_expired", sub.site_id, {"reason": reason}))
        return True
    if sub.status == "active":
        _enter_grace(sub, now, reason=reason, actor=actor, notes=notes)
        return True
    return False


def mark_renewal_failed(subscription_id: int, reason: str, actor: str = "system") -> Subscription:
    sub = ledger.get_subscription(subscription_id)
    notes: list = []
    if _fail_renewal(sub, reason, actor, notes, utc_now()):
        commit()
        notifications.dispatch(notes)
    return sub


# ---------------------------------------------------------------------------
# Cancel / reactivate
# ---------------------------------------------------------------------------

def cancel_subscription(site_id: int, immediate: bool = False, reason: Optional[str] = None,
                        actor: str = "user") -> Subscription:
    sub = _live_or_404(site_id)
    now = utc_now()
    notes: list = []
    if immediate:
        sub.cancel_at = now
        _close(sub, now, action="canceled", reason=reason, actor=actor)
        notes.append(("subscription_canceled", site_id, {"reason": reason or ""}))
    else:
        if sub.cancel_at_period_end:
            return sub
        sub.cancel_at_period_end = True
        sub.cancel_at = billing_boundary(sub)
        ledger.add_history(sub, "cancel_scheduled", actor=actor, reason=reason, from_status=sub.status)
    commit()
    logger.info("Subscription %s for site %s canceled (immediate=%s)", sub.id, site_id, immediate)

    if sub.stripe_subscription_id:
        _sync_remote_cancel(sub.stripe_subscription_id, immediate=immediate)
    notifications.dispatch(notes)
    return sub


def reactivate_subscription(site_id: int, actor: str = "user") -> Subscription:
    """Undo a pending or immediate cancel while the paid period is still running."""
    now = utc_now()
    sub = ledger.get_live_subscription(site_id)
    if sub is not None:
        if not sub.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation")
        sub.cancel_at_period_end = False
        sub.cancel_at = None
        ledger.add_history(sub, "reactivated", actor=actor, from_status=sub.status)
        commit()
        if sub.stripe_subscription_id:
            _sync_remote_cancel(sub.stripe_subscription_id, immediate=False, undo=True)
        return sub

    sub = ledger.get_latest_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no subscription")
    if sub.superseded_by_id or as_utc(sub.current_period_end) <= now:
        raise ValidationError("Subscription can no longer be reactivated")
    from_status = sub.status
    in_trial = sub.trial_end is not None and as_utc(sub.trial_end) > now and (
        as_utc(sub.trial_end) == as_utc(sub.current_period_end)
    )
    sub.status = "trialing" if in_trial else "active"
    sub.canceled_at = None
    sub.cancel_at = None
    sub.cancel_at_period_end = False
    ledger.add_history(sub, "reactivated", actor=actor, from_status=from_status)
    commit()
    return sub


def _sync_remote_cancel(stripe_subscription_id: str, *, immediate: bool, undo: bool = False) -> None:
    from services.gateways import get_adapter

    try:
        get_adapter("stripe").set_remote_cancel(stripe_subscription_id, immediate=immediate, undo=undo)
    except BillingError as e:
        logger.error("Could not update Stripe subscription %s: %s", stripe_subscription_id, e.message)


# ---------------------------------------------------------------------------
# Plan change
# ---------------------------------------------------------------------------

def _replace_row(old: Subscription, plan: SubscriptionPlan, billing_cycle: str, status: str,
                 start, end, *, actor: str, reason: Optional[str] = None,
                 trial_start=None, trial_end=None) -> Subscription:
    now = utc_now()
    from_plan_id, from_status = old.plan_id, old.status
    old_price = monthly_equivalent(ledger.get_plan(old.plan_id), old.billing_cycle)

    old.status = "canceled"
    old.canceled_at = now
    old.grace_ends_at = None
    db.session.flush()

    new = _open_row(old.site_id, plan, billing_cycle, status, start, end, previous=old,
                    trial_start=trial_start, trial_end=trial_end)
    new.stripe_subscription_id = old.stripe_subscription_id
    old.superseded_by_id = new.id
    usage.carry_over_gauges(old, new)

    action = "upgraded" if monthly_equivalent(plan, billing_cycle) >= old_price else "downgraded"
    ledger.add_history(new, action, actor=actor, reason=reason,
                       from_plan_id=from_plan_id, from_status=from_status)
    return new


def change_plan(site_id: int, plan_id: int, billing_cycle: Optional[str] = None,
                actor: str = "user") -> Subscription:
    """Switch plans effective now; the next invoice uses the new price."""
    sub = _live_or_404(site_id)
    if sub.status not in ("active", "trialing"):
        raise ValidationError(f"Cannot change plan of a {sub.status} subscription")
    billing_cycle = _validate_cycle(billing_cycle or sub.billing_cycle)
    plan = ledger.get_plan(plan_id, active_only=True)
    if plan.id == sub.plan_id and billing_cycle == sub.billing_cycle:
        raise ValidationError("Subscription is already on this plan")
    resolve_price(plan, billing_cycle)

    now = utc_now()
    if sub.status == "trialing":
        new = _replace_row(sub, plan, billing_cycle, "trialing", now, sub.current_period_end,
                           actor=actor, trial_start=sub.trial_start, trial_end=sub.trial_end)
    else:
        new = _replace_row(sub, plan, billing_cycle, "active", now, sub.current_period_end,
                           actor=actor)
    new.cancel_at_period_end = sub.cancel_at_period_end
    new.cancel_at = sub.cancel_at
    commit()
    logger.info("Site %s moved from plan %s to %s", site_id, sub.plan_id, plan.id)
    notifications.notify("plan_changed", site_id, plan=plan.name)
    return new


# ---------------------------------------------------------------------------
# Remote (Stripe-managed) subscription state
# ---------------------------------------------------------------------------

def apply_remote_state(sub: Subscription, event, actor: str, notes: list) -> bool:
    """Apply a gateway subscription event.  Older events than the last applied one are ignored.

    Does not commit.
    """
    occurred_at = as_utc(event.occurred_at) or utc_now()
    if sub.gateway_event_at and occurred_at < as_utc(sub.gateway_event_at):
        logger.info("Ignoring stale %s for subscription %s", event.source_type, sub.id)
        return False
    sub.gateway_event_at = occurred_at
    if event.period_start and event.period_end:
        sub.current_period_start = event.period_start
        sub.current_period_end = event.period_end
    if event.cancel_at_period_end is not None:
        sub.cancel_at_period_end = event.cancel_at_period_end
        sub.cancel_at = as_utc(sub.current_period_end) if event.cancel_at_period_end else None

    status = "canceled" if event.event_type == "subscription.deleted" else (
        REMOTE_STATUS_MAP.get(event.status or "", sub.status)
    )
    if status == sub.status:
        return True
    now = utc_now()
    if status == "canceled":
        _close(sub, now, action="canceled", reason=f"Gateway {event.source_type}", actor=actor)
        notes.append(("subscription_canceled", sub.site_id, {"reason": "Canceled at gateway"}))
    elif status == "past_due":
        _enter_grace(sub, now, reason=f"Gateway {event.source_type}", actor=actor, notes=notes)
    else:
        from_status = sub.status
        sub.status = status
        sub.grace_ends_at = None
        if from_status == "trialing" and status == "active":
            action = "trial_converted"
        else:
            action = "renewed" if status == "active" else "reactivated"
        ledger.add_history(sub, action, actor=actor, from_status=from_status,
                           reason=f"Gateway {event.source_type}")
    return True


def apply_remote_payment_failure(sub: Subscription, reason: str, actor: str, notes: list) -> bool:
    """Gateway reported a failed renewal charge.  Does not commit."""
    return _fail_renewal(sub, reason, actor, notes, utc_now())


# ---------------------------------------------------------------------------
# Boundary sweep
# ---------------------------------------------------------------------------

def _has_autopay_method(sub: Subscription) -> bool:
    return bool(sub.auto_pay_enabled and sub.default_payment_method_id)


def _process_boundary(sub: Subscription, now, notes: list) -> Optional[str]:
    plan = db.session.get(SubscriptionPlan, sub.plan_id)
    boundary = billing_boundary(sub)
    grace = datetime.timedelta(days=_grace_days())

    if sub.status == "past_due":
        if sub.grace_ends_at and as_utc(sub.grace_ends_at) <= now:
            _close(sub, now, action="grace_expired", reason="Grace period elapsed", actor="system")
            notes.append(("subscription_canceled", sub.site_id, {"reason": "Payment not received"}))
            return "grace_expired"
        return None
    if boundary > now:
        return None
    if sub.cancel_at_period_end:
        _close(sub, now, action="canceled", reason="Canceled at period end", actor="system")
        notes.append(("subscription_canceled", sub.site_id, {"reason": "Canceled at period end"}))
        return "canceled"
    if is_free_plan(plan):
        apply_renewal(sub, sub.current_period_end, None, "system", notes)
        return "renewed"
    if sub.status == "trialing":
        # An unattempted auto-pay charge gets one grace window to convert the trial
        if (
            _has_autopay_method(sub)
            and boundary + grace > now
            and not ledger.is_event_claimed(autopay_claim_key(sub))
        ):
            return None
        _fail_renewal(sub, "Trial ended without payment", "system", notes, now)
        return "trial_expired"
    _fail_renewal(sub, "Period ended without payment", "system", notes, now)
    return "past_due"


def process_period_boundaries(now=None) -> dict:
    """Run boundary transitions for every due subscription, one transaction each."""
    now = as_utc(now) or utc_now()
    due_ids = [
        row.id for row in Subscription.query.filter(
            Subscription.status != "canceled",
            or_(
                Subscription.current_period_end <= now,
                and_(Subscription.status == "trialing", Subscription.trial_end <= now),
                Subscription.grace_ends_at <= now,
            ),
        ).order_by(Subscription.id).all()
    ]
    results: dict = {}
    for sub_id in due_ids:
        notes: list = []
        try:
            sub = ledger.get_subscription(sub_id)
            outcome = _process_boundary(sub, now, notes)
            if outcome:
                commit()
                results[outcome] = results.get(outcome, 0) + 1
        except (BillingError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error("Boundary processing failed for subscription %s: %s", sub_id, e)
            results["errors"] = results.get("errors", 0) + 1
            continue
        notifications.dispatch(notes)
    if results:
        logger.info("Boundary sweep: %s", results)
    return results


def send_trial_warnings(now=None) -> int:
    """Notify trials ending within a warning threshold, once per threshold."""
    now = as_utc(now) or utc_now()
    thresholds = sorted(current_app.config["BILLING_CONFIG"].trial_warning_days)
    if not thresholds:
        return 0
    horizon = now + datetime.timedelta(days=thresholds[-1])
    trials = Subscription.query.filter(
        Subscription.status == "trialing",
        Subscription.trial_end > now,
        Subscription.trial_end <= horizon,
    ).all()
    sent = 0
    for sub in trials:
        remaining = as_utc(sub.trial_end) - now
        days = next(d for d in thresholds if remaining <= datetime.timedelta(days=d))
        site_id = sub.site_id
        if not ledger.claim_event(f"trial_warning_{sub.id}_{days}", source="trial_warning"):
            continue
        db.session.commit()
        notifications.notify("trial_ending", site_id, days=days)
        sent += 1
    return sent


# ---------------------------------------------------------------------------
# Admin and settings
# ---------------------------------------------------------------------------

def extend_subscription(subscription_id: int, days: int, actor: str = "admin",
                        reason: Optional[str] = None) -> Subscription:
    if days is None or days <= 0:
        raise ValidationError("days must be a positive integer")
    sub = ledger.get_subscription(subscription_id)
    if sub.superseded_by_id:
        raise ValidationError("Cannot extend a subscription that was replaced by a plan change")
    live = ledger.get_live_subscription(sub.site_id)
    if live is not None and live.id != sub.id:
        raise ValidationError("Site already has another active subscription")

    now = utc_now()
    from_status = sub.status
    delta = datetime.timedelta(days=days)
    new_end = max(as_utc(sub.current_period_end), now) + delta
    sub.current_period_end = new_end
    if sub.status == "trialing":
        sub.trial_end = new_end
    elif sub.status in ("past_due", "canceled"):
        sub.status = "active"
        sub.canceled_at = None
        sub.cancel_at = None
        sub.cancel_at_period_end = False
    sub.grace_ends_at = None
    ledger.add_history(sub, "extended", actor=actor, from_status=from_status,
                       reason=reason or f"Extended by {days} day(s)")
    commit()
    logger.info("Subscription %s extended by %s day(s) to %s", sub.id, days, new_end)
    return sub


def update_autopay_settings(site_id: int, patch: Patch) -> Subscription:
    """Apply a partial update of ``enabled``, ``gateway`` and ``payment_method_id``."""
    sub = _live_or_404(site_id)
    if "payment_method_id" in patch:
        method_id = patch.get("payment_method_id")
        if method_id is None:
            sub.default_payment_method_id = None
        else:
            method = ledger.get_payment_method(method_id, site_id)
            sub.default_payment_method_id = method.id
            if "gateway" not in patch:
                sub.preferred_gateway = method.gateway
    if "gateway" in patch:
        gateway = patch.get("gateway")
        if gateway is not None and gateway not in VALID_GATEWAYS:
            raise ValidationError(f"Unknown payment gateway: {gateway}")
        sub.preferred_gateway = gateway
    if "enabled" in patch:
        sub.auto_pay_enabled = bool(patch.get("enabled"))

    if sub.auto_pay_enabled:
        if not sub.default_payment_method_id:
            raise ValidationError("A payment method is required to enable auto-pay")
        method = ledger.get_payment_method(sub.default_payment_method_id, site_id)
        if sub.preferred_gateway and sub.preferred_gateway != method.gateway:
            raise ValidationError(
                f"Payment method belongs to {method.gateway}, not {sub.preferred_gateway}"
            )
    commit()
    return sub


# Token columns that make a stored method chargeable off-session
METHOD_TOKEN_FIELDS = {
    "stripe": ("stripe_customer_id", "stripe_payment_method_id"),
    "razorpay": ("razorpay_customer_id", "razorpay_token_id"),
    "paypal": ("paypal_vault_id",),
}

METHOD_FIELDS = (
    "method_type", "stripe_customer_id", "stripe_payment_method_id", "razorpay_customer_id",
    "razorpay_token_id", "paypal_vault_id", "paypal_payer_id", "last4", "brand",
    "exp_month", "exp_year",
)


def attach_payment_method(site_id: int, gateway: str, fields: dict, *,
                          make_default: bool = False):
    """Store a gateway token for *site_id*; the default also feeds auto-pay."""
    if gateway not in VALID_GATEWAYS:
        raise ValidationError(f"Unknown payment gateway: {gateway}")
    ledger.get_site(site_id)
    missing = [name for name in METHOD_TOKEN_FIELDS[gateway] if not fields.get(name)]
    if missing:
        raise ValidationError(f"Missing {gateway} token field(s): {', '.join(missing)}")
    values = {name: fields[name] for name in METHOD_FIELDS if fields.get(name) is not None}
    make_default = make_default or not ledger.list_payment_methods(site_id)
    method = ledger.add_payment_method(site_id, gateway, make_default=make_default, **values)

    sub = ledger.get_live_subscription(site_id)
    if make_default and sub is not None:
        sub.default_payment_method_id = method.id
        sub.preferred_gateway = gateway
    commit()
    logger.info("Stored %s payment method %s for site %s", gateway, method.id, site_id)
    return method


def detach_payment_method(site_id: int, payment_method_id: int) -> None:
    """Remove a stored method; auto-pay relying on it is switched off."""
    method = ledger.get_payment_method(payment_method_id, site_id)
    ledger.remove_payment_method(method)
    sub = ledger.get_live_subscription(site_id)
    if sub is not None and sub.default_payment_method_id == method.id:
        sub.default_payment_method_id = None
        if sub.auto_pay_enabled:
            sub.auto_pay_enabled = False
            logger.warning("Auto-pay disabled for site %s: payment method %s removed",
                           site_id, method.id)
    commit()
