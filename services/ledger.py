"""Billing ledger: data access for plans, subscriptions, invoices and payments.

Pure persistence: functions here add, look up and atomically update rows but
never decide *whether* a business transition should happen.  None of them
commit; the calling service owns the transaction.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from errors import LedgerInconsistency, NotFoundError, ValidationError
from extensions import db
from models import (
    Coupon,
    CouponRedemption,
    Invoice,
    Payment,
    PaymentMethod,
    PaymentRefund,
    ProcessedEvent,
    Site,
    Subscription,
    SubscriptionHistory,
    SubscriptionPlan,
)
from utils import dump_json, utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Forward-only payment status moves; anything else is ignored
PAYMENT_TRANSITIONS = {
    "pending": {"succeeded", "failed"},
    "failed": {"succeeded"},
    "succeeded": {"partially_refunded", "refunded"},
    "partially_refunded": {"partially_refunded", "refunded"},
    "refunded": set(),
}


# ---------------------------------------------------------------------------
# Sites & plans
# ---------------------------------------------------------------------------

def get_site(site_id: int) -> Site:
    site = db.session.get(Site, site_id)
    if site is None:
        raise NotFoundError(f"Site {site_id} not found")
    return site


def create_site(name: str, domain: str, owner_email: Optional[str] = None) -> Site:
    site = Site(name=name, domain=domain.strip().lower(), owner_email=owner_email)
    db.session.add(site)
    db.session.flush()
    return site


def get_plan(plan_id, *, active_only: bool = False) -> SubscriptionPlan:
    plan = db.session.get(SubscriptionPlan, plan_id) if plan_id is not None else None
    if plan is None or (active_only and not plan.is_active):
        raise NotFoundError(f"Plan {plan_id} not found")
    return plan


def list_plans(*, public_only: bool = True) -> list[SubscriptionPlan]:
    query = SubscriptionPlan.query
    if public_only:
        query = query.filter_by(is_active=True, is_public=True)
    return query.order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id).all()


def count_live_subscribers(plan_id: int) -> int:
    return Subscription.query.filter(
        Subscription.plan_id == plan_id,
        Subscription.status != "canceled",
    ).count()


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def get_subscription(subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


def get_live_subscription(site_id: int) -> Optional[Subscription]:
    """Return the site's single non-canceled subscription, or None."""
    return Subscription.query.filter(
        Subscription.site_id == site_id,
        Subscription.status != "canceled",
    ).first()


def get_latest_subscription(site_id: int) -> Optional[Subscription]:
    return (
        Subscription.query.filter_by(site_id=site_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def find_subscription_by_stripe_id(stripe_subscription_id: str) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return (
        Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id)
        .order_by(Subscription.id.desc())
        .first()
    )


def site_has_used_trial(site_id: int) -> bool:
    return db.session.query(
        Subscription.query.filter(
            Subscription.site_id == site_id,
            Subscription.trial_start.isnot(None),
        ).exists()
    ).scalar()


def add_history(
    sub: Subscription,
    action: str,
    *,
    actor: str = "system",
    reason: Optional[str] = None,
    from_plan_id: Optional[int] = None,
    to_plan_id: Optional[int] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
) -> SubscriptionHistory:
    entry = SubscriptionHistory(
        site_id=sub.site_id,
        subscription_id=sub.id,
        action=action,
        from_plan_id=from_plan_id if from_plan_id is not None else sub.plan_id,
        to_plan_id=to_plan_id if to_plan_id is not None else sub.plan_id,
        from_status=from_status,
        to_status=to_status if to_status is not None else sub.status,
        reason=reason,
        actor=actor,
    )
    db.session.add(entry)
    return entry


def list_history(site_id: int) -> list[SubscriptionHistory]:
    return (
        SubscriptionHistory.query.filter_by(site_id=site_id)
        .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
        .all()
    )


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------

def get_payment_method(payment_method_id, site_id: Optional[int] = None) -> PaymentMethod:
    method = db.session.get(PaymentMethod, payment_method_id) if payment_method_id else None
    if method is None or method.is_deleted or (site_id is not None and method.site_id != site_id):
        raise NotFoundError(f"Payment method {payment_method_id} not found")
    return method


def list_payment_methods(site_id: int) -> list[PaymentMethod]:
    return (
        PaymentMethod.query.filter_by(site_id=site_id, is_deleted=False)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.id)
        .all()
    )


def add_payment_method(site_id: int, gateway: str, *, make_default: bool = False, **fields) -> PaymentMethod:
    if make_default:
        PaymentMethod.query.filter_by(site_id=site_id).update({"is_default": False})
    method = PaymentMethod(site_id=site_id, gateway=gateway, is_default=make_default, **fields)
    db.session.add(method)
    db.session.flush()
    return method


def remove_payment_method(method: PaymentMethod) -> None:
    """Soft-delete *method*; payments and logs keep referencing the row."""
    method.is_deleted = True
    method.is_default = False


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def generate_invoice_number() -> str:
    return f"INV-{utc_now():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def assert_invoice_balanced(invoice: Invoice) -> None:
    """Raise :class:`LedgerInconsistency` if a non-draft invoice does not balance."""
    if invoice.status == "draft":
        return
    paid = Decimal(invoice.amount_paid or 0)
    due = Decimal(invoice.amount_due or 0)
    total = Decimal(invoice.total or 0)
    if paid + due != total:
        logger.critical(
            "Invoice %s out of balance: paid=%s due=%s total=%s",
            invoice.number, paid, due, total,
        )
        raise LedgerInconsistency(
            f"Invoice {invoice.number} out of balance: {paid} + {due} != {total}"
        )


def create_invoice(
    *,
    site_id: Optional[int],
    subscription_id: Optional[int],
    subtotal,
    currency: str,
    discount=ZERO,
    tax=ZERO,
    status: str = "open",
    period_start=None,
    period_end=None,
    description: Optional[str] = None,
    external_invoice_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Invoice:
    subtotal = Decimal(str(subtotal))
    discount = Decimal(str(discount))
    tax = Decimal(str(tax))
    total = max(subtotal - discount + tax, ZERO)
    paid = status == "paid"
    now = utc_now()
    invoice = Invoice(
        number=generate_invoice_number(),
        site_id=site_id,
        subscription_id=subscription_id,
        status=status,
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=total,
        amount_paid=total if paid else ZERO,
        amount_due=ZERO if paid else total,
        currency=currency,
        period_start=period_start,
        period_end=period_end,
        due_date=now,
        paid_at=now if paid else None,
        description=description,
        external_invoice_id=external_invoice_id,
        metadata_json=dump_json(metadata),
    )
    assert_invoice_balanced(invoice)
    db.session.add(invoice)
    db.session.flush()
    return invoice


def mark_invoice_paid(invoice: Invoice) -> bool:
    """Settle *invoice* in full.  Returns False when it was already paid."""
    if invoice.status == "paid":
        return False
    if invoice.status in ("void", "uncollectible"):
        logger.warning("Paying invoice %s in status %s", invoice.number, invoice.status)
    invoice.status = "paid"
    invoice.amount_paid = invoice.total
    invoice.amount_due = ZERO
    invoice.paid_at = utc_now()
    assert_invoice_balanced(invoice)
    return True


def find_invoice_by_external_id(external_invoice_id: str) -> Optional[Invoice]:
    if not external_invoice_id:
        return None
    return Invoice.query.filter_by(external_invoice_id=external_invoice_id).first()


def find_open_invoice(subscription_id: int, period_start) -> Optional[Invoice]:
    return Invoice.query.filter_by(
        subscription_id=subscription_id, status="open", period_start=period_start
    ).first()


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def create_payment(
    *,
    gateway: str,
    amount,
    currency: str,
    site_id: Optional[int] = None,
    invoice_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    payment_method_id: Optional[int] = None,
    plan_id: Optional[int] = None,
    billing_cycle: Optional[str] = None,
    status: str = "pending",
    gateway_order_id: Optional[str] = None,
    gateway_payment_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Payment:
    payment = Payment(
        gateway=gateway,
        amount=Decimal(str(amount)),
        currency=currency,
        site_id=site_id,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        payment_method_id=payment_method_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        status=status,
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        payment_reference=payment_reference,
        paid_at=utc_now() if status == "succeeded" else None,
        metadata_json=dump_json(metadata),
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def find_payment_by_order(gateway: str, order_id: str) -> Optional[Payment]:
    if not order_id:
        return None
    return Payment.query.filter_by(gateway=gateway, gateway_order_id=order_id).first()


def find_payment_by_gateway_payment(gateway: str, gateway_payment_id: str) -> Optional[Payment]:
    if not gateway_payment_id:
        return None
    return Payment.query.filter_by(
        gateway=gateway, gateway_payment_id=gateway_payment_id
    ).first()


def find_payment_by_reference(payment_reference: str) -> Optional[Payment]:
    if not payment_reference:
        return None
    return Payment.query.filter_by(payment_reference=payment_reference).first()


def transition_payment(
    payment: Payment,
    new_status: str,
    *,
    failure_reason: Optional[str] = None,
    gateway_payment_id: Optional[str] = None,
) -> bool:
    """Move *payment* forward to *new_status*.

    Returns False (and changes nothing) for a repeat or backward move, which
    is what a duplicate or out-of-order gateway event produces.
    """
    if payment.status == new_status and new_status != "partially_refunded":
        return False
    if new_status not in PAYMENT_TRANSITIONS.get(payment.status, set()):
        logger.warning(
            "Ignoring payment %s transition %s -> %s", payment.id, payment.status, new_status
        )
        return False
    payment.status = new_status
    if new_status == "succeeded":
        payment.paid_at = utc_now()
        payment.failure_reason = None
    if failure_reason:
        payment.failure_reason = failure_reason
    if gateway_payment_id and not payment.gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    return True


def refunded_total(payment_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentRefund.amount), 0))
        .filter(PaymentRefund.payment_id == payment_id)
        .scalar()
    )
    return Decimal(str(total))


def find_refund_by_gateway_id(gateway_refund_id: str) -> Optional[PaymentRefund]:
    if not gateway_refund_id:
        return None
    return PaymentRefund.query.filter_by(gateway_refund_id=gateway_refund_id).first()


def record_refund(
    payment: Payment,
    amount,
    *,
    gateway_refund_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> Optional[PaymentRefund]:
    """Add a refund row and move the payment to (partially_)refunded.

    Returns None when the gateway refund id was already recorded.
    """
    if gateway_refund_id and find_refund_by_gateway_id(gateway_refund_id):
        return None
    amount = Decimal(str(amount))
    already = refunded_total(payment.id)
    if amount <= ZERO or already + amount > Decimal(payment.amount):
        raise ValidationError(
            f"Refund of {amount} exceeds refundable balance {Decimal(payment.amount) - already}"
        )
    refund = PaymentRefund(
        payment_id=payment.id,
        amount=amount,
        currency=payment.currency,
        reason=reason,
        gateway_refund_id=gateway_refund_id,
    )
    db.session.add(refund)
    new_status = "refunded" if already + amount >= Decimal(payment.amount) else "partially_refunded"
    transition_payment(payment, new_status)
    db.session.flush()
    return refund


def payment_stats() -> dict:
    """Payment counts per status and settled / refunded totals per currency."""
    by_status = dict(
        db.session.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
    )
    collected = {
        currency: Decimal(str(total))
        for currency, total in db.session.query(Payment.currency, func.sum(Payment.amount))
        .filter(Payment.status.in_(("succeeded", "partially_refunded", "refunded")))
        .group_by(Payment.currency)
        .all()
    }
    refunded = {
        currency: Decimal(str(total))
        for currency, total in db.session.query(PaymentRefund.currency, func.sum(PaymentRefund.amount))
        .group_by(PaymentRefund.currency)
        .all()
    }
    return {"byStatus": by_status, "collected": collected, "refunded": refunded}


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

def get_coupon_by_code(code: str) -> Optional[Coupon]:
    if not code:
        return None
    return Coupon.query.filter_by(code=code.strip().upper()).first()


def redeem_coupon(
    coupon: Coupon,
    site_id: int,
    invoice_id: Optional[int],
    discount_amount,
) -> CouponRedemption:
    """Check-and-increment the redemption counter, then record the redemption.

    The counter moves in a single conditional UPDATE so two concurrent
    redemptions of the last slot cannot both succeed.
    """
    result = db.session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            Coupon.is_active.is_(True),
            or_(
                Coupon.max_redemptions.is_(None),
                Coupon.times_redeemed < Coupon.max_redemptions,
            ),
        )
        .values(times_redeemed=Coupon.times_redeemed + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError("Coupon is no longer valid", error_code="COUPON_EXHAUSTED")
    redemption = CouponRedemption(
        coupon_id=coupon.id,
        site_id=site_id,
        invoice_id=invoice_id,
        discount_amount=Decimal(str(discount_amount)),
    )
    db.session.add(redemption)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(
            "Coupon is no longer valid for this site", error_code="COUPON_ALREADY_REDEEMED"
        )
    db.session.refresh(coupon)
    return redemption


# ---------------------------------------------------------------------------
# Idempotency claims
# ---------------------------------------------------------------------------

def claim_event(key: str, source: Optional[str] = None) -> bool:
    """Insert an idempotency claim; False if *key* was already claimed.

    Must be the first write of the current transaction: a duplicate rolls
    the whole session back.
    """
    db.session.add(ProcessedEvent(key=key, source=source))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def release_event(key: str) -> None:
    ProcessedEvent.query.filter_by(key=key).delete()


def is_event_claimed(key: str) -> bool:
    return ProcessedEvent.query.filter_by(key=key).first() is not None


def mark_event_timed_out(key: str, now) -> None:
    """Keep the claim on *key* but flag its outcome as unknown."""
    ProcessedEvent.query.filter_by(key=key).update(
        {"status": "timeout", "updated_at": now}, synchronize_session=False
    )


def reclaim_timed_out_event(key: str, now, retry_after, max_attempts: int) -> bool:
    """Take a timed-out claim for one more attempt.

    Succeeds for exactly one caller, and only once *retry_after* has passed
    since the last attempt and fewer than *max_attempts* have been made.
    """
    result = db.session.execute(
        update(ProcessedEvent)
        .where(
            ProcessedEvent.key == key,
            ProcessedEvent.status == "timeout",
            ProcessedEvent.attempts < max_attempts,
            ProcessedEvent.updated_at <= now - retry_after,
        )
        .values(status=None, attempts=ProcessedEvent.attempts + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

def paginate(query, page: int, per_page: int) -> tuple[list, int]:
    """Return (items, total) for a 1-based *page*."""
    page = max(1, page)
    per_page = min(max(1, per_page), 100)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total
