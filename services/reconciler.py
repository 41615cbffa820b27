"""Payment reconciliation.

Turns checkout orders, client-side verifications, gateway webhooks and
registration payments into ledger state.  Gateway calls always happen
outside an open ledger transaction; their outcome is then recorded in one
transaction together with any lifecycle transition it causes.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import (
    BillingError,
    GatewayDeclinedError,
    GatewayError,
    GatewayTransientError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from extensions import db
from models import VALID_BILLING_CYCLES, Invoice, Payment, PaymentRefund
from services import coupons, gateways, ledger, lifecycle, notifications
from services.payment_log import log_payment_event, timed
from utils import as_utc, load_json, parse_datetime, safe_decimal, safe_int, utc_now

logger = logging.getLogger(__name__)

SETTLED_STATUSES = {"succeeded", "partially_refunded", "refunded"}

CLIENT_EVENTS = {
    "payment_failed": "failed",
    "payment_cancelled": "failed",
    "payment_dismissed": "failed",
    "checkout_opened": "initiated",
    "checkout_error": "error",
}


def _receipt() -> str:
    return f"rcpt_{utc_now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"


def _end_read_transaction() -> None:
    # Nothing is pending here; this only releases the implicit read transaction
    db.session.commit()


def _order_id_from(payload: dict) -> Optional[str]:
    for key in ("orderId", "razorpay_order_id", "paymentIntentId", "token"):
        if payload.get(key):
            return str(payload[key])
    return None


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def _price_order(plan, billing_cycle: str, gateway: str, currency: Optional[str],
                 coupon=None, client_amount=None) -> tuple[Decimal, Decimal, Decimal, str]:
    """Return ``(subtotal, discount, total, currency)`` for a checkout order."""
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")
    if currency is None and gateway == "razorpay" and plan.inr_enabled:
        currency = "INR"
    currency = (currency or plan.currency).upper()
    if currency == "INR" and plan.currency.upper() != "INR" and gateway != "razorpay":
        raise ValidationError("INR pricing is only available through Razorpay")

    subtotal, currency = lifecycle.resolve_price(plan, billing_cycle, currency)
    discount = coupons.compute_discount(coupon, subtotal) if coupon else Decimal("0.00")
    total = subtotal - discount
    if total <= 0:
        raise ValidationError("Order total must be greater than zero")
    if client_amount not in (None, ""):
        requested = safe_decimal(client_amount)
        if requested is None or requested != total:
            raise ValidationError(
                f"Amount {client_amount} does not match the price {total} {currency}",
                error_code="AMOUNT_MISMATCH",
            )
    return subtotal, discount, total, currency


def _call_create_order(adapter, total, currency, receipt, metadata, return_url, *,
                       site_id=None, payment_reference=None):
    with timed() as t:
        try:
            return adapter.create_order(
                total, currency, receipt=receipt, metadata=metadata, return_url=return_url
            ), t
        except BillingError as e:
            log_payment_event(
                "create_order",
                "timeout" if isinstance(e, GatewayTransientError) else "error",
                gateway=adapter.name,
                site_id=site_id,
                payment_reference=payment_reference,
                amount=total,
                currency=currency,
                error_message=e.message,
                error_code=e.error_code,
                request_data=metadata,
            )
            db.session.commit()
            raise


def _order_response(result, payment: Payment, invoice: Invoice, plan_id: int) -> dict:
    response = {
        "orderId": result.order_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "gatewayPublicKey": result.public_key,
        "planId": plan_id,
        "invoiceId": invoice.id,
        "paymentId": payment.id,
    }
    if result.approval_url:
        response["approvalUrl"] = result.approval_url
    if result.client_secret:
        response["clientSecret"] = result.client_secret
    if payment.payment_reference:
        response["paymentReference"] = payment.payment_reference
    return response


# ---------------------------------------------------------------------------
# Checkout orders
# ---------------------------------------------------------------------------

def create_checkout_order(
    site_id: int,
    gateway: str,
    plan_id: int,
    billing_cycle: str = "monthly",
    *,
    amount=None,
    currency: Optional[str] = None,
    coupon_code: Optional[str] = None,
    return_url: Optional[str] = None,
) -> dict:
    """Open a gateway order for one cycle of *plan_id* and record it as pending."""
    ledger.get_site(site_id)
    adapter = gateways.get_adapter(gateway)
    plan = ledger.get_plan(plan_id, active_only=True)
    coupon = None
    if coupon_code:
        coupon = coupons.validate_coupon(coupon_code, site_id=site_id, currency=currency or plan.currency)
    subtotal, discount, total, currency = _price_order(
        plan, billing_cycle, gateway, currency, coupon, amount
    )

    sub = ledger.get_live_subscription(site_id)
    period_start, period_end = lifecycle.next_billing_period(sub, plan.id, billing_cycle)
    sub_id = sub.id if sub and sub.plan_id == plan.id and sub.billing_cycle == billing_cycle else None
    coupon_id = coupon.id if coupon else None
    plan_id, plan_name = plan.id, plan.name
    receipt = _receipt()
    metadata = {"site_id": site_id, "plan_id": plan_id, "billing_cycle": billing_cycle,
                "receipt": receipt}
    _end_read_transaction()

    result, t = _call_create_order(adapter, total, currency, receipt, metadata, return_url,
                                   site_id=site_id)

    stale = ledger.find_open_invoice(sub_id, period_start) if sub_id else None
    invoice = ledger.create_invoice(
        site_id=site_id,
        subscription_id=sub_id,
        subtotal=subtotal,
        discount=discount,
        currency=currency,
        period_start=period_start,
        period_end=period_end,
        description=f"{plan_name} ({billing_cycle})",
        metadata={"coupon": coupon_code.upper()} if coupon_code else None,
    )
    if stale is not None:
        stale.status = "void"
    if coupon_id:
        ledger.redeem_coupon(ledger.get_coupon_by_code(coupon_code), site_id, invoice.id, discount)
    payment = ledger.create_payment(
        gateway=gateway,
        amount=total,
        currency=currency,
        site_id=site_id,
        invoice_id=invoice.id,
        subscription_id=sub_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        gateway_order_id=result.order_id,
        metadata=metadata,
    )
    log_payment_event(
        "create_order", "success",
        gateway=gateway, site_id=site_id, subscription_id=sub_id, payment_id=payment.id,
        order_id=result.order_id, amount=total, currency=currency,
        request_data=metadata, response_data=result.raw, duration_ms=t.elapsed_ms,
    )
    db.session.commit()
    logger.info("Created %s order %s for site %s (%s %s)", gateway, result.order_id, site_id,
                total, currency)
    return _order_response(result, payment, invoice, plan_id)


def create_registration_order(
    gateway: str,
    plan_id: int,
    billing_cycle: str = "monthly",
    *,
    email: str,
    amount=None,
    currency: Optional[str] = None,
    return_url: Optional[str] = None,
) -> dict:
    """Open an order for a customer who has no site yet.

    The pending payment is keyed by a generated payment reference that the
    client later presents to :func:`complete_registration`.
    """
    if not email or "@" not in email:
        raise ValidationError("A valid email address is required")
    adapter = gateways.get_adapter(gateway)
    plan = ledger.get_plan(plan_id, active_only=True)
    subtotal, discount, total, currency = _price_order(
        plan, billing_cycle, gateway, currency, None, amount
    )
    plan_id, plan_name = plan.id, plan.name
    payment_reference = uuid.uuid4().hex
    receipt = _receipt()
    metadata = {"payment_reference": payment_reference, "plan_id": plan_id,
                "billing_cycle": billing_cycle, "email": email, "receipt": receipt}
    _end_read_transaction()

    result, t = _call_create_order(adapter, total, currency, receipt, metadata, return_url,
                                   payment_reference=payment_reference)

    invoice = ledger.create_invoice(
        site_id=None,
        subscription_id=None,
        subtotal=subtotal,
        currency=currency,
        description=f"{plan_name} ({billing_cycle}) registration",
        metadata={"email": email},
    )
    payment = ledger.create_payment(
        gateway=gateway,
        amount=total,
        currency=currency,
        invoice_id=invoice.id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        gateway_order_id=result.order_id,
        payment_reference=payment_reference,
        metadata=metadata,
    )
    log_payment_event(
        "create_registration_order", "success",
        gateway=gateway, payment_id=payment.id, order_id=result.order_id,
        payment_reference=payment_reference, amount=total, currency=currency,
        request_data=metadata, response_data=result.raw, duration_ms=t.elapsed_ms,
    )
    db.session.commit()
    return _order_response(result, payment, invoice, plan_id)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

def settle_payment(payment: Payment, gateway_payment_id: Optional[str], actor: str,
                   notes: list) -> bool:
    """Mark *payment* succeeded and apply it.  Returns False if it was already settled.

    Does not commit.
    """
    if not ledger.transition_payment(payment, "succeeded", gateway_payment_id=gateway_payment_id):
        return False
    invoice = db.session.get(Invoice, payment.invoice_id) if payment.invoice_id else None
    if payment.site_id is not None:
        lifecycle.apply_successful_payment(payment, invoice, actor, notes)
    if invoice is not None:
        ledger.mark_invoice_paid(invoice)
    logger.info("Payment %s settled via %s (%s)", payment.id, payment.gateway, actor)
    return True


def verify_payment(
    gateway: str,
    payload: dict,
    *,
    site_id: Optional[int] = None,
    payment_reference: Optional[str] = None,
) -> dict:
    """Verify a client-reported payment with the gateway and settle it.

    Signature failures and declines are returned as ``success=False``
    without touching the ledger beyond the payment log; a transient gateway
    error leaves the payment pending for webhook reconciliation.
    """
    adapter = gateways.get_adapter(gateway)
    if payment_reference:
        payment = ledger.find_payment_by_reference(payment_reference)
    else:
        payment = ledger.find_payment_by_order(gateway, _order_id_from(payload))
    if payment is None or payment.gateway != gateway or (
        site_id is not None and payment.site_id != site_id
    ):
        raise NotFoundError("Payment not found")

    response = {"paymentId": payment.id, "transactionId": payment.gateway_payment_id}
    if payment.status in SETTLED_STATUSES:
        return dict(response, success=True, message="Payment already verified")

    payment_id, order_id = payment.id, payment.gateway_order_id
    log_context = dict(gateway=gateway, site_id=payment.site_id, payment_id=payment_id,
                       order_id=order_id, payment_reference=payment.payment_reference,
                       amount=payment.amount, currency=payment.currency, request_data=payload)
    _end_read_transaction()

    with timed() as t:
        try:
            result = adapter.verify_or_capture(dict(payload, orderId=order_id))
            if result.order_id and result.order_id != order_id:
                raise SignatureError("Payment belongs to a different order",
                                     error_code="INVALID_SIGNATURE")
        except SignatureError as e:
            log_payment_event("verify_payment", "failed", error_message=e.message,
                              error_code="INVALID_SIGNATURE", **log_context)
            db.session.commit()
            return dict(response, success=False, message="Payment verification failed")
        except GatewayTransientError as e:
            log_payment_event("verify_payment", "timeout", error_message=e.message,
                              error_code=e.error_code, duration_ms=t.elapsed_ms, **log_context)
            db.session.commit()
            return dict(response, success=False, pending=True,
                        message="Payment is being processed, we will confirm it shortly")
        except GatewayError as e:
            log_payment_event("verify_payment", "error", error_message=e.message,
                              error_code=e.error_code, duration_ms=t.elapsed_ms, **log_context)
            db.session.commit()
            raise

    payment = ledger.get_payment(payment_id)
    if not result.success:
        ledger.transition_payment(payment, "failed", failure_reason=result.failure_reason,
                                  gateway_payment_id=result.gateway_reference)
        log_payment_event("verify_payment", "failed", error_message=result.failure_reason,
                          error_code=result.failure_code, response_data=result.raw,
                          duration_ms=t.elapsed_ms, **log_context)
        db.session.commit()
        return dict(response, success=False, message=result.failure_reason or "Payment declined")

    notes: list = []
    settle_payment(payment, result.gateway_reference, "user", notes)
    log_payment_event("verify_payment", "success", transaction_id=result.gateway_reference,
                      response_data=result.raw, duration_ms=t.elapsed_ms, **log_context)
    lifecycle.commit()
    notifications.dispatch(notes)
    return dict(response, transactionId=result.gateway_reference, success=True,
                message="Payment verified")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def record_orphaned_payment(
    gateway: str,
    *,
    order_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    amount=None,
    currency: Optional[str] = None,
    email: Optional[str] = None,
    domain: Optional[str] = None,
    plan_id: Optional[int] = None,
    billing_cycle: Optional[str] = None,
    payment_reference: Optional[str] = None,
    payment_id: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    """Queue a confirmed charge that has no local account for manual reconciliation.

    NOTE: This does NOT commit.
    """
    logger.error(
        "Orphaned %s payment order=%s reference=%s amount=%s %s: %s",
        gateway, order_id, payment_reference, amount, currency, error_message,
    )
    log_payment_event(
        "orphaned_payment", "error",
        gateway=gateway,
        payment_id=payment_id,
        order_id=order_id,
        transaction_id=transaction_id,
        payment_reference=payment_reference,
        amount=amount,
        currency=currency,
        error_message=error_message,
        error_code="ORPHANED_PAYMENT",
        metadata={
            "email": email,
            "domain": domain,
            "plan_id": plan_id,
            "billing_cycle": billing_cycle,
        },
    )


def complete_registration(payment_reference: str, site_name: str, domain: str, email: str):
    """Create the site and subscription bought by a settled registration payment."""
    if not site_name or not domain:
        raise ValidationError("site name and domain are required")
    payment = ledger.find_payment_by_reference(payment_reference)
    if payment is None:
        raise NotFoundError("Payment not found")
    if payment.status != "succeeded":
        raise ValidationError("Payment has not been completed")
    if payment.site_id is not None:
        sub = ledger.get_live_subscription(payment.site_id)
        if sub is not None:
            return sub

    context = dict(order_id=payment.gateway_order_id, transaction_id=payment.gateway_payment_id,
                   amount=payment.amount, currency=payment.currency, plan_id=payment.plan_id,
                   billing_cycle=payment.billing_cycle, payment_id=payment.id,
                   payment_reference=payment_reference, email=email, domain=domain)
    gateway = payment.gateway
    notes: list = []
    try:
        site = ledger.create_site(site_name, domain, email)
        payment.site_id = site.id
        invoice = db.session.get(Invoice, payment.invoice_id) if payment.invoice_id else None
        if invoice is not None:
            invoice.site_id = site.id
        sub = lifecycle.apply_successful_payment(payment, invoice, "user", notes)
        if invoice is not None:
            ledger.mark_invoice_paid(invoice)
        lifecycle.commit()
    except (BillingError, SQLAlchemyError) as e:
        db.session.rollback()
        message = e.message if isinstance(e, BillingError) else str(e.__class__.__name__)
        record_orphaned_payment(gateway, error_message=f"Registration failed: {message}", **context)
        db.session.commit()
        raise ValidationError(
            "Registration could not be completed; the payment was recorded for manual review",
            error_code="ORPHANED_PAYMENT",
        ) from e
    logger.info("Registration %s completed as site %s", payment_reference, site.id)
    notifications.dispatch(notes)
    return sub


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def _find_payment(event) -> Optional[Payment]:
    return (
        ledger.find_payment_by_order(event.gateway, event.order_id)
        or ledger.find_payment_by_gateway_payment(event.gateway, event.payment_id)
    )


def _recover_autopay_charge(event, notes: list) -> str:
    """Record an auto-pay charge whose synchronous call timed out."""
    meta = event.metadata
    sub = ledger.get_subscription(safe_int(meta.get("subscription_id")))
    expected_end = parse_datetime(meta.get("period_end"))
    amount = event.amount or Decimal("0.00")
    currency = (event.currency or "USD").upper()
    invoice = ledger.create_invoice(
        site_id=sub.site_id, subscription_id=sub.id, subtotal=amount, currency=currency,
        status="paid", description="Automatic renewal",
    )
    ledger.create_payment(
        gateway=event.gateway, amount=amount, currency=currency, site_id=sub.site_id,
        invoice_id=invoice.id, subscription_id=sub.id, plan_id=sub.plan_id,
        billing_cycle=sub.billing_cycle, status="succeeded",
        gateway_order_id=event.order_id, gateway_payment_id=event.payment_id,
        metadata=meta,
    )
    if expected_end is None or not lifecycle.apply_renewal(sub, expected_end, invoice, "webhook", notes):
        invoice.period_start = invoice.period_start or sub.current_period_start
        invoice.period_end = invoice.period_end or sub.current_period_end
    return "ok"


def _recover_invoice_charge(event, notes: list) -> str:
    """Settle a first-invoice charge whose synchronous call timed out."""
    invoice = db.session.get(Invoice, safe_int(event.metadata.get("invoice_id")))
    if invoice is None or invoice.status != "open":
        return "ignored"
    sub = ledger.get_subscription(invoice.subscription_id)
    payment = ledger.create_payment(
        gateway=event.gateway, amount=invoice.total, currency=invoice.currency,
        site_id=invoice.site_id, invoice_id=invoice.id, subscription_id=sub.id,
        plan_id=sub.plan_id, billing_cycle=sub.billing_cycle,
        gateway_order_id=event.order_id, metadata=event.metadata,
    )
    settle_payment(payment, event.payment_id, "webhook", notes)
    return "ok"


def _on_payment_succeeded(event, notes: list) -> str:
    payment = _find_payment(event)
    if payment is None:
        if event.invoice_ref:
            # Charge of a gateway-managed subscription invoice; handled by invoice.paid
            return "ignored"
        if event.metadata.get("autopay") and event.metadata.get("subscription_id"):
            return _recover_autopay_charge(event, notes)
        if event.metadata.get("invoice_id") and event.metadata.get("subscription_id"):
            return _recover_invoice_charge(event, notes)
        record_orphaned_payment(
            event.gateway, order_id=event.order_id, transaction_id=event.payment_id,
            amount=event.amount, currency=event.currency,
            email=event.metadata.get("email"),
            plan_id=safe_int(event.metadata.get("plan_id"), default=None),
            billing_cycle=event.metadata.get("billing_cycle"),
            payment_reference=event.metadata.get("payment_reference"),
            error_message="Gateway payment without a local record",
        )
        return "ok"
    settle_payment(payment, event.payment_id, "webhook", notes)
    return "ok"


def _on_payment_failed(event, notes: list) -> str:
    payment = _find_payment(event)
    if payment is None:
        return "ignored"
    changed = ledger.transition_payment(payment, "failed", failure_reason=event.failure_reason,
                                        gateway_payment_id=event.payment_id)
    meta = load_json(payment.metadata_json)
    if changed and meta.get("autopay") and payment.subscription_id:
        sub = ledger.get_subscription(payment.subscription_id)
        lifecycle.apply_remote_payment_failure(
            sub, event.failure_reason or "Automatic payment failed", "webhook", notes
        )
    return "ok"


def _on_refund(event, notes: list) -> str:
    payment = (
        ledger.find_payment_by_gateway_payment(event.gateway, event.payment_id)
        or ledger.find_payment_by_order(event.gateway, event.payment_id)
    )
    if payment is None or event.amount is None:
        logger.warning("Refund %s for unknown payment %s", event.refund_id, event.payment_id)
        return "ignored"
    try:
        ledger.record_refund(payment, event.amount, gateway_refund_id=event.refund_id,
                             reason="Refunded at gateway")
    except ValidationError as e:
        logger.error("Cannot apply refund %s to payment %s: %s", event.refund_id, payment.id,
                     e.message)
        return "ignored"
    return "ok"


def _subscription_for_event(event):
    sub = ledger.find_subscription_by_stripe_id(event.subscription_ref)
    if sub is not None and sub.superseded_by_id:
        sub = ledger.get_live_subscription(sub.site_id)
    if sub is None and event.metadata.get("site_id"):
        sub = ledger.get_live_subscription(safe_int(event.metadata.get("site_id")))
        if sub is not None and event.subscription_ref:
            sub.stripe_subscription_id = event.subscription_ref
            sub.stripe_customer_id = event.customer_ref or sub.stripe_customer_id
    return sub


def _on_subscription_event(event, notes: list) -> str:
    sub = _subscription_for_event(event)
    if sub is None:
        return "ignored"
    return "ok" if lifecycle.apply_remote_state(sub, event, "webhook", notes) else "ignored"


def _on_invoice_paid(event, notes: list) -> str:
    existing = ledger.find_invoice_by_external_id(event.invoice_ref)
    if existing is not None and existing.status == "paid":
        return "ok"
    sub = _subscription_for_event(event)
    if sub is None:
        record_orphaned_payment(
            event.gateway, order_id=event.invoice_ref, transaction_id=event.payment_id,
            amount=event.amount, currency=event.currency,
            error_message="Gateway invoice paid for an unknown subscription",
        )
        return "ok"

    amount = event.amount or Decimal("0.00")
    currency = (event.currency or "USD").upper()
    invoice = existing or ledger.create_invoice(
        site_id=sub.site_id, subscription_id=sub.id, subtotal=amount, currency=currency,
        status="open", external_invoice_id=event.invoice_ref,
        period_start=event.period_start, period_end=event.period_end,
        description="Subscription invoice",
    )
    ledger.create_payment(
        gateway=event.gateway, amount=amount, currency=currency, site_id=sub.site_id,
        invoice_id=invoice.id, subscription_id=sub.id, plan_id=sub.plan_id,
        billing_cycle=sub.billing_cycle, status="succeeded",
        gateway_order_id=event.invoice_ref, gateway_payment_id=event.payment_id,
    )
    advances = event.period_end is not None and (
        as_utc(event.period_end) > as_utc(sub.current_period_end)
    )
    if sub.status in ("past_due", "trialing") or advances:
        lifecycle.apply_renewal(sub, sub.current_period_end, invoice, "webhook", notes)
    ledger.mark_invoice_paid(invoice)
    return "ok"


def _on_invoice_payment_failed(event, notes: list) -> str:
    sub = _subscription_for_event(event)
    if sub is None:
        return "ignored"
    lifecycle.apply_remote_payment_failure(
        sub, event.failure_reason or "Gateway invoice payment failed", "webhook", notes
    )
    return "ok"


WEBHOOK_HANDLERS = {
    "payment.succeeded": _on_payment_succeeded,
    "payment.failed": _on_payment_failed,
    "refund.processed": _on_refund,
    "subscription.created": _on_subscription_event,
    "subscription.updated": _on_subscription_event,
    "subscription.deleted": _on_subscription_event,
    "invoice.paid": _on_invoice_paid,
    "invoice.payment_failed": _on_invoice_payment_failed,
}


def handle_webhook(gateway: str, body: bytes, headers) -> str:
    """Verify and apply one webhook delivery.

    Returns ``"ok"``, ``"duplicate"`` or ``"ignored"``.  The event id claim
    and the event's effects commit together, so a failed handler leaves the
    event unclaimed for the gateway's retry.
    """
    adapter = gateways.get_adapter(gateway)
    try:
        event = adapter.parse_webhook(body, headers)
    except SignatureError as e:
        log_payment_event("webhook", "failed", gateway=gateway, error_message=e.message,
                          error_code="INVALID_SIGNATURE")
        db.session.commit()
        raise

    handler = WEBHOOK_HANDLERS.get(event.event_type)
    if handler is None:
        logger.info("Ignoring %s webhook %s (%s)", gateway, event.event_id, event.source_type)
        return "ignored"
    if not ledger.claim_event(f"webhook_{gateway}_{event.event_id}", source=gateway):
        logger.info("Duplicate %s webhook %s", gateway, event.event_id)
        return "duplicate"

    notes: list = []
    log_context = dict(gateway=gateway, order_id=event.order_id, transaction_id=event.payment_id,
                       amount=event.amount, currency=event.currency,
                       metadata={"event_id": event.event_id, "type": event.source_type})
    try:
        status = handler(event, notes)
        log_payment_event(f"webhook.{event.event_type}", "success", **log_context)
        lifecycle.commit()
    except BillingError as e:
        db.session.rollback()
        log_payment_event(f"webhook.{event.event_type}", "error", error_message=e.message,
                          error_code=e.error_code, **log_context)
        db.session.commit()
        raise
    notifications.dispatch(notes)
    logger.info("Applied %s webhook %s (%s): %s", gateway, event.event_id, event.event_type, status)
    return status


# ---------------------------------------------------------------------------
# Refunds and client events
# ---------------------------------------------------------------------------

def refund_payment(payment_id: int, amount=None, reason: Optional[str] = None) -> PaymentRefund:
    payment = ledger.get_payment(payment_id)
    if payment.status not in ("succeeded", "partially_refunded"):
        raise ValidationError(f"Cannot refund a {payment.status} payment")
    if not payment.gateway_payment_id:
        raise ValidationError("Payment has no gateway transaction to refund")
    refundable = Decimal(payment.amount) - ledger.refunded_total(payment.id)
    amount = safe_decimal(amount) if amount not in (None, "") else refundable
    if amount is None or amount <= 0 or amount > refundable:
        raise ValidationError(f"Refund amount must be between 0.01 and {refundable}")

    adapter = gateways.get_adapter(payment.gateway)
    gateway_payment_id, currency = payment.gateway_payment_id, payment.currency
    log_context = dict(gateway=payment.gateway, site_id=payment.site_id, payment_id=payment.id,
                       transaction_id=gateway_payment_id, amount=amount, currency=currency)
    _end_read_transaction()

    with timed() as t:
        try:
            result = adapter.refund(gateway_payment_id, amount, currency, reason=reason)
        except BillingError as e:
            status = "timeout" if isinstance(e, GatewayTransientError) else "error"
            log_payment_event("refund", status, error_message=e.message, error_code=e.error_code,
                              **log_context)
            db.session.commit()
            raise
    if not result.success:
        log_payment_event("refund", "failed", error_message=result.failure_reason,
                          error_code=result.failure_code, duration_ms=t.elapsed_ms, **log_context)
        db.session.commit()
        raise GatewayDeclinedError(result.failure_reason or "Refund declined")

    payment = ledger.get_payment(payment_id)
    refund = ledger.record_refund(payment, amount, gateway_refund_id=result.gateway_reference,
                                  reason=reason)
    if refund is None:
        refund = ledger.find_refund_by_gateway_id(result.gateway_reference)
    log_payment_event("refund", "success", response_data=result.raw, duration_ms=t.elapsed_ms,
                      **log_context)
    db.session.commit()
    logger.info("Refunded %s %s of payment %s", amount, currency, payment_id)
    return refund


def log_client_payment_event(event: str, gateway: Optional[str], *, site_id: Optional[int] = None,
                             order_id: Optional[str] = None,
                             payment_reference: Optional[str] = None,
                             error_message: Optional[str] = None,
                             error_code: Optional[str] = None,
                             metadata: Optional[dict] = None) -> None:
    """Record a client-side checkout event (failure, cancellation, dismissal)."""
    if event not in CLIENT_EVENTS:
        raise ValidationError(f"Unknown client event: {event}")
    if site_id is not None:
        ledger.get_site(site_id)
    log_payment_event(
        f"client.{event}", CLIENT_EVENTS[event],
        gateway=gateway, site_id=site_id, order_id=order_id,
        payment_reference=payment_reference, error_message=error_message,
        error_code=error_code, metadata=metadata,
    )
    db.session.commit()
