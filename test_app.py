"""Test suite for the subscription billing engine.

Tests cover: app creation, configuration, the billing ledger, usage metering,
coupons, the subscription lifecycle, auto-pay, payment reconciliation,
gateway adapters, webhooks, the admin API and error handling.

Gateway network calls are replaced with ``unittest.mock``; signatures are
computed for real with the configured test secrets.
"""

import datetime
import hashlib
import hmac
import json
import os
import smtplib
import threading
import time
from decimal import Decimal
from unittest import mock

import pytest
import requests
import stripe
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["AUTOPAY_SCHEDULER_ENABLED"] = "false"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["RAZORPAY_ENABLED"] = "true"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["STRIPE_ENABLED"] = "true"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_123"
os.environ["PAYPAL_ENABLED"] = "true"
os.environ["PAYPAL_CLIENT_ID"] = "paypal-client"
os.environ["PAYPAL_CLIENT_SECRET"] = "paypal-secret"
os.environ["PAYPAL_WEBHOOK_ID"] = "WH-TEST"

from app import create_app
from config_models import EmailConfig, PayPalConfig, RazorpayConfig, StripeConfig
from errors import (
    ConcurrencyConflict,
    GatewayError,
    GatewayTransientError,
    LedgerInconsistency,
    NotFoundError,
    ValidationError,
)
from extensions import db
from mailer import MailerError, compose_notification, send_message
from models import (
    Coupon,
    CouponRedemption,
    Invoice,
    Payment,
    PaymentLog,
    PaymentMethod,
    ProcessedEvent,
    Site,
    Subscription,
    SubscriptionHistory,
    SubscriptionPlan,
    UsageRecord,
)
from services import (
    autopay,
    catalog,
    coupons,
    ledger,
    lifecycle,
    notifications,
    reconciler,
    usage,
)
from services.autopay import AutoPayScheduler
from services.gateways import GatewayResult, enabled_gateways, get_adapter
from services.gateways.paypal import PayPalAdapter
from services.gateways.razorpay import RazorpayAdapter, compute_signature
from services.gateways.stripe_card import StripeCardAdapter
from services.notifications import EXTENSION_KEY, EmailNotificationSink, NotificationSink
from services.payment_log import MASK, mask_sensitive
from utils import (
    Patch,
    as_utc,
    from_minor_units,
    load_json,
    parse_datetime,
    safe_decimal,
    safe_int,
    to_minor_units,
    utc_now,
)

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
DAY = datetime.timedelta(days=1)
HOUR = datetime.timedelta(hours=1)


class RecordingSink(NotificationSink):
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.events = []

    def notify(self, event, site_id, payload):
        self.events.append((event, site_id, payload))

    def names(self):
        return [event for event, _site_id, _payload in self.events]


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def sink(app):
    """Swap the notification sink for a recording one."""
    recording = RecordingSink()
    app.extensions[EXTENSION_KEY] = recording
    return recording


@pytest.fixture
def sample_data(app):
    """Create sample data for tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        site = ledger.create_site("Site One", "one.example.com", "owner@one.example.com")
        site2 = ledger.create_site("Site Two", "two.example.com", "owner@two.example.com")
        basic = SubscriptionPlan(
            name="Basic",
            slug="basic",
            monthly_price=Decimal("10.00"),
            annual_price=Decimal("100.00"),
            currency="USD",
            trial_days=0,
            max_agents=2,
            max_conversations_per_month=3,
            max_messages_per_month=100,
            max_ai_analyses_per_month=10,
            ai_analysis_enabled=False,
            sort_order=5,
        )
        db.session.add(basic)
        db.session.commit()

        plans = {p.slug: p.id for p in SubscriptionPlan.query.all()}
        return {
            "site_id": site.id,
            "site2_id": site2.id,
            "basic_id": basic.id,
            "free_id": plans["free"],
            "starter_id": plans["starter"],
            "pro_id": plans["pro"],
            "enterprise_id": plans["enterprise"],
        }


# ============================================================================
# Helpers
# ============================================================================


def razorpay_signature(order_id, payment_id):
    return compute_signature(os.environ["RAZORPAY_KEY_SECRET"], f"{order_id}|{payment_id}")


def post_razorpay_webhook(client, payload, event_id, secret=None):
    body = json.dumps(payload).encode()
    signature = compute_signature(secret or os.environ["RAZORPAY_WEBHOOK_SECRET"], body)
    return client.post(
        "/webhooks/razorpay",
        data=body,
        headers={
            "X-Razorpay-Signature": signature,
            "X-Razorpay-Event-Id": event_id,
            "Content-Type": "application/json",
        },
    )


def razorpay_captured(payment_id, order_id=None, amount=1000, currency="USD", notes=None):
    return {
        "event": "payment.captured",
        "created_at": int(time.time()),
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount,
                    "currency": currency,
                    "status": "captured",
                    "notes": notes or {},
                }
            }
        },
    }


def post_stripe_webhook(client, event):
    body = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        os.environ["STRIPE_WEBHOOK_SECRET"].encode(),
        f"{timestamp}.{body}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return client.post(
        "/webhooks/stripe",
        data=body,
        headers={
            "Stripe-Signature": f"t={timestamp},v1={signature}",
            "Content-Type": "application/json",
        },
    )


def order_result(order_id="order_test1"):
    return GatewayResult(success=True, order_id=order_id, public_key="rzp_test_key",
                         raw={"id": order_id})


def add_razorpay_method(site_id, make_default=False):
    method = lifecycle.attach_payment_method(
        site_id,
        "razorpay",
        {
            "method_type": "card",
            "razorpay_customer_id": "cust_test",
            "razorpay_token_id": "token_test",
            "last4": "4242",
            "brand": "visa",
        },
        make_default=make_default,
    )
    return method.id


def start_paid_subscription(site_id, plan_id):
    """Start *plan_id* with a stored Razorpay method whose first charge succeeds.

    Must be called inside an application context.  Returns the subscription id.
    """
    method_id = add_razorpay_method(site_id)
    charged = GatewayResult(success=True, gateway_reference="pay_first", order_id="order_first")
    with mock.patch.object(RazorpayAdapter, "charge_stored_method", return_value=charged):
        sub = lifecycle.start_subscription(site_id, plan_id, payment_method_id=method_id)
    return sub.id


def enable_autopay(site_id):
    lifecycle.update_autopay_settings(site_id, Patch.from_json({"enabled": True}, ["enabled"]))


def autopay_ready(site_id, plan_id):
    """Active paid subscription with auto-pay on.  Returns (subscription id, period end)."""
    sub_id = start_paid_subscription(site_id, plan_id)
    enable_autopay(site_id)
    sub = ledger.get_subscription(sub_id)
    return sub_id, as_utc(sub.current_period_end)


def mock_response(status_code=200, body=None):
    return mock.Mock(status_code=status_code, json=mock.Mock(return_value=body or {}))


# ============================================================================
# Utility function tests
# ============================================================================


class TestUtilityFunctions:
    def test_safe_int_valid(self):
        assert safe_int("42") == 42

    def test_safe_int_invalid(self):
        assert safe_int("abc", default=7) == 7

    def test_safe_int_none(self):
        assert safe_int(None) == 0

    def test_safe_decimal_rounds(self):
        assert safe_decimal("10.005") == Decimal("10.01")

    def test_safe_decimal_invalid(self):
        assert safe_decimal("ten") is None

    def test_parse_datetime_zulu(self):
        parsed = parse_datetime("2026-01-01T00:00:00Z")
        assert parsed == datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

    def test_parse_datetime_invalid(self):
        assert parse_datetime("not a date") is None

    def test_as_utc_naive(self):
        naive = datetime.datetime(2026, 5, 1, 12, 0)
        assert as_utc(naive).tzinfo == datetime.timezone.utc

    def test_minor_units(self):
        assert to_minor_units(Decimal("10.50"), "USD") == 1050
        assert to_minor_units(Decimal("1000"), "JPY") == 1000
        assert from_minor_units(1050, "usd") == Decimal("10.50")

    def test_load_json_malformed(self):
        assert load_json("{broken") == {}
        assert load_json(None) == {}
        assert load_json("[1, 2]") == {"value": [1, 2]}


class TestPatch:
    def test_null_clears_and_absent_skips(self):
        # Mock(name=...) names the mock itself, so the attribute is set afterwards
        plan = mock.Mock(description="old")
        plan.name = "Keep"
        patch = Patch.from_json({"description": None}, ["description", "name"])
        assert "description" in patch
        assert "name" not in patch
        assert patch.apply(plan) == ["description"]
        assert plan.description is None
        assert plan.name == "Keep"

    def test_empty_patch_is_falsy(self):
        assert not Patch.from_json({"other": 1}, ["description"])

    def test_converters_skip_null(self):
        target = mock.Mock()
        patch = Patch.from_json({"a": "5", "b": None}, ["a", "b"])
        patch.apply(target, {"a": int, "b": int})
        assert target.a == 5
        assert target.b is None


class TestPaymentLogMasking:
    def test_mask_nested_keys(self):
        masked = mask_sensitive({
            "key_secret": "abc",
            "amount": 5,
            "nested": {"card_number": "4111", "brand": "visa"},
            "items": [{"api_key": "k"}],
        })
        assert masked["key_secret"] == MASK
        assert masked["amount"] == 5
        assert masked["nested"]["card_number"] == MASK
        assert masked["nested"]["brand"] == "visa"
        assert masked["items"][0]["api_key"] == MASK

    def test_empty_secret_not_masked(self):
        assert mask_sensitive({"token": ""}) == {"token": ""}


class TestMailer:
    def _config(self, **overrides):
        values = dict(enabled=True, smtp_host="smtp.example.com", smtp_port=587,
                      smtp_user="mailer", smtp_password="pw", sender="billing@example.com",
                      operator_cc="ops@example.com")
        values.update(overrides)
        return EmailConfig(**values)

    def test_compose_notification(self):
        site = mock.Mock(domain="one.example.com")
        site.name = "Site One"
        message = compose_notification(self._config(), "Payment failed", "owner@example.com",
                                       {"reason": "Card declined", "amount": "10.00"}, site=site)
        assert message["To"] == "owner@example.com"
        assert message["Cc"] == "ops@example.com"
        body = message.get_content()
        assert "Site: Site One (one.example.com)" in body
        assert body.index("amount: 10.00") < body.index("reason: Card declined")

    def test_send_message_logs_in(self):
        config = self._config()
        message = compose_notification(config, "Subject", "owner@example.com", {})
        with mock.patch("mailer.smtplib.SMTP") as smtp:
            assert send_message(config, message) is True
        server = smtp.return_value.__enter__.return_value
        server.login.assert_called_once_with("mailer", "pw")
        server.send_message.assert_called_once_with(message)

    def test_send_message_wraps_smtp_errors(self):
        config = self._config(smtp_user="")
        message = compose_notification(config, "Subject", "owner@example.com", {})
        with mock.patch("mailer.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            with pytest.raises(MailerError, match="Failed to send email"):
                send_message(config, message)

    def test_delivery_failure_does_not_raise(self, app, sample_data):
        with app.app_context():
            app.extensions[EXTENSION_KEY] = EmailNotificationSink(self._config())
            with mock.patch("mailer.smtplib.SMTP", side_effect=smtplib.SMTPException("down")):
                notifications.notify("payment_failed", sample_data["site_id"], reason="x")


# ============================================================================
# App creation and configuration
# ============================================================================


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None
        assert app.config["TESTING"]

    def test_config_loaded_from_env(self, app):
        assert app.config["RAZORPAY_CONFIG"].key_id == "rzp_test_key"
        assert app.config["BILLING_CONFIG"].grace_period_days == 3
        assert app.config["BILLING_CONFIG"].trial_warning_days == (7, 3, 1)
        assert app.config["APP_CONFIG"].admin_api_key == "test-admin-key"

    def test_default_plans_seeded(self, app):
        with app.app_context():
            slugs = {p.slug for p in SubscriptionPlan.query.all()}
            assert {"free", "starter", "pro", "enterprise"} <= slugs

    def test_seed_is_idempotent(self, app):
        from seed_data import seed_plans

        with app.app_context():
            count = SubscriptionPlan.query.count()
            assert seed_plans() == 0
            assert SubscriptionPlan.query.count() == count

    def test_scheduler_not_started_when_disabled(self, app):
        assert "autopay_scheduler" not in app.extensions

    def test_enabled_gateways(self, app):
        with app.app_context():
            assert set(enabled_gateways()) == {"stripe", "razorpay", "paypal"}

    def test_unknown_gateway(self, app):
        with app.app_context():
            with pytest.raises(NotFoundError):
                get_adapter("bitcoin")

    def test_disabled_gateway(self, app):
        app.config["PAYPAL_CONFIG"].enabled = False
        with app.app_context():
            with pytest.raises(ValidationError) as exc:
                get_adapter("paypal")
        assert exc.value.error_code == "GATEWAY_DISABLED"


class TestConfigModels:
    def test_paypal_base_url(self):
        sandbox = PayPalConfig(True, "id", "secret", "wh", "sandbox", 10)
        live = PayPalConfig(True, "id", "secret", "wh", "live", 10)
        assert "sandbox" in sandbox.base_url
        assert live.base_url == "https://api-m.paypal.com"

    def test_masked_config_hides_secrets(self, app):
        from config import masked_config

        masked = masked_config(app)
        assert masked["razorpay"]["key_secret"] == "***MASKED***"
        assert masked["razorpay"]["key_id"] == "rzp_test_key"
        assert masked["app"]["admin_api_key"] == "***MASKED***"


# ============================================================================
# Ledger
# ============================================================================


class TestLedger:
    def test_invoice_balanced(self, app, sample_data):
        with app.app_context():
            invoice = ledger.create_invoice(
                site_id=sample_data["site_id"], subscription_id=None,
                subtotal="10.00", discount="2.50", currency="USD",
            )
            assert invoice.total == Decimal("7.50")
            assert invoice.amount_due == Decimal("7.50")
            ledger.mark_invoice_paid(invoice)
            assert invoice.amount_paid == Decimal("7.50")
            assert invoice.amount_due == Decimal("0.00")
            assert ledger.mark_invoice_paid(invoice) is False

    def test_unbalanced_invoice_raises(self, app, sample_data):
        with app.app_context():
            invoice = ledger.create_invoice(
                site_id=sample_data["site_id"], subscription_id=None,
                subtotal="10.00", currency="USD",
            )
            invoice.amount_paid = Decimal("3.00")
            with pytest.raises(LedgerInconsistency):
                ledger.assert_invoice_balanced(invoice)

    def test_payment_transitions_forward_only(self, app, sample_data):
        with app.app_context():
            payment = ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD",
                                            site_id=sample_data["site_id"])
            assert ledger.transition_payment(payment, "succeeded", gateway_payment_id="pay_1")
            assert payment.gateway_payment_id == "pay_1"
            assert ledger.transition_payment(payment, "succeeded") is False
            assert ledger.transition_payment(payment, "pending") is False
            assert ledger.transition_payment(payment, "failed") is False
            assert payment.status == "succeeded"

    def test_failed_payment_can_still_succeed(self, app, sample_data):
        with app.app_context():
            payment = ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD")
            ledger.transition_payment(payment, "failed", failure_reason="declined")
            assert ledger.transition_payment(payment, "succeeded")
            assert payment.failure_reason is None

    def test_refunds_never_exceed_amount(self, app, sample_data):
        with app.app_context():
            payment = ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD",
                                            status="succeeded")
            ledger.record_refund(payment, "4.00", gateway_refund_id="r1")
            assert payment.status == "partially_refunded"
            with pytest.raises(ValidationError):
                ledger.record_refund(payment, "6.01", gateway_refund_id="r2")
            assert ledger.record_refund(payment, "4.00", gateway_refund_id="r1") is None
            ledger.record_refund(payment, "6.00", gateway_refund_id="r3")
            assert payment.status == "refunded"
            assert ledger.refunded_total(payment.id) == Decimal("10.00")

    def test_claim_event_once(self, app):
        with app.app_context():
            assert ledger.claim_event("evt_1", source="test")
            db.session.commit()
            assert ledger.claim_event("evt_1", source="test") is False
            assert ledger.is_event_claimed("evt_1")
            ledger.release_event("evt_1")
            db.session.commit()
            assert not ledger.is_event_claimed("evt_1")

    def test_one_live_subscription_per_site(self, app, sample_data):
        with app.app_context():
            lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            now = utc_now()
            db.session.add(Subscription(
                site_id=sample_data["site_id"], plan_id=sample_data["free_id"], status="active",
                billing_cycle="monthly", current_period_start=now,
                current_period_end=now + 30 * DAY,
            ))
            with pytest.raises(IntegrityError):
                db.session.commit()
            db.session.rollback()

    def test_payment_stats(self, app, sample_data):
        with app.app_context():
            ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD",
                                  status="succeeded")
            ledger.create_payment(gateway="razorpay", amount="5.00", currency="USD",
                                  status="failed")
            ledger.create_payment(gateway="razorpay", amount="1499.00", currency="INR",
                                  status="succeeded")
            db.session.commit()
            stats = ledger.payment_stats()
            assert stats["byStatus"] == {"succeeded": 2, "failed": 1}
            assert stats["collected"]["USD"] == Decimal("10.00")
            assert stats["collected"]["INR"] == Decimal("1499.00")


# ============================================================================
# Pricing
# ============================================================================


class TestPricing:
    def test_resolve_price_primary_currency(self, app, sample_data):
        with app.app_context():
            plan = ledger.get_plan(sample_data["starter_id"])
            assert lifecycle.resolve_price(plan, "monthly") == (Decimal("19.00"), "USD")
            assert lifecycle.resolve_price(plan, "annual") == (Decimal("190.00"), "USD")

    def test_resolve_price_inr(self, app, sample_data):
        with app.app_context():
            plan = ledger.get_plan(sample_data["starter_id"])
            assert lifecycle.resolve_price(plan, "monthly", "inr") == (Decimal("1499.00"), "INR")

    def test_resolve_price_inr_disabled(self, app, sample_data):
        with app.app_context():
            plan = ledger.get_plan(sample_data["basic_id"])
            with pytest.raises(ValidationError):
                lifecycle.resolve_price(plan, "monthly", "INR")

    def test_invalid_cycle(self, app, sample_data):
        with app.app_context():
            plan = ledger.get_plan(sample_data["basic_id"])
            with pytest.raises(ValidationError):
                lifecycle.resolve_price(plan, "weekly")

    def test_monthly_equivalent(self, app, sample_data):
        with app.app_context():
            plan = ledger.get_plan(sample_data["pro_id"])
            assert lifecycle.monthly_equivalent(plan, "annual") == Decimal("490") / 12
            assert lifecycle.monthly_equivalent(plan, "monthly") == Decimal("49.00")


# ============================================================================
# Subscription lifecycle
# ============================================================================


class TestSubscriptionStart:
    def test_trial_plan_starts_trialing(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            assert sub.status == "trialing"
            assert as_utc(sub.trial_end) == as_utc(sub.current_period_end)
            assert as_utc(sub.trial_end) - as_utc(sub.trial_start) == 14 * DAY
            assert Invoice.query.count() == 0

    def test_trial_only_once_per_site(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["starter_id"])
            lifecycle.cancel_subscription(site_id, immediate=True)
            sub = lifecycle.start_subscription(site_id, sample_data["starter_id"])
            assert sub.trial_start is None
            # No payment method, so the first invoice cannot be collected
            assert sub.status == "past_due"

    def test_free_plan_active_without_invoice(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            assert sub.status == "active"
            assert as_utc(sub.current_period_end) - as_utc(sub.current_period_start) == 30 * DAY
            assert Invoice.query.count() == 0

    def test_paid_plan_without_method_is_past_due(self, app, sample_data, sink):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["basic_id"])
            assert sub.status == "past_due"
            assert sub.grace_ends_at is not None
            invoice = Invoice.query.filter_by(subscription_id=sub.id).one()
            assert invoice.status == "open"
            assert invoice.total == Decimal("10.00")
        assert "payment_failed" in sink.names()

    def test_paid_plan_first_charge_succeeds(self, app, sample_data, sink):
        with app.app_context():
            sub_id = start_paid_subscription(sample_data["site_id"], sample_data["basic_id"])
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "active"
            assert sub.preferred_gateway == "razorpay"
            invoice = Invoice.query.filter_by(subscription_id=sub_id).one()
            assert invoice.status == "paid"
            payment = Payment.query.filter_by(invoice_id=invoice.id).one()
            assert payment.status == "succeeded"
            assert payment.gateway_payment_id == "pay_first"
        assert "payment_succeeded" in sink.names()

    def test_paid_plan_first_charge_declined(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            method_id = add_razorpay_method(site_id)
            declined = GatewayResult.declined("Insufficient funds", "BAD_REQUEST_ERROR")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", return_value=declined):
                sub = lifecycle.start_subscription(site_id, sample_data["basic_id"],
                                                   payment_method_id=method_id)
            assert sub.status == "past_due"
            payment = Payment.query.filter_by(site_id=site_id).one()
            assert payment.status == "failed"
            assert payment.failure_reason == "Insufficient funds"

    def test_new_subscription_supersedes_live_one(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            first = lifecycle.start_subscription(site_id, sample_data["free_id"])
            first_id = first.id
            second = lifecycle.start_subscription(site_id, sample_data["starter_id"])
            old = ledger.get_subscription(first_id)
            assert old.status == "canceled"
            assert old.superseded_by_id == second.id
            assert ledger.get_live_subscription(site_id).id == second.id

    def test_unknown_site_or_plan(self, app, sample_data):
        with app.app_context():
            with pytest.raises(NotFoundError):
                lifecycle.start_subscription(9999, sample_data["free_id"])
            with pytest.raises(NotFoundError):
                lifecycle.start_subscription(sample_data["site_id"], 9999)


class TestRenewal:
    def test_renew_advances_exactly_one_cycle(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            old_end = as_utc(sub.current_period_end)
            renewed = lifecycle.renew_subscription(sub.id, old_end)
            assert as_utc(renewed.current_period_start) == old_end
            assert as_utc(renewed.current_period_end) == old_end + 30 * DAY

    def test_renew_is_idempotent(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            old_end = as_utc(sub.current_period_end)
            assert lifecycle.renew_subscription(sub.id, old_end) is not None
            assert lifecycle.renew_subscription(sub.id, old_end) is None
            sub = ledger.get_subscription(sub.id)
            assert as_utc(sub.current_period_end) == old_end + 30 * DAY

    def test_renew_canceled_is_noop(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            end = as_utc(sub.current_period_end)
            lifecycle.cancel_subscription(sample_data["site_id"], immediate=True)
            assert lifecycle.renew_subscription(sub.id, end) is None

    def test_trial_payment_converts_from_trial_end(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            trial_end = as_utc(sub.trial_end)
            renewed = lifecycle.renew_subscription(sub.id, trial_end)
            assert renewed.status == "active"
            assert as_utc(renewed.current_period_start) == trial_end
            history = ledger.list_history(sample_data["site_id"])
            assert history[0].action == "trial_converted"

    def test_mark_renewal_failed_active(self, app, sample_data, sink):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            failed = lifecycle.mark_renewal_failed(sub.id, "Card declined")
            assert failed.status == "past_due"
            assert as_utc(failed.grace_ends_at) >= as_utc(failed.current_period_end) + 3 * DAY - HOUR
        assert sink.events[-1][0] == "payment_failed"

    def test_mark_renewal_failed_trial_expires(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            failed = lifecycle.mark_renewal_failed(sub.id, "No card")
            assert failed.status == "canceled"
            assert ledger.list_history(sample_data["site_id"])[0].action == "trial_expired"

    def test_optimistic_lock_conflict(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            sub_id = sub.id
            db.session.execute(
                update(Subscription)
                .where(Subscription.id == sub_id)
                .values(version=Subscription.version + 1)
                .execution_options(synchronize_session=False)
            )
            sub.auto_pay_enabled = True
            with pytest.raises(ConcurrencyConflict):
                lifecycle.commit()


class TestCancelReactivate:
    def test_cancel_at_period_end(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            sub = lifecycle.start_subscription(site_id, sample_data["free_id"])
            end = as_utc(sub.current_period_end)
            sub = lifecycle.cancel_subscription(site_id, reason="Too expensive")
            assert sub.status == "active"
            assert sub.cancel_at_period_end
            assert as_utc(sub.cancel_at) == end

            result = lifecycle.process_period_boundaries(end + HOUR)
            assert result == {"canceled": 1}
            assert ledger.get_subscription(sub.id).status == "canceled"

    def test_repeat_cancel_adds_no_history(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.cancel_subscription(site_id)
            count = SubscriptionHistory.query.count()
            lifecycle.cancel_subscription(site_id)
            assert SubscriptionHistory.query.count() == count

    def test_reactivate_pending_cancel(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.cancel_subscription(site_id)
            sub = lifecycle.reactivate_subscription(site_id)
            assert not sub.cancel_at_period_end
            assert sub.cancel_at is None

    def test_reactivate_after_immediate_cancel(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.cancel_subscription(site_id, immediate=True)
            assert ledger.get_live_subscription(site_id) is None
            sub = lifecycle.reactivate_subscription(site_id)
            assert sub.status == "active"
            assert sub.canceled_at is None

    def test_reactivate_trial_stays_trialing(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["starter_id"])
            lifecycle.cancel_subscription(site_id, immediate=True)
            assert lifecycle.reactivate_subscription(site_id).status == "trialing"

    def test_reactivate_without_cancel(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            with pytest.raises(ValidationError):
                lifecycle.reactivate_subscription(site_id)

    def test_cancel_without_subscription(self, app, sample_data):
        with app.app_context():
            with pytest.raises(NotFoundError):
                lifecycle.cancel_subscription(sample_data["site_id"])


class TestPlanChange:
    def test_upgrade_records_history_and_carries_gauges(self, app, sample_data, sink):
        with app.app_context():
            site_id = sample_data["site_id"]
            old = lifecycle.start_subscription(site_id, sample_data["free_id"])
            old_id = old.id
            usage.record_usage(site_id, "agents", 2)
            usage.record_usage(site_id, "conversations", 5)

            new = lifecycle.change_plan(site_id, sample_data["pro_id"])
            assert new.id != old_id
            assert new.plan_id == sample_data["pro_id"]
            assert ledger.get_subscription(old_id).superseded_by_id == new.id
            assert usage.get_usage(site_id, "agents") == 2
            assert usage.get_usage(site_id, "conversations") == 0

            entry = ledger.list_history(site_id)[0]
            assert entry.action == "upgraded"
            assert entry.from_plan_id == sample_data["free_id"]
            assert entry.to_plan_id == sample_data["pro_id"]
        assert "plan_changed" in sink.names()

    def test_downgrade(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.change_plan(site_id, sample_data["pro_id"])
            lifecycle.change_plan(site_id, sample_data["starter_id"])
            assert ledger.list_history(site_id)[0].action == "downgraded"

    def test_change_keeps_period_end(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            sub = lifecycle.start_subscription(site_id, sample_data["free_id"])
            end = as_utc(sub.current_period_end)
            new = lifecycle.change_plan(site_id, sample_data["basic_id"])
            assert new.status == "active"
            assert as_utc(new.current_period_end) == end

    def test_same_plan_rejected(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            with pytest.raises(ValidationError):
                lifecycle.change_plan(site_id, sample_data["free_id"])

    def test_past_due_cannot_change(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["basic_id"])
            with pytest.raises(ValidationError):
                lifecycle.change_plan(site_id, sample_data["pro_id"])


class TestPeriodBoundaries:
    def test_trial_expires_without_payment(self, app, sample_data, sink):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            result = lifecycle.process_period_boundaries(as_utc(sub.trial_end) + HOUR)
            assert result == {"trial_expired": 1}
            assert ledger.get_subscription(sub.id).status == "canceled"
        assert "trial_expired" in sink.names()

    def test_trial_with_autopay_waits_for_charge(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            method_id = add_razorpay_method(site_id)
            sub = lifecycle.start_subscription(site_id, sample_data["starter_id"],
                                               payment_method_id=method_id)
            enable_autopay(site_id)
            trial_end = as_utc(sub.trial_end)
            assert lifecycle.process_period_boundaries(trial_end + HOUR) == {}
            assert ledger.get_subscription(sub.id).status == "trialing"
            result = lifecycle.process_period_boundaries(trial_end + 4 * DAY)
            assert result == {"trial_expired": 1}

    def test_free_plan_renews(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            end = as_utc(sub.current_period_end)
            assert lifecycle.process_period_boundaries(end + HOUR) == {"renewed": 1}
            assert as_utc(ledger.get_subscription(sub.id).current_period_end) == end + 30 * DAY

    def test_paid_period_ends_unpaid(self, app, sample_data):
        with app.app_context():
            sub_id = start_paid_subscription(sample_data["site_id"], sample_data["basic_id"])
            end = as_utc(ledger.get_subscription(sub_id).current_period_end)
            assert lifecycle.process_period_boundaries(end - HOUR) == {}
            assert lifecycle.process_period_boundaries(end + HOUR) == {"past_due": 1}
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "past_due"
            assert as_utc(sub.grace_ends_at) == end + HOUR + 3 * DAY

    def test_grace_expiry_cancels(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["basic_id"])
            grace_end = as_utc(sub.grace_ends_at)
            assert lifecycle.process_period_boundaries(grace_end - HOUR) == {}
            assert lifecycle.process_period_boundaries(grace_end + HOUR) == {"grace_expired": 1}
            assert ledger.get_subscription(sub.id).status == "canceled"

    def test_trial_warnings_sent_once_per_threshold(self, app, sample_data, sink):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            trial_end = as_utc(sub.trial_end)
            assert lifecycle.send_trial_warnings(trial_end - 6 * DAY) == 1
            assert lifecycle.send_trial_warnings(trial_end - 5 * DAY) == 0
            assert lifecycle.send_trial_warnings(trial_end - 2 * DAY) == 1
            assert lifecycle.send_trial_warnings(trial_end - 12 * HOUR) == 1
        days = [payload["days"] for event, _site, payload in sink.events if event == "trial_ending"]
        assert days == [7, 3, 1]


class TestExtend:
    def test_extend_past_due_reactivates(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["basic_id"])
            end = as_utc(sub.current_period_end)
            extended = lifecycle.extend_subscription(sub.id, 10, reason="Goodwill")
            assert extended.status == "active"
            assert extended.grace_ends_at is None
            assert as_utc(extended.current_period_end) == end + 10 * DAY

    def test_extend_trial_moves_trial_end(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["starter_id"])
            extended = lifecycle.extend_subscription(sub.id, 7)
            assert as_utc(extended.trial_end) == as_utc(extended.current_period_end)

    def test_extend_rejects_non_positive(self, app, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            with pytest.raises(ValidationError):
                lifecycle.extend_subscription(sub.id, 0)


# ============================================================================
# Usage metering
# ============================================================================


class TestUsage:
    def test_record_and_check_limit(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.change_plan(site_id, sample_data["basic_id"])
            assert usage.record_usage(site_id, "conversations") == 1
            assert usage.record_usage(site_id, "conversations", 2) == 3
            check = usage.check_limit(site_id, "conversations")
            assert not check.allowed
            assert check.limit == 3
            assert check.current == 3

    def test_disabled_feature_is_zero_limit(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            check = usage.check_limit(site_id, "ai_analyses")
            assert not check.allowed
            assert check.limit == 0

    def test_unlimited_plan(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            lifecycle.change_plan(site_id, sample_data["enterprise_id"])
            usage.record_usage(site_id, "messages", 1000000)
            check = usage.check_limit(site_id, "messages")
            assert check.allowed
            assert check.limit is None

    def test_no_subscription(self, app, sample_data):
        with app.app_context():
            check = usage.check_limit(sample_data["site_id"], "messages")
            assert not check.allowed
            with pytest.raises(NotFoundError):
                usage.record_usage(sample_data["site_id"], "messages")

    def test_gauge_decrement(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            usage.record_usage(site_id, "agents", 2)
            assert usage.record_usage(site_id, "agents", -1) == 1
            with pytest.raises(ValidationError):
                usage.record_usage(site_id, "messages", -1)

    def test_gauge_never_goes_negative(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            # No row yet for this gauge
            assert usage.record_usage(site_id, "storage_mb", -5) == 0
            usage.record_usage(site_id, "agents", 1)
            assert usage.record_usage(site_id, "agents", -3) == 0
            assert UsageRecord.query.filter(UsageRecord.quantity < 0).count() == 0
            assert usage.record_usage(site_id, "agents", 2) == 2

    def test_unknown_metric(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError) as exc:
                usage.check_limit(sample_data["site_id"], "bananas")
        assert exc.value.error_code == "UNKNOWN_METRIC"

    def test_counters_roll_over_on_renewal(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            sub = lifecycle.start_subscription(site_id, sample_data["free_id"])
            usage.record_usage(site_id, "messages", 10)
            usage.record_usage(site_id, "agents", 1)
            lifecycle.renew_subscription(sub.id, sub.current_period_end)
            assert usage.get_usage(site_id, "messages") == 0
            assert usage.get_usage(site_id, "agents") == 1

    def test_summary(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            usage.record_usage(site_id, "messages", 4)
            summary = usage.get_usage_summary(site_id)
            assert summary["metrics"]["messages"] == {"current": 4, "limit": 500, "enabled": True}
            assert summary["metrics"]["ai_auto_replies"]["enabled"] is False

    def test_concurrent_increments_are_not_lost(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path / 'usage.db'}")
        application = create_app()
        with application.app_context():
            site = ledger.create_site("Busy", "busy.example.com")
            db.session.commit()
            site_id = site.id
            free = SubscriptionPlan.query.filter_by(slug="free").one()
            lifecycle.start_subscription(site_id, free.id)

        errors = []

        def worker():
            with application.app_context():
                try:
                    for _ in range(10):
                        usage.record_usage(site_id, "messages")
                except Exception as e:  # collected for the assertion below
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        with application.app_context():
            assert usage.get_usage(site_id, "messages") == 40
            assert UsageRecord.query.filter_by(metric="messages").count() == 1


# ============================================================================
# Coupons and catalog
# ============================================================================


class TestCoupons:
    def _coupon(self, **overrides):
        data = {"code": "save10", "discountType": "percentage", "discountValue": 10,
                "maxRedemptions": 1}
        data.update(overrides)
        return catalog.create_coupon(data)

    def test_create_normalizes_code(self, app):
        with app.app_context():
            assert self._coupon().code == "SAVE10"

    def test_percentage_discount(self, app):
        with app.app_context():
            coupon = self._coupon()
            assert coupons.compute_discount(coupon, Decimal("19.00")) == Decimal("1.90")

    def test_fixed_discount_capped(self, app):
        with app.app_context():
            coupon = self._coupon(code="FLAT50", discountType="fixed", discountValue=50,
                                  currency="usd")
            assert coupons.compute_discount(coupon, Decimal("19.00")) == Decimal("19.00")

    def test_fixed_coupon_currency(self, app):
        with app.app_context():
            self._coupon(code="FLAT5", discountType="fixed", discountValue=5, currency="USD")
            with pytest.raises(ValidationError) as exc:
                coupons.validate_coupon("flat5", currency="INR")
        assert exc.value.error_code == "COUPON_CURRENCY"

    def test_expired(self, app):
        with app.app_context():
            self._coupon(validFrom="2020-01-01T00:00:00Z", validUntil="2020-02-01T00:00:00Z")
            with pytest.raises(ValidationError) as exc:
                coupons.validate_coupon("SAVE10")
        assert exc.value.error_code == "COUPON_EXPIRED"

    def test_last_slot_redeemed_once(self, app, sample_data):
        with app.app_context():
            coupon = self._coupon()
            ledger.redeem_coupon(coupon, sample_data["site_id"], None, Decimal("1.00"))
            db.session.commit()
            with pytest.raises(ValidationError) as exc:
                ledger.redeem_coupon(coupon, sample_data["site2_id"], None, Decimal("1.00"))
            assert exc.value.error_code == "COUPON_EXHAUSTED"
            db.session.rollback()
            assert db.session.get(Coupon, coupon.id).times_redeemed == 1
            assert CouponRedemption.query.count() == 1

    def test_concurrent_redemptions_take_last_slot_once(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path / 'coupons.db'}")
        application = create_app()
        with application.app_context():
            site = ledger.create_site("Busy", "busy.example.com")
            db.session.commit()
            site_id = site.id
            self._coupon()

        barrier = threading.Barrier(2)
        outcomes = []

        def worker():
            with application.app_context():
                coupon = ledger.get_coupon_by_code("SAVE10")
                barrier.wait()
                try:
                    ledger.redeem_coupon(coupon, site_id, None, Decimal("1.00"))
                    db.session.commit()
                    outcomes.append("redeemed")
                except ValidationError as e:
                    db.session.rollback()
                    outcomes.append(e.message)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("redeemed") == 1
        loser = next(o for o in outcomes if o != "redeemed")
        assert "no longer valid" in loser
        with application.app_context():
            assert CouponRedemption.query.filter_by(site_id=site_id).count() == 1
            assert Coupon.query.filter_by(code="SAVE10").one().times_redeemed == 1

    def test_same_site_cannot_redeem_twice(self, app, sample_data):
        with app.app_context():
            coupon = self._coupon(maxRedemptions=None)
            ledger.redeem_coupon(coupon, sample_data["site_id"], None, Decimal("1.00"))
            db.session.commit()
            with pytest.raises(ValidationError) as exc:
                coupons.validate_coupon("SAVE10", site_id=sample_data["site_id"])
        assert exc.value.error_code == "COUPON_ALREADY_REDEEMED"

    def test_invalid_coupons_rejected(self, app):
        with app.app_context():
            with pytest.raises(ValidationError):
                self._coupon(discountValue=150)
            with pytest.raises(ValidationError):
                self._coupon(code="FIX", discountType="fixed", discountValue=5)
            with pytest.raises(ValidationError):
                self._coupon(validFrom="2026-02-01T00:00:00Z", validUntil="2026-01-01T00:00:00Z")

    def test_delete_redeemed_coupon_deactivates(self, app, sample_data):
        with app.app_context():
            coupon = self._coupon()
            coupon_id = coupon.id
            ledger.redeem_coupon(coupon, sample_data["site_id"], None, Decimal("1.00"))
            db.session.commit()
            assert catalog.delete_coupon(coupon_id) is False
            assert db.session.get(Coupon, coupon_id).is_active is False


class TestCatalog:
    def test_create_plan(self, app):
        with app.app_context():
            plan = catalog.create_plan({"name": "Team", "slug": "team", "monthlyPrice": "29.5",
                                        "annualPrice": "295", "maxAgents": 10})
            assert plan.monthly_price == Decimal("29.50")
            assert plan.currency == "USD"
            assert plan.max_agents == 10

    def test_duplicate_slug(self, app):
        with app.app_context():
            with pytest.raises(ValidationError):
                catalog.create_plan({"name": "Free 2", "slug": "free", "monthlyPrice": 0})

    def test_inr_requires_price(self, app):
        with app.app_context():
            with pytest.raises(ValidationError):
                catalog.create_plan({"name": "India", "slug": "india", "monthlyPrice": 5,
                                     "inrEnabled": True})

    def test_update_null_clears(self, app, sample_data):
        with app.app_context():
            plan = catalog.update_plan(sample_data["basic_id"], {"maxConversationsPerMonth": None})
            assert plan.max_conversations_per_month is None
            assert plan.max_agents == 2

    def test_update_required_cannot_clear(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError):
                catalog.update_plan(sample_data["basic_id"], {"name": None})

    def test_delete_plan_in_use(self, app, sample_data):
        with app.app_context():
            lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            with pytest.raises(ValidationError) as exc:
                catalog.delete_plan(sample_data["free_id"])
        assert exc.value.error_code == "PLAN_IN_USE"

    def test_delete_plan_retires(self, app, sample_data):
        with app.app_context():
            catalog.delete_plan(sample_data["basic_id"])
            plan = ledger.get_plan(sample_data["basic_id"])
            assert not plan.is_active
            with pytest.raises(NotFoundError):
                ledger.get_plan(sample_data["basic_id"], active_only=True)

    def test_setting_overrides(self, app):
        with app.app_context():
            catalog.save_setting_overrides({"billing.grace_period_days": 5, "paypal.mode": "live"})
            assert catalog.list_setting_overrides() == {
                "billing.grace_period_days": "5",
                "paypal.mode": "live",
            }
            catalog.save_setting_overrides({"paypal.mode": None})
            assert "paypal.mode" not in catalog.list_setting_overrides()

    def test_invalid_setting_overrides(self, app):
        with app.app_context():
            with pytest.raises(ValidationError):
                catalog.save_setting_overrides({"app.secret_key": "x"})
            with pytest.raises(ValidationError):
                catalog.save_setting_overrides({"stripe.enabled": "yes"})
            with pytest.raises(ValidationError):
                catalog.save_setting_overrides({"billing.autopay_lead_hours": 0})
            with pytest.raises(ValidationError):
                catalog.save_setting_overrides({"paypal.mode": "test"})


# ============================================================================
# Payment methods
# ============================================================================


class TestPaymentMethods:
    def test_first_method_becomes_default(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            method_id = add_razorpay_method(site_id)
            assert ledger.get_payment_method(method_id).is_default
            sub = ledger.get_live_subscription(site_id)
            assert sub.default_payment_method_id == method_id
            assert sub.preferred_gateway == "razorpay"

    def test_missing_token_fields(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError):
                lifecycle.attach_payment_method(sample_data["site_id"], "stripe",
                                                {"stripe_customer_id": "cus_1"})

    def test_detach_disables_autopay(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            method_id = add_razorpay_method(site_id)
            enable_autopay(site_id)
            lifecycle.detach_payment_method(site_id, method_id)
            sub = ledger.get_live_subscription(site_id)
            assert not sub.auto_pay_enabled
            assert sub.default_payment_method_id is None
            assert ledger.list_payment_methods(site_id) == []
            assert db.session.get(PaymentMethod, method_id).is_deleted

    def test_method_of_other_site(self, app, sample_data):
        with app.app_context():
            method_id = add_razorpay_method(sample_data["site2_id"])
            with pytest.raises(NotFoundError):
                ledger.get_payment_method(method_id, sample_data["site_id"])


# ============================================================================
# Auto-pay
# ============================================================================


class TestAutoPay:
    def test_candidates_within_lead_window(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            assert autopay.find_autopay_candidates(end - 48 * HOUR) == []
            assert [s.id for s in autopay.find_autopay_candidates(end - HOUR)] == [sub_id]

    def test_autopay_disabled_not_candidate(self, app, sample_data):
        with app.app_context():
            sub_id = start_paid_subscription(sample_data["site_id"], sample_data["basic_id"])
            end = as_utc(ledger.get_subscription(sub_id).current_period_end)
            assert autopay.find_autopay_candidates(end) == []

    def test_successful_charge_renews(self, app, sample_data, sink):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            charged = GatewayResult(success=True, gateway_reference="pay_auto", order_id="ord_auto")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   return_value=charged) as charge:
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "renewed"
            assert charge.call_args.kwargs["idempotency_key"].startswith(f"autopay_processed_{sub_id}_")
            sub = ledger.get_subscription(sub_id)
            assert as_utc(sub.current_period_start) == end
            assert as_utc(sub.current_period_end) == end + 30 * DAY
            payment = Payment.query.filter_by(gateway_payment_id="pay_auto").one()
            invoice = db.session.get(Invoice, payment.invoice_id)
            assert invoice.status == "paid"
            assert as_utc(invoice.period_start) == end
        assert "subscription_renewed" in sink.names()

    def test_charge_once_per_period(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            declined = GatewayResult.declined("Insufficient funds")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   return_value=declined) as charge:
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "declined"
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "duplicate"
            assert charge.call_count == 1

    def test_decline_before_boundary_is_deferred(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            declined = GatewayResult.declined("Insufficient funds")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", return_value=declined):
                autopay.process_autopay_candidate(sub_id, end - HOUR)
            assert ledger.get_subscription(sub_id).status == "active"
            assert Payment.query.filter_by(status="failed").count() == 1
            assert lifecycle.process_period_boundaries(end + HOUR) == {"past_due": 1}

    def test_decline_after_boundary_enters_grace(self, app, sample_data, sink):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            declined = GatewayResult.declined("Card expired", "EXPIRED")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", return_value=declined):
                assert autopay.process_autopay_candidate(sub_id, end + HOUR) == "declined"
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "past_due"
            assert as_utc(sub.grace_ends_at) == end + 3 * DAY
        assert sink.events[-1] == ("payment_failed", sample_data["site_id"],
                                   {"reason": "Card expired"})

    def test_connection_failure_releases_claim(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            error = GatewayTransientError("Could not connect")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   side_effect=error) as charge:
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "pending"
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "pending"
            assert charge.call_count == 2

    def test_timeout_keeps_claim(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            error = GatewayTransientError("Timed out", timed_out=True)
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   side_effect=error) as charge:
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "pending"
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "duplicate"
            assert charge.call_count == 1
            log = PaymentLog.query.filter_by(action="autopay_charge").one()
            assert log.status == "timeout"

    def test_timed_out_charge_retried_with_same_key(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            error = GatewayTransientError("Timed out", timed_out=True)
            charged = GatewayResult(success=True, gateway_reference="pay_retry")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   side_effect=[error, charged]) as charge:
                assert autopay.process_autopay_candidate(sub_id, end - 2 * HOUR) == "pending"
                # Inside the retry window the claim still holds
                assert autopay.process_autopay_candidate(sub_id, end - 90 * 60) == "duplicate"
                assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "renewed"
            keys = {c.kwargs["idempotency_key"] for c in charge.call_args_list}
            assert len(keys) == 1
            assert as_utc(ledger.get_subscription(sub_id).current_period_end) == end + 30 * DAY

    def test_timed_out_charge_stops_after_max_attempts(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            error = GatewayTransientError("Timed out", timed_out=True)
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   side_effect=error) as charge:
                for hours in range(6):
                    autopay.process_autopay_candidate(sub_id, end - 12 * HOUR + hours * 2 * HOUR)
            assert charge.call_count == app.config["BILLING_CONFIG"].autopay_max_attempts
            claim = ProcessedEvent.query.filter_by(
                key=lifecycle.autopay_claim_key(ledger.get_subscription(sub_id))).one()
            assert claim.status == "timeout"

    def test_timeout_before_boundary_does_not_lose_renewal(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            error = GatewayTransientError("Timed out", timed_out=True)
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", side_effect=error):
                autopay.run_billing_cycle(end - HOUR)
            charged = GatewayResult(success=True, gateway_reference="pay_after_timeout")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   return_value=charged) as charge:
                for now in (end + HOUR, end + 2 * DAY, end + 4 * DAY):
                    autopay.run_billing_cycle(now)
            assert charge.call_count == 1
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "active"
            assert as_utc(sub.current_period_end) == end + 30 * DAY
            assert Payment.query.filter_by(gateway_payment_id="pay_after_timeout").one().status \
                == "succeeded"

    def test_timed_out_charge_recovered_by_webhook(self, app, client, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            sub_id, end = autopay_ready(site_id, sample_data["basic_id"])
            error = GatewayTransientError("Timed out", timed_out=True)
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", side_effect=error):
                autopay.process_autopay_candidate(sub_id, end - HOUR)

        notes = {"autopay": "1", "subscription_id": str(sub_id), "site_id": str(site_id),
                 "period_end": end.isoformat()}
        response = post_razorpay_webhook(
            client, razorpay_captured("pay_late", "order_late", notes=notes), "evt_late"
        )
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}

        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert as_utc(sub.current_period_end) == end + 30 * DAY
            assert Payment.query.filter_by(gateway_payment_id="pay_late").one().status == "succeeded"

    def test_trial_converted_by_autopay(self, app, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            method_id = add_razorpay_method(site_id)
            sub = lifecycle.start_subscription(site_id, sample_data["starter_id"],
                                               payment_method_id=method_id)
            enable_autopay(site_id)
            trial_end = as_utc(sub.trial_end)
            charged = GatewayResult(success=True, gateway_reference="pay_trial")
            with mock.patch.object(RazorpayAdapter, "charge_stored_method",
                                   return_value=charged) as charge:
                result = autopay.run_billing_cycle(trial_end - HOUR)
            assert result["autopay"] == {"renewed": 1}
            # Starter is INR-enabled, Razorpay charges it in rupees
            assert charge.call_args.args[1:] == (Decimal("1499.00"), "INR")
            sub = ledger.get_subscription(sub.id)
            assert sub.status == "active"
            assert as_utc(sub.current_period_start) == trial_end
            assert ledger.list_history(site_id)[0].action == "trial_converted"

    def test_gateway_mismatch_is_error(self, app, sample_data):
        with app.app_context():
            sub_id, end = autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            sub = ledger.get_subscription(sub_id)
            sub.preferred_gateway = "paypal"
            db.session.commit()
            assert autopay.process_autopay_candidate(sub_id, end - HOUR) == "error"
            assert not ledger.is_event_claimed(lifecycle.autopay_claim_key(sub))

    def test_settings_view(self, app, sample_data):
        with app.app_context():
            autopay_ready(sample_data["site_id"], sample_data["basic_id"])
            settings = autopay.get_autopay_settings(sample_data["site_id"])
            assert settings["enabled"] is True
            assert settings["gateway"] == "razorpay"
            assert settings["amount"] == "10.00"
            assert settings["currency"] == "USD"
            assert settings["paymentMethod"]["last4"] == "4242"
            assert settings["nextChargeAt"] is not None

    def test_enable_requires_method(self, app, sample_data):
        with app.app_context():
            lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            with pytest.raises(ValidationError):
                enable_autopay(sample_data["site_id"])


class TestScheduler:
    def test_start_and_stop(self, app):
        scheduler = AutoPayScheduler(app, interval_seconds=3600)
        scheduler.start()
        assert scheduler.running
        scheduler.stop()
        assert not scheduler.running

    def test_run_once(self, app, sample_data):
        scheduler = AutoPayScheduler(app, interval_seconds=3600)
        result = scheduler.run_once()
        assert set(result) == {"autopay", "boundaries", "trialWarnings"}

    def test_invalid_interval(self, app):
        with pytest.raises(ValueError):
            AutoPayScheduler(app, interval_seconds=-5)


# ============================================================================
# Checkout and verification
# ============================================================================


class TestCheckout:
    def test_create_order(self, app, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order",
                               return_value=order_result()) as create:
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"], "billingCycle": "monthly"},
            )
        assert response.status_code == 201
        data = response.get_json()
        assert data["orderId"] == "order_test1"
        assert data["amount"] == "10.00"
        assert data["currency"] == "USD"
        assert data["gatewayPublicKey"] == "rzp_test_key"
        assert create.call_args.args == (Decimal("10.00"), "USD")
        with app.app_context():
            payment = db.session.get(Payment, data["paymentId"])
            assert payment.status == "pending"
            assert payment.gateway_order_id == "order_test1"
            assert PaymentLog.query.filter_by(action="create_order", status="success").count() == 1

    def test_razorpay_defaults_to_inr(self, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order",
                               return_value=order_result()) as create:
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["starter_id"]},
            )
        assert response.status_code == 201
        assert response.get_json()["currency"] == "INR"
        assert create.call_args.args == (Decimal("1499.00"), "INR")

    def test_inr_only_through_razorpay(self, client, sample_data):
        response = client.post(
            f"/sites/{sample_data['site_id']}/payments/stripe/create-order",
            json={"planId": sample_data["starter_id"], "currency": "INR"},
        )
        assert response.status_code == 400

    def test_amount_mismatch(self, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order") as create:
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"], "amount": "5.00"},
            )
        assert response.status_code == 400
        assert response.get_json()["code"] == "AMOUNT_MISMATCH"
        create.assert_not_called()

    def test_free_plan_order_rejected(self, client, sample_data):
        response = client.post(
            f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
            json={"planId": sample_data["free_id"]},
        )
        assert response.status_code == 400

    def test_gateway_failure_logged(self, app, client, sample_data):
        error = GatewayError("Razorpay order creation failed: bad key")
        with mock.patch.object(RazorpayAdapter, "create_order", side_effect=error):
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"]},
            )
        assert response.status_code == 502
        with app.app_context():
            assert Payment.query.count() == 0
            assert PaymentLog.query.filter_by(action="create_order", status="error").count() == 1

    def test_coupon_applied_and_redeemed(self, app, client, sample_data):
        with app.app_context():
            catalog.create_coupon({"code": "SAVE10", "discountType": "percentage",
                                   "discountValue": 10, "maxRedemptions": 1})
        with mock.patch.object(RazorpayAdapter, "create_order", return_value=order_result()):
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"], "couponCode": "save10"},
            )
            assert response.status_code == 201
            assert response.get_json()["amount"] == "9.00"

            exhausted = client.post(
                f"/sites/{sample_data['site2_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"], "couponCode": "SAVE10"},
            )
        assert exhausted.status_code == 400
        assert exhausted.get_json()["code"] == "COUPON_EXHAUSTED"
        with app.app_context():
            invoice = db.session.get(Invoice, response.get_json()["invoiceId"])
            assert invoice.discount == Decimal("1.00")
            assert Coupon.query.filter_by(code="SAVE10").one().times_redeemed == 1

    def _order(self, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order", return_value=order_result()):
            response = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"]},
            )
        return response.get_json()

    def _verify(self, client, sample_data, signature=None):
        return client.post(
            f"/sites/{sample_data['site_id']}/payments/razorpay/verify",
            json={
                "razorpay_order_id": "order_test1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": signature or razorpay_signature("order_test1", "pay_1"),
            },
        )

    def test_verify_success_activates(self, app, client, sample_data, sink):
        order = self._order(client, sample_data)
        response = self._verify(client, sample_data)
        assert response.status_code == 200
        assert response.get_json()["success"] is True
        assert response.get_json()["transactionId"] == "pay_1"
        with app.app_context():
            payment = db.session.get(Payment, order["paymentId"])
            assert payment.status == "succeeded"
            invoice = db.session.get(Invoice, order["invoiceId"])
            assert invoice.status == "paid"
            sub = ledger.get_live_subscription(sample_data["site_id"])
            assert sub.status == "active"
            assert sub.plan_id == sample_data["basic_id"]
            assert invoice.subscription_id == sub.id
        assert "payment_succeeded" in sink.names()

    def test_verify_twice(self, client, sample_data):
        self._order(client, sample_data)
        self._verify(client, sample_data)
        again = self._verify(client, sample_data)
        assert again.status_code == 200
        assert again.get_json()["message"] == "Payment already verified"

    def test_verify_bad_signature(self, app, client, sample_data):
        order = self._order(client, sample_data)
        response = self._verify(client, sample_data, signature="0" * 64)
        assert response.status_code == 400
        assert response.get_json()["success"] is False
        with app.app_context():
            assert db.session.get(Payment, order["paymentId"]).status == "pending"
            log = PaymentLog.query.filter_by(action="verify_payment").one()
            assert log.error_code == "INVALID_SIGNATURE"

    def test_verify_declined(self, app, client, sample_data):
        order = self._order(client, sample_data)
        declined = GatewayResult.declined("Card declined", "card_declined")
        with mock.patch.object(RazorpayAdapter, "verify_or_capture", return_value=declined):
            response = self._verify(client, sample_data)
        assert response.status_code == 400
        with app.app_context():
            payment = db.session.get(Payment, order["paymentId"])
            assert payment.status == "failed"
            assert ledger.get_live_subscription(sample_data["site_id"]) is None

    def test_verify_transient_stays_pending(self, app, client, sample_data):
        order = self._order(client, sample_data)
        error = GatewayTransientError("Timed out", timed_out=True)
        with mock.patch.object(RazorpayAdapter, "verify_or_capture", side_effect=error):
            response = self._verify(client, sample_data)
        assert response.status_code == 202
        assert response.get_json()["pending"] is True
        with app.app_context():
            assert db.session.get(Payment, order["paymentId"]).status == "pending"

    def test_verify_unknown_order(self, client, sample_data):
        response = self._verify(client, sample_data)
        assert response.status_code == 404

    def test_renewal_checkout_extends_from_period_end(self, app, client, sample_data):
        with app.app_context():
            sub_id = start_paid_subscription(sample_data["site_id"], sample_data["basic_id"])
            end = as_utc(ledger.get_subscription(sub_id).current_period_end)
        self._order(client, sample_data)
        self._verify(client, sample_data)
        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert as_utc(sub.current_period_start) == end
            assert as_utc(sub.current_period_end) == end + 30 * DAY


class TestRegistration:
    def _register(self, client, sample_data):
        result = order_result("order_reg")
        with mock.patch.object(RazorpayAdapter, "create_order", return_value=result):
            response = client.post(
                "/payments/razorpay/create-registration-order",
                json={"planId": sample_data["basic_id"], "email": "new@example.com"},
            )
        assert response.status_code == 201
        reference = response.get_json()["paymentReference"]
        verified = client.post(
            "/payments/razorpay/verify-registration",
            json={
                "paymentReference": reference,
                "razorpay_order_id": "order_reg",
                "razorpay_payment_id": "pay_reg",
                "razorpay_signature": razorpay_signature("order_reg", "pay_reg"),
            },
        )
        assert verified.status_code == 200
        return reference

    def test_email_required(self, client, sample_data):
        response = client.post("/payments/razorpay/create-registration-order",
                               json={"planId": sample_data["basic_id"]})
        assert response.status_code == 400

    def test_complete_creates_site(self, app, client, sample_data):
        reference = self._register(client, sample_data)
        response = client.post(
            f"/payments/registration/{reference}/complete",
            json={"siteName": "New Site", "domain": "New.Example.com", "email": "new@example.com"},
        )
        assert response.status_code == 201
        data = response.get_json()
        assert data["subscription"]["status"] == "active"
        with app.app_context():
            site = db.session.get(Site, data["siteId"])
            assert site.domain == "new.example.com"
            payment = ledger.find_payment_by_reference(reference)
            assert payment.site_id == site.id
            assert db.session.get(Invoice, payment.invoice_id).site_id == site.id

        again = client.post(
            f"/payments/registration/{reference}/complete",
            json={"siteName": "New Site", "domain": "new.example.com"},
        )
        assert again.status_code == 201
        assert again.get_json()["siteId"] == data["siteId"]

    def test_complete_before_payment(self, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order",
                               return_value=order_result("order_reg")):
            response = client.post(
                "/payments/razorpay/create-registration-order",
                json={"planId": sample_data["basic_id"], "email": "new@example.com"},
            )
        reference = response.get_json()["paymentReference"]
        complete = client.post(f"/payments/registration/{reference}/complete",
                               json={"siteName": "X", "domain": "x.example.com"})
        assert complete.status_code == 400

    def test_failed_completion_recorded_as_orphan(self, app, client, sample_data):
        reference = self._register(client, sample_data)
        # Domain already belongs to a site
        response = client.post(
            f"/payments/registration/{reference}/complete",
            json={"siteName": "Clash", "domain": "one.example.com"},
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "ORPHANED_PAYMENT"

        orphaned = client.get("/admin/payments/orphaned", headers=ADMIN_HEADERS)
        items = orphaned.get_json()["items"]
        assert len(items) == 1
        assert items[0]["paymentReference"] == reference
        assert items[0]["metadata"]["domain"] == "one.example.com"


# ============================================================================
# Webhooks
# ============================================================================


class TestRazorpayWebhooks:
    def _order(self, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order", return_value=order_result()):
            return client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"]},
            ).get_json()

    def test_captured_settles_pending_payment(self, app, client, sample_data):
        order = self._order(client, sample_data)
        response = post_razorpay_webhook(client, razorpay_captured("pay_9", "order_test1"), "evt_1")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}
        with app.app_context():
            payment = db.session.get(Payment, order["paymentId"])
            assert payment.status == "succeeded"
            assert payment.gateway_payment_id == "pay_9"
            assert ledger.get_live_subscription(sample_data["site_id"]).status == "active"

    def test_duplicate_delivery(self, app, client, sample_data):
        self._order(client, sample_data)
        payload = razorpay_captured("pay_9", "order_test1")
        post_razorpay_webhook(client, payload, "evt_1")
        response = post_razorpay_webhook(client, payload, "evt_1")
        assert response.get_json() == {"status": "duplicate"}
        with app.app_context():
            assert SubscriptionHistory.query.filter_by(action="created").count() == 1
            assert ProcessedEvent.query.filter_by(key="webhook_razorpay_evt_1").count() == 1

    def test_invalid_signature(self, app, client, sample_data):
        response = post_razorpay_webhook(client, razorpay_captured("pay_9"), "evt_bad",
                                         secret="wrong-secret")
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_SIGNATURE"
        with app.app_context():
            assert ProcessedEvent.query.count() == 0

    def test_unhandled_event_ignored(self, client):
        payload = {"event": "order.paid", "payload": {}}
        response = post_razorpay_webhook(client, payload, "evt_order")
        assert response.get_json() == {"status": "ignored"}

    def test_unknown_payment_is_orphaned(self, app, client):
        response = post_razorpay_webhook(client, razorpay_captured("pay_ghost", "order_ghost"),
                                         "evt_ghost")
        assert response.status_code == 200
        with app.app_context():
            log = PaymentLog.query.filter_by(action="orphaned_payment").one()
            assert log.transaction_id == "pay_ghost"

    def test_payment_failed(self, app, client, sample_data):
        order = self._order(client, sample_data)
        payload = {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {
                "id": "pay_f", "order_id": "order_test1", "amount": 1000, "currency": "USD",
                "error_description": "Bank declined",
            }}},
        }
        post_razorpay_webhook(client, payload, "evt_failed")
        with app.app_context():
            payment = db.session.get(Payment, order["paymentId"])
            assert payment.status == "failed"
            assert payment.failure_reason == "Bank declined"

    def test_refund_processed(self, app, client, sample_data):
        order = self._order(client, sample_data)
        post_razorpay_webhook(client, razorpay_captured("pay_9", "order_test1"), "evt_1")
        refund = {
            "event": "refund.processed",
            "payload": {"refund": {"entity": {
                "id": "rfnd_1", "payment_id": "pay_9", "amount": 400, "currency": "USD",
            }}},
        }
        post_razorpay_webhook(client, refund, "evt_refund_1")
        post_razorpay_webhook(client, refund, "evt_refund_2")
        with app.app_context():
            payment = db.session.get(Payment, order["paymentId"])
            assert payment.status == "partially_refunded"
            assert ledger.refunded_total(payment.id) == Decimal("4.00")

    def test_timed_out_first_invoice_recovered(self, app, client, sample_data):
        with app.app_context():
            site_id = sample_data["site_id"]
            method_id = add_razorpay_method(site_id)
            error = GatewayTransientError("Timed out", timed_out=True)
            with mock.patch.object(RazorpayAdapter, "charge_stored_method", side_effect=error):
                sub = lifecycle.start_subscription(site_id, sample_data["basic_id"],
                                                   payment_method_id=method_id)
            sub_id = sub.id
            assert sub.status == "past_due"
            invoice = Invoice.query.filter_by(subscription_id=sub_id).one()
            notes = {"invoice_id": str(invoice.id), "subscription_id": str(sub_id),
                     "site_id": str(site_id)}

        post_razorpay_webhook(client, razorpay_captured("pay_inv", "order_inv", notes=notes),
                              "evt_inv")
        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "active"
            assert sub.grace_ends_at is None
            assert Invoice.query.filter_by(subscription_id=sub_id).one().status == "paid"


class TestStripeWebhooks:
    def _subscription_event(self, event_id, event_type, site_id, status="active", created=None):
        now = int(time.time())
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created or now,
            "data": {"object": {
                "id": "sub_abc",
                "object": "subscription",
                "customer": "cus_abc",
                "status": status,
                "cancel_at_period_end": False,
                "current_period_start": now,
                "current_period_end": now + 30 * 86400,
                "metadata": {"site_id": str(site_id)},
            }},
        }

    def test_subscription_update_links_and_converts_trial(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            lifecycle.start_subscription(site_id, sample_data["starter_id"])
        event = self._subscription_event("evt_s1", "customer.subscription.updated", site_id)
        response = post_stripe_webhook(client, event)
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}
        with app.app_context():
            sub = ledger.get_live_subscription(site_id)
            assert sub.status == "active"
            assert sub.stripe_subscription_id == "sub_abc"
            assert ledger.list_history(site_id)[0].action == "trial_converted"

    def test_stale_event_ignored(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            lifecycle.start_subscription(site_id, sample_data["starter_id"])
        post_stripe_webhook(client, self._subscription_event(
            "evt_s1", "customer.subscription.updated", site_id))
        stale = self._subscription_event("evt_s0", "customer.subscription.deleted", site_id,
                                         status="canceled", created=int(time.time()) - 3600)
        response = post_stripe_webhook(client, stale)
        assert response.get_json() == {"status": "ignored"}
        with app.app_context():
            assert ledger.get_live_subscription(site_id).status == "active"

    def test_bad_signature(self, client):
        response = client.post("/webhooks/stripe", data="{}",
                               headers={"Stripe-Signature": "t=1,v1=deadbeef"})
        assert response.status_code == 400

    def _invoice_event(self, event_id, event_type, site_id, invoice_id="in_abc",
                       period_end=None):
        now = int(time.time())
        end = period_end or now + 60 * 86400
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": now,
            "data": {"object": {
                "id": invoice_id,
                "object": "invoice",
                "customer": "cus_abc",
                "subscription": "sub_abc",
                "payment_intent": f"pi_{invoice_id}",
                "currency": "usd",
                "amount_paid": 1000 if event_type == "invoice.paid" else 0,
                "amount_due": 1000,
                "lines": {"data": [{"period": {"start": end - 30 * 86400, "end": end}}]},
                "metadata": {"site_id": str(site_id)},
            }},
        }

    def _linked_subscription(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            sub_id = start_paid_subscription(site_id, sample_data["basic_id"])
        post_stripe_webhook(client, self._subscription_event(
            "evt_link", "customer.subscription.updated", site_id))
        return sub_id

    def test_repeated_invoice_failure_keeps_single_grace(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        sub_id = self._linked_subscription(app, client, sample_data)
        first = post_stripe_webhook(client, self._invoice_event(
            "evt_f1", "invoice.payment_failed", site_id))
        assert first.status_code == 200
        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "past_due"
            grace_ends_at = sub.grace_ends_at

        for event_id in ("evt_f2", "evt_f3"):
            response = post_stripe_webhook(client, self._invoice_event(
                event_id, "invoice.payment_failed", site_id))
            assert response.status_code == 200

        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "past_due"
            assert sub.grace_ends_at == grace_ends_at
            assert SubscriptionHistory.query.filter_by(
                subscription_id=sub_id, action="renewal_failed").count() == 1

    def test_invoice_paid_renews_once_per_invoice(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        sub_id = self._linked_subscription(app, client, sample_data)
        with app.app_context():
            old_end = as_utc(ledger.get_subscription(sub_id).current_period_end)

        response = post_stripe_webhook(client, self._invoice_event(
            "evt_p1", "invoice.paid", site_id))
        assert response.get_json() == {"status": "ok"}
        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "active"
            assert as_utc(sub.current_period_start) == old_end
            renewed_end = as_utc(sub.current_period_end)
            assert ledger.list_history(site_id)[0].action == "renewed"
            invoice = ledger.find_invoice_by_external_id("in_abc")
            assert invoice.status == "paid"
            assert Payment.query.filter_by(gateway="stripe").count() == 1

        # Same invoice under a new event id
        again = post_stripe_webhook(client, self._invoice_event(
            "evt_p2", "invoice.paid", site_id))
        assert again.status_code == 200
        with app.app_context():
            assert Payment.query.filter_by(gateway="stripe").count() == 1
            assert as_utc(ledger.get_subscription(sub_id).current_period_end) == renewed_end

    def test_invoice_paid_clears_past_due(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        sub_id = self._linked_subscription(app, client, sample_data)
        post_stripe_webhook(client, self._invoice_event(
            "evt_f1", "invoice.payment_failed", site_id))
        post_stripe_webhook(client, self._invoice_event(
            "evt_p1", "invoice.paid", site_id, invoice_id="in_retry"))
        with app.app_context():
            sub = ledger.get_subscription(sub_id)
            assert sub.status == "active"
            assert sub.grace_ends_at is None
            assert ledger.list_history(site_id)[0].action == "renewed"

    def test_managed_subscription_not_autopay_candidate(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            sub_id, end = autopay_ready(site_id, sample_data["basic_id"])
        post_stripe_webhook(client, self._subscription_event(
            "evt_s1", "customer.subscription.updated", site_id))
        with app.app_context():
            assert autopay.find_autopay_candidates(end + 60 * DAY) == []


# ============================================================================
# Gateway adapters
# ============================================================================


class TestStripeAdapter:
    def _adapter(self, timeout=5):
        return StripeCardAdapter(StripeConfig(True, "sk_test_123", "pk_test_123", "whsec", timeout))

    def test_adapters_keep_their_own_http_client(self):
        shared = stripe.default_http_client
        fast, slow = self._adapter(timeout=2), self._adapter(timeout=30)
        assert stripe.default_http_client is shared
        assert fast.http_client is not slow.http_client
        assert fast.client is fast.client

    def test_stored_charge_sends_idempotency_key(self):
        adapter = self._adapter()
        adapter._client = mock.Mock()
        adapter._client.payment_intents.create.return_value = mock.Mock(
            id="pi_1", status="succeeded", amount=1000, amount_received=1000
        )
        method = mock.Mock(stripe_customer_id="cus_1", stripe_payment_method_id="pm_1")
        result = adapter.charge_stored_method(method, Decimal("10.00"), "USD",
                                              idempotency_key="autopay_processed_1_20260101")
        assert result.success
        assert result.gateway_reference == "pi_1"
        kwargs = adapter._client.payment_intents.create.call_args.kwargs
        assert kwargs["options"] == {"idempotency_key": "autopay_processed_1_20260101"}
        assert kwargs["params"]["amount"] == 1000
        assert kwargs["params"]["off_session"] is True

    def test_connection_error_is_timed_out(self):
        adapter = self._adapter()
        adapter._client = mock.Mock()
        adapter._client.payment_intents.retrieve.side_effect = stripe.APIConnectionError("reset")
        with pytest.raises(GatewayTransientError) as exc:
            adapter.verify_or_capture({"orderId": "pi_1"})
        assert exc.value.timed_out


class TestRazorpayAdapter:
    def _adapter(self):
        return RazorpayAdapter(RazorpayConfig(True, "key", "secret", "whsec",
                                              "https://api.razorpay.test", 5))

    def test_create_order(self):
        body = {"id": "order_R", "amount": 149900, "currency": "INR"}
        with mock.patch("services.gateways.base.requests.request",
                        return_value=mock_response(200, body)) as request:
            result = self._adapter().create_order(Decimal("1499.00"), "INR", receipt="rcpt_1")
        assert result.order_id == "order_R"
        assert result.amount == Decimal("1499.00")
        assert request.call_args.kwargs["json"]["amount"] == 149900
        assert request.call_args.kwargs["timeout"] == 5

    def test_timeout_is_transient(self):
        with mock.patch("services.gateways.base.requests.request",
                        side_effect=requests.exceptions.ReadTimeout()):
            with pytest.raises(GatewayTransientError) as exc:
                self._adapter().create_order(Decimal("10"), "USD", receipt="r")
        assert exc.value.timed_out

    def test_connection_error_not_timed_out(self):
        with mock.patch("services.gateways.base.requests.request",
                        side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(GatewayTransientError) as exc:
                self._adapter().create_order(Decimal("10"), "USD", receipt="r")
        assert not exc.value.timed_out

    def test_server_error_is_transient(self):
        with mock.patch("services.gateways.base.requests.request",
                        return_value=mock_response(503)):
            with pytest.raises(GatewayTransientError):
                self._adapter().create_order(Decimal("10"), "USD", receipt="r")

    def test_recurring_charge_pending(self):
        method = mock.Mock(razorpay_customer_id="cust", razorpay_token_id="tok")
        responses = [
            mock_response(200, {"items": []}),
            mock_response(200, {"id": "order_R", "amount": 1000}),
            mock_response(200, {"razorpay_payment_id": "pay_R"}),
            mock_response(200, {"id": "pay_R", "status": "created"}),
        ]
        with mock.patch("services.gateways.base.requests.request", side_effect=responses):
            with pytest.raises(GatewayTransientError) as exc:
                self._adapter().charge_stored_method(method, Decimal("10"), "USD",
                                                     idempotency_key="k")
        assert exc.value.timed_out

    def test_recurring_charge_captured(self):
        method = mock.Mock(razorpay_customer_id="cust", razorpay_token_id="tok")
        responses = [
            mock_response(200, {"items": []}),
            mock_response(200, {"id": "order_R", "amount": 1000}),
            mock_response(200, {"razorpay_payment_id": "pay_R"}),
            mock_response(200, {"id": "pay_R", "status": "captured"}),
        ]
        with mock.patch("services.gateways.base.requests.request", side_effect=responses):
            result = self._adapter().charge_stored_method(method, Decimal("10"), "USD",
                                                          idempotency_key="k")
        assert result.success
        assert result.gateway_reference == "pay_R"

    def test_retried_charge_reuses_order_for_receipt(self):
        method = mock.Mock(razorpay_customer_id="cust", razorpay_token_id="tok")
        responses = [
            mock_response(200, {"items": [{"id": "order_R", "receipt": "k"}]}),
            mock_response(200, {"items": [
                {"id": "pay_failed", "status": "failed"},
                {"id": "pay_R", "status": "captured"},
            ]}),
        ]
        with mock.patch("services.gateways.base.requests.request",
                        side_effect=responses) as request:
            result = self._adapter().charge_stored_method(method, Decimal("10"), "USD",
                                                          idempotency_key="k")
        assert result.success
        assert result.gateway_reference == "pay_R"
        assert request.call_count == 2
        assert request.call_args_list[0].kwargs["params"] == {"receipt": "k"}

    def test_retry_after_failed_attempt_charges_same_order(self):
        method = mock.Mock(razorpay_customer_id="cust", razorpay_token_id="tok")
        responses = [
            mock_response(200, {"items": [{"id": "order_R", "receipt": "k"}]}),
            mock_response(200, {"items": [{"id": "pay_failed", "status": "failed"}]}),
            mock_response(200, {"razorpay_payment_id": "pay_R2"}),
            mock_response(200, {"id": "pay_R2", "status": "captured"}),
        ]
        with mock.patch("services.gateways.base.requests.request",
                        side_effect=responses) as request:
            result = self._adapter().charge_stored_method(method, Decimal("10"), "USD",
                                                          idempotency_key="k")
        assert result.gateway_reference == "pay_R2"
        assert request.call_args_list[2].kwargs["json"]["order_id"] == "order_R"

    def test_method_without_token_declined(self):
        method = mock.Mock(razorpay_customer_id=None, razorpay_token_id=None)
        result = self._adapter().charge_stored_method(method, Decimal("10"), "USD",
                                                      idempotency_key="k")
        assert not result.success
        assert result.failure_code == "NO_TOKEN"


class TestPayPalAdapter:
    def _adapter(self):
        return PayPalAdapter(PayPalConfig(True, "client", "secret", "WH-1", "sandbox", 5))

    def test_create_order_caches_token(self):
        token = mock_response(200, {"access_token": "tok", "expires_in": 3600})
        order = mock_response(201, {"id": "PP-1", "links": [
            {"rel": "approve", "href": "https://paypal.test/approve"}]})
        with mock.patch("services.gateways.base.requests.request",
                        side_effect=[token, order, order]) as request:
            adapter = self._adapter()
            first = adapter.create_order(Decimal("10"), "USD", receipt="r1")
            adapter.create_order(Decimal("10"), "USD", receipt="r2")
        assert first.order_id == "PP-1"
        assert first.approval_url == "https://paypal.test/approve"
        assert request.call_count == 3

    def test_capture_completed(self):
        token = mock_response(200, {"access_token": "tok", "expires_in": 3600})
        captured = mock_response(201, {"id": "PP-1", "status": "COMPLETED", "purchase_units": [
            {"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED",
                                        "amount": {"currency_code": "USD", "value": "10.00"}}]}}]})
        with mock.patch("services.gateways.base.requests.request", side_effect=[token, captured]):
            result = self._adapter().verify_or_capture({"orderId": "PP-1"})
        assert result.success
        assert result.gateway_reference == "CAP-1"
        assert result.amount == Decimal("10.00")

    def test_webhook_requires_headers(self):
        from errors import SignatureError

        with pytest.raises(SignatureError):
            self._adapter().parse_webhook(b"{}", {})


# ============================================================================
# HTTP API
# ============================================================================


class TestSubscriptionRoutes:
    def test_list_plans(self, client, sample_data):
        response = client.get("/plans")
        slugs = [p["slug"] for p in response.get_json()]
        assert slugs == ["free", "basic", "starter", "pro"]

    def test_subscription_lifecycle(self, client, sample_data):
        site_id = sample_data["site_id"]
        assert client.get(f"/sites/{site_id}/subscription").status_code == 404

        created = client.post(f"/sites/{site_id}/subscription",
                              json={"planId": sample_data["free_id"]})
        assert created.status_code == 201
        assert created.get_json()["plan"]["slug"] == "free"

        changed = client.post(f"/sites/{site_id}/subscription/change-plan",
                              json={"planId": sample_data["pro_id"]})
        assert changed.get_json()["planId"] == sample_data["pro_id"]

        canceled = client.post(f"/sites/{site_id}/subscription/cancel", json={})
        assert canceled.get_json()["cancelAtPeriodEnd"] is True

        reactivated = client.post(f"/sites/{site_id}/subscription/reactivate")
        assert reactivated.get_json()["cancelAtPeriodEnd"] is False

        history = client.get(f"/sites/{site_id}/subscription/history").get_json()
        assert [h["action"] for h in history][:3] == ["reactivated", "cancel_scheduled", "upgraded"]

    def test_unknown_site(self, client):
        response = client.get("/sites/999/subscription")
        assert response.status_code == 404
        assert response.get_json()["code"] == "NotFoundError"

    def test_plan_id_required(self, client, sample_data):
        response = client.post(f"/sites/{sample_data['site_id']}/subscription", json={})
        assert response.status_code == 400

    def test_usage_routes(self, client, sample_data):
        site_id = sample_data["site_id"]
        client.post(f"/sites/{site_id}/subscription", json={"planId": sample_data["free_id"]})
        recorded = client.post(f"/sites/{site_id}/usage/messages", json={"quantity": 3})
        assert recorded.status_code == 201
        assert recorded.get_json() == {"metric": "messages", "current": 3}

        limit = client.get(f"/sites/{site_id}/limits/messages").get_json()
        assert limit == {"allowed": True, "reason": None, "limit": 500, "current": 3}

        summary = client.get(f"/sites/{site_id}/usage").get_json()
        assert summary["metrics"]["messages"]["current"] == 3

        bad = client.post(f"/sites/{site_id}/usage/messages", json={"quantity": "lots"})
        assert bad.status_code == 400
        unknown = client.get(f"/sites/{site_id}/limits/bananas")
        assert unknown.get_json()["code"] == "UNKNOWN_METRIC"

    def test_payment_method_routes(self, client, sample_data):
        site_id = sample_data["site_id"]
        created = client.post(f"/sites/{site_id}/payment-methods", json={
            "gateway": "stripe", "type": "card", "stripeCustomerId": "cus_1",
            "stripePaymentMethodId": "pm_1", "last4": "1111", "brand": "visa",
            "expMonth": "12", "expYear": "2030",
        })
        assert created.status_code == 201
        method = created.get_json()
        assert method["isDefault"] is True
        assert method["expYear"] == 2030
        assert "stripePaymentMethodId" not in method

        listed = client.get(f"/sites/{site_id}/payment-methods").get_json()
        assert [m["id"] for m in listed] == [method["id"]]

        deleted = client.delete(f"/sites/{site_id}/payment-methods/{method['id']}")
        assert deleted.status_code == 204
        assert client.get(f"/sites/{site_id}/payment-methods").get_json() == []

    def test_validate_coupon(self, app, client, sample_data):
        with app.app_context():
            catalog.create_coupon({"code": "SAVE10", "discountType": "percentage",
                                   "discountValue": 10})
        response = client.post("/coupons/validate",
                               json={"code": "save10", "planId": sample_data["basic_id"]})
        data = response.get_json()
        assert data["valid"] is True
        assert data["discount"] == "1.00"
        assert data["total"] == "9.00"

        missing = client.post("/coupons/validate", json={"code": "NOPE"})
        assert missing.status_code == 400
        assert missing.get_json()["code"] == "COUPON_NOT_FOUND"


class TestAutoPayRoutes:
    def test_update_settings(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            lifecycle.start_subscription(site_id, sample_data["free_id"])
            method_id = add_razorpay_method(site_id)
        response = client.put(f"/sites/{site_id}/autopay", json={"enabled": True})
        assert response.status_code == 200
        data = response.get_json()
        assert data["enabled"] is True
        assert data["paymentMethodId"] == method_id

        disabled = client.put(f"/sites/{site_id}/autopay",
                              json={"enabled": False, "paymentMethodId": None})
        assert disabled.get_json()["enabled"] is False
        assert disabled.get_json()["paymentMethodId"] is None

    def test_invalid_updates(self, app, client, sample_data):
        site_id = sample_data["site_id"]
        with app.app_context():
            lifecycle.start_subscription(site_id, sample_data["free_id"])
        assert client.put(f"/sites/{site_id}/autopay", json={}).status_code == 400
        assert client.put(f"/sites/{site_id}/autopay", json={"enabled": "yes"}).status_code == 400
        # No payment method on file
        assert client.put(f"/sites/{site_id}/autopay", json={"enabled": True}).status_code == 400


class TestClientEvents:
    def test_log_event_masks_metadata(self, app, client, sample_data):
        response = client.post("/payments/log-event", json={
            "event": "payment_failed", "gateway": "razorpay", "siteId": sample_data["site_id"],
            "orderId": "order_1", "errorMessage": "User closed the popup",
            "metadata": {"card_number": "4111111111111111", "step": "otp"},
        })
        assert response.status_code == 201
        with app.app_context():
            log = PaymentLog.query.filter_by(action="client.payment_failed").one()
            assert log.status == "failed"
            meta = load_json(log.metadata_json)
            assert meta["card_number"] == MASK
            assert meta["step"] == "otp"

    def test_unknown_event(self, client):
        response = client.post("/payments/log-event", json={"event": "hacked"})
        assert response.status_code == 400

    def test_unknown_site(self, client):
        response = client.post("/payments/log-event",
                               json={"event": "payment_failed", "siteId": 999})
        assert response.status_code == 404


# ============================================================================
# Admin API
# ============================================================================


class TestAdminAuth:
    def test_missing_key(self, client):
        response = client.get("/admin/plans")
        assert response.status_code == 401
        assert response.get_json()["code"] == "UNAUTHORIZED"

    def test_wrong_key(self, client):
        response = client.get("/admin/plans", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 403
        assert response.get_json()["code"] == "FORBIDDEN"

    def test_disabled_without_configured_key(self, app, client):
        app.config["APP_CONFIG"].admin_api_key = ""
        response = client.get("/admin/plans", headers=ADMIN_HEADERS)
        assert response.status_code == 403
        assert response.get_json()["code"] == "ADMIN_DISABLED"

    def test_valid_key(self, client):
        assert client.get("/admin/plans", headers=ADMIN_HEADERS).status_code == 200


class TestAdminRoutes:
    def test_list_plans_includes_private(self, client, sample_data):
        plans = client.get("/admin/plans", headers=ADMIN_HEADERS).get_json()
        enterprise = next(p for p in plans if p["slug"] == "enterprise")
        assert enterprise["isPublic"] is False
        assert enterprise["liveSubscribers"] == 0

    def test_plan_crud(self, client):
        created = client.post("/admin/plans", headers=ADMIN_HEADERS, json={
            "name": "Team", "slug": "team", "monthlyPrice": "29", "annualPrice": "290",
        })
        assert created.status_code == 201
        plan_id = created.get_json()["id"]

        updated = client.patch(f"/admin/plans/{plan_id}", headers=ADMIN_HEADERS,
                               json={"description": "For teams", "annualPrice": None})
        assert updated.get_json()["description"] == "For teams"
        assert updated.get_json()["annualPrice"] is None

        deleted = client.delete(f"/admin/plans/{plan_id}", headers=ADMIN_HEADERS)
        assert deleted.status_code == 204
        assert "team" not in [p["slug"] for p in client.get("/plans").get_json()]

    def test_plan_delete_blocked(self, client, sample_data):
        client.post(f"/sites/{sample_data['site_id']}/subscription",
                    json={"planId": sample_data["free_id"]})
        response = client.delete(f"/admin/plans/{sample_data['free_id']}", headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.get_json()["code"] == "PLAN_IN_USE"

    def test_coupon_crud(self, client):
        created = client.post("/admin/coupons", headers=ADMIN_HEADERS, json={
            "code": "launch", "discountType": "fixed", "discountValue": "5", "currency": "usd",
        })
        assert created.status_code == 201
        coupon = created.get_json()
        assert coupon["code"] == "LAUNCH"
        assert coupon["currency"] == "USD"

        listed = client.get("/admin/coupons", headers=ADMIN_HEADERS).get_json()
        assert listed["total"] == 1

        deleted = client.delete(f"/admin/coupons/{coupon['id']}", headers=ADMIN_HEADERS)
        assert deleted.get_json() == {"deleted": True, "deactivated": False}

    def test_refund(self, app, client, sample_data):
        with mock.patch.object(RazorpayAdapter, "create_order", return_value=order_result()):
            order = client.post(
                f"/sites/{sample_data['site_id']}/payments/razorpay/create-order",
                json={"planId": sample_data["basic_id"]},
            ).get_json()
        client.post(f"/sites/{sample_data['site_id']}/payments/razorpay/verify", json={
            "razorpay_order_id": "order_test1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": razorpay_signature("order_test1", "pay_1"),
        })

        partial = GatewayResult(success=True, gateway_reference="rfnd_a", amount=Decimal("4.00"))
        with mock.patch.object(RazorpayAdapter, "refund", return_value=partial) as refund:
            response = client.post(f"/admin/payments/{order['paymentId']}/refund",
                                   headers=ADMIN_HEADERS, json={"amount": "4.00",
                                                                "reason": "Goodwill"})
        assert response.status_code == 201
        data = response.get_json()
        assert data["refund"]["amount"] == "4.00"
        assert data["payment"]["status"] == "partially_refunded"
        assert data["payment"]["refunded"] == "4.00"
        assert refund.call_args.args == ("pay_1", Decimal("4.00"), "USD")

        too_much = client.post(f"/admin/payments/{order['paymentId']}/refund",
                               headers=ADMIN_HEADERS, json={"amount": "7.00"})
        assert too_much.status_code == 400

        rest = GatewayResult(success=True, gateway_reference="rfnd_b", amount=Decimal("6.00"))
        with mock.patch.object(RazorpayAdapter, "refund", return_value=rest):
            response = client.post(f"/admin/payments/{order['paymentId']}/refund",
                                   headers=ADMIN_HEADERS, json={})
        assert response.get_json()["payment"]["status"] == "refunded"

    def test_refund_declined(self, app, client, sample_data):
        with app.app_context():
            payment = ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD",
                                            status="succeeded", gateway_payment_id="pay_x")
            db.session.commit()
            payment_id = payment.id
        declined = GatewayResult.declined("Refund window closed")
        with mock.patch.object(RazorpayAdapter, "refund", return_value=declined):
            response = client.post(f"/admin/payments/{payment_id}/refund",
                                   headers=ADMIN_HEADERS, json={})
        assert response.status_code == 402
        with app.app_context():
            assert db.session.get(Payment, payment_id).status == "succeeded"

    def test_payment_log_pagination(self, client, sample_data):
        for _ in range(3):
            client.post("/payments/log-event", json={"event": "checkout_opened",
                                                     "gateway": "razorpay"})
        first = client.get("/admin/payment-logs?per_page=2", headers=ADMIN_HEADERS).get_json()
        assert first["total"] == 3
        assert first["perPage"] == 2
        assert len(first["items"]) == 2
        second = client.get("/admin/payment-logs?per_page=2&page=2",
                            headers=ADMIN_HEADERS).get_json()
        assert len(second["items"]) == 1
        filtered = client.get("/admin/payment-logs?status=failed", headers=ADMIN_HEADERS)
        assert filtered.get_json()["total"] == 0

    def test_payment_stats(self, app, client, sample_data):
        with app.app_context():
            ledger.create_payment(gateway="razorpay", amount="10.00", currency="USD",
                                  status="succeeded")
            db.session.commit()
        stats = client.get("/admin/payments/stats", headers=ADMIN_HEADERS).get_json()
        assert stats["byStatus"] == {"succeeded": 1}
        assert stats["collected"] == {"USD": "10.00"}
        assert stats["orphaned"] == 0

    def test_extend_subscription(self, app, client, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["basic_id"])
            sub_id = sub.id
        response = client.post(f"/admin/subscriptions/{sub_id}/extend", headers=ADMIN_HEADERS,
                               json={"days": 7, "reason": "Support ticket"})
        assert response.status_code == 200
        assert response.get_json()["status"] == "active"
        bad = client.post(f"/admin/subscriptions/{sub_id}/extend", headers=ADMIN_HEADERS,
                          json={"days": "7"})
        assert bad.status_code == 400

    def test_list_subscriptions_filter(self, client, sample_data):
        client.post(f"/sites/{sample_data['site_id']}/subscription",
                    json={"planId": sample_data["free_id"]})
        client.post(f"/sites/{sample_data['site2_id']}/subscription",
                    json={"planId": sample_data["basic_id"]})
        past_due = client.get("/admin/subscriptions?status=past_due",
                              headers=ADMIN_HEADERS).get_json()
        assert past_due["total"] == 1
        assert past_due["items"][0]["siteId"] == sample_data["site2_id"]

    def test_settings_override_applies_after_reload(self, app, client):
        saved = client.put("/admin/settings", headers=ADMIN_HEADERS,
                           json={"billing.grace_period_days": 5})
        assert saved.status_code == 200
        assert saved.get_json()["reloadRequired"] is True
        assert app.config["BILLING_CONFIG"].grace_period_days == 3

        reloaded = client.post("/admin/settings/reload", headers=ADMIN_HEADERS)
        assert reloaded.status_code == 200
        assert app.config["BILLING_CONFIG"].grace_period_days == 5
        assert reloaded.get_json()["active"]["billing"]["grace_period_days"] == 5

        settings = client.get("/admin/settings", headers=ADMIN_HEADERS).get_json()
        assert settings["overrides"] == {"billing.grace_period_days": "5"}
        assert settings["active"]["stripe"]["secret_key"] == "***MASKED***"

    def test_settings_rejects_unknown_key(self, client):
        response = client.put("/admin/settings", headers=ADMIN_HEADERS,
                              json={"database.uri": "sqlite://"})
        assert response.status_code == 400

    def test_run_cycle(self, app, client, sample_data):
        with app.app_context():
            sub = lifecycle.start_subscription(sample_data["site_id"], sample_data["free_id"])
            end = as_utc(sub.current_period_end)
        response = client.post("/admin/billing/run-cycle", headers=ADMIN_HEADERS,
                               json={"now": (end + HOUR).isoformat()})
        assert response.status_code == 200
        assert response.get_json()["boundaries"] == {"renewed": 1}


# ============================================================================
# Error handling and security headers
# ============================================================================


class TestErrorHandlers:
    def test_404_json(self, client):
        response = client.get("/nonexistent-page")
        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found", "code": "NotFoundError"}

    def test_405_json(self, client):
        response = client.get("/webhooks/razorpay")
        assert response.status_code == 405
        assert response.get_json()["code"] == "METHOD_NOT_ALLOWED"

    def test_non_object_body(self, client, sample_data):
        response = client.post(
            f"/sites/{sample_data['site_id']}/payments/razorpay/create-order", json=[1, 2]
        )
        assert response.status_code == 400

    def test_unknown_gateway_route(self, client, sample_data):
        response = client.post(f"/sites/{sample_data['site_id']}/payments/bitcoin/create-order",
                               json={"planId": sample_data["basic_id"]})
        assert response.status_code == 404
        assert response.get_json()["code"] == "UNKNOWN_GATEWAY"


class TestSecurityHeaders:
    def test_headers_present(self, client):
        response = client.get("/plans")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
