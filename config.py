"""Configuration loading: YAML file + environment-variable overrides.

Admin overrides saved as ``AppSetting`` rows sit between the two layers:
environment variables win, then stored overrides, then ``config.yaml``.
Configuration is read once at startup and replaced only by an explicit
:func:`reload_config` call.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import asdict
from typing import Optional

import yaml

from config_models import (
    AppConfig,
    BillingConfig,
    EmailConfig,
    PayPalConfig,
    RazorpayConfig,
    StripeConfig,
)

logger = logging.getLogger(__name__)

# Keys administrators may override at runtime, as "<section>.<key>"
OVERRIDABLE_SETTINGS = {
    "billing.grace_period_days": int,
    "billing.default_trial_days": int,
    "billing.autopay_lead_hours": int,
    "billing.autopay_retry_minutes": int,
    "billing.autopay_max_attempts": int,
    "billing.scheduler_interval_seconds": int,
    "stripe.enabled": bool,
    "razorpay.enabled": bool,
    "paypal.enabled": bool,
    "paypal.mode": str,
    "email.enabled": bool,
}

# Config keys whose values are secrets and must never be echoed back
SECRET_FIELDS = {
    "secret_key",
    "admin_api_key",
    "smtp_password",
    "webhook_secret",
    "key_secret",
    "client_secret",
}


def _as_bool(value) -> bool:
    return str(value).lower() in ("true", "1", "yes")


def _section(raw: dict, name: str, overrides: dict) -> dict:
    """Return the YAML section *name* with stored overrides applied."""
    merged = dict(raw.get(name, {}) or {})
    prefix = f"{name}."
    for key, value in overrides.items():
        if key.startswith(prefix):
            merged[key[len(prefix):]] = value
    return merged


def load_config(overrides: Optional[dict] = None):
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over stored overrides, which take
    precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, StripeConfig, RazorpayConfig,
    PayPalConfig, BillingConfig, database_uri).
    """
    overrides = overrides or {}
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = _section(raw, "app", overrides)
    email_cfg = _section(raw, "email", overrides)
    stripe_cfg = _section(raw, "stripe", overrides)
    razorpay_cfg = _section(raw, "razorpay", overrides)
    paypal_cfg = _section(raw, "paypal", overrides)
    billing_cfg = _section(raw, "billing", overrides)
    db_cfg = raw.get("database", {}) or {}

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )
    admin_api_key = os.environ.get("ADMIN_API_KEY", app_cfg.get("admin_api_key", ""))
    if not admin_api_key:
        logger.warning("ADMIN_API_KEY not configured, admin endpoints are disabled")

    warning_days = billing_cfg.get("trial_warning_days", [7, 3, 1])
    return (
        AppConfig(
            name=app_cfg.get("name", "Billing Engine"),
            secret_key=secret_key,
            admin_api_key=admin_api_key,
            base_currency=app_cfg.get("base_currency", "USD"),
        ),
        EmailConfig(
            enabled=_as_bool(os.environ.get("EMAIL_ENABLED", email_cfg.get("enabled", False))),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        StripeConfig(
            enabled=_as_bool(os.environ.get("STRIPE_ENABLED", stripe_cfg.get("enabled", False))),
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            publishable_key=os.environ.get(
                "STRIPE_PUBLISHABLE_KEY", stripe_cfg.get("publishable_key", "")
            ),
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
            timeout=int(os.environ.get("STRIPE_TIMEOUT", stripe_cfg.get("timeout", 10))),
        ),
        RazorpayConfig(
            enabled=_as_bool(os.environ.get("RAZORPAY_ENABLED", razorpay_cfg.get("enabled", False))),
            key_id=os.environ.get("RAZORPAY_KEY_ID", razorpay_cfg.get("key_id", "")),
            key_secret=os.environ.get("RAZORPAY_KEY_SECRET", razorpay_cfg.get("key_secret", "")),
            webhook_secret=os.environ.get(
                "RAZORPAY_WEBHOOK_SECRET", razorpay_cfg.get("webhook_secret", "")
            ),
            base_url=os.environ.get(
                "RAZORPAY_BASE_URL",
                razorpay_cfg.get("base_url", "https://api.razorpay.com"),
            ),
            timeout=int(os.environ.get("RAZORPAY_TIMEOUT", razorpay_cfg.get("timeout", 10))),
        ),
        PayPalConfig(
            enabled=_as_bool(os.environ.get("PAYPAL_ENABLED", paypal_cfg.get("enabled", False))),
            client_id=os.environ.get("PAYPAL_CLIENT_ID", paypal_cfg.get("client_id", "")),
            client_secret=os.environ.get(
                "PAYPAL_CLIENT_SECRET", paypal_cfg.get("client_secret", "")
            ),
            webhook_id=os.environ.get("PAYPAL_WEBHOOK_ID", paypal_cfg.get("webhook_id", "")),
            mode=os.environ.get("PAYPAL_MODE", paypal_cfg.get("mode", "sandbox")),
            timeout=int(os.environ.get("PAYPAL_TIMEOUT", paypal_cfg.get("timeout", 10))),
        ),
        BillingConfig(
            grace_period_days=int(os.environ.get(
                "BILLING_GRACE_PERIOD_DAYS", billing_cfg.get("grace_period_days", 3)
            )),
            default_trial_days=int(os.environ.get(
                "BILLING_DEFAULT_TRIAL_DAYS", billing_cfg.get("default_trial_days", 14)
            )),
            autopay_lead_hours=int(os.environ.get(
                "AUTOPAY_LEAD_HOURS", billing_cfg.get("autopay_lead_hours", 24)
            )),
            scheduler_enabled=_as_bool(os.environ.get(
                "AUTOPAY_SCHEDULER_ENABLED", billing_cfg.get("scheduler_enabled", True)
            )),
            scheduler_interval_seconds=int(os.environ.get(
                "AUTOPAY_INTERVAL_SECONDS",
                billing_cfg.get("scheduler_interval_seconds", 6 * 60 * 60),
            )),
            trial_warning_days=tuple(int(d) for d in warning_days),
            autopay_retry_minutes=int(os.environ.get(
                "AUTOPAY_RETRY_MINUTES", billing_cfg.get("autopay_retry_minutes", 60)
            )),
            autopay_max_attempts=int(os.environ.get(
                "AUTOPAY_MAX_ATTEMPTS", billing_cfg.get("autopay_max_attempts", 4)
            )),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def apply_config(app, configs) -> None:
    """Store loaded config objects on *app* (secret key excluded)."""
    app_cfg, email_cfg, stripe_cfg, razorpay_cfg, paypal_cfg, billing_cfg = configs
    app.config["APP_CONFIG"] = app_cfg
    app.config["EMAIL_CONFIG"] = email_cfg
    app.config["STRIPE_CONFIG"] = stripe_cfg
    app.config["RAZORPAY_CONFIG"] = razorpay_cfg
    app.config["PAYPAL_CONFIG"] = paypal_cfg
    app.config["BILLING_CONFIG"] = billing_cfg


def load_setting_overrides() -> dict:
    """Return admin overrides stored in ``AppSetting``, coerced to their types.

    Must be called inside an application context.
    """
    from models import AppSetting

    overrides: dict = {}
    for row in AppSetting.query.all():
        coerce = OVERRIDABLE_SETTINGS.get(row.key)
        if coerce is None or row.value is None:
            continue
        try:
            overrides[row.key] = _as_bool(row.value) if coerce is bool else coerce(row.value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid setting %s=%r", row.key, row.value)
    return overrides


def reload_config(app) -> None:
    """Re-read YAML, env vars and stored overrides into *app.config*.

    The database URI and session secret are fixed for the lifetime of the
    process; everything else is swapped in one step.
    """
    with app.app_context():
        overrides = load_setting_overrides()
    *configs, _db_uri = load_config(overrides)
    app_cfg = configs[0]
    app_cfg.secret_key = app.config["APP_CONFIG"].secret_key
    apply_config(app, configs)
    logger.info("Configuration reloaded (%d stored overrides)", len(overrides))


def masked_config(app) -> dict:
    """Return the active configuration as a dict with secrets masked."""
    result = {}
    for key in ("APP_CONFIG", "EMAIL_CONFIG", "STRIPE_CONFIG", "RAZORPAY_CONFIG",
                "PAYPAL_CONFIG", "BILLING_CONFIG"):
        section = asdict(app.config[key])
        for field_name in section:
            if field_name in SECRET_FIELDS and section[field_name]:
                section[field_name] = "***MASKED***"
        result[key.replace("_CONFIG", "").lower()] = section
    return result


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
