from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    admin_api_key: str
    base_currency: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class StripeConfig:
    enabled: bool
    secret_key: str
    publishable_key: str
    webhook_secret: str
    timeout: int


@dataclass
class RazorpayConfig:
    enabled: bool
    key_id: str
    key_secret: str
    webhook_secret: str
    base_url: str
    timeout: int


@dataclass
class PayPalConfig:
    enabled: bool
    client_id: str
    client_secret: str
    webhook_id: str
    mode: str
    timeout: int

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@dataclass
class BillingConfig:
    grace_period_days: int
    default_trial_days: int
    autopay_lead_hours: int
    scheduler_enabled: bool
    scheduler_interval_seconds: int
    trial_warning_days: tuple
    autopay_retry_minutes: int = 60
    autopay_max_attempts: int = 4
