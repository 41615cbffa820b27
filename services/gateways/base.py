"""Common gateway adapter interface and result types."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import requests
from requests.exceptions import RequestException

from errors import GatewayError, GatewayTransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


@dataclass
class GatewayResult:
    """Normalized outcome of a gateway call.

    ``success=False`` is an explicit decline; transport problems are raised
    as :class:`GatewayTransientError` instead.
    """

    success: bool
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    public_key: Optional[str] = None
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def declined(cls, reason: str, code: Optional[str] = None, **kwargs) -> "GatewayResult":
        return cls(success=False, failure_reason=reason, failure_code=code, **kwargs)


@dataclass
class WebhookEvent:
    """A verified gateway event with its type mapped onto the common vocabulary.

    ``event_type`` is one of ``subscription.created``, ``subscription.updated``,
    ``subscription.deleted``, ``invoice.paid``, ``invoice.payment_failed``,
    ``payment.succeeded``, ``payment.failed``, ``refund.processed`` or None for
    events the engine does not act on.
    """

    gateway: str
    event_id: str
    event_type: Optional[str]
    source_type: str
    occurred_at: Optional[datetime.datetime] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: Optional[bool] = None
    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)


class GatewayAdapter:
    """Interface every payment gateway adapter implements.

    Adapters talk to exactly one gateway and never touch the ledger.
    """

    name = ""

    def __init__(self, config):
        self.config = config

    @property
    def timeout(self) -> int:
        return getattr(self.config, "timeout", None) or DEFAULT_TIMEOUT

    def is_configured(self) -> bool:
        raise NotImplementedError

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        *,
        receipt: str,
        metadata: Optional[dict] = None,
        return_url: Optional[str] = None,
    ) -> GatewayResult:
        raise NotImplementedError

    def verify_or_capture(self, payload: dict) -> GatewayResult:
        raise NotImplementedError

    def charge_stored_method(
        self,
        method,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        description: str = "",
        metadata: Optional[dict] = None,
    ) -> GatewayResult:
        raise NotImplementedError

    def refund(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        raise NotImplementedError

    def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        raise NotImplementedError


class RestGatewayAdapter(GatewayAdapter):
    """Adapter base for gateways reached with plain ``requests`` calls."""

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Issue an HTTP request, mapping transport failures to gateway errors.

        4xx responses are returned to the caller, which knows whether they
        mean a decline; 5xx responses raise :class:`GatewayTransientError`.
        """
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = requests.request(method, url, **kwargs)
        except requests.exceptions.ConnectTimeout as e:
            logger.error("%s connect timeout: %s %s", self.name, method, url)
            raise GatewayTransientError(f"Could not connect to {self.name}: {e}")
        except requests.exceptions.Timeout:
            logger.error("%s timeout: %s %s", self.name, method, url)
            raise GatewayTransientError(
                f"Request to {self.name} timed out", timed_out=True
            )
        except requests.exceptions.ConnectionError as e:
            logger.error("%s connection error: %s", self.name, e)
            raise GatewayTransientError(f"Could not connect to {self.name}: {e}")
        except RequestException as e:
            logger.error("%s request error: %s", self.name, e)
            raise GatewayError(f"Request to {self.name} failed: {e}")

        if response.status_code >= 500:
            logger.error("%s server error %s on %s", self.name, response.status_code, url)
            raise GatewayTransientError(
                f"{self.name} returned HTTP {response.status_code}",
                error_code=f"HTTP_{response.status_code}",
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
