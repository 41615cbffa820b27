"""Coupon validation and discount calculation."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from errors import ValidationError
from models import Coupon, CouponRedemption
from services import ledger
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def validate_coupon(
    code: str,
    *,
    site_id: Optional[int] = None,
    currency: Optional[str] = None,
    now=None,
) -> Coupon:
    """Return the redeemable coupon for *code* or raise :class:`ValidationError`.

    Validation is advisory; the redemption itself re-checks the counter
    atomically.
    """
    now = as_utc(now or utc_now())
    coupon = ledger.get_coupon_by_code(code)
    if coupon is None or not coupon.is_active:
        raise ValidationError("Coupon not found", error_code="COUPON_NOT_FOUND")
    if coupon.valid_from and as_utc(coupon.valid_from) > now:
        raise ValidationError("Coupon is not yet valid", error_code="COUPON_NOT_YET_VALID")
    if coupon.valid_until and as_utc(coupon.valid_until) < now:
        raise ValidationError("Coupon has expired", error_code="COUPON_EXPIRED")
    if coupon.max_redemptions is not None and coupon.times_redeemed >= coupon.max_redemptions:
        raise ValidationError(
            "Coupon has reached maximum redemptions", error_code="COUPON_EXHAUSTED"
        )
    if (
        coupon.discount_type == "fixed"
        and coupon.currency
        and currency
        and coupon.currency.upper() != currency.upper()
    ):
        raise ValidationError(
            f"Coupon is not valid for {currency.upper()}", error_code="COUPON_CURRENCY"
        )
    if site_id is not None and CouponRedemption.query.filter_by(
        coupon_id=coupon.id, site_id=site_id
    ).first():
        raise ValidationError("Coupon has already been used", error_code="COUPON_ALREADY_REDEEMED")
    return coupon


def compute_discount(coupon: Coupon, amount: Decimal) -> Decimal:
    """Discount for *amount*, never more than the amount itself."""
    amount = Decimal(str(amount))
    value = Decimal(str(coupon.discount_value))
    if coupon.discount_type == "percentage":
        discount = (amount * value / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        discount = value.quantize(CENT)
    return min(max(discount, Decimal("0.00")), amount)


def describe(coupon: Coupon, amount: Optional[Decimal] = None) -> dict:
    data = {
        "code": coupon.code,
        "description": coupon.description,
        "discountType": coupon.discount_type,
        "discountValue": str(coupon.discount_value),
        "currency": coupon.currency,
        "remaining": (
            None if coupon.max_redemptions is None
            else max(coupon.max_redemptions - coupon.times_redeemed, 0)
        ),
    }
    if amount is not None:
        discount = compute_discount(coupon, amount)
        data["discount"] = str(discount)
        data["total"] = str(Decimal(str(amount)) - discount)
    return data
