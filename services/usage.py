"""Usage metering against plan limits.

Counters are keyed by ``(subscription_id, metric, period_start)`` where
``period_start`` is the subscription's current period start, so a renewal
rolls every counter over at exactly the same boundary.  Gauge metrics
(``agents``, ``storage_mb``) describe a level rather than an accumulation
and are keyed by a fixed epoch instead.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from errors import NotFoundError, ValidationError
from extensions import db
from models import Subscription, SubscriptionPlan, UsageRecord
from services import ledger
from utils import isoformat, utc_now

logger = logging.getLogger(__name__)

# metric -> (plan limit column, feature flag column or None)
METRICS = {
    "conversations": ("max_conversations_per_month", None),
    "messages": ("max_messages_per_month", None),
    "agents": ("max_agents", None),
    "storage_mb": ("max_storage_mb", None),
    "ai_analyses": ("max_ai_analyses_per_month", "ai_analysis_enabled"),
    "ai_auto_replies": ("max_ai_auto_replies_per_month", "ai_auto_reply_enabled"),
}

GAUGE_METRICS = {"agents", "storage_mb"}
GAUGE_PERIOD_START = datetime.datetime(1970, 1, 1)


@dataclass
class LimitCheck:
    allowed: bool
    reason: Optional[str]
    limit: Optional[int]
    current: int

    def to_dict(self) -> dict:
        return asdict(self)


def _validate_metric(metric: str) -> None:
    if metric not in METRICS:
        raise ValidationError(f"Unknown metric: {metric}", error_code="UNKNOWN_METRIC")


def usage_period_start(sub: Subscription, metric: str) -> datetime.datetime:
    if metric in GAUGE_METRICS:
        return GAUGE_PERIOD_START
    return sub.current_period_start


def _current_quantity(sub: Subscription, metric: str) -> int:
    record = UsageRecord.query.filter_by(
        subscription_id=sub.id,
        metric=metric,
        period_start=usage_period_start(sub, metric),
    ).first()
    return record.quantity if record else 0


def _increment(sub: Subscription, metric: str, period_start, quantity: int) -> int:
    """Atomic ``quantity = quantity + n``; returns the number of rows touched.

    Gauges never drop below zero.
    """
    total = UsageRecord.quantity + quantity
    if quantity < 0:
        total = case((total < 0, 0), else_=total)
    result = db.session.execute(
        update(UsageRecord)
        .where(
            UsageRecord.subscription_id == sub.id,
            UsageRecord.metric == metric,
            UsageRecord.period_start == period_start,
        )
        .values(quantity=total, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def record_usage(site_id: int, metric: str, quantity: int = 1) -> int:
    """Add *quantity* to the site's current-period counter for *metric*.

    Returns the stored total after the increment.
    """
    _validate_metric(metric)
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    if quantity < 0 and metric not in GAUGE_METRICS:
        raise ValidationError("Only gauge metrics may be decremented")

    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no active subscription")
    period_start = usage_period_start(sub, metric)

    if not _increment(sub, metric, period_start, quantity):
        try:
            with db.session.begin_nested():
                db.session.add(UsageRecord(
                    site_id=site_id,
                    subscription_id=sub.id,
                    metric=metric,
                    period_start=period_start,
                    quantity=max(quantity, 0),
                ))
        except IntegrityError:
            # Lost the insert race; the other writer's row now exists
            _increment(sub, metric, period_start, quantity)
    db.session.commit()

    record = UsageRecord.query.filter_by(
        subscription_id=sub.id, metric=metric, period_start=period_start
    ).first()
    return record.quantity


def get_usage(site_id: int, metric: str) -> int:
    _validate_metric(metric)
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        return 0
    return _current_quantity(sub, metric)


def check_limit(site_id: int, metric: str) -> LimitCheck:
    """Read-only limit check for a metered action.

    A disabled feature behaves like a zero limit.
    """
    _validate_metric(metric)
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        return LimitCheck(False, "No active subscription", None, 0)
    plan = db.session.get(SubscriptionPlan, sub.plan_id)
    limit_column, feature_flag = METRICS[metric]
    current = _current_quantity(sub, metric)

    if feature_flag and not getattr(plan, feature_flag):
        return LimitCheck(False, f"{metric} is not included in the {plan.name} plan", 0, current)
    limit = getattr(plan, limit_column)
    if limit is not None and current >= limit:
        return LimitCheck(False, f"{metric} limit reached ({current}/{limit})", limit, current)
    return LimitCheck(True, None, limit, current)


def get_usage_summary(site_id: int) -> dict:
    """Current usage, limit and period for every metric."""
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no active subscription")
    plan = db.session.get(SubscriptionPlan, sub.plan_id)
    records = {
        (r.metric, r.period_start): r.quantity
        for r in UsageRecord.query.filter_by(subscription_id=sub.id).all()
    }
    metrics = {}
    for metric, (limit_column, feature_flag) in METRICS.items():
        enabled = not feature_flag or bool(getattr(plan, feature_flag))
        metrics[metric] = {
            "current": records.get((metric, usage_period_start(sub, metric)), 0),
            "limit": getattr(plan, limit_column) if enabled else 0,
            "enabled": enabled,
        }
    return {
        "subscriptionId": sub.id,
        "planId": plan.id,
        "periodStart": isoformat(sub.current_period_start),
        "periodEnd": isoformat(sub.current_period_end),
        "metrics": metrics,
    }


def carry_over_gauges(old_sub: Subscription, new_sub: Subscription) -> None:
    """Copy gauge levels to a subscription row opened by a plan change."""
    for record in UsageRecord.query.filter(
        UsageRecord.subscription_id == old_sub.id,
        UsageRecord.metric.in_(GAUGE_METRICS),
    ).all():
        db.session.add(UsageRecord(
            site_id=new_sub.site_id,
            subscription_id=new_sub.id,
            metric=record.metric,
            period_start=GAUGE_PERIOD_START,
            quantity=record.quantity,
        ))
    logger.debug("Carried gauge usage from subscription %s to %s", old_sub.id, new_sub.id)
