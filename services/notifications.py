"""Lifecycle notifications.

A :class:`NotificationSink` receives one-way events (trial ending, payment
failed, renewed, ...).  The active sink lives in
``app.extensions["billing_notification_sink"]`` so tests and embedding
applications can swap it.  Notifications are dispatched after the ledger
transaction commits and a delivery failure never rolls back billing state.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import current_app

from extensions import db
from mailer import MailerError, compose_notification, send_message
from models import Site

logger = logging.getLogger(__name__)

EXTENSION_KEY = "billing_notification_sink"

NOTIFICATION_EVENTS = {
    "trial_ending": "Your trial ends in {days} day(s)",
    "trial_expired": "Your trial has ended",
    "payment_succeeded": "Payment received",
    "payment_failed": "Payment failed",
    "subscription_renewed": "Subscription renewed",
    "subscription_canceled": "Subscription canceled",
    "subscription_past_due": "Payment overdue",
    "plan_changed": "Plan changed",
}


class NotificationSink:
    """Base sink; subclasses implement :meth:`notify`."""

    def notify(self, event: str, site_id: Optional[int], payload: dict) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Sink used when email delivery is disabled."""

    def notify(self, event, site_id, payload):
        logger.info("Notification %s for site %s: %s", event, site_id, payload)


class EmailNotificationSink(NotificationSink):
    def __init__(self, config):
        self.config = config

    def notify(self, event, site_id, payload):
        site = db.session.get(Site, site_id) if site_id else None
        recipient = payload.get("email") or (site.owner_email if site else None)
        if not recipient:
            logger.warning("No recipient for %s notification (site %s)", event, site_id)
            return
        subject = NOTIFICATION_EVENTS.get(event, event).format(**payload)
        details = {key: value for key, value in payload.items() if key != "email"}
        send_message(self.config, compose_notification(self.config, subject, recipient,
                                                       details, site=site))


def build_sink(email_config) -> NotificationSink:
    if email_config.enabled and email_config.smtp_host:
        return EmailNotificationSink(email_config)
    return LoggingNotificationSink()


def get_sink() -> NotificationSink:
    sink = current_app.extensions.get(EXTENSION_KEY)
    if sink is None:
        sink = build_sink(current_app.config["EMAIL_CONFIG"])
        current_app.extensions[EXTENSION_KEY] = sink
    return sink


def dispatch(notifications: list[tuple[str, Optional[int], dict]]) -> None:
    """Deliver queued ``(event, site_id, payload)`` tuples after commit."""
    sink = get_sink()
    for event, site_id, payload in notifications:
        try:
            sink.notify(event, site_id, payload)
        except MailerError as e:
            logger.error("Failed to deliver %s notification for site %s: %s", event, site_id, e)


def notify(event: str, site_id: Optional[int], **payload) -> None:
    dispatch([(event, site_id, payload)])
