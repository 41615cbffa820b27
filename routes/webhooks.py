"""Inbound gateway webhooks (server-to-server, CSRF exempt)."""

import json
import logging

from flask import Blueprint, request

from extensions import csrf
from services import reconciler

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/webhooks/<gateway>", methods=["POST"])
@csrf.exempt
def receive(gateway):
    """Verify and apply one gateway event.

    Signature failures surface as 400 through the ``BillingError`` handler so
    the gateway retries; duplicates and unhandled event types answer 200.
    """
    body = request.get_data()
    status = reconciler.handle_webhook(gateway, body, request.headers)
    return json.dumps({"status": status}), 200, {"Content-Type": "application/json"}
