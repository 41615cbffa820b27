"""Auto-pay settings for a site's live subscription."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from services import autopay, lifecycle
from services.auth import require_site
from utils import Patch

autopay_bp = Blueprint("autopay", __name__)

# JSON key -> Patch field
AUTOPAY_FIELDS = {
    "enabled": "enabled",
    "gateway": "gateway",
    "paymentMethodId": "payment_method_id",
}


@autopay_bp.route("/sites/<int:site_id>/autopay")
@require_site
def get_settings(site_id):
    return jsonify(autopay.get_autopay_settings(site_id))


@autopay_bp.route("/sites/<int:site_id>/autopay", methods=["PUT"])
@require_site
def update_settings(site_id):
    """Partial update: absent keys stay unchanged, ``null`` clears the field."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    renamed = {AUTOPAY_FIELDS[key]: value for key, value in data.items() if key in AUTOPAY_FIELDS}
    patch = Patch.from_json(renamed, AUTOPAY_FIELDS.values())
    if not patch:
        raise ValidationError("No auto-pay settings supplied")
    if "enabled" in patch and not isinstance(patch.get("enabled"), bool):
        raise ValidationError("enabled must be true or false")
    lifecycle.update_autopay_settings(site_id, patch)
    return jsonify(autopay.get_autopay_settings(site_id))
