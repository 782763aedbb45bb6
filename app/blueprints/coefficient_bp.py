"""
Translation KPI Platform
Coefficient Registry Blueprint.

Endpoints:
    GET  /api/v1/coefficients            — active rate table (finance / admin)
    POST /api/v1/coefficients            — update rates {values..., reason} (admin)
    GET  /api/v1/coefficients/history    — change log (finance / admin)

Updates never touch existing projects: each project keeps the snapshot
frozen at its creation.
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_actor, require_actor
from app.blueprints import page_args
from app.models import db
from app.services.coefficient_registry import get_registry
from app.services.permission import check_permission
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

coefficient_bp = Blueprint("coefficient_bp", __name__, url_prefix="/api/v1")


@coefficient_bp.route("/coefficients", methods=["GET"])
@require_actor
def get_coefficients():
    check_permission(current_actor(), "coefficients.view")
    registry = get_registry().get_active()
    # get_active may have created the default row
    db.session.commit()
    return jsonify(registry.to_dict())


@coefficient_bp.route("/coefficients", methods=["POST"])
@require_actor
def update_coefficients():
    actor = current_actor()
    check_permission(actor, "coefficients.update")
    data = request.get_json(silent=True) or {}
    reason = data.pop("reason", None)
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No coefficient values supplied")
    registry = get_registry().update(data, reason=reason, actor_id=actor.user_id)
    return jsonify(registry.to_dict())


@coefficient_bp.route("/coefficients/history", methods=["GET"])
@require_actor
def coefficient_history():
    check_permission(current_actor(), "coefficients.view")
    limit, _ = page_args()
    return jsonify({"items": get_registry().history(limit=limit)})
