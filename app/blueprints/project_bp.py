"""
Translation KPI Platform
Project Blueprint.

Endpoints:
    Projects:
        POST   /api/v1/projects                                  — create
        GET    /api/v1/projects                                  — list visible (?status, ?month, ?limit, ?offset)
        GET    /api/v1/projects/<id>                             — detail with members
        PUT    /api/v1/projects/<id>                             — edit whitelisted fields

    Lifecycle:
        POST   /api/v1/projects/<id>/start                       — pending → scheduled
        POST   /api/v1/projects/<id>/status                      — manual forward move {status}
        POST   /api/v1/projects/<id>/finish                      — complete + generate KPI
        POST   /api/v1/projects/<id>/cancel                      — cancel {reason}
        GET    /api/v1/projects/<id>/history                     — audit trail, newest first

    Quality & payment:
        POST   /api/v1/projects/<id>/revision                    — {count} or {increment: true}
        POST   /api/v1/projects/<id>/delay                       — {is_delayed}
        POST   /api/v1/projects/<id>/complaint                   — {has_complaint}
        POST   /api/v1/projects/<id>/payment                     — {received_amount, is_fully_paid, received_at}

    Members:
        POST   /api/v1/projects/<id>/members                     — assign
        DELETE /api/v1/projects/<id>/members/<mid>               — remove
        POST   /api/v1/projects/<id>/members/<mid>/accept        — assignee accepts
        POST   /api/v1/projects/<id>/members/<mid>/reject        — assignee rejects {reason}

Service exceptions propagate to the app-level handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_actor, require_actor
from app.blueprints import page_args
from app.models import audit
from app.services import member_acceptance, project_lifecycle, project_service
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

project_bp = Blueprint("project_bp", __name__, url_prefix="/api/v1")


def _flag(data: dict, key: str):
    if key not in data:
        return None
    value = data[key]
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ═════════════════════════════════════════════════════════════════════════════
# PROJECTS
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects", methods=["POST"])
@require_actor
def create_project():
    data = request.get_json(silent=True) or {}
    project = project_service.create_project(current_actor(), data)
    return jsonify(project.to_dict(include_members=True)), 201


@project_bp.route("/projects", methods=["GET"])
@require_actor
def list_projects():
    limit, offset = page_args()
    items, total = project_service.list_projects(
        current_actor(),
        status=request.args.get("status") or None,
        month=request.args.get("month") or None,
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [p.to_dict() for p in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
@require_actor
def get_project(project_id):
    project = project_service.get_project(project_id, current_actor())
    return jsonify(project.to_dict(include_members=True))


@project_bp.route("/projects/<int:project_id>", methods=["PUT"])
@require_actor
def update_project(project_id):
    data = request.get_json(silent=True) or {}
    project = project_service.update_project(project_id, current_actor(), data)
    return jsonify(project.to_dict(include_members=True))


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects/<int:project_id>/start", methods=["POST"])
@require_actor
def start_project(project_id):
    return jsonify(project_lifecycle.start_project(project_id, current_actor()))


@project_bp.route("/projects/<int:project_id>/status", methods=["POST"])
@require_actor
def advance_status(project_id):
    data = request.get_json(silent=True) or {}
    target = (data.get("status") or "").strip()
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(project_lifecycle.advance_status(project_id, current_actor(), target))


@project_bp.route("/projects/<int:project_id>/finish", methods=["POST"])
@require_actor
def finish_project(project_id):
    return jsonify(project_lifecycle.complete_project(project_id, current_actor()))


@project_bp.route("/projects/<int:project_id>/cancel", methods=["POST"])
@require_actor
def cancel_project(project_id):
    data = request.get_json(silent=True) or {}
    return jsonify(project_lifecycle.cancel_project(project_id, current_actor(), data.get("reason")))


# ═════════════════════════════════════════════════════════════════════════════
# QUALITY FLAGS & PAYMENT
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects/<int:project_id>/revision", methods=["POST"])
@require_actor
def set_revision(project_id):
    data = request.get_json(silent=True) or {}
    if _flag(data, "increment"):
        project = project_service.set_revision_count(project_id, current_actor(), increment=True)
    else:
        project = project_service.set_revision_count(project_id, current_actor(), count=data.get("count"))
    return jsonify(project.to_dict())


@project_bp.route("/projects/<int:project_id>/delay", methods=["POST"])
@require_actor
def set_delay(project_id):
    data = request.get_json(silent=True) or {}
    flag = _flag(data, "is_delayed")
    if flag is None:
        return api_error(E.VALIDATION_REQUIRED, "is_delayed is required")
    return jsonify(project_service.set_delay(project_id, current_actor(), flag).to_dict())


@project_bp.route("/projects/<int:project_id>/complaint", methods=["POST"])
@require_actor
def set_complaint(project_id):
    data = request.get_json(silent=True) or {}
    flag = _flag(data, "has_complaint")
    if flag is None:
        return api_error(E.VALIDATION_REQUIRED, "has_complaint is required")
    return jsonify(project_service.set_complaint(project_id, current_actor(), flag).to_dict())


@project_bp.route("/projects/<int:project_id>/payment", methods=["POST"])
@require_actor
def record_payment(project_id):
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.record_payment(project_id, current_actor(), data).to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# MEMBERS
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects/<int:project_id>/members", methods=["POST"])
@require_actor
def add_member(project_id):
    data = request.get_json(silent=True) or {}
    return jsonify(member_acceptance.add_member(project_id, current_actor(), data)), 201


@project_bp.route("/projects/<int:project_id>/members/<int:member_id>", methods=["DELETE"])
@require_actor
def remove_member(project_id, member_id):
    return jsonify(member_acceptance.remove_member(project_id, member_id, current_actor()))


@project_bp.route("/projects/<int:project_id>/members/<int:member_id>/accept", methods=["POST"])
@require_actor
def accept_member(project_id, member_id):
    return jsonify(member_acceptance.accept_member(project_id, member_id, current_actor()))


@project_bp.route("/projects/<int:project_id>/members/<int:member_id>/reject", methods=["POST"])
@require_actor
def reject_member(project_id, member_id):
    data = request.get_json(silent=True) or {}
    return jsonify(member_acceptance.reject_member(project_id, member_id, current_actor(), data.get("reason")))


@project_bp.route("/projects/<int:project_id>/history", methods=["GET"])
@require_actor
def project_history(project_id):
    project_service.get_project(project_id, current_actor())
    limit, _ = page_args()
    return jsonify({"items": [log.to_dict() for log in audit.project_history(project_id, limit=limit)]})
