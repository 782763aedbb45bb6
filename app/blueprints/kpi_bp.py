"""
Translation KPI Platform
KPI Blueprint.

Endpoints:
    Generation (finance / admin):
        POST /api/v1/kpi/generate-monthly                 — {month, force}
        POST /api/v1/kpi/generate-project/<id>            — {force}
        GET  /api/v1/kpi/runs                             — generation run history (?month)

    Preview (nothing persisted):
        GET  /api/v1/kpi/project/<id>/realtime            — one project
        POST /api/v1/kpi/realtime/batch                   — {project_ids: [...]}
        GET  /api/v1/kpi/me/preview                       — own dashboard (?month)

    Ledger:
        GET  /api/v1/kpi/user/<uid>                       — one user's month (?month)
        GET  /api/v1/kpi/month/<month>                    — per-user summary
        GET  /api/v1/kpi/month/<month>/export             — flat payroll rows (?reviewed_only)
        POST /api/v1/kpi/records/<id>/review              — mark reviewed
        POST /api/v1/kpi/records/<id>/reject              — delete + notify {reason}
        POST /api/v1/kpi/monthly-role/<id>/evaluate       — {level: good|medium|poor}
        POST /api/v1/kpi/monthly-role/<id>/review         — mark reviewed
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.auth import current_actor, require_actor, require_roles
from app.blueprints import page_args, query_flag
from app.services import kpi_generation, kpi_ledger, kpi_preview, project_service
from app.services.permission import check_permission, has_permission
from app.utils.errors import E, api_error
from app.utils.helpers import month_key

logger = logging.getLogger(__name__)

kpi_bp = Blueprint("kpi_bp", __name__, url_prefix="/api/v1/kpi")


# ═════════════════════════════════════════════════════════════════════════════
# GENERATION
# ═════════════════════════════════════════════════════════════════════════════

@kpi_bp.route("/generate-monthly", methods=["POST"])
@require_roles("finance")
def generate_monthly():
    data = request.get_json(silent=True) or {}
    month = data.get("month")
    if not month:
        return api_error(E.VALIDATION_REQUIRED, "month is required (YYYY-MM)")
    report = kpi_generation.generate_monthly_kpi(month, actor=current_actor(), force=bool(data.get("force")))
    return jsonify(report)


@kpi_bp.route("/generate-project/<int:project_id>", methods=["POST"])
@require_roles("finance")
def generate_project(project_id):
    data = request.get_json(silent=True) or {}
    return jsonify(kpi_generation.generate_project_kpi(project_id, force=bool(data.get("force"))))


@kpi_bp.route("/runs", methods=["GET"])
@require_roles("finance")
def list_runs():
    limit, _ = page_args(default_limit=20, max_limit=100)
    return jsonify({"items": kpi_ledger.list_runs(request.args.get("month") or None, limit=limit)})


# ═════════════════════════════════════════════════════════════════════════════
# PREVIEW
# ═════════════════════════════════════════════════════════════════════════════

@kpi_bp.route("/project/<int:project_id>/realtime", methods=["GET"])
@require_actor
def project_realtime(project_id):
    # Visibility check; invisible projects look missing
    project_service.get_project(project_id, current_actor())
    return jsonify(kpi_preview.calculate_project_realtime(project_id))


@kpi_bp.route("/realtime/batch", methods=["POST"])
@require_actor
def realtime_batch():
    data = request.get_json(silent=True) or {}
    raw_ids = data.get("project_ids")
    if not isinstance(raw_ids, list) or not raw_ids:
        return api_error(E.VALIDATION_REQUIRED, "project_ids must be a non-empty list")
    limit = current_app.config["KPI_PREVIEW_BATCH_LIMIT"]
    if len(raw_ids) > limit:
        return api_error(E.VALIDATION_CONSTRAINT, f"At most {limit} project ids per request")
    try:
        ids = [int(pid) for pid in raw_ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "project_ids must be integers")

    actor = current_actor()
    results = kpi_preview.calculate_projects_realtime_batch(ids)
    if not has_permission(actor, "kpi.view_all"):
        visible = {p.id for p in project_service.visible_projects(actor, ids)}
        results = {pid: (r if pid in visible else {"error": "not found"}) for pid, r in results.items()}
    return jsonify({"results": {str(pid): r for pid, r in results.items()}})


@kpi_bp.route("/me/preview", methods=["GET"])
@require_actor
def my_preview():
    return jsonify(kpi_preview.preview_for_actor(current_actor(), request.args.get("month") or None))


# ═════════════════════════════════════════════════════════════════════════════
# LEDGER
# ═════════════════════════════════════════════════════════════════════════════

@kpi_bp.route("/user/<int:user_id>", methods=["GET"])
@require_actor
def user_monthly(user_id):
    actor = current_actor()
    if actor.user_id != user_id:
        check_permission(actor, "kpi.view_all")
    month = request.args.get("month") or month_key()
    return jsonify(kpi_ledger.get_user_monthly_kpi(user_id, month))


@kpi_bp.route("/month/<month>", methods=["GET"])
@require_roles("finance")
def month_summary(month):
    return jsonify(kpi_ledger.get_month_summary(month))


@kpi_bp.route("/month/<month>/export", methods=["GET"])
@require_roles("finance")
def month_export(month):
    rows = kpi_ledger.export_month(month, reviewed_only=query_flag("reviewed_only"))
    return jsonify({"month": month, "count": len(rows), "rows": rows})


@kpi_bp.route("/records/<int:record_id>/review", methods=["POST"])
@require_actor
def review_record(record_id):
    return jsonify(kpi_ledger.review_record(record_id, current_actor()))


@kpi_bp.route("/records/<int:record_id>/reject", methods=["POST"])
@require_actor
def reject_record(record_id):
    data = request.get_json(silent=True) or {}
    return jsonify(kpi_ledger.reject_record(record_id, current_actor(), data.get("reason")))


@kpi_bp.route("/monthly-role/<int:record_id>/evaluate", methods=["POST"])
@require_actor
def evaluate_monthly_role(record_id):
    data = request.get_json(silent=True) or {}
    return jsonify(kpi_ledger.evaluate_monthly_role(record_id, data.get("level"), current_actor()))


@kpi_bp.route("/monthly-role/<int:record_id>/review", methods=["POST"])
@require_actor
def review_monthly_role(record_id):
    return jsonify(kpi_ledger.review_monthly_role(record_id, current_actor()))
