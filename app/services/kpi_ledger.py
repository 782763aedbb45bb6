"""
KPI ledger operations: review, reject, evaluate and reporting.

Rejecting a project KPI record deletes it; a rejected number must never
reach a payroll export.  Reviewed rows are final: forced regeneration
skips them and pooled-role evaluation refuses them.
"""

import logging
from collections import defaultdict

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.kpi import EVALUATION_FACTORS, KpiGenerationRun, KpiRecord, MonthlyRoleKPI
from app.services.kpi_formulas import calculate, pooled_inputs
from app.services.notification import NotificationService
from app.services.permission import check_permission
from app.utils.helpers import parse_month, utcnow

logger = logging.getLogger(__name__)


def _audit(entity_type: str, entity_id: int, action: str, actor_id, diff: dict, project_id=None) -> None:
    try:
        write_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_user_id=actor_id,
            project_id=project_id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for %s — main flow unaffected", action, exc_info=True)


def _get_record(record_id: int) -> KpiRecord:
    record = db.session.get(KpiRecord, record_id)
    if record is None:
        raise NotFoundError("KpiRecord", record_id)
    return record


def _get_monthly_role(record_id: int) -> MonthlyRoleKPI:
    row = db.session.get(MonthlyRoleKPI, record_id)
    if row is None:
        raise NotFoundError("MonthlyRoleKPI", record_id)
    return row


# ── Review / reject ──────────────────────────────────────────────────────────

def review_record(record_id: int, actor) -> dict:
    """Mark a project KPI record reviewed.  Reviewing twice is a no-op."""
    check_permission(actor, "kpi.review")
    record = _get_record(record_id)
    if record.is_reviewed:
        return record.to_dict()

    record.is_reviewed = True
    record.reviewed_by = actor.user_id
    record.reviewed_at = utcnow()
    _audit("kpi_record", record.id, "kpi.review", actor.user_id,
           {"is_reviewed": {"old": False, "new": True}}, project_id=record.project_id)
    db.session.commit()
    return record.to_dict()


def reject_record(record_id: int, actor, reason: str | None = None) -> dict:
    """
    Reject a project KPI record by deleting it and tell its owner.

    The record can be regenerated by the next monthly run.
    """
    check_permission(actor, "kpi.review")
    record = _get_record(record_id)
    snapshot = record.to_dict()
    reason = (reason or "").strip()[:500] or None

    _audit("kpi_record", record.id, "kpi.reject", actor.user_id,
           {"value": {"old": record.value, "new": None}, "reason": {"old": None, "new": reason}},
           project_id=record.project_id)
    message = (f"Your {record.role} KPI for project {snapshot['project_number']} "
               f"({record.month}) was rejected")
    if reason:
        message += f": {reason}"
    NotificationService.notify_users(
        [record.user_id],
        notif_type="kpi_rejected",
        message=message,
        project_id=record.project_id,
        exclude=actor.user_id,
    )
    db.session.delete(record)
    db.session.commit()
    logger.info("KPI record %s rejected and deleted by user=%s", record_id, actor.user_id,
                extra={"user_id": actor.user_id, "month": snapshot["month"]})
    return {"deleted": True, "record": snapshot, "reason": reason}


# ── Pooled roles ─────────────────────────────────────────────────────────────

def evaluate_monthly_role(record_id: int, level: str, actor) -> dict:
    """
    Set the evaluation level of a pooled-role row and recompute its value
    from the stored company total and ratio.

    Raises:
        ValidationError: unknown level.
        ConflictError: the row is already reviewed.
    """
    check_permission(actor, "kpi.evaluate")
    level = str(level or "").strip().lower()
    if level not in EVALUATION_FACTORS:
        raise ValidationError(f"level must be one of {sorted(EVALUATION_FACTORS)}", details={"level": level})
    row = _get_monthly_role(record_id)
    if row.is_reviewed:
        raise ConflictError("Reviewed KPI rows cannot be re-evaluated", details={"id": row.id})

    old = {"evaluation_level": row.evaluation_level, "value": row.value}
    factor = EVALUATION_FACTORS[level]
    result = calculate(pooled_inputs(
        row.role,
        company_total=row.total_company_amount,
        ratio=row.ratio,
        evaluation_factor=factor,
    ))
    row.evaluation_level = level
    row.evaluation_factor = factor
    row.is_evaluated = True
    row.evaluated_by = actor.user_id
    row.evaluated_at = utcnow()
    row.value = result.value
    row.formula = result.formula

    _audit("monthly_role_kpi", row.id, "kpi.evaluate", actor.user_id,
           {"evaluation_level": {"old": old["evaluation_level"], "new": level},
            "value": {"old": old["value"], "new": row.value}})
    NotificationService.notify_users(
        [row.user_id],
        notif_type="kpi_evaluated",
        message=f"Your {row.role} KPI for {row.month} was evaluated as {level}",
        exclude=actor.user_id,
    )
    db.session.commit()
    return row.to_dict()


def review_monthly_role(record_id: int, actor) -> dict:
    check_permission(actor, "kpi.review")
    row = _get_monthly_role(record_id)
    if row.is_reviewed:
        return row.to_dict()
    row.is_reviewed = True
    row.reviewed_by = actor.user_id
    row.reviewed_at = utcnow()
    _audit("monthly_role_kpi", row.id, "kpi.review", actor.user_id, {"is_reviewed": {"old": False, "new": True}})
    db.session.commit()
    return row.to_dict()


# ── Reporting ────────────────────────────────────────────────────────────────

def _month_rows(month: str, user_id: int | None = None):
    records_q = select(KpiRecord).where(KpiRecord.month == month).order_by(KpiRecord.user_id, KpiRecord.id)
    pooled_q = select(MonthlyRoleKPI).where(MonthlyRoleKPI.month == month).order_by(
        MonthlyRoleKPI.user_id, MonthlyRoleKPI.id)
    if user_id is not None:
        records_q = records_q.where(KpiRecord.user_id == user_id)
        pooled_q = pooled_q.where(MonthlyRoleKPI.user_id == user_id)
    return db.session.execute(records_q).scalars().all(), db.session.execute(pooled_q).scalars().all()


def get_user_monthly_kpi(user_id: int, month: str) -> dict:
    """One user's month: every record, per-role sums and the total."""
    month, _, _ = parse_month(month)
    records, pooled = _month_rows(month, user_id)

    by_role = defaultdict(float)
    for row in list(records) + list(pooled):
        by_role[row.role] += row.value or 0
    return {
        "user_id": user_id,
        "month": month,
        "total": round(sum(by_role.values()), 2),
        "by_role": {role: round(v, 2) for role, v in sorted(by_role.items())},
        "records": [r.to_dict() for r in records],
        "monthly_roles": [r.to_dict() for r in pooled],
    }


def get_month_summary(month: str) -> dict:
    """Per-user totals for the month."""
    month, _, _ = parse_month(month)
    records, pooled = _month_rows(month)

    users = {}
    for row in list(records) + list(pooled):
        entry = users.setdefault(row.user_id, {
            "user_id": row.user_id,
            "user_name": row.user.name if row.user else None,
            "total": 0.0,
            "by_role": defaultdict(float),
            "unreviewed": 0,
        })
        entry["total"] += row.value or 0
        entry["by_role"][row.role] += row.value or 0
        if not row.is_reviewed:
            entry["unreviewed"] += 1

    summary = []
    for entry in sorted(users.values(), key=lambda e: -e["total"]):
        entry["total"] = round(entry["total"], 2)
        entry["by_role"] = {role: round(v, 2) for role, v in sorted(entry["by_role"].items())}
        summary.append(entry)
    return {
        "month": month,
        "total": round(sum(e["total"] for e in summary), 2),
        "record_count": len(records) + len(pooled),
        "users": summary,
    }


def export_month(month: str, *, reviewed_only: bool = False) -> list[dict]:
    """Flat rows for the payroll exporter."""
    month, _, _ = parse_month(month)
    records, pooled = _month_rows(month)
    rows = []
    for r in records:
        if reviewed_only and not r.is_reviewed:
            continue
        rows.append({
            "source": "project",
            "month": month,
            "user_id": r.user_id,
            "user_name": r.user.name if r.user else None,
            "role": r.role,
            "employment_type": r.employment_type,
            "project_id": r.project_id,
            "project_number": r.project.project_number if r.project else None,
            "value": r.value,
            "formula": r.formula,
            "is_reviewed": r.is_reviewed,
        })
    for r in pooled:
        if reviewed_only and not r.is_reviewed:
            continue
        rows.append({
            "source": "monthly_role",
            "month": month,
            "user_id": r.user_id,
            "user_name": r.user.name if r.user else None,
            "role": r.role,
            "employment_type": "full_time",
            "project_id": None,
            "project_number": None,
            "value": r.value,
            "formula": r.formula,
            "is_reviewed": r.is_reviewed,
        })
    return rows


def list_runs(month: str | None = None, limit: int = 20) -> list[dict]:
    q = select(KpiGenerationRun).order_by(KpiGenerationRun.id.desc()).limit(limit)
    if month:
        month, _, _ = parse_month(month)
        q = q.where(KpiGenerationRun.month == month)
    return [r.to_dict() for r in db.session.execute(q).scalars()]
