"""Project service: creation, edits, quality flags, payment and visibility.

Creation freezes the coefficient snapshot into ``Project.locked_ratios``;
every later KPI calculation for the project reads rates from there.
Lifecycle transitions live in ``project_lifecycle``; member assignment and
acceptance in ``member_acceptance``.
"""

from __future__ import annotations

import logging
from datetime import date

from flask import current_app
from sqlalchemy import or_, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.project import (
    BUSINESS_TYPES,
    PROJECT_STATUSES,
    STATUS_CANCELLED,
    STATUS_PENDING,
    Project,
    ProjectMember,
)
from app.services.coefficient_registry import get_registry
from app.services.kpi_formulas import is_fee_based
from app.services.member_acceptance import validate_fee
from app.services.permission import check_permission, has_permission
from app.utils.helpers import parse_date, parse_month, to_float, utcnow

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "name", "client_name", "business_type", "deadline", "amount",
    "word_count", "unit_price", "payment_expected_at", "company_receivable",
}


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_project_or_raise(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def ensure_not_terminal(project: Project, action: str) -> None:
    if project.is_terminal:
        raise ConflictError(
            f"Cannot {action}: project {project.project_number} is {project.status}",
            details={"status": project.status},
        )


def can_view(actor, project: Project) -> bool:
    if has_permission(actor, "project.view_all"):
        return True
    if actor.user_id is None:
        return False
    if project.created_by == actor.user_id:
        return True
    return any(m.user_id == actor.user_id for m in project.members)


def get_project(project_id: int, actor) -> Project:
    """Fetch a project the actor may see; invisible projects look missing."""
    project = get_project_or_raise(project_id)
    if not can_view(actor, project):
        raise NotFoundError("Project", project_id)
    return project


def list_projects(actor, *, status: str | None = None, month: str | None = None,
                  limit: int = 100, offset: int = 0) -> tuple[list[Project], int]:
    """Projects visible to *actor*, newest first."""
    stmt = select(Project)
    if not has_permission(actor, "project.view_all"):
        member_project_ids = select(ProjectMember.project_id).where(ProjectMember.user_id == actor.user_id)
        stmt = stmt.where(or_(Project.created_by == actor.user_id, Project.id.in_(member_project_ids)))
    if status:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": status})
        stmt = stmt.where(Project.status == status)
    if month:
        _, start, end = parse_month(month)
        stmt = stmt.where(Project.completed_at >= start, Project.completed_at < end)

    total = db.session.execute(select(db.func.count()).select_from(stmt.subquery())).scalar_one()
    items = db.session.execute(
        stmt.order_by(Project.created_at.desc(), Project.id.desc()).offset(offset).limit(limit)
    ).scalars().all()
    return items, total


def visible_projects(actor, project_ids) -> list[Project]:
    """The subset of *project_ids* the actor may see."""
    stmt = select(Project).where(Project.id.in_(list(project_ids)))
    if not has_permission(actor, "project.view_all"):
        member_project_ids = select(ProjectMember.project_id).where(ProjectMember.user_id == actor.user_id)
        stmt = stmt.where(or_(Project.created_by == actor.user_id, Project.id.in_(member_project_ids)))
    return db.session.execute(stmt).scalars().all()


# ── Validation helpers ───────────────────────────────────────────────────────

def _validate_amount(amount) -> float:
    if amount is None:
        raise ValidationError("amount is required", details={"amount": None})
    limit = current_app.config.get("MAX_PROJECT_AMOUNT", 100_000_000)
    if amount <= 0:
        raise ValidationError("amount must be greater than 0", details={"amount": amount})
    if amount > limit:
        raise ValidationError(f"amount cannot exceed {limit}", details={"amount": amount})
    return round(amount, 2)


def _validate_deadline(value) -> date:
    deadline = parse_date(value)
    if deadline is None:
        raise ValidationError("deadline is required (YYYY-MM-DD)", details={"deadline": value})
    if deadline < utcnow().date():
        raise ValidationError("deadline cannot be in the past", details={"deadline": value})
    return deadline


def _resolve_amount(data: dict, business_type: str) -> float:
    amount = to_float(data.get("amount"), "amount")
    word_count = _validate_word_count(data.get("word_count"))
    unit_price = to_float(data.get("unit_price"), "unit_price")
    if amount is None and business_type == "translation" and word_count and unit_price:
        amount = word_count / 1000 * unit_price
    return _validate_amount(amount)


def _validate_receivable(receivable, amount: float) -> float:
    if receivable is None or receivable <= 0:
        raise ValidationError("company_receivable must be greater than 0 for part-time sales",
                              details={"company_receivable": receivable})
    if receivable > amount:
        raise ValidationError("company_receivable cannot exceed the project amount",
                              details={"company_receivable": receivable, "amount": amount})
    return round(receivable, 2)


def _validate_word_count(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError("word_count must be an integer", details={"word_count": value})
    if count < 0:
        raise ValidationError("word_count cannot be negative", details={"word_count": count})
    return count or None


def _recheck_amount_dependents(project: Project, amount: float, *, receivable_in_request: bool) -> None:
    """Fees and the company receivable must still fit under a changed amount."""
    for member in project.members:
        if member.acceptance_status == "rejected" or not is_fee_based(member.role, member.employment_type):
            continue
        try:
            validate_fee(member.role, member.part_time_fee, amount)
        except ValidationError as exc:
            exc.details = {**(exc.details or {}), "member_id": member.id}
            raise
    if project.part_time_sales_enabled and not receivable_in_request and project.company_receivable is not None:
        _validate_receivable(float(project.company_receivable), amount)


def generate_project_number(prefix: str | None = None) -> str:
    """``<PREFIX><YYYY><MM><4-digit sequence>``, sequence restarting monthly."""
    prefix = prefix or current_app.config.get("PROJECT_NUMBER_PREFIX", "PRJ")
    stem = f"{prefix}{utcnow():%Y%m}"
    last = db.session.execute(
        select(db.func.max(Project.project_number)).where(Project.project_number.like(f"{stem}%"))
    ).scalar()
    seq = int(last[len(stem):]) + 1 if last and last[len(stem):].isdigit() else 1
    return f"{stem}{seq:04d}"


def _audit(project: Project, action: str, actor, diff: dict | None = None) -> None:
    try:
        write_audit(
            entity_type="project",
            entity_id=project.id,
            action=action,
            actor_user_id=getattr(actor, "user_id", None),
            project_id=project.id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for %s — main flow unaffected", action, exc_info=True)


# ── Create / update ──────────────────────────────────────────────────────────

def create_project(actor, data: dict, registry=None) -> Project:
    """
    Create a project in ``pending`` with a frozen coefficient snapshot.

    Raises:
        PermissionDeniedError: actor is not sales / part-time sales / admin.
        ValidationError: missing name, bad amount, past deadline, bad receivable.
    """
    check_permission(actor, "project.create")
    registry = registry or get_registry()

    name = str(data.get("name", "") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": None})
    business_type = str(data.get("business_type", "translation") or "translation").strip()
    if business_type not in BUSINESS_TYPES:
        raise ValidationError(f"business_type must be one of {sorted(BUSINESS_TYPES)}",
                              details={"business_type": business_type})

    amount = _resolve_amount(data, business_type)
    deadline = _validate_deadline(data.get("deadline"))
    snapshot = registry.snapshot()

    project = Project(
        project_number=generate_project_number(),
        name=name,
        client_name=(data.get("client_name") or None),
        business_type=business_type,
        word_count=_validate_word_count(data.get("word_count")),
        unit_price=to_float(data.get("unit_price"), "unit_price"),
        amount=amount,
        status=STATUS_PENDING,
        deadline=deadline,
        payment_expected_at=parse_date(data.get("payment_expected_at")),
        locked_ratios=snapshot.to_dict(),
        created_by=actor.user_id,
    )

    if data.get("part_time_sales_enabled"):
        project.part_time_sales_enabled = True
        project.company_receivable = _validate_receivable(
            to_float(data.get("company_receivable"), "company_receivable"), amount,
        )
        project.part_time_sales_tax_rate = snapshot.part_time_sales_tax_rate

    db.session.add(project)
    db.session.flush()
    _audit(project, "project.create", actor, {"amount": {"old": None, "new": amount}})
    db.session.commit()
    logger.info("Project created %s amount=%s by user=%s", project.project_number, amount, actor.user_id,
                extra={"project_id": project.id, "user_id": actor.user_id})
    return project


def update_project(project_id: int, actor, data: dict) -> Project:
    """Update whitelisted fields on a non-terminal project."""
    project = get_project_or_raise(project_id)
    check_permission(actor, "project.edit", project=project)
    ensure_not_terminal(project, "edit project")

    unknown = set(data) - _EDITABLE_FIELDS
    if unknown:
        raise ValidationError("Fields cannot be edited", details={"fields": sorted(unknown)})

    diff = {}

    def _set(field, value):
        old = getattr(project, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(project, field, value)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("name cannot be empty", details={"name": data.get("name")})
        _set("name", name)
    if "client_name" in data:
        _set("client_name", data.get("client_name") or None)
    if "business_type" in data:
        if data["business_type"] not in BUSINESS_TYPES:
            raise ValidationError(f"business_type must be one of {sorted(BUSINESS_TYPES)}",
                                  details={"business_type": data["business_type"]})
        _set("business_type", data["business_type"])
    if "deadline" in data:
        _set("deadline", _validate_deadline(data.get("deadline")))
    if "payment_expected_at" in data:
        _set("payment_expected_at", parse_date(data.get("payment_expected_at")))
    if "word_count" in data:
        _set("word_count", _validate_word_count(data.get("word_count")))
    if "unit_price" in data:
        _set("unit_price", to_float(data.get("unit_price"), "unit_price"))
    if "amount" in data:
        amount = _validate_amount(to_float(data.get("amount"), "amount"))
        _recheck_amount_dependents(project, amount, receivable_in_request="company_receivable" in data)
        _set("amount", amount)
    if "company_receivable" in data:
        if not project.part_time_sales_enabled:
            raise ValidationError("company_receivable only applies to part-time sales projects")
        _set("company_receivable", _validate_receivable(
            to_float(data.get("company_receivable"), "company_receivable"), float(project.amount),
        ))

    if diff:
        _audit(project, "project.update", actor, diff)
    db.session.commit()
    return project


# ── Quality flags ────────────────────────────────────────────────────────────

def set_revision_count(project_id: int, actor, *, count=None, increment: bool = False) -> Project:
    project = get_project_or_raise(project_id)
    check_permission(actor, "project.quality", project=project)
    ensure_not_terminal(project, "change revision count")
    if increment:
        new = (project.revision_count or 0) + 1
    else:
        try:
            new = int(count)
        except (TypeError, ValueError):
            raise ValidationError("revision_count must be an integer", details={"revision_count": count})
        if new < 0:
            raise ValidationError("revision_count cannot be negative", details={"revision_count": new})
    _audit(project, "project.update", actor, {"revision_count": {"old": project.revision_count, "new": new}})
    project.revision_count = new
    db.session.commit()
    return project


def set_delay(project_id: int, actor, is_delayed: bool) -> Project:
    project = get_project_or_raise(project_id)
    check_permission(actor, "project.quality", project=project)
    ensure_not_terminal(project, "change delay flag")
    _audit(project, "project.update", actor, {"is_delayed": {"old": project.is_delayed, "new": bool(is_delayed)}})
    project.is_delayed = bool(is_delayed)
    db.session.commit()
    return project


def set_complaint(project_id: int, actor, has_complaint: bool) -> Project:
    project = get_project_or_raise(project_id)
    check_permission(actor, "project.quality", project=project)
    ensure_not_terminal(project, "change complaint flag")
    _audit(project, "project.update", actor,
           {"has_complaint": {"old": project.has_complaint, "new": bool(has_complaint)}})
    project.has_complaint = bool(has_complaint)
    db.session.commit()
    return project


# ── Payment ──────────────────────────────────────────────────────────────────

def record_payment(project_id: int, actor, data: dict) -> Project:
    """
    Record the received amount.  Allowed on completed projects (payment
    usually arrives after delivery) but not on cancelled ones.
    """
    project = get_project_or_raise(project_id)
    check_permission(actor, "project.payment", project=project)
    if project.status == STATUS_CANCELLED:
        raise ConflictError(f"Cannot record payment: project {project.project_number} is cancelled",
                            details={"status": project.status})

    received = to_float(data.get("received_amount"), "received_amount")
    if received is None or received < 0:
        raise ValidationError("received_amount must be 0 or greater", details={"received_amount": received})
    amount = float(project.amount)
    if received > amount:
        raise ValidationError("received_amount cannot exceed the project amount",
                              details={"received_amount": received, "amount": amount})

    fully_paid = bool(data.get("is_fully_paid")) or received >= amount
    old = {"received_amount": project.payment_received_amount, "status": project.payment_status}
    project.payment_received_amount = round(received, 2)
    project.payment_received_at = parse_date(data.get("received_at")) or utcnow().date()
    project.payment_is_fully_paid = fully_paid
    project.payment_status = "paid" if fully_paid else ("partially_paid" if received > 0 else "unpaid")

    _audit(project, "project.update", actor, {
        "payment_received_amount": {"old": old["received_amount"], "new": project.payment_received_amount},
        "payment_status": {"old": old["status"], "new": project.payment_status},
    })
    db.session.commit()
    logger.info("Payment recorded project=%s received=%s status=%s",
                project.id, received, project.payment_status,
                extra={"project_id": project.id})
    return project
