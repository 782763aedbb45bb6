"""
Realtime KPI preview.

Runs the same formulas as the monthly aggregation without persisting
anything, for project detail pages and the personal dashboard.

    calculate_project_realtime(project_id)         → one project
    calculate_projects_realtime_batch(ids)         → {project_id: result}
    preview_for_actor(actor, month=None)           → the actor's own numbers

The batched path loads projects, members, creators, company totals and
pooled evaluations with a fixed number of queries regardless of how many
projects are requested.  If it fails for any reason it falls back to the
per-project path.

Pooled-role numbers use the administrator's evaluation when one exists;
otherwise they assume the medium factor and are flagged
``estimated: True`` / ``evaluation_status: "unevaluated"``.
"""

import logging

from sqlalchemy import or_, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.kpi import EVALUATION_FACTORS, DEFAULT_EVALUATION_LEVEL, MonthlyRoleKPI
from app.models.project import POOLED_ROLES, STATUS_COMPLETED, TERMINAL_STATUSES, Project, ProjectMember
from app.models.user import User
from app.services.coefficient_registry import get_registry
from app.services.kpi_formulas import calculate, pooled_inputs
from app.services.kpi_generation import (
    Participant,
    company_monthly_total,
    price_participant,
    project_participants,
    project_snapshot,
)
from app.utils.helpers import month_key, parse_month

logger = logging.getLogger(__name__)


# ── Shared pricing ───────────────────────────────────────────────────────────

def _preview_month(project: Project) -> str:
    return month_key(project.completed_at) if project.completed_at else month_key()


def _with_creator_as_sales(participants: list[Participant], creator: User | None) -> list[Participant]:
    """Include the creator as sales when no sales member exists and they hold the role."""
    if any(p.role == "sales" for p in participants):
        return participants
    if creator is None or not creator.is_active or not creator.has_role("sales"):
        return participants
    return participants + [Participant(user_id=creator.id, role="sales", user_name=creator.name)]


def _project_result(project: Project, participants: list[Participant], creator: User | None,
                    month: str, company_total: float) -> dict:
    snapshot, factors = project_snapshot(project)
    participants = _with_creator_as_sales(participants, creator)

    results = []
    for participant in participants:
        priced = price_participant(project, participant, snapshot, factors)
        results.append({
            "user_id": participant.user_id,
            "user_name": participant.user_name,
            "member_id": participant.member_id,
            "role": participant.role,
            "acceptance_status": participant.acceptance_status,
            "value": priced.value,
            "formula": priced.formula,
            "details": priced.details,
        })

    return {
        "count": len(results),
        "month": month,
        "project": {
            "id": project.id,
            "project_number": project.project_number,
            "name": project.name,
            "status": project.status,
            "amount": float(project.amount or 0),
            "completion_factor": factors[0],
            "sales_completion_factor": factors[1],
            "company_total": company_total,
        },
        "results": results,
        "estimated": project.status != STATUS_COMPLETED,
    }


# ── Single project ───────────────────────────────────────────────────────────

def calculate_project_realtime(project_id: int) -> dict:
    """Preview every member's KPI for one project.  Nothing is written."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    month = _preview_month(project)
    _, start, end = parse_month(month)
    creator = db.session.get(User, project.created_by) if project.created_by else None
    return _project_result(
        project,
        project_participants(project),
        creator,
        month,
        company_monthly_total(start, end),
    )


# ── Batch ────────────────────────────────────────────────────────────────────

def _batch(project_ids: list[int]) -> dict:
    projects = db.session.execute(
        select(Project).where(Project.id.in_(project_ids))
    ).scalars().all()
    by_id = {p.id: p for p in projects}

    member_rows = db.session.execute(
        select(ProjectMember, User.name)
        .join(User, User.id == ProjectMember.user_id)
        .where(ProjectMember.project_id.in_(list(by_id)))
        .order_by(ProjectMember.id)
    ).all()
    participants: dict[int, list[Participant]] = {pid: [] for pid in by_id}
    for member, user_name in member_rows:
        if member.role in POOLED_ROLES or member.acceptance_status == "rejected":
            continue
        participants[member.project_id].append(Participant.from_member(member, user_name=user_name))

    creator_ids = {p.created_by for p in projects if p.created_by}
    creators = {}
    if creator_ids:
        creators = {
            u.id: u for u in db.session.execute(select(User).where(User.id.in_(creator_ids))).scalars()
        }

    months = {p.id: _preview_month(p) for p in projects}
    totals = {}
    for month in set(months.values()):
        _, start, end = parse_month(month)
        totals[month] = company_monthly_total(start, end)

    out = {}
    for pid in project_ids:
        project = by_id.get(pid)
        if project is None:
            out[pid] = {"error": "not found"}
            continue
        month = months[pid]
        out[pid] = _project_result(project, participants[pid], creators.get(project.created_by),
                                   month, totals[month])
    return out


def calculate_projects_realtime_batch(project_ids) -> dict:
    """
    Preview many projects with bounded queries.

    Returns ``{project_id: result}``; unknown ids map to
    ``{"error": "not found"}``.
    """
    ids = []
    for raw in project_ids or []:
        pid = int(raw)
        if pid not in ids:
            ids.append(pid)
    if not ids:
        return {}

    try:
        return _batch(ids)
    except Exception:
        db.session.rollback()
        logger.warning("Batched KPI preview failed for %d projects — falling back to per-project path",
                       len(ids), exc_info=True)

    out = {}
    for pid in ids:
        try:
            out[pid] = calculate_project_realtime(pid)
        except NotFoundError:
            out[pid] = {"error": "not found"}
    return out


# ── Pooled roles ─────────────────────────────────────────────────────────────

def pooled_preview(user_id: int, role: str, month: str, *, company_total: float | None = None,
                   registry=None) -> dict:
    """Month-to-date pooled-role number for one user."""
    month, start, end = parse_month(month)
    if company_total is None:
        company_total = company_monthly_total(start, end)
    row = db.session.execute(
        select(MonthlyRoleKPI).where(
            MonthlyRoleKPI.user_id == user_id,
            MonthlyRoleKPI.month == month,
            MonthlyRoleKPI.role == role,
        )
    ).scalars().first()

    if row is not None and row.is_evaluated:
        level, factor, estimated = row.evaluation_level, row.evaluation_factor, False
    else:
        level = DEFAULT_EVALUATION_LEVEL
        factor = EVALUATION_FACTORS[DEFAULT_EVALUATION_LEVEL]
        estimated = True

    ratio = (registry or get_registry()).pooled_ratio(role)
    result = calculate(pooled_inputs(role, company_total=company_total, ratio=ratio, evaluation_factor=factor))
    return {
        "user_id": user_id,
        "role": role,
        "month": month,
        "value": result.value,
        "formula": result.formula,
        "details": result.details,
        "evaluation_level": level,
        "evaluation_status": "unevaluated" if estimated else "evaluated",
        "estimated": estimated,
        "record_id": row.id if row is not None else None,
    }


# ── Dashboard ────────────────────────────────────────────────────────────────

def preview_for_actor(actor, month: str | None = None) -> dict:
    """
    The actor's own preview for *month* (default: current month).

    Covers projects the actor created or is a member of that completed in
    the month, plus still-open projects when the month is the current one.
    Only results in the actor's role bucket (the active role, or every held
    role) are returned.
    """
    month, start, end = parse_month(month or month_key())
    roles = actor.effective_roles

    member_project_ids = select(ProjectMember.project_id).where(ProjectMember.user_id == actor.user_id)
    in_month = (Project.completed_at >= start) & (Project.completed_at < end)
    window = in_month
    if month == month_key():
        window = or_(in_month, Project.status.not_in(TERMINAL_STATUSES))
    project_ids = db.session.execute(
        select(Project.id)
        .where(
            or_(Project.created_by == actor.user_id, Project.id.in_(member_project_ids)),
            window,
        )
        .order_by(Project.id)
    ).scalars().all()

    items = []
    for pid, result in calculate_projects_realtime_batch(project_ids).items():
        if "error" in result:
            continue
        for row in result["results"]:
            if row["user_id"] != actor.user_id or row["role"] not in roles:
                continue
            items.append({
                "project_id": pid,
                "project_number": result["project"]["project_number"],
                "project_status": result["project"]["status"],
                "role": row["role"],
                "value": row["value"],
                "formula": row["formula"],
                "estimated": result["estimated"],
            })

    company_total = company_monthly_total(start, end)
    pooled = [
        pooled_preview(actor.user_id, role, month, company_total=company_total)
        for role in sorted(POOLED_ROLES & set(roles))
    ]

    total = round(sum(i["value"] for i in items) + sum(p["value"] for p in pooled), 2)
    return {
        "month": month,
        "user_id": actor.user_id,
        "roles": sorted(roles),
        "total": total,
        "items": items,
        "pooled": pooled,
        "estimated": any(i["estimated"] for i in items) or any(p["estimated"] for p in pooled),
    }
