"""
Monthly KPI aggregation.

Materializes ``KpiRecord`` rows for every member of every project completed
in a month, plus one ``MonthlyRoleKPI`` per pooled-role user priced from the
company-wide monthly total.

Guarantees:
    - Idempotent: an existing (user, project, role, month) record is skipped.
      ``force=True`` recomputes unreviewed records only.
    - Exclusive: one running ``KpiGenerationRun`` per month (partial unique
      index).  A second request fails with ``ERR_CONFLICT_RUNNING``; a marker
      older than ``KPI_GENERATION_LOCK_TIMEOUT_SECONDS`` is taken over.
    - Best-effort: each member is written inside a SAVEPOINT; failures are
      collected into the run report and the batch continues.

Usage:
    from app.services.kpi_generation import generate_monthly_kpi

    report = generate_monthly_kpi("2025-03", actor=actor)
    # {"month": "2025-03", "count": 12, "updated": 0, "skipped": 3, ...}
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.kpi import (
    DEFAULT_EVALUATION_LEVEL,
    EVALUATION_FACTORS,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    KpiGenerationRun,
    KpiRecord,
    MonthlyRoleKPI,
)
from app.models.project import POOLED_ROLES, STATUS_COMPLETED, Project, ProjectMember
from app.models.user import User
from app.services.coefficient_registry import CoefficientSnapshot, get_registry
from app.services.completion_factor import project_factors
from app.services.kpi_formulas import FormulaResult, calculate, member_inputs, pooled_inputs
from app.utils.errors import E
from app.utils.helpers import as_utc, month_key, parse_month, utcnow

logger = logging.getLogger(__name__)


# ── Participants ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Participant:
    """A priced seat on a project: a member row, or the creator previewed as sales."""

    user_id: int
    role: str
    user_name: str | None = None
    member_id: int | None = None
    translator_type: str | None = None
    workload_ratio: float = 1.0
    employment_type: str = "full_time"
    part_time_fee: float | None = None
    ratio_locked: float | None = None
    acceptance_status: str = "accepted"

    @classmethod
    def from_member(cls, member: ProjectMember, user_name: str | None = None) -> "Participant":
        return cls(
            user_id=member.user_id,
            role=member.role,
            user_name=user_name if user_name is not None else (member.user.name if member.user else None),
            member_id=member.id,
            translator_type=member.translator_type,
            workload_ratio=member.workload_ratio or 1.0,
            employment_type=member.employment_type or "full_time",
            part_time_fee=member.part_time_fee,
            ratio_locked=member.ratio_locked,
            acceptance_status=member.acceptance_status,
        )


def project_participants(project: Project, members=None) -> list[Participant]:
    """Non-pooled, non-rejected members of *project*."""
    members = project.members if members is None else members
    return [
        Participant.from_member(m)
        for m in members
        if m.role not in POOLED_ROLES and m.acceptance_status != "rejected"
    ]


def price_participant(project: Project, participant: Participant, snapshot: CoefficientSnapshot,
                      factors: tuple[float, float]) -> FormulaResult:
    factor, sales_factor = factors
    return calculate(member_inputs(project, participant, snapshot, factor=factor, sales_factor=sales_factor))


def project_snapshot(project: Project) -> tuple[CoefficientSnapshot, tuple[float, float]]:
    """The project's locked rates and its ``(factor, sales_factor)``."""
    snapshot = CoefficientSnapshot.from_dict(project.locked_ratios)
    return snapshot, project_factors(project, snapshot.completion_factor)


# ── Month window ─────────────────────────────────────────────────────────────

def completed_projects_query(start, end):
    return (
        select(Project)
        .where(
            Project.status == STATUS_COMPLETED,
            Project.completed_at >= start,
            Project.completed_at < end,
        )
        .order_by(Project.completed_at, Project.id)
    )


def company_monthly_total(start, end) -> float:
    """Sum of amounts of projects completed in ``[start, end)``."""
    total = db.session.execute(
        select(func.coalesce(func.sum(Project.amount), 0)).where(
            Project.status == STATUS_COMPLETED,
            Project.completed_at >= start,
            Project.completed_at < end,
        )
    ).scalar()
    return round(float(total or 0), 2)


# ── Run marker ───────────────────────────────────────────────────────────────

def _running_run(month: str):
    return db.session.execute(
        select(KpiGenerationRun).where(
            KpiGenerationRun.month == month,
            KpiGenerationRun.status == RUN_RUNNING,
        )
    ).scalars().first()


def _acquire_run(month: str, *, actor_id=None, force: bool = False) -> KpiGenerationRun:
    """
    Insert the running marker for *month* and commit it.

    Raises:
        ConflictError: another generation for the month is running.
    """
    timeout = current_app.config.get("KPI_GENERATION_LOCK_TIMEOUT_SECONDS", 1800)
    for _attempt in range(2):
        run = KpiGenerationRun(month=month, status=RUN_RUNNING, force=force, started_by=actor_id)
        db.session.add(run)
        try:
            db.session.commit()
            return run
        except IntegrityError:
            db.session.rollback()

        existing = _running_run(month)
        if existing is None:
            continue
        age = utcnow() - as_utc(existing.started_at)
        if age <= timedelta(seconds=timeout):
            raise ConflictError(
                f"KPI generation for {month} is already running",
                code=E.CONFLICT_RUNNING,
                details={"month": month, "run_id": existing.id,
                         "started_at": as_utc(existing.started_at).isoformat()},
            )
        logger.warning("Taking over stale KPI generation run %s for %s (age %ss)",
                       existing.id, month, int(age.total_seconds()), extra={"month": month})
        existing.status = RUN_FAILED
        existing.finished_at = utcnow()
        existing.errors = list(existing.errors or []) + [{"error": "stale run taken over"}]
        db.session.commit()

    raise ConflictError(f"Could not start KPI generation for {month}", code=E.CONFLICT_RUNNING,
                        details={"month": month})


def _finish_run(run: KpiGenerationRun, report: dict, status: str = RUN_COMPLETED) -> None:
    run.status = status
    run.finished_at = utcnow()
    run.created_count = report["count"]
    run.updated_count = report["updated"]
    run.skipped_count = report["skipped"]
    run.projects_processed = report["projects_processed"]
    run.company_total = report["company_total"]
    run.errors = report["errors"]
    db.session.commit()


# ── Persistence ──────────────────────────────────────────────────────────────

def _new_report(month: str) -> dict:
    return {
        "month": month,
        "count": 0,
        "updated": 0,
        "skipped": 0,
        "projects_processed": 0,
        "company_total": 0.0,
        "errors": [],
    }


def _apply_result(record: KpiRecord, project: Project, participant: Participant, result: FormulaResult,
                  factors: tuple[float, float]) -> None:
    record.employment_type = participant.employment_type
    record.value = result.value
    record.formula = result.formula
    record.project_amount = float(project.amount or 0)
    record.ratio = result.details.get("ratio")
    record.workload_ratio = participant.workload_ratio
    record.completion_factor = factors[1] if participant.role == "sales" else factors[0]
    record.details = result.details
    record.calculated_at = utcnow()


def _persist_participant(project: Project, participant: Participant, month: str, snapshot, factors,
                         *, force: bool, report: dict) -> None:
    """Insert (or with *force*, recompute) one record inside a SAVEPOINT."""
    try:
        with db.session.begin_nested():
            existing = db.session.execute(
                select(KpiRecord).where(
                    KpiRecord.user_id == participant.user_id,
                    KpiRecord.project_id == project.id,
                    KpiRecord.role == participant.role,
                    KpiRecord.month == month,
                )
            ).scalars().first()
            if existing is not None and (not force or existing.is_reviewed):
                outcome = "skipped"
            else:
                result = price_participant(project, participant, snapshot, factors)
                record = existing or KpiRecord(
                    user_id=participant.user_id,
                    project_id=project.id,
                    role=participant.role,
                    month=month,
                )
                _apply_result(record, project, participant, result, factors)
                if existing is None:
                    db.session.add(record)
                db.session.flush()
                outcome = "updated" if existing is not None else "count"
    except IntegrityError:
        logger.warning("KPI record already exists (concurrent insert) user=%s project=%s role=%s",
                       participant.user_id, project.id, participant.role,
                       extra={"project_id": project.id, "month": month})
        outcome = "skipped"
    except Exception as exc:
        logger.warning("KPI generation failed for user=%s project=%s role=%s: %s",
                       participant.user_id, project.id, participant.role, exc,
                       extra={"project_id": project.id, "month": month})
        report["errors"].append({
            "project_id": project.id,
            "project_number": project.project_number,
            "user_id": participant.user_id,
            "role": participant.role,
            "error": str(exc),
        })
        return
    report[outcome] += 1


def _process_project(project: Project, month: str, *, force: bool, report: dict) -> None:
    snapshot, factors = project_snapshot(project)
    for participant in project_participants(project):
        _persist_participant(project, participant, month, snapshot, factors, force=force, report=report)
    report["projects_processed"] += 1


def _persist_pooled(month: str, company_total: float, *, force: bool, report: dict, registry=None) -> None:
    """One ``MonthlyRoleKPI`` per active pooled-role user."""
    registry = registry or get_registry()
    users = db.session.execute(
        select(User).where(User.is_active.is_(True)).order_by(User.id)
    ).scalars().all()

    for role in sorted(POOLED_ROLES):
        ratio = registry.pooled_ratio(role)
        for user in (u for u in users if u.has_role(role)):
            try:
                with db.session.begin_nested():
                    row = db.session.execute(
                        select(MonthlyRoleKPI).where(
                            MonthlyRoleKPI.user_id == user.id,
                            MonthlyRoleKPI.month == month,
                            MonthlyRoleKPI.role == role,
                        )
                    ).scalars().first()
                    if row is not None and (not force or row.is_reviewed):
                        outcome = "skipped"
                    else:
                        if row is None:
                            row = MonthlyRoleKPI(
                                user_id=user.id,
                                month=month,
                                role=role,
                                evaluation_level=DEFAULT_EVALUATION_LEVEL,
                                evaluation_factor=EVALUATION_FACTORS[DEFAULT_EVALUATION_LEVEL],
                            )
                            db.session.add(row)
                            outcome = "count"
                        else:
                            outcome = "updated"
                        result = calculate(pooled_inputs(
                            role,
                            company_total=company_total,
                            ratio=ratio,
                            evaluation_factor=row.evaluation_factor,
                        ))
                        row.total_company_amount = company_total
                        row.ratio = ratio
                        row.value = result.value
                        row.formula = result.formula
                        row.calculated_at = utcnow()
                        db.session.flush()
            except IntegrityError:
                outcome = "skipped"
            except Exception as exc:
                logger.warning("Pooled KPI failed for user=%s role=%s: %s", user.id, role, exc,
                               extra={"month": month})
                report["errors"].append({"user_id": user.id, "role": role, "error": str(exc)})
                continue
            report[outcome] += 1


# ── Public API ───────────────────────────────────────────────────────────────

def generate_monthly_kpi(month: str, actor=None, force: bool = False, registry=None) -> dict:
    """
    Generate the KPI ledger for *month* (``YYYY-MM``).

    Raises:
        ValidationError: malformed month.
        ConflictError: a generation for the month is already running.
    """
    month, start, end = parse_month(month)
    actor_id = getattr(actor, "user_id", None)
    if actor_id is not None and db.session.get(User, actor_id) is None:
        actor_id = None
    run = _acquire_run(month, actor_id=actor_id, force=force)
    report = _new_report(month)
    logger.info("KPI generation started for %s (force=%s) run=%s", month, force, run.id,
                extra={"month": month, "user_id": actor_id})

    try:
        projects = db.session.execute(
            completed_projects_query(start, end).options(selectinload(Project.members))
        ).scalars().all()
        report["company_total"] = round(sum(float(p.amount or 0) for p in projects), 2)

        for project in projects:
            _process_project(project, month, force=force, report=report)
        _persist_pooled(month, report["company_total"], force=force, report=report, registry=registry)

        _finish_run(run, report, RUN_COMPLETED)
    except Exception:
        db.session.rollback()
        run = db.session.get(KpiGenerationRun, run.id)
        report["errors"].append({"error": "generation aborted"})
        _finish_run(run, report, RUN_FAILED)
        logger.exception("KPI generation for %s aborted", month, extra={"month": month})
        raise

    logger.info(
        "KPI generation for %s finished: created=%s updated=%s skipped=%s errors=%s",
        month, report["count"], report["updated"], report["skipped"], len(report["errors"]),
        extra={"month": month},
    )
    return {**report, "run_id": run.id}


def generate_project_kpi(project_id: int, force: bool = False) -> dict:
    """
    Generate KPI records for one completed project, in its completion month.
    Pooled roles are left to the monthly run.

    Raises:
        NotFoundError: unknown project.
        ValidationError: project is not completed.
    """
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    if project.status != STATUS_COMPLETED:
        raise ValidationError("Project is not completed; KPI cannot be generated",
                              details={"status": project.status})

    month = month_key(project.completed_at)
    report = _new_report(month)
    report["project_id"] = project.id
    _, start, end = parse_month(month)
    report["company_total"] = company_monthly_total(start, end)

    _process_project(project, month, force=force, report=report)
    db.session.commit()
    logger.info("Project KPI generated project=%s month=%s created=%s", project.id, month, report["count"],
                extra={"project_id": project.id, "month": month})
    return report
