"""
Project Lifecycle Service

Status flow:
    pending → scheduled → in_progress → translation_done → review_done
            → layout_done → completed          (cancelled from any non-terminal)

Two kinds of transition share ``Project.status``:

  * ``reevaluate_acceptance`` — automatic, runs after every acceptance event
    and moves a project between ``scheduled`` and ``in_progress`` in either
    direction depending on the member acceptance state.
  * ``advance_status`` — manual, invoked by admin / PM / the member holding
    the matching production role, and strictly forward along STATUS_ORDER.

``start_project``, ``complete_project`` and ``cancel_project`` are the
remaining explicit transitions.  KPI generation at completion is
best-effort: a failure is logged and the project stays completed.

Usage:
    from app.services.project_lifecycle import advance_status

    result = advance_status(project_id=7, actor=actor, target="translation_done")
    # {"project_id": 7, "previous_status": "in_progress", "new_status": "translation_done", ...}
"""

import logging

from app.core.exceptions import ConflictError, PermissionDeniedError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.project import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_LAYOUT_DONE,
    STATUS_ORDER,
    STATUS_PENDING,
    STATUS_REVIEW_DONE,
    STATUS_SCHEDULED,
    STATUS_TRANSLATION_DONE,
    Project,
)
from app.services.kpi_generation import generate_project_kpi
from app.services.locks import project_lock
from app.services.notification import NotificationService
from app.services.permission import check_permission, has_permission
from app.utils.errors import E
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Targets reachable through advance_status
MANUAL_TARGETS = {
    STATUS_SCHEDULED,
    STATUS_IN_PROGRESS,
    STATUS_TRANSLATION_DONE,
    STATUS_REVIEW_DONE,
    STATUS_LAYOUT_DONE,
}

# Member roles allowed to mark their own stage done
_STAGE_ROLES = {
    STATUS_TRANSLATION_DONE: {"translator", "part_time_translator"},
    STATUS_REVIEW_DONE: {"reviewer"},
    STATUS_LAYOUT_DONE: {"layout"},
}

_AUTO_STATUSES = {STATUS_SCHEDULED, STATUS_IN_PROGRESS}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _ensure_open(project: Project, action: str) -> None:
    if project.is_terminal:
        raise ConflictError(
            f"Cannot {action}: project {project.project_number} is {project.status}",
            details={"status": project.status},
        )


def _audit(project: Project, action: str, actor_id, previous: str, **extra) -> None:
    diff = {"status": {"old": previous, "new": project.status}}
    diff.update(extra)
    try:
        write_audit(
            entity_type="project",
            entity_id=project.id,
            action=action,
            actor_user_id=actor_id,
            project_id=project.id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for project transition — main flow unaffected", exc_info=True)


def _result(project: Project, previous: str, action: str, **extra) -> dict:
    return {
        "project_id": project.id,
        "project_number": project.project_number,
        "previous_status": previous,
        "new_status": project.status,
        "action": action,
        **extra,
    }


def project_recipients(project: Project) -> set:
    return {m.user_id for m in project.members} | {project.created_by}


def manager_recipients(project: Project) -> set:
    return {m.user_id for m in project.members if m.role == "pm"} | {project.created_by}


# ── Automatic re-evaluation ──────────────────────────────────────────────────

def acceptance_satisfied(project: Project) -> bool:
    """
    True when the project may run: at least one production assignment,
    every production role has a non-rejected member, every non-rejected
    member has accepted and nothing is pending.
    """
    production = [m for m in project.members if m.is_production]
    if not production:
        return False
    for role in {m.role for m in production}:
        if not any(m.role == role and m.acceptance_status != "rejected" for m in production):
            return False
    live = [m for m in project.members if m.acceptance_status != "rejected"]
    if any(m.acceptance_status != "accepted" for m in live):
        return False
    return project.pending_count == 0


def reevaluate_acceptance(project: Project, *, actor_id=None) -> dict | None:
    """
    Move a ``scheduled``/``in_progress`` project to whichever of the two the
    acceptance state calls for.  Caller holds the project lock and commits.

    Returns the transition dict, or None when nothing changed.
    """
    if project.status not in _AUTO_STATUSES:
        return None

    target = STATUS_IN_PROGRESS if acceptance_satisfied(project) else STATUS_SCHEDULED
    if target == project.status:
        return None

    previous = project.status
    project.status = target
    if target == STATUS_IN_PROGRESS and project.started_at is None:
        project.started_at = utcnow()
    _audit(project, "project.auto_transition", actor_id, previous)
    logger.info("Project %s auto-transitioned %s → %s", project.id, previous, target,
                extra={"project_id": project.id})
    return _result(project, previous, "auto")


def force_scheduled(project: Project, *, actor_id=None) -> dict | None:
    """A rejection puts any non-terminal project back to ``scheduled``."""
    if project.is_terminal or project.status == STATUS_SCHEDULED:
        return None
    previous = project.status
    project.status = STATUS_SCHEDULED
    _audit(project, "project.auto_transition", actor_id, previous, reason="member_rejected")
    return _result(project, previous, "auto")


# ── Explicit transitions ─────────────────────────────────────────────────────

def start_project(project_id: int, actor) -> dict:
    """
    ``pending → scheduled`` by the creator (or an admin).

    Raises:
        ValidationError: not pending, or no project manager assigned.
    """
    with project_lock(project_id) as project:
        _ensure_open(project, "start project")
        check_permission(actor, "project.start", project=project)
        if project.status != STATUS_PENDING:
            raise ValidationError(
                f"Only pending projects can be started (current: {project.status})",
                details={"status": project.status},
            )
        if not any(m.role == "pm" and m.acceptance_status != "rejected" for m in project.members):
            raise ValidationError("A project manager must be assigned before starting",
                                  details={"missing_role": "pm"}, code=E.VALIDATION_REQUIRED)

        previous = project.status
        project.status = STATUS_SCHEDULED
        _audit(project, "project.start", actor.user_id, previous)
        reevaluate_acceptance(project, actor_id=actor.user_id)
        NotificationService.notify_users(
            project_recipients(project),
            notif_type="project_status_changed",
            message=f"Project {project.project_number} has been scheduled",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        return _result(project, previous, "start")


def _check_advance_permission(project: Project, actor, target: str) -> None:
    if has_permission(actor, "project.status"):
        return
    stage_roles = _STAGE_ROLES.get(target, set())
    if stage_roles and actor.has_role(*stage_roles) and any(
        m.user_id == actor.user_id and m.role in stage_roles and m.acceptance_status != "rejected"
        for m in project.members
    ):
        return
    raise PermissionDeniedError(actor.user_id, f"set project status to {target}")


def advance_status(project_id: int, actor, target: str) -> dict:
    """
    Manual, forward-only status change.

    Raises:
        ConflictError: project is completed or cancelled.
        ValidationError: unsupported target, or a backward move
                         (code ``STATUS_CANNOT_ROLLBACK``).
        PermissionDeniedError: actor is not admin / PM / the stage's member.
    """
    with project_lock(project_id) as project:
        _ensure_open(project, "change status")
        if target not in MANUAL_TARGETS:
            raise ValidationError(
                f"Unsupported status target '{target}'",
                details={"target": target, "allowed": sorted(MANUAL_TARGETS)},
            )
        _check_advance_permission(project, actor, target)

        current_pos = STATUS_ORDER.index(project.status)
        target_pos = STATUS_ORDER.index(target)
        if target_pos < current_pos:
            raise ValidationError(
                f"Cannot move project back from {project.status} to {target}",
                details={"current": project.status, "target": target},
                code=E.STATUS_CANNOT_ROLLBACK,
            )

        previous = project.status
        if target == previous:
            return _result(project, previous, "advance")

        project.status = target
        if target == STATUS_IN_PROGRESS and project.started_at is None:
            project.started_at = utcnow()
        _audit(project, "project.advance", actor.user_id, previous)
        NotificationService.notify_users(
            project_recipients(project),
            notif_type="project_status_changed",
            message=f"Project {project.project_number} moved from {previous} to {target}",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        logger.info("Project %s advanced %s → %s by user=%s", project.id, previous, target, actor.user_id,
                    extra={"project_id": project.id, "user_id": actor.user_id})
        return _result(project, previous, "advance")


def complete_project(project_id: int, actor) -> dict:
    """
    Mark the project completed, then generate its KPI records.

    Completion is committed first; KPI generation failure is logged and
    reported in the result, never raised.

    Raises:
        ConflictError: already completed or cancelled.
        ValidationError: no members, non-positive amount, or production
                         members that have not accepted.
    """
    with project_lock(project_id) as project:
        _ensure_open(project, "complete project")
        check_permission(actor, "project.complete", project=project)
        if not project.members:
            raise ValidationError("Project has no members", code=E.VALIDATION_REQUIRED)
        if not project.amount or project.amount <= 0:
            raise ValidationError("Project amount must be greater than 0", details={"amount": project.amount})
        unconfirmed = [
            {"member_id": m.id, "user_id": m.user_id, "role": m.role, "acceptance_status": m.acceptance_status}
            for m in project.members
            if m.is_production and m.acceptance_status != "accepted"
        ]
        if unconfirmed:
            raise ValidationError("All production members must accept before completion",
                                  details={"unconfirmed": unconfirmed})

        previous = project.status
        now = utcnow()
        project.status = STATUS_COMPLETED
        project.completed_at = now
        if project.deadline and now.date() > project.deadline:
            project.is_delayed = True
        _audit(project, "project.complete", actor.user_id, previous,
               is_delayed={"old": None, "new": project.is_delayed})
        db.session.commit()

    kpi = None
    try:
        kpi = generate_project_kpi(project_id)
    except Exception:
        db.session.rollback()
        logger.exception("KPI generation failed at completion of project %s — completion kept", project_id,
                         extra={"project_id": project_id})

    project = db.session.get(Project, project_id)
    NotificationService.notify_users(
        project_recipients(project),
        notif_type="project_completed",
        message=f"Project {project.project_number} has been completed",
        project_id=project.id,
        exclude=actor.user_id,
    )
    db.session.commit()
    return _result(
        project, previous, "complete",
        is_delayed=project.is_delayed,
        kpi_generated=kpi is not None,
        kpi=kpi,
    )


def cancel_project(project_id: int, actor, reason: str | None = None) -> dict:
    """Cancel from any state except completed.  Terminal."""
    with project_lock(project_id) as project:
        if project.status == STATUS_COMPLETED:
            raise ConflictError("Completed projects cannot be cancelled", details={"status": project.status})
        _ensure_open(project, "cancel project")
        check_permission(actor, "project.cancel", project=project)

        previous = project.status
        project.status = STATUS_CANCELLED
        project.cancelled_at = utcnow()
        _audit(project, "project.cancel", actor.user_id, previous,
               reason={"old": None, "new": (reason or "")[:500] or None})
        NotificationService.notify_users(
            project_recipients(project),
            notif_type="project_cancelled",
            message=f"Project {project.project_number} has been cancelled",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        return _result(project, previous, "cancel")
