"""
Member Acceptance Service

Per-assignment accept/reject workflow.  Production-role assignments
(translator, reviewer, layout, part-time translator) start ``pending`` and
must be accepted by the assigned user; other roles are accepted on
creation.  Every event updates the project's acceptance counters and
re-evaluates the automatic ``scheduled ↔ in_progress`` transition, all
under the per-project lock.

A rejected assignment stays rejected.  The remedy is removing it and adding
a fresh assignment, which starts a new pending cycle.
"""

import logging

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.project import (
    MEMBER_ROLES,
    POOLED_ROLES,
    PRODUCTION_ROLES,
    REJECTION_REASON_MAX,
    STATUS_PENDING,
    STATUS_SCHEDULED,
    TRANSLATOR_TYPES,
    EMPLOYMENT_TYPES,
    ProjectMember,
)
from app.models.user import User
from app.services.coefficient_registry import CoefficientSnapshot
from app.services.kpi_formulas import is_fee_based
from app.services.locks import project_lock
from app.services.notification import NotificationService
from app.services.permission import check_permission
from app.services.project_lifecycle import (
    force_scheduled,
    manager_recipients,
    reevaluate_acceptance,
)
from app.utils.errors import E
from app.utils.helpers import to_float, utcnow

logger = logging.getLogger(__name__)

# Part-time layout fee may not exceed this share of the project amount
LAYOUT_FEE_MAX_SHARE = 0.05


# ── Helpers ──────────────────────────────────────────────────────────────────

def _ensure_open(project, action: str) -> None:
    if project.is_terminal:
        raise ConflictError(
            f"Cannot {action}: project {project.project_number} is {project.status}",
            details={"status": project.status},
        )


def validate_fee(role: str, fee, amount: float) -> float:
    """Check a fee-based member's fee against the project amount."""
    if fee is None or fee <= 0:
        raise ValidationError("part_time_fee must be greater than 0 for part-time members",
                              details={"part_time_fee": fee})
    if fee > amount:
        raise ValidationError("part_time_fee cannot exceed the project amount",
                              details={"part_time_fee": fee, "amount": amount})
    if role == "layout" and fee > amount * LAYOUT_FEE_MAX_SHARE:
        raise ValidationError(
            f"Part-time layout fee cannot exceed {LAYOUT_FEE_MAX_SHARE:.0%} of the project amount",
            details={"part_time_fee": fee, "max": round(amount * LAYOUT_FEE_MAX_SHARE, 2)},
        )
    return fee


def _audit(member, action: str, actor_id, diff: dict | None = None) -> None:
    try:
        write_audit(
            entity_type="project_member",
            entity_id=member.id,
            action=action,
            actor_user_id=actor_id,
            project_id=member.project_id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for %s — main flow unaffected", action, exc_info=True)


def _find_member(project, member_id: int):
    return next((m for m in project.members if m.id == member_id), None)


def _pending_member_or_raise(project, member_id: int, actor):
    member = _find_member(project, member_id)
    if member is None or member.acceptance_status != "pending":
        raise NotFoundError("Pending assignment", member_id)
    if actor.user_id != member.user_id:
        raise PermissionDeniedError(actor.user_id, "respond to another user's assignment")
    return member


def _result(project, member, transition=None) -> dict:
    return {
        "member": member.to_dict(),
        "project_status": project.status,
        "member_acceptance": {
            "pending_count": project.pending_count,
            "accepted_count": project.accepted_count,
            "rejected_count": project.rejected_count,
            "all_confirmed": project.all_confirmed,
        },
        "transition": transition,
    }


def _validate_member_data(project, data: dict, snapshot: CoefficientSnapshot) -> dict:
    role = str(data.get("role", "") or "").strip()
    if not role:
        raise ValidationError("role is required", code=E.VALIDATION_REQUIRED)
    if role in POOLED_ROLES:
        raise ValidationError(f"{role} is a pooled role and cannot be assigned to a project",
                              details={"role": role})
    if role not in MEMBER_ROLES and role not in snapshot.role_ratios:
        raise ValidationError(f"Unknown member role '{role}'", details={"role": role})

    try:
        user_id = int(data.get("user_id"))
    except (TypeError, ValueError):
        raise ValidationError("user_id is required", details={"user_id": data.get("user_id")},
                              code=E.VALIDATION_REQUIRED)
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    if not user.is_active:
        raise ValidationError(f"User {user_id} is inactive", details={"user_id": user_id})
    if not user.has_role(role):
        raise ValidationError(f"User {user_id} does not hold the role '{role}'",
                              details={"user_id": user_id, "role": role})

    translator_type = data.get("translator_type")
    if role == "translator":
        translator_type = translator_type or "mtpe"
        if translator_type not in TRANSLATOR_TYPES:
            raise ValidationError(f"translator_type must be one of {sorted(TRANSLATOR_TYPES)}",
                                  details={"translator_type": translator_type})

    workload_ratio = to_float(data.get("workload_ratio"), "workload_ratio", default=1.0)
    if not 0 < workload_ratio <= 1:
        raise ValidationError("workload_ratio must be greater than 0 and at most 1",
                              details={"workload_ratio": workload_ratio})

    if role in ("part_time_translator", "part_time_sales"):
        employment_type = "part_time"
    else:
        employment_type = data.get("employment_type") or "full_time"
    if employment_type not in EMPLOYMENT_TYPES:
        raise ValidationError(f"employment_type must be one of {sorted(EMPLOYMENT_TYPES)}",
                              details={"employment_type": employment_type})

    amount = float(project.amount or 0)
    fee = None
    if is_fee_based(role, employment_type):
        fee = validate_fee(role, to_float(data.get("part_time_fee"), "part_time_fee"), amount)
    if role == "part_time_sales" and not project.part_time_sales_enabled:
        raise ValidationError("Project is not set up for part-time sales", details={"role": role})

    if fee is not None or role == "part_time_sales":
        ratio_locked = None
    else:
        ratio_locked = snapshot.ratio_for(role, translator_type)

    return {
        "user_id": user_id,
        "role": role,
        "translator_type": translator_type if role == "translator" else data.get("translator_type"),
        "workload_ratio": workload_ratio,
        "employment_type": employment_type,
        "part_time_fee": fee,
        "ratio_locked": ratio_locked,
    }


# ── Add / remove ─────────────────────────────────────────────────────────────

def add_member(project_id: int, actor, data: dict) -> dict:
    """
    Assign a user to the project.

    Production roles start pending (and move a pending project to
    scheduled); other roles are accepted immediately.

    Raises:
        ConflictError: terminal project, or duplicate (project, user, role).
        ValidationError / NotFoundError: bad role, user or fee.
    """
    with project_lock(project_id) as project:
        _ensure_open(project, "add member")
        check_permission(actor, "member.manage", project=project)
        snapshot = CoefficientSnapshot.from_dict(project.locked_ratios)
        fields = _validate_member_data(project, data, snapshot)

        if any(m.user_id == fields["user_id"] and m.role == fields["role"] for m in project.members):
            raise ConflictError.duplicate("ProjectMember", "user_id/role", f"{fields['user_id']}/{fields['role']}")

        member = ProjectMember(project_id=project.id, **fields)
        if fields["role"] in PRODUCTION_ROLES:
            member.acceptance_status = "pending"
            project.pending_count += 1
        else:
            member.acceptance_status = "accepted"
            member.acceptance_at = utcnow()
            project.accepted_count += 1
        project.members.append(member)
        try:
            db.session.flush()
        except IntegrityError:
            raise ConflictError.duplicate("ProjectMember", "user_id/role", f"{fields['user_id']}/{fields['role']}")

        transition = None
        if member.is_production and project.status == STATUS_PENDING:
            project.status = STATUS_SCHEDULED
            transition = {"previous_status": STATUS_PENDING, "new_status": STATUS_SCHEDULED, "action": "auto"}
        transition = reevaluate_acceptance(project, actor_id=actor.user_id) or transition

        _audit(member, "member.add", actor.user_id, {"role": {"old": None, "new": member.role},
                                                     "user_id": {"old": None, "new": member.user_id}})
        NotificationService.notify_users(
            [member.user_id],
            notif_type="project_assigned",
            message=f"You have been assigned to project {project.project_number} as {member.role}",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        logger.info("Member added project=%s user=%s role=%s status=%s", project.id, member.user_id,
                    member.role, member.acceptance_status, extra={"project_id": project.id})
        return _result(project, member, transition)


def remove_member(project_id: int, member_id: int, actor) -> dict:
    """Remove an assignment (the remedy for a rejection) and re-evaluate."""
    with project_lock(project_id) as project:
        _ensure_open(project, "remove member")
        check_permission(actor, "member.manage", project=project)
        member = _find_member(project, member_id)
        if member is None:
            raise NotFoundError("ProjectMember", member_id)

        counter = f"{member.acceptance_status}_count"
        setattr(project, counter, max(0, getattr(project, counter) - 1))
        removed = member.to_dict()
        _audit(member, "member.remove", actor.user_id, {"acceptance_status": {"old": member.acceptance_status,
                                                                               "new": None}})
        project.members.remove(member)
        db.session.flush()

        transition = reevaluate_acceptance(project, actor_id=actor.user_id)
        NotificationService.notify_users(
            [removed["user_id"]],
            notif_type="project_unassigned",
            message=f"You have been removed from project {project.project_number} ({removed['role']})",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        return {
            "removed": removed,
            "project_status": project.status,
            "transition": transition,
        }


# ── Accept / reject ──────────────────────────────────────────────────────────

def accept_member(project_id: int, member_id: int, actor) -> dict:
    """
    The assigned user accepts a pending assignment.

    Raises:
        ConflictError: project is completed or cancelled.
        NotFoundError: assignment missing or no longer pending.
        PermissionDeniedError: actor is not the assigned user.
    """
    with project_lock(project_id) as project:
        _ensure_open(project, "accept assignment")
        member = _pending_member_or_raise(project, member_id, actor)

        member.acceptance_status = "accepted"
        member.acceptance_at = utcnow()
        project.pending_count = max(0, project.pending_count - 1)
        project.accepted_count += 1

        transition = reevaluate_acceptance(project, actor_id=actor.user_id)
        _audit(member, "member.accept", actor.user_id, {"acceptance_status": {"old": "pending", "new": "accepted"}})
        NotificationService.notify_users(
            manager_recipients(project),
            notif_type="member_accepted",
            message=f"{member.user.name if member.user else member.user_id} accepted the {member.role} "
                    f"assignment on project {project.project_number}",
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        return _result(project, member, transition)


def reject_member(project_id: int, member_id: int, actor, reason: str | None = None) -> dict:
    """
    The assigned user rejects a pending assignment.  The project is forced
    back to ``scheduled`` regardless of the other members.
    """
    reason = (reason or "").strip() or None
    if reason and len(reason) > REJECTION_REASON_MAX:
        raise ValidationError(f"reason cannot exceed {REJECTION_REASON_MAX} characters",
                              details={"length": len(reason)})

    with project_lock(project_id) as project:
        _ensure_open(project, "reject assignment")
        member = _pending_member_or_raise(project, member_id, actor)

        member.acceptance_status = "rejected"
        member.acceptance_at = utcnow()
        member.rejection_reason = reason
        project.pending_count = max(0, project.pending_count - 1)
        project.rejected_count += 1

        transition = force_scheduled(project, actor_id=actor.user_id)
        _audit(member, "member.reject", actor.user_id, {"acceptance_status": {"old": "pending", "new": "rejected"},
                                                        "reason": {"old": None, "new": reason}})
        message = (f"{member.user.name if member.user else member.user_id} rejected the {member.role} "
                   f"assignment on project {project.project_number}")
        if reason:
            message += f": {reason}"
        NotificationService.notify_users(
            manager_recipients(project),
            notif_type="member_rejected",
            message=message,
            project_id=project.id,
            exclude=actor.user_id,
        )
        db.session.commit()
        logger.info("Member %s rejected assignment on project %s", member.id, project.id,
                    extra={"project_id": project.id})
        return _result(project, member, transition)
