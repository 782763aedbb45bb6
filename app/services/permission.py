"""
Role-based capability checks.

Maps each business action to the role codes allowed to perform it.  Admin
passes every check; the project creator additionally holds the
``_CREATOR_CAPABILITIES`` on their own projects.

Usage:
    from app.services.permission import check_permission, has_permission

    # Raises PermissionDeniedError if not allowed
    check_permission(actor, "member.manage", project=project)

    # Boolean check
    if has_permission(actor, "kpi.view_all"):
        ...
"""

from app.core.exceptions import PermissionDeniedError

PERMISSION_MATRIX = {
    "project.create": {"sales", "part_time_sales"},
    "project.edit": {"sales", "part_time_sales", "pm"},
    "project.start": set(),
    "project.status": {"pm"},
    "project.complete": {"sales", "part_time_sales"},
    "project.cancel": {"sales", "part_time_sales", "pm"},
    "project.quality": {"pm", "sales", "part_time_sales"},
    "project.payment": {"finance", "sales"},
    "project.view_all": {"finance"},
    "member.manage": {"pm"},
    "kpi.generate": {"finance"},
    "kpi.review": {"finance"},
    "kpi.evaluate": set(),
    "kpi.view_all": {"finance"},
    "coefficients.view": {"finance"},
    "coefficients.update": set(),
}

_CREATOR_CAPABILITIES = {
    "project.edit",
    "project.start",
    "project.complete",
    "project.cancel",
    "project.quality",
    "member.manage",
}


def has_permission(actor, action: str, *, project=None) -> bool:
    if actor is None:
        return False
    if actor.is_admin:
        return True
    if actor.has_role(*PERMISSION_MATRIX.get(action, set())):
        return True
    return (
        project is not None
        and action in _CREATOR_CAPABILITIES
        and actor.user_id is not None
        and project.created_by == actor.user_id
    )


def check_permission(actor, action: str, *, project=None) -> None:
    if not has_permission(actor, action, project=project):
        raise PermissionDeniedError(getattr(actor, "user_id", None), action)
