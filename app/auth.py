"""
Translation KPI Platform
Actor resolution & role checks.

Authentication is done upstream (gateway / SSO).  The gateway forwards the
authenticated identity as headers:

    X-User-Id      — numeric user id
    X-User-Roles   — comma-separated role codes (optional; falls back to
                     the roles stored on the user row)
    X-Active-Role  — the role the user is currently acting as (optional)

``init_auth`` turns them into an ``Actor`` on ``flask.g``.  When an active
role is selected it alone gates permissions and picks the KPI bucket a
multi-role user sees; otherwise every held role applies.
"""

import functools
import logging
from dataclasses import dataclass, field

from flask import g, request

from app.models import db
from app.models.user import User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    """The user performing an operation."""

    user_id: int | None
    roles: frozenset = field(default_factory=frozenset)
    active_role: str | None = None

    @property
    def effective_roles(self) -> frozenset:
        if self.active_role:
            return frozenset({self.active_role})
        return self.roles

    def has_role(self, *roles: str) -> bool:
        return bool(self.effective_roles.intersection(roles))

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.effective_roles

    @classmethod
    def system(cls) -> "Actor":
        """Actor used by CLI jobs; acts with admin capability."""
        return cls(user_id=None, roles=frozenset({ADMIN_ROLE}))


def _parse_roles(raw: str) -> frozenset:
    return frozenset(r.strip().lower() for r in raw.split(",") if r.strip())


def resolve_actor() -> Actor | None:
    """Build the Actor for the current request, or None if anonymous."""
    raw_id = request.headers.get("X-User-Id", "").strip()
    if not raw_id:
        return None
    try:
        user_id = int(raw_id)
    except ValueError:
        logger.warning("Ignoring non-numeric X-User-Id header: %r", raw_id[:20])
        return None

    raw_roles = request.headers.get("X-User-Roles", "")
    if raw_roles.strip():
        roles = _parse_roles(raw_roles)
    else:
        user = db.session.get(User, user_id)
        roles = frozenset(user.roles or []) if user else frozenset()

    active_role = request.headers.get("X-Active-Role", "").strip().lower() or None
    return Actor(user_id=user_id, roles=roles, active_role=active_role)


def current_actor() -> Actor | None:
    return getattr(g, "actor", None)


# ── Decorators ───────────────────────────────────────────────────────────────

def require_actor(f):
    """Decorator: the endpoint needs an authenticated actor."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_actor() is None:
            return api_error(E.UNAUTHORIZED, "Authentication required. Provide X-User-Id header.")
        return f(*args, **kwargs)
    return decorated


def require_roles(*roles: str):
    """
    Decorator: require one of *roles* (admin always passes).

    Usage:
        @require_roles("finance")
        def review_record(rid): ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            actor = current_actor()
            if actor is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if not (actor.is_admin or actor.has_role(*roles)):
                logger.warning(
                    "Access denied: user %s (roles=%s) tried %s",
                    actor.user_id, sorted(actor.effective_roles), request.path,
                )
                return api_error(E.FORBIDDEN, "Insufficient permissions")
            return f(*args, **kwargs)
        return decorated
    return decorator


# ── before_request hook installer ────────────────────────────────────────────

def init_auth(app):
    """Resolve ``g.actor`` for every API request (health routes excluded)."""

    @app.before_request
    def _resolve_actor():
        g.actor = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        actor = resolve_actor()
        if actor and actor.active_role and actor.active_role not in actor.roles:
            return api_error(E.FORBIDDEN, f"Active role '{actor.active_role}' is not held by this user")
        g.actor = actor
        return None
