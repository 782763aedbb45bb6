"""
Shared pytest fixtures for the Translation KPI Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user: User row factory
    - users: one user per common role
    - make_project: Project factory going through the service layer
"""

from datetime import date, timedelta

import pytest

from app import create_app
from app.auth import Actor
from app.models import db as _db
from app.models.user import User


def actor_for(user, active_role=None) -> Actor:
    """Service-level Actor for a User row."""
    return Actor(user_id=user.id, roles=frozenset(user.roles or []), active_role=active_role)


def auth_headers(user, active_role=None) -> dict:
    """Gateway headers identifying *user* to the API."""
    headers = {
        "X-User-Id": str(user.id),
        "X-User-Roles": ",".join(user.roles or []),
        "Content-Type": "application/json",
    }
    if active_role:
        headers["X-Active-Role"] = active_role
    return headers


def future_deadline(days: int = 30) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(*roles, name=None, is_active=True):
        counter["n"] += 1
        username = f"{'-'.join(roles) or 'user'}-{counter['n']}"
        user = User(
            username=username,
            name=name or username.replace("-", " ").title(),
            roles=list(roles),
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def users(make_user):
    """One user per role a typical project needs."""
    return {
        "admin": make_user("admin", name="Ada Admin"),
        "sales": make_user("sales", name="Sam Sales"),
        "pm": make_user("pm", name="Pat Manager"),
        "translator": make_user("translator", name="Tess Translator"),
        "reviewer": make_user("reviewer", name="Rey Reviewer"),
        "finance": make_user("finance", name="Fin Ance"),
        "admin_staff": make_user("admin_staff", name="Stan Staff"),
    }


@pytest.fixture()
def make_project(users):
    """Create a project as the sales user (or *creator*) via the service layer."""
    from app.services import project_service

    def _make(amount=10000, creator=None, **extra):
        data = {
            "name": extra.pop("name", "Annual report TR→EN"),
            "client_name": "Acme Ltd",
            "amount": amount,
            "deadline": future_deadline(),
            **extra,
        }
        return project_service.create_project(actor_for(creator or users["sales"]), data)

    return _make
