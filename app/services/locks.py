"""
Per-project serialization.

Acceptance events read the member rows and write the shared acceptance
counters, so two of them on the same project must not interleave.
``project_lock`` takes an in-process keyed lock (bounded wait) and then
re-reads the project row ``SELECT … FOR UPDATE`` so other processes on
PostgreSQL queue behind the row lock.  SQLite ignores FOR UPDATE; its
writes are serialized by the database lock.

Usage:
    with project_lock(project_id) as project:
        ...mutate project and members...
        db.session.commit()
"""

import logging
import threading
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError
from app.models import db
from app.models.project import Project

logger = logging.getLogger(__name__)


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


_registry_guard = threading.Lock()
# Entries live only while some thread holds or waits on them
_project_locks: dict[int, _KeyedLock] = {}


def _checkout(project_id: int) -> _KeyedLock:
    with _registry_guard:
        entry = _project_locks.get(project_id)
        if entry is None:
            entry = _project_locks[project_id] = _KeyedLock()
        entry.users += 1
        return entry


def _checkin(project_id: int, entry: _KeyedLock) -> None:
    with _registry_guard:
        entry.users -= 1
        if entry.users == 0:
            _project_locks.pop(project_id, None)


def load_project_for_update(project_id: int) -> Project:
    project = db.session.execute(
        select(Project)
        .where(Project.id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


@contextmanager
def project_lock(project_id: int):
    """Serialize work on one project; yields the freshly loaded row."""
    timeout = current_app.config.get("PROJECT_LOCK_TIMEOUT_SECONDS", 10)
    entry = _checkout(project_id)
    try:
        if not entry.lock.acquire(timeout=timeout):
            logger.warning("Timed out waiting for project lock project=%s", project_id,
                           extra={"project_id": project_id})
            raise ConflictError(f"Project {project_id} is busy, retry the operation")
        try:
            yield load_project_for_update(project_id)
        except Exception:
            db.session.rollback()
            raise
        finally:
            entry.lock.release()
    finally:
        _checkin(project_id, entry)
