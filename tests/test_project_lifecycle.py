"""
Project lifecycle & member acceptance tests.

Covers:
  - pending → scheduled on first production assignment / explicit start
  - automatic scheduled ↔ in_progress re-evaluation on accept / add
  - rejection forcing scheduled from any non-terminal state
  - manual forward-only advance (STATUS_CANNOT_ROLLBACK on a backward move)
  - terminal-state conflicts, completion preconditions and KPI at completion
  - member validation: duplicates, pooled roles, part-time fees
  - amount edits re-checked against fees and the company receivable
  - parallel accept / reject on one project (file database, worker threads)
"""

import threading

import pytest

from app.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.models import db
from app.models.kpi import KpiRecord
from app.models.notification import Notification
from app.models.project import Project
from app.services import locks, member_acceptance, project_lifecycle, project_service
from app.utils.errors import E
from tests.conftest import actor_for, future_deadline


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _add(project, by, user, role, **extra):
    return member_acceptance.add_member(project.id, actor_for(by), {"user_id": user.id, "role": role, **extra})


def _staffed(make_project, users, **project_extra):
    """Project with an accepted PM, started, and one pending translator."""
    project = make_project(**project_extra)
    _add(project, users["sales"], users["pm"], "pm")
    project_lifecycle.start_project(project.id, actor_for(users["sales"]))
    res = _add(project, users["sales"], users["translator"], "translator", translator_type="mtpe")
    return project, res["member"]["id"]


def _accept(project, member_id, user):
    return member_acceptance.accept_member(project.id, member_id, actor_for(user))


def _reload(project_id):
    return db.session.get(Project, project_id)


# ═════════════════════════════════════════════════════════════════════════════
# Automatic transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestAutomaticTransitions:
    def test_production_member_moves_pending_to_scheduled(self, make_project, users):
        project = make_project()
        res = _add(project, users["sales"], users["translator"], "translator")
        assert res["project_status"] == "scheduled"
        assert res["member"]["acceptance_status"] == "pending"
        assert res["member_acceptance"]["pending_count"] == 1

    def test_non_production_member_is_auto_accepted(self, make_project, users):
        project = make_project()
        res = _add(project, users["sales"], users["pm"], "pm")
        assert res["project_status"] == "pending"
        assert res["member"]["acceptance_status"] == "accepted"
        assert res["member_acceptance"]["accepted_count"] == 1

    def test_start_requires_project_manager(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError) as exc:
            project_lifecycle.start_project(project.id, actor_for(users["sales"]))
        assert exc.value.code == E.VALIDATION_REQUIRED

    def test_start_by_creator(self, make_project, users):
        project = make_project()
        _add(project, users["sales"], users["pm"], "pm")
        res = project_lifecycle.start_project(project.id, actor_for(users["sales"]))
        assert res["previous_status"] == "pending"
        assert res["new_status"] == "scheduled"

    def test_pending_member_blocks_in_progress(self, make_project, users):
        project, _ = _staffed(make_project, users)
        assert _reload(project.id).status == "scheduled"

    def test_accepting_last_pending_member_starts_project(self, make_project, users):
        project, mid = _staffed(make_project, users)
        res = _accept(project, mid, users["translator"])
        assert res["project_status"] == "in_progress"
        assert res["transition"]["new_status"] == "in_progress"
        assert res["member_acceptance"]["all_confirmed"] is True
        assert _reload(project.id).started_at is not None

    def test_start_time_stamped_once(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        first_start = _reload(project.id).started_at

        res = _add(project, users["sales"], users["reviewer"], "reviewer")
        assert res["project_status"] == "scheduled"
        res = _accept(project, res["member"]["id"], users["reviewer"])
        assert res["project_status"] == "in_progress"
        assert _reload(project.id).started_at == first_start

    def test_accept_notifies_manager_and_creator(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        recipients = {
            n.recipient_id for n in Notification.query.filter_by(type="member_accepted", project_id=project.id)
        }
        assert recipients == {users["pm"].id, users["sales"].id}


# ═════════════════════════════════════════════════════════════════════════════
# Rejection
# ═════════════════════════════════════════════════════════════════════════════


class TestRejection:
    def test_reject_forces_scheduled_from_later_stage(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        project_lifecycle.advance_status(project.id, actor_for(users["pm"]), "translation_done")

        res = _add(project, users["pm"], users["reviewer"], "reviewer")
        assert res["project_status"] == "translation_done"

        res = member_acceptance.reject_member(project.id, res["member"]["id"], actor_for(users["reviewer"]),
                                              reason="On leave next week")
        assert res["project_status"] == "scheduled"
        assert res["member"]["rejection_reason"] == "On leave next week"
        assert res["member_acceptance"]["rejected_count"] == 1
        assert res["member_acceptance"]["pending_count"] == 0

    def test_rejected_member_blocks_in_progress_until_replaced(self, make_project, users, make_user):
        project, mid = _staffed(make_project, users)
        member_acceptance.reject_member(project.id, mid, actor_for(users["translator"]))
        assert _reload(project.id).status == "scheduled"

        member_acceptance.remove_member(project.id, mid, actor_for(users["pm"]))
        replacement = make_user("translator", name="Second Translator")
        res = _add(project, users["pm"], replacement, "translator")
        assert res["member"]["acceptance_status"] == "pending"
        assert res["member_acceptance"]["rejected_count"] == 0

        res = _accept(project, res["member"]["id"], replacement)
        assert res["project_status"] == "in_progress"

    def test_resolved_assignment_is_not_found(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        with pytest.raises(NotFoundError):
            _accept(project, mid, users["translator"])
        with pytest.raises(NotFoundError):
            member_acceptance.reject_member(project.id, mid, actor_for(users["translator"]))

    def test_only_assignee_may_respond(self, make_project, users):
        project, mid = _staffed(make_project, users)
        with pytest.raises(PermissionDeniedError):
            _accept(project, mid, users["reviewer"])

    def test_reason_is_capped(self, make_project, users):
        project, mid = _staffed(make_project, users)
        with pytest.raises(ValidationError):
            member_acceptance.reject_member(project.id, mid, actor_for(users["translator"]), reason="x" * 501)
        assert _reload(project.id).pending_count == 1


# ═════════════════════════════════════════════════════════════════════════════
# Manual advance
# ═════════════════════════════════════════════════════════════════════════════


class TestManualAdvance:
    def test_backward_move_is_rollback_violation(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        project_lifecycle.advance_status(project.id, actor_for(users["pm"]), "translation_done")

        with pytest.raises(ValidationError) as exc:
            project_lifecycle.advance_status(project.id, actor_for(users["pm"]), "scheduled")
        assert exc.value.code == E.STATUS_CANNOT_ROLLBACK
        assert _reload(project.id).status == "translation_done"

    def test_member_marks_own_stage(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        res = project_lifecycle.advance_status(project.id, actor_for(users["translator"]), "translation_done")
        assert res["new_status"] == "translation_done"

    def test_member_cannot_mark_other_stage(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        with pytest.raises(PermissionDeniedError):
            project_lifecycle.advance_status(project.id, actor_for(users["translator"]), "review_done")

    def test_unsupported_target(self, make_project, users):
        project, _ = _staffed(make_project, users)
        with pytest.raises(ValidationError):
            project_lifecycle.advance_status(project.id, actor_for(users["pm"]), "completed")

    def test_stages_can_be_skipped_forward(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        res = project_lifecycle.advance_status(project.id, actor_for(users["admin"]), "layout_done")
        assert res["previous_status"] == "in_progress"
        assert res["new_status"] == "layout_done"


# ═════════════════════════════════════════════════════════════════════════════
# Terminal states
# ═════════════════════════════════════════════════════════════════════════════


class TestTerminalStates:
    def test_complete_generates_kpi(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])

        res = project_lifecycle.complete_project(project.id, actor_for(users["sales"]))
        assert res["new_status"] == "completed"
        assert res["is_delayed"] is False
        assert res["kpi_generated"] is True
        assert res["kpi"]["count"] == 2

        roles = {r.role for r in KpiRecord.query.filter_by(project_id=project.id)}
        assert roles == {"pm", "translator"}
        assert _reload(project.id).completed_at is not None

    def test_complete_requires_accepted_production_members(self, make_project, users):
        project, _ = _staffed(make_project, users)
        with pytest.raises(ValidationError) as exc:
            project_lifecycle.complete_project(project.id, actor_for(users["sales"]))
        assert exc.value.details["unconfirmed"][0]["role"] == "translator"

    def test_complete_requires_members(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError):
            project_lifecycle.complete_project(project.id, actor_for(users["sales"]))

    def test_completed_project_is_immutable(self, make_project, users):
        project, mid = _staffed(make_project, users)
        _accept(project, mid, users["translator"])
        project_lifecycle.complete_project(project.id, actor_for(users["sales"]))

        with pytest.raises(ConflictError):
            project_lifecycle.advance_status(project.id, actor_for(users["admin"]), "layout_done")
        with pytest.raises(ConflictError):
            project_lifecycle.cancel_project(project.id, actor_for(users["admin"]))
        with pytest.raises(ConflictError):
            project_lifecycle.complete_project(project.id, actor_for(users["admin"]))

    def test_cancel_from_any_open_state(self, make_project, users):
        project, _ = _staffed(make_project, users)
        res = project_lifecycle.cancel_project(project.id, actor_for(users["sales"]), reason="Client withdrew")
        assert res["new_status"] == "cancelled"
        assert _reload(project.id).cancelled_at is not None

        with pytest.raises(ConflictError):
            _add(project, users["sales"], users["reviewer"], "reviewer")

    def test_missing_project(self, users):
        with pytest.raises(NotFoundError):
            project_lifecycle.start_project(9999, actor_for(users["admin"]))


# ═════════════════════════════════════════════════════════════════════════════
# Member validation
# ═════════════════════════════════════════════════════════════════════════════


class TestMemberValidation:
    def test_duplicate_member(self, make_project, users):
        project = make_project()
        _add(project, users["sales"], users["pm"], "pm")
        with pytest.raises(ConflictError) as exc:
            _add(project, users["sales"], users["pm"], "pm")
        assert exc.value.code == E.CONFLICT_DUPLICATE

    def test_pooled_role_cannot_be_assigned(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError):
            _add(project, users["sales"], users["finance"], "finance")

    def test_user_must_hold_role(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError):
            _add(project, users["sales"], users["reviewer"], "translator")

    def test_member_ratio_locked_from_snapshot(self, make_project, users):
        project = make_project()
        res = _add(project, users["sales"], users["translator"], "translator", translator_type="deepedit")
        assert res["member"]["ratio_locked"] == 0.18

    def test_part_time_translator_needs_fee(self, make_project, users, make_user):
        project = make_project()
        freelancer = make_user("part_time_translator")
        with pytest.raises(ValidationError):
            _add(project, users["sales"], freelancer, "part_time_translator")
        res = _add(project, users["sales"], freelancer, "part_time_translator", part_time_fee=800)
        assert res["member"]["employment_type"] == "part_time"
        assert res["member"]["ratio_locked"] is None

    def test_part_time_layout_fee_capped(self, make_project, users, make_user):
        project = make_project(amount=10000)
        layouter = make_user("layout")
        with pytest.raises(ValidationError):
            _add(project, users["sales"], layouter, "layout", employment_type="part_time", part_time_fee=600)
        res = _add(project, users["sales"], layouter, "layout", employment_type="part_time", part_time_fee=500)
        assert res["member"]["part_time_fee"] == 500

    def test_part_time_sales_requires_enabled_project(self, make_project, users, make_user):
        seller = make_user("part_time_sales")
        plain = make_project()
        with pytest.raises(ValidationError):
            _add(plain, users["sales"], seller, "part_time_sales")

        enabled = make_project(amount=20000, part_time_sales_enabled=True, company_receivable=5000)
        res = _add(enabled, users["sales"], seller, "part_time_sales")
        assert res["member"]["acceptance_status"] == "accepted"

    def test_workload_ratio_bounds(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError):
            _add(project, users["sales"], users["translator"], "translator", workload_ratio=1.5)

    def test_unrelated_user_cannot_manage_members(self, make_project, users):
        project = make_project()
        with pytest.raises(PermissionDeniedError):
            _add(project, users["translator"], users["reviewer"], "reviewer")

    def test_non_finite_fee_rejected(self, make_project, users, make_user):
        project = make_project()
        freelancer = make_user("part_time_translator")
        for bad in ("nan", "inf", float("nan")):
            with pytest.raises(ValidationError):
                _add(project, users["sales"], freelancer, "part_time_translator", part_time_fee=bad)
        assert _reload(project.id).members == []


# ═════════════════════════════════════════════════════════════════════════════
# Amount edits against existing fees and receivable
# ═════════════════════════════════════════════════════════════════════════════


class TestAmountEdits:
    def _edit(self, project, users, **data):
        return project_service.update_project(project.id, actor_for(users["sales"]), data)

    def test_lowering_amount_below_fee_rejected(self, make_project, users, make_user):
        project = make_project(amount=10000)
        freelancer = make_user("part_time_translator")
        _add(project, users["sales"], freelancer, "part_time_translator", part_time_fee=5000)
        with pytest.raises(ValidationError) as exc:
            self._edit(project, users, amount=1000)
        assert "member_id" in exc.value.details
        db.session.rollback()
        assert float(_reload(project.id).amount) == 10000

    def test_lowering_amount_below_layout_share_rejected(self, make_project, users, make_user):
        project = make_project(amount=10000)
        layouter = make_user("layout")
        _add(project, users["sales"], layouter, "layout", employment_type="part_time", part_time_fee=500)
        with pytest.raises(ValidationError):
            self._edit(project, users, amount=9000)
        assert float(self._edit(project, users, amount=12000).amount) == 12000

    def test_rejected_fee_member_ignored(self, make_project, users, make_user):
        project = make_project(amount=10000)
        freelancer = make_user("part_time_translator")
        res = _add(project, users["sales"], freelancer, "part_time_translator", part_time_fee=5000)
        member_acceptance.reject_member(project.id, res["member"]["id"], actor_for(freelancer), "busy")
        assert float(self._edit(project, users, amount=1000).amount) == 1000

    def test_lowering_amount_below_receivable_rejected(self, make_project, users):
        project = make_project(amount=10000, part_time_sales_enabled=True, company_receivable=8000)
        with pytest.raises(ValidationError):
            self._edit(project, users, amount=1000)
        db.session.rollback()
        edited = self._edit(project, users, amount=1000, company_receivable=500)
        assert float(edited.amount) == 1000
        assert float(edited.company_receivable) == 500

    def test_word_count_must_be_integer(self, make_project, users):
        project = make_project()
        for bad in ("many", "12.5", -3):
            with pytest.raises(ValidationError):
                self._edit(project, users, word_count=bad)
        assert self._edit(project, users, word_count="2400").word_count == 2400

    def test_word_count_validated_with_explicit_amount(self, make_project):
        with pytest.raises(ValidationError):
            make_project(amount=5000, word_count="lots")
        assert make_project(amount=5000, word_count=1200).word_count == 1200


# ═════════════════════════════════════════════════════════════════════════════
# Concurrent responses
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """A second app on a file database so worker threads get real connections."""
    from app import create_app
    from app.config import TestingConfig

    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'concurrency.db'}")
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"timeout": 30}})
    application = create_app("testing")
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


class TestConcurrentResponses:
    WORKERS = 6

    def _staff(self, file_app, make_user):
        """Started project with an accepted PM and WORKERS pending translators."""
        with file_app.app_context():
            sales, pm = make_user("sales"), make_user("pm")
            translators = [make_user("translator") for _ in range(self.WORKERS)]
            project = project_service.create_project(
                actor_for(sales), {"name": "Parallel batch", "amount": 60000, "deadline": future_deadline()},
            )
            _add(project, sales, pm, "pm")
            project_lifecycle.start_project(project.id, actor_for(sales))
            assignments = []
            for user in translators:
                res = _add(project, sales, user, "translator", translator_type="mtpe")
                assignments.append((actor_for(user), res["member"]["id"]))
            return project.id, assignments

    def _respond_in_parallel(self, file_app, project_id, assignments, rejecting=()):
        barrier = threading.Barrier(len(assignments))
        errors = []

        def worker(index, actor, member_id):
            with file_app.app_context():
                barrier.wait()
                try:
                    if index in rejecting:
                        member_acceptance.reject_member(project_id, member_id, actor, "schedule clash")
                    else:
                        member_acceptance.accept_member(project_id, member_id, actor)
                except Exception as exc:
                    errors.append(exc)

        threads = [
            threading.Thread(target=worker, args=(i, actor, member_id))
            for i, (actor, member_id) in enumerate(assignments)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        assert errors == []

    def test_parallel_accepts_keep_counters(self, file_app, make_user):
        project_id, assignments = self._staff(file_app, make_user)
        self._respond_in_parallel(file_app, project_id, assignments)

        with file_app.app_context():
            project = db.session.get(Project, project_id)
            assert project.pending_count == 0
            assert project.accepted_count == self.WORKERS + 1
            assert project.rejected_count == 0
            assert project.status == "in_progress"
            assert all(m.acceptance_status == "accepted" for m in project.members)

    def test_parallel_mixed_responses_keep_counters(self, file_app, make_user):
        project_id, assignments = self._staff(file_app, make_user)
        self._respond_in_parallel(file_app, project_id, assignments, rejecting={1, 4})

        with file_app.app_context():
            project = db.session.get(Project, project_id)
            statuses = [m.acceptance_status for m in project.members]
            assert project.pending_count == 0 == statuses.count("pending")
            assert project.accepted_count == statuses.count("accepted") == self.WORKERS - 1
            assert project.rejected_count == statuses.count("rejected") == 2
            assert project.status == "scheduled"
        assert locks._project_locks == {}


class TestProjectLockRegistry:
    def test_entries_released_after_use(self, make_project):
        project = make_project()
        with locks.project_lock(project.id):
            assert locks._project_locks[project.id].users == 1
        assert project.id not in locks._project_locks

    def test_entry_released_when_body_raises(self, make_project):
        project = make_project()
        with pytest.raises(ValidationError):
            with locks.project_lock(project.id):
                raise ValidationError("boom")
        assert project.id not in locks._project_locks

    def test_missing_project_releases_entry(self):
        with pytest.raises(NotFoundError):
            with locks.project_lock(987654):
                pass
        assert 987654 not in locks._project_locks
