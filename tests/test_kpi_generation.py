"""
Monthly KPI aggregation tests.

Projects are staffed through the services, then stamped completed in a
fixed past month directly on the row so the month window is deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import ConflictError, ValidationError
from app.models import db
from app.models.kpi import KpiGenerationRun, KpiRecord, MonthlyRoleKPI
from app.services import kpi_generation, kpi_ledger, member_acceptance
from app.utils.errors import E
from app.utils.helpers import utcnow
from tests.conftest import actor_for

MONTH = "2025-03"


def _completed_project(make_project, users, *, amount=10000, completed_at=None, with_reviewer=False):
    project = make_project(amount=amount)
    sales = actor_for(users["sales"])
    member_acceptance.add_member(project.id, sales, {"user_id": users["pm"].id, "role": "pm"})
    res = member_acceptance.add_member(project.id, sales, {"user_id": users["translator"].id, "role": "translator"})
    member_acceptance.accept_member(project.id, res["member"]["id"], actor_for(users["translator"]))
    if with_reviewer:
        res = member_acceptance.add_member(project.id, sales, {"user_id": users["reviewer"].id, "role": "reviewer"})
        member_acceptance.reject_member(project.id, res["member"]["id"], actor_for(users["reviewer"]))

    project.status = "completed"
    project.completed_at = completed_at or datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
    db.session.commit()
    return project


def _generate(users, month=MONTH, **kwargs):
    return kpi_generation.generate_monthly_kpi(month, actor=actor_for(users["finance"]), **kwargs)


def _record(project, role):
    return KpiRecord.query.filter_by(project_id=project.id, role=role).one()


class TestMonthlyGeneration:
    def test_records_per_member_and_pooled_role(self, make_project, users):
        project = _completed_project(make_project, users)
        report = _generate(users)

        assert report["month"] == MONTH
        assert report["projects_processed"] == 1
        assert report["company_total"] == 10000
        assert report["count"] == 4  # pm + translator + finance + admin_staff
        assert report["errors"] == []

        assert _record(project, "translator").value == 1200.0
        assert _record(project, "pm").value == 300.0
        pooled = {r.role: r for r in MonthlyRoleKPI.query.filter_by(month=MONTH)}
        assert set(pooled) == {"finance", "admin_staff"}
        assert pooled["finance"].value == 50.0
        assert pooled["finance"].evaluation_level == "medium"
        assert pooled["finance"].is_evaluated is False

    def test_second_run_is_idempotent(self, make_project, users):
        _completed_project(make_project, users)
        first = _generate(users)
        second = _generate(users)

        assert first["count"] == 4
        assert second["count"] == 0
        assert second["skipped"] == 4
        assert KpiRecord.query.count() == 2
        assert MonthlyRoleKPI.query.count() == 2

    def test_company_total_spans_all_projects_in_window(self, make_project, users):
        _completed_project(make_project, users, amount=10000)
        _completed_project(make_project, users, amount=5000)
        _completed_project(make_project, users, amount=7000,
                           completed_at=datetime(2025, 4, 1, 0, 0, tzinfo=timezone.utc))

        report = _generate(users)
        assert report["projects_processed"] == 2
        assert report["company_total"] == 15000
        finance = MonthlyRoleKPI.query.filter_by(month=MONTH, role="finance").one()
        assert finance.total_company_amount == 15000
        assert finance.value == 75.0

    def test_rejected_members_are_not_priced(self, make_project, users):
        project = _completed_project(make_project, users, with_reviewer=True)
        _generate(users)
        roles = {r.role for r in KpiRecord.query.filter_by(project_id=project.id)}
        assert roles == {"pm", "translator"}

    def test_force_recomputes_unreviewed_only(self, make_project, users):
        project = _completed_project(make_project, users)
        _generate(users)
        kpi_ledger.review_record(_record(project, "pm").id, actor_for(users["finance"]))

        project.revision_count = 2
        db.session.commit()

        report = _generate(users, force=True)
        assert report["count"] == 0
        assert report["updated"] == 3  # translator + two pooled rows
        assert report["skipped"] == 1
        assert _record(project, "translator").value == 1080.0
        assert _record(project, "pm").value == 300.0

    def test_member_failure_is_collected(self, make_project, users, monkeypatch):
        project = _completed_project(make_project, users)
        original = kpi_generation.price_participant

        def flaky(project_, participant, snapshot, factors):
            if participant.role == "translator":
                raise RuntimeError("formula exploded")
            return original(project_, participant, snapshot, factors)

        monkeypatch.setattr(kpi_generation, "price_participant", flaky)
        report = _generate(users)

        assert len(report["errors"]) == 1
        assert report["errors"][0]["role"] == "translator"
        assert "formula exploded" in report["errors"][0]["error"]
        assert _record(project, "pm").value == 300.0
        run = db.session.get(KpiGenerationRun, report["run_id"])
        assert run.status == "completed"
        assert len(run.errors) == 1

    def test_run_row_records_report(self, make_project, users):
        _completed_project(make_project, users)
        report = _generate(users)
        run = db.session.get(KpiGenerationRun, report["run_id"])
        assert run.status == "completed"
        assert run.created_count == 4
        assert run.started_by == users["finance"].id
        assert run.finished_at is not None
        assert kpi_ledger.list_runs(MONTH)[0]["id"] == run.id

    def test_invalid_month(self, users):
        with pytest.raises(ValidationError):
            _generate(users, month="2025-3")

    def test_empty_month(self, users):
        report = _generate(users, month="2024-01")
        assert report["projects_processed"] == 0
        assert report["company_total"] == 0
        finance = MonthlyRoleKPI.query.filter_by(month="2024-01", role="finance").one()
        assert finance.value == 0.0


class TestGenerationMarker:
    def test_running_month_is_rejected(self, make_project, users):
        _completed_project(make_project, users)
        db.session.add(KpiGenerationRun(month=MONTH, status="running"))
        db.session.commit()

        with pytest.raises(ConflictError) as exc:
            _generate(users)
        assert exc.value.code == E.CONFLICT_RUNNING
        assert exc.value.details["month"] == MONTH
        assert KpiRecord.query.count() == 0

    def test_other_month_is_not_blocked(self, make_project, users):
        _completed_project(make_project, users)
        db.session.add(KpiGenerationRun(month="2025-02", status="running"))
        db.session.commit()
        assert _generate(users)["count"] == 4

    def test_stale_marker_is_taken_over(self, make_project, users):
        _completed_project(make_project, users)
        stale = KpiGenerationRun(month=MONTH, status="running", started_at=utcnow() - timedelta(hours=2))
        db.session.add(stale)
        db.session.commit()
        stale_id = stale.id

        report = _generate(users)
        assert report["count"] == 4
        assert report["run_id"] != stale_id
        old = db.session.get(KpiGenerationRun, stale_id)
        assert old.status == "failed"
        assert old.errors[-1]["error"] == "stale run taken over"

    def test_finished_runs_do_not_block(self, make_project, users):
        _completed_project(make_project, users)
        _generate(users)
        _generate(users)
        assert KpiGenerationRun.query.filter_by(month=MONTH, status="completed").count() == 2


class TestProjectGeneration:
    def test_requires_completed_project(self, make_project, users):
        project = make_project()
        with pytest.raises(ValidationError):
            kpi_generation.generate_project_kpi(project.id)

    def test_uses_completion_month(self, make_project, users):
        project = _completed_project(make_project, users)
        report = kpi_generation.generate_project_kpi(project.id)
        assert report["month"] == MONTH
        assert report["project_id"] == project.id
        assert report["count"] == 2
        assert MonthlyRoleKPI.query.count() == 0

        again = kpi_generation.generate_project_kpi(project.id)
        assert again["skipped"] == 2
