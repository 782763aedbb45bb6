"""
Realtime preview tests: single project, batch (bounded queries + fallback),
pooled-role estimates and the personal dashboard.
"""

import pytest
from sqlalchemy import event

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.kpi import KpiRecord, MonthlyRoleKPI
from app.services import kpi_generation, kpi_ledger, kpi_preview, member_acceptance, project_lifecycle
from app.utils.helpers import month_key
from tests.conftest import actor_for


def _running_project(make_project, users, amount=10000):
    project = make_project(amount=amount)
    sales = actor_for(users["sales"])
    member_acceptance.add_member(project.id, sales, {"user_id": users["pm"].id, "role": "pm"})
    res = member_acceptance.add_member(project.id, sales, {"user_id": users["translator"].id, "role": "translator"})
    member_acceptance.accept_member(project.id, res["member"]["id"], actor_for(users["translator"]))
    return project


class _QueryCounter:
    def __init__(self, engine):
        self.engine = engine
        self.count = 0

    def _count(self, *args, **kwargs):
        self.count += 1

    def __enter__(self):
        event.listen(self.engine, "before_cursor_execute", self._count)
        return self

    def __exit__(self, *exc):
        event.remove(self.engine, "before_cursor_execute", self._count)


class TestProjectPreview:
    def test_open_project_is_estimated(self, make_project, users):
        project = _running_project(make_project, users)
        result = kpi_preview.calculate_project_realtime(project.id)

        assert result["estimated"] is True
        assert result["month"] == month_key()
        assert result["project"]["status"] == "in_progress"
        by_role = {r["role"]: r for r in result["results"]}
        assert by_role["translator"]["value"] == 1200.0
        assert by_role["pm"]["value"] == 300.0
        assert set(by_role["pm"]) >= {"value", "formula", "details"}

    def test_creator_previewed_as_sales(self, make_project, users):
        project = _running_project(make_project, users)
        result = kpi_preview.calculate_project_realtime(project.id)
        sales = [r for r in result["results"] if r["role"] == "sales"]
        assert len(sales) == 1
        assert sales[0]["user_id"] == users["sales"].id
        assert sales[0]["member_id"] is None
        assert sales[0]["value"] == 1200.0

    def test_preview_persists_nothing(self, make_project, users):
        project = _running_project(make_project, users)
        kpi_preview.calculate_project_realtime(project.id)
        assert KpiRecord.query.count() == 0

    def test_quality_flags_flow_into_preview(self, make_project, users):
        project = _running_project(make_project, users)
        project.revision_count = 2
        project.has_complaint = True
        db.session.commit()

        result = kpi_preview.calculate_project_realtime(project.id)
        assert result["project"]["completion_factor"] == 0.72
        assert result["project"]["sales_completion_factor"] == 0.9
        by_role = {r["role"]: r for r in result["results"]}
        assert by_role["translator"]["value"] == 864.0
        assert by_role["sales"]["value"] == 1100.0

    def test_missing_project(self):
        with pytest.raises(NotFoundError):
            kpi_preview.calculate_project_realtime(424242)


class TestBatchPreview:
    def test_matches_single_path(self, make_project, users):
        a = _running_project(make_project, users, amount=10000)
        b = _running_project(make_project, users, amount=4000)
        batch = kpi_preview.calculate_projects_realtime_batch([a.id, b.id, a.id, 9999])

        assert list(batch) == [a.id, b.id, 9999]
        assert batch[9999] == {"error": "not found"}
        for pid in (a.id, b.id):
            assert batch[pid] == kpi_preview.calculate_project_realtime(pid)

    def test_query_count_is_bounded(self, app, make_project, users):
        ids = [_running_project(make_project, users, amount=1000 * (i + 1)).id for i in range(4)]
        engine = db.engine

        db.session.expire_all()
        with _QueryCounter(engine) as one:
            kpi_preview.calculate_projects_realtime_batch(ids[:1])
        db.session.expire_all()
        with _QueryCounter(engine) as many:
            kpi_preview.calculate_projects_realtime_batch(ids)

        assert many.count == one.count

    def test_falls_back_to_single_path(self, make_project, users, monkeypatch):
        project = _running_project(make_project, users)

        def broken(_ids):
            raise RuntimeError("batch unavailable")

        monkeypatch.setattr(kpi_preview, "_batch", broken)
        result = kpi_preview.calculate_projects_realtime_batch([project.id, 9999])
        assert result[project.id]["count"] == 3
        assert result[9999] == {"error": "not found"}

    def test_empty_input(self):
        assert kpi_preview.calculate_projects_realtime_batch([]) == {}


class TestPooledPreview:
    def test_unevaluated_is_flagged_estimated(self, users):
        result = kpi_preview.pooled_preview(users["finance"].id, "finance", "2025-03", company_total=20000)
        assert result["value"] == 100.0
        assert result["estimated"] is True
        assert result["evaluation_status"] == "unevaluated"
        assert result["evaluation_level"] == "medium"
        assert result["record_id"] is None

    def test_uses_evaluated_factor(self, users):
        kpi_generation.generate_monthly_kpi("2025-03", actor=actor_for(users["admin"]))
        row = MonthlyRoleKPI.query.filter_by(user_id=users["finance"].id, month="2025-03").one()
        kpi_ledger.evaluate_monthly_role(row.id, "good", actor_for(users["admin"]))

        result = kpi_preview.pooled_preview(users["finance"].id, "finance", "2025-03", company_total=20000)
        assert result["value"] == 110.0
        assert result["estimated"] is False
        assert result["evaluation_status"] == "evaluated"
        assert result["record_id"] == row.id


class TestPersonalPreview:
    def test_translator_sees_own_bucket(self, make_project, users):
        _running_project(make_project, users)
        result = kpi_preview.preview_for_actor(actor_for(users["translator"]))

        assert result["roles"] == ["translator"]
        assert [i["role"] for i in result["items"]] == ["translator"]
        assert result["total"] == 1200.0
        assert result["estimated"] is True
        assert result["pooled"] == []

    def test_active_role_selects_bucket(self, make_project, users, make_user):
        both = make_user("translator", "reviewer", name="Multi Role")
        project = make_project()
        sales = actor_for(users["sales"])
        member_acceptance.add_member(project.id, sales, {"user_id": both.id, "role": "translator"})
        member_acceptance.add_member(project.id, sales, {"user_id": both.id, "role": "reviewer"})

        everything = kpi_preview.preview_for_actor(actor_for(both))
        reviewer_only = kpi_preview.preview_for_actor(actor_for(both, active_role="reviewer"))
        assert {i["role"] for i in everything["items"]} == {"translator", "reviewer"}
        assert [i["role"] for i in reviewer_only["items"]] == ["reviewer"]
        assert reviewer_only["total"] == 800.0

    def test_finance_gets_pooled_estimate(self, make_project, users):
        project = _running_project(make_project, users)
        project_lifecycle.complete_project(project.id, actor_for(users["sales"]))

        result = kpi_preview.preview_for_actor(actor_for(users["finance"]))
        assert result["items"] == []
        assert len(result["pooled"]) == 1
        assert result["pooled"][0]["value"] == 50.0
        assert result["pooled"][0]["evaluation_status"] == "unevaluated"
        assert result["estimated"] is True

    def test_past_month_excludes_open_projects(self, make_project, users):
        _running_project(make_project, users)
        result = kpi_preview.preview_for_actor(actor_for(users["translator"]), month="2020-01")
        assert result["items"] == []
        assert result["total"] == 0
