"""
KPI ledger tests: review, reject (delete), pooled-role evaluation and the
month reports built on the ledger rows.
"""

from datetime import datetime, timezone

import pytest

from app.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.models import db
from app.models.kpi import KpiRecord, MonthlyRoleKPI
from app.models.notification import Notification
from app.services import kpi_generation, kpi_ledger, member_acceptance
from tests.conftest import actor_for

MONTH = "2025-06"


@pytest.fixture()
def generated(make_project, users):
    """One completed project in MONTH with PM + translator, ledger generated."""
    project = make_project(amount=20000)
    sales = actor_for(users["sales"])
    member_acceptance.add_member(project.id, sales, {"user_id": users["pm"].id, "role": "pm"})
    res = member_acceptance.add_member(project.id, sales, {"user_id": users["translator"].id, "role": "translator"})
    member_acceptance.accept_member(project.id, res["member"]["id"], actor_for(users["translator"]))
    project.status = "completed"
    project.completed_at = datetime(2025, 6, 10, tzinfo=timezone.utc)
    db.session.commit()

    kpi_generation.generate_monthly_kpi(MONTH, actor=actor_for(users["finance"]))
    return project


def _record(project, role):
    return KpiRecord.query.filter_by(project_id=project.id, role=role).one()


def _pooled(users, role):
    return MonthlyRoleKPI.query.filter_by(user_id=users[role].id, month=MONTH, role=role).one()


class TestReview:
    def test_review_marks_row(self, generated, users):
        record = _record(generated, "translator")
        result = kpi_ledger.review_record(record.id, actor_for(users["finance"]))
        assert result["is_reviewed"] is True
        assert result["reviewed_by"] == users["finance"].id

    def test_review_is_idempotent(self, generated, users):
        record = _record(generated, "translator")
        first = kpi_ledger.review_record(record.id, actor_for(users["finance"]))
        second = kpi_ledger.review_record(record.id, actor_for(users["admin"]))
        assert second["reviewed_by"] == first["reviewed_by"]

    def test_review_requires_finance(self, generated, users):
        with pytest.raises(PermissionDeniedError):
            kpi_ledger.review_record(_record(generated, "pm").id, actor_for(users["pm"]))

    def test_missing_record(self, users):
        with pytest.raises(NotFoundError):
            kpi_ledger.review_record(123, actor_for(users["finance"]))


class TestReject:
    def test_reject_deletes_and_notifies(self, generated, users):
        record = _record(generated, "translator")
        result = kpi_ledger.reject_record(record.id, actor_for(users["finance"]), reason="Wrong word count")

        assert result["deleted"] is True
        assert result["record"]["role"] == "translator"
        assert result["reason"] == "Wrong word count"
        assert KpiRecord.query.filter_by(project_id=generated.id, role="translator").count() == 0

        notes = Notification.query.filter_by(recipient_id=users["translator"].id, type="kpi_rejected").all()
        assert len(notes) == 1
        assert "Wrong word count" in notes[0].message

    def test_rejected_row_is_regenerated_next_run(self, generated, users):
        record = _record(generated, "translator")
        kpi_ledger.reject_record(record.id, actor_for(users["finance"]))
        report = kpi_generation.generate_monthly_kpi(MONTH, actor=actor_for(users["finance"]))
        assert report["count"] == 1
        assert _record(generated, "translator").value == 2400.0

    def test_rejected_row_leaves_export(self, generated, users):
        record = _record(generated, "pm")
        kpi_ledger.reject_record(record.id, actor_for(users["finance"]))
        roles = {r["role"] for r in kpi_ledger.export_month(MONTH)}
        assert "pm" not in roles


class TestEvaluate:
    def test_evaluation_recomputes_value(self, generated, users):
        row = _pooled(users, "finance")
        assert row.value == 100.0
        result = kpi_ledger.evaluate_monthly_role(row.id, "poor", actor_for(users["admin"]))

        assert result["evaluation_level"] == "poor"
        assert result["evaluation_factor"] == 0.8
        assert result["is_evaluated"] is True
        assert result["value"] == 80.0
        assert "Evaluation factor(0.8)" in result["formula"]

    def test_force_regeneration_keeps_evaluation(self, generated, users):
        row = _pooled(users, "admin_staff")
        kpi_ledger.evaluate_monthly_role(row.id, "good", actor_for(users["admin"]))
        kpi_generation.generate_monthly_kpi(MONTH, actor=actor_for(users["finance"]), force=True)
        assert _pooled(users, "admin_staff").value == 110.0

    def test_only_admin_evaluates(self, generated, users):
        with pytest.raises(PermissionDeniedError):
            kpi_ledger.evaluate_monthly_role(_pooled(users, "finance").id, "good", actor_for(users["finance"]))

    def test_unknown_level(self, generated, users):
        with pytest.raises(ValidationError):
            kpi_ledger.evaluate_monthly_role(_pooled(users, "finance").id, "excellent", actor_for(users["admin"]))

    def test_reviewed_row_is_final(self, generated, users):
        row = _pooled(users, "finance")
        kpi_ledger.review_monthly_role(row.id, actor_for(users["finance"]))
        with pytest.raises(ConflictError):
            kpi_ledger.evaluate_monthly_role(row.id, "good", actor_for(users["admin"]))


class TestReports:
    def test_user_month(self, generated, users):
        result = kpi_ledger.get_user_monthly_kpi(users["translator"].id, MONTH)
        assert result["total"] == 2400.0
        assert result["by_role"] == {"translator": 2400.0}
        assert len(result["records"]) == 1
        assert result["monthly_roles"] == []

    def test_month_summary(self, generated, users):
        summary = kpi_ledger.get_month_summary(MONTH)
        assert summary["record_count"] == 4
        assert summary["total"] == 2400.0 + 600.0 + 100.0 + 100.0
        assert summary["users"][0]["user_id"] == users["translator"].id
        assert summary["users"][0]["unreviewed"] == 1

    def test_export_reviewed_only(self, generated, users):
        kpi_ledger.review_record(_record(generated, "pm").id, actor_for(users["finance"]))
        kpi_ledger.review_monthly_role(_pooled(users, "finance").id, actor_for(users["finance"]))

        rows = kpi_ledger.export_month(MONTH, reviewed_only=True)
        assert {(r["source"], r["role"]) for r in rows} == {("project", "pm"), ("monthly_role", "finance")}
        assert len(kpi_ledger.export_month(MONTH)) == 4
