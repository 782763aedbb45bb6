"""
Coefficient registry tests: get-active/update-with-history contract,
snapshot immutability and project number generation.
"""

import dataclasses

import pytest

from app.core.exceptions import ValidationError
from app.models.coefficient import CoefficientChange
from app.services import kpi_preview, member_acceptance
from app.services.coefficient_registry import CoefficientSnapshot, get_registry
from app.services.project_service import generate_project_number
from app.utils.helpers import utcnow
from tests.conftest import actor_for


class TestRegistryService:
    def test_defaults_created_on_first_use(self):
        registry = get_registry().get_active()
        assert registry.version == 1
        assert registry.translator_ratio_mtpe == 0.12
        assert registry.pm_ratio == 0.03

    def test_update_bumps_version_and_appends_history(self, users):
        service = get_registry()
        registry = service.update({"pm_ratio": 0.04}, reason="2025 pay review", actor_id=users["admin"].id)
        assert registry.version == 2
        assert registry.pm_ratio == 0.04

        history = service.history()
        assert len(history) == 1
        assert history[0]["old_values"] == {"pm_ratio": 0.03}
        assert history[0]["new_values"] == {"pm_ratio": 0.04}
        assert history[0]["reason"] == "2025 pay review"

    def test_noop_update_writes_no_history(self):
        registry = get_registry().update({"pm_ratio": 0.03})
        assert registry.version == 1
        assert CoefficientChange.query.count() == 0

    @pytest.mark.parametrize("values", [
        {"pm_ratio": 1.5},
        {"pm_ratio": -0.1},
        {"pm_ratio": "lots"},
        {"bogus_ratio": 0.1},
        {"role_ratios": ["finance"]},
    ])
    def test_update_rejects_bad_values(self, values):
        with pytest.raises(ValidationError):
            get_registry().update(values)

    def test_nested_role_ratios_flatten(self):
        get_registry().update({"role_ratios": {"layout": {"base": 0.02, "dtp": 0.03}, "finance": 0.004}})
        snapshot = get_registry().snapshot()
        assert snapshot.ratio_for("layout") == 0.02
        assert snapshot.ratio_for("layout", "dtp") == 0.03
        assert snapshot.ratio_for("finance") == 0.004
        assert snapshot.ratio_for("unheard_of") == 0.0

    def test_finance_falls_back_to_admin_rate(self):
        assert get_registry().pooled_ratio("finance") == 0.005


class TestSnapshot:
    def test_snapshot_is_frozen(self):
        snapshot = get_registry().snapshot()
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.pm = 0.5
        with pytest.raises(TypeError):
            snapshot.role_ratios["pm"] = 0.5

    def test_round_trip_through_locked_ratios(self):
        get_registry().update({"role_ratios": {"layout": 0.02}})
        snapshot = get_registry().snapshot()
        assert CoefficientSnapshot.from_dict(snapshot.to_dict()) == snapshot

    def test_registry_update_does_not_touch_existing_projects(self, make_project, users):
        old = make_project()
        get_registry().update({"translator_ratio_mtpe": 0.2})
        new = make_project()

        assert old.locked_ratios["translator_mtpe"] == 0.12
        assert new.locked_ratios["translator_mtpe"] == 0.2

        member_acceptance.add_member(old.id, actor_for(users["sales"]),
                                     {"user_id": users["translator"].id, "role": "translator"})
        preview = kpi_preview.calculate_project_realtime(old.id)
        translator = next(r for r in preview["results"] if r["role"] == "translator")
        assert translator["value"] == 1200.0


class TestProjectNumber:
    def test_sequence_restarts_monthly(self, make_project, app):
        stem = f"{app.config['PROJECT_NUMBER_PREFIX']}{utcnow():%Y%m}"
        first = make_project()
        second = make_project()
        assert first.project_number == f"{stem}0001"
        assert second.project_number == f"{stem}0002"
        assert generate_project_number() == f"{stem}0003"

    def test_custom_prefix(self):
        assert generate_project_number("TRX").startswith("TRX")
