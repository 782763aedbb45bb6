"""
Coefficient Registry Service.

Owns the company-wide KPI rate table and its append-only change log, and
produces the immutable ``CoefficientSnapshot`` that gets frozen into every
new project.

The service is registered on the app as
``app.extensions["coefficient_registry"]`` and handed to callers; nothing
reads the live registry to price an existing project.

Usage:
    from app.services.coefficient_registry import get_registry

    registry = get_registry()
    snapshot = registry.snapshot()
    project.locked_ratios = snapshot.to_dict()
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.coefficient import DEFAULT_COEFFICIENTS, CoefficientChange, CoefficientRegistry

logger = logging.getLogger(__name__)

EXTENSION_KEY = "coefficient_registry"

# Registry column → snapshot key
_SNAPSHOT_KEYS = {
    "translator_ratio_mtpe": "translator_mtpe",
    "translator_ratio_deepedit": "translator_deepedit",
    "reviewer_ratio": "reviewer",
    "pm_ratio": "pm",
    "sales_bonus_ratio": "sales_bonus",
    "sales_commission_ratio": "sales_commission",
    "admin_ratio": "admin",
    "completion_factor": "completion_factor",
    "part_time_sales_tax_rate": "part_time_sales_tax_rate",
}


def _flatten_role_ratios(role_ratios: dict) -> dict:
    """``{"layout": {"base": 0.02, "dtp": 0.03}}`` → ``{"layout": 0.02, "layout_dtp": 0.03}``."""
    flat = {}
    for role, value in (role_ratios or {}).items():
        if isinstance(value, dict):
            for sub, rate in value.items():
                key = role if sub == "base" else f"{role}_{sub}"
                flat[key] = float(rate)
        elif value is not None:
            flat[role] = float(value)
    return flat


# ── Snapshot value ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CoefficientSnapshot:
    """Rates frozen into a project at creation.  Copied by value, never shared."""

    translator_mtpe: float = DEFAULT_COEFFICIENTS["translator_ratio_mtpe"]
    translator_deepedit: float = DEFAULT_COEFFICIENTS["translator_ratio_deepedit"]
    reviewer: float = DEFAULT_COEFFICIENTS["reviewer_ratio"]
    pm: float = DEFAULT_COEFFICIENTS["pm_ratio"]
    sales_bonus: float = DEFAULT_COEFFICIENTS["sales_bonus_ratio"]
    sales_commission: float = DEFAULT_COEFFICIENTS["sales_commission_ratio"]
    admin: float = DEFAULT_COEFFICIENTS["admin_ratio"]
    completion_factor: float = DEFAULT_COEFFICIENTS["completion_factor"]
    part_time_sales_tax_rate: float = DEFAULT_COEFFICIENTS["part_time_sales_tax_rate"]
    role_ratios: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_registry(cls, registry: CoefficientRegistry) -> "CoefficientSnapshot":
        values = {key: float(getattr(registry, column)) for column, key in _SNAPSHOT_KEYS.items()}
        return cls(**values, role_ratios=MappingProxyType(_flatten_role_ratios(registry.role_ratios)))

    @classmethod
    def from_dict(cls, data: dict | None) -> "CoefficientSnapshot":
        """Rebuild from ``Project.locked_ratios``; unknown keys are dynamic role rates."""
        data = dict(data or {})
        fixed = {}
        for key in _SNAPSHOT_KEYS.values():
            if data.get(key) is not None:
                fixed[key] = float(data.pop(key))
            else:
                data.pop(key, None)
        extra = {k: float(v) for k, v in data.items() if isinstance(v, (int, float))}
        return cls(**fixed, role_ratios=MappingProxyType(extra))

    def to_dict(self) -> dict:
        d = {key: getattr(self, key) for key in _SNAPSHOT_KEYS.values()}
        d.update(self.role_ratios)
        return d

    def ratio_for(self, role: str, translator_type: str | None = None) -> float:
        """Rate for *role*; 0.0 when the snapshot has none (never raises)."""
        if role == "translator":
            return self.translator_deepedit if translator_type == "deepedit" else self.translator_mtpe
        if role == "reviewer":
            return self.reviewer
        if role == "pm":
            return self.pm
        if role == "sales":
            return self.sales_bonus
        if role == "admin_staff":
            return self.admin
        if role == "finance":
            return self.role_ratios.get("finance", self.admin)
        if translator_type and f"{role}_{translator_type}" in self.role_ratios:
            return self.role_ratios[f"{role}_{translator_type}"]
        return self.role_ratios.get(role, 0.0)


# ── Service ──────────────────────────────────────────────────────────────────

class CoefficientRegistryService:
    """Get-active / update-with-history contract over ``CoefficientRegistry``."""

    def get_active(self) -> CoefficientRegistry:
        """Return the active registry row, creating the defaults on first use."""
        registry = db.session.execute(
            select(CoefficientRegistry)
            .where(CoefficientRegistry.is_active.is_(True))
            .order_by(CoefficientRegistry.version.desc())
        ).scalars().first()
        if registry is None:
            registry = CoefficientRegistry(**DEFAULT_COEFFICIENTS, role_ratios={}, version=1, is_active=True)
            db.session.add(registry)
            db.session.flush()
            logger.info("Created default coefficient registry")
        return registry

    def snapshot(self) -> CoefficientSnapshot:
        return CoefficientSnapshot.from_registry(self.get_active())

    def pooled_ratio(self, role: str) -> float:
        """Live rate for a pooled role (finance falls back to the admin rate)."""
        return self.snapshot().ratio_for(role)

    def update(self, values: dict, *, reason: str | None = None, actor_id: int | None = None) -> CoefficientRegistry:
        """
        Apply *values* to the active registry, bump its version and append
        one history row.  Commits.

        Raises:
            ValidationError: unknown field or a rate outside [0, 1].
        """
        registry = self.get_active()
        allowed = set(DEFAULT_COEFFICIENTS) | {"role_ratios"}
        unknown = set(values) - allowed
        if unknown:
            raise ValidationError("Unknown coefficient fields", details={"fields": sorted(unknown)})

        changes = {}
        for key, raw in values.items():
            if key == "role_ratios":
                new = self._validate_role_ratios(raw)
            else:
                new = self._validate_rate(key, raw)
            old = getattr(registry, key)
            if old != new:
                changes[key] = (old, new)

        if not changes:
            db.session.commit()
            return registry

        old_values = {k: v[0] for k, v in changes.items()}
        new_values = {k: v[1] for k, v in changes.items()}
        for key, value in new_values.items():
            setattr(registry, key, value)
        registry.version = (registry.version or 1) + 1

        db.session.add(CoefficientChange(
            registry_id=registry.id,
            version=registry.version,
            old_values=old_values,
            new_values=new_values,
            reason=(reason or "")[:500] or None,
            changed_by=actor_id,
        ))
        try:
            write_audit(
                entity_type="coefficient_registry",
                entity_id=registry.id,
                action="coefficients.update",
                actor_user_id=actor_id,
                diff={k: {"old": o, "new": n} for k, (o, n) in changes.items()},
            )
        except Exception:
            logger.warning("Audit log failed for coefficient update — main flow unaffected", exc_info=True)

        db.session.commit()
        logger.info("Coefficient registry updated to v%s: %s", registry.version, sorted(changes))
        return registry

    def history(self, limit: int = 50) -> list[dict]:
        rows = db.session.execute(
            select(CoefficientChange).order_by(CoefficientChange.id.desc()).limit(limit)
        ).scalars().all()
        return [r.to_dict() for r in rows]

    # ── Validation ───────────────────────────────────────────────────────

    @staticmethod
    def _validate_rate(key: str, raw) -> float:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number", details={key: raw})
        if not 0 <= value <= 1:
            raise ValidationError(f"{key} must be between 0 and 1", details={key: value})
        return value

    @classmethod
    def _validate_role_ratios(cls, raw) -> dict:
        if not isinstance(raw, dict):
            raise ValidationError("role_ratios must be an object", details={"role_ratios": raw})
        cleaned = {}
        for role, value in raw.items():
            if isinstance(value, dict):
                cleaned[role] = {sub: cls._validate_rate(f"{role}.{sub}", rate) for sub, rate in value.items()}
            else:
                cleaned[role] = cls._validate_rate(role, value)
        return cleaned


def init_coefficient_registry(app) -> CoefficientRegistryService:
    service = CoefficientRegistryService()
    app.extensions[EXTENSION_KEY] = service
    return service


def get_registry() -> CoefficientRegistryService:
    return current_app.extensions[EXTENSION_KEY]
