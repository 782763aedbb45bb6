"""
Translation KPI Platform
Coefficient registry models.

Models:
    - CoefficientRegistry: the company-wide rate table (one active row)
    - CoefficientChange: append-only history of registry updates
"""

from datetime import datetime, timezone

from app.models import db


# ── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_COEFFICIENTS = {
    "translator_ratio_mtpe": 0.12,
    "translator_ratio_deepedit": 0.18,
    "reviewer_ratio": 0.08,
    "pm_ratio": 0.03,
    "sales_bonus_ratio": 0.02,
    "sales_commission_ratio": 0.10,
    "admin_ratio": 0.005,
    "completion_factor": 1.0,
    "part_time_sales_tax_rate": 0.0,
}


class CoefficientRegistry(db.Model):
    """Current company-wide KPI rates.

    ``role_ratios`` covers roles without a fixed column, e.g.
    ``{"finance": 0.004, "layout": {"base": 0.02, "dtp": 0.03}}``.
    """

    __tablename__ = "coefficient_registry"

    id = db.Column(db.Integer, primary_key=True)
    translator_ratio_mtpe = db.Column(db.Float, nullable=False, default=0.12)
    translator_ratio_deepedit = db.Column(db.Float, nullable=False, default=0.18)
    reviewer_ratio = db.Column(db.Float, nullable=False, default=0.08)
    pm_ratio = db.Column(db.Float, nullable=False, default=0.03)
    sales_bonus_ratio = db.Column(db.Float, nullable=False, default=0.02)
    sales_commission_ratio = db.Column(db.Float, nullable=False, default=0.10)
    admin_ratio = db.Column(db.Float, nullable=False, default=0.005)
    completion_factor = db.Column(db.Float, nullable=False, default=1.0)
    part_time_sales_tax_rate = db.Column(db.Float, nullable=False, default=0.0)
    role_ratios = db.Column(db.JSON, nullable=False, default=dict)

    version = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    changes = db.relationship(
        "CoefficientChange", backref="registry", lazy="dynamic",
        order_by="CoefficientChange.id.desc()",
    )

    def values(self) -> dict:
        """Fixed rates plus ``role_ratios`` as a plain dict."""
        data = {field: getattr(self, field) for field in DEFAULT_COEFFICIENTS}
        data["role_ratios"] = dict(self.role_ratios or {})
        return data

    def to_dict(self):
        return {
            "id": self.id,
            **self.values(),
            "version": self.version,
            "is_active": self.is_active,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<CoefficientRegistry v{self.version}>"


class CoefficientChange(db.Model):
    """One registry update: what changed, why and by whom.  Never updated."""

    __tablename__ = "coefficient_changes"

    id = db.Column(db.Integer, primary_key=True)
    registry_id = db.Column(
        db.Integer, db.ForeignKey("coefficient_registry.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False, comment="Registry version after the change")
    old_values = db.Column(db.JSON, nullable=False, default=dict)
    new_values = db.Column(db.JSON, nullable=False, default=dict)
    reason = db.Column(db.String(500), nullable=True)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "version": self.version,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "reason": self.reason,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }
