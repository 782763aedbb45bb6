"""
Translation KPI Platform
KPI ledger models.

Models:
    - KpiRecord: one persisted result per (user, project, role, month)
    - MonthlyRoleKPI: pooled-role result per (user, month, role)
    - KpiGenerationRun: month-generation marker and run report
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

EVALUATION_FACTORS = {"good": 1.1, "medium": 1.0, "poor": 0.8}
DEFAULT_EVALUATION_LEVEL = "medium"

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_STATUSES = {RUN_RUNNING, RUN_COMPLETED, RUN_FAILED}


class KpiRecord(db.Model):
    """Durable ledger row for one member's KPI on one project."""

    __tablename__ = "kpi_records"
    __table_args__ = (
        db.UniqueConstraint("user_id", "project_id", "role", "month", name="uq_kpi_records_natural_key"),
        db.Index("ix_kpi_records_month_user", "month", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(40), nullable=False)
    month = db.Column(db.String(7), nullable=False, comment="YYYY-MM")
    employment_type = db.Column(db.String(20), nullable=False, default="full_time")

    value = db.Column(db.Float, nullable=False, default=0.0)
    formula = db.Column(db.Text, nullable=False, default="")
    project_amount = db.Column(db.Float, nullable=True)
    ratio = db.Column(db.Float, nullable=True)
    workload_ratio = db.Column(db.Float, nullable=True)
    completion_factor = db.Column(db.Float, nullable=True)
    details = db.Column(db.JSON, nullable=False, default=dict)

    is_reviewed = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    calculated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", foreign_keys=[user_id])
    project = db.relationship("Project")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "project_id": self.project_id,
            "project_number": self.project.project_number if self.project else None,
            "role": self.role,
            "month": self.month,
            "employment_type": self.employment_type,
            "value": self.value,
            "formula": self.formula,
            "project_amount": self.project_amount,
            "ratio": self.ratio,
            "workload_ratio": self.workload_ratio,
            "completion_factor": self.completion_factor,
            "details": self.details or {},
            "is_reviewed": self.is_reviewed,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }

    def __repr__(self):
        return f"<KpiRecord {self.id}: user={self.user_id} project={self.project_id} {self.role} {self.month}>"


class MonthlyRoleKPI(db.Model):
    """Pooled-role KPI computed from the company-wide monthly total."""

    __tablename__ = "monthly_role_kpis"
    __table_args__ = (
        db.UniqueConstraint("user_id", "month", "role", name="uq_monthly_role_kpis_user_month_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=False, index=True)
    role = db.Column(db.String(40), nullable=False)

    total_company_amount = db.Column(db.Float, nullable=False, default=0.0)
    ratio = db.Column(db.Float, nullable=False, default=0.0)
    evaluation_level = db.Column(db.String(10), nullable=False, default=DEFAULT_EVALUATION_LEVEL)
    evaluation_factor = db.Column(db.Float, nullable=False, default=1.0)
    is_evaluated = db.Column(db.Boolean, nullable=False, default=False)
    evaluated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    evaluated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    value = db.Column(db.Float, nullable=False, default=0.0)
    formula = db.Column(db.Text, nullable=False, default="")

    is_reviewed = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    calculated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", foreign_keys=[user_id])

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "month": self.month,
            "role": self.role,
            "total_company_amount": self.total_company_amount,
            "ratio": self.ratio,
            "evaluation_level": self.evaluation_level,
            "evaluation_factor": self.evaluation_factor,
            "is_evaluated": self.is_evaluated,
            "evaluated_by": self.evaluated_by,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
            "value": self.value,
            "formula": self.formula,
            "is_reviewed": self.is_reviewed,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }

    def __repr__(self):
        return f"<MonthlyRoleKPI {self.id}: user={self.user_id} {self.role} {self.month}>"


class KpiGenerationRun(db.Model):
    """
    One month-generation job.

    The partial unique index allows at most one ``running`` row per month,
    which is the cross-process "generation in progress" marker.
    """

    __tablename__ = "kpi_generation_runs"
    __table_args__ = (
        db.Index(
            "uq_kpi_generation_runs_month_running",
            "month",
            unique=True,
            postgresql_where=db.text("status = 'running'"),
            sqlite_where=db.text("status = 'running'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    month = db.Column(db.String(7), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=RUN_RUNNING)
    force = db.Column(db.Boolean, nullable=False, default=False)
    started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_count = db.Column(db.Integer, nullable=False, default=0)
    updated_count = db.Column(db.Integer, nullable=False, default=0)
    skipped_count = db.Column(db.Integer, nullable=False, default=0)
    projects_processed = db.Column(db.Integer, nullable=False, default=0)
    company_total = db.Column(db.Float, nullable=True)
    errors = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "month": self.month,
            "status": self.status,
            "force": self.force,
            "started_by": self.started_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "skipped_count": self.skipped_count,
            "projects_processed": self.projects_processed,
            "company_total": self.company_total,
            "errors": self.errors or [],
        }

    def __repr__(self):
        return f"<KpiGenerationRun {self.id}: {self.month} [{self.status}]>"
