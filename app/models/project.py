"""
Translation KPI Platform
Project domain models.

Models:
    - Project: aggregate root of one priced translation job
    - ProjectMember: one assignment of a user to a project in a role
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_PENDING = "pending"
STATUS_SCHEDULED = "scheduled"
STATUS_IN_PROGRESS = "in_progress"
STATUS_TRANSLATION_DONE = "translation_done"
STATUS_REVIEW_DONE = "review_done"
STATUS_LAYOUT_DONE = "layout_done"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

# Position in this list is what "forward" means for manual transitions.
STATUS_ORDER = [
    STATUS_PENDING,
    STATUS_SCHEDULED,
    STATUS_IN_PROGRESS,
    STATUS_TRANSLATION_DONE,
    STATUS_REVIEW_DONE,
    STATUS_LAYOUT_DONE,
    STATUS_COMPLETED,
]
PROJECT_STATUSES = set(STATUS_ORDER) | {STATUS_CANCELLED}
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED}

PRODUCTION_ROLES = {"translator", "reviewer", "layout", "part_time_translator"}
POOLED_ROLES = {"admin_staff", "finance"}
MEMBER_ROLES = PRODUCTION_ROLES | {"pm", "sales", "part_time_sales"}

TRANSLATOR_TYPES = {"mtpe", "deepedit"}
EMPLOYMENT_TYPES = {"full_time", "part_time"}
PAYMENT_STATUSES = {"unpaid", "partially_paid", "paid"}
BUSINESS_TYPES = {"translation", "interpretation", "transcription", "localization", "other"}

REJECTION_REASON_MAX = 500


class Project(db.Model):
    """
    Priced translation job.

    ``locked_ratios`` is the coefficient snapshot copied from the registry at
    creation; KPI formulas read rates from it and never from the live
    registry.  The acceptance counters mirror the member rows and are
    maintained under the per-project lock.
    """

    __tablename__ = "projects"
    __table_args__ = (
        db.Index("ix_projects_status_completed", "status", "completed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_number = db.Column(db.String(40), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    client_name = db.Column(db.String(200), nullable=True)
    business_type = db.Column(db.String(30), nullable=False, default="translation")
    word_count = db.Column(db.Integer, nullable=True)
    unit_price = db.Column(db.Numeric(15, 2, asdecimal=False), nullable=True,
                           comment="Price per thousand words")
    amount = db.Column(db.Numeric(15, 2, asdecimal=False), nullable=False)

    status = db.Column(db.String(30), nullable=False, default=STATUS_PENDING, index=True)
    deadline = db.Column(db.Date, nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Quality flags ──
    revision_count = db.Column(db.Integer, nullable=False, default=0)
    is_delayed = db.Column(db.Boolean, nullable=False, default=False)
    has_complaint = db.Column(db.Boolean, nullable=False, default=False)

    # ── Payment sub-record ──
    payment_received_amount = db.Column(db.Numeric(15, 2, asdecimal=False), nullable=True)
    payment_received_at = db.Column(db.Date, nullable=True)
    payment_expected_at = db.Column(db.Date, nullable=True)
    payment_is_fully_paid = db.Column(db.Boolean, nullable=False, default=False)
    payment_status = db.Column(db.String(20), nullable=False, default="unpaid")

    # ── Part-time sales sub-record ──
    part_time_sales_enabled = db.Column(db.Boolean, nullable=False, default=False)
    company_receivable = db.Column(db.Numeric(15, 2, asdecimal=False), nullable=True)
    part_time_sales_tax_rate = db.Column(db.Float, nullable=True)

    # ── Member acceptance summary ──
    pending_count = db.Column(db.Integer, nullable=False, default=0)
    accepted_count = db.Column(db.Integer, nullable=False, default=0)
    rejected_count = db.Column(db.Integer, nullable=False, default=0)

    locked_ratios = db.Column(db.JSON, nullable=False, default=dict,
                              comment="Coefficient snapshot taken at creation")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    members = db.relationship(
        "ProjectMember", backref="project", cascade="all, delete-orphan",
        order_by="ProjectMember.id",
    )
    creator = db.relationship("User", foreign_keys=[created_by])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def all_confirmed(self) -> bool:
        return self.pending_count == 0 and self.rejected_count == 0 and self.accepted_count > 0

    def to_dict(self, include_members=False):
        d = {
            "id": self.id,
            "project_number": self.project_number,
            "name": self.name,
            "client_name": self.client_name,
            "business_type": self.business_type,
            "word_count": self.word_count,
            "unit_price": self.unit_price,
            "amount": self.amount,
            "status": self.status,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "revision_count": self.revision_count,
            "is_delayed": self.is_delayed,
            "has_complaint": self.has_complaint,
            "payment": {
                "received_amount": self.payment_received_amount,
                "received_at": self.payment_received_at.isoformat() if self.payment_received_at else None,
                "expected_at": self.payment_expected_at.isoformat() if self.payment_expected_at else None,
                "is_fully_paid": self.payment_is_fully_paid,
                "status": self.payment_status,
            },
            "part_time_sales": {
                "enabled": self.part_time_sales_enabled,
                "company_receivable": self.company_receivable,
                "tax_rate": self.part_time_sales_tax_rate,
            },
            "member_acceptance": {
                "pending_count": self.pending_count,
                "accepted_count": self.accepted_count,
                "rejected_count": self.rejected_count,
                "all_confirmed": self.all_confirmed,
            },
            "locked_ratios": dict(self.locked_ratios or {}),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_members:
            d["members"] = [m.to_dict() for m in self.members]
        return d

    def __repr__(self):
        return f"<Project {self.id}: {self.project_number} [{self.status}]>"


class ProjectMember(db.Model):
    """Assignment of a user to a project in one role."""

    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", "role", name="uq_project_members_project_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(40), nullable=False)
    translator_type = db.Column(db.String(20), nullable=True, comment="mtpe | deepedit")
    employment_type = db.Column(db.String(20), nullable=False, default="full_time")
    workload_ratio = db.Column(db.Float, nullable=False, default=1.0)
    part_time_fee = db.Column(db.Numeric(15, 2, asdecimal=False), nullable=True)
    ratio_locked = db.Column(db.Float, nullable=True, comment="Rate copied from the project snapshot")

    acceptance_status = db.Column(db.String(20), nullable=False, default="pending")
    acceptance_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(REJECTION_REASON_MAX), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User")

    @property
    def is_production(self) -> bool:
        return self.role in PRODUCTION_ROLES

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "role": self.role,
            "translator_type": self.translator_type,
            "employment_type": self.employment_type,
            "workload_ratio": self.workload_ratio,
            "part_time_fee": self.part_time_fee,
            "ratio_locked": self.ratio_locked,
            "acceptance_status": self.acceptance_status,
            "acceptance_at": self.acceptance_at.isoformat() if self.acceptance_at else None,
            "rejection_reason": self.rejection_reason,
        }

    def __repr__(self):
        return f"<ProjectMember {self.id}: user={self.user_id} role={self.role} [{self.acceptance_status}]>"
