"""
Translation KPI Platform
Audit trail model.

Every lifecycle event (project transitions, member acceptance, KPI ledger
decisions, coefficient updates) appends one ``AuditLog`` row.  Rows are
never updated or deleted by the application.
"""

from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db

AUDIT_ACTIONS = {
    "project.create",
    "project.update",
    "project.start",
    "project.auto_transition",
    "project.advance",
    "project.complete",
    "project.cancel",
    "member.add",
    "member.remove",
    "member.accept",
    "member.reject",
    "kpi.review",
    "kpi.reject",
    "kpi.evaluate",
    "coefficients.update",
}


class AuditLog(db.Model):
    """One recorded action; ``changes`` maps field → {old, new}."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_project_ts", "project_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Null for CLI / system jobs",
    )
    changes = db.Column(db.JSON, nullable=False, default=dict)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "changes": self.changes or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} {self.entity_type}#{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, actor_user_id=None, project_id=None, diff=None) -> AuditLog:
    """Add one row and flush; the caller owns the commit."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action '{action}'")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=int(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        project_id=project_id,
        # JSON column: dates and Decimals become strings
        changes={k: {kk: _jsonable(vv) for kk, vv in v.items()} if isinstance(v, dict) else _jsonable(v)
                 for k, v in (diff or {}).items()},
    )
    db.session.add(log)
    db.session.flush()
    return log


def _jsonable(value):
    if value is None or isinstance(value, (bool, int, float, str, list)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def project_history(project_id: int, limit: int = 100) -> list[AuditLog]:
    """Audit rows for one project, newest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.project_id == project_id)
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    return db.session.execute(stmt).scalars().all()
