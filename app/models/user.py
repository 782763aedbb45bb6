"""
Translation KPI Platform
User reference model.

User administration lives outside this service; rows here are the
read-only directory the KPI engine needs: display names, held roles and
whether the account is still active.
"""

from datetime import datetime, timezone

from app.models import db


class User(db.Model):
    """Staff member with one or more role codes."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    roles = db.Column(db.JSON, nullable=False, default=list, comment="List of role codes")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def has_role(self, role: str) -> bool:
        return role in (self.roles or [])

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "roles": list(self.roles or []),
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username}>"
