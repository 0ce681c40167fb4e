"""
AutoTrack — Subscription Request & Approval Service
Directory models — users and departments.

Models:
    - Department: a known department name; subscriptions must reference one.
    - User: portal account (employee/POC, HOD, finance APA/AM, admin).

HOD routing is flag-based: a department's HOD is the user with
``is_hod=True`` whose ``department`` matches. There is no FK from
Department to its HOD so that the HOD can change without touching
historical subscriptions.
"""

import uuid
from datetime import datetime, timezone

from autotrack.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROLES = {"employee", "poc", "hod", "finance", "admin"}
SUB_ROLES = {"apa", "am"}

# Roles that may originate subscription requests
REQUESTER_ROLES = {"employee", "poc", "hod", "admin"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Department {self.name}>"


class User(db.Model):
    """Portal account.

    ``password_hash`` is empty for accounts that only sign in through an
    external identity provider; ``google_uid`` / ``microsoft_uid`` are
    attached on first federated login.
    """

    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_department_hod", "department", "is_hod"),
        db.Index("ix_users_role_sub_role", "role", "sub_role"),
    )

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(256), nullable=False, default="")
    role = db.Column(
        db.String(20), nullable=False, default="employee",
        comment="employee | poc | hod | finance | admin",
    )
    sub_role = db.Column(db.String(10), nullable=True, comment="apa | am (finance only)")
    department = db.Column(db.String(120), nullable=False, default="")
    is_hod = db.Column(db.Boolean, nullable=False, default=False)
    google_uid = db.Column(db.String(128), nullable=True)
    microsoft_uid = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_finance(self, sub_role: str | None = None) -> bool:
        if self.role != "finance":
            return False
        return sub_role is None or self.sub_role == sub_role

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "sub_role": self.sub_role,
            "department": self.department,
            "is_hod": self.is_hod,
            "has_password": bool(self.password_hash),
            "google_linked": bool(self.google_uid),
            "microsoft_linked": bool(self.microsoft_uid),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.email} role={self.role}>"
