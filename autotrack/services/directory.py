"""
Directory Service — users and departments.

Two seams:
  - ``SqlDirectory``: read-only lookups the workflow engine depends on
    (user by id / email, HOD by department, users by role/sub-role,
    department existence). Lookups return ``None`` / ``[]`` for a miss;
    the caller decides whether that is an error.
  - Module functions for the admin-facing directory endpoints
    (list / update users, list / create departments). These own commits.

Usage:
    from autotrack.services.directory import SqlDirectory

    directory = SqlDirectory()
    hod = directory.resolve_hod("Engineering")
"""

import logging

from sqlalchemy import func

from autotrack.core.exceptions import ConflictError, NotFoundError, ValidationError
from autotrack.models import db
from autotrack.models.directory import ROLES, SUB_ROLES, Department, User

logger = logging.getLogger(__name__)


class SqlDirectory:
    """Directory lookups backed by the ``users`` / ``departments`` tables."""

    def get_user(self, user_id: str | None) -> User | None:
        if not user_id:
            return None
        return db.session.get(User, user_id)

    def get_user_by_email(self, email: str | None) -> User | None:
        if not email:
            return None
        return User.query.filter(func.lower(User.email) == email.strip().lower()).first()

    def resolve_hod(self, department: str | None) -> User | None:
        """The user flagged ``is_hod`` whose department matches, if any."""
        if not department:
            return None
        return (
            User.query
            .filter_by(department=department, is_hod=True)
            .order_by(User.created_at)
            .first()
        )

    def list_by_role(self, role: str, sub_role: str | None = None) -> list[User]:
        q = User.query.filter_by(role=role)
        if sub_role is not None:
            q = q.filter_by(sub_role=sub_role)
        return q.order_by(User.name).all()

    def department_exists(self, name: str | None) -> bool:
        if not name:
            return False
        return db.session.query(Department.id).filter_by(name=name).first() is not None


# ═══════════════════════════════════════════════════════════════
# Admin directory operations
# ═══════════════════════════════════════════════════════════════

# Fields an admin may change on a user record
_USER_EDITABLE = {"name", "role", "sub_role", "department", "is_hod"}


def list_users(*, role=None, sub_role=None, department=None, search=None):
    """Query for users, filtered; the caller paginates."""
    q = User.query
    if role:
        q = q.filter_by(role=role)
    if sub_role:
        q = q.filter_by(sub_role=sub_role)
    if department:
        q = q.filter_by(department=department)
    if search:
        term = f"%{search.lower()}%"
        q = q.filter(func.lower(User.name).like(term) | func.lower(User.email).like(term))
    return q.order_by(User.name)


def validate_role(role: str, sub_role: str | None) -> None:
    """Role / sub-role pairing rules shared by registration, import and admin edits."""
    if role not in ROLES:
        raise ValidationError(
            f"role must be one of: {', '.join(sorted(ROLES))}", details={"role": role},
        )
    if sub_role and sub_role not in SUB_ROLES:
        raise ValidationError(
            f"sub_role must be one of: {', '.join(sorted(SUB_ROLES))}", details={"sub_role": sub_role},
        )
    if sub_role and role != "finance":
        raise ValidationError("sub_role is only valid for finance users", details={"sub_role": sub_role})
    if role == "finance" and not sub_role:
        raise ValidationError("finance users need a sub_role (apa or am)", details={"sub_role": None})


def update_user(user_id: str, changes: dict) -> User:
    """Admin edit of role / department / HOD flag."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)

    unknown = set(changes) - _USER_EDITABLE
    if unknown:
        raise ValidationError(
            "Unsupported field(s) for user update",
            details={f: "not editable" for f in sorted(unknown)},
        )

    role = changes.get("role", user.role)
    sub_role = changes.get("sub_role", user.sub_role if role == "finance" else None)
    validate_role(role, sub_role)

    department = changes.get("department", user.department)
    if "department" in changes and not SqlDirectory().department_exists(department):
        raise ValidationError(f"Unknown department: {department}", details={"department": department})

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        user.name = name
    user.role = role
    user.sub_role = sub_role
    user.department = department
    if "is_hod" in changes:
        user.is_hod = bool(changes["is_hod"])
    db.session.commit()

    logger.info("User %s updated: %s", user.id, sorted(changes), extra={"user_id": user.id})
    return user


def list_departments() -> list[Department]:
    return Department.query.order_by(Department.name).all()


def create_department(name: str, *, commit: bool = True) -> Department:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Department name is required", details={"name": "required"})
    if SqlDirectory().department_exists(name):
        raise ConflictError(resource="Department", field="name", value=name)
    dept = Department(name=name)
    db.session.add(dept)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return dept
