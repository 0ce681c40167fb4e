"""
Auth Service — registration, password login and federated login.

Portal matching: every login names the portal (role, and sub-role for
finance) the user is signing in to. A user whose directory role does not
match that portal is refused even with valid credentials. ``employee``
and ``poc`` share one portal.

Federated login takes the provider's OpenID Connect ID token, verified
against the provider's published keys by ``id_token_service``. The first
successful login links the token's subject id to the directory user with
that email; later logins must carry the same subject id.
"""

import logging

from email_validator import EmailNotValidError, validate_email

from autotrack.core.exceptions import AuthenticationError, ConflictError, ValidationError
from autotrack.models import db
from autotrack.models.directory import User
from autotrack.services import id_token_service
from autotrack.services.directory import SqlDirectory, validate_role
from autotrack.services.notification import SqlNotificationSink
from autotrack.utils.crypto import hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# Roles that must belong to a known department
_DEPARTMENT_ROLES = {"employee", "poc", "hod"}

_PORTAL_ALIASES = {"poc": "employee"}


def normalize_email(raw: str) -> str:
    """Validate syntax (no DNS lookups) and return the normalised, lower-cased address."""
    try:
        result = validate_email((raw or "").strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid email: {exc}", details={"email": raw}) from None
    return result.normalized.lower()


def _portal(role: str | None) -> str | None:
    return _PORTAL_ALIASES.get(role, role) if role else None


def _matches_portal(user: User, role: str | None, sub_role: str | None) -> bool:
    if not role:
        return True
    if _portal(user.role) != _portal(role):
        return False
    return role != "finance" or user.sub_role == sub_role


def _welcome(user: User, suffix: str = "") -> None:
    SqlNotificationSink().notify(
        user.id, f"Welcome back, {user.name}! You've successfully logged in{suffix}.",
    )


# ═══════════════════════════════════════════════════════════════
# Registration
# ═══════════════════════════════════════════════════════════════

def register_user(data: dict) -> User:
    """Create a password account. Duplicate emails are rejected."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters", details={"password": "too short"},
        )

    role = (data.get("role") or "employee").strip().lower()
    sub_role = (data.get("sub_role") or "").strip().lower() or None
    validate_role(role, sub_role)

    department = (data.get("department") or "").strip()
    directory = SqlDirectory()
    if department and not directory.department_exists(department):
        raise ValidationError(f"Unknown department: {department}", details={"department": department})
    if role in _DEPARTMENT_ROLES and not department:
        raise ValidationError("department is required", details={"department": "required"})

    if directory.get_user_by_email(email) is not None:
        raise ConflictError(
            resource="User", field="email", value=email,
            message="An account with this email already exists.",
        )

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
        sub_role=sub_role,
        department=department,
        is_hod=role == "hod" or bool(data.get("is_hod")),
    )
    db.session.add(user)
    db.session.commit()
    logger.info("User registered: %s role=%s", user.email, user.role, extra={"user_id": user.id})
    return user


# ═══════════════════════════════════════════════════════════════
# Login
# ═══════════════════════════════════════════════════════════════

def authenticate(email: str, password: str, role: str | None = None,
                 sub_role: str | None = None) -> User:
    """Email + password login against the portal named by *role*/*sub_role*."""
    if not email or not password:
        raise ValidationError("Email and password are required")

    user = SqlDirectory().get_user_by_email(email)
    if user is None:
        raise AuthenticationError("Account not found. Please register first.")
    if not verify_password(password, user.password_hash) or not _matches_portal(user, role, sub_role):
        logger.warning("Failed login for %s (portal=%s/%s)", user.email, role, sub_role)
        raise AuthenticationError("Invalid credentials. Please check your password and portal.")

    _welcome(user)
    logger.info("Login: %s", user.email, extra={"user_id": user.id})
    return user


def federated_login(provider: str, id_token: str, role: str | None = None,
                    sub_role: str | None = None) -> User:
    """Sign in with a Google / Microsoft ID token.

    Identity (subject and email) comes only from the verified token.
    """
    identity = id_token_service.verify_id_token(provider, id_token)
    column = identity.provider.uid_column
    subject = identity.subject
    label = identity.provider.name.capitalize()

    user = SqlDirectory().get_user_by_email(normalize_email(identity.email))
    if user is None:
        raise AuthenticationError(
            "You are not registered. Please create an account or contact an administrator."
        )
    if not _matches_portal(user, role, sub_role):
        raise AuthenticationError(f"Access Denied: Your {label} account does not match this portal's role.")

    linked = getattr(user, column)
    if linked and linked != subject:
        logger.warning("%s subject mismatch for %s", label, user.email, extra={"user_id": user.id})
        raise AuthenticationError(f"This {label} account is not linked to {user.email}.")
    if not linked:
        setattr(user, column, subject)
        db.session.commit()
        logger.info("Linked %s identity for %s", label, user.email, extra={"user_id": user.id})

    _welcome(user, f" with {label}")
    return user
