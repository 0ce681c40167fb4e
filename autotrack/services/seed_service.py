"""
Demo data for local development (``flask seed-demo``).

Creates two departments, each with an HOD and a requester, plus the finance
team (one APA, one AM) and an admin. Existing emails and departments are
left untouched, so the command can be re-run.
"""

import logging

from autotrack.models import db
from autotrack.models.directory import Department, User
from autotrack.services.directory import SqlDirectory
from autotrack.utils.crypto import hash_password

logger = logging.getLogger(__name__)

DEMO_DEPARTMENTS = ("Engineering", "Marketing")

DEMO_USERS = (
    # email, name, role, sub_role, department, is_hod
    ("admin@example.com", "Asha Admin", "admin", None, "", False),
    ("eng.hod@example.com", "Ravi Menon", "hod", None, "Engineering", True),
    ("eng.poc@example.com", "Neha Iyer", "poc", None, "Engineering", False),
    ("mkt.hod@example.com", "Kiran Shah", "hod", None, "Marketing", True),
    ("mkt.employee@example.com", "Dev Patel", "employee", None, "Marketing", False),
    ("apa@example.com", "Meera Rao", "finance", "apa", "", False),
    ("am@example.com", "Arjun Das", "finance", "am", "", False),
)


def seed_demo(password: str) -> dict:
    """Insert missing demo departments and users. Returns created counts."""
    directory = SqlDirectory()
    created = {"departments": 0, "users": 0}

    for name in DEMO_DEPARTMENTS:
        if not directory.department_exists(name):
            db.session.add(Department(name=name))
            created["departments"] += 1

    password_hash = hash_password(password)
    for email, name, role, sub_role, department, is_hod in DEMO_USERS:
        if directory.get_user_by_email(email) is not None:
            continue
        db.session.add(User(
            name=name, email=email, password_hash=password_hash, role=role,
            sub_role=sub_role, department=department, is_hod=is_hod,
        ))
        created["users"] += 1

    db.session.commit()
    logger.info("Demo seed: %d departments, %d users", created["departments"], created["users"])
    return created
