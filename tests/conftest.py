"""
Shared pytest fixtures for the AutoTrack test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: Engineering + Sales departments and one user per role
"""

from types import SimpleNamespace

import pytest

from autotrack import create_app
from autotrack.models import db as _db
from autotrack.models.directory import Department, User


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Directory fixtures ───────────────────────────────────────────────────


def make_user(name, email, *, role="employee", sub_role=None, department="", is_hod=False):
    """Insert a user without a password (X-User-Id / OAuth style account)."""
    user = User(
        name=name, email=email, role=role, sub_role=sub_role,
        department=department, is_hod=is_hod,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def org():
    """
    Engineering (HOD Alice) and Sales (no HOD) plus finance and admin users.

    Attributes: alice, bob (Engineering POC), carol (Engineering employee),
    dan (Sales employee), apa, apa2, am, admin.
    """
    _db.session.add_all([Department(name="Engineering"), Department(name="Sales")])
    _db.session.commit()
    return SimpleNamespace(
        alice=make_user("Alice", "alice@example.com", role="hod", department="Engineering", is_hod=True),
        bob=make_user("Bob", "bob@example.com", role="poc", department="Engineering"),
        carol=make_user("Carol", "carol@example.com", department="Engineering"),
        dan=make_user("Dan", "dan@example.com", department="Sales"),
        apa=make_user("Priya", "apa@example.com", role="finance", sub_role="apa"),
        apa2=make_user("Paul", "apa2@example.com", role="finance", sub_role="apa"),
        am=make_user("Amit", "am@example.com", role="finance", sub_role="am"),
        admin=make_user("Ada", "admin@example.com", role="admin"),
    )


def as_user(user):
    """Request headers identifying *user* (TRUST_USER_HEADER is on in testing)."""
    return {"X-User-Id": user.id}


@pytest.fixture()
def headers():
    return as_user
