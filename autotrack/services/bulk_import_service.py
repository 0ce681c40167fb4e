"""
Bulk Import Service — departments and users from CSV.

Two formats:

  Departments sheet (one row per department, with its finance contacts):
      No, Departments, HOD, HOD Mails, APA, APA mail, AM, AM Mail
    → Department row, HOD user (role=hod, is_hod), APA user
      (finance/apa) and AM user (finance/am). A contact email that already
      exists, or repeats within the file, is not created twice.

  Users sheet:
      email, name, role, sub_role, department, is_hod, password
    → one User per row; password optional (OAuth-only accounts).

Rows are validated one by one; invalid rows are reported, valid rows are
written and committed in batches of ``IMPORT_BATCH_SIZE`` (default 500).
"""

import csv
import io
import logging

from email_validator import EmailNotValidError, validate_email
from flask import current_app

from autotrack.models import db
from autotrack.models.directory import ROLES, SUB_ROLES, Department, User
from autotrack.utils.crypto import hash_password

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

_TRUTHY = {"1", "true", "yes", "y"}


class BulkImportError(Exception):
    """Bulk import error (bad file, missing columns)."""

    def __init__(self, message, status_code=400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# CSV Parsing
# ═══════════════════════════════════════════════════════════════

def parse_csv(file_content: str | bytes, required: list[str]) -> list[dict]:
    """
    Parse CSV content into row dicts keyed by stripped header names.

    Each row carries ``row_num`` (header is row 1). Header matching is
    case-insensitive; keys keep the canonical spelling from *required*.
    """
    if isinstance(file_content, bytes):
        file_content = file_content.decode("utf-8-sig")  # Handle BOM

    reader = csv.DictReader(io.StringIO(file_content))
    fieldnames = [f.strip() for f in (reader.fieldnames or [])]
    canonical = {name.lower(): name for name in required}
    present = {f.lower() for f in fieldnames}
    missing = [name for name in required if name.lower() not in present]
    if missing:
        raise BulkImportError(
            f"CSV is missing column(s): {', '.join(missing)}. "
            f"Found columns: {', '.join(fieldnames)}"
        )

    rows = []
    for i, row in enumerate(reader, start=2):
        normalized = {}
        for k, v in row.items():
            if k is None:
                continue
            key = canonical.get(k.strip().lower(), k.strip())
            normalized[key] = (v or "").strip()
        normalized["row_num"] = i
        rows.append(normalized)
    return rows


def _normalize_email(raw: str) -> str:
    result = validate_email(raw, check_deliverability=False)
    return result.normalized.lower()


def _batch_size() -> int:
    try:
        return int(current_app.config.get("IMPORT_BATCH_SIZE", DEFAULT_BATCH_SIZE))
    except RuntimeError:
        return DEFAULT_BATCH_SIZE


class _BatchWriter:
    """Adds objects to the session and commits every *size* rows."""

    def __init__(self, size: int):
        self.size = max(size, 1)
        self.pending = 0
        self.batches = 0

    def add(self, *objects):
        for obj in objects:
            db.session.add(obj)
        self.pending += 1
        if self.pending >= self.size:
            self.flush()

    def flush(self):
        if not self.pending:
            return
        db.session.commit()
        self.batches += 1
        logger.info("Import batch %d committed (%d rows)", self.batches, self.pending)
        self.pending = 0


# ═══════════════════════════════════════════════════════════════
# Departments
# ═══════════════════════════════════════════════════════════════

def import_departments(file_content: str | bytes, batch_size: int | None = None) -> dict:
    """
    Import the departments sheet.

    Returns {"departments_created", "users_created", "skipped", "errors", "batches"}.
    """
    rows = parse_csv(file_content, ["Departments"])
    writer = _BatchWriter(batch_size or _batch_size())

    known_departments = {name for (name,) in db.session.query(Department.name)}
    known_emails = {email.lower() for (email,) in db.session.query(User.email)}

    result = {"departments_created": 0, "users_created": 0, "skipped": 0, "errors": []}

    for row in rows:
        name = row.get("Departments", "")
        if not name:
            result["errors"].append({"row_num": row["row_num"], "errors": ["Departments is required"]})
            continue

        contacts = []
        row_errors = []
        for name_col, email_col, role, sub_role in (
            ("HOD", "HOD Mails", "hod", None),
            ("APA", "APA mail", "finance", "apa"),
            ("AM", "AM Mail", "finance", "am"),
        ):
            raw_email = row.get(email_col, "")
            if not raw_email:
                continue
            try:
                email = _normalize_email(raw_email)
            except EmailNotValidError as e:
                row_errors.append(f"Invalid {email_col}: {e}")
                continue
            if email in known_emails:
                continue
            known_emails.add(email)
            contacts.append(User(
                name=row.get(name_col) or email.split("@")[0],
                email=email,
                role=role,
                sub_role=sub_role,
                department=name,
                is_hod=role == "hod",
            ))

        if row_errors:
            result["errors"].append({"row_num": row["row_num"], "errors": row_errors})
            continue

        objects = list(contacts)
        if name not in known_departments:
            known_departments.add(name)
            objects.insert(0, Department(name=name))
            result["departments_created"] += 1
        elif not contacts:
            result["skipped"] += 1
            continue

        result["users_created"] += len(contacts)
        writer.add(*objects)

    writer.flush()
    result["batches"] = writer.batches
    logger.info(
        "Department import: %d departments, %d users, %d errors",
        result["departments_created"], result["users_created"], len(result["errors"]),
    )
    return result


# ═══════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════

class _UserRowChecker:
    """Checks users-sheet rows against the directory and the rows before them."""

    def __init__(self):
        self.taken = {email.lower() for (email,) in db.session.query(User.email)}
        self.in_file: set[str] = set()
        self.departments = {name for (name,) in db.session.query(Department.name)}

    def _email(self, raw: str, problems: list[str]) -> str:
        if not raw:
            problems.append("Email is required")
            return ""
        try:
            email = _normalize_email(raw)
        except EmailNotValidError as exc:
            problems.append(f"Invalid email: {exc}")
            email = raw.lower()
        if email in self.in_file:
            problems.append(f"Duplicate email in CSV: {email}")
        elif email in self.taken:
            problems.append(f"User already exists: {email}")
        self.in_file.add(email)
        return email

    @staticmethod
    def _roles(row: dict, problems: list[str]) -> tuple[str, str | None]:
        role = (row.get("role") or "employee").lower()
        sub_role = (row.get("sub_role") or "").lower() or None
        if role not in ROLES:
            problems.append(f"Unknown role '{role}'. Available: {', '.join(sorted(ROLES))}")
        elif role == "finance" and sub_role is None:
            problems.append("finance users need a sub_role (apa or am)")
        if sub_role is not None:
            if sub_role not in SUB_ROLES:
                problems.append(f"Unknown sub_role '{sub_role}'")
            elif role != "finance":
                problems.append("sub_role is only valid for finance users")
        return role, sub_role

    def check(self, row: dict) -> tuple[dict | None, list[str]]:
        problems: list[str] = []
        email = self._email(row.get("email", "").strip(), problems)
        role, sub_role = self._roles(row, problems)
        department = row.get("department", "")
        if department and department not in self.departments:
            problems.append(f"Unknown department: {department}")
        if problems:
            return None, problems
        return {
            "name": row.get("name") or email.split("@")[0],
            "email": email,
            "role": role,
            "sub_role": sub_role,
            "department": department,
            "is_hod": role == "hod" or row.get("is_hod", "").lower() in _TRUTHY,
            "password": row.get("password", ""),
        }, []


def validate_user_rows(rows: list[dict]) -> dict:
    """Split parsed rows into ``{"valid": [...], "errors": [...]}``."""
    checker = _UserRowChecker()
    valid, errors = [], []
    for row in rows:
        record, problems = checker.check(row)
        if problems:
            errors.append({"row_num": row["row_num"], "email": row.get("email", ""), "errors": problems})
        else:
            valid.append({"row_num": row["row_num"], **record})
    return {"valid": valid, "errors": errors}


def import_users(file_content: str | bytes, batch_size: int | None = None) -> dict:
    """
    Validate and import the users sheet.

    Returns {"created", "errors", "batches"}.
    """
    rows = parse_csv(file_content, ["email"])
    checked = validate_user_rows(rows)
    writer = _BatchWriter(batch_size or _batch_size())

    for row in checked["valid"]:
        writer.add(User(
            name=row["name"],
            email=row["email"],
            password_hash=hash_password(row["password"]) if row["password"] else "",
            role=row["role"],
            sub_role=row["sub_role"],
            department=row["department"],
            is_hod=row["is_hod"],
        ))
    writer.flush()

    logger.info("User import: %d created, %d errors", len(checked["valid"]), len(checked["errors"]))
    return {"created": len(checked["valid"]), "errors": checked["errors"], "batches": writer.batches}
