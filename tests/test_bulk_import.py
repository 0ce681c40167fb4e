"""
Tests for CSV bulk import of departments (with HOD / APA / AM contacts)
and users, including the batched commits and the Flask CLI wrappers.
"""

import pytest

from autotrack.models.directory import Department, User
from autotrack.services.bulk_import_service import (
    BulkImportError,
    import_departments,
    import_users,
    parse_csv,
)

DEPARTMENTS_CSV = (
    "No,Departments,HOD,HOD Mails,APA,APA mail,AM,AM Mail\n"
    "1,Engineering,Ravi,ravi@example.com,Meera,meera@example.com,Arjun,arjun@example.com\n"
    "2,Marketing,Kiran,kiran@example.com,Meera,meera@example.com,Arjun,arjun@example.com\n"
    "3,,,,,,,\n"
    "4,Legal,Lee,not-an-email,,,,\n"
)

USERS_HEADER = "email,name,role,sub_role,department,is_hod,password\n"


class TestParseCsv:
    def test_missing_columns(self):
        with pytest.raises(BulkImportError, match="missing column"):
            parse_csv("name,role\nA,employee\n", ["email"])

    def test_header_case_and_bom(self):
        rows = parse_csv("\ufeffEMAIL , Name\n a@example.com ,A\n".encode("utf-8"), ["email"])
        assert rows == [{"email": "a@example.com", "Name": "A", "row_num": 2}]


class TestImportDepartments:
    def test_creates_departments_and_contacts(self):
        result = import_departments(DEPARTMENTS_CSV, batch_size=1)

        assert result["departments_created"] == 2
        assert result["users_created"] == 4
        assert result["batches"] == 2
        assert [e["row_num"] for e in result["errors"]] == [4, 5]

        assert {d.name for d in Department.query} == {"Engineering", "Marketing"}
        ravi = User.query.filter_by(email="ravi@example.com").one()
        assert (ravi.role, ravi.department, ravi.is_hod) == ("hod", "Engineering", True)
        meera = User.query.filter_by(email="meera@example.com").one()
        assert (meera.role, meera.sub_role) == ("finance", "apa")
        assert User.query.filter_by(email="arjun@example.com").one().sub_role == "am"

    def test_rerun_skips_existing(self):
        import_departments(DEPARTMENTS_CSV)
        result = import_departments(DEPARTMENTS_CSV)
        assert result["departments_created"] == 0
        assert result["users_created"] == 0
        assert result["skipped"] == 2
        assert User.query.count() == 4


class TestImportUsers:
    def test_valid_rows_imported_invalid_reported(self, org):
        content = USERS_HEADER + (
            "new@example.com,New Person,employee,,Engineering,,pw123456\n"
            "bob@example.com,Bob,employee,,Engineering,,\n"
            "fin@example.com,Fin,finance,,,,\n"
            "new@example.com,Dup,employee,,Engineering,,\n"
            "lead@example.com,Lead,hod,,Sales,,\n"
            "who@example.com,Who,employee,,Legal,,\n"
        )
        result = import_users(content, batch_size=1)

        assert result["created"] == 2
        assert result["batches"] == 2
        errors = {e["row_num"]: e["errors"] for e in result["errors"]}
        assert errors[3] == ["User already exists: bob@example.com"]
        assert errors[4] == ["finance users need a sub_role (apa or am)"]
        assert errors[5] == ["Duplicate email in CSV: new@example.com"]
        assert errors[7] == ["Unknown department: Legal"]

        new = User.query.filter_by(email="new@example.com").one()
        assert new.password_hash.startswith("$2b$")
        lead = User.query.filter_by(email="lead@example.com").one()
        assert lead.is_hod is True
        assert lead.password_hash == ""

    def test_batching_commits_all_rows(self, org):
        content = USERS_HEADER + "".join(
            f"user{i}@example.com,User {i},employee,,Engineering,,\n" for i in range(5)
        )
        result = import_users(content, batch_size=2)
        assert result["created"] == 5
        assert result["batches"] == 3


class TestImportCli:
    def test_import_departments_command(self, app, tmp_path):
        path = tmp_path / "departments.csv"
        path.write_text(DEPARTMENTS_CSV)
        result = app.test_cli_runner().invoke(args=["import-departments", str(path)])
        assert result.exit_code == 0
        assert "Departments created: 2, users created: 4" in result.output

    def test_import_users_bad_file(self, app, tmp_path):
        path = tmp_path / "users.csv"
        path.write_text("name\nA\n")
        result = app.test_cli_runner().invoke(args=["import-users", str(path)])
        assert result.exit_code == 1
        assert "missing column(s): email" in result.output

    def test_seed_demo_is_idempotent(self, app):
        runner = app.test_cli_runner()
        first = runner.invoke(args=["seed-demo", "--password", "demo-pass"])
        second = runner.invoke(args=["seed-demo", "--password", "demo-pass"])
        assert "Seeded 2 departments and 7 users." in first.output
        assert "Seeded 0 departments and 0 users." in second.output
