"""
CLI tests against a SQLite file database.

Verifies:
- init-db creates the pipeline (and optionally source) tables
- A batch runs end to end through sub-commands; export writes the artifact
- Exit codes: 1 refused, 2 bad arguments/config, 3 source unavailable
"""

import json
from datetime import date, datetime
from decimal import Decimal
from io import StringIO

import pytest

from export_kernel.db.engine import build_engine
from expense_export.cli import EXIT_OK, EXIT_REFUSED, EXIT_RETRY, EXIT_USAGE, main
from expense_export.collaborators.sql import employee_profiles, per_diem_calculations
from expense_export.orchestrator import ExportOrchestrator


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    monkeypatch.delenv("EXPENSE_EXPORT_CONFIG", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return f"sqlite:///{tmp_path / 'exports.db'}"


@pytest.fixture
def run(database_url):
    """Run the CLI; returns (exit code, parsed stdout or None, parsed stderr or None)."""

    def _run(*argv):
        out, err = StringIO(), StringIO()
        code = main(["--database-url", database_url, *argv], stdout=out, stderr=err)
        parsed_out = json.loads(out.getvalue()) if out.getvalue() else None
        parsed_err = json.loads(err.getvalue()) if err.getvalue() else None
        return code, parsed_out, parsed_err

    return _run


@pytest.fixture
def seeded(run, database_url):
    code, _, _ = run("init-db", "--with-source-tables")
    assert code == EXIT_OK
    engine = build_engine(database_url)
    with engine.begin() as conn:
        conn.execute(
            employee_profiles.insert(),
            [
                {
                    "id": "user-1",
                    "employee_id": "P00001",
                    "first_name_en": "Huda",
                    "last_name_en": "Salem",
                    "department": "CC-100",
                    "entity": "HQ",
                },
            ],
        )
        conn.execute(
            per_diem_calculations.insert(),
            [
                {
                    "id": "pd-1",
                    "employee_id": "user-1",
                    "training_request_id": "tr-1",
                    "session_id": "sess-1",
                    "final_amount": Decimal("450.00"),
                    "estimated_amount": Decimal("400.00"),
                    "currency": "LYD",
                    "actual_end_date": date(2025, 1, 10),
                    "destination_country": "Tunisia",
                    "destination_city": "Tunis",
                    "status": "final",
                    "created_at": datetime(2025, 1, 12, 10, 0),
                },
            ],
        )
    engine.dispose()


class TestInitDb:
    def test_init_db(self, run):
        code, out, _ = run("init-db")
        assert code == EXIT_OK
        assert out == {"initialized": True, "sourceTables": False}

    def test_init_db_is_repeatable(self, run):
        run("init-db", "--with-source-tables")
        code, out, _ = run("init-db", "--with-source-tables")
        assert (code, out["sourceTables"]) == (EXIT_OK, True)


class TestBatchCommands:
    def test_end_to_end(self, run, seeded, tmp_path):
        code, created, _ = run("create-batch", "per_diem", "2025-01-01", "2025-01-31", "--notes", "January")
        assert code == EXIT_OK
        batch_id = created["batch"]["id"]

        code, pulled, _ = run("pull", batch_id)
        assert (code, pulled["recordsCount"], pulled["totalAmount"]) == (EXIT_OK, 1, "450.00")

        code, validated, _ = run("validate", batch_id)
        assert validated["status"] == "validated"

        code, exported, _ = run("export", batch_id, "--output-dir", str(tmp_path / "out"))
        assert code == EXIT_OK
        assert "fileContent" not in exported
        artifact = (tmp_path / "out" / exported["fileName"]).read_text(encoding="utf-8")
        lines = artifact.split("\n")
        assert lines[0].startswith("Export Key,Employee Payroll ID,Employee Name")
        assert '"Huda Salem"' in lines[1]
        assert ",CC-100," in lines[1]

        code, posted, _ = run("mark-posted", batch_id, "--reference", "ERP-2025-001")
        assert posted["batchStatus"] == "closed"

        code, recon, _ = run("reconciliation", "--batch", batch_id)
        assert (recon["postedAmount"], recon["variance"]) == ("450.00", "-450.00")

        code, trail, _ = run("audit-trail", batch_id)
        assert [e["action"] for e in trail["entries"]] == [
            "create_batch",
            "pull_records",
            "validate",
            "export",
            "mark_posted",
        ]
        code, verified, _ = run("verify-audit")
        assert verified == {"valid": True, "entryCount": 5}

    def test_list_and_records(self, run, seeded):
        _, created, _ = run("create-batch", "per_diem", "2025-01-01", "2025-01-31")
        batch_id = created["batch"]["id"]
        run("pull", batch_id)

        _, listed, _ = run("list-batches", "--export-type", "per_diem")
        _, records, _ = run("records", batch_id, "--status", "pending")

        assert listed["total"] == 1
        assert records["records"][0]["employeePayrollId"] == "P00001"

    def test_save_and_list_profiles(self, run, seeded, tmp_path):
        body = tmp_path / "profile.json"
        body.write_text(json.dumps({"profileName": "HQ", "exportType": "per_diem", "delimiter": ";"}))

        code, saved, _ = run("save-profile", str(body))
        _, listed, _ = run("list-profiles")

        assert code == EXIT_OK
        assert saved["profile"]["delimiter"] == ";"
        assert [p["profileName"] for p in listed["profiles"]] == ["HQ"]


class TestExitCodes:
    def test_refused_operation(self, run, seeded):
        code, out, err = run("validate", "00000000-0000-0000-0000-00000000dead")

        assert code == EXIT_REFUSED
        assert out is None
        assert err["error"]["code"] == "BATCH_NOT_FOUND"

    def test_overlap_refused(self, run, seeded):
        run("create-batch", "per_diem", "2025-01-01", "2025-01-31")
        code, _, err = run("create-batch", "combined", "2025-01-10", "2025-01-20")
        assert (code, err["error"]["code"]) == (EXIT_REFUSED, "BATCH_PERIOD_OVERLAP")

    def test_bad_date(self, run, seeded):
        code, _, err = run("create-batch", "per_diem", "January", "2025-01-31")
        assert (code, err["error"]["code"]) == (EXIT_USAGE, "BAD_REQUEST")

    def test_missing_config_file(self, run, tmp_path):
        code, _, err = run("--config", str(tmp_path / "missing.yaml"), "summary")
        assert (code, err["error"]["code"]) == (EXIT_USAGE, "CONFIG_ERROR")

    def test_unknown_command(self, run):
        with pytest.raises(SystemExit) as exc_info:
            run("explode")
        assert exc_info.value.code == 2

    def test_source_unavailable_is_retryable(self, run, seeded, tmp_path):
        _, created, _ = run("create-batch", "per_diem", "2025-01-01", "2025-01-31")
        empty_source = f"sqlite:///{tmp_path / 'empty.db'}"

        code, _, err = run("--source-url", empty_source, "pull", created["batch"]["id"])

        assert (code, err["error"]["code"]) == (EXIT_RETRY, "SOURCE_UNAVAILABLE")

    @pytest.mark.parametrize(
        "argv",
        [
            ("list-batches", "--page", "0"),
            ("records", "00000000-0000-0000-0000-00000000dead", "--page-size", "501"),
            ("--actor", "someone", "summary"),
            ("reconciliation", "--period", "January"),
        ],
    )
    def test_bad_arguments(self, run, seeded, argv):
        code, out, err = run(*argv)
        assert (code, err["error"]["code"]) == (EXIT_USAGE, "BAD_REQUEST")
        assert out is None

    def test_malformed_profile_body(self, run, seeded, tmp_path):
        body = tmp_path / "profile.json"
        body.write_text(json.dumps({"profileName": "HQ"}))

        code, _, err = run("save-profile", str(body))
        _, listed, _ = run("list-profiles")

        assert (code, err["error"]["code"]) == (EXIT_USAGE, "BAD_REQUEST")
        assert listed["profiles"] == []

    def test_unexpected_errors_propagate(self, run, seeded, monkeypatch):
        def broken(self):
            raise KeyError("summary")

        monkeypatch.setattr(ExportOrchestrator, "get_summary", broken)

        with pytest.raises(KeyError):
            run("summary")
