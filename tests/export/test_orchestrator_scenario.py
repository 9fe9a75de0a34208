"""
End-to-end tests through ExportOrchestrator.

Each orchestrator call owns its own transaction, so these tests read the
database only through fresh short-lived sessions between calls.

Verifies:
- The full draft -> validated -> exported -> closed run of one batch
- Deferred rows are picked up by a later batch under the same export key
- A failed operation rolls back completely, audit entry included
- Log records carry the operation context
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from export_kernel.exceptions import (
    AuditChainBrokenError,
    BatchNotFoundError,
    BatchPeriodOverlapError,
    ConflictError,
    SourceUnavailableError,
)
from expense_export.domain.types import SourceType
from expense_export.models.audit import AuditEntryModel
from expense_export.models.batch import ExportRecordModel


def _audit_count(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count(AuditEntryModel.id))).scalar_one()


def _seed(source, make_row, count, start=1, **overrides):
    for n in range(start, start + count):
        source.add(make_row(n, **overrides))


def _record_ids(orchestrator, batch_id):
    return [r["id"] for r in orchestrator.get_records(batch_id)["records"]]


class TestBatchLifecycle:
    def test_full_run(self, orchestrator, source, make_row, actor_id):
        _seed(source, make_row, 8)
        _seed(source, make_row, 2, start=9, cost_centre=None)

        batch = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31", actor_id=actor_id)["batch"]
        assert batch["batchNumber"] == "EXP-202501-00001"
        assert batch["status"] == "draft"

        pulled = orchestrator.pull_records(batch["id"], actor_id=actor_id)
        assert pulled["recordsCount"] == 10
        assert pulled["totalAmount"] == "5000.00"

        outcome = orchestrator.validate(batch["id"], actor_id=actor_id)
        assert outcome["status"] == "draft"
        assert outcome["errorCount"] == 2
        assert orchestrator.get_batch(batch["id"])["batch"]["hasValidationErrors"] is True

        # Fixed upstream, then picked up again
        source.update(SourceType.PER_DIEM, "per_diem-009", cost_centre="CC-100")
        source.update(SourceType.PER_DIEM, "per_diem-010", cost_centre="CC-100")
        orchestrator.pull_records(batch["id"], actor_id=actor_id)
        outcome = orchestrator.validate(batch["id"], actor_id=actor_id)
        assert (outcome["status"], outcome["errorCount"]) == ("validated", 0)

        exported = orchestrator.export(batch["id"], actor_id=actor_id)
        assert exported["recordsExported"] == 10
        assert len(exported["fileContent"].split("\n")) == 11
        assert orchestrator.get_batch(batch["id"])["batch"]["status"] == "exported"
        assert orchestrator.get_batch(batch["id"])["batch"]["exportedAt"] == "2025-02-03T09:00:00+00:00"

        record_ids = _record_ids(orchestrator, batch["id"])
        posted = orchestrator.mark_posted(batch["id"], record_ids[:7], actor_id=actor_id)
        assert posted["batchStatus"] == "exported"

        recon = orchestrator.get_reconciliation({"batchId": batch["id"]})
        assert recon["pendingAmount"] == "1500.00"
        assert recon["postedAmount"] == "3500.00"
        assert recon["exportedAmount"] == "1500.00"
        assert recon["variance"] == "-2000.00"
        assert Decimal(recon["variance"]) == Decimal(recon["exportedAmount"]) - Decimal(recon["postedAmount"])

        closed = orchestrator.mark_posted(batch["id"], record_ids[7:], actor_id=actor_id)
        assert closed["batchStatus"] == "closed"
        final = orchestrator.get_batch(batch["id"])["batch"]
        assert final["closedAt"] is not None
        assert final["totalAmount"] == "5000.00"
        settled = orchestrator.get_reconciliation()
        assert (settled["exportedAmount"], settled["pendingAmount"]) == ("0.00", "0.00")
        assert settled["variance"] == "-5000.00"

    def test_audit_trail_and_chain(self, orchestrator, source, make_row, actor_id):
        _seed(source, make_row, 2)
        batch_id = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        orchestrator.pull_records(batch_id)
        orchestrator.validate(batch_id)

        trail = orchestrator.get_audit_trail(batch_id)["entries"]

        assert [e["action"] for e in trail] == ["create_batch", "pull_records", "validate"]
        assert trail[0]["actorId"] == "00000000-0000-0000-0000-000000000001"
        assert orchestrator.verify_audit_chain() == {"valid": True, "entryCount": 3}

    def test_deferred_row_moves_to_later_batch(self, orchestrator, session_factory, source, make_row, actor_id):
        _seed(source, make_row, 3)
        first = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        orchestrator.pull_records(first)
        records = orchestrator.get_records(first)["records"]
        deferred = records[2]
        orchestrator.defer_records(first, [deferred["id"]])
        orchestrator.validate(first)
        orchestrator.export(first)
        orchestrator.mark_posted(first)
        assert orchestrator.get_batch(first)["batch"]["status"] == "closed"

        second = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        result = orchestrator.pull_records(second)

        assert result["newRecords"] == 1
        moved = orchestrator.get_records(second)["records"][0]
        assert moved["sourceId"] == deferred["sourceId"]
        assert moved["exportKey"] == deferred["exportKey"]
        with session_factory() as session:
            claims = session.execute(
                select(func.count(ExportRecordModel.id)).where(
                    ExportRecordModel.source_id == deferred["sourceId"]
                )
            ).scalar_one()
        assert claims == 2

    def test_delete_draft(self, orchestrator):
        batch_id = orchestrator.create_batch("tuition", "2025-01-01", "2025-01-31")["batch"]["id"]

        assert orchestrator.delete_batch(batch_id) == {"deleted": True, "batchNumber": "EXP-202501-00001"}
        with pytest.raises(BatchNotFoundError):
            orchestrator.get_batch(batch_id)


class TestFailures:
    def test_overlap_is_a_conflict(self, orchestrator, session_factory):
        orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")
        before = _audit_count(session_factory)

        with pytest.raises(BatchPeriodOverlapError) as exc_info:
            orchestrator.create_batch("combined", "2025-01-15", "2025-02-15")

        assert isinstance(exc_info.value, ConflictError)
        assert _audit_count(session_factory) == before
        assert orchestrator.list_batches()["total"] == 1

    def test_source_outage_rolls_back(self, orchestrator, session_factory, source, make_row):
        _seed(source, make_row, 3)
        batch_id = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        source.available = False
        before = _audit_count(session_factory)

        with pytest.raises(SourceUnavailableError):
            orchestrator.pull_records(batch_id)

        assert _audit_count(session_factory) == before
        assert orchestrator.get_records(batch_id)["total"] == 0

        # Retry succeeds once the source is back
        source.available = True
        assert orchestrator.pull_records(batch_id)["recordsCount"] == 3

    def test_storage_rejects_second_claim(self, orchestrator, session_factory, source, make_row):
        _seed(source, make_row, 1)
        batch_id = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        orchestrator.pull_records(batch_id)

        with session_factory() as session:
            original = session.execute(select(ExportRecordModel)).scalar_one()
            session.add(
                ExportRecordModel(
                    batch_id=original.batch_id,
                    source_type=original.source_type,
                    source_id=original.source_id,
                    export_key=original.export_key + "x",
                    status="included",
                    expense_type=original.expense_type,
                    amount=Decimal("1.00"),
                    currency="LYD",
                    created_by_id=original.created_by_id,
                )
            )
            with pytest.raises(IntegrityError):
                session.flush()
            session.rollback()

    def test_broken_chain_reported(self, orchestrator, session_factory):
        orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")
        orchestrator.create_batch("tuition", "2025-01-01", "2025-01-31")
        table = AuditEntryModel.__table__
        with session_factory() as session:
            session.execute(table.update().where(table.c.seq == 2).values(prev_hash="f" * 64))
            session.commit()

        with pytest.raises(AuditChainBrokenError):
            orchestrator.verify_audit_chain()

    def test_bad_paging_is_a_value_error(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.list_batches(page=0)


class TestLoggingContext:
    def test_operation_logs_carry_context(self, orchestrator, captured_logs, actor_id):
        batch_id = orchestrator.create_batch(
            "per_diem", "2025-01-01", "2025-01-31", actor_id=actor_id
        )["batch"]["id"]
        orchestrator.pull_records(batch_id, actor_id=actor_id)

        logs = captured_logs()
        completed = [r for r in logs if r["message"] == "operation_completed"]
        assert [r["operation"] for r in completed] == ["create_batch", "pull_records"]
        assert completed[1]["batch_id"] == batch_id
        assert completed[1]["actor_id"] == str(actor_id)
        pulled = next(r for r in logs if r["message"] == "records_pulled")
        assert pulled["correlation_id"] == completed[1]["correlation_id"]

    def test_failure_logged_with_code(self, orchestrator, captured_logs):
        with pytest.raises(BatchNotFoundError):
            orchestrator.validate("00000000-0000-0000-0000-00000000dead")

        failed = [r for r in captured_logs() if r["message"] == "operation_failed"]
        assert failed[0]["error_code"] == "BATCH_NOT_FOUND"
        assert failed[0]["level"] == "WARNING"


class TestProfilesAndReads:
    def test_profile_round_trip(self, orchestrator):
        saved = orchestrator.save_profile(
            {"profileName": "HQ per diem", "exportType": "per_diem", "defaultEntityFilter": ["HQ"]}
        )["profile"]

        batch = orchestrator.create_batch(
            "per_diem", "2025-01-01", "2025-01-31", profile_id=saved["id"]
        )["batch"]

        assert batch["entityFilter"] == ["HQ"]
        assert batch["profileId"] == saved["id"]
        assert [p["profileName"] for p in orchestrator.list_profiles()["profiles"]] == ["HQ per diem"]

    def test_summary_counts_exported_batches(self, orchestrator, source, make_row):
        _seed(source, make_row, 2)
        _seed(source, make_row, 1, start=3, destination_country="Egypt")
        batch_id = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")["batch"]["id"]
        orchestrator.pull_records(batch_id)
        orchestrator.validate(batch_id)
        orchestrator.export(batch_id)

        summary = orchestrator.get_summary()["summary"]

        assert summary["totalExported"] == "1500.00"
        assert summary["totalBatches"] == 1
        assert summary["byCountry"] == {"Egypt": "500.00", "Tunisia": "1000.00"}

    def test_list_batches_filtered(self, orchestrator):
        orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")
        orchestrator.create_batch("tuition", "2025-01-01", "2025-01-31")

        listed = orchestrator.list_batches(export_type="tuition")

        assert listed["total"] == 1
        assert listed["batches"][0]["exportType"] == "tuition"
