"""
Record Puller tests.

Verifies:
- Eligible rows in the period become pending records with stable keys
- Scope filters, eligible statuses and period bounds are enforced
- Re-pulling refreshes pending records in place and never re-pulls deferred ones
- Rows claimed by a different batch are excluded
- Incidents flag records by (employee_id, session_id)
- An unavailable collaborator fails before any write
- A storage uniqueness violation surfaces as ConflictError
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from export_kernel.exceptions import (
    ConflictError,
    InvalidBatchTransitionError,
    RecordClaimConflictError,
    SourceUnavailableError,
)
from export_kernel.utils.hashing import compute_export_key
from expense_export.domain.types import (
    BatchScope,
    DateBasis,
    ExportProfile,
    ExportType,
    RecordStatus,
    SourceType,
)
from expense_export.models.audit import AuditEntryModel
from expense_export.services import RecordPuller
from expense_export.services._batch_helpers import batch_records

JANUARY = (date(2025, 1, 1), date(2025, 1, 31))


class TestPullNewRecords:
    def test_creates_pending_records(self, db_session, draft_batch, seed_rows, puller, actor_id):
        seed_rows(4)

        result = puller.pull_records(draft_batch.id, actor_id)

        assert result.to_dict() == {
            "recordsCount": 4,
            "newRecords": 4,
            "refreshedRecords": 0,
            "totalAmount": "2000.00",
            "incidentAdjustedCount": 0,
        }
        records = batch_records(db_session, draft_batch.id)
        assert [r.status for r in records] == ["pending"] * 4
        assert draft_batch.total_records == 4
        assert draft_batch.total_amount == Decimal("2000.00")

    def test_record_fields(self, db_session, draft_batch, seed_rows, puller, actor_id):
        seed_rows(1)
        puller.pull_records(draft_batch.id, actor_id)

        record = batch_records(db_session, draft_batch.id)[0]
        assert record.export_key == compute_export_key("PD", "per_diem", "per_diem-001")
        assert record.expense_type == "PER_DIEM_TRAINING"
        assert record.gl_account == "6410"
        assert record.posting_period == "2025-01"
        assert record.employee_payroll_id == "P00001"
        assert record.cost_centre == "CC-100"
        assert record.created_by_id == actor_id

    def test_missing_currency_defaults(self, db_session, draft_batch, seed_rows, puller, actor_id):
        seed_rows(1, currency=None)
        puller.pull_records(draft_batch.id, actor_id)
        assert batch_records(db_session, draft_batch.id)[0].currency == "LYD"

    def test_posting_period_falls_back_to_recorded_date(
        self, db_session, batches, profiles, source, make_row, settings, incidents, clock, actor_id
    ):
        # Recorded-date profile so a row without an expense date is still in period
        profile = profiles.save_profile(
            ExportProfile(
                id=None,
                profile_name="Recorded basis",
                export_type=ExportType.PER_DIEM,
                date_basis=DateBasis.RECORDED_DATE,
            ),
            actor_id,
        )
        batch = batches.create_batch(ExportType.PER_DIEM, *JANUARY, actor_id, profile_id=profile.id)
        source.add(make_row(1, expense_date=None, recorded_date=date(2025, 1, 20)))

        RecordPuller(db_session, source, incidents, settings, clock).pull_records(batch.id, actor_id)

        record = batch_records(db_session, batch.id)[0]
        assert record.expense_date is None
        assert record.posting_period == "2025-01"


class TestPullFiltering:
    def test_period_bounds_inclusive(self, db_session, draft_batch, seed_rows, puller, actor_id):
        seed_rows(1, expense_date=date(2025, 1, 1))
        seed_rows(1, start=2, expense_date=date(2025, 1, 31))
        seed_rows(1, start=3, expense_date=date(2025, 2, 1))
        seed_rows(1, start=4, expense_date=date(2024, 12, 31))

        result = puller.pull_records(draft_batch.id, actor_id)

        assert result.new_records == 2

    def test_ineligible_status_excluded(self, draft_batch, seed_rows, puller, actor_id):
        seed_rows(2)
        seed_rows(1, start=3, status="draft")
        assert puller.pull_records(draft_batch.id, actor_id).new_records == 2

    def test_other_source_types_excluded(self, draft_batch, seed_rows, make_row, source, puller, actor_id):
        seed_rows(2)
        source.add(make_row(9, source_type=SourceType.TUITION))
        assert puller.pull_records(draft_batch.id, actor_id).new_records == 2

    def test_scope_filters(self, db_session, batches, seed_rows, puller, actor_id):
        batch = batches.create_batch(
            ExportType.PER_DIEM, *JANUARY, actor_id, scope=BatchScope.of(["HQ"], ["CC-100"])
        )
        seed_rows(2)
        seed_rows(1, start=3, entity="Branch")
        seed_rows(1, start=4, cost_centre="CC-200")

        puller.pull_records(batch.id, actor_id)

        assert {r.source_id for r in batch_records(db_session, batch.id)} == {
            "per_diem-001",
            "per_diem-002",
        }

    def test_combined_batch_pulls_every_type(self, db_session, batches, source, make_row, puller, actor_id):
        batch = batches.create_batch(ExportType.COMBINED, *JANUARY, actor_id)
        source.add(make_row(1))
        source.add(make_row(2, source_type=SourceType.TUITION))
        source.add(make_row(3, source_type=SourceType.TRAVEL_COST))

        puller.pull_records(batch.id, actor_id)

        records = batch_records(db_session, batch.id)
        assert {r.export_key[:2] for r in records} == {"PD", "TU", "TC"}
        assert {r.gl_account for r in records} == {"6410", "6420", "6430"}


class TestRepull:
    def test_refresh_keeps_id_and_key(self, db_session, draft_batch, seed_rows, source, puller, actor_id):
        seed_rows(2)
        puller.pull_records(draft_batch.id, actor_id)
        before = {r.source_id: (r.id, r.export_key) for r in batch_records(db_session, draft_batch.id)}

        source.update(SourceType.PER_DIEM, "per_diem-001", amount=Decimal("750.00"))
        result = puller.pull_records(draft_batch.id, actor_id)

        assert (result.new_records, result.refreshed_records) == (0, 2)
        records = {r.source_id: r for r in batch_records(db_session, draft_batch.id)}
        assert {k: (r.id, r.export_key) for k, r in records.items()} == before
        assert records["per_diem-001"].amount == Decimal("750.00")
        assert draft_batch.total_amount == Decimal("1250.00")

    def test_deferred_row_stays_deferred(
        self, db_session, draft_batch, seed_rows, batches, puller, actor_id
    ):
        seed_rows(2)
        puller.pull_records(draft_batch.id, actor_id)
        first = batch_records(db_session, draft_batch.id)[0]
        batches.defer_records(draft_batch.id, [first.id], actor_id)

        result = puller.pull_records(draft_batch.id, actor_id)

        assert result.new_records == 0
        assert result.refreshed_records == 1
        assert first.status == RecordStatus.DEFERRED.value
        assert (draft_batch.total_records, draft_batch.deferred_records) == (1, 1)

    def test_vanished_source_row_left_in_place(
        self, db_session, draft_batch, seed_rows, source, puller, actor_id
    ):
        seed_rows(2)
        puller.pull_records(draft_batch.id, actor_id)
        source.remove(SourceType.PER_DIEM, "per_diem-002")

        puller.pull_records(draft_batch.id, actor_id)

        assert len(batch_records(db_session, draft_batch.id)) == 2


class TestClaims:
    def test_rows_claimed_by_closed_batch_excluded(
        self, db_session, exported_batch, posting, batches, seed_rows, puller, actor_id
    ):
        posting.mark_posted(exported_batch.id, actor_id)
        seed_rows(1, start=4)

        second = batches.create_batch(ExportType.PER_DIEM, *JANUARY, actor_id)
        result = puller.pull_records(second.id, actor_id)

        assert result.new_records == 1
        assert [r.source_id for r in batch_records(db_session, second.id)] == ["per_diem-004"]

    def test_pending_claim_elsewhere_is_a_conflict(
        self, db_session, batches, profiles, source, make_row, puller, actor_id
    ):
        # Expense-date basis sees the row in the first half of January,
        # recorded-date basis in the second half.
        first = batches.create_batch(ExportType.PER_DIEM, date(2025, 1, 1), date(2025, 1, 15), actor_id)
        profile = profiles.save_profile(
            ExportProfile(
                id=None,
                profile_name="By recorded date",
                export_type=ExportType.PER_DIEM,
                date_basis=DateBasis.RECORDED_DATE,
            ),
            actor_id,
        )
        second = batches.create_batch(
            ExportType.PER_DIEM, date(2025, 1, 16), date(2025, 1, 31), actor_id, profile_id=profile.id
        )
        source.add(make_row(1, expense_date=date(2025, 1, 10), recorded_date=date(2025, 1, 20)))
        puller.pull_records(first.id, actor_id)

        with pytest.raises(RecordClaimConflictError) as exc_info:
            puller.pull_records(second.id, actor_id)
        assert isinstance(exc_info.value, ConflictError)


class TestIncidents:
    def test_matching_incident_flags_record(
        self, db_session, draft_batch, seed_rows, incidents, make_incident, puller, actor_id
    ):
        seed_rows(2)
        incident = make_incident("emp-001", "sess-001")
        incidents.add(incident)
        incidents.add(make_incident("emp-002", "sess-999"))
        incidents.add(make_incident("emp-002", "sess-002", training_impact="none"))

        result = puller.pull_records(draft_batch.id, actor_id)

        assert result.incident_adjusted_count == 1
        records = {r.source_id: r for r in batch_records(db_session, draft_batch.id)}
        assert records["per_diem-001"].has_incident_adjustment is True
        assert records["per_diem-001"].incident_ids == [incident.incident_id]
        assert records["per_diem-002"].has_incident_adjustment is False
        assert records["per_diem-002"].incident_ids is None

    def test_incident_outside_period_ignored(
        self, draft_batch, seed_rows, incidents, make_incident, puller, actor_id
    ):
        seed_rows(1)
        incidents.add(make_incident("emp-001", "sess-001", incident_date=date(2025, 3, 1)))
        assert puller.pull_records(draft_batch.id, actor_id).incident_adjusted_count == 0


class TestPullFailures:
    def _audit_count(self, db_session):
        return db_session.execute(select(func.count(AuditEntryModel.id))).scalar_one()

    def test_source_unavailable_writes_nothing(
        self, db_session, draft_batch, seed_rows, source, puller, actor_id
    ):
        seed_rows(3)
        source.available = False
        audit_before = self._audit_count(db_session)

        with pytest.raises(SourceUnavailableError) as exc_info:
            puller.pull_records(draft_batch.id, actor_id)

        assert exc_info.value.retryable
        assert batch_records(db_session, draft_batch.id) == []
        assert self._audit_count(db_session) == audit_before

    def test_incidents_unavailable_writes_nothing(
        self, db_session, draft_batch, seed_rows, incidents, puller, actor_id
    ):
        seed_rows(3)
        incidents.available = False
        with pytest.raises(SourceUnavailableError):
            puller.pull_records(draft_batch.id, actor_id)
        assert batch_records(db_session, draft_batch.id) == []

    def test_only_draft_batches(self, draft_batch, seed_rows, puller, validator, actor_id):
        seed_rows(1)
        puller.pull_records(draft_batch.id, actor_id)
        validator.validate(draft_batch.id, actor_id)

        with pytest.raises(InvalidBatchTransitionError):
            puller.pull_records(draft_batch.id, actor_id)

    def test_audit_entry_per_pull(self, db_session, draft_batch, seed_rows, puller, actor_id):
        seed_rows(1)
        before = self._audit_count(db_session)
        puller.pull_records(draft_batch.id, actor_id)
        puller.pull_records(draft_batch.id, actor_id)
        assert self._audit_count(db_session) == before + 2
