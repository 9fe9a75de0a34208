"""
RecordPuller -- brings eligible source rows into a draft batch.

Responsibility:
    Reads source rows and incidents for the batch period, applies the
    batch scope, skips anything another batch already holds, and upserts
    export records keyed by their deterministic export key.

Architecture position:
    Services -- imperative shell.  Both collaborators are read before the
    first write, so an unavailable source leaves the database untouched.

Invariants enforced:
    - The batch must be draft (batch workflow ``pull_records``).
    - A source row included/exported/posted by a different batch is never
      pulled again.
    - A row deferred in this batch stays deferred; it is not re-pulled.
    - Pending and included records already in the batch are refreshed in
      place; id and export key never change.
    - The partial unique indexes on claiming records are the last line of
      defence against a concurrent pull; a violation surfaces as
      RecordClaimConflictError.

Failure modes:
    - BatchNotFoundError, InvalidBatchTransitionError.
    - SourceUnavailableError before any write.
    - RecordClaimConflictError on a storage uniqueness violation.
"""

from __future__ import annotations

from collections import defaultdict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from export_config.schema import ExpenseTypeDef, PipelineSettings
from export_kernel.db.types import to_decimal
from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import RecordClaimConflictError
from export_kernel.logging_config import get_logger
from export_kernel.utils.hashing import compute_export_key
from expense_export.collaborators.base import (
    IncidentCollaborator,
    IncidentRef,
    SourceRecordCollaborator,
    SourceRow,
)
from expense_export.domain.audit_details import RecordsPulledDetails
from expense_export.domain.types import (
    CLAIMED_ELSEWHERE_STATUSES,
    BatchScope,
    DateBasis,
    ExportType,
    PullResult,
    RecordStatus,
    SourceType,
)
from expense_export.domain.workflow import next_batch_status
from expense_export.models.batch import ExportProfileModel, ExportRecordModel
from expense_export.services import _batch_helpers as helpers
from expense_export.services.auditor import ExportAuditor

logger = get_logger("services.puller")

_REFRESHABLE = (RecordStatus.PENDING.value, RecordStatus.INCLUDED.value)


def _incident_index(incidents: list[IncidentRef]) -> dict[tuple[str, str | None], list[str]]:
    index: dict[tuple[str, str | None], list[str]] = defaultdict(list)
    for incident in incidents:
        index[incident.join_key].append(incident.incident_id)
    return {key: sorted(set(ids)) for key, ids in index.items()}


class RecordPuller:
    def __init__(
        self,
        session: Session,
        source: SourceRecordCollaborator,
        incidents: IncidentCollaborator,
        settings: PipelineSettings,
        clock: Clock | None = None,
    ):
        self._session = session
        self._source = source
        self._incidents = incidents
        self._settings = settings
        self._clock = clock or SystemClock()
        self._auditor = ExportAuditor(session, self._clock)

    def _claimed_elsewhere(self, batch_id: UUID, rows: list[SourceRow]) -> set[tuple[str, str]]:
        if not rows:
            return set()
        source_ids = sorted({row.source_id for row in rows})
        claimed = self._session.execute(
            select(ExportRecordModel.source_type, ExportRecordModel.source_id).where(
                ExportRecordModel.batch_id != batch_id,
                ExportRecordModel.source_id.in_(source_ids),
                ExportRecordModel.status.in_([s.value for s in CLAIMED_ELSEWHERE_STATUSES]),
            )
        ).all()
        return {(source_type, source_id) for source_type, source_id in claimed}

    def _apply_row(
        self,
        record: ExportRecordModel,
        row: SourceRow,
        expense_type: ExpenseTypeDef,
        gl_account: str | None,
        incident_ids: list[str],
    ) -> None:
        posting_date = row.expense_date or row.recorded_date
        record.employee_id = row.employee_id
        record.employee_payroll_id = row.employee_payroll_id
        record.employee_name = row.employee_name
        record.entity = row.entity
        record.training_request_id = row.training_request_id
        record.session_id = row.session_id
        record.trip_id = row.trip_id
        record.course_name = row.course_name
        record.expense_type = expense_type.code
        record.amount = to_decimal(row.amount)
        record.currency = row.currency or self._settings.default_currency
        record.cost_centre = row.cost_centre
        record.gl_account = gl_account
        record.expense_date = row.expense_date
        record.posting_period = posting_date.strftime("%Y-%m") if posting_date else None
        record.destination_country = row.destination_country
        record.destination_city = row.destination_city
        record.has_incident_adjustment = bool(incident_ids)
        record.incident_ids = incident_ids or None

    def pull_records(self, batch_id: UUID | str, actor_id: UUID) -> PullResult:
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        next_batch_status(batch.id, batch.status, "pull_records")

        profile = (
            self._session.get(ExportProfileModel, batch.profile_id)
            if batch.profile_id is not None
            else None
        )
        date_basis = DateBasis(profile.date_basis) if profile else DateBasis.EXPENSE_DATE
        export_type = ExportType(batch.export_type)
        source_types = export_type.source_types
        type_defs = {
            st: self._settings.expense_type_for(st.value) for st in source_types
        }

        # Reads first: nothing is written if either collaborator is down
        rows = self._source.fetch_rows(
            source_types,
            batch.period_start,
            batch.period_end,
            {st: d.eligible_statuses for st, d in type_defs.items()},
            date_basis,
        )
        incidents = self._incidents.find_incidents(
            batch.period_start,
            batch.period_end,
            self._settings.incident_impacts,
        )
        incident_index = _incident_index(incidents)

        scope = BatchScope.of(batch.entity_filter, batch.cost_centre_filter)
        in_scope: dict[tuple[str, str], SourceRow] = {}
        for row in rows:
            if row.source_type in type_defs and scope.admits(row.entity, row.cost_centre):
                in_scope.setdefault((row.source_type.value, row.source_id), row)

        claimed = self._claimed_elsewhere(batch.id, list(in_scope.values()))
        existing = {
            (record.source_type, record.source_id): record
            for record in helpers.batch_records(self._session, batch.id)
        }

        new_records = 0
        refreshed_records = 0
        skipped_deferred = 0
        incident_adjusted = 0
        for key, row in in_scope.items():
            if key in claimed:
                continue
            type_def = type_defs[row.source_type]
            gl_account = (profile.default_gl_account if profile else None) or type_def.gl_account
            incident_ids = incident_index.get((row.employee_id, row.session_id), [])

            record = existing.get(key)
            if record is not None:
                if record.status == RecordStatus.DEFERRED.value:
                    skipped_deferred += 1
                    continue
                if record.status not in _REFRESHABLE:
                    continue
                record.updated_by_id = actor_id
                refreshed_records += 1
            else:
                record = ExportRecordModel(
                    batch_id=batch.id,
                    source_type=row.source_type.value,
                    source_id=row.source_id,
                    export_key=compute_export_key(
                        type_def.key_prefix, row.source_type.value, row.source_id
                    ),
                    status=RecordStatus.PENDING.value,
                    created_by_id=actor_id,
                )
                self._session.add(record)
                new_records += 1
            self._apply_row(record, row, type_def, gl_account, incident_ids)
            if incident_ids:
                incident_adjusted += 1

        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "record_claim_conflict",
                extra={"batch_number": batch.batch_number, "error": str(exc.orig)},
            )
            raise RecordClaimConflictError(str(batch.id), str(exc.orig)) from exc

        helpers.recompute_totals(self._session, batch)

        result = PullResult(
            records_count=batch.total_records,
            new_records=new_records,
            refreshed_records=refreshed_records,
            total_amount=batch.total_amount,
            incident_adjusted_count=incident_adjusted,
        )
        self._auditor.record(
            RecordsPulledDetails(
                records_count=result.records_count,
                new_records=new_records,
                refreshed_records=refreshed_records,
                total_amount=result.total_amount,
                incident_adjusted_count=incident_adjusted,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=batch.status,
            new_status=batch.status,
        )
        logger.info(
            "records_pulled",
            extra={
                "batch_number": batch.batch_number,
                "fetched": len(rows),
                "claimed_elsewhere": len(claimed),
                "skipped_deferred": skipped_deferred,
                "new_records": new_records,
                "refreshed_records": refreshed_records,
                "incident_adjusted_count": incident_adjusted,
            },
        )
        return result
