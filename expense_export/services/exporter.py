"""
BatchExporter -- renders the flat export artifact for a batch.

Responsibility:
    ``export()`` serializes every included record of a validated batch;
    ``re_export()`` re-sends everything still open (exported or failed)
    under the same export keys.

Invariants enforced:
    - Export keys are never rewritten; a re-export carries the keys of the
      first export.
    - first_exported_at is set once; last_exported_at on every send.
    - Neither operation creates records or changes total_amount.
    - The file name date comes from the injected clock.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from export_config.schema import ArtifactSettings
from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import RecordClaimConflictError
from export_kernel.logging_config import get_logger
from expense_export.domain.artifact import artifact_file_name, render_artifact
from expense_export.domain.audit_details import BatchExportedDetails, BatchReExportedDetails
from expense_export.domain.types import (
    OPEN_POSTING_STATUSES,
    ExportResult,
    RecordStatus,
)
from expense_export.domain.workflow import next_batch_status, next_record_status
from expense_export.models.batch import ExportBatchModel, ExportProfileModel
from expense_export.services import _batch_helpers as helpers
from expense_export.services.auditor import ExportAuditor

logger = get_logger("services.exporter")


class BatchExporter:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        artifact: ArtifactSettings | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._artifact = artifact or ArtifactSettings()
        self._auditor = ExportAuditor(session, self._clock)

    def _delimiter(self, batch: ExportBatchModel) -> str:
        if batch.profile_id is not None:
            profile = self._session.get(ExportProfileModel, batch.profile_id)
            if profile is not None:
                return profile.delimiter
        return self._artifact.delimiter

    def export(self, batch_id: UUID | str, actor_id: UUID) -> ExportResult:
        """
        Raises:
            BatchNotFoundError: unknown batch.
            InvalidBatchTransitionError: batch is not validated.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        target = next_batch_status(batch.id, batch.status, "export")

        now = self._clock.now()
        records = helpers.batch_records(self._session, batch.id, (RecordStatus.INCLUDED,))
        for record in records:
            record.status = next_record_status(record.id, record.status, "export").value
            if record.first_exported_at is None:
                record.first_exported_at = now
            record.last_exported_at = now
            record.updated_by_id = actor_id

        file_name = artifact_file_name(batch.batch_number, self._clock.today())
        content = render_artifact(
            (record.to_dto() for record in records),
            delimiter=self._delimiter(batch),
            line_terminator=self._artifact.line_terminator,
        )

        old_status = batch.status
        batch.status = target
        batch.exported_at = now
        batch.exported_by = actor_id
        batch.export_file_name = file_name
        batch.updated_by_id = actor_id
        helpers.recompute_totals(self._session, batch)

        self._auditor.record(
            BatchExportedDetails(
                file_name=file_name,
                records_exported=len(records),
                total_amount=batch.total_amount,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.info(
            "batch_exported",
            extra={
                "batch_number": batch.batch_number,
                "file_name": file_name,
                "records_exported": len(records),
            },
        )
        return ExportResult(file_name=file_name, file_content=content, records_exported=len(records))

    def re_export(self, batch_id: UUID | str, actor_id: UUID) -> ExportResult:
        """
        Re-send open records.  Failed records go back to exported.

        Raises:
            BatchNotFoundError: unknown batch.
            InvalidBatchTransitionError: batch has not been exported.
            RecordClaimConflictError: a failed record's source row has
                since been claimed by another batch.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        target = next_batch_status(batch.id, batch.status, "re_export")

        now = self._clock.now()
        records = helpers.batch_records(self._session, batch.id, OPEN_POSTING_STATUSES)
        for record in records:
            if record.status == RecordStatus.FAILED.value:
                record.external_status = None
                record.failure_reason = None
            record.status = next_record_status(record.id, record.status, "re_export").value
            record.last_exported_at = now
            record.updated_by_id = actor_id
        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "record_claim_conflict",
                extra={"batch_number": batch.batch_number, "error": str(exc.orig)},
            )
            raise RecordClaimConflictError(str(batch.id), str(exc.orig)) from exc

        file_name = artifact_file_name(batch.batch_number, self._clock.today(), re_export=True)
        content = render_artifact(
            (record.to_dto() for record in records),
            delimiter=self._delimiter(batch),
            line_terminator=self._artifact.line_terminator,
        )

        old_status = batch.status
        batch.status = target
        batch.re_export_count = (batch.re_export_count or 0) + 1
        batch.export_file_name = file_name
        batch.updated_by_id = actor_id
        helpers.recompute_totals(self._session, batch)

        self._auditor.record(
            BatchReExportedDetails(
                file_name=file_name,
                records_exported=len(records),
                re_export_count=batch.re_export_count,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.info(
            "batch_re_exported",
            extra={
                "batch_number": batch.batch_number,
                "file_name": file_name,
                "records_exported": len(records),
                "re_export_count": batch.re_export_count,
            },
        )
        return ExportResult(file_name=file_name, file_content=content, records_exported=len(records))
