"""
PostingTracker -- external posting outcomes and reconciliation.

Responsibility:
    Records what the finance/ERP system reported back for exported
    records (posted or failed), closes a batch once nothing is left open,
    and compares exported against posted amounts.

Invariants enforced:
    - Only exported records may be posted or failed; posting an already
      posted record is a no-op.
    - A batch closes exactly when no record is exported or failed.
    - Reconciliation is read-only; variance is reported, never corrected.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.logging_config import get_logger
from expense_export.domain.audit_details import RecordsFailedDetails, RecordsPostedDetails
from expense_export.domain.reconciliation import (
    ReconciliationFilters,
    ReconciliationSummary,
    summarize,
)
from expense_export.domain.types import (
    RECONCILED_STATUSES,
    BatchStatus,
    ExternalStatus,
    PostingResult,
    RecordStatus,
)
from expense_export.domain.workflow import (
    TransitionContext,
    next_batch_status,
    next_record_status,
)
from expense_export.models.batch import ExportRecordModel
from expense_export.services import _batch_helpers as helpers
from expense_export.services.auditor import ExportAuditor

logger = get_logger("services.posting")


class PostingTracker:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = ExportAuditor(session, self._clock)

    def mark_posted(
        self,
        batch_id: UUID | str,
        actor_id: UUID,
        record_ids: Sequence[UUID | str] | None = None,
        external_reference: str | None = None,
    ) -> PostingResult:
        """
        Mark records as accepted by the external system.

        ``record_ids=None`` posts every record currently exported.

        Raises:
            BatchNotFoundError: unknown batch.
            RecordNotFoundError: a named record is not in this batch.
            InvalidBatchTransitionError: batch has not been exported.
            InvalidRecordTransitionError: a named record is neither
                exported nor already posted.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        # Rejects draft/validated/closed before touching any record
        next_batch_status(
            batch.id, batch.status, "mark_posted", TransitionContext(open_records=1)
        )

        if record_ids is None:
            records = helpers.batch_records(self._session, batch.id, (RecordStatus.EXPORTED,))
        else:
            records = helpers.records_by_id(self._session, batch, record_ids)

        now = self._clock.now()
        posted: list[str] = []
        for record in records:
            if record.status == RecordStatus.POSTED.value:
                continue
            record.status = next_record_status(record.id, record.status, "post").value
            record.external_status = ExternalStatus.POSTED.value
            if external_reference is not None:
                record.external_reference = external_reference
            record.updated_by_id = actor_id
            posted.append(str(record.id))
        self._session.flush()

        remaining = helpers.open_record_count(self._session, batch.id)
        old_status = batch.status
        batch.status = next_batch_status(
            batch.id, old_status, "mark_posted", TransitionContext(open_records=remaining)
        )
        if batch.status == BatchStatus.CLOSED.value and old_status != batch.status:
            batch.closed_at = now
        batch.updated_by_id = actor_id
        helpers.recompute_totals(self._session, batch)

        self._auditor.record(
            RecordsPostedDetails(
                record_ids=tuple(posted),
                external_reference=external_reference,
                batch_closed=batch.status == BatchStatus.CLOSED.value,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.info(
            "records_posted",
            extra={
                "batch_number": batch.batch_number,
                "posted_count": len(posted),
                "remaining_open": remaining,
                "status": batch.status,
            },
        )
        if batch.status == BatchStatus.CLOSED.value:
            logger.info("batch_closed", extra={"batch_number": batch.batch_number})
        return PostingResult(
            batch_status=BatchStatus(batch.status),
            updated_count=len(posted),
            remaining_open=remaining,
        )

    def mark_failed(
        self,
        batch_id: UUID | str,
        record_ids: Sequence[UUID | str],
        reason: str,
        actor_id: UUID,
    ) -> PostingResult:
        """
        Mark exported records as rejected by the external system.

        Failed records stay open until a re-export sends them again.

        Raises:
            BatchNotFoundError, RecordNotFoundError,
            InvalidBatchTransitionError, InvalidRecordTransitionError.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        target = next_batch_status(batch.id, batch.status, "mark_failed")
        records = helpers.records_by_id(self._session, batch, record_ids)

        failed: list[str] = []
        for record in records:
            record.status = next_record_status(record.id, record.status, "fail").value
            record.external_status = ExternalStatus.FAILED.value
            record.failure_reason = reason
            record.updated_by_id = actor_id
            failed.append(str(record.id))
        self._session.flush()

        old_status = batch.status
        batch.status = target
        batch.updated_by_id = actor_id
        helpers.recompute_totals(self._session, batch)
        remaining = helpers.open_record_count(self._session, batch.id)

        self._auditor.record(
            RecordsFailedDetails(record_ids=tuple(failed), reason=reason),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.warning(
            "records_failed",
            extra={
                "batch_number": batch.batch_number,
                "failed_count": len(failed),
                "reason": reason,
            },
        )
        return PostingResult(
            batch_status=BatchStatus(batch.status),
            updated_count=len(failed),
            remaining_open=remaining,
        )

    def get_reconciliation(
        self,
        filters: ReconciliationFilters | None = None,
    ) -> ReconciliationSummary:
        filters = filters or ReconciliationFilters()
        query = select(ExportRecordModel.status, ExportRecordModel.amount).where(
            ExportRecordModel.status.in_([s.value for s in RECONCILED_STATUSES])
        )
        if filters.batch_id is not None:
            query = query.where(ExportRecordModel.batch_id == helpers.as_uuid(filters.batch_id))
        if filters.posting_period is not None:
            query = query.where(ExportRecordModel.posting_period == filters.posting_period)
        if filters.export_type is not None:
            # A combined batch contributes its per-diem rows to a per_diem filter
            query = query.where(
                ExportRecordModel.source_type.in_(
                    [st.value for st in filters.export_type.source_types]
                )
            )

        summary = summarize(self._session.execute(query).all())
        logger.info(
            "reconciliation_computed",
            extra={
                "exported_count": summary.exported_count,
                "posted_count": summary.posted_count,
                "failed_count": summary.failed_count,
                "variance": str(summary.variance),
            },
        )
        return summary
