"""
BatchService -- batch creation, deletion, deferral and read-side queries.

Responsibility:
    Owns the batch row outside the four pipeline stages: numbering a new
    batch, refusing overlapping periods, deleting drafts, deferring
    records to a later batch, and the list / detail / summary reads.

Architecture position:
    Services -- imperative shell.  Receives a session and a clock, never
    commits; the orchestrator owns the transaction.

Invariants enforced:
    - period_start < period_end.
    - No two non-closed batches with conflicting export types and
      overlapping scopes cover intersecting periods.
    - Only draft batches are deleted, and only through the batch workflow.
    - Totals are recomputed after every deferral.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from export_kernel.db.types import ZERO
from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import BatchPeriodOverlapError, InvalidBatchPeriodError
from export_kernel.logging_config import get_logger
from export_kernel.services.sequence_service import SequenceService
from expense_export.domain.audit_details import (
    BatchCreatedDetails,
    BatchDeletedDetails,
    RecordsDeferredDetails,
)
from expense_export.domain.types import (
    BatchScope,
    BatchStatus,
    DeferResult,
    ExportBatch,
    ExportRecord,
    ExportType,
    RecordStatus,
    money_str,
)
from expense_export.domain.workflow import next_batch_status, next_record_status
from expense_export.models.batch import ExportBatchModel, ExportRecordModel
from expense_export.services import _batch_helpers as helpers
from expense_export.services.auditor import ExportAuditor
from expense_export.services.profile_service import ProfileService

logger = get_logger("services.batches")

MAX_PAGE_SIZE = 500

_SUMMARY_RECORD_STATUSES = (RecordStatus.EXPORTED.value, RecordStatus.POSTED.value)
_SUMMARY_BATCH_STATUSES = (
    BatchStatus.EXPORTED.value,
    BatchStatus.RE_EXPORTED.value,
    BatchStatus.CLOSED.value,
)


def check_page(page: int, page_size: int) -> None:
    if page < 1:
        raise ValueError(f"page must be >= 1, got {page}")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")


@dataclass(frozen=True)
class ExportSummary:
    """Totals across everything that has left the building."""

    total_exported: Decimal
    total_batches: int
    total_records: int
    by_country: dict[str, Decimal] = field(default_factory=dict)
    by_expense_type: dict[str, Decimal] = field(default_factory=dict)
    by_posting_period: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalExported": money_str(self.total_exported),
            "totalBatches": self.total_batches,
            "totalRecords": self.total_records,
            "byCountry": {k: money_str(v) for k, v in sorted(self.by_country.items())},
            "byExpenseType": {k: money_str(v) for k, v in sorted(self.by_expense_type.items())},
            "byPostingPeriod": {
                k: money_str(v) for k, v in sorted(self.by_posting_period.items())
            },
        }


class BatchService:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        default_currency: str = "LYD",
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._default_currency = default_currency
        self._auditor = ExportAuditor(session, self._clock)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _find_overlap(
        self,
        export_type: ExportType,
        period_start: date,
        period_end: date,
        scope: BatchScope,
    ) -> ExportBatchModel | None:
        candidates = self._session.execute(
            select(ExportBatchModel).where(
                ExportBatchModel.status != BatchStatus.CLOSED.value,
                ExportBatchModel.period_start <= period_end,
                ExportBatchModel.period_end >= period_start,
            ).order_by(ExportBatchModel.batch_number)
        ).scalars()
        for other in candidates:
            if not export_type.conflicts_with(ExportType(other.export_type)):
                continue
            if scope.overlaps(BatchScope.of(other.entity_filter, other.cost_centre_filter)):
                return other
        return None

    def create_batch(
        self,
        export_type: ExportType,
        period_start: date,
        period_end: date,
        actor_id: UUID,
        scope: BatchScope | None = None,
        profile_id: UUID | str | None = None,
        notes: str | None = None,
    ) -> ExportBatchModel:
        """
        Create a draft batch.

        A profile's default filters apply when no scope is given.

        Raises:
            InvalidBatchPeriodError: period_start is not before period_end.
            ExportProfileNotFoundError: unknown profile_id.
            BatchPeriodOverlapError: a conflicting active batch covers the period.
        """
        if period_start >= period_end:
            raise InvalidBatchPeriodError(period_start.isoformat(), period_end.isoformat())

        scope = scope or BatchScope()
        profile = None
        if profile_id is not None:
            profile = ProfileService(self._session, self._clock).get_profile(profile_id)
            if scope.is_unrestricted:
                scope = profile.to_dto().default_scope

        conflicting = self._find_overlap(export_type, period_start, period_end, scope)
        if conflicting is not None:
            logger.warning(
                "batch_period_overlap",
                extra={
                    "export_type": export_type.value,
                    "conflicting_batch_number": conflicting.batch_number,
                },
            )
            raise BatchPeriodOverlapError(export_type.value, conflicting.batch_number)

        period_key = period_start.strftime("%Y%m")
        seq = SequenceService(self._session).next_value(
            SequenceService.batch_number_sequence(period_key)
        )
        batch = ExportBatchModel(
            batch_number=f"EXP-{period_key}-{seq:05d}",
            export_type=export_type.value,
            period_start=period_start,
            period_end=period_end,
            status=BatchStatus.DRAFT.value,
            entity_filter=sorted(scope.entities) or None,
            cost_centre_filter=sorted(scope.cost_centres) or None,
            currency=self._default_currency,
            profile_id=profile.id if profile is not None else None,
            notes=notes,
            created_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(batch)
        self._session.flush()

        self._auditor.record(
            BatchCreatedDetails(
                batch_number=batch.batch_number,
                export_type=batch.export_type,
                period_start=period_start.isoformat(),
                period_end=period_end.isoformat(),
                entity_filter=tuple(sorted(scope.entities)),
                cost_centre_filter=tuple(sorted(scope.cost_centres)),
                profile_id=str(profile.id) if profile is not None else None,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            new_status=batch.status,
        )
        logger.info(
            "batch_created",
            extra={
                "batch_number": batch.batch_number,
                "export_type": batch.export_type,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
            },
        )
        return batch

    def delete_batch(self, batch_id: UUID | str, actor_id: UUID) -> str:
        """
        Physically remove a draft batch and its records.

        The audit entry outlives the batch.

        Raises:
            BatchNotFoundError, InvalidBatchTransitionError.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        target = next_batch_status(batch.id, batch.status, "delete")

        self._auditor.record(
            BatchDeletedDetails(batch_number=batch.batch_number, export_type=batch.export_type),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=batch.status,
            new_status=target,
        )
        batch_number = batch.batch_number
        self._session.delete(batch)
        self._session.flush()
        logger.info("batch_deleted", extra={"batch_number": batch_number})
        return batch_number

    def defer_records(
        self,
        batch_id: UUID | str,
        record_ids: Sequence[UUID | str],
        actor_id: UUID,
    ) -> DeferResult:
        """
        Move pending or included records out of this batch's run.

        A deferred record releases its source row, so a later batch can
        pick it up under the same export key.  Deferring an already
        deferred record is a no-op.

        Raises:
            BatchNotFoundError, RecordNotFoundError,
            InvalidBatchTransitionError, InvalidRecordTransitionError.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        target = next_batch_status(batch.id, batch.status, "defer_records")
        records = helpers.records_by_id(self._session, batch, record_ids)

        changed: list[str] = []
        for record in records:
            if record.status == RecordStatus.DEFERRED.value:
                continue
            record.status = next_record_status(record.id, record.status, "defer").value
            record.updated_by_id = actor_id
            changed.append(str(record.id))

        old_status = batch.status
        batch.status = target
        helpers.recompute_totals(self._session, batch)

        self._auditor.record(
            RecordsDeferredDetails(
                record_ids=tuple(changed),
                deferred_records=batch.deferred_records,
            ),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.info(
            "records_deferred",
            extra={"deferred_count": len(changed), "deferred_records": batch.deferred_records},
        )
        return DeferResult(deferred_count=len(changed), batch_status=BatchStatus(batch.status))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_batch(self, batch_id: UUID | str) -> ExportBatch:
        return helpers.load_batch(self._session, batch_id).to_dto()

    def list_batches(
        self,
        status: BatchStatus | None = None,
        export_type: ExportType | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[ExportBatch], int]:
        """One page of batches, newest first, plus the unpaged total."""
        check_page(page, page_size)
        conditions = []
        if status is not None:
            conditions.append(ExportBatchModel.status == BatchStatus(status).value)
        if export_type is not None:
            conditions.append(ExportBatchModel.export_type == ExportType(export_type).value)

        total = self._session.execute(
            select(func.count(ExportBatchModel.id)).where(*conditions)
        ).scalar_one()
        models = self._session.execute(
            select(ExportBatchModel)
            .where(*conditions)
            .order_by(ExportBatchModel.created_at.desc(), ExportBatchModel.batch_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()
        return [model.to_dto() for model in models], total

    def get_records(
        self,
        batch_id: UUID | str,
        status: RecordStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[ExportRecord], int]:
        """
        Raises:
            BatchNotFoundError: unknown batch.
        """
        check_page(page, page_size)
        batch = helpers.load_batch(self._session, batch_id)
        conditions = [ExportRecordModel.batch_id == batch.id]
        if status is not None:
            conditions.append(ExportRecordModel.status == RecordStatus(status).value)

        total = self._session.execute(
            select(func.count(ExportRecordModel.id)).where(*conditions)
        ).scalar_one()
        models = self._session.execute(
            select(ExportRecordModel)
            .where(*conditions)
            .order_by(ExportRecordModel.source_type, ExportRecordModel.source_id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()
        return [model.to_dto() for model in models], total

    def get_summary(self) -> ExportSummary:
        records = self._session.execute(
            select(
                ExportRecordModel.amount,
                ExportRecordModel.destination_country,
                ExportRecordModel.expense_type,
                ExportRecordModel.posting_period,
            ).where(ExportRecordModel.status.in_(_SUMMARY_RECORD_STATUSES))
        ).all()
        batch_count = self._session.execute(
            select(func.count(ExportBatchModel.id)).where(
                ExportBatchModel.status.in_(_SUMMARY_BATCH_STATUSES)
            )
        ).scalar_one()

        total = ZERO
        by_country: dict[str, Decimal] = defaultdict(lambda: ZERO)
        by_type: dict[str, Decimal] = defaultdict(lambda: ZERO)
        by_period: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for amount, country, expense_type, period in records:
            amount = amount if amount is not None else ZERO
            total += amount
            by_country[country or "Unknown"] += amount
            by_type[expense_type or "Unknown"] += amount
            by_period[period or "Unknown"] += amount

        return ExportSummary(
            total_exported=total,
            total_batches=batch_count,
            total_records=len(records),
            by_country=dict(by_country),
            by_expense_type=dict(by_type),
            by_posting_period=dict(by_period),
        )
