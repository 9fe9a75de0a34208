"""
Shared helpers for the stage services.

Batch loading (with the stage row lock), record lookups scoped to a batch,
and the end-of-stage totals recomputation every stage finishes with.

Architecture: Services layer.  Imports only from export_kernel, the domain
package and the models.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from export_kernel.db.types import ZERO
from export_kernel.exceptions import BatchNotFoundError, RecordNotFoundError
from expense_export.domain.types import OPEN_POSTING_STATUSES, RecordStatus
from expense_export.models.batch import ExportBatchModel, ExportRecordModel

# Records that have passed validation at some point and not been deferred
_VALID_STATUSES = (
    RecordStatus.INCLUDED.value,
    RecordStatus.EXPORTED.value,
    RecordStatus.POSTED.value,
    RecordStatus.FAILED.value,
)


def as_uuid(value: UUID | str, not_found: type[Exception] = BatchNotFoundError) -> UUID:
    """Coerce an identifier; a malformed one is reported as not found."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise not_found(str(value)) from None


def load_batch(
    session: Session,
    batch_id: UUID | str,
    for_update: bool = False,
) -> ExportBatchModel:
    """
    Raises:
        BatchNotFoundError: no batch with this id.
    """
    query = select(ExportBatchModel).where(ExportBatchModel.id == as_uuid(batch_id))
    if for_update:
        # No-op on SQLite; row lock on PostgreSQL for the rest of the stage
        query = query.with_for_update()
    batch = session.execute(query).scalar_one_or_none()
    if batch is None:
        raise BatchNotFoundError(str(batch_id))
    return batch


def batch_records(
    session: Session,
    batch_id: UUID,
    statuses: Iterable[RecordStatus | str] | None = None,
) -> list[ExportRecordModel]:
    """Records of a batch in a stable order (source type, source id)."""
    query = select(ExportRecordModel).where(ExportRecordModel.batch_id == batch_id)
    if statuses is not None:
        query = query.where(
            ExportRecordModel.status.in_([RecordStatus(s).value for s in statuses])
        )
    query = query.order_by(ExportRecordModel.source_type, ExportRecordModel.source_id)
    return list(session.execute(query).scalars().all())


def records_by_id(
    session: Session,
    batch: ExportBatchModel,
    record_ids: Sequence[UUID | str],
) -> list[ExportRecordModel]:
    """
    Load the named records, in the order given, duplicates dropped.

    Raises:
        RecordNotFoundError: an id is malformed, unknown, or belongs to a
            different batch.
    """
    wanted: list[UUID] = []
    for raw in record_ids:
        try:
            record_id = raw if isinstance(raw, UUID) else UUID(str(raw))
        except ValueError:
            raise RecordNotFoundError(str(raw), str(batch.id)) from None
        if record_id not in wanted:
            wanted.append(record_id)

    found = {
        record.id: record
        for record in session.execute(
            select(ExportRecordModel).where(
                ExportRecordModel.batch_id == batch.id,
                ExportRecordModel.id.in_(wanted),
            )
        ).scalars()
    }
    for record_id in wanted:
        if record_id not in found:
            raise RecordNotFoundError(str(record_id), str(batch.id))
    return [found[record_id] for record_id in wanted]


def open_record_count(session: Session, batch_id: UUID) -> int:
    """Records still awaiting an external outcome (exported or failed)."""
    return session.execute(
        select(func.count(ExportRecordModel.id)).where(
            ExportRecordModel.batch_id == batch_id,
            ExportRecordModel.status.in_([s.value for s in OPEN_POSTING_STATUSES]),
        )
    ).scalar_one()


def recompute_totals(session: Session, batch: ExportBatchModel) -> None:
    """
    Rewrite the batch totals from its full record set.

    total_records / total_amount cover non-deferred records;
    deferred_records counts the rest.  error_records counts pending
    records that carry validation errors.
    """
    session.flush()
    total_records = 0
    valid_records = 0
    error_records = 0
    deferred_records = 0
    total_amount = ZERO
    for record in batch_records(session, batch.id):
        if record.status == RecordStatus.DEFERRED.value:
            deferred_records += 1
            continue
        total_records += 1
        total_amount += record.amount if record.amount is not None else ZERO
        if record.status in _VALID_STATUSES:
            valid_records += 1
        elif record.validation_errors:
            error_records += 1

    batch.total_records = total_records
    batch.valid_records = valid_records
    batch.error_records = error_records
    batch.deferred_records = deferred_records
    batch.total_amount = total_amount
    session.flush()
