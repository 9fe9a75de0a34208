"""
Expense Export Domain Types.

The nouns of the export pipeline: batches, export records, export profiles,
their closed status vocabularies, and the result objects each stage returns.
Every type here is a frozen dataclass or a ``str`` enum; nothing touches the
database.  ``to_dict()`` renders the JSON-shaped response the orchestrator
hands back to callers (camelCase keys, money as two-decimal strings).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from export_kernel.db.types import ZERO, round_money


def money_str(amount: Decimal | None) -> str:
    """Render an amount the way responses and artifacts carry it: ``"1250.00"``."""
    return str(round_money(amount if amount is not None else ZERO))


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class SourceType(str, Enum):
    """Kind of upstream financial row an export record traces back to."""

    PER_DIEM = "per_diem"
    TUITION = "tuition"
    TRAVEL_COST = "travel_cost"


class ExportType(str, Enum):
    """What a batch exports; ``combined`` covers every source type."""

    PER_DIEM = "per_diem"
    TUITION = "tuition"
    TRAVEL_COST = "travel_cost"
    COMBINED = "combined"

    @property
    def source_types(self) -> tuple[SourceType, ...]:
        if self is ExportType.COMBINED:
            return tuple(SourceType)
        return (SourceType(self.value),)

    def conflicts_with(self, other: ExportType) -> bool:
        """Two batches compete for rows when types match or either is combined."""
        return (
            self is other
            or self is ExportType.COMBINED
            or other is ExportType.COMBINED
        )


class BatchStatus(str, Enum):
    """
    Stored batch lifecycle states.

    The "error" condition is ``DRAFT`` with ``error_records > 0``; it is
    never stored as its own value.
    """

    DRAFT = "draft"
    VALIDATED = "validated"
    EXPORTED = "exported"
    RE_EXPORTED = "re_exported"
    CLOSED = "closed"


class RecordStatus(str, Enum):
    """Export record lifecycle states."""

    PENDING = "pending"
    INCLUDED = "included"
    EXPORTED = "exported"
    POSTED = "posted"
    FAILED = "failed"
    DEFERRED = "deferred"


# A claiming record holds its source row against every other batch
CLAIMING_STATUSES: tuple[RecordStatus, ...] = (
    RecordStatus.PENDING,
    RecordStatus.INCLUDED,
    RecordStatus.EXPORTED,
    RecordStatus.POSTED,
)

# Statuses that exclude a source row from a *different* batch's pull
CLAIMED_ELSEWHERE_STATUSES: tuple[RecordStatus, ...] = (
    RecordStatus.INCLUDED,
    RecordStatus.EXPORTED,
    RecordStatus.POSTED,
)

# Records not yet confirmed either way by the external system
OPEN_POSTING_STATUSES: tuple[RecordStatus, ...] = (
    RecordStatus.EXPORTED,
    RecordStatus.FAILED,
)

RECONCILED_STATUSES: tuple[RecordStatus, ...] = (
    RecordStatus.EXPORTED,
    RecordStatus.POSTED,
    RecordStatus.FAILED,
)


class ExternalStatus(str, Enum):
    POSTED = "posted"
    FAILED = "failed"


class ExportFormat(str, Enum):
    CSV = "csv"


class DeliveryMethod(str, Enum):
    FILE_DOWNLOAD = "file_download"
    SFTP = "sftp"
    API = "api"


class DateBasis(str, Enum):
    """Which source date decides whether a row falls in the batch period."""

    EXPENSE_DATE = "expense_date"
    RECORDED_DATE = "recorded_date"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchScope:
    """
    Optional entity / cost-centre restriction of a batch.

    An empty set on a dimension means "unrestricted".
    """

    entities: frozenset[str] = frozenset()
    cost_centres: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        entities: list[str] | tuple[str, ...] | None = None,
        cost_centres: list[str] | tuple[str, ...] | None = None,
    ) -> BatchScope:
        return cls(
            entities=frozenset(e for e in (entities or ()) if e),
            cost_centres=frozenset(c for c in (cost_centres or ()) if c),
        )

    @property
    def is_unrestricted(self) -> bool:
        return not self.entities and not self.cost_centres

    def admits(self, entity: str | None, cost_centre: str | None) -> bool:
        if self.entities and entity not in self.entities:
            return False
        if self.cost_centres and cost_centre not in self.cost_centres:
            return False
        return True

    def overlaps(self, other: BatchScope) -> bool:
        """True when some row could fall inside both scopes."""
        return _dimension_overlaps(self.entities, other.entities) and _dimension_overlaps(
            self.cost_centres, other.cost_centres
        )


def _dimension_overlaps(a: frozenset[str], b: frozenset[str]) -> bool:
    if not a or not b:
        return True
    return bool(a & b)


@dataclass(frozen=True)
class ValidationIssue:
    """One failed rule on one record."""

    code: str
    message: str
    field: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message, "field": self.field}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationIssue:
        return cls(code=data["code"], message=data["message"], field=data["field"])


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExportBatch:
    """One export run for a period and export type."""

    id: UUID
    batch_number: str
    export_type: ExportType
    period_start: date
    period_end: date
    status: BatchStatus
    scope: BatchScope = field(default_factory=BatchScope)
    total_records: int = 0
    valid_records: int = 0
    error_records: int = 0
    deferred_records: int = 0
    total_amount: Decimal = ZERO
    currency: str = "LYD"
    re_export_count: int = 0
    profile_id: UUID | None = None
    export_file_name: str | None = None
    created_at: datetime | None = None
    created_by_id: UUID | None = None
    exported_at: datetime | None = None
    exported_by: UUID | None = None
    closed_at: datetime | None = None
    validation_errors: tuple[dict[str, Any], ...] = ()
    notes: str | None = None

    @property
    def has_validation_errors(self) -> bool:
        return self.status is BatchStatus.DRAFT and self.error_records > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "batchNumber": self.batch_number,
            "exportType": self.export_type.value,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "status": self.status.value,
            "hasValidationErrors": self.has_validation_errors,
            "entityFilter": sorted(self.scope.entities),
            "costCentreFilter": sorted(self.scope.cost_centres),
            "totalRecords": self.total_records,
            "validRecords": self.valid_records,
            "errorRecords": self.error_records,
            "deferredRecords": self.deferred_records,
            "totalAmount": money_str(self.total_amount),
            "currency": self.currency,
            "reExportCount": self.re_export_count,
            "profileId": str(self.profile_id) if self.profile_id else None,
            "exportFileName": self.export_file_name,
            "createdAt": _iso(self.created_at),
            "createdBy": str(self.created_by_id) if self.created_by_id else None,
            "exportedAt": _iso(self.exported_at),
            "exportedBy": str(self.exported_by) if self.exported_by else None,
            "closedAt": _iso(self.closed_at),
            "validationErrors": list(self.validation_errors),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ExportRecord:
    """One financial line item bound to a batch."""

    id: UUID
    batch_id: UUID
    source_type: SourceType
    source_id: str
    export_key: str
    status: RecordStatus
    expense_type: str
    amount: Decimal
    currency: str | None
    employee_id: str | None = None
    employee_payroll_id: str | None = None
    employee_name: str | None = None
    entity: str | None = None
    training_request_id: str | None = None
    session_id: str | None = None
    trip_id: str | None = None
    course_name: str | None = None
    cost_centre: str | None = None
    gl_account: str | None = None
    expense_date: date | None = None
    posting_period: str | None = None
    destination_country: str | None = None
    destination_city: str | None = None
    validation_errors: tuple[ValidationIssue, ...] = ()
    has_incident_adjustment: bool = False
    incident_ids: tuple[str, ...] = ()
    first_exported_at: datetime | None = None
    last_exported_at: datetime | None = None
    external_status: ExternalStatus | None = None
    external_reference: str | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "batchId": str(self.batch_id),
            "sourceType": self.source_type.value,
            "sourceId": self.source_id,
            "exportKey": self.export_key,
            "status": self.status.value,
            "expenseType": self.expense_type,
            "amount": money_str(self.amount),
            "currency": self.currency,
            "employeeId": self.employee_id,
            "employeePayrollId": self.employee_payroll_id,
            "employeeName": self.employee_name,
            "entity": self.entity,
            "trainingRequestId": self.training_request_id,
            "sessionId": self.session_id,
            "tripId": self.trip_id,
            "courseName": self.course_name,
            "costCentre": self.cost_centre,
            "glAccount": self.gl_account,
            "expenseDate": _iso(self.expense_date),
            "postingPeriod": self.posting_period,
            "destinationCountry": self.destination_country,
            "destinationCity": self.destination_city,
            "validationErrors": [issue.to_dict() for issue in self.validation_errors],
            "hasIncidentAdjustment": self.has_incident_adjustment,
            "incidentIds": list(self.incident_ids),
            "firstExportedAt": _iso(self.first_exported_at),
            "lastExportedAt": _iso(self.last_exported_at),
            "externalStatus": self.external_status.value if self.external_status else None,
            "externalReference": self.external_reference,
            "failureReason": self.failure_reason,
        }


@dataclass(frozen=True)
class ExportProfile:
    """Saved export configuration a batch may reference."""

    id: UUID | None
    profile_name: str
    export_type: ExportType
    export_format: ExportFormat = ExportFormat.CSV
    delivery_method: DeliveryMethod = DeliveryMethod.FILE_DOWNLOAD
    delimiter: str = ","
    default_gl_account: str | None = None
    default_cost_element: str | None = None
    default_scope: BatchScope = field(default_factory=BatchScope)
    date_basis: DateBasis = DateBasis.EXPENSE_DATE
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "profileName": self.profile_name,
            "exportType": self.export_type.value,
            "exportFormat": self.export_format.value,
            "deliveryMethod": self.delivery_method.value,
            "delimiter": self.delimiter,
            "defaultGlAccount": self.default_gl_account,
            "defaultCostElement": self.default_cost_element,
            "defaultEntityFilter": sorted(self.default_scope.entities),
            "defaultCostCentreFilter": sorted(self.default_scope.cost_centres),
            "dateBasis": self.date_basis.value,
            "isActive": self.is_active,
        }


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PullResult:
    records_count: int
    new_records: int
    refreshed_records: int
    total_amount: Decimal
    incident_adjusted_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "recordsCount": self.records_count,
            "newRecords": self.new_records,
            "refreshedRecords": self.refreshed_records,
            "totalAmount": money_str(self.total_amount),
            "incidentAdjustedCount": self.incident_adjusted_count,
        }


@dataclass(frozen=True)
class RecordValidationErrors:
    record_id: UUID
    employee_name: str | None
    errors: tuple[ValidationIssue, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "recordId": str(self.record_id),
            "employeeName": self.employee_name,
            "errors": [issue.to_dict() for issue in self.errors],
        }


@dataclass(frozen=True)
class ValidationOutcome:
    """Validation failure is a normal outcome, carried here as data."""

    status: BatchStatus
    valid_count: int
    error_count: int
    validation_errors: tuple[RecordValidationErrors, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "validCount": self.valid_count,
            "errorCount": self.error_count,
            "validationErrors": [e.to_dict() for e in self.validation_errors],
        }


@dataclass(frozen=True)
class ExportResult:
    file_name: str
    file_content: str
    records_exported: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "fileContent": self.file_content,
            "recordsExported": self.records_exported,
        }


@dataclass(frozen=True)
class PostingResult:
    """Outcome of a mark_posted / mark_failed call."""

    batch_status: BatchStatus
    updated_count: int
    remaining_open: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchStatus": self.batch_status.value,
            "updatedCount": self.updated_count,
            "remainingOpen": self.remaining_open,
        }


@dataclass(frozen=True)
class DeferResult:
    deferred_count: int
    batch_status: BatchStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "deferredCount": self.deferred_count,
            "batchStatus": self.batch_status.value,
        }
