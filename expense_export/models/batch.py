"""
SQLAlchemy ORM persistence models for export batches, records and profiles.

Responsibility
--------------
Database-backed persistence for the export pipeline's entities.  Stage
results and reconciliation summaries are transient DTOs and are not
persisted here.

Invariants enforced
-------------------
* All monetary fields use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Enum fields are stored as String for readability and portability.
* ``ExportRecordModel`` belongs to exactly one ``ExportBatchModel``.
* Claiming records (pending, included, exported, posted) are unique per
  ``(source_type, source_id)`` and per ``export_key``.  Two partial unique
  indexes enforce this at the storage layer so a racing second pull fails
  instead of double-claiming a source row.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from export_kernel.db.base import TrackedBase
from expense_export.domain.types import CLAIMING_STATUSES

CLAIMING_PREDICATE = "status IN ({})".format(
    ", ".join(f"'{status.value}'" for status in CLAIMING_STATUSES)
)


# ---------------------------------------------------------------------------
# ExportProfileModel
# ---------------------------------------------------------------------------


class ExportProfileModel(TrackedBase):
    """
    A saved export configuration.

    Maps to the ``ExportProfile`` DTO in ``expense_export.domain.types``.
    """

    __tablename__ = "expense_export_profiles"

    __table_args__ = (
        Index("uq_export_profile_name", "profile_name", unique=True),
        Index("idx_export_profile_active", "is_active"),
    )

    profile_name: Mapped[str] = mapped_column(String(100), nullable=False)
    export_type: Mapped[str] = mapped_column(String(20), nullable=False)
    export_format: Mapped[str] = mapped_column(String(20), nullable=False, default="csv")
    delivery_method: Mapped[str] = mapped_column(String(20), nullable=False, default="file_download")
    delimiter: Mapped[str] = mapped_column(String(1), nullable=False, default=",")
    default_gl_account: Mapped[str | None] = mapped_column(String(50), nullable=True)
    default_cost_element: Mapped[str | None] = mapped_column(String(50), nullable=True)
    default_entity_filter: Mapped[list | None] = mapped_column(JSON, nullable=True)
    default_cost_centre_filter: Mapped[list | None] = mapped_column(JSON, nullable=True)
    date_basis: Mapped[str] = mapped_column(String(20), nullable=False, default="expense_date")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from expense_export.domain.types import (
            BatchScope,
            DateBasis,
            DeliveryMethod,
            ExportFormat,
            ExportProfile,
            ExportType,
        )

        return ExportProfile(
            id=self.id,
            profile_name=self.profile_name,
            export_type=ExportType(self.export_type),
            export_format=ExportFormat(self.export_format),
            delivery_method=DeliveryMethod(self.delivery_method),
            delimiter=self.delimiter,
            default_gl_account=self.default_gl_account,
            default_cost_element=self.default_cost_element,
            default_scope=BatchScope.of(self.default_entity_filter, self.default_cost_centre_filter),
            date_basis=DateBasis(self.date_basis),
            is_active=self.is_active,
        )

    def apply_dto(self, dto) -> None:
        """Copy every editable field from an ``ExportProfile`` DTO."""
        self.profile_name = dto.profile_name
        self.export_type = dto.export_type.value
        self.export_format = dto.export_format.value
        self.delivery_method = dto.delivery_method.value
        self.delimiter = dto.delimiter
        self.default_gl_account = dto.default_gl_account
        self.default_cost_element = dto.default_cost_element
        self.default_entity_filter = sorted(dto.default_scope.entities) or None
        self.default_cost_centre_filter = sorted(dto.default_scope.cost_centres) or None
        self.date_basis = dto.date_basis.value
        self.is_active = dto.is_active

    def __repr__(self) -> str:
        return f"<ExportProfileModel {self.profile_name} [{self.export_type}]>"


# ---------------------------------------------------------------------------
# ExportBatchModel
# ---------------------------------------------------------------------------


class ExportBatchModel(TrackedBase):
    """
    One export run for a period and export type.

    Guarantees:
        - ``batch_number`` is unique (``EXP-<YYYYMM>-<seq>``).
        - Totals are written only by the stage recomputation, never
          maintained incrementally.
    """

    __tablename__ = "expense_export_batches"

    __table_args__ = (
        Index("uq_export_batch_number", "batch_number", unique=True),
        Index("idx_export_batch_status", "status"),
        Index("idx_export_batch_type_period", "export_type", "period_start", "period_end"),
        Index("idx_export_batch_created", "created_at"),
    )

    batch_number: Mapped[str] = mapped_column(String(30), nullable=False)
    export_type: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    entity_filter: Mapped[list | None] = mapped_column(JSON, nullable=True)
    cost_centre_filter: Mapped[list | None] = mapped_column(JSON, nullable=True)
    total_records: Mapped[int] = mapped_column(default=0)
    valid_records: Mapped[int] = mapped_column(default=0)
    error_records: Mapped[int] = mapped_column(default=0)
    deferred_records: Mapped[int] = mapped_column(default=0)
    total_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LYD")
    re_export_count: Mapped[int] = mapped_column(default=0)
    profile_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("expense_export_profiles.id"), nullable=True
    )
    export_file_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    exported_at: Mapped[datetime | None] = mapped_column(nullable=True)
    exported_by: Mapped[UUID | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    validation_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    records: Mapped[list["ExportRecordModel"]] = relationship(
        "ExportRecordModel",
        back_populates="batch",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def to_dto(self):
        from expense_export.domain.types import (
            BatchScope,
            BatchStatus,
            ExportBatch,
            ExportType,
        )

        return ExportBatch(
            id=self.id,
            batch_number=self.batch_number,
            export_type=ExportType(self.export_type),
            period_start=self.period_start,
            period_end=self.period_end,
            status=BatchStatus(self.status),
            scope=BatchScope.of(self.entity_filter, self.cost_centre_filter),
            total_records=self.total_records or 0,
            valid_records=self.valid_records or 0,
            error_records=self.error_records or 0,
            deferred_records=self.deferred_records or 0,
            total_amount=self.total_amount if self.total_amount is not None else Decimal("0"),
            currency=self.currency,
            re_export_count=self.re_export_count or 0,
            profile_id=self.profile_id,
            export_file_name=self.export_file_name,
            created_at=self.created_at,
            created_by_id=self.created_by_id,
            exported_at=self.exported_at,
            exported_by=self.exported_by,
            closed_at=self.closed_at,
            validation_errors=tuple(self.validation_errors or ()),
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return f"<ExportBatchModel {self.batch_number} [{self.status}] {self.total_amount}>"


# ---------------------------------------------------------------------------
# ExportRecordModel
# ---------------------------------------------------------------------------


class ExportRecordModel(TrackedBase):
    """
    One financial line item bound to a batch.

    Guarantees:
        - ``export_key`` is derived from ``(source_type, source_id)`` and is
          never rewritten after insert.
        - At most one claiming record exists per source row.
    """

    __tablename__ = "expense_export_records"

    __table_args__ = (
        Index(
            "uq_export_record_claimed_source",
            "source_type",
            "source_id",
            unique=True,
            sqlite_where=text(CLAIMING_PREDICATE),
            postgresql_where=text(CLAIMING_PREDICATE),
        ),
        Index(
            "uq_export_record_claimed_key",
            "export_key",
            unique=True,
            sqlite_where=text(CLAIMING_PREDICATE),
            postgresql_where=text(CLAIMING_PREDICATE),
        ),
        Index("idx_export_record_batch_status", "batch_id", "status"),
        Index("idx_export_record_status", "status"),
        Index("idx_export_record_period", "posting_period"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("expense_export_batches.id", ondelete="CASCADE"), nullable=False
    )
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    employee_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    employee_payroll_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    employee_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    entity: Mapped[str | None] = mapped_column(String(100), nullable=True)
    training_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    trip_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    course_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    expense_type: Mapped[str] = mapped_column(String(40), nullable=False)
    amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    cost_centre: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gl_account: Mapped[str | None] = mapped_column(String(50), nullable=True)
    expense_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    posting_period: Mapped[str | None] = mapped_column(String(7), nullable=True)
    destination_country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    destination_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    export_key: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    validation_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    has_incident_adjustment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    incident_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    first_exported_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_exported_at: Mapped[datetime | None] = mapped_column(nullable=True)
    external_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped["ExportBatchModel"] = relationship(
        "ExportBatchModel",
        back_populates="records",
    )

    def to_dto(self):
        from expense_export.domain.types import (
            ExportRecord,
            ExternalStatus,
            RecordStatus,
            SourceType,
            ValidationIssue,
        )

        return ExportRecord(
            id=self.id,
            batch_id=self.batch_id,
            source_type=SourceType(self.source_type),
            source_id=self.source_id,
            export_key=self.export_key,
            status=RecordStatus(self.status),
            expense_type=self.expense_type,
            amount=self.amount,
            currency=self.currency,
            employee_id=self.employee_id,
            employee_payroll_id=self.employee_payroll_id,
            employee_name=self.employee_name,
            entity=self.entity,
            training_request_id=self.training_request_id,
            session_id=self.session_id,
            trip_id=self.trip_id,
            course_name=self.course_name,
            cost_centre=self.cost_centre,
            gl_account=self.gl_account,
            expense_date=self.expense_date,
            posting_period=self.posting_period,
            destination_country=self.destination_country,
            destination_city=self.destination_city,
            validation_errors=tuple(
                ValidationIssue.from_dict(issue) for issue in (self.validation_errors or ())
            ),
            has_incident_adjustment=bool(self.has_incident_adjustment),
            incident_ids=tuple(self.incident_ids or ()),
            first_exported_at=self.first_exported_at,
            last_exported_at=self.last_exported_at,
            external_status=ExternalStatus(self.external_status) if self.external_status else None,
            external_reference=self.external_reference,
            failure_reason=self.failure_reason,
        )

    def __repr__(self) -> str:
        return f"<ExportRecordModel {self.export_key} [{self.status}] {self.amount}>"
