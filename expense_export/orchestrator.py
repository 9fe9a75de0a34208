"""
expense_export.orchestrator -- the batch manager.

Responsibility:
    Public operation surface of the export pipeline.  Each call opens one
    session and one transaction, builds the stage services against that
    session exactly once, runs the operation, and returns a JSON-shaped
    dict.  Commit on success; rollback on any exception, which is logged
    and re-raised unchanged.

Architecture position:
    Top of the service layer and the only place services are constructed
    and composed.  The CLI and any HTTP front end call this class.

Invariants enforced:
    - One transaction per operation; stages never commit on their own.
    - Every mutating operation appends exactly one audit entry inside its
      transaction, so a rolled-back operation leaves no entry.
    - Log records emitted during a call carry correlation_id, operation,
      batch_id and actor_id through LogContext.

Usage:
    orchestrator = ExportOrchestrator(
        session_factory=sessionmaker(bind=engine, expire_on_commit=False),
        source=SqlSourceRecords(engine),
        incidents=SqlIncidents(engine),
        settings=get_settings(),
    )
    batch = orchestrator.create_batch("per_diem", "2025-01-01", "2025-01-31")
    orchestrator.pull_records(batch["batch"]["id"])
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Any, Generator, Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from export_config.schema import PipelineSettings
from export_kernel.db.engine import session_scope
from export_kernel.db.immutability import register_immutability_listeners
from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import ExpenseExportError
from export_kernel.logging_config import LogContext, get_logger
from expense_export.collaborators.base import IncidentCollaborator, SourceRecordCollaborator
from expense_export.domain.reconciliation import ReconciliationFilters
from expense_export.domain.types import (
    BatchScope,
    BatchStatus,
    ExportProfile,
    ExportType,
    RecordStatus,
)
from expense_export.services._batch_helpers import as_uuid
from expense_export.services.auditor import ExportAuditor
from expense_export.services.batch_service import BatchService
from expense_export.services.exporter import BatchExporter
from expense_export.services.posting_tracker import PostingTracker
from expense_export.services.profile_service import ProfileService, profile_from_dict
from expense_export.services.record_puller import RecordPuller
from expense_export.services.validator import BatchValidator

logger = get_logger("orchestrator")


def _as_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


class _ServiceSet:
    """Every stage service bound to one session."""

    def __init__(self, session: Session, orchestrator: ExportOrchestrator):
        clock = orchestrator.clock
        settings = orchestrator.settings
        self.session = session
        self.auditor = ExportAuditor(session, clock)
        self.batches = BatchService(session, clock, settings.default_currency)
        self.profiles = ProfileService(session, clock)
        self.puller = RecordPuller(
            session, orchestrator.source, orchestrator.incidents, settings, clock
        )
        self.validator = BatchValidator(session, clock)
        self.exporter = BatchExporter(session, clock, settings.artifact)
        self.posting = PostingTracker(session, clock)


class ExportOrchestrator:
    """
    Batch manager over the pipeline services.

    Contract:
        Stateless between calls.  Every public method is safe to call
        again with the same arguments after a failure.

    Non-goals:
        - Does NOT authenticate callers; ``actor_id`` is trusted.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        source: SourceRecordCollaborator,
        incidents: IncidentCollaborator,
        settings: PipelineSettings,
        clock: Clock | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.source = source
        self.incidents = incidents
        self.settings = settings
        self.clock = clock or SystemClock()
        self.system_actor_id = UUID(settings.system_actor_id)
        register_immutability_listeners()

    @contextmanager
    def _operation(
        self,
        name: str,
        actor_id: UUID | None = None,
        batch_id: UUID | str | None = None,
    ) -> Generator[_ServiceSet, None, None]:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            operation=name,
            batch_id=str(batch_id) if batch_id is not None else None,
            actor_id=str(actor_id) if actor_id is not None else None,
        ):
            logger.debug("operation_started")
            try:
                with session_scope(self.session_factory) as session:
                    yield _ServiceSet(session, self)
            except ExpenseExportError as exc:
                logger.warning(
                    "operation_failed",
                    extra={"error_code": exc.code, "error": str(exc), "retryable": exc.retryable},
                )
                raise
            except Exception as exc:
                logger.error(
                    "operation_failed",
                    extra={"error_code": type(exc).__name__, "error": str(exc)},
                )
                raise
            logger.info("operation_completed")

    def _actor(self, actor_id: UUID | str | None) -> UUID:
        if actor_id is None:
            return self.system_actor_id
        return actor_id if isinstance(actor_id, UUID) else UUID(str(actor_id))

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    def create_batch(
        self,
        export_type: ExportType | str,
        period_start: date | str,
        period_end: date | str,
        entity_filter: Sequence[str] | None = None,
        cost_centre_filter: Sequence[str] | None = None,
        profile_id: UUID | str | None = None,
        notes: str | None = None,
        actor_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("create_batch", actor) as services:
            batch = services.batches.create_batch(
                ExportType(export_type),
                _as_date(period_start),
                _as_date(period_end),
                actor,
                scope=BatchScope.of(entity_filter, cost_centre_filter),
                profile_id=profile_id,
                notes=notes,
            )
            return {"batch": batch.to_dto().to_dict()}

    def pull_records(self, batch_id: UUID | str, actor_id: UUID | str | None = None) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("pull_records", actor, batch_id) as services:
            return services.puller.pull_records(batch_id, actor).to_dict()

    def validate(self, batch_id: UUID | str, actor_id: UUID | str | None = None) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("validate", actor, batch_id) as services:
            return services.validator.validate(batch_id, actor).to_dict()

    def export(self, batch_id: UUID | str, actor_id: UUID | str | None = None) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("export", actor, batch_id) as services:
            return services.exporter.export(batch_id, actor).to_dict()

    def re_export(self, batch_id: UUID | str, actor_id: UUID | str | None = None) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("re_export", actor, batch_id) as services:
            return services.exporter.re_export(batch_id, actor).to_dict()

    def mark_posted(
        self,
        batch_id: UUID | str,
        record_ids: Sequence[UUID | str] | None = None,
        external_reference: str | None = None,
        actor_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("mark_posted", actor, batch_id) as services:
            return services.posting.mark_posted(
                batch_id, actor, record_ids=record_ids, external_reference=external_reference
            ).to_dict()

    def mark_failed(
        self,
        batch_id: UUID | str,
        record_ids: Sequence[UUID | str],
        reason: str,
        actor_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("mark_failed", actor, batch_id) as services:
            return services.posting.mark_failed(batch_id, record_ids, reason, actor).to_dict()

    def defer_records(
        self,
        batch_id: UUID | str,
        record_ids: Sequence[UUID | str],
        actor_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("defer_records", actor, batch_id) as services:
            return services.batches.defer_records(batch_id, record_ids, actor).to_dict()

    def delete_batch(self, batch_id: UUID | str, actor_id: UUID | str | None = None) -> dict[str, Any]:
        actor = self._actor(actor_id)
        with self._operation("delete_batch", actor, batch_id) as services:
            batch_number = services.batches.delete_batch(batch_id, actor)
            return {"deleted": True, "batchNumber": batch_number}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_reconciliation(
        self,
        filters: ReconciliationFilters | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not isinstance(filters, ReconciliationFilters):
            filters = ReconciliationFilters.from_dict(filters)
        with self._operation("get_reconciliation", batch_id=filters.batch_id) as services:
            return services.posting.get_reconciliation(filters).to_dict()

    def get_batch(self, batch_id: UUID | str) -> dict[str, Any]:
        with self._operation("get_batch", batch_id=batch_id) as services:
            return {"batch": services.batches.get_batch(batch_id).to_dict()}

    def list_batches(
        self,
        status: BatchStatus | str | None = None,
        export_type: ExportType | str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        with self._operation("list_batches") as services:
            batches, total = services.batches.list_batches(
                BatchStatus(status) if status else None,
                ExportType(export_type) if export_type else None,
                page,
                page_size,
            )
            return {"batches": [b.to_dict() for b in batches], "total": total}

    def get_records(
        self,
        batch_id: UUID | str,
        status: RecordStatus | str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        with self._operation("get_records", batch_id=batch_id) as services:
            records, total = services.batches.get_records(
                batch_id,
                RecordStatus(status) if status else None,
                page,
                page_size,
            )
            return {"records": [r.to_dict() for r in records], "total": total}

    def get_summary(self) -> dict[str, Any]:
        with self._operation("get_summary") as services:
            return {"summary": services.batches.get_summary().to_dict()}

    def get_audit_trail(self, batch_id: UUID | str) -> dict[str, Any]:
        with self._operation("get_audit_trail", batch_id=batch_id) as services:
            entries = services.auditor.get_trail(as_uuid(batch_id))
            return {"entries": [entry.to_dict() for entry in entries]}

    def verify_audit_chain(self) -> dict[str, Any]:
        """
        Raises:
            AuditChainBrokenError: the chain does not verify.
        """
        with self._operation("verify_audit_chain") as services:
            services.auditor.validate_chain()
            return {"valid": True, "entryCount": services.auditor.count()}

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def save_profile(
        self,
        profile: ExportProfile | dict[str, Any],
        profile_id: UUID | str | None = None,
        actor_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        actor = self._actor(actor_id)
        if not isinstance(profile, ExportProfile):
            profile = profile_from_dict(profile)
        with self._operation("save_profile", actor) as services:
            saved = services.profiles.save_profile(profile, actor, profile_id=profile_id)
            return {"profile": saved.to_dict()}

    def list_profiles(self) -> dict[str, Any]:
        with self._operation("list_profiles") as services:
            return {"profiles": [p.to_dict() for p in services.profiles.list_profiles()]}
