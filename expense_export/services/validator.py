"""
BatchValidator -- runs the record rule set over a batch.

Validation failure is an ordinary outcome returned as data.  Every
pending and included record is re-evaluated from its current fields, so
validating twice over unchanged records gives the same result.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.logging_config import get_logger
from expense_export.domain.audit_details import BatchValidatedDetails
from expense_export.domain.rules import RECORD_RULES, ValidationRule, validate_record
from expense_export.domain.types import (
    BatchStatus,
    RecordStatus,
    RecordValidationErrors,
    ValidationOutcome,
)
from expense_export.domain.workflow import (
    TransitionContext,
    next_batch_status,
    next_record_status,
)
from expense_export.services import _batch_helpers as helpers
from expense_export.services.auditor import ExportAuditor

logger = get_logger("services.validator")


class BatchValidator:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        rules: tuple[ValidationRule, ...] = RECORD_RULES,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._rules = rules
        self._auditor = ExportAuditor(session, self._clock)

    def validate(self, batch_id: UUID | str, actor_id: UUID) -> ValidationOutcome:
        """
        Raises:
            BatchNotFoundError: unknown batch.
            InvalidBatchTransitionError: batch is past validation.
        """
        batch = helpers.load_batch(self._session, batch_id, for_update=True)
        # Fail fast on a batch that can no longer be validated
        next_batch_status(batch.id, batch.status, "validate")

        failures: list[RecordValidationErrors] = []
        records = helpers.batch_records(
            self._session, batch.id, (RecordStatus.PENDING, RecordStatus.INCLUDED)
        )
        for record in records:
            issues = validate_record(record, self._rules)
            ctx = TransitionContext(error_count=len(issues))
            target = next_record_status(record.id, record.status, "validate", ctx)
            if record.status != target.value:
                record.updated_by_id = actor_id
            record.status = target.value
            record.validation_errors = [issue.to_dict() for issue in issues] or None
            if issues:
                failures.append(
                    RecordValidationErrors(
                        record_id=record.id,
                        employee_name=record.employee_name,
                        errors=issues,
                    )
                )

        helpers.recompute_totals(self._session, batch)

        old_status = batch.status
        batch.status = next_batch_status(
            batch.id,
            old_status,
            "validate",
            TransitionContext(error_count=batch.error_records),
        )
        batch.validation_errors = [failure.to_dict() for failure in failures] or None
        batch.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record(
            BatchValidatedDetails(valid_count=batch.valid_records, error_count=batch.error_records),
            actor_id=actor_id,
            batch_id=batch.id,
            old_status=old_status,
            new_status=batch.status,
        )
        logger.info(
            "batch_validated",
            extra={
                "batch_number": batch.batch_number,
                "valid_count": batch.valid_records,
                "error_count": batch.error_records,
                "status": batch.status,
            },
        )
        return ValidationOutcome(
            status=BatchStatus(batch.status),
            valid_count=batch.valid_records,
            error_count=batch.error_records,
            validation_errors=tuple(failures),
        )
