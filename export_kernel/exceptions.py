"""
Typed Exception Hierarchy for the Expense Export Pipeline.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every stage of the pipeline is called by an orchestration layer that must
decide, per failure, whether to retry the whole call, surface a conflict,
or report an illegal operation.  That decision is made by exception TYPE,
never by parsing messages.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        orchestrator.export(batch_id)
    except InvalidStateError as e:
        api_response(code=e.code, status=e.current_status)
    except SourceUnavailableError:
        schedule_retry()  # whole call is safe to repeat

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ExpenseExportError (base)
    |
    +-- InvalidStateError
    |   +-- InvalidBatchTransitionError
    |   +-- InvalidRecordTransitionError
    |   +-- InvalidBatchPeriodError
    |
    +-- NotFoundError
    |   +-- BatchNotFoundError
    |   +-- RecordNotFoundError
    |   +-- ExportProfileNotFoundError
    |
    +-- ConflictError
    |   +-- RecordClaimConflictError
    |   +-- BatchPeriodOverlapError
    |
    +-- SourceUnavailableError
    |
    +-- AuditError
        +-- AuditChainBrokenError
        +-- AuditEntryImmutableError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|-------------------------------------
State        | INVALID_BATCH_TRANSITION   | Action not legal for batch status
             | INVALID_RECORD_TRANSITION  | Action not legal for record status
             | INVALID_BATCH_PERIOD       | period_start is not before period_end
-------------|----------------------------|-------------------------------------
Lookup       | BATCH_NOT_FOUND            | Unknown batch id
             | RECORD_NOT_FOUND           | Record id unknown or not in batch
             | EXPORT_PROFILE_NOT_FOUND   | Unknown export profile id
-------------|----------------------------|-------------------------------------
Conflict     | RECORD_CLAIM_CONFLICT      | Source row already claimed (storage)
             | BATCH_PERIOD_OVERLAP       | Active batch covers the same rows
-------------|----------------------------|-------------------------------------
Upstream     | SOURCE_UNAVAILABLE         | Collaborator unreachable (retryable)
-------------|----------------------------|-------------------------------------
Audit        | AUDIT_CHAIN_BROKEN         | Hash chain validation failed
             | AUDIT_ENTRY_IMMUTABLE      | Update/delete of an audit entry

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Validation failure is NOT an exception.  Per-record validation errors are
   a normal outcome carried in the validate() response.

2. InvalidStateError, NotFoundError and ConflictError are terminal for the
   call.  SourceUnavailableError sets ``retryable = True``; nothing was
   written when it is raised.
"""

from __future__ import annotations


class ExpenseExportError(Exception):
    """
    Base exception for all expense export errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "EXPENSE_EXPORT_ERROR"
    retryable: bool = False


# State errors


class InvalidStateError(ExpenseExportError):
    """Operation is not legal for the current batch or record status."""

    code: str = "INVALID_STATE"

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidBatchTransitionError(InvalidStateError):
    """No transition for this action from the batch's current status."""

    code: str = "INVALID_BATCH_TRANSITION"

    def __init__(
        self,
        batch_id: str,
        current_status: str,
        action: str,
        reason: str | None = None,
    ):
        self.batch_id = batch_id
        self.action = action
        message = reason or (
            f"Cannot {action} batch {batch_id} in status '{current_status}'"
        )
        super().__init__(message, current_status=current_status)


class InvalidRecordTransitionError(InvalidStateError):
    """No transition for this action from the record's current status."""

    code: str = "INVALID_RECORD_TRANSITION"

    def __init__(self, record_id: str, current_status: str, action: str):
        self.record_id = record_id
        self.action = action
        super().__init__(
            f"Cannot {action} record {record_id} in status '{current_status}'",
            current_status=current_status,
        )


class InvalidBatchPeriodError(InvalidStateError):
    """Batch period bounds are not strictly ordered."""

    code: str = "INVALID_BATCH_PERIOD"

    def __init__(self, period_start: str, period_end: str):
        self.period_start = period_start
        self.period_end = period_end
        super().__init__(
            f"Batch period start {period_start} must be before end {period_end}"
        )


# Lookup errors


class NotFoundError(ExpenseExportError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"


class BatchNotFoundError(NotFoundError):
    """Export batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Export batch not found: {batch_id}")


class RecordNotFoundError(NotFoundError):
    """Export record not found, or not attached to the given batch."""

    code: str = "RECORD_NOT_FOUND"

    def __init__(self, record_id: str, batch_id: str | None = None):
        self.record_id = record_id
        self.batch_id = batch_id
        if batch_id:
            message = f"Export record {record_id} not found in batch {batch_id}"
        else:
            message = f"Export record not found: {record_id}"
        super().__init__(message)


class ExportProfileNotFoundError(NotFoundError):
    """Saved export profile was not found."""

    code: str = "EXPORT_PROFILE_NOT_FOUND"

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(f"Export profile not found: {profile_id}")


# Conflict errors


class ConflictError(ExpenseExportError):
    """Uniqueness violation on a concurrent claim."""

    code: str = "CONFLICT"


class RecordClaimConflictError(ConflictError):
    """A source row is already claimed by another batch.

    Raised when the storage-level unique index rejects the insert, which
    closes the race window left by the application-level exclusion query.
    """

    code: str = "RECORD_CLAIM_CONFLICT"

    def __init__(self, batch_id: str, detail: str | None = None):
        self.batch_id = batch_id
        self.detail = detail
        super().__init__(
            f"Source rows for batch {batch_id} are already claimed by another batch"
            + (f": {detail}" if detail else "")
        )


class BatchPeriodOverlapError(ConflictError):
    """An active batch with a conflicting type and scope covers the period."""

    code: str = "BATCH_PERIOD_OVERLAP"

    def __init__(self, export_type: str, conflicting_batch_number: str):
        self.export_type = export_type
        self.conflicting_batch_number = conflicting_batch_number
        super().__init__(
            f"Period overlaps active {export_type} batch {conflicting_batch_number}"
        )


# Upstream errors


class SourceUnavailableError(ExpenseExportError):
    """Upstream collaborator unreachable.  The whole call is safe to retry."""

    code: str = "SOURCE_UNAVAILABLE"
    retryable: bool = True

    def __init__(self, collaborator: str, reason: str):
        self.collaborator = collaborator
        self.reason = reason
        super().__init__(f"{collaborator} unavailable: {reason}")


# Audit errors


class AuditError(ExpenseExportError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, seq: int, expected_hash: str, actual_hash: str):
        self.seq = seq
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at seq {seq}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


class AuditEntryImmutableError(AuditError):
    """Attempted to modify or delete an append-only audit entry."""

    code: str = "AUDIT_ENTRY_IMMUTABLE"

    def __init__(self, entry_id: str, operation: str):
        self.entry_id = entry_id
        self.operation = operation
        super().__init__(
            f"Audit entry {entry_id} is append-only; {operation} refused"
        )
