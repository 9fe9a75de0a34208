"""
ORM-Level Append-Only Enforcement for the export audit log.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  Listeners registered here intercept those events for audit
entries and raise AuditEntryImmutableError, aborting the flush:

    session.flush()
         |
         v
    [before_update event] --> _check_audit_entry_update() --> AuditEntryImmutableError
         |
         v
    [before_delete event] --> _check_audit_entry_delete() --> AuditEntryImmutableError

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity           | When Immutable         | Why
-----------------|------------------------|------------------------------------
AuditEntryModel  | ALWAYS (from creation) | Hash chain depends on every entry

===============================================================================
USAGE
===============================================================================

    from export_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup; safe to repeat

Tests that need to tamper with the chain to prove detection use
unregister_immutability_listeners() and re-register afterwards.
"""

from sqlalchemy import event

from export_kernel.exceptions import AuditEntryImmutableError
from export_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_update(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise AuditEntryImmutableError(str(target.id), "UPDATE")


def _check_audit_entry_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise AuditEntryImmutableError(str(target.id), "DELETE")


def register_immutability_listeners() -> None:
    """
    Register append-only listeners on the audit entry model.

    Idempotent: already-registered listeners are not added twice.
    """
    from expense_export.models.audit import AuditEntryModel

    if not event.contains(AuditEntryModel, "before_update", _check_audit_entry_update):
        event.listen(AuditEntryModel, "before_update", _check_audit_entry_update)
    if not event.contains(AuditEntryModel, "before_delete", _check_audit_entry_delete):
        event.listen(AuditEntryModel, "before_delete", _check_audit_entry_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove the append-only listeners.

    WARNING: Only use this in tests that intentionally tamper with the
    audit chain to verify detection.
    """
    from expense_export.models.audit import AuditEntryModel

    _safe_remove_listener(AuditEntryModel, "before_update", _check_audit_entry_update)
    _safe_remove_listener(AuditEntryModel, "before_delete", _check_audit_entry_delete)
