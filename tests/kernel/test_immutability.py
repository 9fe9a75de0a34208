"""
Audit entry append-only enforcement tests.

Verifies:
- ORM UPDATE of an audit entry is refused
- ORM DELETE of an audit entry is refused
- Listeners can be removed for tamper tests and restored
"""

from uuid import uuid4

import pytest

from export_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from export_kernel.exceptions import AuditEntryImmutableError
from expense_export.domain.audit_details import BatchDeletedDetails
from expense_export.services.auditor import ExportAuditor


@pytest.fixture
def audit_entry(db_session, clock, actor_id):
    entry = ExportAuditor(db_session, clock).record(
        BatchDeletedDetails(batch_number="EXP-202501-00001", export_type="per_diem"),
        actor_id=actor_id,
        batch_id=uuid4(),
        old_status="draft",
        new_status="deleted",
    )
    db_session.commit()
    return entry


class TestAuditEntryImmutability:
    def test_update_refused(self, db_session, audit_entry, captured_logs):
        audit_entry.action = "export"
        with pytest.raises(AuditEntryImmutableError) as exc_info:
            db_session.flush()
        assert exc_info.value.operation == "UPDATE"
        assert any(r["message"] == "immutability_violation_blocked" for r in captured_logs())

    def test_delete_refused(self, db_session, audit_entry):
        db_session.delete(audit_entry)
        with pytest.raises(AuditEntryImmutableError) as exc_info:
            db_session.flush()
        assert exc_info.value.operation == "DELETE"

    def test_unregister_then_restore(self, db_session, audit_entry):
        unregister_immutability_listeners()
        try:
            audit_entry.new_status = "closed"
            db_session.flush()
        finally:
            register_immutability_listeners()

        audit_entry.new_status = "draft"
        with pytest.raises(AuditEntryImmutableError):
            db_session.flush()

    def test_register_is_idempotent(self, db_session, audit_entry):
        register_immutability_listeners()
        register_immutability_listeners()
        audit_entry.action = "validate"
        with pytest.raises(AuditEntryImmutableError):
            db_session.flush()
