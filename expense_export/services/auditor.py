"""
ExportAuditor -- tamper-evident audit trail for the export pipeline.

Responsibility:
    Appends one hash-chained entry per mutating pipeline operation and
    validates the chain on demand.

Architecture position:
    Services -- imperative shell, called by every stage service inside the
    orchestrator's transaction.  Never commits.

Invariants enforced:
    - seq is allocated from the locked ``audit_entry`` sequence counter,
      never computed as max+1.
    - hash = H(batch_id | action | payload_hash | prev_hash).
    - payload_hash covers actor, status change and typed details.  It
      deliberately leaves ``occurred_at`` out because SQLite hands back
      naive datetimes and the chain must re-verify on every backend.
    - Entries are append-only (ORM listeners in export_kernel.db.immutability).

Failure modes:
    - AuditChainBrokenError from validate_chain() when a stored hash, a
      payload hash or a prev_hash link does not match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import AuditChainBrokenError
from export_kernel.logging_config import get_logger
from export_kernel.services.sequence_service import SequenceService
from export_kernel.utils.hashing import hash_audit_entry, hash_payload
from expense_export.domain.audit_details import AuditAction, AuditDetails, parse_details
from expense_export.models.audit import AuditEntryModel

logger = get_logger("services.auditor")


def _entry_payload(
    actor_id: UUID | str,
    old_status: str | None,
    new_status: str | None,
    details: dict[str, Any],
) -> dict[str, Any]:
    return {
        "actor_id": str(actor_id),
        "old_status": old_status,
        "new_status": new_status,
        "details": details,
    }


@dataclass(frozen=True)
class AuditTrailEntry:
    """A single entry of a batch's audit trail."""

    seq: int
    action: AuditAction
    actor_id: UUID
    old_status: str | None
    new_status: str | None
    details: AuditDetails
    occurred_at: datetime
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "action": self.action.value,
            "actorId": str(self.actor_id),
            "oldStatus": self.old_status,
            "newStatus": self.new_status,
            "details": self.details.to_payload(),
            "occurredAt": self.occurred_at.isoformat(),
            "hash": self.hash,
        }


class ExportAuditor:
    """
    Append-only audit sink.

    Contract:
        ``record()`` flushes exactly one AuditEntryModel linked to the
        previous entry.  The caller owns the transaction.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last = self._session.execute(
            select(AuditEntryModel).order_by(AuditEntryModel.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last.hash if last else None

    def record(
        self,
        details: AuditDetails,
        actor_id: UUID,
        batch_id: UUID | None = None,
        old_status: str | None = None,
        new_status: str | None = None,
    ) -> AuditEntryModel:
        """
        Append an entry for ``details.action``.

        Postconditions:
            - ``entry.prev_hash`` equals the hash of the highest-seq entry
              before it (None for the first entry).
        """
        # The locked counter row serializes writers, so the last hash read
        # below is the true predecessor.
        seq = self._sequence_service.next_value(SequenceService.AUDIT_ENTRY)
        prev_hash = self._get_last_hash()

        action = details.action.value
        payload = details.to_payload()
        payload_hash = hash_payload(_entry_payload(actor_id, old_status, new_status, payload))
        entry_hash = hash_audit_entry(
            str(batch_id) if batch_id is not None else None,
            action,
            payload_hash,
            prev_hash,
        )

        entry = AuditEntryModel(
            seq=seq,
            batch_id=batch_id,
            action=action,
            actor_id=actor_id,
            old_status=old_status,
            new_status=new_status,
            details=payload,
            occurred_at=self._clock.now(),
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_created",
            extra={
                "action": action,
                "seq": seq,
                "old_status": old_status,
                "new_status": new_status,
            },
        )
        return entry

    def validate_chain(self) -> bool:
        """
        Re-hash every entry in seq order.

        Returns:
            True when the whole chain verifies (trivially for an empty log).

        Raises:
            AuditChainBrokenError: at the first entry that does not verify.
        """
        entries = self._session.execute(
            select(AuditEntryModel).order_by(AuditEntryModel.seq)
        ).scalars().all()

        expected_prev: str | None = None
        for entry in entries:
            if entry.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "prev_hash"},
                )
                raise AuditChainBrokenError(
                    entry.seq, expected_prev or "None", entry.prev_hash or "None"
                )

            payload_hash = hash_payload(
                _entry_payload(entry.actor_id, entry.old_status, entry.new_status, entry.details)
            )
            if payload_hash != entry.payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "payload_hash"},
                )
                raise AuditChainBrokenError(entry.seq, payload_hash, entry.payload_hash)

            expected_hash = hash_audit_entry(
                str(entry.batch_id) if entry.batch_id is not None else None,
                entry.action,
                entry.payload_hash,
                entry.prev_hash,
            )
            if entry.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "check": "hash"},
                )
                raise AuditChainBrokenError(entry.seq, expected_hash, entry.hash)

            expected_prev = entry.hash

        logger.info("audit_chain_valid", extra={"entry_count": len(entries)})
        return True

    def get_trail(self, batch_id: UUID) -> tuple[AuditTrailEntry, ...]:
        """Every entry for ``batch_id`` in seq order, details parsed."""
        entries = self._session.execute(
            select(AuditEntryModel)
            .where(AuditEntryModel.batch_id == batch_id)
            .order_by(AuditEntryModel.seq)
        ).scalars().all()
        return tuple(
            AuditTrailEntry(
                seq=entry.seq,
                action=AuditAction(entry.action),
                actor_id=entry.actor_id,
                old_status=entry.old_status,
                new_status=entry.new_status,
                details=parse_details(entry.action, entry.details),
                occurred_at=entry.occurred_at,
                hash=entry.hash,
            )
            for entry in entries
        )

    def count(self) -> int:
        return len(self._session.execute(select(AuditEntryModel.id)).all())
