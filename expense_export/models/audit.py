"""
Module: expense_export.models.audit
Responsibility: ORM persistence for the append-only, hash-chained export
    audit log.

Invariants enforced:
    - Entries are append-only; UPDATE and DELETE are refused by ORM
      listeners (export_kernel.db.immutability).
    - hash = H(batch_id | action | payload_hash | prev_hash); validated by
      ExportAuditor.validate_chain().
    - seq is strictly increasing, allocated by SequenceService.
    - batch_id is a plain column without a foreign key, so the entry for a
      deleted draft batch survives the deletion.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from export_kernel.db.base import Base, UUIDString
from export_kernel.db.types import UTCDateTime


class AuditEntryModel(Base):
    """
    One audit log entry.

    Non-goals:
        - Does NOT check hash correctness on INSERT; ExportAuditor does.
    """

    __tablename__ = "expense_export_audit_log"

    __table_args__ = (
        Index("idx_export_audit_batch", "batch_id"),
        Index("idx_export_audit_action", "action"),
        Index("idx_export_audit_seq", "seq", unique=True),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    action: Mapped[str] = mapped_column(String(30), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Null only for the first entry of the chain
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEntryModel #{self.seq} {self.action} batch={self.batch_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
