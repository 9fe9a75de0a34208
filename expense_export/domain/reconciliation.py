"""
Reconciliation arithmetic.

Compares what was exported against what the external system confirmed as
posted.  Pure: takes ``(status, amount)`` pairs, returns a summary.  A
non-zero variance is surfaced to operators, never auto-corrected.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from export_kernel.db.types import ZERO
from expense_export.domain.types import ExportType, RecordStatus, money_str


@dataclass(frozen=True)
class ReconciliationFilters:
    export_type: ExportType | None = None
    batch_id: str | None = None
    posting_period: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReconciliationFilters:
        data = data or {}
        export_type = data.get("export_type") or data.get("exportType")
        return cls(
            export_type=ExportType(export_type) if export_type else None,
            batch_id=data.get("batch_id") or data.get("batchId"),
            posting_period=data.get("posting_period") or data.get("postingPeriod"),
        )


@dataclass(frozen=True)
class ReconciliationSummary:
    """
    Invariants:
        pending_amount == exported_amount
        variance == exported_amount - posted_amount
    """

    exported_count: int
    exported_amount: Decimal
    posted_count: int
    posted_amount: Decimal
    failed_count: int
    failed_amount: Decimal

    @property
    def pending_count(self) -> int:
        return self.exported_count

    @property
    def pending_amount(self) -> Decimal:
        return self.exported_amount

    @property
    def variance(self) -> Decimal:
        return self.exported_amount - self.posted_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "exportedCount": self.exported_count,
            "exportedAmount": money_str(self.exported_amount),
            "postedCount": self.posted_count,
            "postedAmount": money_str(self.posted_amount),
            "pendingCount": self.pending_count,
            "pendingAmount": money_str(self.pending_amount),
            "failedCount": self.failed_count,
            "failedAmount": money_str(self.failed_amount),
            "variance": money_str(self.variance),
        }


def summarize(rows: Iterable[tuple[RecordStatus | str, Decimal | None]]) -> ReconciliationSummary:
    """Fold ``(status, amount)`` pairs; statuses other than exported/posted/failed are ignored."""
    counts = {RecordStatus.EXPORTED: 0, RecordStatus.POSTED: 0, RecordStatus.FAILED: 0}
    amounts = {status: ZERO for status in counts}
    for status, amount in rows:
        status = RecordStatus(status)
        if status not in counts:
            continue
        counts[status] += 1
        amounts[status] += amount if amount is not None else ZERO
    return ReconciliationSummary(
        exported_count=counts[RecordStatus.EXPORTED],
        exported_amount=amounts[RecordStatus.EXPORTED],
        posted_count=counts[RecordStatus.POSTED],
        posted_amount=amounts[RecordStatus.POSTED],
        failed_count=counts[RecordStatus.FAILED],
        failed_amount=amounts[RecordStatus.FAILED],
    )
