"""ORM models; importing this package registers every table on Base.metadata."""

from expense_export.models.audit import AuditEntryModel
from expense_export.models.batch import (
    ExportBatchModel,
    ExportProfileModel,
    ExportRecordModel,
)

__all__ = [
    "AuditEntryModel",
    "ExportBatchModel",
    "ExportProfileModel",
    "ExportRecordModel",
]
