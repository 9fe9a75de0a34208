"""
Pipeline services.

Each service takes a session (and a clock), never commits, and appends its
own audit entry.  ExportOrchestrator wires them together and owns the
transaction boundary.
"""

from expense_export.services.auditor import AuditTrailEntry, ExportAuditor
from expense_export.services.batch_service import BatchService, ExportSummary
from expense_export.services.exporter import BatchExporter
from expense_export.services.posting_tracker import PostingTracker
from expense_export.services.profile_service import ProfileService, profile_from_dict
from expense_export.services.record_puller import RecordPuller
from expense_export.services.validator import BatchValidator

__all__ = [
    "AuditTrailEntry",
    "BatchExporter",
    "BatchService",
    "BatchValidator",
    "ExportAuditor",
    "ExportSummary",
    "PostingTracker",
    "ProfileService",
    "RecordPuller",
    "profile_from_dict",
]
