"""External read-only collaborators: source records and incidents."""

from expense_export.collaborators.base import (
    IncidentCollaborator,
    IncidentRef,
    SourceRecordCollaborator,
    SourceRow,
)

__all__ = [
    "IncidentCollaborator",
    "IncidentRef",
    "SourceRecordCollaborator",
    "SourceRow",
]
