"""
Typed audit entry details.

Each auditable action has its own frozen dataclass carrying only the
fields relevant to that action.  ``to_payload()`` produces the JSON stored
on the audit entry (and hashed into the chain); ``parse_details()`` turns a
stored payload back into its typed form.
"""

from __future__ import annotations

from dataclasses import MISSING, asdict, dataclass, fields
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar


class AuditAction(str, Enum):
    """Every mutating pipeline operation appends one entry with its action."""

    CREATE_BATCH = "create_batch"
    PULL_RECORDS = "pull_records"
    VALIDATE = "validate"
    EXPORT = "export"
    RE_EXPORT = "re_export"
    MARK_POSTED = "mark_posted"
    MARK_FAILED = "mark_failed"
    DEFER_RECORDS = "defer_records"
    DELETE_BATCH = "delete_batch"
    SAVE_PROFILE = "save_profile"


@dataclass(frozen=True)
class AuditDetails:
    action: ClassVar[AuditAction]

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Decimal):
                payload[key] = str(value)
            elif isinstance(value, tuple):
                payload[key] = list(value)
        return payload


@dataclass(frozen=True)
class BatchCreatedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.CREATE_BATCH

    batch_number: str
    export_type: str
    period_start: str
    period_end: str
    entity_filter: tuple[str, ...] = ()
    cost_centre_filter: tuple[str, ...] = ()
    profile_id: str | None = None


@dataclass(frozen=True)
class RecordsPulledDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.PULL_RECORDS

    records_count: int
    new_records: int
    refreshed_records: int
    total_amount: Decimal
    incident_adjusted_count: int


@dataclass(frozen=True)
class BatchValidatedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.VALIDATE

    valid_count: int
    error_count: int


@dataclass(frozen=True)
class BatchExportedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.EXPORT

    file_name: str
    records_exported: int
    total_amount: Decimal


@dataclass(frozen=True)
class BatchReExportedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.RE_EXPORT

    file_name: str
    records_exported: int
    re_export_count: int


@dataclass(frozen=True)
class RecordsPostedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.MARK_POSTED

    record_ids: tuple[str, ...]
    external_reference: str | None = None
    batch_closed: bool = False


@dataclass(frozen=True)
class RecordsFailedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.MARK_FAILED

    record_ids: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class RecordsDeferredDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.DEFER_RECORDS

    record_ids: tuple[str, ...]
    deferred_records: int


@dataclass(frozen=True)
class BatchDeletedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.DELETE_BATCH

    batch_number: str
    export_type: str


@dataclass(frozen=True)
class ProfileSavedDetails(AuditDetails):
    action: ClassVar[AuditAction] = AuditAction.SAVE_PROFILE

    profile_id: str
    profile_name: str
    created: bool


_DETAILS_BY_ACTION: dict[AuditAction, type[AuditDetails]] = {
    cls.action: cls
    for cls in (
        BatchCreatedDetails,
        RecordsPulledDetails,
        BatchValidatedDetails,
        BatchExportedDetails,
        BatchReExportedDetails,
        RecordsPostedDetails,
        RecordsFailedDetails,
        RecordsDeferredDetails,
        BatchDeletedDetails,
        ProfileSavedDetails,
    )
}


def parse_details(action: AuditAction | str, payload: dict[str, Any]) -> AuditDetails:
    """
    Rebuild the typed details for a stored payload.

    Raises:
        ValueError: unknown action.
        KeyError: payload lacks a required field.
    """
    cls = _DETAILS_BY_ACTION[AuditAction(action)]
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in payload:
            if f.default is MISSING:
                raise KeyError(f"{cls.__name__} payload lacks {f.name!r}")
            continue
        value = payload[f.name]
        if isinstance(value, list):
            value = tuple(value)
        elif f.type == "Decimal" and value is not None:
            value = Decimal(value)
        kwargs[f.name] = value
    return cls(**kwargs)
