"""
Collaborator protocols and the DTOs they return.

Contract:
    SourceRecordCollaborator.fetch_rows() returns every eligible source row of
    the requested source types whose date falls in the closed period.
    IncidentCollaborator.find_incidents() returns incidents in the period
    whose training impact is in the requested set.

    Both are read-only.  Either may raise SourceUnavailableError; callers
    treat that as "nothing happened, retry the whole call".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol, Sequence, runtime_checkable

from expense_export.domain.types import DateBasis, SourceType


@dataclass(frozen=True)
class SourceRow:
    """One eligible per-diem, tuition or travel-cost row from the application."""

    source_type: SourceType
    source_id: str
    amount: Decimal | None
    currency: str | None = None
    employee_id: str | None = None
    employee_payroll_id: str | None = None
    employee_name: str | None = None
    entity: str | None = None
    cost_centre: str | None = None
    training_request_id: str | None = None
    session_id: str | None = None
    trip_id: str | None = None
    course_name: str | None = None
    expense_date: date | None = None
    recorded_date: date | None = None
    destination_country: str | None = None
    destination_city: str | None = None
    status: str | None = None

    def period_date(self, basis: DateBasis) -> date | None:
        if basis is DateBasis.RECORDED_DATE:
            return self.recorded_date
        return self.expense_date


@dataclass(frozen=True)
class IncidentRef:
    incident_id: str
    employee_id: str
    session_id: str | None
    training_impact: str
    incident_date: date | None = None

    @property
    def join_key(self) -> tuple[str, str | None]:
        return (self.employee_id, self.session_id)


@runtime_checkable
class SourceRecordCollaborator(Protocol):
    def fetch_rows(
        self,
        source_types: Sequence[SourceType],
        period_start: date,
        period_end: date,
        eligible_statuses: dict[SourceType, tuple[str, ...]],
        date_basis: DateBasis = DateBasis.EXPENSE_DATE,
    ) -> list[SourceRow]:
        """Eligible rows dated within ``[period_start, period_end]``."""
        ...


@runtime_checkable
class IncidentCollaborator(Protocol):
    def find_incidents(
        self,
        period_start: date,
        period_end: date,
        impacts: Sequence[str],
    ) -> list[IncidentRef]:
        """Incidents dated within the period with an impact in ``impacts``."""
        ...
