"""In-memory collaborators for tests and local tooling."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Iterable, Sequence

from export_kernel.exceptions import SourceUnavailableError
from expense_export.collaborators.base import IncidentRef, SourceRow
from expense_export.domain.types import DateBasis, SourceType


class InMemorySourceRecords:
    """
    Holds source rows in a dict keyed by ``(source_type, source_id)``.

    Set ``available = False`` to simulate an unreachable source.
    """

    name = "source_records"

    def __init__(self, rows: Iterable[SourceRow] = ()):
        self._rows: dict[tuple[SourceType, str], SourceRow] = {}
        self.available = True
        self.fetch_calls = 0
        for row in rows:
            self.add(row)

    def add(self, row: SourceRow) -> None:
        self._rows[(row.source_type, row.source_id)] = row

    def update(self, source_type: SourceType, source_id: str, **changes) -> SourceRow:
        key = (source_type, source_id)
        self._rows[key] = replace(self._rows[key], **changes)
        return self._rows[key]

    def remove(self, source_type: SourceType, source_id: str) -> None:
        self._rows.pop((source_type, source_id), None)

    def fetch_rows(
        self,
        source_types: Sequence[SourceType],
        period_start: date,
        period_end: date,
        eligible_statuses: dict[SourceType, tuple[str, ...]],
        date_basis: DateBasis = DateBasis.EXPENSE_DATE,
    ) -> list[SourceRow]:
        self.fetch_calls += 1
        if not self.available:
            raise SourceUnavailableError(self.name, "source store offline")
        wanted = set(source_types)
        result = []
        for row in self._rows.values():
            if row.source_type not in wanted:
                continue
            statuses = eligible_statuses.get(row.source_type)
            if statuses and row.status not in statuses:
                continue
            row_date = row.period_date(date_basis)
            if row_date is None or not (period_start <= row_date <= period_end):
                continue
            result.append(row)
        return sorted(result, key=lambda r: (r.source_type.value, r.source_id))


class InMemoryIncidents:
    name = "incidents"

    def __init__(self, incidents: Iterable[IncidentRef] = ()):
        self._incidents = list(incidents)
        self.available = True

    def add(self, incident: IncidentRef) -> None:
        self._incidents.append(incident)

    def find_incidents(
        self,
        period_start: date,
        period_end: date,
        impacts: Sequence[str],
    ) -> list[IncidentRef]:
        if not self.available:
            raise SourceUnavailableError(self.name, "incident store offline")
        return [
            incident
            for incident in self._incidents
            if incident.training_impact in impacts
            and incident.incident_date is not None
            and period_start <= incident.incident_date <= period_end
        ]
