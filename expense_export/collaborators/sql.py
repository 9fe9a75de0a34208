"""
SQLAlchemy Core collaborators over the training application's tables.

The pipeline never writes to these tables.  They live on their own
``MetaData`` so ``create_tables()`` for the pipeline does not create them;
``SOURCE_METADATA.create_all()`` is available for tests and local tooling.

Any database error while reading is surfaced as SourceUnavailableError
before the pipeline has written anything.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from export_kernel.exceptions import SourceUnavailableError
from export_kernel.logging_config import get_logger
from expense_export.collaborators.base import IncidentRef, SourceRow
from expense_export.domain.types import DateBasis, SourceType

logger = get_logger("collaborators.sql")

SOURCE_METADATA = MetaData()

employee_profiles = Table(
    "profiles",
    SOURCE_METADATA,
    Column("id", String(36), primary_key=True),
    Column("employee_id", String(50)),  # payroll number
    Column("first_name_en", String(100)),
    Column("last_name_en", String(100)),
    Column("department", String(50)),
    Column("entity", String(100)),
)

per_diem_calculations = Table(
    "per_diem_calculations",
    SOURCE_METADATA,
    Column("id", String(36), primary_key=True),
    Column("employee_id", String(36)),
    Column("training_request_id", String(36)),
    Column("session_id", String(36)),
    Column("trip_id", String(36)),
    Column("final_amount", Numeric(38, 9)),
    Column("estimated_amount", Numeric(38, 9)),
    Column("currency", String(3)),
    Column("actual_end_date", Date),
    Column("planned_end_date", Date),
    Column("destination_country", String(100)),
    Column("destination_city", String(100)),
    Column("status", String(30)),
    Column("created_at", DateTime(timezone=True)),
)

tuition_charges = Table(
    "tuition_charges",
    SOURCE_METADATA,
    Column("id", String(36), primary_key=True),
    Column("employee_id", String(36)),
    Column("training_request_id", String(36)),
    Column("session_id", String(36)),
    Column("course_name", String(300)),
    Column("amount", Numeric(38, 9)),
    Column("currency", String(3)),
    Column("invoice_date", Date),
    Column("destination_country", String(100)),
    Column("destination_city", String(100)),
    Column("status", String(30)),
    Column("created_at", DateTime(timezone=True)),
)

travel_costs = Table(
    "travel_costs",
    SOURCE_METADATA,
    Column("id", String(36), primary_key=True),
    Column("employee_id", String(36)),
    Column("training_request_id", String(36)),
    Column("session_id", String(36)),
    Column("trip_id", String(36)),
    Column("amount", Numeric(38, 9)),
    Column("currency", String(3)),
    Column("expense_date", Date),
    Column("destination_country", String(100)),
    Column("destination_city", String(100)),
    Column("status", String(30)),
    Column("created_at", DateTime(timezone=True)),
)

travel_incidents = Table(
    "travel_incidents",
    SOURCE_METADATA,
    Column("id", String(36), primary_key=True),
    Column("employee_id", String(36)),
    Column("session_id", String(36)),
    Column("trip_id", String(36)),
    Column("incident_type", String(50)),
    Column("training_impact", String(50)),
    Column("incident_date", Date),
)


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _full_name(first: str | None, last: str | None) -> str | None:
    name = f"{first or ''} {last or ''}".strip()
    return name or None


class SqlSourceRecords:
    """Reads per-diem, tuition and travel-cost rows joined to employee profiles."""

    name = "source_records"

    def __init__(self, engine: Engine):
        self._engine = engine

    def _per_diem_query(self, start: date, end: date, statuses, basis: DateBasis):
        pd = per_diem_calculations
        p = employee_profiles
        expense_date = func.coalesce(pd.c.actual_end_date, pd.c.planned_end_date)
        period_col = func.date(pd.c.created_at, type_=Date) if basis is DateBasis.RECORDED_DATE else expense_date
        query = (
            select(
                pd,
                p.c.employee_id.label("payroll_id"),
                p.c.first_name_en,
                p.c.last_name_en,
                p.c.department,
                p.c.entity,
            )
            .select_from(pd.outerjoin(p, p.c.id == pd.c.employee_id))
            .where(and_(period_col >= start, period_col <= end))
        )
        if statuses:
            query = query.where(pd.c.status.in_(statuses))
        return query

    def _simple_query(self, table: Table, date_col, start: date, end: date, statuses, basis: DateBasis):
        p = employee_profiles
        period_col = func.date(table.c.created_at, type_=Date) if basis is DateBasis.RECORDED_DATE else date_col
        query = (
            select(
                table,
                p.c.employee_id.label("payroll_id"),
                p.c.first_name_en,
                p.c.last_name_en,
                p.c.department,
                p.c.entity,
            )
            .select_from(table.outerjoin(p, p.c.id == table.c.employee_id))
            .where(and_(period_col >= start, period_col <= end))
        )
        if statuses:
            query = query.where(table.c.status.in_(statuses))
        return query

    def _to_row(self, source_type: SourceType, m: Any) -> SourceRow:
        if source_type is SourceType.PER_DIEM:
            amount = m["final_amount"] if m["final_amount"] is not None else m["estimated_amount"]
            expense_date = _as_date(m["actual_end_date"] or m["planned_end_date"])
        elif source_type is SourceType.TUITION:
            amount = m["amount"]
            expense_date = _as_date(m["invoice_date"])
        else:
            amount = m["amount"]
            expense_date = _as_date(m["expense_date"])
        return SourceRow(
            source_type=source_type,
            source_id=str(m["id"]),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=m["currency"],
            employee_id=m["employee_id"],
            employee_payroll_id=m["payroll_id"],
            employee_name=_full_name(m["first_name_en"], m["last_name_en"]),
            entity=m["entity"],
            cost_centre=m["department"],
            training_request_id=m["training_request_id"],
            session_id=m["session_id"],
            trip_id=m.get("trip_id"),
            course_name=m.get("course_name"),
            expense_date=expense_date,
            recorded_date=_as_date(m["created_at"]),
            destination_country=m["destination_country"],
            destination_city=m["destination_city"],
            status=m["status"],
        )

    def fetch_rows(
        self,
        source_types: Sequence[SourceType],
        period_start: date,
        period_end: date,
        eligible_statuses: dict[SourceType, tuple[str, ...]],
        date_basis: DateBasis = DateBasis.EXPENSE_DATE,
    ) -> list[SourceRow]:
        queries = []
        for source_type in source_types:
            statuses = eligible_statuses.get(source_type, ())
            if source_type is SourceType.PER_DIEM:
                query = self._per_diem_query(period_start, period_end, statuses, date_basis)
            elif source_type is SourceType.TUITION:
                query = self._simple_query(
                    tuition_charges, tuition_charges.c.invoice_date,
                    period_start, period_end, statuses, date_basis,
                )
            else:
                query = self._simple_query(
                    travel_costs, travel_costs.c.expense_date,
                    period_start, period_end, statuses, date_basis,
                )
            queries.append((source_type, query))

        rows: list[SourceRow] = []
        try:
            with self._engine.connect() as conn:
                for source_type, query in queries:
                    for m in conn.execute(query).mappings():
                        rows.append(self._to_row(source_type, m))
        except SQLAlchemyError as exc:
            logger.warning(
                "source_fetch_failed",
                extra={"collaborator": self.name, "error": str(exc)},
            )
            raise SourceUnavailableError(self.name, str(exc)) from exc
        return rows


class SqlIncidents:
    name = "incidents"

    def __init__(self, engine: Engine):
        self._engine = engine

    def find_incidents(
        self,
        period_start: date,
        period_end: date,
        impacts: Sequence[str],
    ) -> list[IncidentRef]:
        t = travel_incidents
        query = select(t).where(
            t.c.incident_date >= period_start,
            t.c.incident_date <= period_end,
            t.c.training_impact.in_(list(impacts)),
        )
        try:
            with self._engine.connect() as conn:
                result = conn.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            logger.warning(
                "source_fetch_failed",
                extra={"collaborator": self.name, "error": str(exc)},
            )
            raise SourceUnavailableError(self.name, str(exc)) from exc
        return [
            IncidentRef(
                incident_id=str(m["id"]),
                employee_id=m["employee_id"],
                session_id=m["session_id"],
                training_impact=m["training_impact"],
                incident_date=_as_date(m["incident_date"]),
            )
            for m in result
        ]
