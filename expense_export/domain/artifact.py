"""
Flat export artifact rendering.

Pure functions that turn export records into the vendor-neutral delimited
file handed to the finance/ERP system.  Column order is fixed.  The
employee name column is always double-quoted; any other value is quoted
only when it contains the delimiter, a double quote or a line break.
Embedded quotes are doubled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable

from expense_export.domain.types import ExportRecord, money_str


@dataclass(frozen=True)
class ArtifactColumn:
    header: str
    value: Callable[[ExportRecord], object]
    always_quote: bool = False


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


EXPORT_COLUMNS: tuple[ArtifactColumn, ...] = (
    ArtifactColumn("Export Key", lambda r: r.export_key),
    ArtifactColumn("Employee Payroll ID", lambda r: r.employee_payroll_id),
    ArtifactColumn("Employee Name", lambda r: r.employee_name, always_quote=True),
    ArtifactColumn("Expense Type", lambda r: r.expense_type),
    ArtifactColumn("Amount", lambda r: money_str(r.amount)),
    ArtifactColumn("Currency", lambda r: r.currency),
    ArtifactColumn("Cost Centre", lambda r: r.cost_centre),
    ArtifactColumn("GL Account", lambda r: r.gl_account),
    ArtifactColumn("Expense Date", lambda r: r.expense_date),
    ArtifactColumn("Posting Period", lambda r: r.posting_period),
    ArtifactColumn("Destination Country", lambda r: r.destination_country),
    ArtifactColumn("Destination City", lambda r: r.destination_city),
    ArtifactColumn("Training Request ID", lambda r: r.training_request_id),
    ArtifactColumn("Session ID", lambda r: r.session_id),
    ArtifactColumn("Has Incident Adjustment", lambda r: "Yes" if r.has_incident_adjustment else "No"),
)

HEADERS: tuple[str, ...] = tuple(column.header for column in EXPORT_COLUMNS)


def quote_field(text: str, delimiter: str, force: bool = False) -> str:
    if force or delimiter in text or '"' in text or "\n" in text or "\r" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def render_row(record: ExportRecord, delimiter: str = ",") -> str:
    return delimiter.join(
        quote_field(_text(column.value(record)), delimiter, column.always_quote)
        for column in EXPORT_COLUMNS
    )


def render_artifact(
    records: Iterable[ExportRecord],
    delimiter: str = ",",
    line_terminator: str = "\n",
) -> str:
    """Header row plus one row per record, in the order given."""
    lines = [delimiter.join(quote_field(h, delimiter) for h in HEADERS)]
    lines.extend(render_row(record, delimiter) for record in records)
    return line_terminator.join(lines)


def artifact_file_name(batch_number: str, on: date, re_export: bool = False) -> str:
    """``export_<batch_number>_<YYYY-MM-DD>.csv`` or the ``re_export_`` variant."""
    prefix = "re_export" if re_export else "export"
    return f"{prefix}_{batch_number}_{on.isoformat()}.csv"
