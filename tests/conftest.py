"""
Pytest fixtures for the expense export test suite.

Provides:
- Structured logging configured once per session, plus captured_logs
- In-memory SQLite engine / session fixtures with every pipeline table
- DeterministicClock and the default pipeline settings
- In-memory source and incident collaborators with a row factory
- A wired ExportOrchestrator

SQLite note: the in-memory engine shares ONE connection (StaticPool).
Never keep ``db_session`` mid-transaction while the orchestrator runs;
orchestrator tests inspect the database through a fresh session after
each call.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from export_config import load_settings
from export_kernel.db.engine import build_engine, create_tables
from export_kernel.db.immutability import register_immutability_listeners
from export_kernel.domain.clock import DeterministicClock
from export_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from expense_export.collaborators.base import IncidentRef, SourceRow
from expense_export.collaborators.memory import InMemoryIncidents, InMemorySourceRecords
from expense_export.domain.types import SourceType
from expense_export.orchestrator import ExportOrchestrator

# Actor recorded on every test operation
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000aa")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture expense_export logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.get_summary()
            logs = captured_logs()
            assert any(r["message"] == "operation_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("expense_export")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    register_immutability_listeners()
    yield


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = build_engine("sqlite:///:memory:")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(
        fixed_time=datetime(2025, 2, 3, 9, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def settings():
    return load_settings(environ={})


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def make_row():
    """
    Factory for source rows.  Defaults describe an approved per-diem of
    500.00 LYD dated 2025-01-10 with every field validation needs.
    """

    def _make(n: int, source_type: SourceType = SourceType.PER_DIEM, **overrides) -> SourceRow:
        fields = dict(
            source_type=source_type,
            source_id=f"{source_type.value}-{n:03d}",
            amount=Decimal("500.00"),
            currency="LYD",
            employee_id=f"emp-{n:03d}",
            employee_payroll_id=f"P{n:05d}",
            employee_name=f"Employee {n}",
            entity="HQ",
            cost_centre="CC-100",
            training_request_id=f"tr-{n:03d}",
            session_id=f"sess-{n:03d}",
            expense_date=date(2025, 1, 10),
            recorded_date=date(2025, 1, 12),
            destination_country="Tunisia",
            destination_city="Tunis",
            status="approved",
        )
        fields.update(overrides)
        return SourceRow(**fields)

    return _make


@pytest.fixture
def make_incident():
    def _make(employee_id: str, session_id: str | None, **overrides) -> IncidentRef:
        fields = dict(
            incident_id=f"inc-{uuid4().hex[:8]}",
            employee_id=employee_id,
            session_id=session_id,
            training_impact="late_arrival",
            incident_date=date(2025, 1, 9),
        )
        fields.update(overrides)
        return IncidentRef(**fields)

    return _make


@pytest.fixture
def source():
    return InMemorySourceRecords()


@pytest.fixture
def incidents():
    return InMemoryIncidents()


@pytest.fixture
def orchestrator(session_factory, source, incidents, settings, clock):
    return ExportOrchestrator(
        session_factory=session_factory,
        source=source,
        incidents=incidents,
        settings=settings,
        clock=clock,
    )
