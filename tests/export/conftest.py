"""
Service-level fixtures: every stage service bound to the shared db_session.
"""

from datetime import date

import pytest

from expense_export.domain.types import ExportType
from expense_export.services import (
    BatchExporter,
    BatchService,
    BatchValidator,
    ExportAuditor,
    PostingTracker,
    ProfileService,
    RecordPuller,
)

JANUARY = (date(2025, 1, 1), date(2025, 1, 31))


@pytest.fixture
def auditor(db_session, clock):
    return ExportAuditor(db_session, clock)


@pytest.fixture
def batches(db_session, clock):
    return BatchService(db_session, clock)


@pytest.fixture
def profiles(db_session, clock):
    return ProfileService(db_session, clock)


@pytest.fixture
def puller(db_session, source, incidents, settings, clock):
    return RecordPuller(db_session, source, incidents, settings, clock)


@pytest.fixture
def validator(db_session, clock):
    return BatchValidator(db_session, clock)


@pytest.fixture
def exporter(db_session, clock, settings):
    return BatchExporter(db_session, clock, settings.artifact)


@pytest.fixture
def posting(db_session, clock):
    return PostingTracker(db_session, clock)


@pytest.fixture
def seed_rows(source, make_row):
    """Add ``count`` default rows (numbered from ``start``) to the source."""

    def _seed(count: int, start: int = 1, **overrides):
        rows = [make_row(n, **overrides) for n in range(start, start + count)]
        for row in rows:
            source.add(row)
        return rows

    return _seed


@pytest.fixture
def draft_batch(batches, actor_id):
    return batches.create_batch(ExportType.PER_DIEM, *JANUARY, actor_id)


@pytest.fixture
def exported_batch(draft_batch, seed_rows, puller, validator, exporter, actor_id):
    """A January per-diem batch with three exported records."""
    seed_rows(3)
    puller.pull_records(draft_batch.id, actor_id)
    validator.validate(draft_batch.id, actor_id)
    exporter.export(draft_batch.id, actor_id)
    return draft_batch
