"""
Reconciliation arithmetic tests.

Verifies:
- Counts and amounts fold per status
- pendingAmount equals exportedAmount; variance = exported - posted
- Statuses outside exported/posted/failed are ignored
- The invariants hold for arbitrary inputs (property test)
"""

from decimal import Decimal

from hypothesis import given, strategies as st

from expense_export.domain.reconciliation import ReconciliationFilters, summarize
from expense_export.domain.types import ExportType, RecordStatus


class TestSummarize:
    def test_scenario_numbers(self):
        rows = [("posted", Decimal("500"))] * 7 + [("exported", Decimal("500"))] * 3
        summary = summarize(rows)
        assert summary.to_dict() == {
            "exportedCount": 3,
            "exportedAmount": "1500.00",
            "postedCount": 7,
            "postedAmount": "3500.00",
            "pendingCount": 3,
            "pendingAmount": "1500.00",
            "failedCount": 0,
            "failedAmount": "0.00",
            "variance": "-2000.00",
        }

    def test_other_statuses_ignored(self):
        summary = summarize([("pending", Decimal("10")), ("deferred", Decimal("5"))])
        assert summary.exported_count == summary.posted_count == summary.failed_count == 0

    def test_none_amount_counts_as_zero(self):
        summary = summarize([(RecordStatus.FAILED, None)])
        assert summary.failed_count == 1
        assert summary.failed_amount == Decimal("0")

    def test_empty(self):
        assert summarize([]).variance == Decimal("0")


class TestFilters:
    def test_from_camel_and_snake(self):
        assert ReconciliationFilters.from_dict({"exportType": "tuition", "postingPeriod": "2025-01"}) == (
            ReconciliationFilters(export_type=ExportType.TUITION, posting_period="2025-01")
        )
        assert ReconciliationFilters.from_dict({"batch_id": "b1"}).batch_id == "b1"

    def test_none(self):
        assert ReconciliationFilters.from_dict(None) == ReconciliationFilters()


statuses = st.sampled_from([s.value for s in RecordStatus])
amounts = st.decimals(min_value=0, max_value=100000, places=2, allow_nan=False, allow_infinity=False)


class TestSummaryProperties:
    @given(st.lists(st.tuples(statuses, amounts), max_size=40))
    def test_invariants(self, rows):
        summary = summarize(rows)
        assert summary.pending_amount == summary.exported_amount
        assert summary.pending_count == summary.exported_count
        assert summary.variance == summary.exported_amount - summary.posted_amount

        counted = sum(1 for status, _ in rows if status in ("exported", "posted", "failed"))
        assert summary.exported_count + summary.posted_count + summary.failed_count == counted

        posted_total = sum((a for s, a in rows if s == "posted"), Decimal("0"))
        assert summary.posted_amount == posted_total
