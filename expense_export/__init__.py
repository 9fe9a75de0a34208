"""
Expense Export -- batch pipeline from training expenses to the finance ledger.

- Pull per-diem, tuition and travel-cost rows into period batches
- Validate every record, accumulating errors instead of failing fast
- Render a flat artifact with a deterministic key per record
- Track external postings and reconcile exported against posted
"""

__version__ = "0.1.0"
