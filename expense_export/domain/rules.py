"""
Record validation rules.

A closed, ordered rule set applied to every export record.  All rules run
and their issues accumulate; nothing short-circuits on the first failure.
The result is a pure function of the record's current fields, so running
validation twice over unchanged data yields the same issues.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Protocol

from export_kernel.db.types import is_valid_currency
from expense_export.domain.types import ValidationIssue


class ValidatableRecord(Protocol):
    employee_payroll_id: str | None
    cost_centre: str | None
    amount: Decimal | None
    currency: str | None


def _present(value: str | None) -> bool:
    return value is not None and str(value).strip() != ""


@dataclass(frozen=True)
class ValidationRule:
    code: str
    field: str
    message: str
    check: Callable[[ValidatableRecord], bool]
    # Rule is skipped (not failed) when this returns False
    applies: Callable[[ValidatableRecord], bool] = lambda record: True

    def evaluate(self, record: ValidatableRecord) -> ValidationIssue | None:
        if not self.applies(record) or self.check(record):
            return None
        return ValidationIssue(code=self.code, message=self.message, field=self.field)


RECORD_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(
        code="MISSING_PAYROLL_ID",
        field="employee_payroll_id",
        message="Missing employee payroll ID",
        check=lambda r: _present(r.employee_payroll_id),
    ),
    ValidationRule(
        code="MISSING_COST_CENTRE",
        field="cost_centre",
        message="Missing cost centre",
        check=lambda r: _present(r.cost_centre),
    ),
    ValidationRule(
        code="INVALID_AMOUNT",
        field="amount",
        message="Invalid amount",
        check=lambda r: r.amount is not None and r.amount > 0,
    ),
    ValidationRule(
        code="MISSING_CURRENCY",
        field="currency",
        message="Missing currency",
        check=lambda r: _present(r.currency),
    ),
    ValidationRule(
        code="INVALID_CURRENCY",
        field="currency",
        message="Currency is not a valid ISO 4217 code",
        check=lambda r: is_valid_currency(r.currency),
        applies=lambda r: _present(r.currency),
    ),
)


def validate_record(
    record: ValidatableRecord,
    rules: tuple[ValidationRule, ...] = RECORD_RULES,
) -> tuple[ValidationIssue, ...]:
    """Every failed rule's issue, in rule order."""
    issues = (rule.evaluate(record) for rule in rules)
    return tuple(issue for issue in issues if issue is not None)
