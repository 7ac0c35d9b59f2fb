import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

SECONDS_PER_DAY = 86400
CENT = Decimal("0.01")

REPLACEMENT_CONDITIONS = ("lost", "damaged")


def to_money(value) -> Decimal:
    """Coerce DB numerics, ints and floats to a 2dp Decimal."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FineBreakdown:
    days_overdue: int
    late_fine: Decimal
    replacement_cost: Decimal

    @property
    def total(self) -> Decimal:
        return self.late_fine + self.replacement_cost


def days_overdue(due_date: datetime, as_of: datetime) -> int:
    """Whole days past due, rounding any part-day up; 0 on or before the due date."""
    elapsed = (as_of - due_date).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / SECONDS_PER_DAY)


def calculate_fine(book, loan, as_of: datetime, condition: str = "good") -> FineBreakdown:
    """Fine owed on ``loan`` if it were settled at ``as_of``.

    Late fine is ``days_overdue * book.daily_fine``. A lost or damaged copy
    additionally costs ``book.replacement_cost``. No side effects.
    """
    days = days_overdue(loan.due_date, as_of)
    late_fine = to_money(Decimal(days) * to_money(book.daily_fine))
    replacement = to_money(book.replacement_cost) if condition in REPLACEMENT_CONDITIONS else to_money(0)
    return FineBreakdown(days_overdue=days, late_fine=late_fine, replacement_cost=replacement)
