from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, Union

from schemas import BillRecord

MIN_OCCURRENCES = 3
# Every recurring charge is amortised over a fixed month, whatever its cadence.
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class RecurringGroup:
    category: str
    amount: Decimal
    occurrences: int
    first_date: date
    last_date: date

    @property
    def monthly_charge(self) -> Decimal:
        return self.amount


def detect_recurring(
    bills: Iterable[BillRecord], min_occurrences: int = MIN_OCCURRENCES
) -> list[RecurringGroup]:
    """Group bills by exact (category, amount) and keep groups seen often enough."""
    grouped: dict[tuple[str, Decimal], list[date]] = defaultdict(list)
    for bill in bills:
        grouped[(bill.category, bill.amount)].append(bill.date)

    groups: list[RecurringGroup] = []
    for (category, amount), dates in grouped.items():
        if len(dates) < min_occurrences:
            continue
        groups.append(
            RecurringGroup(
                category=category,
                amount=amount,
                occurrences=len(dates),
                first_date=min(dates),
                last_date=max(dates),
            )
        )
    groups.sort(key=lambda g: (-g.occurrences, g.category, g.amount))
    return groups


def daily_recurring_rate(groups: Iterable[RecurringGroup]) -> Decimal:
    monthly = sum((g.monthly_charge for g in groups), Decimal("0"))
    return monthly / DAYS_PER_MONTH


def recurring_cover_days(
    bills: Iterable[BillRecord], cash_balance: Union[Decimal, int, float] = 0
) -> int:
    """Whole days the cash balance covers the detected recurring spend.

    floor(cash / (monthly / 30)) is evaluated as floor(cash * 30 / monthly) so
    that exact inputs give exact day counts.
    """
    groups = detect_recurring(bills)
    monthly = sum((g.monthly_charge for g in groups), Decimal("0"))
    cash = Decimal(str(cash_balance))
    if monthly == 0 or cash == 0:
        return 0
    days = (cash * DAYS_PER_MONTH / monthly).to_integral_value(rounding=ROUND_FLOOR)
    return int(days)
