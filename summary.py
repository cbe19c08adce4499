"""Bill summarisation: totals, category utilisation and daily volatility.

Everything here is a pure function of its arguments so reports can be rebuilt
and tested without a database.
"""

from __future__ import annotations

import math
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Union

from models import BUDGET_PERIOD_FOR, BudgetPeriod, FilterMode, PeriodType
from periods import iter_days
from recurrence import daily_recurring_rate, detect_recurring, recurring_cover_days
from schemas import BillRecord, PeriodBudgetIn

CATEGORY_LIMIT = 15
TOP_SPEND_DAYS = 3

ZERO = Decimal("0")


@dataclass(frozen=True)
class CoreTotals:
    total_expense: Decimal
    total_income: Optional[Decimal] = None


@dataclass(frozen=True)
class CategoryUtil:
    category: str
    amount: Decimal
    budget: Optional[Decimal] = None
    usage_pct: Optional[float] = None


@dataclass(frozen=True)
class BudgetUtilisation:
    overall_budget: Optional[Decimal]
    usage_pct: Optional[float]
    category_util: list[CategoryUtil] = field(default_factory=list)


@dataclass(frozen=True)
class DailyStats:
    mean: float
    median: Decimal
    p90: Decimal
    min: Decimal
    max: Decimal


@dataclass(frozen=True)
class SpendDay:
    date: date
    amount: Decimal


@dataclass(frozen=True)
class Volatility:
    daily_expenses: list[Decimal]
    volatility_pct: float
    daily_stats: DailyStats
    top_spend_days: list[SpendDay] = field(default_factory=list)


@dataclass(frozen=True)
class RecurringSummary:
    recurring_cover_days: int
    daily_recurring_rate: Decimal = ZERO


@dataclass(frozen=True)
class BillSummary:
    period: BudgetPeriod
    start_date: date
    end_date: date
    core_totals: CoreTotals
    budget_utilisation: BudgetUtilisation
    volatility: Volatility
    recurring: RecurringSummary

    @property
    def category_util(self) -> list[CategoryUtil]:
        return self.budget_utilisation.category_util


def apply_budget_filter(
    bills: Iterable[BillRecord], budget: Optional[PeriodBudgetIn]
) -> list[BillRecord]:
    bills = list(bills)
    if budget is None or budget.filter_mode == FilterMode.all or not budget.categories:
        return bills
    listed = set(budget.categories)
    if budget.filter_mode == FilterMode.include:
        return [b for b in bills if b.category in listed]
    return [b for b in bills if b.category not in listed]


def bills_in_range(
    bills: Iterable[BillRecord], start: date, end: date
) -> list[BillRecord]:
    """Live bills dated within [start, end]; tombstones never count."""
    return [b for b in bills if not b.is_deleted and start <= b.date <= end]


def daily_totals(bills: Iterable[BillRecord]) -> dict[date, Decimal]:
    totals: dict[date, Decimal] = defaultdict(lambda: ZERO)
    for bill in bills:
        totals[bill.date] += bill.amount
    return dict(totals)


def dense_daily_series(
    totals: dict[date, Decimal], start: date, end: date
) -> list[Decimal]:
    return [totals.get(day, ZERO) for day in iter_days(start, end)]


def daily_stats(series: list[Decimal]) -> DailyStats:
    if not series:
        return DailyStats(mean=0.0, median=ZERO, p90=ZERO, min=ZERO, max=ZERO)
    ordered = sorted(series)
    n = len(ordered)
    return DailyStats(
        mean=statistics.fmean(float(v) for v in series),
        median=ordered[(n - 1) // 2],
        p90=ordered[math.floor(n * 0.9)],
        min=ordered[0],
        max=ordered[-1],
    )


def volatility_pct(series: list[Decimal]) -> float:
    """Coefficient of variation in percent; 0 whenever mean spend is 0."""
    if not series:
        return 0.0
    values = [float(v) for v in series]
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return statistics.pstdev(values) / mean * 100


def top_spend_days(
    totals: dict[date, Decimal], limit: int = TOP_SPEND_DAYS
) -> list[SpendDay]:
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [SpendDay(date=d, amount=amount) for d, amount in ranked[:limit]]


def category_utilisation(
    bills: Iterable[BillRecord],
    budget: Optional[PeriodBudgetIn],
    limit: int = CATEGORY_LIMIT,
) -> list[CategoryUtil]:
    by_category: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for bill in bills:
        by_category[bill.category] += bill.amount

    ranked = sorted(by_category.items(), key=lambda item: (-item[1], item[0]))
    listed = set(budget.categories) if budget else set()
    rows: list[CategoryUtil] = []
    for category, amount in ranked[:limit]:
        category_budget = None
        if budget is not None and budget.amount is not None and category in listed:
            category_budget = budget.amount
        usage = None
        if category_budget:
            usage = float(amount / category_budget * 100)
        rows.append(
            CategoryUtil(
                category=category,
                amount=amount,
                budget=category_budget,
                usage_pct=usage,
            )
        )
    return rows


def summarize_bills(
    bills: Iterable[BillRecord],
    budget: Optional[PeriodBudgetIn],
    period_type: PeriodType,
    start: date,
    end: date,
    cash_balance: Union[Decimal, int, float] = 0,
    total_income: Optional[Decimal] = None,
) -> BillSummary:
    filtered = apply_budget_filter(bills_in_range(bills, start, end), budget)

    total_expense = sum((b.amount for b in filtered), ZERO)
    overall_budget = budget.amount if budget is not None else None
    usage_pct = None
    if overall_budget is not None and overall_budget > 0:
        usage_pct = float(total_expense / overall_budget * 100)

    totals = daily_totals(filtered)
    series = dense_daily_series(totals, start, end)

    return BillSummary(
        period=BUDGET_PERIOD_FOR[period_type],
        start_date=start,
        end_date=end,
        core_totals=CoreTotals(total_expense=total_expense, total_income=total_income),
        budget_utilisation=BudgetUtilisation(
            overall_budget=overall_budget,
            usage_pct=usage_pct,
            category_util=category_utilisation(filtered, budget),
        ),
        volatility=Volatility(
            daily_expenses=series,
            volatility_pct=volatility_pct(series),
            daily_stats=daily_stats(series),
            top_spend_days=top_spend_days(totals),
        ),
        recurring=RecurringSummary(
            recurring_cover_days=recurring_cover_days(filtered, cash_balance),
            daily_recurring_rate=daily_recurring_rate(detect_recurring(filtered)),
        ),
    )


def _num(value: Optional[Decimal]) -> Optional[float]:
    return None if value is None else float(value)


def summary_payload(summary: BillSummary) -> dict[str, object]:
    """JSON-ready rendering handed to the insight service."""
    stats = summary.volatility.daily_stats
    return {
        "period": summary.period.value,
        "startDate": summary.start_date.isoformat(),
        "endDate": summary.end_date.isoformat(),
        "coreTotals": {
            "totalExpense": float(summary.core_totals.total_expense),
            "totalIncome": _num(summary.core_totals.total_income),
        },
        "budgetUtilisation": {
            "overallBudget": _num(summary.budget_utilisation.overall_budget),
            "usagePct": summary.budget_utilisation.usage_pct,
            "categoryUtil": [
                {
                    "category": c.category,
                    "amount": float(c.amount),
                    "budget": _num(c.budget),
                    "usagePct": c.usage_pct,
                }
                for c in summary.category_util
            ],
        },
        "volatility": {
            "dailyExpenses": [float(v) for v in summary.volatility.daily_expenses],
            "volatilityPct": summary.volatility.volatility_pct,
            "dailyStats": {
                "mean": stats.mean,
                "median": float(stats.median),
                "max": float(stats.max),
                "min": float(stats.min),
                "p90": float(stats.p90),
            },
            "topSpendDays": [
                {"date": d.date.isoformat(), "amount": float(d.amount)}
                for d in summary.volatility.top_spend_days
            ],
        },
        "recurring": {"recurringCoverDays": summary.recurring.recurring_cover_days},
    }
