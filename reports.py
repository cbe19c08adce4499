import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from health import HealthScoreDetail, compute_health_score
from models import PeriodType, ViewScope
from periods import PeriodSelector, add_months, month_end
from schemas import BillRecord, Insight, PeriodBudgetIn
from summary import BillSummary, bills_in_range, summarize_bills, summary_payload

logger = logging.getLogger(__name__)

InsightProvider = Callable[[BillSummary], list[Insight]]

MONTH_BUCKET_DAYS = 3


@dataclass(frozen=True)
class TrendPoint:
    label: str
    value: Decimal
    date: str


@dataclass(frozen=True)
class CategorySlice:
    category: str
    amount: Decimal
    percentage: float


@dataclass
class Report:
    period_type: PeriodType
    view_scope: ViewScope
    period_selector_id: str
    data_version: Optional[int] = None
    summary: Optional[BillSummary] = None
    health: Optional[HealthScoreDetail] = None
    categories: list[CategorySlice] = field(default_factory=list)
    trend: list[TrendPoint] = field(default_factory=list)
    period_selectors: list[PeriodSelector] = field(default_factory=list)
    average_spending: Decimal = Decimal("0")
    insights: list[Insight] = field(default_factory=list)

    @classmethod
    def empty(
        cls,
        period_type: PeriodType,
        view_scope: ViewScope,
        period_selector_id: str,
    ) -> "Report":
        return cls(
            period_type=period_type,
            view_scope=view_scope,
            period_selector_id=period_selector_id,
        )

    @property
    def is_empty(self) -> bool:
        return self.summary is None


def _sum_between(bills: list[BillRecord], start: date, end: date) -> Decimal:
    return sum((b.amount for b in bills if start <= b.date <= end), Decimal("0"))


def build_trend_series(
    period_type: PeriodType,
    bills: Iterable[BillRecord],
    start: date,
    end: date,
) -> list[TrendPoint]:
    """Chart series: daily for a week, 3-day buckets for a month, monthly for a year."""
    live = bills_in_range(bills, start, end)
    points: list[TrendPoint] = []
    if period_type == PeriodType.year:
        current = start.replace(day=1)
        while current <= end:
            last = min(month_end(current), end)
            points.append(
                TrendPoint(
                    label=current.strftime("%b"),
                    value=_sum_between(live, current, last),
                    date=current.strftime("%Y-%m"),
                )
            )
            current = add_months(current, 1)
        return points

    step = 1 if period_type == PeriodType.week else MONTH_BUCKET_DAYS
    label_format = "%a" if period_type == PeriodType.week else "%d"
    current = start
    while current <= end:
        last = min(current + timedelta(days=step - 1), end)
        points.append(
            TrendPoint(
                label=current.strftime(label_format).lstrip("0"),
                value=_sum_between(live, current, last),
                date=current.isoformat(),
            )
        )
        current += timedelta(days=step)
    return points


def category_slices(summary: BillSummary) -> list[CategorySlice]:
    total = summary.core_totals.total_expense
    slices = []
    for row in summary.category_util:
        percentage = float(row.amount / total * 100) if total else 0.0
        slices.append(
            CategorySlice(category=row.category, amount=row.amount, percentage=percentage)
        )
    return slices


def build_report(
    bills: Iterable[BillRecord],
    budget: Optional[PeriodBudgetIn],
    *,
    period_type: PeriodType,
    view_scope: ViewScope,
    selector: PeriodSelector,
    selectors: list[PeriodSelector],
    data_version: Optional[int] = None,
    cash_balance: Decimal = Decimal("0"),
    total_income: Optional[Decimal] = None,
    insight_provider: Optional[InsightProvider] = None,
) -> Report:
    bills = list(bills)
    summary = summarize_bills(
        bills,
        budget,
        period_type,
        selector.start,
        selector.end,
        cash_balance=cash_balance,
        total_income=total_income,
    )
    trend = build_trend_series(period_type, bills, selector.start, selector.end)
    average = Decimal("0")
    if trend:
        average = sum((p.value for p in trend), Decimal("0")) / len(trend)

    insights: list[Insight] = []
    if insight_provider is not None:
        try:
            insights = list(insight_provider(summary))
        except Exception:
            logger.exception(
                f"insights_failed: period_type={period_type.value} selector={selector.id}"
            )

    return Report(
        period_type=period_type,
        view_scope=view_scope,
        period_selector_id=selector.id,
        data_version=data_version,
        summary=summary,
        health=compute_health_score(summary, total_income),
        categories=category_slices(summary),
        trend=trend,
        period_selectors=selectors,
        average_spending=average,
        insights=insights,
    )


def _health_payload(health: HealthScoreDetail) -> dict[str, object]:
    subs = health.sub_scores
    payload: dict[str, object] = {
        "budget": {"pct": subs.budget.pct, "deduction": subs.budget.deduction},
        "volatility": {
            "pct": subs.volatility.pct,
            "deduction": subs.volatility.deduction,
        },
        "recurring": {
            "days": subs.recurring.days,
            "deduction": subs.recurring.deduction,
        },
    }
    if subs.savings is not None:
        payload["savings"] = {
            "pct": subs.savings.pct,
            "deduction": subs.savings.deduction,
        }
    return {"score": health.score, "status": health.status.value, "subScores": payload}


def report_payload(report: Report) -> dict[str, object]:
    return {
        "periodType": report.period_type.value,
        "viewScope": report.view_scope.value,
        "periodSelectorId": report.period_selector_id,
        "dataVersion": report.data_version,
        "isEmpty": report.is_empty,
        "summary": summary_payload(report.summary) if report.summary else None,
        "health": _health_payload(report.health) if report.health else None,
        "categories": [
            {
                "category": c.category,
                "amount": float(c.amount),
                "percentage": c.percentage,
            }
            for c in report.categories
        ],
        "trend": [
            {"label": p.label, "value": float(p.value), "date": p.date}
            for p in report.trend
        ],
        "periodSelectors": [
            {
                "id": s.id,
                "label": s.label,
                "startDate": s.start.isoformat(),
                "endDate": s.end.isoformat(),
            }
            for s in report.period_selectors
        ],
        "averageSpending": float(report.average_spending),
        "insights": [i.model_dump(mode="json", by_alias=True) for i in report.insights],
    }
