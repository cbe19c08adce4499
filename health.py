from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from summary import BillSummary

BUDGET_WEIGHT = 0.4
VOLATILITY_WEIGHT = 0.3
SAVINGS_WEIGHT = 0.2
RECURRING_WEIGHT = 0.1
RECURRING_TARGET_DAYS = 70

GOOD_THRESHOLD = 70
WARNING_THRESHOLD = 40


class HealthStatus(str, Enum):
    good = "Good"
    warning = "Warning"
    danger = "Danger"


@dataclass(frozen=True)
class HealthMetrics:
    budget_usage_pct: Optional[float]
    volatility_pct: float
    savings_rate_pct: Optional[float]
    recurring_cover_days: int


@dataclass(frozen=True)
class SubScore:
    pct: int
    deduction: int


@dataclass(frozen=True)
class RecurringSubScore:
    days: int
    deduction: int


@dataclass(frozen=True)
class SubScores:
    budget: SubScore
    volatility: SubScore
    recurring: RecurringSubScore
    savings: Optional[SubScore] = None


@dataclass(frozen=True)
class HealthScoreDetail:
    score: int
    status: HealthStatus
    sub_scores: SubScores


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def status_for(score: int) -> HealthStatus:
    if score >= GOOD_THRESHOLD:
        return HealthStatus.good
    if score >= WARNING_THRESHOLD:
        return HealthStatus.warning
    return HealthStatus.danger


def savings_rate(
    total_income: Optional[Decimal], total_expense: Decimal
) -> Optional[float]:
    """Percent of income kept; None when income is not tracked."""
    if not total_income:
        return None
    return float((total_income - total_expense) / total_income * 100)


def metrics_from_summary(
    summary: BillSummary, total_income: Optional[Decimal] = None
) -> HealthMetrics:
    income = total_income
    if income is None:
        income = summary.core_totals.total_income
    return HealthMetrics(
        budget_usage_pct=summary.budget_utilisation.usage_pct,
        volatility_pct=summary.volatility.volatility_pct,
        savings_rate_pct=savings_rate(income, summary.core_totals.total_expense),
        recurring_cover_days=summary.recurring.recurring_cover_days,
    )


def score_metrics(metrics: HealthMetrics, *, clamp: bool = False) -> HealthScoreDetail:
    """Weighted deduction model.

    A missing budget deducts nothing. The savings term is left out entirely
    when income is unknown, so users who don't track income aren't penalised.
    The score is not clamped unless ``clamp`` is set, which pins it to
    [0, 100] before the status is derived.
    """
    budget_pct = metrics.budget_usage_pct or 0.0
    budget_ded = budget_pct * BUDGET_WEIGHT
    vol_ded = metrics.volatility_pct * VOLATILITY_WEIGHT
    rec_ded = max(0, RECURRING_TARGET_DAYS - metrics.recurring_cover_days) * RECURRING_WEIGHT

    savings_sub = None
    savings_ded = 0.0
    if metrics.savings_rate_pct is not None:
        savings_ded = (100 - metrics.savings_rate_pct) * SAVINGS_WEIGHT
        savings_sub = SubScore(
            pct=round_half_up(metrics.savings_rate_pct),
            deduction=round_half_up(savings_ded),
        )

    score = round_half_up(100 - (budget_ded + vol_ded + savings_ded + rec_ded))
    if clamp:
        score = max(0, min(100, score))

    return HealthScoreDetail(
        score=score,
        status=status_for(score),
        sub_scores=SubScores(
            budget=SubScore(
                pct=round_half_up(budget_pct), deduction=round_half_up(budget_ded)
            ),
            volatility=SubScore(
                pct=round_half_up(metrics.volatility_pct),
                deduction=round_half_up(vol_ded),
            ),
            recurring=RecurringSubScore(
                days=metrics.recurring_cover_days, deduction=round_half_up(rec_ded)
            ),
            savings=savings_sub,
        ),
    )


def compute_health_score(
    summary: BillSummary,
    total_income: Optional[Decimal] = None,
    *,
    clamp: bool = False,
) -> HealthScoreDetail:
    return score_metrics(metrics_from_summary(summary, total_income), clamp=clamp)
