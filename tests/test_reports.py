from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Bill, BudgetPeriod, FilterMode, PeriodType, ViewScope
import periods
from periods import generate_period_selectors, local_today, resolve_selector
from reports import build_report, build_trend_series, report_payload
from schemas import BillRecord, Insight, PeriodBudgetIn
from services import BudgetService, DataVersionService, ReportService

TODAY = date(2025, 3, 5)


def _record(bill_id: str, amount: str, day: date, category: str = "Food") -> BillRecord:
    stamp = datetime(2025, 1, 1, 12, 0)
    return BillRecord(
        id=bill_id,
        amount=Decimal(amount),
        category=category,
        date=day,
        created_at=stamp,
        updated_at=stamp,
    )


def test_period_selectors_newest_first() -> None:
    months = generate_period_selectors(PeriodType.month, today=TODAY)
    assert len(months) == 12
    assert (months[0].id, months[0].label) == ("month-0", "2025/03")
    assert months[1].end == date(2025, 2, 28)
    assert months[3].label == "2024/12"

    week = generate_period_selectors(PeriodType.week, today=TODAY)[0]
    assert (week.start, week.end) == (date(2025, 3, 3), date(2025, 3, 9))
    assert week.label == "2025-10"

    year = generate_period_selectors(PeriodType.year, today=TODAY)[1]
    assert (year.id, year.label, year.start) == ("year-1", "2024", date(2024, 1, 1))


def test_today_follows_configured_timezone(monkeypatch) -> None:
    zone = "Pacific/Kiritimati"
    monkeypatch.setattr(periods, "get_settings", lambda: SimpleNamespace(timezone=zone))

    today = local_today()
    assert today == datetime.now(ZoneInfo(zone)).date()
    month = generate_period_selectors(PeriodType.month)[0]
    assert month.start == today.replace(day=1)


def test_unknown_selector_falls_back_to_latest() -> None:
    selector, selectors = resolve_selector(PeriodType.month, "month-99", today=TODAY)
    assert selector is selectors[0]


@pytest.mark.parametrize(
    "period_type, points",
    [(PeriodType.week, 7), (PeriodType.month, 11), (PeriodType.year, 12)],
)
def test_trend_series_granularity(period_type, points) -> None:
    selector, _ = resolve_selector(period_type, None, today=TODAY)
    series = build_trend_series(period_type, [], selector.start, selector.end)
    assert len(series) == points


def test_month_trend_buckets_three_days() -> None:
    bills = [
        _record("a", "10", date(2025, 3, 1)),
        _record("b", "5", date(2025, 3, 3)),
        _record("c", "7", date(2025, 3, 4)),
        _record("d", "4", date(2025, 3, 31)),
    ]
    series = build_trend_series(
        PeriodType.month, bills, date(2025, 3, 1), date(2025, 3, 31)
    )
    assert series[0].value == Decimal("15")
    assert series[1].value == Decimal("7")
    assert series[-1].date == "2025-03-31"
    assert series[-1].value == Decimal("4")


def test_build_report_attaches_insights_verbatim() -> None:
    selector, selectors = resolve_selector(PeriodType.month, "month-0", today=TODAY)
    insight = Insight(
        id="food-up",
        title="Food spend is up",
        description="You spent more on food than usual.",
        severity="warn",
    )

    report = build_report(
        [_record("a", "30", date(2025, 3, 2)), _record("b", "10", date(2025, 3, 2), "Fun")],
        None,
        period_type=PeriodType.month,
        view_scope=ViewScope.personal,
        selector=selector,
        selectors=selectors,
        data_version=4,
        insight_provider=lambda summary: [insight],
    )

    assert report.insights == [insight]
    assert [c.category for c in report.categories] == ["Food", "Fun"]
    assert report.categories[0].percentage == 75.0
    payload = report_payload(report)
    assert payload["dataVersion"] == 4
    assert payload["insights"][0]["title"] == "Food spend is up"
    # One spend day in a 31-day month is about as volatile as it gets.
    assert payload["health"]["status"] == "Danger"
    assert payload["health"]["subScores"]["recurring"] == {"days": 0, "deduction": 7}
    assert "savings" not in payload["health"]["subScores"]


def test_failing_insight_provider_still_builds_report(caplog) -> None:
    selector, selectors = resolve_selector(PeriodType.week, None, today=TODAY)

    def broken(summary):
        raise RuntimeError("model offline")

    report = build_report(
        [],
        None,
        period_type=PeriodType.week,
        view_scope=ViewScope.personal,
        selector=selector,
        selectors=selectors,
        insight_provider=broken,
    )
    assert report.insights == []
    assert not report.is_empty
    assert "insights_failed" in caplog.text


def _add_bill(session: Session, bill_id: str, cents: int, day: date, **kwargs) -> None:
    stamp = datetime(2025, 3, 1, 12, 0)
    session.add(
        Bill(
            id=bill_id,
            user_id=kwargs.pop("user_id", 1),
            amount_cents=cents,
            category=kwargs.pop("category", "Food"),
            date=day,
            created_at=stamp,
            updated_at=stamp,
            synced_at=stamp,
            **kwargs,
        )
    )


def test_report_service_scopes_and_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _add_bill(session, "family", 4000, date(2025, 3, 2), is_family_bill=True)
        _add_bill(session, "mine", 6000, date(2025, 3, 3))
        _add_bill(session, "deleted", 9900, date(2025, 3, 3), is_deleted=True)
        _add_bill(session, "other-user", 9900, date(2025, 3, 3), user_id=2)
        _add_bill(session, "last-month", 9900, date(2025, 2, 27))
        session.commit()

        BudgetService(session, user_id=1).upsert(
            PeriodBudgetIn(period=BudgetPeriod.monthly, amount=Decimal("200"))
        )

        service = ReportService(session, user_id=1)
        personal = service.build(
            PeriodType.month, ViewScope.personal, "month-0", today=TODAY
        )
        family = service.build(PeriodType.month, ViewScope.family, "month-0", today=TODAY)

        assert personal.summary.core_totals.total_expense == Decimal("100")
        assert personal.summary.budget_utilisation.usage_pct == 50.0
        assert family.summary.core_totals.total_expense == Decimal("40")
        assert personal.data_version == DataVersionService(session, user_id=1).current()


def test_budget_upsert_replaces_and_bumps_version() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        versions = DataVersionService(session, user_id=1)
        start = versions.current()

        budgets.upsert(PeriodBudgetIn(period=BudgetPeriod.weekly, amount=Decimal("50")))
        budgets.upsert(
            PeriodBudgetIn(
                period=BudgetPeriod.weekly,
                amount=Decimal("75.25"),
                filter_mode=FilterMode.include,
                categories=["Food", " Food ", "Fun"],
            )
        )

        stored = budgets.get_all()
        assert len(stored) == 1
        assert stored[0].amount == Decimal("75.25")
        assert stored[0].categories == ["Food", "Fun"]
        assert versions.current() == start + 2
        assert budgets.get_for_period(BudgetPeriod.yearly) is None

        with pytest.raises(ValueError):
            budgets.upsert(
                PeriodBudgetIn(period=BudgetPeriod.monthly, filter_mode=FilterMode.exclude)
            )
