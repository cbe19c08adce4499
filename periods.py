from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import PeriodType


@dataclass(frozen=True)
class PeriodSelector:
    id: str
    label: str
    start: date
    end: date


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every calendar day from start to end, both inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_end(d: date) -> date:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def period_bounds(period_type: PeriodType, anchor: date) -> tuple[date, date]:
    if period_type == PeriodType.week:
        start = anchor - timedelta(days=anchor.weekday())
        return start, start + timedelta(days=6)
    if period_type == PeriodType.month:
        return anchor.replace(day=1), month_end(anchor)
    return date(anchor.year, 1, 1), date(anchor.year, 12, 31)


def period_label(period_type: PeriodType, anchor: date) -> str:
    if period_type == PeriodType.week:
        iso_year, iso_week, _ = anchor.isocalendar()
        return f"{iso_year}-{iso_week:02d}"
    if period_type == PeriodType.month:
        return f"{anchor.year}/{anchor.month:02d}"
    return str(anchor.year)


def default_selector_id(period_type: PeriodType) -> str:
    return f"{period_type.value}-0"


def generate_period_selectors(
    period_type: PeriodType, count: int = 12, *, today: Optional[date] = None
) -> list[PeriodSelector]:
    """The latest `count` periods, newest first, ids like ``month-0``."""
    today = today or local_today()
    selectors: list[PeriodSelector] = []
    for i in range(count):
        if period_type == PeriodType.week:
            anchor = today - timedelta(weeks=i)
        elif period_type == PeriodType.month:
            anchor = add_months(today, -i)
        else:
            anchor = date(today.year - i, 1, 1)
        start, end = period_bounds(period_type, anchor)
        selectors.append(
            PeriodSelector(
                id=f"{period_type.value}-{i}",
                label=period_label(period_type, anchor),
                start=start,
                end=end,
            )
        )
    return selectors


def resolve_selector(
    period_type: PeriodType,
    selector_id: Optional[str],
    *,
    today: Optional[date] = None,
) -> tuple[PeriodSelector, list[PeriodSelector]]:
    """Look up a selector id; unknown or empty ids fall back to the latest period."""
    selectors = generate_period_selectors(period_type, today=today)
    for selector in selectors:
        if selector.id == selector_id:
            return selector, selectors
    return selectors[0], selectors
