from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(d: date, count: int) -> date:
    """First day of the month ``count`` months away from ``d``'s month."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    return Period(f"{year:04d}-{month:02d}", date(year, month, 1), month_end(year, month))


def months_back(months: int, today: date) -> Period:
    """The window covering the last ``months`` months up to ``today``."""
    start_month = add_months(today, -months)
    day = min(today.day, month_end(start_month.year, start_month.month).day)
    return Period(f"last_{months}_months", start_month.replace(day=day), today)


def next_window(frequency: Frequency, start: date, end: date) -> tuple[date, date]:
    """Window that immediately follows ``[start, end]`` for a budget period.

    Monthly and yearly windows follow calendar arithmetic; daily and weekly
    windows keep the length of the current one.
    """
    new_start = end + timedelta(days=1)
    if frequency == Frequency.monthly:
        return new_start, _shift_months(new_start, 1)
    if frequency == Frequency.yearly:
        return new_start, _shift_months(new_start, 12)
    return new_start, new_start + (end - start)


def _shift_months(start: date, months: int) -> date:
    """Last day before the same day-of-month ``months`` later."""
    target = add_months(start, months)
    day = min(start.day, month_end(target.year, target.month).day)
    return target.replace(day=day) - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    first = today.replace(day=1)
    return Period("this_month", first, month_end(first.year, first.month))


def as_local(moment: datetime) -> datetime:
    """Naive local time for ``moment``; naive inputs are already local."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)
