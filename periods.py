from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, value: date) -> bool:
        if isinstance(value, datetime):
            value = value.date()
        return self.start <= value <= self.end


def local_today() -> date:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).date()


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def month_period(year: int, month: int) -> Period:
    return Period("month", month_start(year, month), month_end(year, month))


def year_to_month_period(year: int, month: int) -> Period:
    return Period("year_to_month", date(year, 1, 1), month_end(year, month))


def previous_months_period(year: int, month: int) -> Period:
    # In January the window ends on Dec 31 of the prior year and matches nothing.
    return Period(
        "previous_months", date(year, 1, 1), month_start(year, month) - date.resolution
    )


def parse_year_month(value: str) -> tuple[int, int]:
    year_str, month_str = value.split("-", 1)
    year = int(year_str)
    month = int(month_str)
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    return year, month


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
        year, month = shift_month(today.year, today.month, -1)
        return Period("last_month", month_start(year, month), month_end(year, month))
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )
