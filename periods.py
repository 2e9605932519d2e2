from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole calendar months.

    The day of month is ``desired_day`` (defaults to ``base.day``), snapped to
    the last day of the target month when that month is shorter.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, min(day, days_in_month(year, month)))


def budget_window(period: BudgetPeriod, start: date) -> Period:
    if period == BudgetPeriod.weekly:
        end = start + timedelta(days=6)
    elif period == BudgetPeriod.monthly:
        end = add_months(start, 1) - date.resolution
    else:
        end = add_months(start, 12) - date.resolution
    return Period(period.value, start, end)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
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
    return Period("this_month", first, add_months(first, 1) - date.resolution)
