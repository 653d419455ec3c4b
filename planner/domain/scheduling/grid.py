"""
Grid expansion: turns an anchor date and a view granularity into the ordered
weekday columns of the calendar. Weekends are never grid columns.
"""

import calendar
import enum
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


class ViewType(str, enum.Enum):
    DAY = "day"
    WEEK = "week"
    BIWEEK = "biweek"
    MONTH = "month"


WEEKDAY_COUNTS = {ViewType.DAY: 1, ViewType.WEEK: 5, ViewType.BIWEEK: 10}


@dataclass(frozen=True)
class GridDay:
    date: date
    is_today: bool
    display_date: str
    day_name: str


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def next_weekday(day: date) -> date:
    """Return the day itself, or the following Monday when it falls on a weekend"""
    while is_weekend(day):
        day += timedelta(days=1)
    return day


def week_start(day: date) -> date:
    """Monday of the week containing the day; weekend days roll forward to the next Monday"""
    if is_weekend(day):
        return next_weekday(day)
    return day - timedelta(days=day.weekday())


def iter_weekdays(start: date, end: date):
    """Yield every weekday from start to end inclusive"""
    current = start
    while current <= end:
        if not is_weekend(current):
            yield current
        current += timedelta(days=1)


def count_weekdays(start: date, end: date) -> int:
    return sum(1 for _ in iter_weekdays(start, end))


def expand_dates(anchor: date, view: ViewType) -> list[date]:
    """
    Expand an anchor into the grid's weekday dates.

    Day, Week and BiWeek views start at the anchor's weekday (Day) or the
    Monday of the anchor's week (Week, BiWeek) and take 1, 5 or 10 weekdays.
    Month views cover every weekday of the anchor's calendar month.
    """
    view = ViewType(view)

    if view == ViewType.MONTH:
        first = anchor.replace(day=1)
        last = anchor.replace(day=calendar.monthrange(anchor.year, anchor.month)[1])
        return list(iter_weekdays(first, last))

    start = next_weekday(anchor) if view == ViewType.DAY else week_start(anchor)
    wanted = WEEKDAY_COUNTS[view]
    dates = []
    current = start
    while len(dates) < wanted:
        if not is_weekend(current):
            dates.append(current)
        current += timedelta(days=1)
    return dates


def expand_grid(anchor: date, view: ViewType, today: Optional[date] = None) -> list[GridDay]:
    """Expand the grid and stamp display metadata plus the caller's "today" marker"""
    today = today or date.today()
    return [
        GridDay(
            date=day,
            is_today=day == today,
            display_date=day.strftime("%d"),
            day_name=day.strftime("%a"),
        )
        for day in expand_dates(anchor, view)
    ]
