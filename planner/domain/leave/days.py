"""Leave duration and slot coverage arithmetic"""

from datetime import date
from typing import Optional

from ...config import HOURS_PER_DAY
from ...errors import ValidationError
from ...models import Slot
from ..scheduling.grid import is_weekend, iter_weekdays

HALF_DAY_HOURS = HOURS_PER_DAY / 2
ALL_SLOTS = (Slot.MORNING.value, Slot.AFTERNOON.value)


def expected_hours(start: date, end: date, slot: Optional[str]) -> float:
    """
    Hours a leave shape consumes: half a day for a single-slot record, a full
    day per weekday otherwise. Weekends never count.
    """
    if start > end:
        raise ValidationError("Leave start date cannot be after end date")

    if slot is not None:
        if start != end:
            raise ValidationError("Half-day leave must cover exactly one date")
        if is_weekend(start):
            raise ValidationError("Half-day leave cannot fall on a weekend")
        return HALF_DAY_HOURS

    weekdays = sum(1 for _ in iter_weekdays(start, end))
    if weekdays == 0:
        raise ValidationError("Leave range contains no weekdays")
    return weekdays * HOURS_PER_DAY


def resolve_hours(start: date, end: date, slot: Optional[str], hours: Optional[float]) -> float:
    """Check caller-supplied hours against the leave shape, or derive them"""
    if hours is not None and slot is None and start == end and hours == HALF_DAY_HOURS:
        raise ValidationError("Half-day leave requires a slot")

    expected = expected_hours(start, end, slot)
    if hours is not None and abs(hours - expected) > 1e-9:
        raise ValidationError(
            f"Leave of this shape consumes {expected:g} hours, not {hours:g}",
            expectedHours=expected,
        )
    return expected


def hours_to_days(hours: float) -> float:
    return hours / HOURS_PER_DAY


def covered_cells(start: date, end: date, slot: Optional[str]) -> list[tuple[date, str]]:
    """(date, slot) cells a leave record blocks once approved"""
    slots = (slot,) if slot is not None else ALL_SLOTS
    return [(day, s) for day in iter_weekdays(start, end) for s in slots]


def record_cells(record) -> list[tuple[date, str]]:
    return covered_cells(record.start_date, record.end_date, record.slot)
