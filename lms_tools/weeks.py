"""Week and time-slot helpers for the teaching schedule.

Days are numbered 0 (Monday) to 6 (Sunday), matching ``day_of_week`` in the
``teaching_schedules`` table. Week keys use the ISO week-numbering year so a
Sunday in week 1 and the following Monday never land in different keys.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, Tuple, Union

DateLike = Union[date, datetime, str]

SCHEDULE_GRID_START_MIN = 8 * 60  # 08:00
SCHEDULE_GRID_STEP_MIN = 60
SCHEDULE_SLOT_COUNT = 13
SCHEDULE_SLOT_STARTS = [
    SCHEDULE_GRID_START_MIN + idx * SCHEDULE_GRID_STEP_MIN for idx in range(SCHEDULE_SLOT_COUNT)
]
TIME_SLOTS = [f"{start // 60:02d}:{start % 60:02d}" for start in SCHEDULE_SLOT_STARTS]

SCHEDULE_DAY_KEYS = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]
WEEKDAYS = (0, 1, 2, 3, 4)
WEEKENDS = (5, 6)


def to_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def iso_week(value: DateLike) -> Tuple[int, int]:
    year, week, _ = to_date(value).isocalendar()
    return year, week


def week_start(value: DateLike) -> date:
    day = to_date(value)
    return day - timedelta(days=day.weekday())


def week_key(value: DateLike, kind: str) -> str:
    year, week = iso_week(value)
    return f"{kind}_{year}_W{week:02d}"


def schedule_days(schedule_type: str) -> Tuple[int, ...]:
    if schedule_type == "weekdays":
        return WEEKDAYS
    if schedule_type == "weekends":
        return WEEKENDS
    raise ValueError(f"unknown schedule type: {schedule_type!r}")


def week_range(value: DateLike, schedule_type: str) -> Tuple[date, date]:
    """First and last calendar day shown for the week containing ``value``."""

    monday = week_start(value)
    days = schedule_days(schedule_type)
    return monday + timedelta(days=days[0]), monday + timedelta(days=days[-1])


def day_date(week: DateLike, day_of_week: int) -> date:
    if not 0 <= day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
    return week_start(week) + timedelta(days=day_of_week)


def slot_label(index: int) -> str:
    if not 0 <= index < SCHEDULE_SLOT_COUNT:
        raise ValueError(f"time slot index must be between 0 and {SCHEDULE_SLOT_COUNT - 1}")
    return TIME_SLOTS[index]


def slot_index(label: str) -> int:
    cleaned = label.strip()
    if len(cleaned) == 4 and cleaned[1] == ":":
        cleaned = f"0{cleaned}"
    try:
        return TIME_SLOTS.index(cleaned)
    except ValueError:
        raise ValueError(f"{label!r} is not a schedule slot start") from None


def slot_span(index: int, duration: int) -> Tuple[str, str]:
    """Start and end clock labels of a placement."""

    end_minutes = SCHEDULE_SLOT_STARTS[index] + duration * SCHEDULE_GRID_STEP_MIN
    return slot_label(index), f"{end_minutes // 60:02d}:{end_minutes % 60:02d}"


def week_dates(value: DateLike) -> List[date]:
    monday = week_start(value)
    return [monday + timedelta(days=offset) for offset in range(7)]
