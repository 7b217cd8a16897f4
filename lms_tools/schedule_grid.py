"""Placement rules for the weekly teaching grid.

A placement sits on one day (0 = Monday .. 6 = Sunday) and covers
``duration`` consecutive hourly slots starting at ``time_slot_index``. The
whole span has to stay inside the 13-slot grid, and two placements of the
same company, week and day may not share a slot.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from lms_tools.weeks import SCHEDULE_DAY_KEYS, SCHEDULE_SLOT_COUNT

MAX_SLOT_INDEX = SCHEDULE_SLOT_COUNT - 1
MIN_DURATION = 1
MAX_DURATION = 6
DEFAULT_ROOM = "TBD"
DEFAULT_COLOR = "bg-blue-500"

SCHEDULE_MATRIX_ROWS = SCHEDULE_SLOT_COUNT
SCHEDULE_MATRIX_COLS = len(SCHEDULE_DAY_KEYS)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ScheduleValidationError(ValueError):
    """Raised when a schedule payload breaks the grid rules."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


@dataclass
class Conflict:
    type: str  # "instructor", "room" or "time_slot"
    message: str
    conflicting: Optional[Mapping[str, Any]] = None


class ScheduleConflictError(RuntimeError):
    """Raised when a placement overlaps an existing one."""

    def __init__(self, conflict: Conflict) -> None:
        super().__init__(conflict.message)
        self.conflict = conflict


@dataclass
class Placement:
    week_start_date: str
    day_of_week: int
    time_slot_index: int
    duration: int = 1
    company: str = "login"
    id: Optional[str] = None
    course_id: Optional[str] = None
    instructor_id: Optional[str] = None
    room: Optional[str] = None
    version: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Placement":
        known = {
            "week_start_date",
            "day_of_week",
            "time_slot_index",
            "duration",
            "company",
            "id",
            "course_id",
            "instructor_id",
            "room",
            "version",
        }
        return cls(
            week_start_date=str(row.get("week_start_date") or ""),
            day_of_week=int(row.get("day_of_week") or 0),
            time_slot_index=int(row.get("time_slot_index") or 0),
            duration=int(row.get("duration") or 1),
            company=str(row.get("company") or "login"),
            id=str(row["id"]) if row.get("id") is not None else None,
            course_id=row.get("course_id"),
            instructor_id=row.get("instructor_id"),
            room=row.get("room"),
            version=row.get("version"),
            extra={k: v for k, v in row.items() if k not in known},
        )

    @property
    def last_slot(self) -> int:
        return self.time_slot_index + self.duration - 1

    def slots(self) -> range:
        return range(self.time_slot_index, self.time_slot_index + self.duration)

    def same_day(self, other: "Placement") -> bool:
        return (
            self.week_start_date == other.week_start_date
            and self.day_of_week == other.day_of_week
            and self.company == other.company
        )

    def overlaps(self, other: "Placement") -> bool:
        return (
            self.same_day(other)
            and self.time_slot_index <= other.last_slot
            and other.time_slot_index <= self.last_slot
        )

    def label(self) -> str:
        return str(
            self.extra.get("course_title")
            or (self.extra.get("teaching_courses") or {}).get("name")
            or self.course_id
            or self.id
            or "untitled"
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate(payload: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []

    week = payload.get("week_start_date")
    if not week:
        errors.append("week_start_date is required")
    elif not DATE_RE.match(str(week)):
        errors.append("week_start_date must be in YYYY-MM-DD format")

    day = payload.get("day_of_week")
    if not _is_int(day) or not 0 <= day <= 6:
        errors.append("day_of_week must be between 0 (Monday) and 6 (Sunday)")

    slot = payload.get("time_slot_index")
    if not _is_int(slot) or not 0 <= slot <= MAX_SLOT_INDEX:
        errors.append(f"time_slot_index must be between 0 and {MAX_SLOT_INDEX}")

    duration = payload.get("duration", 1)
    if not _is_int(duration) or not MIN_DURATION <= duration <= MAX_DURATION:
        errors.append(f"duration must be between {MIN_DURATION} and {MAX_DURATION} slots")
    elif _is_int(slot) and 0 <= slot <= MAX_SLOT_INDEX and slot + duration - 1 > MAX_SLOT_INDEX:
        errors.append(
            f"placement would run past the last slot (slot {slot} + {duration} > {SCHEDULE_SLOT_COUNT})"
        )

    if not payload.get("company"):
        errors.append("company is required")

    for key in ("id", "course_id", "instructor_id"):
        value = payload.get(key)
        if value and not UUID_RE.match(str(value)):
            errors.append(f"Invalid UUID format for {key}")

    return errors


def require_valid(payload: Mapping[str, Any]) -> None:
    errors = validate(payload)
    if errors:
        raise ScheduleValidationError(errors)


def find_conflict(
    candidate: Placement,
    existing: Iterable[Placement],
    exclude_id: Optional[str] = None,
) -> Optional[Conflict]:
    """Return the first clash between ``candidate`` and ``existing`` rows."""

    for other in sorted(existing, key=lambda p: p.time_slot_index):
        if exclude_id is not None and other.id == exclude_id:
            continue
        if not candidate.overlaps(other):
            continue
        row = {"id": other.id, **other.extra}
        if candidate.instructor_id and other.instructor_id == candidate.instructor_id:
            return Conflict(
                "instructor",
                f"Instructor already teaches {other.label()} at this time",
                row,
            )
        if candidate.room and candidate.room != DEFAULT_ROOM and other.room == candidate.room:
            return Conflict(
                "room",
                f"Room {candidate.room} is already occupied by {other.label()}",
                row,
            )
        return Conflict("time_slot", f"Time slot is already occupied by {other.label()}", row)
    return None


def max_duration(candidate: Placement, existing: Iterable[Placement]) -> int:
    """Longest duration that fits from the candidate's slot; 0 when the slot itself is taken."""

    blockers = [
        other
        for other in existing
        if other.id != candidate.id and other.same_day(candidate)
    ]
    longest = 0
    for duration in range(MIN_DURATION, MAX_DURATION + 1):
        if candidate.time_slot_index + duration - 1 > MAX_SLOT_INDEX:
            break
        probe = Placement(
            week_start_date=candidate.week_start_date,
            day_of_week=candidate.day_of_week,
            time_slot_index=candidate.time_slot_index,
            duration=duration,
            company=candidate.company,
        )
        if any(probe.overlaps(other) for other in blockers):
            break
        longest = duration
    return longest


def resize(candidate: Placement, duration: int, existing: Iterable[Placement]) -> Placement:
    existing = list(existing)
    if not _is_int(duration) or not MIN_DURATION <= duration <= MAX_DURATION:
        raise ScheduleValidationError(
            [f"duration must be between {MIN_DURATION} and {MAX_DURATION} slots"]
        )
    if candidate.time_slot_index + duration - 1 > MAX_SLOT_INDEX:
        raise ScheduleValidationError(
            [f"placement would run past the last slot ({SCHEDULE_SLOT_COUNT} slots per day)"]
        )
    resized = replace(candidate, duration=duration)
    conflict = find_conflict(resized, existing, exclude_id=candidate.id)
    if conflict is not None:
        limit = max_duration(candidate, existing)
        conflict.message = f"{conflict.message} (longest free duration here: {limit})"
        raise ScheduleConflictError(conflict)
    return resized


def _empty_schedule_matrix() -> List[List[int]]:
    return [[0 for _ in range(SCHEDULE_MATRIX_COLS)] for _ in range(SCHEDULE_MATRIX_ROWS)]


def occupancy_matrix(placements: Iterable[Placement]) -> List[List[int]]:
    """Convert placements into a 13x7 slot/day occupancy matrix."""

    matrix = _empty_schedule_matrix()
    for placement in placements:
        if not 0 <= placement.day_of_week < SCHEDULE_MATRIX_COLS:
            continue
        for row_idx in placement.slots():
            if 0 <= row_idx < SCHEDULE_MATRIX_ROWS:
                matrix[row_idx][placement.day_of_week] = 1
    return matrix


def _slot_key(row: Mapping[str, Any]) -> Tuple[str, int, int, str]:
    return (
        str(row.get("week_start_date") or ""),
        int(row.get("day_of_week") or 0),
        int(row.get("time_slot_index") or 0),
        str(row.get("company") or ""),
    )


def find_duplicate_slots(rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Rows sharing a week/day/slot/company with an older row."""

    groups: Dict[Tuple[str, int, int, str], List[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        groups[_slot_key(row)].append(row)

    duplicates: List[Mapping[str, Any]] = []
    for key in sorted(groups):
        members = groups[key]
        if len(members) < 2:
            continue
        members = sorted(members, key=lambda r: (str(r.get("created_at") or ""), str(r.get("id"))))
        duplicates.extend(members[1:])
    return duplicates


def is_legacy_id(value: Any) -> bool:
    if value is None:
        return False
    return not UUID_RE.match(str(value))
