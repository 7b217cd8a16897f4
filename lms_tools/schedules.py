"""Teaching schedule persistence on top of the ``teaching_schedules`` table.

The table carries a unique index on (week_start_date, day_of_week,
time_slot_index, company) and a ``version`` counter. Writes go through a
conflict check first; the database index is the last line of defence when
another client writes the same slot between our read and our write.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from lms_tools.console import log, warn
from lms_tools.schedule_grid import (
    DEFAULT_COLOR,
    DEFAULT_ROOM,
    Conflict,
    Placement,
    ScheduleConflictError,
    find_conflict,
    find_duplicate_slots,
    is_legacy_id,
    require_valid,
    resize as resize_placement,
    validate,
)
from lms_tools.supabase_client import (
    UNIQUE_VIOLATION,
    SupabaseClient,
    SupabaseError,
    build_in_filter,
    chunked,
    eq,
)


WRITABLE_FIELDS = (
    "week_start_date",
    "day_of_week",
    "time_slot_index",
    "duration",
    "course_id",
    "course_title",
    "course_code",
    "instructor_id",
    "instructor_name",
    "room",
    "color",
    "notes",
    "company",
)
SERVER_FIELDS = ("id", "version", "created_at", "updated_at", "created_by", "updated_by")
LEGACY_TABLE = "schedules"
DEFAULT_LEGACY_WEEK = "2025-08-04"


class VersionConflictError(RuntimeError):
    """Raised when a row changed since the caller last read it."""

    def __init__(self, expected: Optional[int], current: Optional[int]) -> None:
        super().__init__(
            "Record has been modified by another user. "
            f"Expected version {expected}, but current version is {current}"
        )
        self.expected = expected
        self.current = current


def _log(msg: str) -> None:
    log("schedules", msg)


class ScheduleRepository:
    def __init__(self, client: SupabaseClient, table: str = "teaching_schedules") -> None:
        self.client = client
        self.table = table

    # ---- reads --------------------------------------------------------
    def get(self, schedule_id: str) -> Optional[dict]:
        return self.client.maybe_single(self.table, filters={"id": eq(schedule_id)})

    def list_week(self, week_start: str, company: str) -> List[dict]:
        return self.client.select(
            self.table,
            filters={"week_start_date": eq(week_start), "company": eq(company)},
            order="day_of_week.asc,time_slot_index.asc",
        )

    def _same_day(self, candidate: Placement) -> List[Placement]:
        rows = self.client.select(
            self.table,
            filters={
                "week_start_date": eq(candidate.week_start_date),
                "day_of_week": eq(candidate.day_of_week),
                "company": eq(candidate.company),
            },
        )
        return [Placement.from_row(row) for row in rows]

    def _slot_occupant(self, candidate: Placement) -> Optional[dict]:
        return self.client.maybe_single(
            self.table,
            filters={
                "week_start_date": eq(candidate.week_start_date),
                "day_of_week": eq(candidate.day_of_week),
                "time_slot_index": eq(candidate.time_slot_index),
                "company": eq(candidate.company),
            },
        )

    # ---- writes -------------------------------------------------------
    def upsert(
        self,
        payload: Mapping[str, Any],
        user_id: Optional[str] = None,
        max_attempts: int = 3,
    ) -> dict:
        """Insert or update one placement after validation and conflict checks.

        ``payload["version"]`` (with ``id``) turns on optimistic locking: the
        stored version must still match or :class:`VersionConflictError` is
        raised. Races with other writers are retried up to ``max_attempts``:

        * the insert hits the unique slot index: when the row now holding
          the slot is the same course and instructor it is updated in place,
          otherwise a ``time_slot`` conflict is raised. Rows without a
          ``course_id`` never count as the same course;
        * the row being updated was deleted meanwhile: it is inserted again.
        """

        require_valid(payload)
        values = {key: payload[key] for key in WRITABLE_FIELDS if key in payload}
        values.setdefault("duration", 1)
        values["room"] = values.get("room") or DEFAULT_ROOM
        values["color"] = values.get("color") or DEFAULT_COLOR

        candidate = Placement.from_row({**values, "id": payload.get("id")})
        target_id = payload.get("id")
        expected_version = payload.get("version") if target_id else None

        for attempt in range(1, max_attempts + 1):
            conflict = find_conflict(candidate, self._same_day(candidate), exclude_id=target_id)
            if conflict is not None:
                raise ScheduleConflictError(conflict)

            if target_id:
                row = self._update(target_id, values, user_id, expected_version)
                if row is not None:
                    return row
                _log(f"{target_id} disappeared before the update, inserting it again")
                target_id = None
                expected_version = None
                candidate.id = None
                continue

            try:
                return self._insert(values, user_id)
            except SupabaseError as exc:
                if exc.code != UNIQUE_VIOLATION or attempt == max_attempts:
                    raise
                occupant = self._slot_occupant(candidate)
                if occupant is None:
                    _log("slot freed after a unique violation, retrying the insert")
                    continue
                if _same_class(occupant, values):
                    _log(f"slot already holds the same class ({occupant['id']}), updating it")
                    target_id = str(occupant["id"])
                    candidate.id = target_id
                    continue
                raise ScheduleConflictError(
                    Conflict(
                        "time_slot",
                        "Time slot was taken by another user while saving",
                        occupant,
                    )
                ) from exc

        raise SupabaseError(f"Could not save schedule after {max_attempts} attempts")

    def _insert(self, values: Dict[str, Any], user_id: Optional[str]) -> dict:
        row = {**values, "version": 1}
        if user_id:
            row["created_by"] = user_id
            row["updated_by"] = user_id
        inserted = self.client.insert(self.table, [row])
        return inserted[0] if inserted else row

    def _update(
        self,
        schedule_id: str,
        values: Dict[str, Any],
        user_id: Optional[str],
        expected_version: Optional[int],
    ) -> Optional[dict]:
        current = self.client.maybe_single(
            self.table, select="id,version", filters={"id": eq(schedule_id)}
        )
        if current is None:
            return None
        version = int(current.get("version") or 1)
        if expected_version is not None and version != expected_version:
            raise VersionConflictError(expected_version, version)

        changes = {**values, "version": version + 1}
        if user_id:
            changes["updated_by"] = user_id
        rows = self.client.update(
            self.table, changes, {"id": eq(schedule_id), "version": eq(version)}
        )
        if rows:
            return rows[0]

        again = self.client.maybe_single(
            self.table, select="id,version", filters={"id": eq(schedule_id)}
        )
        if again is None:
            return None
        raise VersionConflictError(
            expected_version if expected_version is not None else version,
            again.get("version"),
        )

    def move(
        self,
        schedule_id: str,
        day_of_week: int,
        time_slot_index: int,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        row = self._require(schedule_id)
        payload = {key: row[key] for key in WRITABLE_FIELDS if key in row}
        payload.update(
            {
                "id": schedule_id,
                "day_of_week": day_of_week,
                "time_slot_index": time_slot_index,
                "version": expected_version if expected_version is not None else row.get("version"),
            }
        )
        return self.upsert(payload, user_id=user_id)

    def resize(
        self,
        schedule_id: str,
        duration: int,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        row = self._require(schedule_id)
        current = Placement.from_row(row)
        resize_placement(current, duration, self._same_day(current))
        payload = {key: row[key] for key in WRITABLE_FIELDS if key in row}
        payload.update(
            {
                "id": schedule_id,
                "duration": duration,
                "version": expected_version if expected_version is not None else row.get("version"),
            }
        )
        return self.upsert(payload, user_id=user_id)

    def delete(self, schedule_id: str) -> bool:
        deleted = self.client.delete_where(self.table, {"id": eq(schedule_id)})
        return bool(deleted)

    def _require(self, schedule_id: str) -> dict:
        row = self.get(schedule_id)
        if row is None:
            raise SupabaseError(f"Schedule {schedule_id} not found", status=404)
        return row

    # ---- bulk maintenance ---------------------------------------------
    def clone_week(
        self, source_week: str, target_week: str, company: str, apply: bool = False
    ) -> Dict[str, List[Any]]:
        """Copy a week's placements, skipping the ones that clash in the target week."""

        planned = [Placement.from_row(row) for row in self.list_week(target_week, company)]
        copied: List[dict] = []
        skipped: List[Dict[str, Any]] = []
        for row in self.list_week(source_week, company):
            values = {key: row[key] for key in WRITABLE_FIELDS if key in row}
            values["week_start_date"] = target_week
            candidate = Placement.from_row(values)
            conflict = find_conflict(candidate, planned)
            if conflict is not None:
                skipped.append({"row": row, "reason": conflict.message})
                continue
            planned.append(candidate)
            copied.append({**values, "version": 1})

        if apply and copied:
            for chunk in chunked(copied, 200):
                self.client.insert(self.table, chunk)
        _log(
            f"{'Copied' if apply else 'Would copy'} {len(copied)} placements "
            f"from {source_week} to {target_week} ({len(skipped)} skipped)"
        )
        return {"copied": copied, "skipped": skipped}

    def clear_week(self, week_start: str, company: str, apply: bool = False) -> int:
        rows = self.list_week(week_start, company)
        if apply and rows:
            self.client.delete_where(
                self.table, {"week_start_date": eq(week_start), "company": eq(company)}
            )
        _log(f"{'Cleared' if apply else 'Would clear'} {len(rows)} placements in {week_start}")
        return len(rows)

    def dedupe(self, company: Optional[str] = None, apply: bool = False) -> List[Mapping[str, Any]]:
        filters = {"company": eq(company)} if company else None
        rows = self.client.select(
            self.table,
            select="id,week_start_date,day_of_week,time_slot_index,company,created_at",
            filters=filters,
        )
        duplicates = find_duplicate_slots(rows)
        if apply and duplicates:
            ids = [str(row["id"]) for row in duplicates]
            for chunk in chunked(ids, 150):
                self.client.delete_where(self.table, build_in_filter("id", chunk))
        _log(f"{'Removed' if apply else 'Found'} {len(duplicates)} duplicate slot rows")
        return duplicates

    def purge_legacy_ids(self, apply: bool = False) -> Dict[str, List[str]]:
        """Delete rows whose id is not a UUID left over from the numeric-id era."""

        rows = self.client.select(self.table, select="id")
        legacy = [str(row["id"]) for row in rows if is_legacy_id(row.get("id"))]
        result: Dict[str, List[str]] = {"found": legacy, "deleted": [], "failed": []}
        if not apply:
            _log(f"Found {len(legacy)} rows with legacy ids")
            return result

        for legacy_id in legacy:
            try:
                deleted = self.client.delete_where(self.table, {"id": eq(legacy_id)})
            except SupabaseError as exc:
                warn("schedules", f"REST delete of {legacy_id} failed ({exc}); trying RPC")
                deleted = []
            else:
                if not deleted:
                    warn("schedules", f"REST delete of {legacy_id} removed nothing; trying RPC")
            if deleted:
                result["deleted"].append(legacy_id)
                continue

            try:
                self.client.rpc("delete_invalid_schedule", {"schedule_id": legacy_id})
            except SupabaseError as rpc_exc:
                warn("schedules", f"RPC delete of {legacy_id} failed: {rpc_exc}")
                result["failed"].append(legacy_id)
                continue
            still_there = self.client.maybe_single(
                self.table, select="id", filters={"id": eq(legacy_id)}
            )
            if still_there is not None:
                warn("schedules", f"{legacy_id} is still present after the RPC delete")
                result["failed"].append(legacy_id)
                continue
            result["deleted"].append(legacy_id)
        _log(f"Deleted {len(result['deleted'])} legacy rows, {len(result['failed'])} failed")
        return result

    def migrate_legacy(
        self,
        default_company: str = "login",
        default_week: str = DEFAULT_LEGACY_WEEK,
        apply: bool = False,
    ) -> Dict[str, List[Any]]:
        """Move rows from the old ``schedules`` table into ``teaching_schedules``."""

        legacy_rows = self.client.select(LEGACY_TABLE)
        migrated: List[dict] = []
        skipped: List[Dict[str, Any]] = []
        planned: Dict[tuple, List[Placement]] = {}
        for legacy in legacy_rows:
            values = legacy_to_schedule(legacy, default_company, default_week)
            errors = validate(values)
            if errors:
                skipped.append({"row": legacy, "reason": "; ".join(errors)})
                continue
            candidate = Placement.from_row(values)
            key = (candidate.week_start_date, candidate.day_of_week, candidate.company)
            if key not in planned:
                planned[key] = self._same_day(candidate)
            conflict = find_conflict(candidate, planned[key])
            if conflict is not None:
                skipped.append({"row": legacy, "reason": conflict.message})
                continue
            planned[key].append(candidate)
            migrated.append({"source_id": legacy.get("id"), "values": values})

        if apply and migrated:
            for chunk in chunked([item["values"] for item in migrated], 200):
                self.client.insert(self.table, list(chunk))
            source_ids = [str(item["source_id"]) for item in migrated if item["source_id"] is not None]
            for chunk in chunked(source_ids, 150):
                self.client.delete_where(LEGACY_TABLE, build_in_filter("id", chunk))
        _log(
            f"{'Migrated' if apply else 'Would migrate'} {len(migrated)} legacy rows "
            f"({len(skipped)} skipped)"
        )
        return {"migrated": migrated, "skipped": skipped}


def _same_class(occupant: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
    course_id = values.get("course_id")
    if not course_id:
        return False
    return (
        occupant.get("course_id") == course_id
        and occupant.get("instructor_id") == values.get("instructor_id")
    )


def legacy_to_schedule(
    legacy: Mapping[str, Any], default_company: str, default_week: str
) -> Dict[str, Any]:
    course = legacy.get("course") or {}
    instructor = legacy.get("instructor") or {}
    return {
        "week_start_date": legacy.get("week_start_date") or default_week,
        "day_of_week": int(legacy.get("day_of_week") or legacy.get("dayId") or 0),
        "time_slot_index": int(legacy.get("time_slot_index") or legacy.get("timeIndex") or 0),
        "duration": int(legacy.get("duration") or 1),
        "course_title": course.get("title")
        or legacy.get("title")
        or legacy.get("course_title")
        or "Migrated Course",
        "course_code": course.get("code") or legacy.get("code"),
        "instructor_name": instructor.get("name") or legacy.get("instructor_name") or "Unknown",
        "room": legacy.get("room") or DEFAULT_ROOM,
        "company": legacy.get("company") or default_company,
        "version": 1,
    }
