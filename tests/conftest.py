from __future__ import annotations

import copy
import itertools
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from lms_tools.config import CompanyFolders, Settings
from lms_tools.supabase_client import NO_ROWS, UNIQUE_VIOLATION, SupabaseError


UNIQUE_KEYS = {
    "teaching_schedules": [("week_start_date", "day_of_week", "time_slot_index", "company")],
    "enrollments": [("user_id", "course_id")],
}


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if value is None:
        return "null"
    return str(value)


def _compare(value: Any, operand: str) -> Optional[int]:
    if value is None:
        return None
    try:
        left, right = float(value), float(operand)
    except (TypeError, ValueError):
        left, right = str(value), operand
    return (left > right) - (left < right)


def _matches(row: Dict[str, Any], column: str, condition: str) -> bool:
    op, _, operand = condition.partition(".")
    value = row.get(column)
    if op == "eq":
        return _as_text(value) == operand
    if op == "neq":
        return _as_text(value) != operand
    if op == "is":
        return value is None if operand == "null" else _as_text(value) == operand
    if op == "in":
        items = [item.strip().strip('"') for item in operand.strip("()").split(",")]
        return _as_text(value) in items
    cmp = _compare(value, operand)
    if cmp is None:
        return False
    return {"gt": cmp > 0, "gte": cmp >= 0, "lt": cmp < 0, "lte": cmp <= 0}[op]


def _matches_or(row: Dict[str, Any], expression: str) -> bool:
    for part in expression.strip("()").split(","):
        column, _, condition = part.partition(".")
        if _matches(row, column, condition):
            return True
    return False


class FakeSupabase:
    """In-memory stand-in for :class:`SupabaseClient` speaking PostgREST filters."""

    def __init__(self, tables: Optional[Dict[str, List[dict]]] = None) -> None:
        self.tables: Dict[str, List[dict]] = defaultdict(list)
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(row) for row in rows]
        self.calls: List[Tuple[str, str, Any]] = []
        self.rpc_handlers: Dict[str, Callable[[dict], Any]] = {}
        self._hooks: Dict[Tuple[str, str], List[Callable[[], None]]] = defaultdict(list)
        self._failures: Dict[Tuple[str, str], List[SupabaseError]] = defaultdict(list)
        self._clock = itertools.count(1)

    # ---- test helpers -------------------------------------------------
    def before(self, method: str, table: str, callback: Callable[[], None]) -> None:
        self._hooks[(method, table)].append(callback)

    def fail_next(self, method: str, table: str, exc: SupabaseError) -> None:
        self._failures[(method, table)].append(exc)

    def _enter(self, method: str, table: str, payload: Any = None) -> None:
        self.calls.append((method, table, payload))
        hooks = self._hooks.get((method, table))
        if hooks:
            hooks.pop(0)()
        failures = self._failures.get((method, table))
        if failures:
            raise failures.pop(0)

    def _stamp(self) -> str:
        return f"2025-01-01T00:00:00.{next(self._clock):06d}+00:00"

    def add(self, table: str, row: dict) -> dict:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", self._stamp())
        self.tables[table].append(stored)
        return stored

    def _filter(self, table: str, filters: Optional[Dict[str, Any]]) -> List[dict]:
        rows = self.tables[table]
        for column, condition in (filters or {}).items():
            if column == "or":
                rows = [row for row in rows if _matches_or(row, condition)]
                continue
            conditions = condition if isinstance(condition, list) else [condition]
            rows = [row for row in rows if all(_matches(row, column, c) for c in conditions)]
        return rows

    def _check_unique(self, table: str, row: dict, ignore: Optional[dict] = None) -> None:
        for key in UNIQUE_KEYS.get(table, []):
            for other in self.tables[table]:
                if other is ignore:
                    continue
                if all(_as_text(other.get(col)) == _as_text(row.get(col)) for col in key):
                    raise SupabaseError(
                        "duplicate key value violates unique constraint",
                        status=409,
                        code=UNIQUE_VIOLATION,
                    )

    # ---- SupabaseClient surface ---------------------------------------
    def select(self, table, select="*", filters=None, order=None, limit=None, offset=None):
        self._enter("select", table, filters)
        rows = list(self._filter(table, filters))
        for spec in reversed((order or "").split(",")):
            if not spec:
                continue
            column, _, direction = spec.partition(".")
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column) if r.get(column) is not None else 0),
                reverse=direction == "desc",
            )
        if offset:
            rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def maybe_single(self, table, select="*", filters=None):
        rows = self.select(table, select=select, filters=filters, limit=2)
        if not rows:
            return None
        if len(rows) > 1:
            raise SupabaseError("several rows", code=NO_ROWS)
        return rows[0]

    def insert(self, table, rows, returning=True):
        self._enter("insert", table, rows)
        inserted = []
        for row in rows:
            stored = dict(row)
            stored.setdefault("id", str(uuid.uuid4()))
            stored.setdefault("created_at", self._stamp())
            self._check_unique(table, stored)
            self.tables[table].append(stored)
            inserted.append(copy.deepcopy(stored))
        return inserted if returning else []

    def update(self, table, values, filters):
        if not filters:
            raise ValueError("refusing to update without filters")
        self._enter("update", table, (values, filters))
        updated = []
        for row in self._filter(table, filters):
            candidate = {**row, **values}
            self._check_unique(table, candidate, ignore=row)
            row.update(values)
            updated.append(copy.deepcopy(row))
        return updated

    def upsert(self, table, rows, on_conflict, prefer="resolution=merge-duplicates,return=representation"):
        self._enter("upsert", table, rows)
        keys = on_conflict.split(",")
        result = []
        for row in rows:
            match = next(
                (
                    other
                    for other in self.tables[table]
                    if all(_as_text(other.get(k)) == _as_text(row.get(k)) for k in keys)
                ),
                None,
            )
            if match is None:
                match = self.add(table, row)
            else:
                match.update(row)
            result.append(copy.deepcopy(match))
        return result

    def delete_where(self, table, filters):
        if not filters:
            raise ValueError("refusing to delete without filters")
        self._enter("delete", table, filters)
        doomed = self._filter(table, filters)
        doomed_ids = {id(row) for row in doomed}
        self.tables[table] = [row for row in self.tables[table] if id(row) not in doomed_ids]
        return copy.deepcopy(doomed)

    def rpc(self, function, params=None):
        self._enter("rpc", function, params)
        handler = self.rpc_handlers.get(function)
        if handler is None:
            raise SupabaseError(f"function {function} does not exist", status=404, code="PGRST202")
        return handler(params or {})

    def invoke_function(self, name, payload=None, method="POST"):
        self._enter("function", name, payload)
        return {}


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_key="service-key",
        google_client_email="robot@example.iam.gserviceaccount.com",
        google_private_key="unused",
        company_folders={
            "login": CompanyFolders(name="LOGIN", root="root-login", courses="courses-login"),
            "meta": CompanyFolders(name="META", root="root-meta", courses="courses-meta"),
        },
    )
