"""Thin wrapper around the Supabase PostgREST, RPC and Edge Function endpoints.

Filters use the PostgREST query syntax directly: ``{"company": "eq.login"}``.
A column may carry several conditions by passing a list, e.g.
``{"entry_date": ["gte.2025-01-01", "lte.2025-01-31"]}``.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter, Retry


Filters = Mapping[str, Any]

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"
INSUFFICIENT_PRIVILEGE = "42501"
UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
NO_ROWS = "PGRST116"

_ERROR_MESSAGES = {
    UNIQUE_VIOLATION: "A row with the same unique key already exists.",
    FOREIGN_KEY_VIOLATION: "The row is still referenced by related data.",
    CHECK_VIOLATION: "A value is outside the range allowed by the table.",
    UNDEFINED_TABLE: "The requested table does not exist.",
    UNDEFINED_COLUMN: "The requested column does not exist.",
    NO_ROWS: "The requested row was not found.",
    INSUFFICIENT_PRIVILEGE: "Permission denied by row level security.",
}


class SupabaseError(RuntimeError):
    """Raised when the Supabase REST API returns a non-2xx response."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details
        self.hint = hint


def describe_error(exc: BaseException) -> str:
    """Return a short human readable explanation for a Supabase failure."""

    if isinstance(exc, SupabaseError):
        if exc.code in _ERROR_MESSAGES:
            return _ERROR_MESSAGES[exc.code]
        text = str(exc)
        if "JWT" in text or "token" in text.lower():
            return "The API key or session token is invalid or expired."
        return text
    if isinstance(exc, requests.ConnectionError):
        return "Could not reach the Supabase server; check the network connection."
    return str(exc) or exc.__class__.__name__


class SupabaseClient:
    """Thin wrapper around the Supabase PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            retries = Retry(
                total=3,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=("GET", "HEAD"),
            )
            adapter = HTTPAdapter(max_retries=retries)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session
        self.session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_settings(cls, settings) -> "SupabaseClient":
        settings.require_supabase()
        return cls(settings.supabase_url, settings.supabase_key, timeout=settings.request_timeout)

    # ---- REST helpers -------------------------------------------------
    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _handle(self, response: requests.Response) -> Any:
        if 200 <= response.status_code < 300:
            if response.content:
                try:
                    return response.json()
                except ValueError as exc:
                    raise SupabaseError(
                        f"Failed to decode JSON response from {response.url}",
                        status=response.status_code,
                    ) from exc
            return []
        payload: Dict[str, Any] = {}
        try:
            decoded = response.json()
            if isinstance(decoded, dict):
                payload = decoded
        except ValueError:
            pass
        message = payload.get("message") or response.text
        raise SupabaseError(
            f"{response.request.method} {response.url} failed with "
            f"status {response.status_code}: {message}",
            status=response.status_code,
            code=payload.get("code"),
            details=payload.get("details"),
            hint=payload.get("hint"),
        )

    def select(
        self,
        table: str,
        select: str = "*",
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[dict]:
        params: Dict[str, Any] = {"select": select, **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        if offset:
            params["offset"] = str(offset)
        response = self.session.get(self._table_url(table), params=params, timeout=self.timeout)
        return self._handle(response)

    def maybe_single(
        self, table: str, select: str = "*", filters: Optional[Filters] = None
    ) -> Optional[dict]:
        rows = self.select(table, select=select, filters=filters, limit=2)
        if not rows:
            return None
        if len(rows) > 1:
            raise SupabaseError(
                f"Expected at most one row from {table}, got several",
                code=NO_ROWS,
            )
        return rows[0]

    def insert(self, table: str, rows: Sequence[dict], returning: bool = True) -> List[dict]:
        if not rows:
            return []
        prefer = "return=representation" if returning else "return=minimal"
        response = self.session.post(
            self._table_url(table),
            json=list(rows),
            headers={"Prefer": prefer},
            timeout=self.timeout,
        )
        return self._handle(response)

    def update(self, table: str, values: dict, filters: Filters) -> List[dict]:
        if not filters:
            raise ValueError("refusing to update without filters")
        response = self.session.patch(
            self._table_url(table),
            json=values,
            params=dict(filters),
            headers={"Prefer": "return=representation"},
            timeout=self.timeout,
        )
        return self._handle(response)

    def upsert(
        self,
        table: str,
        rows: Sequence[dict],
        on_conflict: str,
        prefer: str = "resolution=merge-duplicates,return=representation",
    ) -> List[dict]:
        if not rows:
            return []
        response = self.session.post(
            self._table_url(table),
            json=list(rows),
            params={"on_conflict": on_conflict},
            headers={"Prefer": prefer},
            timeout=self.timeout,
        )
        return self._handle(response)

    def delete_where(self, table: str, filters: Filters) -> List[dict]:
        if not filters:
            raise ValueError("refusing to delete without filters")
        response = self.session.delete(
            self._table_url(table),
            params=dict(filters),
            headers={"Prefer": "return=representation"},
            timeout=self.timeout,
        )
        return self._handle(response)

    def rpc(self, function: str, params: Optional[dict] = None) -> Any:
        response = self.session.post(
            f"{self.base_url}/rest/v1/rpc/{function}",
            json=params or {},
            timeout=self.timeout,
        )
        return self._handle(response)

    def invoke_function(self, name: str, payload: Optional[dict] = None, method: str = "POST") -> Any:
        response = self.session.request(
            method,
            f"{self.base_url}/functions/v1/{name}",
            json=payload,
            timeout=self.timeout,
        )
        return self._handle(response)


# ---- Utilities ---------------------------------------------------------
def chunked(sequence: Sequence, size: int) -> Iterable[Sequence]:
    for index in range(0, len(sequence), size):
        yield sequence[index : index + size]


def eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def neq(value: Any) -> str:
    return f"neq.{value}"


def build_in_filter(
    column: str, values: Sequence[str], quote: bool = True
) -> Dict[str, str]:
    if not values:
        return {}
    if quote:
        def escape(value: str) -> str:
            return value.replace("\\", "\\\\").replace('"', '\\"')

        escaped = ",".join(
            f'"{escape(str(value))}"'
            for value in values
        )
    else:
        escaped = ",".join(str(value) for value in values)
    return {column: f"in.({escaped})"}
