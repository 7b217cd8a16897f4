"""Check-in/check-out bookkeeping for the ``time_entries`` table.

Hours are split into regular and overtime against the company's daily
threshold from ``time_policies`` (8 hours when no policy exists). Entries
needing a second look get ``needs_manager_review`` set on check-out.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from lms_tools.console import log
from lms_tools.supabase_client import SupabaseClient, eq


EARTH_RADIUS_M = 6371e3
DEFAULT_RADIUS_M = 100.0
DEFAULT_OVERTIME_THRESHOLD = 8.0
REVIEW_TOTAL_HOURS = 10.0

TIME_ENTRIES = "time_entries"
TIME_POLICIES = "time_policies"
COMPANY_LOCATIONS = "company_locations"

REPORT_SOURCE_COLUMNS = [
    "id",
    "user_id",
    "entry_date",
    "status",
    "total_hours",
    "regular_hours",
    "overtime_hours",
]
REPORT_COLUMNS = [
    "user_id",
    "entries",
    "pending_entries",
    "total_hours",
    "regular_hours",
    "overtime_hours",
]


class TimeTrackingError(RuntimeError):
    """Base class for check-in/check-out refusals."""


class AlreadyCheckedInError(TimeTrackingError):
    def __init__(self, entry: Mapping[str, Any]) -> None:
        super().__init__(f"User already checked in at {entry.get('check_in_time')}")
        self.entry = entry


class NoActiveEntryError(TimeTrackingError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No open time entry to check out for user {user_id}")
        self.user_id = user_id


class LocationRejectedError(TimeTrackingError):
    def __init__(self, check: "LocationCheck") -> None:
        super().__init__(check.message)
        self.check = check


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass
class LocationCheck:
    accepted: bool
    message: str
    location: Optional[Mapping[str, Any]] = None
    distance_m: Optional[float] = None


@dataclass(frozen=True)
class HoursBreakdown:
    total: float
    regular: float
    overtime: float
    needs_review: bool


@dataclass
class DiscrepancyReport:
    all_hours: float
    approved_hours: float
    excluded: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def difference(self) -> float:
        return round(self.all_hours - self.approved_hours, 2)


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres (haversine)."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def verify_location(
    point: GeoPoint,
    locations: Iterable[Mapping[str, Any]],
    radius_m: float = DEFAULT_RADIUS_M,
) -> LocationCheck:
    """Accept ``point`` when it lies inside the radius of the nearest location.

    Each location may carry its own ``radius_meters``; ``radius_m`` is used
    otherwise. With no locations configured every point is accepted.
    """

    nearest: Optional[Tuple[float, Mapping[str, Any]]] = None
    for location in locations:
        if location.get("latitude") is None or location.get("longitude") is None:
            continue
        meters = distance_m(
            point.lat, point.lng, float(location["latitude"]), float(location["longitude"])
        )
        if nearest is None or meters < nearest[0]:
            nearest = (meters, location)

    if nearest is None:
        return LocationCheck(True, "No registered locations; location not enforced")

    meters, location = nearest
    allowed = float(location.get("radius_meters") or radius_m)
    name = location.get("location_name") or location.get("id")
    if meters <= allowed:
        return LocationCheck(True, f"Within {allowed:.0f} m of {name}", location, round(meters, 1))
    return LocationCheck(
        False,
        f"{meters:.0f} m from {name}, outside the allowed {allowed:.0f} m",
        location,
        round(meters, 1),
    )


def compute_hours(
    check_in: datetime,
    check_out: datetime,
    break_minutes: float = 0,
    overtime_threshold: float = DEFAULT_OVERTIME_THRESHOLD,
    unusual: bool = False,
) -> HoursBreakdown:
    worked = (check_out - check_in).total_seconds() / 3600
    total = max(0.0, worked - (break_minutes or 0) / 60)
    regular = min(total, overtime_threshold)
    overtime = max(0.0, total - overtime_threshold)
    return HoursBreakdown(
        total=round(total, 2),
        regular=round(regular, 2),
        overtime=round(overtime, 2),
        needs_review=overtime > 0 or total > REVIEW_TOTAL_HOURS or unusual,
    )


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def month_range(year: int, month: int) -> Tuple[str, str]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1).isoformat(), date(year, month, last_day).isoformat()


def _hours(entry: Mapping[str, Any]) -> float:
    try:
        return float(entry.get("total_hours") or 0)
    except (TypeError, ValueError):
        return 0.0


def _log(msg: str) -> None:
    log("time", msg)


class TimeEntryService:
    def __init__(
        self,
        client: SupabaseClient,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def active_entry(self, user_id: str, day: Optional[date] = None) -> Optional[dict]:
        day = day or self._clock().date()
        rows = self.client.select(
            TIME_ENTRIES,
            filters={
                "user_id": eq(user_id),
                "entry_date": eq(day.isoformat()),
                "check_out_time": "is.null",
            },
            order="check_in_time.desc",
            limit=1,
        )
        return rows[0] if rows else None

    def company_locations(self, company: str) -> List[dict]:
        return self.client.select(
            COMPANY_LOCATIONS,
            filters={"company": eq(company), "is_active": eq(True)},
        )

    def overtime_threshold(self, company: str) -> float:
        policy = self.client.maybe_single(
            TIME_POLICIES,
            select="overtime_threshold_daily",
            filters={"company": eq(company)},
        )
        if policy and policy.get("overtime_threshold_daily"):
            return float(policy["overtime_threshold_daily"])
        return DEFAULT_OVERTIME_THRESHOLD

    def check_in(
        self,
        user_id: str,
        company: str,
        point: Optional[GeoPoint] = None,
        entry_type: str = "regular",
        notes: Optional[str] = None,
    ) -> dict:
        now = self._clock()
        existing = self.active_entry(user_id, now.date())
        if existing is not None:
            raise AlreadyCheckedInError(existing)

        entry: Dict[str, Any] = {
            "user_id": user_id,
            "company": company,
            "entry_date": now.date().isoformat(),
            "check_in_time": now.isoformat(),
            "entry_type": entry_type,
            "status": "pending",
            "location_verified": False,
            "employee_notes": notes,
        }
        if point is not None:
            check = verify_location(point, self.company_locations(company))
            if not check.accepted:
                raise LocationRejectedError(check)
            entry["check_in_location"] = {"lat": point.lat, "lng": point.lng}
            entry["location_verified"] = check.location is not None
            if check.location is not None:
                entry["registered_location_info"] = {
                    "location_id": check.location.get("id"),
                    "location_name": check.location.get("location_name"),
                    "distance": check.distance_m,
                }

        rows = self.client.insert(TIME_ENTRIES, [entry])
        _log(f"{user_id} checked in for {company} at {entry['check_in_time']}")
        return rows[0] if rows else entry

    def check_out(
        self,
        user_id: str,
        break_minutes: float = 0,
        notes: Optional[str] = None,
        unusual: bool = False,
    ) -> dict:
        now = self._clock()
        entry = self.active_entry(user_id, now.date())
        if entry is None:
            raise NoActiveEntryError(user_id)

        threshold = self.overtime_threshold(entry.get("company") or "login")
        hours = compute_hours(
            parse_timestamp(entry["check_in_time"]),
            now,
            break_minutes=break_minutes,
            overtime_threshold=threshold,
            unusual=unusual,
        )
        updates: Dict[str, Any] = {
            "check_out_time": now.isoformat(),
            "total_hours": hours.total,
            "regular_hours": hours.regular,
            "overtime_hours": hours.overtime,
            "break_duration_minutes": break_minutes,
        }
        if notes:
            previous = entry.get("employee_notes")
            updates["employee_notes"] = f"{previous}\n\nCheck-out: {notes}" if previous else notes
        if hours.needs_review:
            updates["needs_manager_review"] = True

        rows = self.client.update(TIME_ENTRIES, updates, {"id": eq(entry["id"])})
        _log(f"{user_id} checked out after {hours.total:.2f} h ({hours.overtime:.2f} h overtime)")
        return rows[0] if rows else {**entry, **updates}

    def approve_pending(
        self,
        company: Optional[str] = None,
        approver_id: Optional[str] = None,
        apply: bool = False,
    ) -> List[dict]:
        """Approve every pending entry; without ``approver_id`` entries are self-approved."""

        filters = {"status": eq("pending")}
        if company:
            filters["company"] = eq(company)
        pending = self.client.select(
            TIME_ENTRIES,
            select="id,user_id,company,entry_date,check_in_time,check_out_time,status",
            filters=filters,
            order="entry_date.asc",
        )
        if not apply:
            _log(f"Found {len(pending)} pending entries")
            return pending

        approved_at = self._clock().isoformat()
        for entry in pending:
            self.client.update(
                TIME_ENTRIES,
                {
                    "status": "approved",
                    "approved_by": approver_id or entry.get("user_id"),
                    "approved_at": approved_at,
                },
                {"id": eq(entry["id"])},
            )
        _log(f"Approved {len(pending)} pending entries")
        return pending

    def entries_for_month(
        self,
        year: int,
        month: int,
        user_id: Optional[str] = None,
        company: Optional[str] = None,
    ) -> List[dict]:
        start, end = month_range(year, month)
        filters: Dict[str, Any] = {"entry_date": [f"gte.{start}", f"lte.{end}"]}
        if user_id:
            filters["user_id"] = eq(user_id)
        if company:
            filters["company"] = eq(company)
        return self.client.select(
            TIME_ENTRIES, filters=filters, order="entry_date.asc,check_in_time.asc"
        )

    def hour_discrepancy(self, user_id: str, company: str, year: int, month: int) -> DiscrepancyReport:
        """Compare every entry of the month with the entries payroll counts.

        Payroll only counts approved entries of ``company`` with positive
        hours; each entry left out is listed with the reasons it was dropped.
        """

        entries = self.entries_for_month(year, month, user_id=user_id)
        report = DiscrepancyReport(all_hours=0.0, approved_hours=0.0)
        for entry in entries:
            hours = _hours(entry)
            report.all_hours += hours
            reasons = []
            if entry.get("status") != "approved":
                reasons.append("not approved")
            if entry.get("company") != company:
                reasons.append("other company")
            if hours <= 0:
                reasons.append("zero hours")
            if reasons:
                report.excluded.append({"entry": entry, "reasons": reasons})
            else:
                report.approved_hours += hours
        report.all_hours = round(report.all_hours, 2)
        report.approved_hours = round(report.approved_hours, 2)
        return report

    def monthly_report(self, company: str, year: int, month: int) -> pd.DataFrame:
        rows = self.entries_for_month(year, month, company=company)
        if not rows:
            return pd.DataFrame(columns=REPORT_COLUMNS)

        df = pd.DataFrame(rows, columns=REPORT_SOURCE_COLUMNS)
        for column in ("total_hours", "regular_hours", "overtime_hours"):
            df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0.0)
        df["pending"] = df["status"].eq("pending").astype(int)

        summary = (
            df.groupby("user_id", sort=True)
            .agg(
                entries=("id", "count"),
                pending_entries=("pending", "sum"),
                total_hours=("total_hours", "sum"),
                regular_hours=("regular_hours", "sum"),
                overtime_hours=("overtime_hours", "sum"),
            )
            .reset_index()
        )
        for column in ("total_hours", "regular_hours", "overtime_hours"):
            summary[column] = summary[column].round(2)
        return summary[REPORT_COLUMNS]
