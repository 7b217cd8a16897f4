"""Course enrollments: one row per (user_id, course_id)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lms_tools.console import log
from lms_tools.supabase_client import UNIQUE_VIOLATION, SupabaseClient, SupabaseError, eq


ENROLLMENTS = "enrollments"


class AlreadyEnrolledError(RuntimeError):
    def __init__(self, user_id: str, course_id: str) -> None:
        super().__init__(f"User {user_id} is already enrolled in course {course_id}")
        self.user_id = user_id
        self.course_id = course_id


class EnrollmentService:
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    def get(self, user_id: str, course_id: str) -> Optional[dict]:
        return self.client.maybe_single(
            ENROLLMENTS, filters={"user_id": eq(user_id), "course_id": eq(course_id)}
        )

    def enroll(self, user_id: str, course_id: str) -> dict:
        if self.get(user_id, course_id) is not None:
            raise AlreadyEnrolledError(user_id, course_id)
        row = {
            "user_id": user_id,
            "course_id": course_id,
            "is_active": True,
            "progress_percentage": 0,
        }
        try:
            inserted = self.client.insert(ENROLLMENTS, [row])
        except SupabaseError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise AlreadyEnrolledError(user_id, course_id) from exc
            raise
        log("enrollments", f"Enrolled {user_id} in {course_id}")
        return inserted[0] if inserted else row

    def for_user(self, user_id: str) -> List[dict]:
        return self.client.select(
            ENROLLMENTS,
            select="*,courses(id,title,category,level)",
            filters={"user_id": eq(user_id)},
            order="enrolled_at.desc",
        )

    def for_course(self, course_id: str, active_only: bool = False) -> List[dict]:
        filters: Dict[str, Any] = {"course_id": eq(course_id)}
        if active_only:
            filters["is_active"] = eq(True)
        return self.client.select(ENROLLMENTS, filters=filters, order="enrolled_at.asc")

    def update_progress(
        self,
        user_id: str,
        course_id: str,
        percent: float,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """Store progress clamped to 0..100; reaching 100 stamps ``completed_at``."""

        values: Dict[str, Any] = {"progress_percentage": min(100, max(0, percent))}
        if percent >= 100:
            values["completed_at"] = (now or datetime.now(timezone.utc)).isoformat()
        rows = self.client.update(
            ENROLLMENTS, values, {"user_id": eq(user_id), "course_id": eq(course_id)}
        )
        if rows:
            stored = values["progress_percentage"]
            log("enrollments", f"Progress of {user_id} in {course_id} set to {stored}%")
        return rows[0] if rows else None

    def set_active(self, user_id: str, course_id: str, active: bool) -> Optional[dict]:
        rows = self.client.update(
            ENROLLMENTS,
            {"is_active": active},
            {"user_id": eq(user_id), "course_id": eq(course_id)},
        )
        if rows:
            log("enrollments", f"{'Activated' if active else 'Deactivated'} {user_id} in {course_id}")
        return rows[0] if rows else None

    def stats(self, course_id: Optional[str] = None) -> Dict[str, Any]:
        filters = {"course_id": eq(course_id)} if course_id else None
        rows = self.client.select(
            ENROLLMENTS,
            select="id,is_active,progress_percentage,completed_at",
            filters=filters,
        )
        progress = [float(row.get("progress_percentage") or 0) for row in rows]
        return {
            "total": len(rows),
            "active": sum(1 for row in rows if row.get("is_active")),
            "completed": sum(1 for row in rows if row.get("completed_at")),
            "average_progress": round(sum(progress) / len(progress), 2) if progress else 0.0,
        }
