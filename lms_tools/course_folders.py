"""Keeps every course linked to its own folder under the company's Drive tree.

Course rows store the folder id in ``courses.google_drive_folder_id``. The
folder itself is a ``[course] <title>`` topic folder inside the company's
``courses`` folder (see ``LMS_COMPANY_FOLDERS``).
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional

from lms_tools.config import Settings
from lms_tools.console import log
from lms_tools.drive_client import FOLDER_MIME, DriveClient, DriveError, topic_folder_name
from lms_tools.supabase_client import SupabaseClient, eq


COURSES = "courses"
COURSE_FIELDS = "id,title,company,google_drive_folder_id"
UNTITLED_COURSE = "Untitled Course"


class CourseNotFoundError(RuntimeError):
    pass


def _log(msg: str) -> None:
    log("courses", msg)


class CourseFolderService:
    def __init__(self, client: SupabaseClient, drive: DriveClient, settings: Settings) -> None:
        self.client = client
        self.drive = drive
        self.settings = settings

    def _course(self, course_id: str) -> dict:
        course = self.client.maybe_single(
            COURSES, select=COURSE_FIELDS, filters={"id": eq(course_id)}
        )
        if course is None:
            raise CourseNotFoundError(f"Course {course_id} not found")
        return course

    def provision(self, course_id: str, apply: bool = False) -> Dict[str, Any]:
        """Make sure the course has a live Drive folder and the row points at it.

        Returns a report with ``status`` one of ``ok`` (nothing to do),
        ``linked`` (an existing folder was attached), ``created`` or
        ``planned`` (dry run).
        """

        course = self._course(course_id)
        current = course.get("google_drive_folder_id")
        if current and self.drive.file_exists(current):
            return {"course": course, "folder_id": current, "status": "ok"}

        folders = self.settings.folders_for(course.get("company"))
        title = course.get("title") or UNTITLED_COURSE
        name = topic_folder_name(title, "course")
        existing = self.drive.find_folder(folders.courses, name)

        if not apply:
            _log(
                f"Would {'link' if existing else 'create'} folder '{name}' for course {course_id}"
            )
            return {
                "course": course,
                "folder_id": existing.get("id") if existing else None,
                "status": "planned",
            }

        if existing:
            folder, status = existing, "linked"
        else:
            folder, _ = self.drive.create_topic_folder(folders.courses, title, "course")
            status = "created"
        self.client.update(
            COURSES, {"google_drive_folder_id": folder["id"]}, {"id": eq(course_id)}
        )
        _log(f"Course {course_id} {status} to folder {folder['id']}")
        return {"course": course, "folder_id": folder["id"], "status": status}

    def audit(self, company: Optional[str] = None) -> List[Dict[str, Any]]:
        """List courses whose folder link is missing, dead or misplaced."""

        filters = {"company": eq(company)} if company else None
        courses = self.client.select(COURSES, select=COURSE_FIELDS, filters=filters, order="title.asc")
        issues: List[Dict[str, Any]] = []
        for course in courses:
            folder_id = course.get("google_drive_folder_id")
            entry = {
                "course_id": course.get("id"),
                "title": course.get("title"),
                "company": course.get("company"),
                "folder_id": folder_id,
            }
            if not folder_id:
                issues.append({**entry, "issue": "missing_folder"})
                continue
            try:
                folder = self.drive.get_file(folder_id)
            except DriveError as exc:
                if exc.status != 404:
                    raise
                issues.append({**entry, "issue": "folder_not_found"})
                continue
            expected_parent = self.settings.folders_for(course.get("company")).courses
            if expected_parent and expected_parent not in (folder.get("parents") or []):
                issues.append({**entry, "issue": "outside_courses_folder"})
        _log(f"Audited {len(courses)} courses, {len(issues)} with folder issues")
        return issues

    def duplicate_folders(self, parent_id: str) -> List[Dict[str, Any]]:
        return find_duplicate_folders(self.drive, parent_id)

    def remove_duplicates(self, parent_id: str, apply: bool = False) -> List[str]:
        return remove_duplicate_folders(self.drive, parent_id, apply=apply)


def find_duplicate_folders(drive: DriveClient, parent_id: str) -> List[Dict[str, Any]]:
    """Same-named folders under ``parent_id``; the oldest of each name is kept."""

    folders = drive.list_files(
        parent_id,
        page_size=200,
        order_by="createdTime",
        query=f"mimeType='{FOLDER_MIME}'",
        all_pages=True,
    )
    by_name: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for folder in folders:
        by_name[folder.get("name") or ""].append(folder)

    groups: List[Dict[str, Any]] = []
    for name in sorted(by_name):
        members = by_name[name]
        if len(members) < 2:
            continue
        members = sorted(members, key=lambda f: (f.get("createdTime") or "", f.get("id") or ""))
        groups.append({"name": name, "keep": members[0], "remove": members[1:]})
    return groups


def remove_duplicate_folders(drive: DriveClient, parent_id: str, apply: bool = False) -> List[str]:
    removed: List[str] = []
    for group in find_duplicate_folders(drive, parent_id):
        for folder in group["remove"]:
            if apply:
                drive.delete_file(folder["id"])
            removed.append(folder["id"])
    _log(f"{'Removed' if apply else 'Would remove'} {len(removed)} duplicate folders")
    return removed
