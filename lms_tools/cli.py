"""Command line entry point: ``lms-tools <group> <command> [options]``.

Destructive commands only report what they would change unless ``--apply``
is given.
"""

from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from lms_tools.config import ConfigurationError, Settings, load_settings
from lms_tools.console import error, log
from lms_tools.course_folders import (
    CourseFolderService,
    CourseNotFoundError,
    find_duplicate_folders,
    remove_duplicate_folders,
)
from lms_tools.drive_client import DriveClient, DriveError
from lms_tools.enrollments import AlreadyEnrolledError
from lms_tools.google_auth import GoogleAuthError
from lms_tools.locations import LocationNotFoundError, LocationService
from lms_tools.schedule_grid import ScheduleConflictError, ScheduleValidationError
from lms_tools.schedules import DEFAULT_LEGACY_WEEK, ScheduleRepository, VersionConflictError
from lms_tools.supabase_client import SupabaseClient, SupabaseError, describe_error
from lms_tools.time_tracking import TimeEntryService, TimeTrackingError
from lms_tools.weeks import slot_span, week_start


RESUMABLE_THRESHOLD = 5 * 1024 * 1024

HANDLED_ERRORS = (
    ConfigurationError,
    SupabaseError,
    GoogleAuthError,
    DriveError,
    ScheduleValidationError,
    ScheduleConflictError,
    VersionConflictError,
    TimeTrackingError,
    AlreadyEnrolledError,
    CourseNotFoundError,
    LocationNotFoundError,
)


def make_supabase(settings: Settings) -> SupabaseClient:
    return SupabaseClient.from_settings(settings)


def make_drive(settings: Settings) -> DriveClient:
    return DriveClient.from_settings(settings)


def _year_month(raw: str) -> Tuple[int, int]:
    try:
        year, month = (int(part) for part in raw.split("-", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {raw!r}") from None
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {raw!r}")
    return year, month


def _week(raw: str) -> str:
    try:
        return week_start(raw).isoformat()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a YYYY-MM-DD date, got {raw!r}") from None


def _load_payload(raw: str) -> Dict[str, Any]:
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("schedule payload must be a JSON object")
    return payload


def _print_rows(rows: Iterable[Dict[str, Any]], columns: Sequence[str]) -> None:
    for row in rows:
        print("  ".join(str(row.get(column, "")) for column in columns))


# ---- schedules ------------------------------------------------------------
def _schedules_list(args: argparse.Namespace, settings: Settings) -> int:
    repo = ScheduleRepository(make_supabase(settings))
    company = args.company or settings.default_company
    rows = repo.list_week(args.week, company)
    for row in rows:
        start, end = slot_span(int(row["time_slot_index"]), int(row.get("duration") or 1))
        title = row.get("course_title") or row.get("course_id") or "-"
        print(f"{row['day_of_week']}  {start}-{end}  {title}  {row.get('room') or ''}  {row['id']}")
    log("schedules", f"{len(rows)} placements in week {args.week} for {company}")
    return 0


def _schedules_upsert(args: argparse.Namespace, settings: Settings) -> int:
    payload = _load_payload(args.payload)
    payload.setdefault("company", settings.default_company)
    row = ScheduleRepository(make_supabase(settings)).upsert(payload, user_id=args.user)
    log("schedules", f"Saved {row.get('id')} (version {row.get('version')})")
    return 0


def _schedules_dedupe(args: argparse.Namespace, settings: Settings) -> int:
    duplicates = ScheduleRepository(make_supabase(settings)).dedupe(args.company, apply=args.apply)
    _print_rows(duplicates, ("id", "week_start_date", "day_of_week", "time_slot_index", "company"))
    return 0


def _schedules_purge_legacy(args: argparse.Namespace, settings: Settings) -> int:
    result = ScheduleRepository(make_supabase(settings)).purge_legacy_ids(apply=args.apply)
    return 1 if result["failed"] else 0


def _schedules_migrate_legacy(args: argparse.Namespace, settings: Settings) -> int:
    result = ScheduleRepository(make_supabase(settings)).migrate_legacy(
        default_company=args.company or settings.default_company,
        default_week=args.week,
        apply=args.apply,
    )
    for skipped in result["skipped"]:
        log("schedules", f"skipped legacy row {skipped['row'].get('id')}: {skipped['reason']}")
    return 0


def _schedules_clone(args: argparse.Namespace, settings: Settings) -> int:
    result = ScheduleRepository(make_supabase(settings)).clone_week(
        args.source, args.target, args.company or settings.default_company, apply=args.apply
    )
    for skipped in result["skipped"]:
        log("schedules", f"skipped {skipped['row'].get('id')}: {skipped['reason']}")
    return 0


def _schedules_clear(args: argparse.Namespace, settings: Settings) -> int:
    ScheduleRepository(make_supabase(settings)).clear_week(
        args.week, args.company or settings.default_company, apply=args.apply
    )
    return 0


# ---- time -----------------------------------------------------------------
def _time_approve_pending(args: argparse.Namespace, settings: Settings) -> int:
    pending = TimeEntryService(make_supabase(settings)).approve_pending(
        company=args.company, approver_id=args.approver, apply=args.apply
    )
    _print_rows(pending, ("id", "user_id", "company", "entry_date"))
    return 0


def _time_discrepancy(args: argparse.Namespace, settings: Settings) -> int:
    year, month = args.month
    company = args.company or settings.default_company
    report = TimeEntryService(make_supabase(settings)).hour_discrepancy(
        args.user, company, year, month
    )
    log("time", f"All entries: {report.all_hours:.2f} h")
    log("time", f"Counted for payroll: {report.approved_hours:.2f} h")
    log("time", f"Difference: {report.difference:.2f} h")
    for item in report.excluded:
        entry = item["entry"]
        print(
            f"  {entry.get('entry_date')}  {entry.get('total_hours')} h  "
            f"{entry.get('status')}  {entry.get('company')}  ({', '.join(item['reasons'])})"
        )
    return 0


def _time_report(args: argparse.Namespace, settings: Settings) -> int:
    year, month = args.month
    company = args.company or settings.default_company
    df = TimeEntryService(make_supabase(settings)).monthly_report(company, year, month)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(args.output, index=False)
        log("time", f"Wrote {len(df)} rows to {args.output}")
    elif df.empty:
        log("time", f"No time entries for {company} in {year}-{month:02d}")
    else:
        print(df.to_string(index=False))
    return 0


# ---- drive ----------------------------------------------------------------
def _drive_health(args: argparse.Namespace, settings: Settings) -> int:
    report = make_drive(settings).health()
    print(json.dumps(report, indent=2, ensure_ascii=False))
    if not report.get("token") or report.get("shared_drive_error"):
        return 1
    return 0


def _default_parent(args: argparse.Namespace, settings: Settings) -> str:
    return args.folder or settings.folders_for(args.company).courses


def _drive_list(args: argparse.Namespace, settings: Settings) -> int:
    files = make_drive(settings).list_files(
        _default_parent(args, settings), page_size=args.page_size, all_pages=args.all
    )
    _print_rows(files, ("id", "mimeType", "name"))
    log("drive", f"{len(files)} files")
    return 0


def _drive_duplicates(args: argparse.Namespace, settings: Settings) -> int:
    drive = make_drive(settings)
    parent = _default_parent(args, settings)
    for group in find_duplicate_folders(drive, parent):
        log(
            "drive",
            f"'{group['name']}': keep {group['keep']['id']}, "
            f"drop {', '.join(f['id'] for f in group['remove'])}",
        )
    remove_duplicate_folders(drive, parent, apply=args.apply)
    return 0


def _drive_upload(args: argparse.Namespace, settings: Settings) -> int:
    path: Path = args.path
    if not path.is_file():
        error("drive", f"{path} does not exist.")
        return 1
    drive = make_drive(settings)
    folder = _default_parent(args, settings)
    mime = args.mime or mimetypes.guess_type(path.name)[0]
    size = path.stat().st_size
    if args.resumable or size > RESUMABLE_THRESHOLD:
        with path.open("rb") as stream:
            uploaded = drive.upload_resumable(stream, args.name or path.name, size, folder, mime)
    else:
        uploaded = drive.upload_file(path.read_bytes(), args.name or path.name, folder, mime)
    print(uploaded.get("webViewLink") or uploaded.get("id"))
    return 0


# ---- courses / locations --------------------------------------------------
def _courses_provision(args: argparse.Namespace, settings: Settings) -> int:
    service = CourseFolderService(make_supabase(settings), make_drive(settings), settings)
    for course_id in args.course_ids:
        result = service.provision(course_id, apply=args.apply)
        log("courses", f"{course_id}: {result['status']} {result['folder_id'] or ''}".rstrip())
    return 0


def _courses_audit(args: argparse.Namespace, settings: Settings) -> int:
    service = CourseFolderService(make_supabase(settings), make_drive(settings), settings)
    issues = service.audit(args.company)
    _print_rows(issues, ("course_id", "issue", "company", "title"))
    return 1 if issues and args.strict else 0


def _locations_consolidate(args: argparse.Namespace, settings: Settings) -> int:
    LocationService(make_supabase(settings)).consolidate(
        args.keep, company=args.company, apply=args.apply
    )
    return 0


# ---- parser ---------------------------------------------------------------
def _add_apply(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write the changes (default: dry run that only reports them).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lms-tools", description="Maintenance commands for the LMS Supabase and Drive data."
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (default: ./.env).",
    )
    groups = parser.add_subparsers(dest="group", required=True)

    # schedules
    schedules = groups.add_parser("schedules", help="Teaching schedule maintenance.")
    sched = schedules.add_subparsers(dest="command", required=True)

    p = sched.add_parser("list", help="List the placements of one week.")
    p.add_argument("--week", type=_week, required=True, help="Any date inside the week.")
    p.add_argument("--company")
    p.set_defaults(handler=_schedules_list)

    p = sched.add_parser("upsert", help="Create or update one placement.")
    p.add_argument("payload", help="JSON object, or @path to a JSON file.")
    p.add_argument("--user", help="User id recorded as creator/updater.")
    p.set_defaults(handler=_schedules_upsert)

    p = sched.add_parser("dedupe", help="Delete rows sharing a slot with an older row.")
    p.add_argument("--company")
    _add_apply(p)
    p.set_defaults(handler=_schedules_dedupe)

    p = sched.add_parser("purge-legacy", help="Delete rows whose id is not a UUID.")
    _add_apply(p)
    p.set_defaults(handler=_schedules_purge_legacy)

    p = sched.add_parser("migrate-legacy", help="Copy the old schedules table over.")
    p.add_argument("--company")
    p.add_argument("--week", type=_week, default=DEFAULT_LEGACY_WEEK)
    _add_apply(p)
    p.set_defaults(handler=_schedules_migrate_legacy)

    p = sched.add_parser("clone", help="Copy one week's placements to another week.")
    p.add_argument("--from", dest="source", type=_week, required=True)
    p.add_argument("--to", dest="target", type=_week, required=True)
    p.add_argument("--company")
    _add_apply(p)
    p.set_defaults(handler=_schedules_clone)

    p = sched.add_parser("clear", help="Delete every placement of one week.")
    p.add_argument("--week", type=_week, required=True)
    p.add_argument("--company")
    _add_apply(p)
    p.set_defaults(handler=_schedules_clear)

    # time
    time_group = groups.add_parser("time", help="Time entry maintenance.")
    time_cmds = time_group.add_subparsers(dest="command", required=True)

    p = time_cmds.add_parser("approve-pending", help="Approve every pending time entry.")
    p.add_argument("--company")
    p.add_argument("--approver", help="Approver user id (default: self-approval).")
    _add_apply(p)
    p.set_defaults(handler=_time_approve_pending)

    p = time_cmds.add_parser("discrepancy", help="Explain calendar vs payroll hour totals.")
    p.add_argument("--user", required=True)
    p.add_argument("--company")
    p.add_argument("--month", type=_year_month, required=True, help="YYYY-MM")
    p.set_defaults(handler=_time_discrepancy)

    p = time_cmds.add_parser("report", help="Per-user hour totals for one month.")
    p.add_argument("--company")
    p.add_argument("--month", type=_year_month, required=True, help="YYYY-MM")
    p.add_argument("--output", type=Path, help="Write CSV here instead of printing.")
    p.set_defaults(handler=_time_report)

    # drive
    drive = groups.add_parser("drive", help="Google Drive operations.")
    drive_cmds = drive.add_subparsers(dest="command", required=True)

    p = drive_cmds.add_parser("health", help="Check the service account and shared drive.")
    p.set_defaults(handler=_drive_health)

    p = drive_cmds.add_parser("list", help="List a folder.")
    p.add_argument("--folder", help="Folder id (default: the company's courses folder).")
    p.add_argument("--company")
    p.add_argument("--page-size", type=int, default=100)
    p.add_argument("--all", action="store_true", help="Follow every result page.")
    p.set_defaults(handler=_drive_list)

    p = drive_cmds.add_parser("duplicates", help="Remove same-named folders, keeping the oldest.")
    p.add_argument("--folder", help="Parent folder id (default: the company's courses folder).")
    p.add_argument("--company")
    _add_apply(p)
    p.set_defaults(handler=_drive_duplicates)

    p = drive_cmds.add_parser("upload", help="Upload a local file.")
    p.add_argument("path", type=Path)
    p.add_argument("--folder", help="Target folder id (default: the company's courses folder).")
    p.add_argument("--company")
    p.add_argument("--name", help="File name on Drive (default: local name).")
    p.add_argument("--mime", help="MIME type (default: guessed from the name).")
    p.add_argument("--resumable", action="store_true", help="Force a chunked upload.")
    p.set_defaults(handler=_drive_upload)

    # courses
    courses = groups.add_parser("courses", help="Course folder maintenance.")
    course_cmds = courses.add_subparsers(dest="command", required=True)

    p = course_cmds.add_parser("provision", help="Create or relink course folders.")
    p.add_argument("course_ids", nargs="+")
    _add_apply(p)
    p.set_defaults(handler=_courses_provision)

    p = course_cmds.add_parser("audit", help="Report courses with missing or misplaced folders.")
    p.add_argument("--company")
    p.add_argument("--strict", action="store_true", help="Exit with status 1 when issues exist.")
    p.set_defaults(handler=_courses_audit)

    # locations
    locations = groups.add_parser("locations", help="Company location maintenance.")
    location_cmds = locations.add_subparsers(dest="command", required=True)

    p = location_cmds.add_parser("consolidate", help="Keep one active main office.")
    p.add_argument("--keep", required=True, help="location_name of the office to keep.")
    p.add_argument("--company")
    _add_apply(p)
    p.set_defaults(handler=_locations_consolidate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.env_file)
        return args.handler(args, settings)
    except SupabaseError as exc:
        error(args.group, describe_error(exc))
        print(str(exc), file=sys.stderr)
        return 1
    except HANDLED_ERRORS as exc:
        error(args.group, str(exc))
        return 1
    except (ValueError, OSError) as exc:
        error(args.group, str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
