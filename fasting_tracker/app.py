from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path

from . import __version__
from .config import Settings
from .database import FastingDatabase
from .logger import configure_logging, get_logger
from .models import WindowType
from .paths import config_path, database_path, ensure_directories
from .reminders import InMemoryNotificationCenter, ReminderScheduler
from .ring import save_progress_ring
from .schedule import FastingSchedule
from .summary import format_duration, format_time_of_day, history_detail, interval_description


def parse_when(value: str, now: datetime | None = None) -> datetime:
    """Parse ``HH:MM`` (today) or an ISO-8601 local datetime."""
    reference = now or datetime.now()
    text = value.strip()
    try:
        parsed_time = datetime.strptime(text, "%H:%M")
    except ValueError:
        pass
    else:
        return reference.replace(hour=parsed_time.hour, minute=parsed_time.minute, second=0, microsecond=0)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid time: {value!r}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def build_schedule(
    db_file: Path | None = None,
    config_file: Path | None = None,
) -> FastingSchedule:
    if db_file is None or config_file is None:
        ensure_directories()
    settings = Settings(config_file or config_path())
    store = FastingDatabase(db_file or database_path())
    reminders = ReminderScheduler(InMemoryNotificationCenter())
    return FastingSchedule(store, reminders=reminders, settings=settings)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fasting-tracker")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--db", type=Path, help="Database file (defaults to the data directory)")
    parser.add_argument("--config", type=Path, help="Settings file (defaults to the data directory)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show the active window and today's schedule")

    start = sub.add_parser("start", help="Start a fast")
    start.add_argument("--at", type=parse_when, help="Start time (HH:MM or ISO)")

    stop = sub.add_parser("stop", help="Stop the current fast")
    stop.add_argument("--at", type=parse_when, help="Stop time (HH:MM or ISO)")

    add = sub.add_parser("add", help="Add a window")
    add.add_argument("type", choices=[t.value for t in WindowType])
    add.add_argument("start", type=parse_when)
    add.add_argument("end", type=parse_when)
    add.add_argument("--note")

    edit = sub.add_parser("edit", help="Edit a window")
    edit.add_argument("window_id")
    edit.add_argument("type", choices=[t.value for t in WindowType])
    edit.add_argument("start", type=parse_when)
    edit.add_argument("end", type=parse_when)
    edit.add_argument("--note")

    delete = sub.add_parser("delete", help="Delete a window")
    delete.add_argument("window_id")

    sub.add_parser("history", help="Show the last seven days")
    sub.add_parser("week", help="Show this week's fasting targets")
    sub.add_parser("regimens", help="List regimens")

    regimen_save = sub.add_parser("regimen-save", help="Create or update a regimen")
    regimen_save.add_argument("name")
    regimen_save.add_argument("fast_hours", type=float)
    regimen_save.add_argument("feed_hours", type=float)
    regimen_save.add_argument("--id", dest="regimen_id", help="Existing regimen to update")
    regimen_save.add_argument("--activate", action="store_true")

    regimen_activate = sub.add_parser("regimen-activate", help="Make a regimen active")
    regimen_activate.add_argument("regimen_id")

    regimen_delete = sub.add_parser("regimen-delete", help="Delete a regimen")
    regimen_delete.add_argument("regimen_id")

    sub.add_parser("reminders", help="List upcoming reminders")

    lead = sub.add_parser("lead-time", help="Show or set the reminder lead time")
    lead.add_argument("minutes", nargs="?", type=float)

    export = sub.add_parser("export", help="Write a database snapshot")
    export.add_argument("output", type=Path)

    import_ = sub.add_parser("import", help="Replace all data with a snapshot")
    import_.add_argument("source", type=Path)

    sub.add_parser("reset", help="Delete all windows and regimens")

    ring = sub.add_parser("ring", help="Render the active window's progress as a PNG")
    ring.add_argument("output", type=Path)
    ring.add_argument("--size", type=int, default=240)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if args.command is None:
        parser.print_help()
        return 1

    schedule = build_schedule(args.db, args.config)
    configure_logging(schedule.settings)
    logger = get_logger(__name__)
    schedule.refresh_state()
    logger.debug("Running %s", args.command)
    return _run(args, schedule)


def _run(args: argparse.Namespace, schedule: FastingSchedule) -> int:
    command = args.command

    if command == "status":
        _print_status(schedule)
        return 0
    if command == "start":
        return _report(schedule, schedule.start_fast(args.at) if args.at else schedule.start_fast_now())
    if command == "stop":
        return _report(schedule, schedule.stop_fast(args.at) if args.at else schedule.stop_fast_now())
    if command == "add":
        ok = schedule.create_window(WindowType(args.type), args.start, args.end, note=args.note)
        return _report(schedule, ok)
    if command == "edit":
        ok = schedule.update_window(args.window_id, WindowType(args.type), args.start, args.end, note=args.note)
        return _report(schedule, ok)
    if command == "delete":
        return _report(schedule, schedule.delete_window(args.window_id))
    if command == "history":
        for section in schedule.recent_history:
            print(section.title)
            for entry in section.entries:
                print(f"  {entry.type.value:<4} {history_detail(entry)}  [{entry.window_id}]")
        return 0
    if command == "week":
        for day in schedule.weekly_summary:
            print(f"{day.weekday:<4} {day.achieved * 100:5.1f}%  target {day.target}")
        return 0
    if command == "regimens":
        for regimen in schedule.regimens():
            marker = "*" if regimen.is_active else " "
            print(f"{marker} {regimen.name}  {regimen.summary_label}  [{regimen.id}]")
        return 0
    if command == "regimen-save":
        existing = None
        if args.regimen_id:
            existing = next((r for r in schedule.regimens() if r.id == args.regimen_id), None)
            if existing is None:
                print(f"Unknown regimen {args.regimen_id}", file=sys.stderr)
                return 1
        ok = schedule.save_regimen(args.name, args.fast_hours, args.feed_hours, args.activate, existing)
        return _report(schedule, ok)
    if command == "regimen-activate":
        return _report(schedule, schedule.set_active_regimen(args.regimen_id))
    if command == "regimen-delete":
        return _report(schedule, schedule.delete_regimen(args.regimen_id))
    if command == "reminders":
        for event in schedule.scheduled_reminders:
            print(f"{event.fire_at:%Y-%m-%d} {format_time_of_day(event.fire_at):>8}  {event.title}: {event.body}")
        return 0
    if command == "lead-time":
        if args.minutes is not None:
            schedule.set_lead_time(args.minutes * 60)
        print(f"Reminder lead time: {format_duration(schedule.lead_time)}")
        return 0
    if command == "export":
        data = schedule.export_database()
        if data is None:
            return _report(schedule, False)
        args.output.write_bytes(data)
        print(f"Exported {len(data)} bytes to {args.output}")
        return 0
    if command == "import":
        return _report(schedule, schedule.import_database(args.source))
    if command == "reset":
        return _report(schedule, schedule.reset_database())
    if command == "ring":
        target = save_progress_ring(args.output, schedule.progress, schedule.remaining_time_label, args.size)
        print(f"Wrote {target}")
        return 0
    return 1


def _report(schedule: FastingSchedule, ok: bool) -> int:
    if not ok:
        print(f"Error: {schedule.last_error or 'operation failed'}", file=sys.stderr)
        return 1
    _print_status(schedule)
    return 0


def _print_status(schedule: FastingSchedule) -> None:
    print(schedule.headline)
    print(schedule.subheadline)
    if schedule.active_window is not None:
        print(f"{schedule.progress * 100:.0f}% - {schedule.remaining_time_label}")
    if schedule.active_regimen is not None:
        print(f"Regimen: {schedule.active_regimen.name} ({schedule.active_regimen.summary_label})")
    print("Today:")
    for window in schedule.today_windows:
        print(f"  {interval_description(window)}  [{window.id}]")
