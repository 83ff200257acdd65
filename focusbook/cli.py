from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Callable

from . import __version__
from .aggregators import get_dashboard_data, get_subject_time_stats
from .config import explain_focusbook_toml, set_config_value
from .context import AppContext, open_context
from .locks import instance_lock
from .migrations import MigrationRunner, default_migrations
from .runtime.scheduler import ReminderScheduler
from .store import StoreWriteError
from .timeutils import format_hms, from_epoch_to_local_datetime, local_date_string, month_range, week_range, year_range


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="focusbook",
        description="Focusbook: local time tracking, sessions, todos and reminders",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", help="Data directory (default: $FOCUSBOOK_DATA_DIR or the user data dir)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    timer = sub.add_parser("timer", help="Per-subject minute totals.")
    timer_sub = timer.add_subparsers(dest="action", required=True)
    timer_add = timer_sub.add_parser("add", help="Add minutes to a subject (negative to correct).")
    timer_add.add_argument("subject")
    timer_add.add_argument("--minutes", type=int, default=1)
    timer_add.add_argument("--date", help="Local day YYYY-MM-DD (default: today)")
    timer_sub.add_parser("subjects", help="List visible subjects.")
    for action, help_text in (
        ("hide", "Hide a subject from subject lists."),
        ("unhide", "Show a hidden subject again."),
        ("delete", "Delete every entry for a subject."),
    ):
        item = timer_sub.add_parser(action, help=help_text)
        item.add_argument("subject")
    for action, help_text in (
        ("totals", "Minutes per subject over a range."),
        ("daily", "Minutes per day over a range."),
    ):
        item = timer_sub.add_parser(action, help=help_text)
        _add_range_args(item)

    session = sub.add_parser("session", help="Focus sessions.")
    session_sub = session.add_subparsers(dest="action", required=True)
    session_start = session_sub.add_parser("start", help="Start a session.")
    session_start.add_argument("subject", nargs="?", help="Subject name (default: general)")
    session_start.add_argument("--subject-id", type=int, help="Resolve the subject from its id instead")
    session_progress = session_sub.add_parser("progress", help="Record cumulative progress for a running session.")
    session_progress.add_argument("session_id")
    session_progress.add_argument("active_seconds", type=int)
    session_progress.add_argument("paused_seconds", type=int)
    session_complete = session_sub.add_parser("complete", help="Complete a session.")
    session_complete.add_argument("session_id")
    session_complete.add_argument("duration_minutes", type=int)
    session_complete.add_argument("--paused-seconds", type=int, default=0)
    session_list = session_sub.add_parser("list", help="List sessions for a day or month.")
    session_list.add_argument("--date", help="Local day YYYY-MM-DD (default: today)")
    session_list.add_argument("--month", help="YYYY-MM")

    todo = sub.add_parser("todo", help="Todos.")
    todo_sub = todo.add_subparsers(dest="action", required=True)
    todo_add = todo_sub.add_parser("add", help="Add a todo.")
    todo_add.add_argument("text")
    todo_add.add_argument("--date", help="Local day YYYY-MM-DD (default: today)")
    todo_add.add_argument("--starred", action="store_true")
    todo_add.add_argument("--due", help="Due date")
    todo_list = todo_sub.add_parser("list", help="List todos.")
    todo_list.add_argument("--date", help="Only todos for this day")
    todo_list.add_argument("--starred", action="store_true", help="Only starred todos")
    todo_done = todo_sub.add_parser("done", help="Mark a todo done.")
    todo_done.add_argument("todo_id", type=int)
    todo_done.add_argument("--undo", action="store_true", help="Mark it not done")
    todo_delete = todo_sub.add_parser("delete", help="Delete a todo.")
    todo_delete.add_argument("todo_id", type=int)

    reminder = sub.add_parser("reminder", help="One-shot reminders.")
    reminder_sub = reminder.add_subparsers(dest="action", required=True)
    reminder_add = reminder_sub.add_parser("add", help="Add a reminder.")
    reminder_add.add_argument("title")
    reminder_add.add_argument("when", help="Epoch ms, 'YYYY-MM-DD [HH:MM[:SS]]' (local), or ISO-8601")
    reminder_add.add_argument("--body")
    reminder_add.add_argument("--id", dest="reminder_id")
    reminder_sub.add_parser("list", help="List pending reminders.")
    reminder_remove = reminder_sub.add_parser("remove", help="Remove a reminder.")
    reminder_remove.add_argument("reminder_id")

    stats = sub.add_parser("stats", help="Dashboard for a day plus per-subject stats.")
    stats.add_argument("--date", help="Local day YYYY-MM-DD (default: today)")
    _add_range_args(stats)

    config = sub.add_parser("config", help="Show or edit focusbook.toml.")
    config.add_argument("--set", dest="assignment", help="section.key=value (TOML literal)")

    run = sub.add_parser("run", help="Run the reminder scheduler until interrupted.")
    run.add_argument("--interval", type=float, help="Poll interval seconds (default from focusbook.toml)")
    run.add_argument("--once", action="store_true", help="Run a single tick and exit")

    sub.add_parser("migrate", help="Apply pending schema migrations and report the version.")

    return parser


def _add_range_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", help="First day YYYY-MM-DD")
    parser.add_argument("--end", help="Last day YYYY-MM-DD")
    parser.add_argument("--range", choices=("week", "month", "year"), help="Current calendar range")


def _resolve_range(args: argparse.Namespace) -> tuple[str | None, str | None]:
    if args.range == "week":
        return week_range()
    if args.range == "month":
        return month_range()
    if args.range == "year":
        return year_range()
    return args.start, args.end


# --- timer -------------------------------------------------------------------


def cmd_timer(ctx: AppContext, args: argparse.Namespace) -> int:
    timer = ctx.timer
    if args.action == "add":
        entry = timer.add_or_update_timer_data(args.subject, args.date, args.minutes)
        print(f"{entry.subject} on {entry.date}: {entry.total_minutes} min")
        return 0
    if args.action == "subjects":
        for subject in timer.get_all_subjects():
            print(subject)
        return 0
    if args.action == "hide":
        changed = timer.hide_subject(args.subject)
        print(f"hidden: {args.subject}" if changed else f"already hidden: {args.subject}")
        return 0
    if args.action == "unhide":
        changed = timer.unhide_subject(args.subject)
        print(f"unhidden: {args.subject}" if changed else f"not hidden: {args.subject}")
        return 0
    if args.action == "delete":
        if not timer.delete_subject_completely(args.subject):
            print(f"no data for subject: {args.subject}", file=sys.stderr)
            return 1
        print(f"deleted: {args.subject}")
        return 0
    start, end = _resolve_range(args)
    if args.action == "totals":
        for total in timer.get_subject_totals_by_date_range(start, end):
            print(f"{total.subject}\t{total.total_minutes}")
        return 0
    for day in timer.get_daily_aggregated_data(start, end):
        print(f"{day.date}\t{day.total_minutes}\t{', '.join(day.subjects)}")
    return 0


# --- sessions ----------------------------------------------------------------


def cmd_session(ctx: AppContext, args: argparse.Namespace) -> int:
    tracker = ctx.sessions
    if args.action == "start":
        subject = args.subject_id if args.subject_id is not None else args.subject
        record = tracker.start_session(subject)
        print(f"{record.id}\t{record.subject_name}")
        return 0
    if args.action == "progress":
        record = tracker.update_session_progress(args.session_id, args.active_seconds, args.paused_seconds)
        if record is None:
            print(f"no running session: {args.session_id}", file=sys.stderr)
            return 1
        print(f"{record.id}\t{record.duration_minutes} min\tpaused {format_hms(record.paused_seconds or 0)}")
        return 0
    if args.action == "complete":
        record = tracker.complete_session(args.session_id, args.duration_minutes, args.paused_seconds)
        if record is None:
            print(f"no running session: {args.session_id}", file=sys.stderr)
            return 1
        print(f"{record.id}\t{record.subject_name}\t{record.duration_minutes} min on {record.local_date}")
        return 0

    if args.month:
        year_text, _, month_text = args.month.partition("-")
        try:
            records = tracker.get_sessions_for_month(int(year_text), int(month_text))
        except ValueError:
            raise ValueError(f"month must be YYYY-MM: {args.month!r}") from None
    else:
        records = tracker.get_sessions_for_date(args.date or local_date_string())
    for record in records:
        started = from_epoch_to_local_datetime(record.start_time).iso
        state = f"{record.duration_minutes or 0} min" if record.completed else "running"
        print(f"{record.id}\t{started}\t{record.subject_name}\t{state}")
    return 0


# --- todos -------------------------------------------------------------------


def cmd_todo(ctx: AppContext, args: argparse.Namespace) -> int:
    records = ctx.records
    if args.action == "add":
        text = (args.text or "").strip()
        if not text:
            raise ValueError("todo text cannot be empty")
        todo_id = records.add_todo(
            date=args.date or local_date_string(),
            text=text,
            starred=args.starred,
            due_date=args.due,
        )
        print(todo_id)
        return 0
    if args.action == "list":
        if args.starred:
            rows = records.get_starred_todos()
        elif args.date:
            rows = records.get_todos_by_date(args.date)
        else:
            rows = records.get_all_todos()
        for row in rows:
            mark = "x" if row.get("done") else " "
            star = "*" if row.get("starred") else " "
            due = f" (due {row['due_date']})" if row.get("due_date") else ""
            print(f"{row['id']}\t[{mark}]{star} {row['date']} {row['text']}{due}")
        return 0
    if args.action == "done":
        if not records.update_todo(args.todo_id, done=not args.undo):
            print(f"todo not found: {args.todo_id}", file=sys.stderr)
            return 1
        return 0
    if not records.delete_todo(args.todo_id):
        print(f"todo not found: {args.todo_id}", file=sys.stderr)
        return 1
    return 0


# --- reminders ---------------------------------------------------------------


def cmd_reminder(ctx: AppContext, args: argparse.Namespace) -> int:
    book = ctx.reminders
    if args.action == "add":
        item = book.add_reminder(args.reminder_id, args.title, args.body, args.when)
        print(f"{item.id}\t{item.local_time}\t{item.title}")
        return 0
    if args.action == "list":
        for item in book.list_reminders():
            body = f" - {item.body}" if item.body else ""
            print(f"{item.id}\t{item.local_time}\t{item.title}{body}")
        return 0
    if not book.remove_reminder(args.reminder_id):
        print(f"reminder not found: {args.reminder_id}", file=sys.stderr)
        return 1
    return 0


# --- stats / config / migrate ------------------------------------------------


def cmd_stats(ctx: AppContext, args: argparse.Namespace) -> int:
    dashboard = get_dashboard_data(ctx.records, ctx.sessions, args.date)
    print(f"date: {dashboard.date}")
    print(f"focus: {dashboard.daily_log.total_minutes} min")
    print(f"paused: {dashboard.daily_log.total_paused_minutes} min")
    print(f"sessions: {len(dashboard.sessions)}")
    print(f"todos: {sum(1 for todo in dashboard.todos if todo.get('done'))}/{len(dashboard.todos)} done")

    start, end = _resolve_range(args)
    stats = get_subject_time_stats(ctx.sessions, start, end)
    if stats:
        print("")
        print("subjects:")
        for stat in stats:
            print(f"- {stat.subject}: {stat.total_minutes} min over {stat.session_count} day(s)")
    return 0


def cmd_config(ctx: AppContext, args: argparse.Namespace) -> int:
    if not args.assignment:
        print(explain_focusbook_toml(ctx.config, path=ctx.paths.config_toml))
        if ctx.config_warning:
            print(f"\nwarning: {ctx.config_warning}", file=sys.stderr)
        return 0
    target, sep, literal = args.assignment.partition("=")
    section, dot, key = target.strip().partition(".")
    if not sep or not dot:
        raise ValueError("expected section.key=value")
    ok, summary = set_config_value(ctx.paths.config_toml, section, key, literal.strip())
    print(summary, file=sys.stdout if ok else sys.stderr)
    return 0 if ok else 1


def cmd_migrate(ctx: AppContext, args: argparse.Namespace) -> int:
    # open_context already ran pending migrations; a rerun reports anything still failing.
    report = MigrationRunner(ctx.state, default_migrations(todos=ctx.records.todos), bus=ctx.bus).run()
    initial = ctx.migration
    applied = initial.applied + report.applied
    print(f"schema version: {report.final_version}")
    if applied:
        print(f"applied: {', '.join(str(version) for version in applied)}")
    if not report.ok:
        print(f"migration {report.failed_version} failed: {report.error}", file=sys.stderr)
        return 1
    return 0


# --- run ---------------------------------------------------------------------


def cmd_run(ctx: AppContext, args: argparse.Namespace) -> int:
    if not ctx.config.reminders.enabled and not args.once:
        print("reminders are disabled in focusbook.toml ([reminders] enabled = false)", file=sys.stderr)
        return 1
    interval = args.interval if args.interval is not None else ctx.config.reminders.poll_interval_s
    ctx.log("info", f"status: starting reminder scheduler (data: {ctx.paths.root})")
    try:
        with instance_lock(ctx.paths.scheduler_lock):
            return asyncio.run(_run_scheduler(ctx, interval=interval, once=args.once))
    except KeyboardInterrupt:
        return 130
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2


async def _run_scheduler(ctx: AppContext, *, interval: float, once: bool) -> int:
    scheduler = ReminderScheduler(
        reminders=ctx.reminders,
        notifier=ctx.notifier,
        event_bus=ctx.bus,
        interval_s=interval,
    )
    if once:
        result = await scheduler.tick_once()
        if result is None:
            return 1
        print(f"fired: {len(result.fired)}  pending: {result.remaining}")
        return 0

    await scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        ctx.log("info", "status: reminder scheduler stopped")
    return 0


COMMANDS: dict[str, Callable[[AppContext, argparse.Namespace], int]] = {
    "timer": cmd_timer,
    "session": cmd_session,
    "todo": cmd_todo,
    "reminder": cmd_reminder,
    "stats": cmd_stats,
    "config": cmd_config,
    "run": cmd_run,
    "migrate": cmd_migrate,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    handler = COMMANDS.get(args.cmd)
    if handler is None:
        parser.error(f"Unknown command: {args.cmd}")
        return 2

    try:
        ctx = open_context(args.data_dir)
        return handler(ctx, args)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except StoreWriteError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
