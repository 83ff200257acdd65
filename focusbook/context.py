from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import sys

from .config import FocusbookConfig, load_focusbook_toml
from .crud import RecordBook
from .locks import TableLocks
from .migrations import MigrationReport, MigrationRunner, default_migrations
from .notify import ConsoleNotifier, Notifier
from .paths import DataPaths, data_paths, ensure_data_dirs, resolve_data_dir
from .reminders import ReminderBook
from .runtime.events import EventBus, append_runtime_log
from .sessions import SessionTracker
from .store import StateFile
from .timer_db import TimerDatabase


@dataclass
class AppContext:
    paths: DataPaths
    config: FocusbookConfig
    config_warning: str
    bus: EventBus
    locks: TableLocks
    state: StateFile
    records: RecordBook
    timer: TimerDatabase
    sessions: SessionTracker
    reminders: ReminderBook
    notifier: Notifier
    migration: MigrationReport

    def log(self, level: str, message: str) -> None:
        append_runtime_log(self.paths.runtime_log, level=level, message=message)


def open_context(
    data_dir: str | Path | None = None,
    *,
    notifier: Notifier | None = None,
    seed: bool = True,
) -> AppContext:
    """Build every handle for one data directory.

    Migrations run here, before any table is handed out.
    """

    paths = ensure_data_dirs(data_paths(resolve_data_dir(data_dir)))
    config, warning = load_focusbook_toml(paths.config_toml)

    bus = EventBus(runtime_log_path=paths.runtime_log, console=sys.stderr if config.logging.console else None)
    if config.logging.events:
        bus.set_log_path(paths.events_log)
    else:
        bus.discard_pending()
    if warning:
        bus.publish_event("config.warning", warning, severity="warn", source="config")

    locks = TableLocks()
    state = StateFile(paths.state_json, bus=bus)
    records = RecordBook(paths.root, bus=bus, locks=locks, state=state)
    timer = TimerDatabase(paths.root, bus=bus, locks=locks, state=state)
    sessions = SessionTracker(paths.root, bus=bus, locks=locks, state=state, records=records)
    reminders = ReminderBook(paths.root, bus=bus, locks=locks, state=state)

    records.ensure_files()
    timer.ensure_files()
    sessions.ensure_files()
    reminders.ensure_files()

    report = MigrationRunner(state, default_migrations(todos=records.todos), bus=bus).run()
    if seed:
        records.seed_default_todo()

    return AppContext(
        paths=paths,
        config=config,
        config_warning=warning,
        bus=bus,
        locks=locks,
        state=state,
        records=records,
        timer=timer,
        sessions=sessions,
        reminders=reminders,
        notifier=notifier or ConsoleNotifier(),
        migration=report,
    )
