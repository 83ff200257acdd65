from __future__ import annotations

from dataclasses import dataclass
import secrets
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .locks import TableLocks
from .runtime.events import EventBus
from .store import Field, Row, StateFile, Table, TableSchema
from .timer_db import normalize_subject, require_day
from .timeutils import local_date_string, now_ms

if TYPE_CHECKING:
    from .crud import RecordBook


DEFAULT_SUBJECT = "general"


def make_session_id() -> str:
    return f"s_{now_ms()}_{secrets.token_hex(2)}"


SESSIONS = TableSchema(
    name="sessions",
    filename="sessions.json",
    fields=(
        Field("id"),
        Field("subject_name"),
        Field("subject_id", "int", required=False),
        Field("start_time", "epoch"),
        Field("end_time", "epoch", required=False),
        Field("duration_minutes", "int", required=False),
        Field("paused_seconds", "int", required=False),
    ),
    id_kind="str",
    codec="json",
)

DAILY_STATS = TableSchema(
    name="daily_stats",
    filename="daily_stats.json",
    fields=(
        Field("date"),
        Field("subject"),
        Field("time_in_subject", "int", default=0),
        Field("break_minutes", "int", default=0),
        Field("pause_minutes", "int", default=0),
    ),
    id_field=None,
    codec="json",
)

SUBJECT_TOTALS = TableSchema(
    name="subject_totals",
    filename="subject_totals.json",
    fields=(
        Field("subject"),
        Field("total_time", "int", default=0),
    ),
    id_field="subject",
    id_kind="str",
    codec="json",
)


@dataclass(frozen=True)
class SessionRecord:
    id: str
    subject_name: str
    start_time: int
    subject_id: int | None = None
    end_time: int | None = None
    duration_minutes: int | None = None
    paused_seconds: int | None = None

    @property
    def completed(self) -> bool:
        return self.end_time is not None

    @property
    def local_date(self) -> str:
        return local_date_string(self.start_time)

    @classmethod
    def from_row(cls, row: Row) -> "SessionRecord":
        return cls(
            id=str(row["id"]),
            subject_name=str(row.get("subject_name") or DEFAULT_SUBJECT),
            start_time=int(row["start_time"]),
            subject_id=row.get("subject_id"),
            end_time=row.get("end_time"),
            duration_minutes=row.get("duration_minutes"),
            paused_seconds=row.get("paused_seconds"),
        )


@dataclass(frozen=True)
class DailyStat:
    date: str
    subject: str
    time_in_subject: int = 0
    break_minutes: int = 0
    pause_minutes: int = 0

    @classmethod
    def from_row(cls, row: Row) -> "DailyStat":
        return cls(
            date=str(row["date"]),
            subject=str(row["subject"]),
            time_in_subject=int(row.get("time_in_subject") or 0),
            break_minutes=int(row.get("break_minutes") or 0),
            pause_minutes=int(row.get("pause_minutes") or 0),
        )

    def to_row(self) -> Row:
        return {
            "date": self.date,
            "subject": self.subject,
            "time_in_subject": self.time_in_subject,
            "break_minutes": self.break_minutes,
            "pause_minutes": self.pause_minutes,
        }


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


class SessionTracker:
    """Session lifecycle (start -> progress* -> complete) and the daily totals derived from it.

    `DailyStat.time_in_subject` only changes through `update_daily_stat` /
    `add_daily_stat`, which also move the per-subject running totals, so the
    two can not drift apart.
    """

    def __init__(
        self,
        root: Path,
        *,
        bus: EventBus,
        locks: TableLocks,
        state: StateFile | None = None,
        records: "RecordBook | None" = None,
    ) -> None:
        self.bus = bus
        self.records = records
        self.sessions = Table(SESSIONS, root, bus=bus, locks=locks, state=state, id_factory=make_session_id)
        self.daily_stats = Table(DAILY_STATS, root, bus=bus, locks=locks, state=state)
        self.subject_totals = Table(SUBJECT_TOTALS, root, bus=bus, locks=locks, state=state)

    def tables(self) -> list[Table]:
        return [self.sessions, self.daily_stats, self.subject_totals]

    def ensure_files(self) -> None:
        for table in self.tables():
            table.ensure_exists()

    # sessions

    def start_session(self, subject: str | int | None = None, *, subject_id: int | None = None) -> SessionRecord:
        """Open a session for a subject name, or a subject id resolved through the record book."""

        subject_name = DEFAULT_SUBJECT
        ref_id = subject_id
        if isinstance(subject, int) and not isinstance(subject, bool):
            ref_id = subject
            row = self.records.find_subject(subject) if self.records is not None else None
            if row is not None:
                subject_name = str(row.get("name") or DEFAULT_SUBJECT)
            else:
                self.bus.publish_event(
                    "session.subject.unresolved",
                    f"subject id {subject} not found; using {DEFAULT_SUBJECT}",
                    severity="warn",
                    source="sessions",
                    metadata={"subject_id": subject},
                )
                ref_id = None
        elif isinstance(subject, str) and subject.strip():
            subject_name = subject.strip()

        self.add_subject_total(subject_name)
        row = {
            "id": make_session_id(),
            "subject_name": subject_name,
            "subject_id": ref_id,
            "start_time": now_ms(),
        }
        self.sessions.insert(row)
        record = SessionRecord.from_row(row)
        self.bus.publish_event(
            "session.started",
            f"session {record.id} started for {subject_name}",
            source="sessions",
            metadata={"session_id": record.id, "subject": subject_name},
        )
        return record

    def update_session_progress(self, session_id: str, active_seconds: int, paused_seconds: int) -> SessionRecord | None:
        """Overwrite the running duration/paused snapshot. Values are cumulative, not deltas."""

        cleaned = str(session_id or "").strip()
        if not cleaned:
            raise ValueError("session id is required")
        updated: Row | None = None
        with self.sessions.editing() as rows:
            for row in rows:
                if str(row.get("id")) != cleaned:
                    continue
                if row.get("end_time") is not None:
                    break
                row["duration_minutes"] = _non_negative_int(active_seconds) // 60
                row["paused_seconds"] = _non_negative_int(paused_seconds)
                updated = dict(row)
                break
        if updated is None:
            return None
        return SessionRecord.from_row(updated)

    def complete_session(self, session_id: str, duration_minutes: int, paused_seconds: int) -> SessionRecord | None:
        """Finalize a session and fold its minutes into the (local start day, subject) daily stat.

        Unknown or already-completed ids are reported on the bus and return None.
        """

        cleaned = str(session_id or "").strip()
        if not cleaned:
            raise ValueError("session id is required")
        completed: Row | None = None
        already_done = False
        with self.sessions.editing() as rows:
            for row in rows:
                if str(row.get("id")) != cleaned:
                    continue
                if row.get("end_time") is not None:
                    already_done = True
                    break
                row["end_time"] = now_ms()
                row["duration_minutes"] = _non_negative_int(duration_minutes)
                row["paused_seconds"] = _non_negative_int(paused_seconds)
                completed = dict(row)
                break

        if completed is None:
            self.bus.publish_event(
                "session.already_completed" if already_done else "session.not_found",
                f"session {cleaned} {'was already completed' if already_done else 'not found'}",
                severity="warn",
                source="sessions",
                metadata={"session_id": cleaned},
            )
            return None

        record = SessionRecord.from_row(completed)
        # pause/break minutes reach daily stats only through update_daily_stat
        self.update_daily_stat(record.local_date, record.subject_name, time_in_subject=record.duration_minutes or 0)
        self.bus.publish_event(
            "session.completed",
            f"session {record.id} completed: {record.duration_minutes} min of {record.subject_name}",
            source="sessions",
            metadata={
                "session_id": record.id,
                "subject": normalize_subject(record.subject_name),
                "date": record.local_date,
                "duration_minutes": record.duration_minutes,
            },
        )
        return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        row = self.sessions.get(session_id)
        return SessionRecord.from_row(row) if row is not None else None

    def get_all_sessions(self) -> list[SessionRecord]:
        return [SessionRecord.from_row(row) for row in self.sessions.load()]

    def get_sessions_for_date(self, date: str) -> list[SessionRecord]:
        return [record for record in self.get_all_sessions() if record.local_date == date]

    def get_sessions_between(self, start_date: str, end_date: str) -> list[SessionRecord]:
        return [record for record in self.get_all_sessions() if start_date <= record.local_date <= end_date]

    def get_sessions_for_month(self, year: int, month: int) -> list[SessionRecord]:
        if month < 1 or month > 12:
            raise ValueError(f"month out of range: {month}")
        prefix = f"{int(year):04d}-{int(month):02d}-"
        found = [record for record in self.get_all_sessions() if record.local_date.startswith(prefix)]
        return sorted(found, key=lambda record: record.start_time, reverse=True)

    # daily stats

    def get_daily_stats(self) -> list[DailyStat]:
        return [DailyStat.from_row(row) for row in self.daily_stats.load()]

    def get_daily_stats_by_date(self, date: str) -> list[DailyStat]:
        return [stat for stat in self.get_daily_stats() if stat.date == date]

    def get_daily_stats_between(self, start_date: str | None = None, end_date: str | None = None) -> list[DailyStat]:
        stats = self.get_daily_stats()
        if not start_date or not end_date:
            return stats
        return [stat for stat in stats if start_date <= stat.date <= end_date]

    def add_daily_stat(self, stat: DailyStat) -> DailyStat:
        """Append a stat row as-is (floored, subject normalized) and credit its minutes."""

        key = normalize_subject(stat.subject)
        if not key:
            raise ValueError("subject name cannot be empty")
        cleaned = DailyStat(
            date=require_day(stat.date),
            subject=key,
            time_in_subject=_non_negative_int(stat.time_in_subject),
            break_minutes=_non_negative_int(stat.break_minutes),
            pause_minutes=_non_negative_int(stat.pause_minutes),
        )
        with self.daily_stats.editing() as rows:
            rows.append(cleaned.to_row())
        self.increment_subject_total(key, cleaned.time_in_subject)
        return cleaned

    def update_daily_stat(
        self,
        date: str,
        subject: str,
        *,
        time_in_subject: int = 0,
        break_minutes: int = 0,
        pause_minutes: int = 0,
    ) -> DailyStat:
        """Increment the (date, subject) bucket; increments below zero count as zero."""

        key = normalize_subject(subject)
        if not date or not key:
            raise ValueError("date and subject are required for update_daily_stat")
        day = require_day(date)
        focus = _non_negative_int(time_in_subject)
        breaks = _non_negative_int(break_minutes)
        pauses = _non_negative_int(pause_minutes)

        with self.daily_stats.editing() as rows:
            for row in rows:
                if row.get("date") == day and row.get("subject") == key:
                    row["time_in_subject"] = int(row.get("time_in_subject") or 0) + focus
                    row["break_minutes"] = int(row.get("break_minutes") or 0) + breaks
                    row["pause_minutes"] = int(row.get("pause_minutes") or 0) + pauses
                    result = DailyStat.from_row(row)
                    break
            else:
                result = DailyStat(date=day, subject=key, time_in_subject=focus, break_minutes=breaks, pause_minutes=pauses)
                rows.append(result.to_row())

        if focus > 0:
            self.increment_subject_total(key, focus)
        return result

    # subject totals

    def get_subject_totals(self) -> dict[str, int]:
        return {str(row["subject"]): int(row.get("total_time") or 0) for row in self.subject_totals.load()}

    def add_subject_total(self, subject: str) -> int:
        return self.increment_subject_total(subject, 0)

    def increment_subject_total(self, subject: str, minutes: int) -> int:
        key = normalize_subject(subject)
        if not key:
            raise ValueError("subject name cannot be empty")
        amount = _non_negative_int(minutes)
        with self.subject_totals.editing() as rows:
            for row in rows:
                if row.get("subject") == key:
                    row["total_time"] = int(row.get("total_time") or 0) + amount
                    return int(row["total_time"])
            rows.append({"subject": key, "total_time": amount})
            return amount

    def remove_subject_totals(self, subject: str) -> bool:
        """Forget a subject's running total and its daily stat rows."""

        key = normalize_subject(subject)
        if not self.subject_totals.remove(key):
            return False
        with self.daily_stats.editing() as rows:
            rows[:] = [row for row in rows if row.get("subject") != key]
        return True
