from __future__ import annotations

from dataclasses import dataclass
from datetime import date as date_type
from pathlib import Path
import re

from .locks import TableLocks
from .runtime.events import EventBus
from .store import Field, Row, StateFile, Table, TableSchema
from .timeutils import local_date_string, month_range, utc_now_iso, week_range, year_range


TIMER_DATA = TableSchema(
    name="timer_data",
    filename="timer_data.csv",
    fields=(
        Field("id", "int"),
        Field("subject"),
        Field("date"),
        Field("total_minutes", "int", default=0),
        Field("last_updated", "timestamp", required=False),
    ),
)

HIDDEN_SUBJECTS = TableSchema(
    name="hidden_subjects",
    filename="hidden_subjects.csv",
    fields=(
        Field("id", "int"),
        Field("subject"),
        Field("hidden_at", "timestamp", required=False),
    ),
)

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_subject(subject: str) -> str:
    return (subject or "").strip().lower()


def require_day(value: str, *, label: str = "date") -> str:
    cleaned = (value or "").strip()
    if not _DAY_RE.match(cleaned):
        raise ValueError(f"{label} must be YYYY-MM-DD: {value!r}")
    try:
        date_type.fromisoformat(cleaned)
    except ValueError:
        raise ValueError(f"{label} is not a calendar day: {value!r}") from None
    return cleaned


@dataclass(frozen=True)
class TimerEntry:
    id: int
    subject: str
    date: str
    total_minutes: int
    last_updated: str

    @classmethod
    def from_row(cls, row: Row) -> "TimerEntry":
        return cls(
            id=int(row["id"]),
            subject=str(row["subject"]),
            date=str(row["date"]),
            total_minutes=int(row.get("total_minutes") or 0),
            last_updated=str(row.get("last_updated") or ""),
        )


@dataclass(frozen=True)
class SubjectTotal:
    subject: str
    total_minutes: int


@dataclass(frozen=True)
class DailyAggregate:
    date: str
    total_minutes: int
    subjects: tuple[str, ...]


@dataclass(frozen=True)
class SubjectDateTotal:
    subject: str
    date: str
    total_minutes: int


class TimerDatabase:
    """Per-subject, per-local-day minute totals plus the hidden-subject list."""

    def __init__(self, root: Path, *, bus: EventBus, locks: TableLocks, state: StateFile | None = None) -> None:
        self.bus = bus
        self.entries = Table(TIMER_DATA, root, bus=bus, locks=locks, state=state)
        self.hidden = Table(HIDDEN_SUBJECTS, root, bus=bus, locks=locks, state=state)

    def tables(self) -> list[Table]:
        return [self.entries, self.hidden]

    def ensure_files(self) -> None:
        self.entries.ensure_exists()
        self.hidden.ensure_exists()

    def add_or_update_timer_data(self, subject: str, date: str | None = None, minutes: int = 1) -> TimerEntry:
        """Fold `minutes` into the (subject, date) entry, creating it on first use.

        Negative deltas are accepted as explicit decrements but the running
        total never drops below zero.
        """

        key = normalize_subject(subject)
        if not key:
            raise ValueError("subject name cannot be empty")
        day = require_day(date) if date else local_date_string()
        delta = int(minutes)
        now = utc_now_iso()

        with self.entries.editing() as rows:
            for row in rows:
                if normalize_subject(str(row.get("subject") or "")) == key and row.get("date") == day:
                    row["total_minutes"] = max(0, int(row.get("total_minutes") or 0) + delta)
                    row["last_updated"] = now
                    entry = dict(row)
                    created = False
                    break
            else:
                entry = {
                    "id": self.entries.next_id(rows),
                    "subject": key,
                    "date": day,
                    "total_minutes": max(0, delta),
                    "last_updated": now,
                }
                rows.append(entry)
                created = True

        self.bus.publish_event(
            "timer.entry.updated",
            f"{'created' if created else 'updated'} {key} on {day}: {delta:+d} min = {entry['total_minutes']} total",
            source="timer",
            metadata={"subject": key, "date": day, "delta": delta, "total_minutes": entry["total_minutes"]},
        )
        return TimerEntry.from_row(entry)

    def get_all_timer_data(self) -> list[TimerEntry]:
        return [TimerEntry.from_row(row) for row in self.entries.load()]

    def get_timer_data_by_date_range(self, start_date: str | None = None, end_date: str | None = None) -> list[TimerEntry]:
        entries = self.get_all_timer_data()
        return [entry for entry in entries if _in_range(entry.date, start_date, end_date)]

    def check_if_subject_exists(self, subject: str) -> bool:
        key = normalize_subject(subject)
        return any(normalize_subject(entry.subject) == key for entry in self.get_all_timer_data())

    def get_all_subjects(self) -> list[str]:
        hidden = set(self.get_hidden_subjects())
        seen: list[str] = []
        for entry in self.get_all_timer_data():
            if entry.subject not in seen:
                seen.append(entry.subject)
        return [subject for subject in seen if subject not in hidden]

    def get_hidden_subjects(self) -> list[str]:
        return [str(row.get("subject") or "") for row in self.hidden.load()]

    def hide_subject(self, subject: str) -> bool:
        key = normalize_subject(subject)
        if not key:
            raise ValueError("subject name cannot be empty")
        with self.hidden.lock:
            if any(row.get("subject") == key for row in self.hidden.load()):
                return False
            self.hidden.insert({"subject": key, "hidden_at": utc_now_iso()})
        self.bus.publish_event("timer.subject.hidden", f"hidden subject: {key}", source="timer", metadata={"subject": key})
        return True

    def unhide_subject(self, subject: str) -> bool:
        key = normalize_subject(subject)
        with self.hidden.editing() as rows:
            kept = [row for row in rows if row.get("subject") != key]
            changed = len(kept) != len(rows)
            rows[:] = kept
        if changed:
            self.bus.publish_event(
                "timer.subject.unhidden", f"unhidden subject: {key}", source="timer", metadata={"subject": key}
            )
        return changed

    def delete_subject_completely(self, subject: str) -> bool:
        """Drop every timer entry and hidden marker for the subject. Irreversible."""

        key = normalize_subject(subject)
        if not key:
            return False
        with self.entries.editing() as rows:
            before = len(rows)
            rows[:] = [row for row in rows if normalize_subject(str(row.get("subject") or "")) != key]
            removed_entries = before - len(rows)
        with self.hidden.editing() as rows:
            before = len(rows)
            rows[:] = [row for row in rows if row.get("subject") != key]
            removed_hidden = before - len(rows)

        deleted = removed_entries > 0 or removed_hidden > 0
        self.bus.publish_event(
            "timer.subject.deleted",
            f"deleted subject {key}: {removed_entries} entries, {removed_hidden} hidden markers"
            if deleted
            else f"no data found for subject: {key}",
            source="timer",
            metadata={"subject": key, "entries": removed_entries, "hidden": removed_hidden},
        )
        return deleted

    # range aggregations

    def get_subject_totals_by_date_range(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[SubjectTotal]:
        totals: dict[str, int] = {}
        for entry in self.get_timer_data_by_date_range(start_date, end_date):
            totals[entry.subject] = totals.get(entry.subject, 0) + entry.total_minutes
        ordered = sorted(totals.items(), key=lambda item: item[1], reverse=True)
        return [SubjectTotal(subject=subject, total_minutes=minutes) for subject, minutes in ordered]

    def get_daily_aggregated_data(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[DailyAggregate]:
        days: dict[str, tuple[int, list[str]]] = {}
        for entry in self.get_timer_data_by_date_range(start_date, end_date):
            minutes, subjects = days.get(entry.date, (0, []))
            if entry.subject not in subjects:
                subjects.append(entry.subject)
            days[entry.date] = (minutes + entry.total_minutes, subjects)
        return [
            DailyAggregate(date=day, total_minutes=minutes, subjects=tuple(subjects))
            for day, (minutes, subjects) in sorted(days.items(), key=lambda item: item[0], reverse=True)
        ]

    def get_subject_date_aggregated_data(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> list[SubjectDateTotal]:
        entries = self.get_timer_data_by_date_range(start_date, end_date)
        projected = [
            SubjectDateTotal(subject=entry.subject, date=entry.date, total_minutes=entry.total_minutes)
            for entry in entries
        ]
        return sorted(projected, key=lambda item: item.date, reverse=True)

    # calendar helpers

    def current_week_range(self, today: date_type | None = None) -> tuple[str, str]:
        return week_range(today)

    def current_month_range(self, today: date_type | None = None) -> tuple[str, str]:
        return month_range(today)

    def current_year_range(self, today: date_type | None = None) -> tuple[str, str]:
        return year_range(today)


def _in_range(day: str, start_date: str | None, end_date: str | None) -> bool:
    if start_date and day < start_date:
        return False
    if end_date and day > end_date:
        return False
    return True
