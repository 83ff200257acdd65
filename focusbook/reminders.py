from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import secrets
from typing import Any

from .locks import TableLocks
from .notify import Notifier
from .runtime.events import EventBus
from .store import Field, Row, StateFile, Table, TableSchema
from .timeutils import from_epoch_to_local_datetime, normalize_timestamp, now_ms


REMINDERS = TableSchema(
    name="reminders",
    filename="reminders.json",
    fields=(
        Field("id"),
        Field("title", default=""),
        Field("body", required=False),
        Field("timestamp", "epoch"),
    ),
    id_kind="str",
    codec="json",
)


def make_reminder_id() -> str:
    return f"r_{now_ms()}_{secrets.token_hex(2)}"


@dataclass(frozen=True)
class Reminder:
    id: str
    title: str
    timestamp: int
    body: str | None = None

    @property
    def local_time(self) -> str:
        return from_epoch_to_local_datetime(self.timestamp).iso

    @classmethod
    def from_row(cls, row: Row) -> "Reminder":
        body = row.get("body")
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            timestamp=int(row["timestamp"]),
            body=str(body) if body else None,
        )

    def to_row(self) -> Row:
        return {"id": self.id, "title": self.title, "body": self.body, "timestamp": self.timestamp}


@dataclass(frozen=True)
class TickResult:
    fired: tuple[Reminder, ...]
    remaining: int
    dropped: int


class ReminderBook:
    """Persisted one-shot reminders and the due/remaining partition run on every poll.

    A due reminder is removed from disk before its notification is shown, so
    a failed write means it never fires rather than firing twice.
    """

    def __init__(self, root: Path, *, bus: EventBus, locks: TableLocks, state: StateFile | None = None) -> None:
        self.bus = bus
        self.table = Table(REMINDERS, root, bus=bus, locks=locks, state=state, id_factory=make_reminder_id)

    def ensure_files(self) -> None:
        self.table.ensure_exists()

    def add_reminder(
        self,
        reminder_id: str | None,
        title: str,
        body: str | None,
        timestamp: Any,
    ) -> Reminder:
        normalized = normalize_timestamp(timestamp)
        if normalized is None:
            raise ValueError(f"invalid reminder timestamp: {timestamp!r}")
        cleaned_id = str(reminder_id).strip() if reminder_id is not None else ""
        item = Reminder(
            id=cleaned_id or make_reminder_id(),
            title=str(title or ""),
            timestamp=normalized,
            body=str(body) if body else None,
        )
        with self.table.editing() as rows:
            rows.append(item.to_row())
            rows.sort(key=lambda row: int(row["timestamp"]))
        self.bus.publish_event(
            "reminder.added",
            f"reminder {item.id} set for {item.local_time}: {item.title}",
            source="reminders",
            metadata={"reminder_id": item.id, "timestamp": item.timestamp},
        )
        return item

    def list_reminders(self) -> list[Reminder]:
        return [Reminder.from_row(row) for row in self.table.load()]

    def remove_reminder(self, reminder_id: str) -> bool:
        return self.table.remove(str(reminder_id))

    def tick(self, notifier: Notifier, *, now: int | None = None) -> TickResult:
        """Fire every reminder due at `now` exactly once and keep the rest.

        Due reminders fire in ascending timestamp order, ties in stored order.
        Rows whose timestamp can not be read are dropped from disk.
        """

        current = now_ms() if now is None else int(now)
        with self.table.lock:
            rows = self.table.load()
            dropped = self.table.skipped_rows
            due = [row for row in rows if int(row["timestamp"]) <= current]
            remaining = [row for row in rows if int(row["timestamp"]) > current]
            if due or dropped:
                self.table.save(remaining)

        if dropped:
            self.bus.publish_event(
                "reminder.dropped",
                f"dropped {dropped} reminder(s) with unreadable timestamps",
                severity="warn",
                source="reminders",
                metadata={"count": dropped},
            )

        fired: list[Reminder] = []
        for row in sorted(due, key=lambda item: int(item["timestamp"])):
            reminder = Reminder.from_row(row)
            try:
                notifier.show(reminder.title, reminder.body)
            except Exception as exc:  # noqa: BLE001
                self.bus.publish_event(
                    "reminder.notify.failed",
                    f"notification for reminder {reminder.id} failed: {exc}",
                    severity="warn",
                    source="reminders",
                    metadata={"reminder_id": reminder.id},
                )
                continue
            fired.append(reminder)
            self.bus.publish_event(
                "reminder.fired",
                f"reminder fired: {reminder.title}",
                source="reminders",
                metadata={"reminder_id": reminder.id, "timestamp": reminder.timestamp},
            )
        return TickResult(fired=tuple(fired), remaining=len(remaining), dropped=dropped)
