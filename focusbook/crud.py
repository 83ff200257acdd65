from __future__ import annotations

from pathlib import Path
from typing import Any

from .config import PomodoroConfig
from .locks import TableLocks
from .runtime.events import EventBus
from .store import Field, Row, StateFile, Table, TableSchema
from .timeutils import local_date_string, utc_now_iso


SUBJECTS = TableSchema(
    name="subjects",
    filename="subjects.csv",
    fields=(
        Field("id", "int"),
        Field("name"),
        Field("created_at", "timestamp", required=False),
    ),
)

TODOS = TableSchema(
    name="todos",
    filename="todos.csv",
    fields=(
        Field("id", "int"),
        Field("date"),
        Field("text"),
        Field("done", "bool", default=0),
        Field("starred", "bool", default=0),
        Field("due_date", required=False),
        Field("created_at", "timestamp", required=False),
    ),
)

NOTES = TableSchema(
    name="notes",
    filename="notes.csv",
    fields=(
        Field("id", "int"),
        Field("title"),
        Field("content", required=False),
        Field("color", required=False),
        Field("created_at", "timestamp", required=False),
    ),
)

SETTINGS = TableSchema(
    name="settings",
    filename="settings.csv",
    fields=(
        Field("key"),
        Field("value"),
    ),
    id_field="key",
    id_kind="str",
)

DEFAULT_TODO_TEXT = "Be awesome"
POMODORO_PREFIX = "pomodoro."
POMODORO_KEYS = ("minutes_per_pomodoro", "minutes_per_break", "minutes_per_long_break")


class RecordBook:
    """Subjects, todos, notes and key/value settings behind one named-table CRUD surface."""

    def __init__(self, root: Path, *, bus: EventBus, locks: TableLocks, state: StateFile | None = None) -> None:
        self.bus = bus
        self.subjects = Table(SUBJECTS, root, bus=bus, locks=locks, state=state)
        self.todos = Table(TODOS, root, bus=bus, locks=locks, state=state)
        self.notes = Table(NOTES, root, bus=bus, locks=locks, state=state)
        self.settings = Table(SETTINGS, root, bus=bus, locks=locks, state=state)
        self._tables = {
            "subjects": self.subjects,
            "todos": self.todos,
            "notes": self.notes,
            "settings": self.settings,
        }

    def tables(self) -> list[Table]:
        return list(self._tables.values())

    def ensure_files(self) -> None:
        for table in self._tables.values():
            table.ensure_exists()

    # generic surface

    def query(
        self,
        table: str,
        where: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        target = self._tables.get(table)
        if target is None:
            return []
        return target.query(where, order_by=order_by, limit=limit)

    def insert(self, table: str, data: dict[str, Any]) -> Any:
        if table == "subjects":
            return self.add_subject(str(data.get("name") or ""))
        if table == "todos":
            return self.add_todo(
                date=str(data.get("date") or ""),
                text=str(data.get("text") or ""),
                starred=bool(data.get("starred")),
                due_date=data.get("due_date") or None,
                done=bool(data.get("done")),
                created_at=data.get("created_at") or None,
            )
        if table == "notes":
            return self.add_note(
                title=str(data.get("title") or ""),
                content=data.get("content") or None,
                color=data.get("color") or None,
                created_at=data.get("created_at") or None,
            )
        if table == "settings":
            key = str(data.get("key") or "")
            self.set_setting(key, str(data.get("value") or ""))
            return key
        raise ValueError(f"unknown table: {table}")

    def update(self, table: str, row_id: Any, data: dict[str, Any]) -> bool:
        if table not in {"subjects", "todos", "notes"}:
            return False
        return self._tables[table].update(row_id, data)

    def remove(self, table: str, row_id: Any) -> bool:
        if table not in {"subjects", "todos", "notes"}:
            return False
        return self._tables[table].remove(row_id)

    # subjects

    def get_subjects(self) -> list[Row]:
        return self.subjects.load()

    def add_subject(self, name: str) -> int:
        """Return the id of the subject named `name` (case-insensitive), creating it if needed."""

        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("subject name cannot be empty")
        normalized = cleaned.lower()
        with self.subjects.lock:
            for row in self.subjects.load():
                if str(row.get("name") or "").strip().lower() == normalized:
                    return int(row["id"])
            return self.subjects.insert({"name": cleaned, "created_at": utc_now_iso()})

    def find_subject(self, subject_id: int) -> Row | None:
        return self.subjects.get(subject_id)

    # todos

    def add_todo(
        self,
        *,
        date: str,
        text: str,
        starred: bool = False,
        due_date: str | None = None,
        done: bool = False,
        created_at: str | None = None,
    ) -> int:
        return self.todos.insert(
            {
                "date": date,
                "text": text,
                "done": 1 if done else 0,
                "starred": 1 if starred else 0,
                "due_date": due_date or None,
                "created_at": created_at or utc_now_iso(),
            }
        )

    def update_todo(
        self,
        todo_id: int,
        *,
        done: bool | None = None,
        starred: bool | None = None,
        text: str | None = None,
        due_date: str | None = None,
    ) -> bool:
        changes: dict[str, Any] = {}
        if done is not None:
            changes["done"] = 1 if done else 0
        if starred is not None:
            changes["starred"] = 1 if starred else 0
        if text is not None:
            changes["text"] = text
        if due_date is not None:
            changes["due_date"] = due_date
        return self.todos.update(todo_id, changes)

    def delete_todo(self, todo_id: int) -> bool:
        return self.todos.remove(todo_id)

    def get_todos_by_date(self, date: str) -> list[Row]:
        return self.todos.query({"date": date}, order_by="starred DESC, id")

    def get_all_todos(self) -> list[Row]:
        return self.todos.query(order_by="starred DESC, id")

    def get_starred_todos(self) -> list[Row]:
        return self.todos.query({"starred": 1}, order_by="id")

    def seed_default_todo(self) -> int | None:
        with self.todos.lock:
            if self.todos.load():
                return None
            return self.add_todo(date=local_date_string(), text=DEFAULT_TODO_TEXT, starred=True, due_date="")

    # notes

    def add_note(
        self,
        *,
        title: str,
        content: str | None = None,
        color: str | None = None,
        created_at: str | None = None,
    ) -> int:
        return self.notes.insert(
            {
                "title": title,
                "content": content,
                "color": color,
                "created_at": created_at or utc_now_iso(),
            }
        )

    def get_notes(self) -> list[Row]:
        return self.notes.query(order_by="created_at DESC")

    def get_note(self, note_id: int) -> Row | None:
        return self.notes.get(note_id)

    def update_note(self, note_id: int, **changes: Any) -> bool:
        allowed = {key: value for key, value in changes.items() if key in {"title", "content", "color"}}
        return self.notes.update(note_id, allowed)

    def delete_note(self, note_id: int) -> bool:
        return self.notes.remove(note_id)

    # settings

    def get_settings(self) -> list[Row]:
        return self.settings.load()

    def get_setting(self, key: str) -> str | None:
        row = self.settings.get(key)
        if row is None:
            return None
        return row.get("value")

    def set_setting(self, key: str, value: str) -> None:
        cleaned = (key or "").strip()
        if not cleaned:
            raise ValueError("setting key cannot be empty")
        with self.settings.editing() as rows:
            for row in rows:
                if row.get("key") == cleaned:
                    row["value"] = str(value)
                    return
            rows.append({"key": cleaned, "value": str(value)})

    # pomodoro settings

    def get_pomodoro_settings(self, defaults: PomodoroConfig | None = None) -> PomodoroConfig:
        """Persisted pomodoro lengths layered over the configured defaults."""

        base = defaults or PomodoroConfig()
        values: dict[str, int] = {}
        for name in POMODORO_KEYS:
            raw = self.get_setting(f"{POMODORO_PREFIX}{name}")
            try:
                parsed = int(raw) if raw is not None else None
            except ValueError:
                parsed = None
            values[name] = parsed if parsed is not None and parsed > 0 else getattr(base, name)
        return PomodoroConfig(**values)

    def set_pomodoro_settings(self, defaults: PomodoroConfig | None = None, **patch: int) -> PomodoroConfig:
        unknown = sorted(set(patch) - set(POMODORO_KEYS))
        if unknown:
            raise ValueError(f"unknown pomodoro settings: {', '.join(unknown)}")
        for name, value in patch.items():
            minutes = int(value)
            if minutes < 1:
                raise ValueError(f"{name} must be at least 1 minute")
            self.set_setting(f"{POMODORO_PREFIX}{name}", str(minutes))
        return self.get_pomodoro_settings(defaults)
