from __future__ import annotations

from contextlib import contextmanager, suppress
import csv
from dataclasses import dataclass
import enum
import io
import json
import math
import os
from pathlib import Path
import threading
from typing import Any, Callable, Iterator

from .locks import TableLocks
from .runtime.events import EventBus
from .timeutils import normalize_timestamp


TMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".bak"
FIELD_KINDS = {"str", "int", "bool", "timestamp", "epoch"}

Row = dict[str, Any]


class StoreWriteError(OSError):
    """A table write failed; the previous on-disk generation is still in place."""


class StoreRestoreError(StoreWriteError):
    """A table write failed and the backup could not be put back."""


class RowParseError(ValueError):
    pass


@dataclass(frozen=True)
class Field:
    name: str
    kind: str = "str"
    required: bool = True
    default: Any = None

    def __post_init__(self) -> None:
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"unknown field kind: {self.kind}")


@dataclass(frozen=True)
class TableSchema:
    name: str
    filename: str
    fields: tuple[Field, ...]
    id_field: str | None = "id"
    id_kind: str = "int"
    codec: str = "csv"

    @property
    def columns(self) -> list[str]:
        return [item.name for item in self.fields]

    def field(self, name: str) -> Field | None:
        for item in self.fields:
            if item.name == name:
                return item
        return None


# --- row coercion ------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_value(column: Field, value: Any) -> Any:
    if _is_blank(value):
        if column.kind == "str" and isinstance(value, str) and column.required:
            return value
        if column.default is not None:
            return column.default
        if not column.required:
            return None
        raise RowParseError(f"{column.name}: missing value")

    if column.kind == "str":
        return str(value)
    if column.kind == "int":
        return _coerce_int(column.name, value)
    if column.kind == "bool":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"1", "true", "yes"}:
                return 1
            if lowered in {"0", "false", "no"}:
                return 0
            raise RowParseError(f"{column.name}: not a boolean: {value!r}")
        return 1 if value else 0
    if column.kind == "timestamp":
        text = str(value).strip()
        if normalize_timestamp(text) is None:
            raise RowParseError(f"{column.name}: not a timestamp: {value!r}")
        return text
    if column.kind == "epoch":
        parsed = normalize_timestamp(value)
        if parsed is None:
            raise RowParseError(f"{column.name}: not a timestamp: {value!r}")
        return parsed
    raise RowParseError(f"{column.name}: unknown kind {column.kind}")


def _coerce_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, float):
            number = value
        else:
            text = str(value).strip()
            try:
                return int(text)
            except ValueError:
                number = float(text)
    except (TypeError, ValueError) as exc:
        raise RowParseError(f"{name}: not an integer: {value!r}") from exc
    if not math.isfinite(number):
        raise RowParseError(f"{name}: not finite: {value!r}")
    return int(math.floor(number))


def parse_row(schema: TableSchema, raw: dict[str, Any]) -> Row:
    """Coerce one raw record; columns the schema does not know pass through as-is."""

    row: Row = {}
    for column in schema.fields:
        row[column.name] = coerce_value(column, raw.get(column.name))
    for key, value in raw.items():
        if key is None or key in row:
            continue
        row[str(key)] = value
    return row


# --- codecs ------------------------------------------------------------------


class CsvCodec:
    extension = ".csv"

    def decode(self, text: str) -> list[dict[str, Any]]:
        reader = csv.DictReader(io.StringIO(text))
        records: list[dict[str, Any]] = []
        for raw in reader:
            if not any((value or "").strip() for value in raw.values() if isinstance(value, str)):
                continue
            records.append(dict(raw))
        return records

    def encode(self, rows: list[Row], columns: list[str]) -> str:
        header = list(columns)
        for row in rows:
            for key in row:
                if key not in header:
                    header.append(key)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=header, lineterminator="\n", extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({key: _csv_cell(row.get(key)) for key in header})
        return buffer.getvalue()

    def empty(self, columns: list[str]) -> str:
        return ",".join(columns) + "\n"


class JsonCodec:
    extension = ".json"

    def decode(self, text: str) -> list[dict[str, Any]]:
        if not text.strip():
            return []
        payload = json.loads(text)
        if not isinstance(payload, list):
            raise ValueError("table payload is not a list")
        return [item for item in payload if isinstance(item, dict)]

    def encode(self, rows: list[Row], columns: list[str]) -> str:
        return json.dumps(rows, indent=2, sort_keys=True, ensure_ascii=True) + "\n"

    def empty(self, columns: list[str]) -> str:
        return "[]\n"


CODECS: dict[str, Any] = {"csv": CsvCodec(), "json": JsonCodec()}


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


# --- atomic write ------------------------------------------------------------


class WriteStage(enum.Enum):
    PRIMARY = "primary"
    TEMP_WRITTEN = "temp-written"
    BACKUP_MADE = "backup-made"
    RENAMED = "renamed"


def sibling_paths(path: Path) -> tuple[Path, Path]:
    return path.with_name(path.name + TMP_SUFFIX), path.with_name(path.name + BACKUP_SUFFIX)


def atomic_write_text(
    path: Path,
    text: str,
    *,
    bus: EventBus | None = None,
    label: str = "",
) -> WriteStage:
    """Replace `path` with `text` via temp file, backup rename, final rename.

    On failure the stage reached decides the rollback: once the backup exists
    it is renamed back into place. If that restore fails too a
    StoreRestoreError is raised after a critical event.
    """

    tmp_path, backup_path = sibling_paths(path)
    name = label or path.name
    stage = WriteStage.PRIMARY
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp_path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        stage = WriteStage.TEMP_WRITTEN
        if path.exists():
            os.replace(path, backup_path)
            stage = WriteStage.BACKUP_MADE
        os.replace(tmp_path, path)
        stage = WriteStage.RENAMED
        return stage
    except OSError as exc:
        _rollback(path, tmp_path, backup_path, stage, bus=bus, label=name)
        _report(
            bus,
            "store.write.failed",
            f"write failed for {name} at stage {stage.value}: {exc}",
            severity="error",
            metadata={"table": name, "stage": stage.value},
        )
        raise StoreWriteError(f"write failed for {name}: {exc}") from exc


def _rollback(
    path: Path,
    tmp_path: Path,
    backup_path: Path,
    stage: WriteStage,
    *,
    bus: EventBus | None,
    label: str,
) -> None:
    try:
        if tmp_path.exists():
            tmp_path.unlink()
    except OSError:
        pass
    if stage is not WriteStage.BACKUP_MADE:
        return
    try:
        os.replace(backup_path, path)
    except OSError as restore_exc:
        _report(
            bus,
            "store.restore.failed",
            f"FATAL: could not restore backup for {label}: {restore_exc}",
            severity="critical",
            metadata={"table": label, "backup": str(backup_path)},
        )
        raise StoreRestoreError(f"could not restore backup for {label}: {restore_exc}") from restore_exc


def _report(bus: EventBus | None, event_type: str, message: str, *, severity: str, metadata: dict[str, Any]) -> None:
    # A failing event log never replaces the store error being raised.
    if bus is None:
        return
    with suppress(OSError):
        bus.publish_event(event_type, message, severity=severity, source="store", metadata=metadata)


# --- scalar state ------------------------------------------------------------


class StateFile:
    """Small JSON object persisted alongside the tables (schema version, id watermarks)."""

    def __init__(self, path: Path, *, bus: EventBus | None = None) -> None:
        self.path = path
        self._bus = bus
        self._lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        with self._lock:
            for candidate in (self.path, sibling_paths(self.path)[1]):
                if not candidate.exists():
                    continue
                try:
                    raw = json.loads(candidate.read_text(encoding="utf-8"))
                except (OSError, ValueError):
                    continue
                if isinstance(raw, dict):
                    return raw
            return {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, default) or 0)
        except (TypeError, ValueError):
            return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            payload = self.load()
            payload[key] = value
            self._write(payload)

    def update_mapping(self, key: str, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        with self._lock:
            payload = self.load()
            mapping = payload.get(key)
            if not isinstance(mapping, dict):
                mapping = {}
            mutate(mapping)
            payload[key] = mapping
            self._write(payload)
            return mapping

    def _write(self, payload: dict[str, Any]) -> None:
        text = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=True) + "\n"
        atomic_write_text(self.path, text, bus=self._bus, label=self.path.name)


# --- tables ------------------------------------------------------------------


class Table:
    """A named flat collection of typed records persisted as one file.

    Every mutation is a whole-table read-modify-write run under the table's
    lock from the shared `TableLocks` registry.
    """

    def __init__(
        self,
        schema: TableSchema,
        root: Path,
        *,
        bus: EventBus,
        locks: TableLocks,
        state: StateFile | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.schema = schema
        self.path = root / schema.filename
        self.tmp_path, self.backup_path = sibling_paths(self.path)
        self._bus = bus
        self._lock = locks.for_table(schema.name)
        self._state = state
        self._codec = CODECS[schema.codec]
        self._id_factory = id_factory
        self.skipped_rows = 0

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def lock(self):
        return self._lock

    def ensure_exists(self) -> None:
        with self._lock:
            if self.path.exists():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(self._codec.empty(self.schema.columns), encoding="utf-8")

    def load(self) -> list[Row]:
        with self._lock:
            records = self._read_records()
            self.skipped_rows = 0
            if records is None:
                return []
            rows: list[Row] = []
            for index, raw in enumerate(records):
                try:
                    rows.append(parse_row(self.schema, raw))
                except RowParseError as exc:
                    self.skipped_rows += 1
                    self._bus.publish_event(
                        "store.row.skipped",
                        f"{self.name}: skipped malformed row {index + 1}: {exc}",
                        severity="warn",
                        source="store",
                        metadata={"table": self.name, "row": index + 1},
                    )
            return rows

    def save(self, rows: list[Row]) -> None:
        with self._lock:
            text = self._codec.encode(rows, self.schema.columns)
            atomic_write_text(self.path, text, bus=self._bus, label=self.schema.filename)
            self._bump_watermark(rows)

    @contextmanager
    def editing(self) -> Iterator[list[Row]]:
        """Yield the loaded rows for in-place edits; rewrite the table if they changed."""

        with self._lock:
            rows = self.load()
            before = [dict(row) for row in rows]
            yield rows
            if rows != before:
                self.save(rows)

    def query(
        self,
        where: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        rows = self.load()
        if where:
            rows = [row for row in rows if _matches(row, where)]
        if order_by:
            rows = sort_rows(rows, order_by)
        if limit is not None and limit > 0:
            rows = rows[:limit]
        return rows

    def get(self, row_id: Any) -> Row | None:
        id_field = self._require_id_field()
        for row in self.load():
            if _same_id(row.get(id_field), row_id):
                return row
        return None

    def insert(self, row: Row) -> Any:
        with self._lock:
            rows = self.load()
            candidate = dict(row)
            id_field = self.schema.id_field
            if id_field is not None:
                if self.schema.id_kind == "int":
                    candidate[id_field] = self.next_id(rows)
                elif _is_blank(candidate.get(id_field)):
                    if self._id_factory is None:
                        raise ValueError(f"{self.name}: {id_field} is required")
                    candidate[id_field] = self._id_factory()
            parsed = self._parse_for_write(candidate)
            rows.append(parsed)
            self.save(rows)
            return parsed.get(id_field) if id_field is not None else None

    def update(self, row_id: Any, fields: dict[str, Any]) -> bool:
        id_field = self._require_id_field()
        with self._lock:
            rows = self.load()
            for index, row in enumerate(rows):
                if not _same_id(row.get(id_field), row_id):
                    continue
                merged = {**row, **{key: value for key, value in fields.items() if key != id_field}}
                rows[index] = self._parse_for_write(merged)
                self.save(rows)
                return True
            return False

    def remove(self, row_id: Any) -> bool:
        id_field = self._require_id_field()
        with self._lock:
            rows = self.load()
            kept = [row for row in rows if not _same_id(row.get(id_field), row_id)]
            if len(kept) == len(rows):
                return False
            self.save(kept)
            return True

    def _parse_for_write(self, row: Row) -> Row:
        try:
            return parse_row(self.schema, row)
        except RowParseError as exc:
            raise ValueError(f"{self.name}: {exc}") from exc

    def _require_id_field(self) -> str:
        if self.schema.id_field is None:
            raise ValueError(f"{self.name} has no id field")
        return self.schema.id_field

    def next_id(self, rows: list[Row]) -> int:
        """max(existing ids) + 1, never at or below the persisted high-water mark."""

        id_field = self.schema.id_field or "id"
        highest = 0
        for row in rows:
            value = row.get(id_field)
            if isinstance(value, int) and value > highest:
                highest = value
        if self._state is not None:
            watermark = self._state.get("id_watermarks", {})
            if isinstance(watermark, dict):
                try:
                    highest = max(highest, int(watermark.get(self.name) or 0))
                except (TypeError, ValueError):
                    pass
        return highest + 1

    def _bump_watermark(self, rows: list[Row]) -> None:
        if self._state is None or self.schema.id_field is None or self.schema.id_kind != "int":
            return
        highest = max((row.get(self.schema.id_field) or 0 for row in rows), default=0)
        if not isinstance(highest, int) or highest <= 0:
            return
        current = self._state.get("id_watermarks", {})
        if isinstance(current, dict) and int(current.get(self.name) or 0) >= highest:
            return

        def _raise(mapping: dict[str, Any]) -> None:
            mapping[self.name] = max(int(mapping.get(self.name) or 0), highest)

        self._state.update_mapping("id_watermarks", _raise)

    def _read_records(self) -> list[dict[str, Any]] | None:
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                records = self._codec.decode(candidate.read_text(encoding="utf-8"))
            except (OSError, ValueError, csv.Error) as exc:
                self._bus.publish_event(
                    "store.read.failed",
                    f"could not read {candidate.name}: {exc}",
                    severity="error",
                    source="store",
                    metadata={"table": self.name, "path": str(candidate)},
                )
                continue
            if candidate == self.backup_path:
                self._bus.publish_event(
                    "store.read.recovered",
                    f"{self.name}: loaded from backup {candidate.name}",
                    severity="warn",
                    source="store",
                    metadata={"table": self.name},
                )
            return records
        return None


def _matches(row: Row, where: dict[str, Any]) -> bool:
    for key, expected in where.items():
        actual = row.get(key)
        if actual == expected:
            continue
        if actual is not None and expected is not None and str(actual) == str(expected):
            continue
        return False
    return True


def _same_id(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    return actual == expected or str(actual) == str(expected)


def sort_rows(rows: list[Row], order_by: str) -> list[Row]:
    """Sort by a SQL-ish column such as "starred DESC, id"."""

    keys: list[tuple[str, bool]] = []
    for part in order_by.split(","):
        tokens = part.split()
        if not tokens:
            continue
        descending = len(tokens) > 1 and tokens[1].upper() == "DESC"
        keys.append((tokens[0], descending))
    ordered = list(rows)
    for name, descending in reversed(keys):
        ordered.sort(key=lambda row: _sort_key(row.get(name)), reverse=descending)
    return ordered


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, "")
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))
