from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .runtime.events import EventBus
from .store import StateFile, Table


SCHEMA_VERSION_KEY = "schema_version"

Migration = Callable[[], None]


@dataclass(frozen=True)
class MigrationReport:
    start_version: int
    final_version: int
    applied: tuple[int, ...]
    failed_version: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.failed_version is None


class MigrationRunner:
    """Apply versioned transforms once, in ascending order, before the tables are used.

    The persisted version moves only after a transform's writes succeed, so a
    crash mid-transform re-runs that migration on the next start. Transforms
    must therefore be re-appliable.
    """

    def __init__(self, state: StateFile, migrations: dict[int, Migration], *, bus: EventBus) -> None:
        for version in migrations:
            if not isinstance(version, int) or version < 1:
                raise ValueError(f"migration versions must be positive integers: {version!r}")
        self.state = state
        self.migrations = dict(migrations)
        self.bus = bus

    def current_version(self) -> int:
        return max(0, self.state.get_int(SCHEMA_VERSION_KEY, 0))

    def latest_version(self) -> int:
        return max(self.migrations, default=0)

    def pending(self) -> list[int]:
        current = self.current_version()
        return sorted(version for version in self.migrations if version > current)

    def run(self) -> MigrationReport:
        start = self.current_version()
        applied: list[int] = []
        for version in self.pending():
            try:
                self.migrations[version]()
                self.state.set(SCHEMA_VERSION_KEY, version)
            except Exception as exc:  # noqa: BLE001
                self.bus.publish_event(
                    "migration.failed",
                    f"migration {version} failed: {exc}",
                    severity="error",
                    source="migrations",
                    metadata={"version": version, "current": self.current_version()},
                )
                return MigrationReport(
                    start_version=start,
                    final_version=self.current_version(),
                    applied=tuple(applied),
                    failed_version=version,
                    error=str(exc),
                )
            applied.append(version)
            self.bus.publish_event(
                "migration.applied",
                f"applied migration {version}",
                source="migrations",
                metadata={"version": version},
            )
        return MigrationReport(start_version=start, final_version=self.current_version(), applied=tuple(applied))


def strip_todo_subject_links(todos: Table) -> Migration:
    """v1: todos no longer belong to subjects; drop the old link columns."""

    def _migrate() -> None:
        with todos.editing() as rows:
            for row in rows:
                row.pop("subject_id", None)
                row.pop("category", None)

    return _migrate


def default_migrations(*, todos: Table) -> dict[int, Migration]:
    return {
        1: strip_todo_subject_links(todos),
    }
