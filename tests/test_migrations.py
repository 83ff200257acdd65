from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from focusbook.crud import TODOS
from focusbook.locks import TableLocks
from focusbook.migrations import MigrationRunner, default_migrations
from focusbook.store import StateFile, Table
from tests.helpers import capturing_bus, event_types


LEGACY_TODOS = (
    "id,date,text,done,starred,due_date,created_at,subject_id,category\n"
    "1,2024-01-01,read chapter 3,0,1,,,4,math\n"
    "2,2024-01-02,write essay,1,0,2024-01-09,,,\n"
)


class TestMigrationRunner(unittest.TestCase):
    def _setup(self, root: Path):
        bus, events = capturing_bus()
        state = StateFile(root / "state.json", bus=bus)
        todos = Table(TODOS, root, bus=bus, locks=TableLocks(), state=state)
        return bus, events, state, todos

    def test_v1_strips_subject_links_from_todos(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            bus, events, state, todos = self._setup(root)
            todos.path.write_text(LEGACY_TODOS, encoding="utf-8")

            report = MigrationRunner(state, default_migrations(todos=todos), bus=bus).run()

            self.assertTrue(report.ok)
            self.assertEqual((0, 1), (report.start_version, report.final_version))
            self.assertEqual((1,), report.applied)
            self.assertEqual(1, state.get_int("schema_version"))
            header = todos.path.read_text(encoding="utf-8").splitlines()[0]
            self.assertNotIn("subject_id", header)
            self.assertNotIn("category", header)
            self.assertEqual(["read chapter 3", "write essay"], [row["text"] for row in todos.load()])
            self.assertIn("migration.applied", event_types(events))

    def test_running_twice_is_a_no_op(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            bus, _, state, todos = self._setup(root)
            todos.path.write_text(LEGACY_TODOS, encoding="utf-8")
            MigrationRunner(state, default_migrations(todos=todos), bus=bus).run()
            after_first = todos.path.read_text(encoding="utf-8")

            report = MigrationRunner(state, default_migrations(todos=todos), bus=bus).run()

            self.assertEqual((), report.applied)
            self.assertEqual(1, report.final_version)
            self.assertEqual(after_first, todos.path.read_text(encoding="utf-8"))

    def test_failed_migration_leaves_version_and_stops(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            bus, events, state, _ = self._setup(root)
            calls: list[int] = []

            def _boom() -> None:
                raise RuntimeError("transform exploded")

            migrations = {1: lambda: calls.append(1), 2: _boom, 3: lambda: calls.append(3)}
            report = MigrationRunner(state, migrations, bus=bus).run()

            self.assertFalse(report.ok)
            self.assertEqual(2, report.failed_version)
            self.assertEqual(1, report.final_version)
            self.assertIn("transform exploded", report.error)
            self.assertEqual([1], calls)
            self.assertEqual(1, state.get_int("schema_version"))
            failed = [event for event in events if event["type"] == "migration.failed"]
            self.assertEqual("error", failed[0]["severity"])

            migrations[2] = lambda: calls.append(2)
            retry = MigrationRunner(state, migrations, bus=bus).run()
            self.assertTrue(retry.ok)
            self.assertEqual((2, 3), retry.applied)
            self.assertEqual([1, 2, 3], calls)

    def test_rejects_non_positive_versions(self) -> None:
        with TemporaryDirectory() as tmp:
            bus, _, state, _ = self._setup(Path(tmp))
            with self.assertRaises(ValueError):
                MigrationRunner(state, {0: lambda: None}, bus=bus)


if __name__ == "__main__":
    unittest.main()
