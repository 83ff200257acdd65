from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
from unittest.mock import patch

from focusbook.locks import TableLocks
from focusbook.reminders import ReminderBook
from focusbook.store import StateFile, StoreWriteError
from focusbook.timeutils import parse_local_datetime_ms
from tests.helpers import RecordingNotifier, capturing_bus, event_types, failing_replace


NOW = 1_700_000_000_000


def _open(root: Path):
    bus, events = capturing_bus()
    book = ReminderBook(root, bus=bus, locks=TableLocks(), state=StateFile(root / "state.json", bus=bus))
    book.ensure_files()
    return book, events


class _BrokenNotifier:
    def show(self, title: str, body: str | None = None) -> None:
        raise RuntimeError("no display")


class TestReminderBook(unittest.TestCase):
    def test_add_normalizes_and_keeps_list_sorted(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            book.add_reminder("late", "Late", None, NOW + 5000)
            book.add_reminder("early", "Early", "body", str(NOW + 1000))
            local = book.add_reminder("local", "Local", None, "2024-02-03 09:15")

            self.assertEqual(parse_local_datetime_ms("2024-02-03", "09:15"), local.timestamp)
            self.assertEqual(["early", "late", "local"], [item.id for item in book.list_reminders()])
            self.assertEqual("body", book.list_reminders()[0].body)

    def test_add_rejects_unparseable_timestamp_without_writing(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            before = book.table.path.read_text(encoding="utf-8")
            with self.assertRaises(ValueError):
                book.add_reminder("x", "Broken", None, "whenever")
            self.assertEqual(before, book.table.path.read_text(encoding="utf-8"))

    def test_add_rejects_epoch_past_the_calendar_without_writing(self) -> None:
        with TemporaryDirectory() as tmp:
            book, events = _open(Path(tmp))
            before = book.table.path.read_text(encoding="utf-8")
            with self.assertRaises(ValueError):
                book.add_reminder(None, "Too far", None, "99999999999999999999")
            self.assertEqual(before, book.table.path.read_text(encoding="utf-8"))
            self.assertEqual([], book.list_reminders())
            self.assertNotIn("reminder.added", event_types(events))

    def test_add_generates_an_id_when_missing(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            item = book.add_reminder(None, "Stretch", None, NOW)
            self.assertTrue(item.id.startswith("r_"))

    def test_remove_reports_unknown_ids(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            book.add_reminder("a", "A", None, NOW)
            self.assertTrue(book.remove_reminder("a"))
            self.assertFalse(book.remove_reminder("a"))
            self.assertEqual([], book.list_reminders())


class TestReminderTick(unittest.TestCase):
    def test_due_reminder_fires_exactly_once(self) -> None:
        with TemporaryDirectory() as tmp:
            book, events = _open(Path(tmp))
            notifier = RecordingNotifier()
            book.add_reminder("due", "Drink water", "now", NOW - 1)
            book.add_reminder("exact", "Exactly now", None, NOW)
            book.add_reminder("later", "Later", None, NOW + 60_000)

            first = book.tick(notifier, now=NOW)
            second = book.tick(notifier, now=NOW)

            self.assertEqual(["due", "exact"], [item.id for item in first.fired])
            self.assertEqual((), second.fired)
            self.assertEqual([("Drink water", "now"), ("Exactly now", None)], notifier.shown)
            self.assertEqual(["later"], [item.id for item in book.list_reminders()])
            self.assertEqual(2, event_types(events).count("reminder.fired"))

    def test_ties_fire_in_stored_order(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            book.add_reminder("a", "A", None, 100)
            book.add_reminder("b", "B", None, 50)
            book.add_reminder("c", "C", None, 100)

            result = book.tick(RecordingNotifier(), now=NOW)
            self.assertEqual(["b", "a", "c"], [item.id for item in result.fired])

    def test_malformed_timestamps_are_dropped_and_never_fired(self) -> None:
        with TemporaryDirectory() as tmp:
            book, events = _open(Path(tmp))
            payload = [
                {"id": "bad", "title": "Bad", "timestamp": "someday"},
                {"id": "huge", "title": "Huge", "timestamp": 10**20},
                {"id": "good", "title": "Good", "timestamp": NOW - 10},
                {"id": "future", "title": "Future", "timestamp": "2999-01-01 08:00"},
            ]
            book.table.path.write_text(json.dumps(payload), encoding="utf-8")
            notifier = RecordingNotifier()

            result = book.tick(notifier, now=NOW)

            self.assertEqual(2, result.dropped)
            self.assertEqual([("Good", None)], notifier.shown)
            self.assertEqual(["future"], [item.id for item in book.list_reminders()])
            stored = json.loads(book.table.path.read_text(encoding="utf-8"))
            self.assertEqual(["future"], [item["id"] for item in stored])
            self.assertIsInstance(stored[0]["timestamp"], int)
            self.assertIn("reminder.dropped", event_types(events))

    def test_failed_write_fires_nothing(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            book.add_reminder("due", "Due", None, NOW - 1)
            notifier = RecordingNotifier()

            with patch("focusbook.store.os.replace", side_effect=failing_replace(".tmp")):
                with self.assertRaises(StoreWriteError):
                    book.tick(notifier, now=NOW)

            self.assertEqual([], notifier.shown)
            self.assertEqual(["due"], [item.id for item in book.list_reminders()])

    def test_notifier_failure_still_consumes_the_reminder(self) -> None:
        with TemporaryDirectory() as tmp:
            book, events = _open(Path(tmp))
            book.add_reminder("due", "Due", None, NOW - 1)

            result = book.tick(_BrokenNotifier(), now=NOW)

            self.assertEqual((), result.fired)
            self.assertEqual([], book.list_reminders())
            self.assertIn("reminder.notify.failed", event_types(events))

    def test_nothing_due_does_not_rewrite(self) -> None:
        with TemporaryDirectory() as tmp:
            book, _ = _open(Path(tmp))
            book.add_reminder("later", "Later", None, NOW + 1)
            with patch("focusbook.store.atomic_write_text") as writer:
                result = book.tick(RecordingNotifier(), now=NOW)
            writer.assert_not_called()
            self.assertEqual(1, result.remaining)


if __name__ == "__main__":
    unittest.main()
