from __future__ import annotations

from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from focusbook.locks import TableLocks
from focusbook.store import StateFile
from focusbook.timer_db import TimerDatabase
from focusbook.timeutils import local_date_string
from tests.helpers import capturing_bus, event_types


def _open(root: Path) -> tuple[TimerDatabase, list[dict[str, object]]]:
    bus, events = capturing_bus()
    db = TimerDatabase(root, bus=bus, locks=TableLocks(), state=StateFile(root / "state.json", bus=bus))
    db.ensure_files()
    return db, events


class TestTimerUpserts(unittest.TestCase):
    def test_subject_keys_are_case_and_whitespace_insensitive(self) -> None:
        with TemporaryDirectory() as tmp:
            db, events = _open(Path(tmp))
            db.add_or_update_timer_data("Math", "2024-05-01", 30)
            entry = db.add_or_update_timer_data("  math ", "2024-05-01", 15)

            self.assertEqual("math", entry.subject)
            self.assertEqual(45, entry.total_minutes)
            self.assertEqual(1, len(db.get_all_timer_data()))
            self.assertEqual(["timer.entry.updated", "timer.entry.updated"], event_types(events))

    def test_defaults_to_today_and_one_minute(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            entry = db.add_or_update_timer_data("reading")
            self.assertEqual(local_date_string(), entry.date)
            self.assertEqual(1, entry.total_minutes)

    def test_negative_delta_never_drops_below_zero(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            db.add_or_update_timer_data("math", "2024-05-01", 10)
            self.assertEqual(4, db.add_or_update_timer_data("math", "2024-05-01", -6).total_minutes)
            self.assertEqual(0, db.add_or_update_timer_data("math", "2024-05-01", -50).total_minutes)
            self.assertEqual(0, db.add_or_update_timer_data("history", "2024-05-01", -5).total_minutes)

    def test_validation_happens_before_any_write(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            before = db.entries.path.read_text(encoding="utf-8")
            with self.assertRaises(ValueError):
                db.add_or_update_timer_data("   ", "2024-05-01", 5)
            with self.assertRaises(ValueError):
                db.add_or_update_timer_data("math", "05/01/2024", 5)
            with self.assertRaises(ValueError):
                db.add_or_update_timer_data("math", "2024-13-45", 5)
            with self.assertRaises(ValueError):
                db.add_or_update_timer_data("math", "2023-02-29", 5)
            self.assertEqual(before, db.entries.path.read_text(encoding="utf-8"))


class TestSubjectLifecycle(unittest.TestCase):
    def test_hidden_subjects_leave_lists_but_keep_data(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            db.add_or_update_timer_data("math", "2024-05-01", 10)
            db.add_or_update_timer_data("art", "2024-05-01", 10)

            self.assertTrue(db.hide_subject("Math"))
            self.assertFalse(db.hide_subject("math"))
            self.assertEqual(["art"], db.get_all_subjects())
            self.assertEqual(["math"], db.get_hidden_subjects())
            self.assertTrue(db.check_if_subject_exists("MATH"))

            self.assertTrue(db.unhide_subject("math"))
            self.assertFalse(db.unhide_subject("math"))
            self.assertEqual(["math", "art"], db.get_all_subjects())

    def test_delete_subject_completely(self) -> None:
        with TemporaryDirectory() as tmp:
            db, events = _open(Path(tmp))
            db.add_or_update_timer_data("math", "2024-05-01", 10)
            db.add_or_update_timer_data("math", "2024-05-02", 20)
            db.add_or_update_timer_data("art", "2024-05-02", 5)
            db.hide_subject("math")

            self.assertTrue(db.delete_subject_completely("Math"))
            self.assertFalse(db.check_if_subject_exists("math"))
            self.assertEqual([], db.get_hidden_subjects())
            self.assertEqual(["art"], [entry.subject for entry in db.get_all_timer_data()])
            self.assertFalse(db.delete_subject_completely("math"))
            self.assertIn("timer.subject.deleted", event_types(events))


class TestRangeAggregation(unittest.TestCase):
    def _seed(self, db: TimerDatabase) -> None:
        for subject, day, minutes in (
            ("math", "2024-04-30", 50),
            ("math", "2024-05-01", 30),
            ("art", "2024-05-01", 20),
            ("math", "2024-05-03", 10),
            ("art", "2024-05-04", 70),
            ("music", "2024-05-10", 15),
        ):
            db.add_or_update_timer_data(subject, day, minutes)

    def test_bounds_are_inclusive(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            self._seed(db)
            in_range = db.get_timer_data_by_date_range("2024-05-01", "2024-05-04")
            self.assertEqual(
                ["2024-05-01", "2024-05-01", "2024-05-03", "2024-05-04"],
                sorted(entry.date for entry in in_range),
            )
            self.assertEqual(6, len(db.get_timer_data_by_date_range()))
            self.assertEqual(1, len(db.get_timer_data_by_date_range(start_date="2024-05-05")))

    def test_totals_sorted_by_minutes(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            self._seed(db)
            totals = db.get_subject_totals_by_date_range("2024-05-01", "2024-05-31")
            self.assertEqual([("art", 90), ("math", 40), ("music", 15)], [(t.subject, t.total_minutes) for t in totals])

    def test_subject_date_rows_sum_to_subject_totals(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            self._seed(db)
            for start, end in (("2024-05-01", "2024-05-04"), (None, None), ("2024-04-01", "2024-04-30")):
                flat = db.get_subject_date_aggregated_data(start, end)
                for total in db.get_subject_totals_by_date_range(start, end):
                    summed = sum(row.total_minutes for row in flat if row.subject == total.subject)
                    self.assertEqual(total.total_minutes, summed)

    def test_daily_aggregation_groups_by_date_descending(self) -> None:
        with TemporaryDirectory() as tmp:
            db, _ = _open(Path(tmp))
            self._seed(db)
            days = db.get_daily_aggregated_data("2024-05-01", "2024-05-04")
            self.assertEqual(["2024-05-04", "2024-05-03", "2024-05-01"], [day.date for day in days])
            first_of_may = days[-1]
            self.assertEqual(50, first_of_may.total_minutes)
            self.assertEqual({"math", "art"}, set(first_of_may.subjects))

            flat = db.get_subject_date_aggregated_data("2024-05-01", "2024-05-04")
            self.assertEqual("2024-05-04", flat[0].date)


class TestCalendarRanges(unittest.TestCase):
    def test_week_month_year(self) -> None:
        db = TimerDatabase(Path("/nonexistent"), bus=capturing_bus()[0], locks=TableLocks())
        self.assertEqual(("2024-05-13", "2024-05-19"), db.current_week_range(date(2024, 5, 15)))
        self.assertEqual(("2024-05-13", "2024-05-19"), db.current_week_range(date(2024, 5, 19)))
        self.assertEqual(("2024-02-01", "2024-02-29"), db.current_month_range(date(2024, 2, 10)))
        self.assertEqual(("2023-02-01", "2023-02-28"), db.current_month_range(date(2023, 2, 10)))
        self.assertEqual(("2024-01-01", "2024-12-31"), db.current_year_range(date(2024, 7, 4)))


if __name__ == "__main__":
    unittest.main()
