from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from focusbook.config import FocusbookConfig, explain_focusbook_toml, load_focusbook_toml, set_config_value


class TestFocusbookToml(unittest.TestCase):
    def test_missing_file_yields_defaults(self) -> None:
        with TemporaryDirectory() as tmp:
            cfg, warning = load_focusbook_toml(Path(tmp) / "focusbook.toml")
            self.assertEqual(FocusbookConfig(), cfg)
            self.assertEqual("", warning)
            self.assertEqual(25, cfg.pomodoro.minutes_per_pomodoro)
            self.assertEqual(5.0, cfg.reminders.poll_interval_s)

    def test_parse_failure_warns_and_uses_defaults(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "focusbook.toml"
            path.write_text("[pomodoro\nminutes_per_pomodoro = ", encoding="utf-8")
            cfg, warning = load_focusbook_toml(path)
            self.assertEqual(FocusbookConfig(), cfg)
            self.assertIn("parse failed", warning)

    def test_values_are_coerced_and_clamped(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "focusbook.toml"
            path.write_text(
                "\n".join(
                    [
                        "[pomodoro]",
                        "minutes_per_pomodoro = 0",
                        'minutes_per_break = "7"',
                        "",
                        "[reminders]",
                        "poll_interval_s = 0.1",
                        'enabled = "off"',
                        "",
                        "[logging]",
                        "console = true",
                    ]
                ),
                encoding="utf-8",
            )
            cfg, warning = load_focusbook_toml(path)
            self.assertEqual("", warning)
            self.assertEqual(1, cfg.pomodoro.minutes_per_pomodoro)
            self.assertEqual(7, cfg.pomodoro.minutes_per_break)
            self.assertEqual(15, cfg.pomodoro.minutes_per_long_break)
            self.assertEqual(0.5, cfg.reminders.poll_interval_s)
            self.assertFalse(cfg.reminders.enabled)
            self.assertTrue(cfg.logging.console)
            self.assertTrue(cfg.logging.events)

    def test_set_config_value_creates_and_updates(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "focusbook.toml"
            ok, summary = set_config_value(path, "pomodoro", "minutes_per_break", "10")
            self.assertTrue(ok)
            self.assertIn("new file", summary)

            ok, _ = set_config_value(path, "pomodoro", "minutes_per_break", "12")
            self.assertTrue(ok)
            ok, _ = set_config_value(path, "reminders", "enabled", "false")
            self.assertTrue(ok)

            cfg, _ = load_focusbook_toml(path)
            self.assertEqual(12, cfg.pomodoro.minutes_per_break)
            self.assertFalse(cfg.reminders.enabled)
            self.assertEqual(1, path.read_text(encoding="utf-8").count("minutes_per_break"))

    def test_set_config_value_rejects_bad_input(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "focusbook.toml"
            ok, summary = set_config_value(path, "pomodoro", "minutes_per_break", "ten minutes")
            self.assertFalse(ok)
            self.assertIn("invalid TOML value", summary)
            ok, _ = set_config_value(path, "Pomodoro!", "x", "1")
            self.assertFalse(ok)
            self.assertFalse(path.exists())

    def test_explain_lists_current_values(self) -> None:
        text = explain_focusbook_toml(FocusbookConfig(), path=Path("/data/focusbook.toml"))
        self.assertIn("/data/focusbook.toml", text)
        self.assertIn("minutes_per_pomodoro", text)
        self.assertIn("(current: 25)", text)
        self.assertIn("[reminders]", text)


if __name__ == "__main__":
    unittest.main()
