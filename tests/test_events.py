from __future__ import annotations

import io
import json
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from focusbook.runtime.events import MAX_PENDING_EVENTS, EventBus


class TestEventBus(unittest.TestCase):
    def test_publish_flushes_pending_events_when_log_path_is_set(self) -> None:
        with TemporaryDirectory() as tmp:
            event_log = Path(tmp) / "logs" / "events.jsonl"
            captured: list[dict[str, object]] = []

            bus = EventBus()
            bus.subscribe(captured.append)
            event = bus.publish_event("timer.entry.updated", "math +5", source="timer", metadata={"delta": 5})

            self.assertEqual(1, len(captured))
            self.assertEqual("timer.entry.updated", captured[0]["type"])
            self.assertEqual(0, bus.events_written)
            self.assertTrue(str(event["id"]).startswith("evt-"))

            bus.set_log_path(event_log)
            self.assertEqual(1, bus.events_written)
            line = json.loads(event_log.read_text(encoding="utf-8").splitlines()[0])
            self.assertEqual("timer", line["source"])
            self.assertEqual({"delta": 5}, line["metadata"])

    def test_pending_buffer_is_bounded(self) -> None:
        bus = EventBus()
        for index in range(MAX_PENDING_EVENTS + 25):
            bus.publish_event("test.event", str(index))
        self.assertEqual(MAX_PENDING_EVENTS, bus.discard_pending())
        self.assertEqual(0, bus.discard_pending())

    def test_warnings_are_mirrored_to_runtime_log_and_console(self) -> None:
        with TemporaryDirectory() as tmp:
            runtime_log = Path(tmp) / "runtime.log"
            console = io.StringIO()
            bus = EventBus(runtime_log_path=runtime_log, console=console)

            bus.publish_event("session.started", "quiet")
            bus.publish_event("store.row.skipped", "todos: skipped malformed row 3", severity="warn")

            text = runtime_log.read_text(encoding="utf-8")
            self.assertNotIn("quiet", text)
            self.assertIn("[warn] store.row.skipped: todos: skipped malformed row 3", text)
            self.assertEqual("[warn] store.row.skipped: todos: skipped malformed row 3\n", console.getvalue())
            self.assertEqual(1, bus.counts["warn"])

    def test_unknown_severity_and_failing_subscribers(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def _explode(event: dict[str, object]) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(_explode)
        unsubscribe = bus.subscribe(lambda event: seen.append(str(event["severity"])))
        event = bus.publish_event("x", "y", severity="LOUD")
        self.assertEqual("info", event["severity"])
        self.assertEqual(["info"], seen)

        unsubscribe()
        bus.publish_event("x", "z")
        self.assertEqual(["info"], seen)


if __name__ == "__main__":
    unittest.main()
