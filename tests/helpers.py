from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Callable

from focusbook.runtime.events import EventBus

_REAL_REPLACE = os.replace


def capturing_bus() -> tuple[EventBus, list[dict[str, Any]]]:
    """Bus with no log file whose published events land in the returned list."""

    bus = EventBus()
    events: list[dict[str, Any]] = []
    bus.subscribe(events.append)
    return bus, events


@dataclass
class RecordingNotifier:
    shown: list[tuple[str, str | None]] = field(default_factory=list)

    def show(self, title: str, body: str | None = None) -> None:
        self.shown.append((title, body))


def event_types(events: list[dict[str, Any]]) -> list[str]:
    return [str(event["type"]) for event in events]


def failing_replace(*suffixes: str) -> Callable[[Any, Any], None]:
    """os.replace stand-in that raises when the source path ends with one of `suffixes`."""

    def _replace(src: Any, dst: Any) -> None:
        if str(src).endswith(suffixes):
            raise OSError(f"simulated failure renaming {Path(src).name}")
        _REAL_REPLACE(src, dst)

    return _replace
