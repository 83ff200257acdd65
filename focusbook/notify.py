from __future__ import annotations

import sys
from typing import Protocol, TextIO

from .timeutils import from_epoch_to_local_datetime, now_ms


class Notifier(Protocol):
    def show(self, title: str, body: str | None = None) -> None:
        ...


class ConsoleNotifier:
    """Prints reminders to a stream; the default delivery for `focusbook run`."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def show(self, title: str, body: str | None = None) -> None:
        stream = self._stream or sys.stdout
        stamp = from_epoch_to_local_datetime(now_ms()).time
        line = f"[{stamp}] reminder: {title}"
        if body:
            line = f"{line} - {body}"
        stream.write(line + "\n")
        stream.flush()
