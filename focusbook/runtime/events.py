from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Awaitable, Callable
import contextlib
import inspect
import json
import secrets
from pathlib import Path
from typing import Any, TextIO

from ..timeutils import now_ms, utc_now_iso

EventHandler = Callable[[dict[str, Any]], Any]

SEVERITIES = ("info", "warn", "error", "critical")
MAX_PENDING_EVENTS = 500


def new_event_id() -> str:
    return f"evt-{now_ms()}-{secrets.token_hex(4)}"


def append_runtime_log(log_file: Path, *, level: str, message: str) -> None:
    normalized_message = " ".join(message.split())
    line = f"{utc_now_iso()} [{level.lower()}] {normalized_message}\n"
    with contextlib.suppress(Exception):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)


def severity_rank(severity: str) -> int:
    try:
        return SEVERITIES.index(severity)
    except ValueError:
        return 0


class EventBus:
    """Process-wide pub/sub for store, timer, session and reminder events.

    Each event is appended to `events.jsonl` once a log path is set; until
    then the newest MAX_PENDING_EVENTS are held and flushed by
    `set_log_path`. Warn-and-above events are also mirrored to the runtime
    log and, when a console stream is attached, echoed there.
    """

    def __init__(
        self,
        log_path: Path | None = None,
        *,
        runtime_log_path: Path | None = None,
        console: TextIO | None = None,
    ) -> None:
        self._log_path = log_path
        self._runtime_log_path = runtime_log_path
        self._console = console
        self._pending: deque[dict[str, Any]] = deque(maxlen=MAX_PENDING_EVENTS)
        self._handlers: list[EventHandler] = []
        self.events_written = 0
        self.counts: Counter[str] = Counter()
        if self._log_path is not None:
            self._touch_log()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def set_log_path(self, path: Path) -> None:
        self._log_path = path
        self._touch_log()
        while self._pending:
            self._write_jsonl(self._pending.popleft())

    def discard_pending(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        return dropped

    def set_runtime_log_path(self, path: Path | None) -> None:
        self._runtime_log_path = path

    def set_console(self, stream: TextIO | None) -> None:
        self._console = stream

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: dict[str, Any]) -> dict[str, Any]:
        normalized = _normalize_event(event)
        self.counts[normalized["severity"]] += 1
        if self._log_path is None:
            self._pending.append(normalized)
        else:
            self._write_jsonl(normalized)
        if severity_rank(normalized["severity"]) >= severity_rank("warn"):
            self._mirror(normalized)
        self._dispatch(normalized)
        return normalized

    def publish_event(
        self,
        event_type: str,
        message: str,
        *,
        severity: str = "info",
        source: str = "focusbook",
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.publish(
            {
                "type": event_type,
                "severity": severity,
                "source": source,
                "message": message,
                "metadata": metadata or {},
            }
        )

    def _touch_log(self) -> None:
        if self._log_path is None:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path.touch(exist_ok=True)

    def _write_jsonl(self, event: dict[str, Any]) -> None:
        if self._log_path is None:
            return
        with self._log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, sort_keys=True, ensure_ascii=True, default=str))
            handle.write("\n")
        self.events_written += 1

    def _mirror(self, event: dict[str, Any]) -> None:
        line = f"{event['type']}: {event['message']}"
        if self._runtime_log_path is not None:
            append_runtime_log(self._runtime_log_path, level=event["severity"], message=line)
        if self._console is not None:
            with contextlib.suppress(Exception):
                self._console.write(f"[{event['severity']}] {line}\n")

    def _dispatch(self, event: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception:
                continue
            if inspect.isawaitable(result):
                _schedule_async_handler(result)


def _normalize_event(event: dict[str, Any]) -> dict[str, Any]:
    metadata = event.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    severity = str(event.get("severity") or "info").lower()
    if severity not in SEVERITIES:
        severity = "info"
    return {
        "id": str(event.get("id") or new_event_id()),
        "ts": str(event.get("ts") or utc_now_iso()),
        "type": str(event.get("type") or "focusbook.event"),
        "severity": severity,
        "source": str(event.get("source") or "focusbook"),
        "message": str(event.get("message") or ""),
        "metadata": metadata,
    }


def _schedule_async_handler(awaitable: Awaitable[Any]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(awaitable)
