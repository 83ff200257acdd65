from __future__ import annotations

import asyncio
import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
import math
import os
from pathlib import Path
import re
import time
from typing import Callable, Union


# setTimeout-style primitives cap a single wait at 2^31-1 ms (~24.8 days).
MAX_SAFE_TIMEOUT_MS = 2_147_483_647

_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{1,2}))?(?::(\d{1,2}))?$")
_LOCAL_STAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[ T](\d{1,2}(?::\d{2})?(?::\d{2})?))?$")
_NUMERIC_RE = re.compile(r"^\d+$")

Instant = Union[datetime, int, float]


def pad(value: int, width: int = 2) -> str:
    return str(value).rjust(width, "0")


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def to_local_datetime(instant: Instant | None = None) -> datetime:
    """Interpret an instant on the machine's local wall clock.

    Epoch numbers are milliseconds. Naive datetimes are already local wall
    clock values and are returned untouched; aware ones are converted.
    """

    if instant is None:
        return datetime.now()
    if isinstance(instant, datetime):
        if instant.tzinfo is None:
            return instant
        return instant.astimezone().replace(tzinfo=None)
    if isinstance(instant, bool) or not isinstance(instant, (int, float)):
        raise TypeError(f"unsupported instant: {instant!r}")
    return datetime.fromtimestamp(float(instant) / 1000.0)


def local_date_string(instant: Instant | None = None) -> str:
    """Return the local calendar day (YYYY-MM-DD) for an instant, never the UTC day."""

    local = to_local_datetime(instant)
    return f"{local.year:04d}-{pad(local.month)}-{pad(local.day)}"


def parse_local_datetime_ms(value: str | datetime, time_text: str | None = None) -> int:
    """Parse a local "YYYY-MM-DD" plus optional "HH[:MM[:SS]]" into epoch ms.

    Out-of-range hour/minute/second components are clamped rather than
    rejected. A malformed date or time string raises ValueError.
    """

    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)

    match = _DATE_RE.match(str(value or "").strip())
    if not match:
        raise ValueError(f"invalid date format (expected YYYY-MM-DD): {value}")
    year, month, day = (int(part) for part in match.groups())

    hour = minute = second = 0
    if time_text:
        time_match = _TIME_RE.match(time_text.strip())
        if not time_match:
            raise ValueError(f"invalid time format (expected HH, HH:MM or HH:MM:SS): {time_text}")
        hour = _clamp(int(time_match.group(1) or 0), 0, 23)
        minute = _clamp(int(time_match.group(2) or 0), 0, 59)
        second = _clamp(int(time_match.group(3) or 0), 0, 59)

    local = datetime(year, month, day, hour, minute, second)
    return int(local.timestamp() * 1000)


@dataclass(frozen=True)
class LocalDateTimeParts:
    date: str
    time: str
    iso: str


def from_epoch_to_local_datetime(epoch_ms: int | float) -> LocalDateTimeParts:
    local = to_local_datetime(epoch_ms)
    day = local_date_string(local)
    clock = f"{pad(local.hour)}:{pad(local.minute)}:{pad(local.second)}"
    return LocalDateTimeParts(date=day, time=clock, iso=f"{day} {clock}")


def format_hms(total: int | float, *, input_is_ms: bool = False) -> str:
    seconds = int(total // 1000) if input_is_ms else int(total)
    seconds = max(0, seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{pad(hours)}:{pad(minutes)}:{pad(secs)}"
    return f"{pad(minutes)}:{pad(secs)}"


def user_time_zone() -> str:
    """Best-effort IANA zone name, falling back to a UTC offset label."""

    env_tz = (os.environ.get("TZ") or "").strip().lstrip(":")
    if "/" in env_tz and not env_tz.startswith("/"):
        return env_tz
    try:
        target = str(Path("/etc/localtime").resolve())
    except OSError:
        target = ""
    if "zoneinfo/" in target:
        return target.split("zoneinfo/", 1)[1]

    offset = datetime.now().astimezone().utcoffset() or timedelta(0)
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"UTC{sign}{pad(hours)}:{pad(minutes)}"


# --- timestamp normalization -------------------------------------------------


@dataclass(frozen=True)
class Epoch:
    ms: int


@dataclass(frozen=True)
class LocalDateTime:
    date: str
    time: str | None = None


@dataclass(frozen=True)
class IsoString:
    text: str


TimestampInput = Union[Epoch, LocalDateTime, IsoString]


def classify_timestamp(raw: object) -> TimestampInput | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return None
        return Epoch(int(math.floor(raw)))
    if isinstance(raw, datetime):
        return Epoch(int(raw.timestamp() * 1000))
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    if _NUMERIC_RE.match(text):
        return Epoch(int(text))
    local_match = _LOCAL_STAMP_RE.match(text)
    if local_match:
        return LocalDateTime(date=local_match.group(1), time=local_match.group(2))
    return IsoString(text)


def resolve_timestamp(value: TimestampInput) -> int | None:
    if isinstance(value, Epoch):
        return value.ms
    if isinstance(value, LocalDateTime):
        try:
            return parse_local_datetime_ms(value.date, value.time)
        except ValueError:
            return _parse_free_form(value.date if value.time is None else f"{value.date} {value.time}")
    if isinstance(value, IsoString):
        return _parse_free_form(value.text)
    return None


def normalize_timestamp(raw: object) -> int | None:
    """Coerce a raw stored/submitted timestamp into epoch ms, or None when unparseable."""

    classified = classify_timestamp(raw)
    if classified is None:
        return None
    resolved = resolve_timestamp(classified)
    if resolved is None or not is_representable_ms(resolved):
        return None
    return resolved


def is_representable_ms(epoch_ms: int) -> bool:
    """True when `epoch_ms` maps to a local datetime on this platform."""

    try:
        datetime.fromtimestamp(epoch_ms / 1000.0)
    except (OverflowError, OSError, ValueError):
        return False
    return True


def _parse_free_form(text: str) -> int | None:
    parsed: datetime | None = None
    candidate = text.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        parsed = None
    if parsed is None:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed is None:
        return None
    try:
        return int(parsed.timestamp() * 1000)
    except (OverflowError, OSError, ValueError):
        return None


# --- calendar ranges ---------------------------------------------------------


def week_range(today: date | None = None) -> tuple[str, str]:
    """Monday..Sunday of the week containing `today`."""

    day = today or datetime.now().date()
    monday = day - timedelta(days=day.weekday())
    sunday = monday + timedelta(days=6)
    return monday.isoformat(), sunday.isoformat()


def month_range(today: date | None = None) -> tuple[str, str]:
    day = today or datetime.now().date()
    last = calendar.monthrange(day.year, day.month)[1]
    return date(day.year, day.month, 1).isoformat(), date(day.year, day.month, last).isoformat()


def year_range(today: date | None = None) -> tuple[str, str]:
    day = today or datetime.now().date()
    return f"{day.year:04d}-01-01", f"{day.year:04d}-12-31"


# --- clamped long-delay scheduling ---------------------------------------------


def clamp_timeout_delay(delay_ms: int | float) -> int:
    return min(max(0, int(delay_ms)), MAX_SAFE_TIMEOUT_MS)


class ClampedDelayHandle:
    """Single cancellation handle for a chain of bounded waits."""

    def __init__(
        self,
        callback: Callable[[], object],
        delay_ms: int | float,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_chunk_ms: int = MAX_SAFE_TIMEOUT_MS,
    ) -> None:
        self._callback = callback
        self._loop = loop or asyncio.get_running_loop()
        self._max_chunk_ms = max(1, int(max_chunk_ms))
        self._remaining_ms = max(0, int(math.floor(delay_ms)))
        self._timer: asyncio.TimerHandle | None = None
        self._cancelled = False
        self._fired = False
        self.chunks_scheduled = 0
        self._step()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _step(self) -> None:
        if self._cancelled:
            return
        take = min(self._remaining_ms, self._max_chunk_ms)
        self._remaining_ms -= take
        self.chunks_scheduled += 1
        self._timer = self._loop.call_later(take / 1000.0, self._on_chunk)

    def _on_chunk(self) -> None:
        self._timer = None
        if self._cancelled:
            return
        if self._remaining_ms > 0:
            self._step()
            return
        self._fired = True
        self._callback()


def schedule_with_clamped_delay(
    callback: Callable[[], object],
    delay_ms: int | float,
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    max_chunk_ms: int = MAX_SAFE_TIMEOUT_MS,
) -> ClampedDelayHandle:
    """Run `callback` after `delay_ms`, even past the single-wait cap."""

    return ClampedDelayHandle(callback, delay_ms, loop=loop, max_chunk_ms=max_chunk_ms)


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(low, value), high)
