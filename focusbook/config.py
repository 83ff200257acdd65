from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
import tomllib


def _as_float(value, *, default: float) -> float:
    try:
        return float(value)
    except Exception:  # noqa: BLE001
        return float(default)


def _as_int(value, *, default: int) -> int:
    try:
        return int(value)
    except Exception:  # noqa: BLE001
        return int(default)


def _as_bool(value, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


@dataclass(frozen=True)
class PomodoroConfig:
    minutes_per_pomodoro: int = 25
    minutes_per_break: int = 5
    minutes_per_long_break: int = 15


@dataclass(frozen=True)
class RemindersConfig:
    poll_interval_s: float = 5.0
    enabled: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    events: bool = True
    console: bool = False


@dataclass(frozen=True)
class FocusbookConfig:
    pomodoro: PomodoroConfig = field(default_factory=PomodoroConfig)
    reminders: RemindersConfig = field(default_factory=RemindersConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_focusbook_toml(path: Path) -> tuple[FocusbookConfig, str]:
    """Load config from focusbook.toml.

    Returns (config, warning). Warning is empty on success.
    """

    if not path.exists():
        return FocusbookConfig(), ""

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return FocusbookConfig(), f"focusbook.toml parse failed: {exc}"

    if not isinstance(data, dict):
        return FocusbookConfig(), "focusbook.toml parse failed: top-level is not a table"

    pomodoro = data.get("pomodoro") if isinstance(data.get("pomodoro"), dict) else {}
    reminders = data.get("reminders") if isinstance(data.get("reminders"), dict) else {}
    logging = data.get("logging") if isinstance(data.get("logging"), dict) else {}

    cfg = FocusbookConfig(
        pomodoro=PomodoroConfig(
            minutes_per_pomodoro=max(
                1, _as_int(pomodoro.get("minutes_per_pomodoro"), default=PomodoroConfig.minutes_per_pomodoro)
            ),
            minutes_per_break=max(1, _as_int(pomodoro.get("minutes_per_break"), default=PomodoroConfig.minutes_per_break)),
            minutes_per_long_break=max(
                1, _as_int(pomodoro.get("minutes_per_long_break"), default=PomodoroConfig.minutes_per_long_break)
            ),
        ),
        reminders=RemindersConfig(
            poll_interval_s=max(0.5, _as_float(reminders.get("poll_interval_s"), default=RemindersConfig.poll_interval_s)),
            enabled=_as_bool(reminders.get("enabled"), default=RemindersConfig.enabled),
        ),
        logging=LoggingConfig(
            events=_as_bool(logging.get("events"), default=LoggingConfig.events),
            console=_as_bool(logging.get("console"), default=LoggingConfig.console),
        ),
    )

    return cfg, ""


_KEY_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def set_config_value(path: Path, section: str, key: str, literal: str) -> tuple[bool, str]:
    """Set `[section] key = literal` in place, keeping the rest of the file untouched.

    `literal` is written verbatim, so strings must arrive already quoted.
    """

    section = section.strip()
    key = key.strip()
    if not _KEY_RE.match(section) or not _KEY_RE.match(key):
        return False, f"invalid config key: {section}.{key}"
    try:
        tomllib.loads(f"{key} = {literal}\n")
    except Exception as exc:  # noqa: BLE001
        return False, f"invalid TOML value for {section}.{key}: {exc}"

    line = f"{key} = {literal}"
    header = f"[{section}]"

    if not path.exists():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{header}\n{line}\n", encoding="utf-8")
        except Exception as exc:  # noqa: BLE001
            return False, f"failed writing focusbook.toml: {exc}"
        return True, f"{section}.{key} set to {literal} (new file)"

    try:
        text = path.read_text(encoding="utf-8")
    except Exception as exc:  # noqa: BLE001
        return False, f"failed reading focusbook.toml: {exc}"

    lines = text.splitlines()
    section_start = None
    for idx, raw in enumerate(lines):
        if raw.strip() == header:
            section_start = idx
            break

    if section_start is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines.append(header)
        lines.append(line)
    else:
        section_end = len(lines)
        for idx in range(section_start + 1, len(lines)):
            stripped = lines[idx].strip()
            if stripped.startswith("[") and stripped.endswith("]"):
                section_end = idx
                break

        target_idx = None
        for idx in range(section_start + 1, section_end):
            stripped = lines[idx].strip()
            if stripped.split("=", 1)[0].strip() == key:
                target_idx = idx
                break

        if target_idx is not None:
            lines[target_idx] = line
        else:
            lines.insert(section_start + 1, line)

    try:
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except Exception as exc:  # noqa: BLE001
        return False, f"failed writing focusbook.toml: {exc}"
    return True, f"{section}.{key} set to {literal}"


def explain_focusbook_toml(config: FocusbookConfig, *, path: Path | None = None) -> str:
    location = str(path) if path is not None else "focusbook.toml"
    pomodoro = config.pomodoro
    lines = [
        f"focusbook.toml guide ({location})",
        "",
        "[pomodoro]",
        f"- minutes_per_pomodoro: default focus block length (current: {pomodoro.minutes_per_pomodoro})",
        f"- minutes_per_break: default short break (current: {pomodoro.minutes_per_break})",
        f"- minutes_per_long_break: default long break (current: {pomodoro.minutes_per_long_break})",
        "",
        "[reminders]",
        f"- poll_interval_s: seconds between due-reminder checks (current: {config.reminders.poll_interval_s})",
        f"- enabled: run the reminder scheduler in `focusbook run` (current: {'true' if config.reminders.enabled else 'false'})",
        "",
        "[logging]",
        f"- events: write logs/events.jsonl (current: {'true' if config.logging.events else 'false'})",
        f"- console: echo warnings to stderr (current: {'true' if config.logging.console else 'false'})",
    ]
    return "\n".join(lines)
