from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


APP_DIRNAME = "focusbook"
DATA_DIR_ENV = "FOCUSBOOK_DATA_DIR"
CONFIG_FILENAME = "focusbook.toml"


def user_data_root() -> Path:
    """Per-user data root (Windows/macOS/Linux), without the app directory."""

    if os.name == "nt":
        return Path(os.environ.get("LOCALAPPDATA", os.path.expanduser("~\\AppData\\Local")))
    xdg = os.environ.get("XDG_DATA_HOME", "").strip()
    if xdg:
        return Path(xdg)
    return Path(os.path.expanduser("~/.local/share"))


def resolve_data_dir(explicit: str | Path | None = None) -> Path:
    """Pick the data directory: explicit argument, then env override, then user data dir."""

    if explicit:
        return Path(explicit).expanduser().resolve()
    env_value = os.environ.get(DATA_DIR_ENV, "").strip()
    if env_value:
        return Path(env_value).expanduser().resolve()
    return user_data_root() / APP_DIRNAME


@dataclass(frozen=True)
class DataPaths:
    root: Path
    config_toml: Path
    state_json: Path
    logs_dir: Path
    events_log: Path
    runtime_log: Path
    locks_dir: Path
    scheduler_lock: Path


def data_paths(root: Path) -> DataPaths:
    logs_dir = root / "logs"
    locks_dir = root / "locks"
    return DataPaths(
        root=root,
        config_toml=root / CONFIG_FILENAME,
        state_json=root / "state.json",
        logs_dir=logs_dir,
        events_log=logs_dir / "events.jsonl",
        runtime_log=logs_dir / "runtime.log",
        locks_dir=locks_dir,
        scheduler_lock=locks_dir / "scheduler.lock",
    )


def ensure_data_dirs(paths: DataPaths) -> DataPaths:
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    paths.locks_dir.mkdir(parents=True, exist_ok=True)
    return paths
