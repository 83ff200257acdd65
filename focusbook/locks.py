from __future__ import annotations

from contextlib import contextmanager
import os
from pathlib import Path
import threading
from typing import IO, Iterator


class TableLocks:
    """Registry handing out one re-entrant lock per table name.

    Every read-modify-write cycle on a table holds that table's lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_table(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
            return lock

    def names(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


def _lock_file(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def instance_lock(lock_path: Path) -> Iterator[IO[str]]:
    """Hold an exclusive, non-blocking lock on `lock_path` for the block.

    Only one `focusbook run` may poll a data directory at a time; a second
    one gets a RuntimeError naming the pid recorded by the holder.
    """

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a+", encoding="utf-8")
    locked = False
    try:
        try:
            _lock_file(handle)
        except OSError as exc:
            handle.seek(0)
            holder = handle.read().strip() or "unknown"
            raise RuntimeError(f"data dir is in use by another focusbook run (pid {holder}, lock: {lock_path})") from exc
        locked = True
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        yield handle
    finally:
        if locked:
            try:
                _unlock_file(handle)
            except OSError:
                pass
        handle.close()
