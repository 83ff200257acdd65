from __future__ import annotations

import os
from pathlib import Path
from tempfile import TemporaryDirectory
import threading
import unittest

from focusbook.locks import TableLocks, instance_lock


class TestTableLocks(unittest.TestCase):
    def test_one_reentrant_lock_per_table(self) -> None:
        locks = TableLocks()
        first = locks.for_table("todos")
        self.assertIs(first, locks.for_table("todos"))
        self.assertIsNot(first, locks.for_table("notes"))
        with first:
            with first:
                pass
        self.assertEqual(["notes", "todos"], locks.names())

    def test_concurrent_lookups_share_a_lock(self) -> None:
        locks = TableLocks()
        seen: list[object] = []

        def _grab() -> None:
            seen.append(locks.for_table("sessions"))

        threads = [threading.Thread(target=_grab) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(1, len({id(lock) for lock in seen}))


@unittest.skipIf(os.name == "nt", "flock semantics")
class TestInstanceLock(unittest.TestCase):
    def test_second_holder_is_refused_until_release(self) -> None:
        with TemporaryDirectory() as tmp:
            lock_path = Path(tmp) / "locks" / "scheduler.lock"
            with instance_lock(lock_path):
                self.assertEqual(str(os.getpid()), lock_path.read_text(encoding="utf-8"))
                with self.assertRaises(RuntimeError) as ctx:
                    with instance_lock(lock_path):
                        pass
                self.assertIn(str(os.getpid()), str(ctx.exception))

            with instance_lock(lock_path):
                pass


if __name__ == "__main__":
    unittest.main()
