from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import TYPE_CHECKING, Any, Callable

from .events import EventBus

if TYPE_CHECKING:
    from ..notify import Notifier
    from ..reminders import ReminderBook, TickResult


MIN_POLL_INTERVAL_S = 0.5


class ReminderScheduler:
    """Recurring reminder poll.

    One asyncio task runs `tick_once` then sleeps for the interval, so a tick
    never overlaps the next one. `stop` cancels the task and waits for any
    tick already running in its worker thread.
    """

    def __init__(
        self,
        *,
        reminders: ReminderBook,
        notifier: Notifier,
        event_bus: EventBus,
        interval_s: float = 5.0,
        on_tick: Callable[[TickResult], Any] | None = None,
    ) -> None:
        self.reminders = reminders
        self.notifier = notifier
        self.event_bus = event_bus
        self.interval_s = max(MIN_POLL_INTERVAL_S, float(interval_s))
        self.on_tick = on_tick

        self.ticks = 0
        self.failed_ticks = 0
        self._task: asyncio.Task[None] | None = None
        self._tick_lock = asyncio.Lock()
        self._in_flight: asyncio.Future[TickResult] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="focusbook-reminder-poll")
        self.event_bus.publish_event(
            "scheduler.started",
            "Reminder scheduler started.",
            source="scheduler",
            metadata={"interval_s": self.interval_s},
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await _cancel_task(self._task)
        self._task = None
        await self._finish_in_flight()
        self.event_bus.publish_event(
            "scheduler.stopped",
            "Reminder scheduler stopped.",
            source="scheduler",
            metadata={"ticks": self.ticks, "failed_ticks": self.failed_ticks},
        )

    async def tick_once(self) -> TickResult | None:
        """Run one poll; returns None when the tick failed or another tick is in flight."""

        if self._tick_lock.locked():
            return None
        async with self._tick_lock:
            self.ticks += 1
            # Shielded: a cancelled poll leaves the worker running for stop() to await.
            work = asyncio.ensure_future(asyncio.to_thread(self.reminders.tick, self.notifier))
            self._in_flight = work
            try:
                result = await asyncio.shield(work)
            except Exception as exc:  # noqa: BLE001
                self._report_failure(exc)
                return None
            finally:
                if work.done():
                    self._in_flight = None
        if self.on_tick is not None:
            with contextlib.suppress(Exception):
                await _maybe_await(self.on_tick(result))
        return result

    async def _finish_in_flight(self) -> None:
        work, self._in_flight = self._in_flight, None
        if work is None:
            return
        try:
            await work
        except Exception as exc:  # noqa: BLE001
            self._report_failure(exc)

    def _report_failure(self, exc: Exception) -> None:
        self.failed_ticks += 1
        self.event_bus.publish_event(
            "scheduler.tick.failed",
            f"reminder tick {self.ticks} failed: {exc}",
            severity="error",
            source="scheduler",
            metadata={"tick": self.ticks},
        )

    async def _poll_loop(self) -> None:
        while True:
            await self.tick_once()
            await asyncio.sleep(self.interval_s)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _cancel_task(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
