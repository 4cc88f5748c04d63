import asyncio as aio
from asyncio import Task
from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class Timer:
    """A recurring timer and the task driving it."""

    id: str
    interval: timedelta
    callback: Callable[[str], Awaitable[None]]
    task: Task
    fired: int = 0


class TimerService:
    """Manages recurring timers keyed by unique ids.

    Each firing runs its callback in its own task, so cancelling a timer stops future
    firings without interrupting a callback that is already running.
    """

    def __init__(self):
        self._timers: dict[str, Timer] = {}
        self._callbacks: set[Task] = set()

    def start_recurring_timer(
        self,
        timer_id: str,
        interval: timedelta,
        callback: Callable[[str], Awaitable[None]],
    ) -> None:
        """Start a timer that fires every `interval` until cancelled.

        An existing timer with the same id is cancelled first. The first firing happens
        one full interval after this call.

        Args:
            timer_id: Unique identifier for the timer
            interval: Time between firings; must be positive
            callback: Async function called with the timer_id on every firing
        """
        if interval.total_seconds() <= 0:
            raise ValueError(f"Timer interval must be positive, got {interval}")
        self.cancel_timer(timer_id)

        timer = Timer(
            id=timer_id,
            interval=interval,
            callback=callback,
            task=aio.create_task(self._run(timer_id, interval, callback)),
        )
        self._timers[timer_id] = timer

    async def _run(
        self,
        timer_id: str,
        interval: timedelta,
        callback: Callable[[str], Awaitable[None]],
    ) -> None:
        while True:
            await aio.sleep(interval.total_seconds())
            timer = self._timers.get(timer_id)
            if timer is not None:
                timer.fired += 1
            task = aio.create_task(self._invoke(timer_id, callback))
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)

    async def _invoke(
        self, timer_id: str, callback: Callable[[str], Awaitable[None]]
    ) -> None:
        try:
            await callback(timer_id)
        except Exception:
            logger.exception("Timer callback for %s failed", timer_id)

    def cancel_timer(self, timer_id: str) -> bool:
        """Cancel a timer by its ID.

        Returns:
            True if the timer was found and cancelled, False otherwise
        """
        timer = self._timers.pop(timer_id, None)
        if timer is None:
            return False
        if not timer.task.done():
            timer.task.cancel()
        return True

    def has_timer(self, timer_id: str) -> bool:
        return timer_id in self._timers

    def active_timer_ids(self) -> list[str]:
        return list(self._timers)

    async def stop(self) -> None:
        """Cancel every timer and wait for in-flight callbacks to finish."""
        for timer_id in list(self._timers):
            self.cancel_timer(timer_id)
        if self._callbacks:
            await aio.gather(*self._callbacks, return_exceptions=True)
