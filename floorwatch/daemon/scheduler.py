from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from floorwatch.errors import TransientError

_scheduler_logger = logging.getLogger("floorwatch.scheduler")


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    max_seconds: float = 30.0
    widened_max_seconds: float = 300.0
    widen_after_failures: int = 10
    factor: float = 2.0
    jitter_ratio: float = 0.0

    def delay_for(self, consecutive_failures: int) -> float:
        """Delay before the next attempt after ``consecutive_failures`` failures."""
        if consecutive_failures <= 0:
            return 0.0
        ceiling = self.max_seconds
        if consecutive_failures >= max(1, self.widen_after_failures):
            ceiling = max(self.max_seconds, self.widened_max_seconds)
        delay = self.base_seconds * (self.factor ** (consecutive_failures - 1))
        delay = min(ceiling, max(0.0, delay))
        if self.jitter_ratio > 0:
            delay += delay * self.jitter_ratio * random.random()
        return delay


class PeriodicTask:
    """Runs ``tick`` every ``interval_seconds`` until stopped.

    A ``TransientError`` from ``tick`` is retried after the backoff delay instead of
    the normal interval. Any other exception is logged and counted the same way;
    the task itself never exits on a failed tick.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        tick: Callable[[], Awaitable[object]],
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._tick = tick
        self.backoff = backoff or BackoffPolicy()
        self._sleep = sleep or asyncio.sleep
        self._run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self.consecutive_failures = 0
        self.tick_count = 0
        self.failure_count = 0

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run_once(self) -> bool:
        """Run a single tick. Returns True on success."""
        self.tick_count += 1
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except TransientError as exc:
            self.consecutive_failures += 1
            self.failure_count += 1
            _scheduler_logger.warning(
                "task_transient_failure task=%s consecutive=%s error=%s",
                self.name,
                self.consecutive_failures,
                exc,
            )
            return False
        except Exception:
            self.consecutive_failures += 1
            self.failure_count += 1
            _scheduler_logger.exception(
                "task_unexpected_failure task=%s consecutive=%s",
                self.name,
                self.consecutive_failures,
            )
            return False
        if self.consecutive_failures:
            _scheduler_logger.info(
                "task_recovered task=%s after_failures=%s", self.name, self.consecutive_failures
            )
        self.consecutive_failures = 0
        return True

    def next_delay(self) -> float:
        if self.consecutive_failures:
            return self.backoff.delay_for(self.consecutive_failures)
        return self.interval_seconds

    async def run_forever(self, *, max_ticks: int | None = None) -> None:
        _scheduler_logger.info(
            "task_started task=%s interval_seconds=%s", self.name, self.interval_seconds
        )
        if not self._run_immediately:
            await self._sleep_with_stop(self.interval_seconds)
        while not self._stop_event.is_set():
            await self.run_once()
            if max_ticks is not None and self.tick_count >= max_ticks:
                break
            await self._sleep_with_stop(self.next_delay())
        _scheduler_logger.info("task_stopped task=%s ticks=%s", self.name, self.tick_count)

    async def _sleep_with_stop(self, seconds: float) -> None:
        remaining = max(0.0, seconds)
        while remaining > 0 and not self._stop_event.is_set():
            chunk = min(1.0, remaining)
            await self._sleep(chunk)
            remaining -= chunk
