"""Fixed time-of-day fallback triggers for when quota-reset mode is outside its window.

Exactly one ``asyncio.TimerHandle`` is ever armed.  Each firing re-arms the
next one, and a generation counter keeps a firing that was already in flight
during ``stop()`` or a reconfiguration from arming a stale timer afterwards.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from quotawake.models import ScheduleConfig
from quotawake.observability.metrics import FALLBACK_FIRES_TOTAL
from quotawake.schedule.time_window import is_in_time_window, minutes_of_day, parse_hhmm

logger = logging.getLogger(__name__)


def fallback_enabled(config: ScheduleConfig) -> bool:
    return bool(config.enabled and config.wake_on_reset and config.time_window_enabled and config.fallback_times)


def next_fallback_time(times: list[str], now: datetime) -> datetime:
    """Return the next fallback moment strictly after ``now`` (minute resolution).

    Falls back to the earliest configured time tomorrow when none is left today.
    """
    if not times:
        raise ValueError("No fallback times configured")

    minutes = sorted({parse_hhmm(t) for t in times})
    current = minutes_of_day(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    for m in minutes:
        if m > current:
            return midnight + timedelta(minutes=m)
    return midnight + timedelta(days=1, minutes=minutes[0])


def _localnow() -> datetime:
    return datetime.now()


class FallbackScheduler:
    def __init__(
        self,
        on_fire: Callable[[ScheduleConfig], Awaitable[None]],
        clock: Callable[[], datetime] = _localnow,
    ) -> None:
        self.on_fire = on_fire
        self.clock = clock
        self._handle: asyncio.TimerHandle | None = None
        self._generation = 0
        self._config: ScheduleConfig | None = None
        self._next_fire_at: datetime | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_armed(self) -> bool:
        return self._handle is not None

    @property
    def next_fire_at(self) -> datetime | None:
        return self._next_fire_at if self._handle is not None else None

    def start(self, config: ScheduleConfig) -> None:
        """Cancel any armed timer and, if the config calls for it, arm the next one."""
        self.stop()
        if not fallback_enabled(config):
            logger.debug("Fallback scheduler not started: no fallback times or window disabled")
            return
        self._config = config
        self._arm(self.clock())
        logger.info("Fallback scheduler started with times %s", ", ".join(config.fallback_times))

    def stop(self) -> None:
        """Idempotent; in-flight dispatches are left to finish."""
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.info("Fallback scheduler stopped")
        self._config = None
        self._next_fire_at = None

    def _arm(self, after: datetime) -> None:
        config = self._config
        if config is None:
            return
        target = next_fallback_time(config.fallback_times, after)
        delay = max((target - self.clock()).total_seconds(), 0.0)
        loop = asyncio.get_running_loop()
        generation = self._generation
        self._handle = loop.call_later(delay, self._on_timer, generation, target)
        self._next_fire_at = target
        logger.info("Next fallback trigger at %s (in %d minutes)", target.strftime("%Y-%m-%d %H:%M"), delay // 60)

    def _on_timer(self, generation: int, target: datetime) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(self._fire(generation, target))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire(self, generation: int, target: datetime) -> None:
        config = self._config
        if generation != self._generation or config is None:
            return

        now = self.clock()
        if is_in_time_window(config.time_window_start, config.time_window_end, now):
            logger.info("Fallback time reached inside the monitoring window, skipping dispatch")
            FALLBACK_FIRES_TOTAL.labels(outcome="skipped").inc()
        else:
            logger.info("Fallback trigger firing at %s", now.strftime("%H:%M"))
            try:
                await self.on_fire(config)
                FALLBACK_FIRES_TOTAL.labels(outcome="fired").inc()
            except Exception:
                FALLBACK_FIRES_TOTAL.labels(outcome="error").inc()
                logger.exception("Fallback trigger failed")

        if generation != self._generation:
            logger.debug("Fallback scheduler was stopped or reconfigured during firing, not re-arming")
            return
        # An early wake-up must not select the same minute again.
        self._arm(max(self.clock(), target))
