"""Calendar (daily / weekly / interval / raw crontab) triggers on APScheduler.

Uses AsyncIOScheduler with one CronTrigger per crontab expression, combined
with an OrTrigger when a config produces several expressions (``;``-joined).
Cron days of week are numbered 0-6 from Sunday (7 is also Sunday), while
APScheduler numbers them from Monday, so numeric day-of-week fields are
rewritten to day names before they reach CronTrigger.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.base import BaseTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.combining import OrTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]

from quotawake.models import RepeatMode, ScheduleConfig

logger = logging.getLogger(__name__)

JOB_ID = "calendar_trigger"
DEFAULT_DAILY_CRONTAB = "0 8 * * *"
DEFAULT_WEEKLY_CRONTAB = "0 8 * * 1-5"

_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_DISPLAY_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


# ---------------------------------------------------------------------------
# Config -> crontab conversion
# ---------------------------------------------------------------------------


def _group_by_minute(times: list[str]) -> dict[int, list[int]]:
    groups: dict[int, list[int]] = {}
    for value in times:
        hours, _, minutes = value.partition(":")
        groups.setdefault(int(minutes or 0), []).append(int(hours))
    return groups


def _is_consecutive(values: list[int]) -> bool:
    return all(b == a + 1 for a, b in zip(values, values[1:], strict=False))


def daily_to_crontab(times: list[str]) -> str:
    """``["07:00", "12:00"]`` -> ``0 7,12 * * *``; differing minutes become separate expressions."""
    if not times:
        return DEFAULT_DAILY_CRONTAB
    return ";".join(
        f"{minute} {','.join(str(h) for h in sorted(hours))} * * *"
        for minute, hours in _group_by_minute(times).items()
    )


def weekly_to_crontab(days: list[int], times: list[str]) -> str:
    """``days=[1..5], times=["08:00"]`` -> ``0 8 * * 1-5``."""
    if not days or not times:
        return DEFAULT_WEEKLY_CRONTAB

    ordered = sorted(set(days))
    if len(ordered) > 1 and _is_consecutive(ordered):
        day_expr = f"{ordered[0]}-{ordered[-1]}"
    else:
        day_expr = ",".join(str(d) for d in ordered)

    return ";".join(
        f"{minute} {','.join(str(h) for h in sorted(hours))} * * {day_expr}"
        for minute, hours in _group_by_minute(times).items()
    )


def interval_to_crontab(interval_hours: int, start_time: str, end_time: str | None) -> str:
    """``4h from 07:00 to 23:00`` -> ``0 7,11,15,19,23 * * *``."""
    start_h, _, start_m = start_time.partition(":")
    start_hour = int(start_h)
    end_hour = int(end_time.partition(":")[0]) if end_time else 23
    step = max(interval_hours, 1)

    hours = list(range(start_hour, end_hour + 1, step)) or [start_hour]
    return f"{int(start_m or 0)} {','.join(str(h) for h in hours)} * * *"


def config_to_crontab(config: ScheduleConfig) -> str:
    match config.repeat_mode:
        case RepeatMode.DAILY:
            return daily_to_crontab(config.daily_times)
        case RepeatMode.WEEKLY:
            return weekly_to_crontab(config.weekly_days, config.weekly_times)
        case RepeatMode.INTERVAL:
            return interval_to_crontab(config.interval_hours, config.interval_start_time, config.interval_end_time)
    return DEFAULT_DAILY_CRONTAB


def effective_crontab(config: ScheduleConfig) -> str:
    return config.crontab.strip() if config.crontab and config.crontab.strip() else config_to_crontab(config)


# ---------------------------------------------------------------------------
# Parsing / validation
# ---------------------------------------------------------------------------


def split_expressions(crontab: str) -> list[str]:
    return [e.strip() for e in crontab.split(";") if e.strip()]


def _expand_field(field: str, low: int, high: int) -> list[int]:
    values: list[int] = []
    for part in field.split(","):
        base, _, step_str = part.partition("/")
        step = int(step_str) if step_str else 1
        if base == "*":
            start, end = low, high
        elif "-" in base:
            a, _, b = base.partition("-")
            start, end = int(a), int(b)
        else:
            start = int(base)
            end = high if step_str else start
        values.extend(range(start, end + 1, step))
    return sorted(set(values))


def _translate_day_of_week(field: str) -> str:
    """Rewrite a numeric cron day-of-week field (0/7 = Sunday) as APScheduler day names."""
    if field == "*" or any(c.isalpha() for c in field):
        return field
    days = sorted({d % 7 for d in _expand_field(field, 0, 6)})
    return ",".join(_DAY_NAMES[d] for d in days)


def build_cron_trigger(expression: str) -> CronTrigger:
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid crontab '{expression}': expected 5 fields, got {len(fields)}")
    minute, hour, day, month, day_of_week = fields
    try:
        dow = _translate_day_of_week(day_of_week)
    except ValueError as e:
        raise ValueError(f"Invalid day-of-week field '{day_of_week}'") from e
    return CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=dow)


def build_trigger(crontab: str) -> BaseTrigger:
    expressions = split_expressions(crontab)
    if not expressions:
        raise ValueError("Empty crontab")
    triggers = [build_cron_trigger(e) for e in expressions]
    return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)


def validate_crontab(crontab: str) -> str | None:
    """Return None if every ``;``-separated expression is valid, else an error message."""
    try:
        build_trigger(crontab)
    except ValueError as e:
        return str(e)
    return None


def next_runs(crontab: str, count: int = 5, now: datetime | None = None) -> list[datetime]:
    """Compute the next ``count`` fire times across all expressions."""
    trigger = build_trigger(crontab)
    current = now or datetime.now().astimezone()
    runs: list[datetime] = []
    previous: datetime | None = None
    for _ in range(count):
        fire_time = trigger.get_next_fire_time(previous, current)
        if fire_time is None:
            break
        runs.append(fire_time)
        previous = fire_time
        current = fire_time
    return runs


# ---------------------------------------------------------------------------
# Human readable description
# ---------------------------------------------------------------------------


def _describe_expression(expression: str) -> str:
    minute, hour, day, month, day_of_week = expression.split()
    if day != "*" or month != "*" or "/" in minute + hour + day_of_week:
        return "Custom schedule"

    parts: list[str] = []
    if minute == "0" and hour == "*":
        parts.append("Every hour")
    elif hour != "*" and minute != "*" and minute.isdigit():
        times = ", ".join(f"{int(h):02d}:{int(minute):02d}" for h in _expand_field(hour, 0, 23))
        parts.append(f"Daily at {times}")

    if day_of_week != "*":
        if day_of_week == "1-5":
            parts.append("on weekdays")
        elif day_of_week in ("0,6", "6,0"):
            parts.append("on weekends")
        elif any(c.isalpha() for c in day_of_week):
            parts.append(f"on {day_of_week}")
        else:
            days = sorted({d % 7 for d in _expand_field(day_of_week, 0, 6)})
            parts.append("on " + ", ".join(_DISPLAY_DAY_NAMES[d] for d in days))

    return " ".join(parts) or "Custom schedule"


def describe_crontab(crontab: str) -> str:
    try:
        descriptions = [_describe_expression(e) for e in split_expressions(crontab)]
    except ValueError:
        return crontab
    unique = list(dict.fromkeys(descriptions))
    return ", ".join(unique) if unique else crontab


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ApschedulerCalendar:
    """Runs ``on_fire`` on the event loop whenever the configured calendar matches.

    Pass a shared ``AsyncIOScheduler`` to co-host other jobs; otherwise one is
    created on first use and shut down by ``shutdown()``.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._trigger: BaseTrigger | None = None
        self._crontab: str | None = None

    def _ensure_started(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        if not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    def set_schedule(self, config: ScheduleConfig, on_fire: Callable[[], Awaitable[object]]) -> None:
        self.stop()
        if not config.enabled:
            return

        crontab = effective_crontab(config)
        trigger = build_trigger(crontab)

        async def _job() -> None:
            logger.info("Executing scheduled trigger (%s)", crontab)
            try:
                await on_fire()
            except Exception:
                logger.exception("Scheduled trigger failed")

        scheduler = self._ensure_started()
        scheduler.add_job(
            _job,
            trigger=trigger,
            id=JOB_ID,
            name="Calendar keep-alive trigger",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=60,
        )
        self._trigger = trigger
        self._crontab = crontab
        logger.info("Calendar scheduler started with crontab: %s", crontab)

    def stop(self) -> None:
        if self._trigger is None:
            return
        if self._scheduler is not None and self._scheduler.get_job(JOB_ID) is not None:
            self._scheduler.remove_job(JOB_ID)
        self._trigger = None
        self._crontab = None
        logger.info("Calendar scheduler stopped")

    def shutdown(self) -> None:
        self.stop()
        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None if self._owns_scheduler else self._scheduler

    def describe(self, config: ScheduleConfig) -> str:
        return describe_crontab(effective_crontab(config))

    def config_to_crontab(self, config: ScheduleConfig) -> str:
        return config_to_crontab(config)

    def validate_crontab(self, expression: str) -> str | None:
        return validate_crontab(expression)

    def next_run_time(self) -> datetime | None:
        if self._trigger is None:
            return None
        return self._trigger.get_next_fire_time(None, datetime.now().astimezone())
