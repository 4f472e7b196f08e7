"""Tests for the fallback timer scheduler."""

import asyncio
from collections.abc import Generator
from datetime import datetime

import pytest

from quotawake.models import ScheduleConfig
from quotawake.schedule.fallback import FallbackScheduler, fallback_enabled, next_fallback_time


def _config(**overrides) -> ScheduleConfig:
    values = {
        "enabled": True,
        "wake_on_reset": True,
        "time_window_enabled": True,
        "time_window_start": "10:00",
        "time_window_end": "18:00",
        "fallback_times": ["09:00"],
    }
    values.update(overrides)
    return ScheduleConfig(**values)


class TestNextFallbackTime:
    def test_later_today(self) -> None:
        now = datetime(2024, 1, 1, 8, 30)
        assert next_fallback_time(["07:00", "09:00", "20:00"], now) == datetime(2024, 1, 1, 9, 0)

    def test_current_minute_is_skipped(self) -> None:
        now = datetime(2024, 1, 1, 9, 0, 30)
        assert next_fallback_time(["09:00", "20:00"], now) == datetime(2024, 1, 1, 20, 0)

    def test_wraps_to_tomorrow(self) -> None:
        now = datetime(2024, 1, 1, 21, 0)
        assert next_fallback_time(["20:00", "07:00"], now) == datetime(2024, 1, 2, 7, 0)

    def test_unsorted_and_duplicate_times(self) -> None:
        now = datetime(2024, 1, 1, 6, 0)
        assert next_fallback_time(["12:00", "07:00", "07:00"], now) == datetime(2024, 1, 1, 7, 0)

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            next_fallback_time([], datetime(2024, 1, 1))


class TestFallbackEnabled:
    def test_all_conditions_required(self) -> None:
        assert fallback_enabled(_config()) is True
        assert fallback_enabled(_config(enabled=False)) is False
        assert fallback_enabled(_config(wake_on_reset=False)) is False
        assert fallback_enabled(_config(time_window_enabled=False)) is False
        assert fallback_enabled(_config(fallback_times=[])) is False


class TestFallbackScheduler:
    @pytest.fixture
    def fired(self) -> list[ScheduleConfig]:
        return []

    @pytest.fixture
    def scheduler(self, local_clock, fired) -> Generator[FallbackScheduler]:
        async def on_fire(config: ScheduleConfig) -> None:
            fired.append(config)

        local_clock.now = datetime(2024, 1, 1, 8, 59, 59, 950000)
        sched = FallbackScheduler(on_fire, clock=local_clock)
        yield sched
        sched.stop()

    async def test_fires_and_rearms_for_tomorrow(self, scheduler: FallbackScheduler, fired) -> None:
        config = _config()
        scheduler.start(config)
        assert scheduler.next_fire_at == datetime(2024, 1, 1, 9, 0)

        await asyncio.sleep(0.2)

        assert fired == [config]
        assert scheduler.is_armed
        assert scheduler.next_fire_at == datetime(2024, 1, 2, 9, 0)

    async def test_inside_window_skips_dispatch(self, scheduler: FallbackScheduler, fired) -> None:
        scheduler.start(_config(time_window_start="08:00", time_window_end="18:00"))

        await asyncio.sleep(0.2)

        assert fired == []
        assert scheduler.next_fire_at == datetime(2024, 1, 2, 9, 0)

    async def test_not_started_when_disabled(self, scheduler: FallbackScheduler) -> None:
        scheduler.start(_config(fallback_times=[]))
        assert not scheduler.is_armed
        assert scheduler.next_fire_at is None

    async def test_restart_replaces_timer(self, scheduler: FallbackScheduler, fired) -> None:
        scheduler.start(_config(fallback_times=["12:00"]))
        scheduler.start(_config())

        await asyncio.sleep(0.2)

        assert len(fired) == 1
        assert fired[0].fallback_times == ["09:00"]

    async def test_stop_is_idempotent(self, scheduler: FallbackScheduler, fired) -> None:
        scheduler.start(_config())
        scheduler.stop()
        scheduler.stop()

        await asyncio.sleep(0.2)

        assert fired == []
        assert not scheduler.is_armed

    async def test_stop_during_fire_prevents_rearm(self, local_clock) -> None:
        local_clock.now = datetime(2024, 1, 1, 8, 59, 59, 950000)
        calls = 0

        async def on_fire(config: ScheduleConfig) -> None:
            nonlocal calls
            calls += 1
            sched.stop()

        sched = FallbackScheduler(on_fire, clock=local_clock)
        sched.start(_config())

        await asyncio.sleep(0.2)

        assert calls == 1
        assert not sched.is_armed

    async def test_failing_dispatch_still_rearms(self, local_clock) -> None:
        local_clock.now = datetime(2024, 1, 1, 8, 59, 59, 950000)

        async def on_fire(config: ScheduleConfig) -> None:
            raise RuntimeError("dispatch failed")

        sched = FallbackScheduler(on_fire, clock=local_clock)
        sched.start(_config())

        await asyncio.sleep(0.2)

        assert sched.next_fire_at == datetime(2024, 1, 2, 9, 0)
        sched.stop()
