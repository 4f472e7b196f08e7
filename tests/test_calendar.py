"""Tests for calendar schedule conversion, validation and the APScheduler-backed calendar."""

import pytest

from quotawake.models import RepeatMode, ScheduleConfig
from quotawake.schedule.calendar import (
    JOB_ID,
    ApschedulerCalendar,
    _translate_day_of_week,
    config_to_crontab,
    daily_to_crontab,
    describe_crontab,
    effective_crontab,
    interval_to_crontab,
    next_runs,
    validate_crontab,
    weekly_to_crontab,
)


class TestConversion:
    def test_daily(self) -> None:
        assert daily_to_crontab(["07:00", "12:00"]) == "0 7,12 * * *"

    def test_daily_mixed_minutes(self) -> None:
        assert daily_to_crontab(["07:30", "12:00"]) == "30 7 * * *;0 12 * * *"

    def test_daily_empty(self) -> None:
        assert daily_to_crontab([]) == "0 8 * * *"

    @pytest.mark.parametrize(
        ("days", "expected"),
        [
            ([1, 2, 3, 4, 5], "0 8 * * 1-5"),
            ([5, 1, 3], "0 8 * * 1,3,5"),
            ([3], "0 8 * * 3"),
            ([0, 6], "0 8 * * 0,6"),
        ],
    )
    def test_weekly(self, days: list[int], expected: str) -> None:
        assert weekly_to_crontab(days, ["08:00"]) == expected

    def test_weekly_empty_uses_workdays(self) -> None:
        assert weekly_to_crontab([], ["09:00"]) == "0 8 * * 1-5"

    def test_interval(self) -> None:
        assert interval_to_crontab(4, "07:00", "23:00") == "0 7,11,15,19,23 * * *"

    def test_interval_without_end(self) -> None:
        assert interval_to_crontab(6, "02:15", None) == "15 2,8,14,20 * * *"

    def test_config_dispatches_on_mode(self) -> None:
        config = ScheduleConfig(repeat_mode=RepeatMode.WEEKLY, weekly_days=[6], weekly_times=["10:00"])
        assert config_to_crontab(config) == "0 10 * * 6"

    def test_raw_crontab_overrides_mode(self) -> None:
        config = ScheduleConfig(repeat_mode=RepeatMode.DAILY, crontab=" 0 9 * * * ")
        assert effective_crontab(config) == "0 9 * * *"

    def test_blank_crontab_ignored(self) -> None:
        config = ScheduleConfig(daily_times=["06:00"], crontab="  ")
        assert effective_crontab(config) == "0 6 * * *"


class TestValidation:
    @pytest.mark.parametrize("expr", ["0 8 * * *", "*/15 9-17 * * 1-5", "0 8 * * 1-5;30 12 * * 0,6", "0 7 1 */2 *"])
    def test_valid(self, expr: str) -> None:
        assert validate_crontab(expr) is None

    @pytest.mark.parametrize("expr", ["0 8 * *", "0 8 * * * *", "61 8 * * *", "abc 8 * * *", "", " ; "])
    def test_invalid(self, expr: str) -> None:
        assert validate_crontab(expr)

    def test_field_count_message(self) -> None:
        assert "expected 5 fields" in validate_crontab("0 8 * *")


class TestDayOfWeek:
    def test_translates_numbers_to_names(self) -> None:
        assert _translate_day_of_week("1-5") == "mon,tue,wed,thu,fri"
        assert _translate_day_of_week("0,7") == "sun"
        assert _translate_day_of_week("*") == "*"
        assert _translate_day_of_week("mon-fri") == "mon-fri"

    def test_monday_fires_on_monday(self) -> None:
        runs = next_runs("0 8 * * 1", 3)
        assert len(runs) == 3
        assert all(r.weekday() == 0 and r.hour == 8 for r in runs)

    def test_sunday_fires_on_sunday(self) -> None:
        runs = next_runs("0 9 * * 0", 2)
        assert all(r.weekday() == 6 for r in runs)

    def test_next_runs_are_increasing_across_expressions(self) -> None:
        runs = next_runs("0 7 * * *;30 12 * * *", 4)
        assert runs == sorted(runs)
        assert len(set(runs)) == 4


class TestDescribe:
    @pytest.mark.parametrize(
        ("expr", "expected"),
        [
            ("0 7,12 * * *", "Daily at 07:00, 12:00"),
            ("0 8 * * 1-5", "Daily at 08:00 on weekdays"),
            ("0 10 * * 0,6", "Daily at 10:00 on weekends"),
            ("0 9 * * 1,3", "Daily at 09:00 on Mon, Wed"),
            ("0 * * * *", "Every hour"),
            ("*/5 * * * *", "Custom schedule"),
            ("0 8 1 * *", "Custom schedule"),
        ],
    )
    def test_describe(self, expr: str, expected: str) -> None:
        assert describe_crontab(expr) == expected

    def test_unparseable_returned_verbatim(self) -> None:
        assert describe_crontab("garbage") == "garbage"


class TestApschedulerCalendar:
    async def test_set_and_stop(self) -> None:
        calendar = ApschedulerCalendar()
        fired: list[str] = []

        async def on_fire() -> None:
            fired.append("x")

        try:
            calendar.set_schedule(ScheduleConfig(enabled=True, daily_times=["07:00"]), on_fire)
            job = calendar._scheduler.get_job(JOB_ID)
            assert job is not None
            assert calendar.next_run_time() is not None

            await job.func()
            assert fired == ["x"]

            calendar.stop()
            assert calendar._scheduler.get_job(JOB_ID) is None
            assert calendar.next_run_time() is None
        finally:
            calendar.shutdown()

    async def test_disabled_config_arms_nothing(self) -> None:
        calendar = ApschedulerCalendar()
        calendar.set_schedule(ScheduleConfig(enabled=False), lambda: None)
        assert calendar.next_run_time() is None
        calendar.shutdown()

    async def test_job_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        calendar = ApschedulerCalendar()

        async def on_fire() -> None:
            raise RuntimeError("boom")

        try:
            calendar.set_schedule(ScheduleConfig(enabled=True), on_fire)
            await calendar._scheduler.get_job(JOB_ID).func()
        finally:
            calendar.shutdown()

        assert "Scheduled trigger failed" in caplog.text
