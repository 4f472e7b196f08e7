"""Local time-of-day window checks on "HH:MM" strings."""

from datetime import datetime


def parse_hhmm(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    hours, _, minutes = value.strip().partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return h * 60 + m


def minutes_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


def is_in_time_window(start: str | None, end: str | None, now: datetime) -> bool:
    """Return True if ``now`` falls inside [start, end).

    A window whose start is later than its end wraps past midnight, so
    ``22:00``-``06:00`` covers the night.  A missing bound means "always".
    """
    if not start or not end:
        return True

    current = minutes_of_day(now)
    start_min = parse_hhmm(start)
    end_min = parse_hhmm(end)

    if start_min <= end_min:
        return start_min <= current < end_min
    return current >= start_min or current < end_min
