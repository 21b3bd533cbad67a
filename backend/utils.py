from datetime import datetime, timedelta, timezone
from typing import Optional
import math


class SystemClock:
    """Wall clock in naive UTC, matching how timestamps are stored."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock pinned to a given instant; advance() moves it forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, 8, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current


_system_clock = SystemClock()


def get_clock() -> SystemClock:
    return _system_clock


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds between two instants, never negative."""
    seconds = math.floor((end - start).total_seconds())
    return max(0, seconds)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (banker's rounding is not wanted here)."""
    return int(math.floor(value + 0.5))


def percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(part / whole * 100)


def format_duration(seconds: int) -> str:
    """Format seconds for log lines (e.g. 45s, 12m 5s, 1h 3m)"""
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"
