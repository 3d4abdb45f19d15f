"""Manually advanced clocks for simulation and tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


class ManualClock:
    """Monotonic seconds that only move when :meth:`advance` is called."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("A monotonic clock cannot go backwards")
        self.now += seconds
        return self.now


class ManualWallClock:
    """UTC wall time that only moves when :meth:`advance` or :meth:`set` is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return self.now


__all__ = ["ManualClock", "ManualWallClock"]
