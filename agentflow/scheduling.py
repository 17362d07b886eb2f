"""Recurrence rules for scheduled workflows.

All helpers are pure: they take ``now`` explicitly and return the next slot
strictly after it, so a slot that was just executed never fires twice.
Times are naive UTC, matching the timestamps stored on the entities.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

SCHEDULE_TYPES = ("once", "hourly", "daily", "weekly", "biweekly", "monthly")

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

DEFAULT_TIME = "12:00"


def parse_time_of_day(value: Any) -> tuple[int, int]:
    """Parse ``"HH:MM"`` into ``(hour, minute)``; raises ``ValueError`` on garbage."""
    text = str(value or DEFAULT_TIME).strip()
    parts = text.split(":")
    if len(parts) < 2:
        raise ValueError(f"invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"invalid time of day: {value!r}")
    return hour, minute


def parse_weekday(value: Any) -> int:
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValueError(f"invalid weekday: {value!r}")
    key = str(value or "monday").strip().lower()
    if key not in WEEKDAYS:
        raise ValueError(f"invalid weekday: {value!r}")
    return WEEKDAYS[key]


def week_monday(day: date) -> date:
    return day - timedelta(days=day.weekday())


def next_hourly(now: datetime, minute: int = 0) -> datetime:
    candidate = now.replace(minute=int(minute), second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(hours=1)
    return candidate


def next_daily(now: datetime, time_of_day: str = DEFAULT_TIME) -> datetime:
    hour, minute = parse_time_of_day(time_of_day)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly(now: datetime, day_of_week: Any = "monday", time_of_day: str = DEFAULT_TIME) -> datetime:
    hour, minute = parse_time_of_day(time_of_day)
    weekday = parse_weekday(day_of_week)
    days_ahead = (weekday - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(
        hour=hour, minute=minute, second=0, microsecond=0
    )
    if candidate <= now:
        candidate += timedelta(weeks=1)
    return candidate


def _parity_mismatch(candidate: datetime, config: Mapping[str, Any]) -> bool:
    anchor = config.get("anchor_date")
    if anchor:
        anchor_day = date.fromisoformat(str(anchor)[:10])
        weeks = (week_monday(candidate.date()) - week_monday(anchor_day)).days // 7
        return weeks % 2 != 0
    start_week = config.get("start_week")
    if start_week is None:
        return False
    current_week = candidate.isocalendar()[1]
    return abs(current_week - int(start_week)) % 2 != 0


def next_biweekly(now: datetime, config: Mapping[str, Any]) -> datetime:
    candidate = next_weekly(
        now, config.get("day_of_week", "monday"), config.get("time", DEFAULT_TIME)
    )
    if _parity_mismatch(candidate, config):
        candidate += timedelta(weeks=1)
    if candidate <= now:
        candidate += timedelta(weeks=2)
    return candidate


def _clamped(year: int, month: int, day_of_month: int, hour: int, minute: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day_of_month, last_day), hour, minute)


def next_monthly(now: datetime, day_of_month: int = 1, time_of_day: str = DEFAULT_TIME) -> datetime:
    hour, minute = parse_time_of_day(time_of_day)
    day_of_month = int(day_of_month)
    if not 1 <= day_of_month <= 31:
        raise ValueError(f"invalid day of month: {day_of_month}")
    candidate = _clamped(now.year, now.month, day_of_month, hour, minute)
    if candidate <= now:
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        candidate = _clamped(year, month, day_of_month, hour, minute)
    return candidate


def calculate_next_run(
    schedule_type: Optional[str],
    config: Optional[Mapping[str, Any]],
    now: datetime,
) -> Optional[datetime]:
    """Next run strictly after ``now`` for a recurring schedule.

    ``once`` has no recurrence and returns ``None``; its run time is set
    directly by ``Workflow.schedule_once``.
    """
    config = config or {}
    if schedule_type == "hourly":
        return next_hourly(now, int(config.get("minute", 0)))
    if schedule_type == "daily":
        return next_daily(now, config.get("time", DEFAULT_TIME))
    if schedule_type == "weekly":
        return next_weekly(now, config.get("day_of_week", "monday"), config.get("time", DEFAULT_TIME))
    if schedule_type == "biweekly":
        return next_biweekly(now, config)
    if schedule_type == "monthly":
        return next_monthly(now, int(config.get("day_of_month", 1)), config.get("time", DEFAULT_TIME))
    if schedule_type == "once":
        return None
    raise ValueError(f"unknown schedule type: {schedule_type!r}")


__all__ = [
    "SCHEDULE_TYPES",
    "WEEKDAYS",
    "calculate_next_run",
    "next_biweekly",
    "next_daily",
    "next_hourly",
    "next_monthly",
    "next_weekly",
    "parse_time_of_day",
    "parse_weekday",
    "week_monday",
]
