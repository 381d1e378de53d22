"""Pseudo-cron schedule parsing and due-time calculations.

Schedules are plain dicts so they serialize straight into the task file.
Daily and weekly clock times are read in the timezone of the ``now`` value
the caller passes in; the heartbeat passes local time.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import re
from typing import Any


WEEKDAY_MAP = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}
_DAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def now_local() -> datetime:
    """Return timezone-aware current local datetime."""
    return datetime.now(UTC).astimezone()


def to_utc_iso(value: datetime) -> str:
    """Serialize datetime as UTC ISO string."""
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse ISO datetime and normalize to UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_hhmm(text: str) -> tuple[int, int]:
    match = re.fullmatch(r"([01]?\d|2[0-3]):([0-5]\d)", text.strip())
    if not match:
        raise ValueError("Expected time format HH:MM")
    return int(match.group(1)), int(match.group(2))


def _parse_days(text: str) -> list[int]:
    days: list[int] = []
    for part in text.split(","):
        key = part.strip().lower()
        if key not in WEEKDAY_MAP:
            raise ValueError(f"Invalid weekday '{part.strip()}'; use mon..sun")
        if WEEKDAY_MAP[key] not in days:
            days.append(WEEKDAY_MAP[key])
    return sorted(days)


def parse_schedule(text: str) -> dict[str, Any]:
    """Parse ``every Nm|Nh``, ``daily HH:MM`` or ``weekly day[,day] HH:MM``."""
    tokens = str(text or "").split()
    if not tokens:
        raise ValueError("Missing schedule")

    head = tokens[0].lower()
    if head == "every":
        if len(tokens) != 2:
            raise ValueError("Usage: every <Nm|Nh>")
        match = re.fullmatch(r"(\d+)([mh])", tokens[1].lower())
        if not match:
            raise ValueError("Usage: every <Nm|Nh> (example: every 15m)")
        interval = int(match.group(1))
        if interval <= 0:
            raise ValueError("Interval must be > 0")
        return {
            "type": "interval",
            "unit": "minutes" if match.group(2) == "m" else "hours",
            "interval": interval,
        }

    if head == "daily":
        if len(tokens) != 2:
            raise ValueError("Usage: daily <HH:MM>")
        hour, minute = _parse_hhmm(tokens[1])
        return {"type": "daily", "hour": hour, "minute": minute}

    if head == "weekly":
        if len(tokens) != 3:
            raise ValueError("Usage: weekly <day[,day...]> <HH:MM>")
        days = _parse_days(tokens[1])
        hour, minute = _parse_hhmm(tokens[2])
        return {"type": "weekly", "days": days, "hour": hour, "minute": minute}

    raise ValueError("Unsupported schedule. Use: every|daily|weekly")


def schedule_to_text(schedule: dict[str, Any]) -> str:
    """Render schedule dict into compact human text."""
    typ = str(schedule.get("type", "")).strip().lower()
    if typ == "interval":
        unit = str(schedule.get("unit", "minutes")).lower()
        suffix = "m" if unit.startswith("minute") else "h"
        return f"every {int(schedule.get('interval', 0))}{suffix}"
    clock = f"{int(schedule.get('hour', 0)):02d}:{int(schedule.get('minute', 0)):02d}"
    if typ == "daily":
        return f"daily {clock}"
    if typ == "weekly":
        days = ",".join(_DAY_NAMES[d] for d in schedule.get("days", []) if 0 <= int(d) < 7)
        return f"weekly {days} {clock}"
    return "unknown"


def _interval_delta(schedule: dict[str, Any]) -> timedelta:
    interval = max(1, int(schedule.get("interval", 1)))
    unit = str(schedule.get("unit", "minutes")).lower()
    return timedelta(minutes=interval if unit.startswith("minute") else interval * 60)


def _slot_days(schedule: dict[str, Any]) -> set[int]:
    if str(schedule.get("type", "")).lower() == "daily":
        return set(range(7))
    days = {int(d) for d in schedule.get("days", []) if 0 <= int(d) < 7}
    if not days:
        raise ValueError("Weekly schedule has no days")
    return days


def previous_slot(schedule: dict[str, Any], now: datetime) -> datetime:
    """Latest daily/weekly slot at or before ``now``."""
    hour = int(schedule.get("hour", 0))
    minute = int(schedule.get("minute", 0))
    days = _slot_days(schedule)
    for back in range(8):
        day = now - timedelta(days=back)
        candidate = day.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate.weekday() in days and candidate <= now:
            return candidate
    raise ValueError("No slot found within a week")


def compute_next_run(schedule: dict[str, Any], now: datetime | None = None) -> datetime:
    """Compute the next run strictly after ``now``."""
    current = now or now_local()
    typ = str(schedule.get("type", "")).strip().lower()

    if typ == "interval":
        return current + _interval_delta(schedule)

    if typ in ("daily", "weekly"):
        hour = int(schedule.get("hour", 0))
        minute = int(schedule.get("minute", 0))
        days = _slot_days(schedule)
        for ahead in range(8):
            day = current + timedelta(days=ahead)
            candidate = day.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if candidate.weekday() in days and candidate > current:
                return candidate

    raise ValueError("Unknown schedule type")


def is_due(schedule: dict[str, Any], last_run_at: datetime | None, now: datetime | None = None) -> bool:
    """True when a scheduled slot has passed since ``last_run_at``.

    Interval tasks that never ran are due at once; daily and weekly tasks
    that never ran are due once their most recent slot has passed.
    """
    current = now or now_local()
    typ = str(schedule.get("type", "")).strip().lower()
    if typ == "interval":
        return last_run_at is None or current >= last_run_at + _interval_delta(schedule)
    if typ in ("daily", "weekly"):
        slot = previous_slot(schedule, current)
        return last_run_at is None or last_run_at < slot
    raise ValueError("Unknown schedule type")
