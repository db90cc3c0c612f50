from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifyhub.core.errors import ScheduleError


def parse_schedule_time(value: Any, timezone_name: str | None = None) -> datetime | None:
    # Naive timestamps are read in the sender's timezone; the result is always UTC.
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ScheduleError(f"scheduled_at is not an ISO-8601 timestamp: {value}") from exc
    else:
        raise ScheduleError("scheduled_at must be an ISO-8601 timestamp")
    if parsed.tzinfo is None:
        zone_name = str(timezone_name or "UTC").strip() or "UTC"
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ScheduleError(f"timezone is unknown: {zone_name}") from exc
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(timezone.utc)


def require_future(scheduled_at: datetime, now: datetime) -> None:
    if scheduled_at <= now:
        raise ScheduleError(f"cannot schedule a notification in the past: {scheduled_at.isoformat()}")
