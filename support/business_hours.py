"""
Business-hours evaluation for support queues.

Resolution order for the calendar date of ``now`` in the queue's timezone:
  1. a per-date exception list, if present, wins outright (empty = closed all day)
  2. a date listed in ``holidays`` is closed with reason "holiday"
  3. otherwise the weekday's windows apply

Windows are inclusive on both ends ("09:00"–"18:00" is open at 18:00 and
closed at 18:01). A queue without a config, timezone or schedule is
always open.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from models.schemas import HoursWindow, QueueBusinessHoursConfig

logger = structlog.get_logger()

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

REASON_HOLIDAY = "holiday"
REASON_CLOSED = "closed"


@dataclass(frozen=True)
class HoursDecision:
    open: bool
    reason: Optional[str] = None


def _minutes(hhmm: str, default: str) -> int:
    try:
        hours, minutes = (int(part) for part in str(hhmm or default).split(":")[:2])
    except ValueError:
        hours, minutes = (int(part) for part in default.split(":"))
    return hours * 60 + minutes


def _within(windows: list[HoursWindow], minute_of_day: int) -> bool:
    return any(
        _minutes(w.start, "00:00") <= minute_of_day <= _minutes(w.end, "23:59")
        for w in windows
    )


def evaluate(config: Optional[QueueBusinessHoursConfig], now: Optional[datetime] = None) -> HoursDecision:
    """Decide whether the queue described by ``config`` is open at ``now``."""
    if config is None or not config.timezone:
        return HoursDecision(open=True)

    try:
        tz = ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("business_hours_bad_timezone", queue=config.queue_name, timezone=config.timezone)
        return HoursDecision(open=True)

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    iso_date = local.date().isoformat()
    minute_of_day = local.hour * 60 + local.minute

    if iso_date in config.exceptions:
        windows = config.exceptions[iso_date]
    elif iso_date in config.holidays:
        return HoursDecision(open=False, reason=REASON_HOLIDAY)
    elif not config.hours:
        return HoursDecision(open=True)
    else:
        windows = config.hours.get(WEEKDAY_KEYS[local.weekday()], [])

    if _within(windows, minute_of_day):
        return HoursDecision(open=True)
    return HoursDecision(open=False, reason=REASON_CLOSED)
