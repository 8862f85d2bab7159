"""
Daily-eligibility gate.

Rate-limited rewards reset on calendar-day boundaries in a reference
timezone, not on a rolling 24h window: a spin at 23:59 allows another
spin at 00:00.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz

from .models import Eligibility


def local_day(moment: datetime, tz) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date()


def day_start(day: date, tz) -> datetime:
    return tz.localize(datetime.combine(day, time.min))


def next_day_start(moment: datetime, tz) -> datetime:
    """Local midnight following the day ``moment`` falls on."""
    return day_start(local_day(moment, tz) + timedelta(days=1), tz)


def same_day(first: Optional[datetime], second: datetime, tz) -> bool:
    if first is None:
        return False
    return local_day(first, tz) == local_day(second, tz)


def check_daily_eligibility(
    last_action_at: Optional[datetime],
    now: datetime,
    tz=pytz.utc,
) -> Eligibility:
    if same_day(last_action_at, now, tz):
        return Eligibility(eligible=False, next_available_at=next_day_start(last_action_at, tz))
    return Eligibility(eligible=True)


def count_today(counter: int, last_action_at: Optional[datetime], now: datetime, tz=pytz.utc) -> int:
    """A counter stamped on an earlier day counts as zero."""
    return counter if same_day(last_action_at, now, tz) else 0


def check_daily_limit(
    counter: int,
    limit: int,
    last_action_at: Optional[datetime],
    now: datetime,
    tz=pytz.utc,
) -> Eligibility:
    if count_today(counter, last_action_at, now, tz) < limit:
        return Eligibility(eligible=True)
    return Eligibility(eligible=False, next_available_at=next_day_start(now, tz))


def check_cooldown(last_action_at: Optional[datetime], now: datetime, seconds: int) -> Eligibility:
    if last_action_at is None or seconds <= 0:
        return Eligibility(eligible=True)
    available_at = last_action_at + timedelta(seconds=seconds)
    if now >= available_at:
        return Eligibility(eligible=True)
    return Eligibility(eligible=False, next_available_at=available_at)
