"""
Candidate meeting slots

Business-day slots at fixed local times, spread one per day first so the
external party gets a choice of days.
"""
import calendar
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from meeting_scheduler.models import ProposedTime

SLOT_TIMES = {
    "morning": time(10, 0),
    "afternoon": time(14, 0),
    "evening": time(17, 30),
}

MIN_LEAD_TIME = timedelta(hours=2)
DEFAULT_HORIZON_DAYS = 21


def _is_avoided(day: date, avoid_days: Iterable[str]) -> bool:
    name = calendar.day_name[day.weekday()].lower()
    return any(name == avoided or name[:3] == avoided[:3] for avoided in avoid_days)


def generate_candidate_slots(
    now: datetime,
    timezone: str,
    date_range_start: Optional[date] = None,
    date_range_end: Optional[date] = None,
    preferred_periods: Iterable[str] = (),
    avoid_days: Iterable[str] = (),
    exclude: Iterable[datetime] = (),
    limit: int = 12,
) -> List[datetime]:
    """
    Generate candidate start times, earliest days first.

    Args:
        now: Current time (aware)
        timezone: IANA zone the slot times are expressed in
        date_range_start: First allowed day (defaults to tomorrow)
        date_range_end: Last allowed day (defaults to three weeks out)
        preferred_periods: Subset of morning/afternoon/evening
        avoid_days: Weekday names never to propose
        exclude: Start instants already offered or known to be taken
        limit: Maximum number of candidates

    Returns:
        Aware datetimes in `timezone`; one rotated slot per day comes first,
        remaining same-day slots after
    """
    zone = ZoneInfo(timezone)
    local_now = now.astimezone(zone)
    tomorrow = local_now.date() + timedelta(days=1)
    day = max(tomorrow, date_range_start) if date_range_start else tomorrow
    last_day = date_range_end or day + timedelta(days=DEFAULT_HORIZON_DAYS)

    periods = [p for p in SLOT_TIMES if p in set(preferred_periods)] or list(SLOT_TIMES)
    avoid = [a.lower() for a in avoid_days]
    excluded = {e.astimezone(dt_timezone.utc) for e in exclude}

    primary: List[datetime] = []
    secondary: List[datetime] = []
    day_index = 0
    while day <= last_day and len(primary) < limit:
        if day.weekday() < 5 and not _is_avoided(day, avoid):
            day_slots = []
            for period in periods:
                start = datetime.combine(day, SLOT_TIMES[period], tzinfo=zone)
                if start - now < MIN_LEAD_TIME:
                    continue
                if start.astimezone(dt_timezone.utc) in excluded:
                    continue
                day_slots.append(start)
            if day_slots:
                pick = day_index % len(day_slots)
                primary.append(day_slots[pick])
                secondary.extend(s for i, s in enumerate(day_slots) if i != pick)
                day_index += 1
        day += timedelta(days=1)

    return (primary + secondary)[:limit]


def format_slot(start: datetime, timezone: str) -> str:
    """
    Human-readable slot, e.g. "Tuesday, January 6 at 10:00 AM EST".
    """
    local = start.astimezone(ZoneInfo(timezone))
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return (
        f"{local.strftime('%A')}, {local.strftime('%B')} {local.day} "
        f"at {hour}:{local.minute:02d} {meridiem} {local.tzname()}"
    )


def to_proposed_time(start: datetime, timezone: str) -> ProposedTime:
    return ProposedTime(
        start_utc=start.astimezone(dt_timezone.utc),
        display=format_slot(start, timezone),
        timezone=timezone,
    )
