"""
Natural-language date/time resolution

Turns phrases like "Monday the 5th at 2pm" into a timezone-qualified
instant. Results are always strictly after the reference day; anything
that cannot be pinned down comes back with a null instant and low
confidence.
"""
import calendar
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from meeting_scheduler.models import Confidence, ResolvedDateTime

logger = logging.getLogger(__name__)

MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

# "sat" and "sun" are left out, they collide with ordinary words
WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5,
    "sunday": 6,
}

ZONE_ABBREVIATIONS = {
    "ET": "America/New_York", "EST": "America/New_York", "EDT": "America/New_York",
    "CT": "America/Chicago", "CST": "America/Chicago", "CDT": "America/Chicago",
    "MT": "America/Denver", "MST": "America/Denver", "MDT": "America/Denver",
    "PT": "America/Los_Angeles", "PST": "America/Los_Angeles", "PDT": "America/Los_Angeles",
    "UTC": "UTC", "GMT": "UTC",
}

ZONE_WORDS = {
    "eastern": "America/New_York",
    "central": "America/Chicago",
    "mountain": "America/Denver",
    "pacific": "America/Los_Angeles",
}

PERIOD_HOURS = {
    "morning": (10, 0),
    "afternoon": (14, 0),
    "evening": (17, 30),
}

_ORDINAL = r"(?:st|nd|rd|th)"

_DATE_ISO = re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b")
_DATE_US = re.compile(
    r"\b(?P<month>\d{1,2})/(?P<day>\d{1,2})(?:/(?P<year>\d{2,4}))?\b"
    r"(?!\s*(?:hours?|hrs?|minutes?|mins?|of\b|an?\b|the\b))"
)
_DATE_MDY = re.compile(
    rf"\b(?P<month>[a-z]{{3,9}})\.?\s+(?:the\s+)?(?P<day>\d{{1,2}}){_ORDINAL}?\b(?:,?\s*(?P<year>\d{{4}}))?"
)
_DATE_DMY = re.compile(
    rf"\b(?P<day>\d{{1,2}}){_ORDINAL}?\s+(?:of\s+)?(?P<month>[a-z]{{3,9}})\b(?:,?\s*(?P<year>\d{{4}}))?"
)
_DAY_OF_MONTH = re.compile(rf"\bthe\s+(?P<day>\d{{1,2}}){_ORDINAL}?\b(?![:.]\d)|\b(?P<bare>\d{{1,2}}){_ORDINAL}\b")
_WEEKDAY = re.compile(r"\b(" + "|".join(sorted(WEEKDAYS, key=len, reverse=True)) + r")\b\.?")

_TIME_12H = re.compile(r"\b(?P<hour>\d{1,2})(?::(?P<minute>[0-5]\d))?\s*(?P<meridiem>a\.?m\.?|p\.?m\.?)(?![a-z])")
_TIME_24H = re.compile(r"\b(?P<hour>[01]?\d|2[0-3]):(?P<minute>[0-5]\d)\b")
_TIME_AT_HOUR = re.compile(rf"\bat\s+(?P<hour>\d{{1,2}})(?![\d:/]|{_ORDINAL})")
_ZONE_ABBREVIATION = re.compile(r"\b(" + "|".join(ZONE_ABBREVIATIONS) + r")\b")
_ZONE_WORD = re.compile(r"\b(" + "|".join(ZONE_WORDS) + r")(?:\s+time)?\b")

_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}


def _lower(a: Confidence, b: Confidence) -> Confidence:
    return a if _RANK[a] <= _RANK[b] else b


def _infer_meridiem(hour: int) -> int:
    """Business-hours guess for a bare hour: 1-6 afternoon, 7-11 morning."""
    if 1 <= hour <= 6:
        return hour + 12
    return hour


class DateTimeResolver:
    """Resolve free-text time expressions against a reference day"""

    def __init__(self, default_hour: int = 10):
        """
        Args:
            default_hour: Local hour used when a date is named without a time
        """
        self.default_hour = default_hour

    def resolve(self, text: str, today: date, timezone: str) -> ResolvedDateTime:
        """
        Resolve free text to an instant.

        Args:
            text: Free text, e.g. "How about Monday the 5th at 2pm?"
            today: Reference day; the result is always after it
            timezone: IANA zone the text is interpreted in

        Returns:
            ResolvedDateTime with an aware instant in `timezone`, or a null
            instant and low confidence
        """
        if not text or not text.strip():
            return ResolvedDateTime(confidence=Confidence.LOW, reasoning="Empty text")

        lowered = " ".join(text.lower().split())
        reasons: List[str] = []
        confidence = Confidence.HIGH

        weekdays = self.find_weekdays(lowered)
        resolved = self._resolve_date(lowered, today, weekdays, reasons)
        clock = self.find_time(lowered)

        if resolved is None:
            if clock is not None:
                reason = "Time given without a date"
            elif re.search(r"\b(today|tonight|this (?:morning|afternoon|evening))\b", lowered):
                reason = "Same-day time requested"
            else:
                reason = "No recognizable date or time"
            reasons.append(reason)
            logger.debug(f"Could not resolve '{text[:80]}': {reason}")
            return ResolvedDateTime(confidence=Confidence.LOW, reasoning="; ".join(reasons))

        target, date_confidence = resolved
        confidence = _lower(confidence, date_confidence)

        if clock is None:
            hour, minute = self.default_hour, 0
            confidence = _lower(confidence, Confidence.MEDIUM)
            reasons.append(f"No time given, using {hour:02d}:00")
        else:
            hour, minute, time_confidence, note = clock
            confidence = _lower(confidence, time_confidence)
            if note:
                reasons.append(note)

        request_zone = ZoneInfo(timezone)
        source_zone = request_zone
        zone_name = self._find_zone(text, lowered)
        if zone_name and zone_name != timezone:
            source_zone = ZoneInfo(zone_name)
            reasons.append(f"Time stated in {zone_name}")

        instant = datetime.combine(target, time(hour, minute), tzinfo=source_zone).astimezone(request_zone)
        if instant.date() <= today:
            reasons.append("Converted time falls on or before the reference day")
            return ResolvedDateTime(confidence=Confidence.LOW, reasoning="; ".join(reasons))

        reasons.insert(0, f"Resolved to {instant.strftime('%A %Y-%m-%d %H:%M')} {timezone}")
        return ResolvedDateTime(instant=instant, confidence=confidence, reasoning="; ".join(reasons))

    def _resolve_date(self, lowered: str, today: date, weekdays: List[int],
                      reasons: List[str]) -> Optional[Tuple[date, Confidence]]:
        """Pick the most specific date named in the text."""
        explicit = self._find_explicit_date(lowered, today, reasons)
        if explicit is not None:
            target, confidence, numeric = explicit
            if numeric and weekdays and target.weekday() not in weekdays:
                # Numeric M/D that contradicts the named weekday
                self._check_weekday(target, weekdays, confidence, reasons)
                return target, Confidence.LOW
            return target, self._check_weekday(target, weekdays, confidence, reasons)

        day = self._find_day_of_month(lowered)
        if day is not None:
            target = self._next_day_of_month(day, today)
            if target is None:
                reasons.append(f"No month has a day {day}")
                return None
            reasons.append(f"Day {day} takes priority over any weekday")
            return target, self._check_weekday(target, weekdays, Confidence.HIGH, reasons)

        if weekdays:
            weekday = weekdays[0]
            days_ahead = (weekday - today.weekday()) % 7 or 7
            target = today + timedelta(days=days_ahead)
            confidence = Confidence.HIGH
            if len(set(weekdays)) > 1:
                confidence = Confidence.MEDIUM
                reasons.append(f"Several weekdays mentioned, using {calendar.day_name[weekday]}")
            else:
                reasons.append(f"Nearest future {calendar.day_name[weekday]}")
            return target, confidence

        if re.search(r"\btomorrow\b", lowered):
            reasons.append("Tomorrow")
            return today + timedelta(days=1), Confidence.HIGH

        return None

    def _find_explicit_date(self, lowered: str, today: date,
                            reasons: List[str]) -> Optional[Tuple[date, Confidence, bool]]:
        candidates = []
        for match in _DATE_ISO.finditer(lowered):
            candidates.append((int(match.group("year")), int(match.group("month")), int(match.group("day")), False))
        for match in _DATE_US.finditer(lowered):
            year = match.group("year")
            if year is not None:
                year = int(year)
                if year < 100:
                    year += 2000
            candidates.append((year, int(match.group("month")), int(match.group("day")), True))
        for pattern in (_DATE_MDY, _DATE_DMY):
            for match in pattern.finditer(lowered):
                month = MONTHS.get(match.group("month"))
                if month is None:
                    continue
                year = match.group("year")
                if pattern is _DATE_DMY and month == 5 and not year and re.match(r"\s+[a-z]", lowered[match.end():]):
                    # "at 10 may work"
                    continue
                candidates.append((int(year) if year else None, month, int(match.group("day")), False))

        for year, month, day, numeric in candidates:
            if not 1 <= month <= 12 or not 1 <= day <= 31:
                continue
            target = self._roll_forward(year, month, day, today)
            if target is None:
                continue
            confidence = Confidence.HIGH
            if year is not None and target.year != year:
                confidence = Confidence.MEDIUM
                reasons.append(f"{year}-{month:02d}-{day:02d} is in the past, rolled forward to {target.isoformat()}")
            else:
                reasons.append(f"Explicit date {target.isoformat()}")
            return target, confidence, numeric
        return None

    def _roll_forward(self, year: Optional[int], month: int, day: int, today: date) -> Optional[date]:
        """First valid date with this month/day strictly after today."""
        year = year if year is not None else today.year
        for offset in range(9):
            try:
                candidate = date(year + offset, month, day)
            except ValueError:
                continue
            if candidate > today:
                return candidate
        return None

    def _find_day_of_month(self, lowered: str) -> Optional[int]:
        match = _DAY_OF_MONTH.search(lowered)
        if not match:
            return None
        day = int(match.group("day") or match.group("bare"))
        return day if 1 <= day <= 31 else None

    def _next_day_of_month(self, day: int, today: date) -> Optional[date]:
        """Nearest future date carrying this day number, skipping short months."""
        first = today.replace(day=1)
        for offset in range(24):
            month_start = first + relativedelta(months=offset)
            if day > calendar.monthrange(month_start.year, month_start.month)[1]:
                continue
            candidate = month_start.replace(day=day)
            if candidate > today:
                return candidate
        return None

    @staticmethod
    def find_weekdays(lowered: str) -> List[int]:
        return [WEEKDAYS[match.group(1)] for match in _WEEKDAY.finditer(lowered)]

    def _check_weekday(self, target: date, weekdays: List[int], confidence: Confidence,
                       reasons: List[str]) -> Confidence:
        if weekdays and target.weekday() not in weekdays:
            named = calendar.day_name[weekdays[0]]
            reasons.append(f"{target.isoformat()} is a {calendar.day_name[target.weekday()]}, not {named}")
            return _lower(confidence, Confidence.MEDIUM)
        return confidence

    @staticmethod
    def find_time(lowered: str) -> Optional[Tuple[int, int, Confidence, Optional[str]]]:
        """
        Find a time of day.

        Returns:
            Tuple of (hour, minute, confidence, note) or None
        """
        if re.search(r"\bnoon\b", lowered):
            return 12, 0, Confidence.HIGH, None

        match = _TIME_12H.search(lowered)
        if match:
            hour = int(match.group("hour"))
            minute = int(match.group("minute") or 0)
            if not 1 <= hour <= 12:
                return None
            if match.group("meridiem").startswith("p"):
                hour = hour % 12 + 12
            else:
                hour = hour % 12
            return hour, minute, Confidence.HIGH, None

        match = _TIME_24H.search(lowered)
        if match:
            hour = int(match.group("hour"))
            minute = int(match.group("minute"))
            if hour >= 7 or hour == 0:
                return hour, minute, Confidence.HIGH, None
            inferred = _infer_meridiem(hour)
            return inferred, minute, Confidence.MEDIUM, f"Assumed {inferred:02d}:{minute:02d} for {hour}:{minute:02d}"

        match = _TIME_AT_HOUR.search(lowered)
        if match:
            hour = int(match.group("hour"))
            if 1 <= hour <= 12:
                inferred = _infer_meridiem(hour)
                return inferred, 0, Confidence.MEDIUM, f"Assumed {inferred:02d}:00 for 'at {hour}'"

        for period, (hour, minute) in PERIOD_HOURS.items():
            if re.search(rf"\b{period}\b", lowered):
                return hour, minute, Confidence.MEDIUM, f"'{period}' taken as {hour:02d}:{minute:02d}"

        return None

    def _find_zone(self, text: str, lowered: str) -> Optional[str]:
        match = _ZONE_ABBREVIATION.search(text)
        if match:
            return ZONE_ABBREVIATIONS[match.group(1)]
        match = _ZONE_WORD.search(lowered)
        if match:
            return ZONE_WORDS[match.group(1)]
        return None
