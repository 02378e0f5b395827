"""
Due Date Parser

Parses free-text day/month/time expressions into absolute timestamps in the
configured timezone baseline.

Accepted grammars, tried in order:
1. <day> <month-name> <time>      "20 dec 5:30pm"
2. <month-name> <day> <time>      "dec 20 5:30pm"
3. <day> <month-number> <time>    "20 12 5:30pm"
4. <time>                         "5:30pm", "8:00", "3pm" (today)
5. <day>[ <time>]                 "5", "15 3pm" (rolls to next month if day has passed)

<time> is <h>[:<mm>][am|pm] on a 12-hour clock. A time without am/pm is
returned with needs_clarification set and the raw hour in ambiguous_hour;
the caller asks the user and then calls apply_meridiem().

Parse failures are returned as a result with error set, never raised.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------
DAYS_IN_MONTH = [31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]

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

FORMAT_EXAMPLES = (
    "- 20 dec 5:30pm\n"
    "- dec 20 5:30pm\n"
    "- 20 12 5:30pm\n"
    "- 5:30pm\n"
    "- 5 5:00pm"
)
FORMAT_HELP = f"Invalid format. Please use formats like:\n{FORMAT_EXAMPLES}"

# Longest names first so "december" is not matched as "dec" + garbage
_MONTH_RE = "|".join(sorted(MONTHS, key=len, reverse=True))
_TIME_RE = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?"

DAY_MONTH_NAME = re.compile(rf"^(\d{{1,2}})\s+({_MONTH_RE})\s+{_TIME_RE}$")
MONTH_NAME_DAY = re.compile(rf"^({_MONTH_RE})\s+(\d{{1,2}})\s+{_TIME_RE}$")
DAY_MONTH_NUMBER = re.compile(rf"^(\d{{1,2}})\s+(\d{{1,2}})\s+{_TIME_RE}$")
# Time only needs a colon or a meridiem, otherwise "5" would be a time
TIME_ONLY = re.compile(r"^(\d{1,2})(?::(\d{2})\s*(am|pm)?|\s*(am|pm))$")
DAY_ONLY = re.compile(rf"^(\d{{1,2}})(?:\s+{_TIME_RE})?$")


@dataclass
class ParseResult:
    """Outcome of a parse. date is None iff error is set."""
    date: Optional[datetime] = None
    has_time_component: bool = False
    needs_clarification: bool = False
    ambiguous_hour: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.date is not None


def failure(message: str) -> ParseResult:
    return ParseResult(error=message)


def is_valid_day(day: int, month: int) -> bool:
    """month is 1-based. February always has 28 days here."""
    if month < 1 or month > 12:
        return False
    return 1 <= day <= DAYS_IN_MONTH[month - 1]


def is_valid_time(hour: int, minute: int) -> bool:
    return 1 <= hour <= 12 and 0 <= minute <= 59


def to_24_hour(hour: int, meridiem: str) -> int:
    """12-hour clock to 24-hour clock."""
    if meridiem == "pm" and hour < 12:
        return hour + 12
    if meridiem == "am" and hour == 12:
        return 0
    return hour


def apply_meridiem(date: datetime, ambiguous_hour: int, meridiem: str) -> datetime:
    """
    Resolve a clarified hour on a date returned with needs_clarification.

    The stored hour is the raw hour the user typed; the chosen meridiem is
    reapplied from ambiguous_hour so calling this twice is harmless.
    """
    meridiem = meridiem.lower()
    if meridiem not in ("am", "pm"):
        raise ValueError(f"Unknown meridiem: {meridiem}")
    return date.replace(hour=to_24_hour(ambiguous_hour, meridiem))


class DateTimeParser:
    """Parser bound to one timezone baseline."""

    def __init__(self, timezone: Optional[ZoneInfo] = None):
        self.timezone = timezone or ZoneInfo("UTC")

    def _reference(self, reference_now: Optional[datetime]) -> datetime:
        if reference_now is None:
            return datetime.now(self.timezone).replace(tzinfo=None)
        if reference_now.tzinfo is not None:
            return reference_now.astimezone(self.timezone).replace(tzinfo=None)
        return reference_now

    def parse(self, text: str, reference_now: Optional[datetime] = None) -> ParseResult:
        """Parse text relative to reference_now (naive local time in the baseline zone)."""
        now = self._reference(reference_now)
        clean = " ".join((text or "").lower().split())
        if not clean:
            return failure(FORMAT_HELP)

        match = DAY_MONTH_NAME.match(clean)
        if match:
            day, month_name, hour, minute, meridiem = match.groups()
            return self._dated(now.year, MONTHS[month_name], int(day), hour, minute, meridiem)

        match = MONTH_NAME_DAY.match(clean)
        if match:
            month_name, day, hour, minute, meridiem = match.groups()
            return self._dated(now.year, MONTHS[month_name], int(day), hour, minute, meridiem)

        match = DAY_MONTH_NUMBER.match(clean)
        if match:
            day, month, hour, minute, meridiem = match.groups()
            return self._dated(now.year, int(month), int(day), hour, minute, meridiem)

        match = TIME_ONLY.match(clean)
        if match:
            hour, minute, meridiem_after_minutes, bare_meridiem = match.groups()
            return self._timed(
                now.replace(second=0, microsecond=0),
                hour, minute, meridiem_after_minutes or bare_meridiem,
            )

        match = DAY_ONLY.match(clean)
        if match:
            day, hour, minute, meridiem = match.groups()
            return self._day_of_month(now, int(day), hour, minute, meridiem)

        return failure(FORMAT_HELP)

    # -------------------------------------------------------------------------
    # Grammar handlers
    # -------------------------------------------------------------------------

    def _dated(
        self,
        year: int,
        month: int,
        day: int,
        hour: str,
        minute: Optional[str],
        meridiem: Optional[str],
    ) -> ParseResult:
        if not is_valid_day(day, month):
            return failure("Invalid date")
        return self._timed(datetime(year, month, day), hour, minute, meridiem)

    def _day_of_month(
        self,
        now: datetime,
        day: int,
        hour: Optional[str],
        minute: Optional[str],
        meridiem: Optional[str],
    ) -> ParseResult:
        year, month = now.year, now.month
        if day < now.day:
            month += 1
            if month > 12:
                month = 1
                year += 1

        if not is_valid_day(day, month):
            return failure("Invalid date")

        base = datetime(year, month, day)
        if hour is None:
            return ParseResult(
                date=base.replace(hour=23, minute=59, second=59),
                has_time_component=False,
            )
        return self._timed(base, hour, minute, meridiem)

    def _timed(
        self,
        base: datetime,
        hour_text: str,
        minute_text: Optional[str],
        meridiem: Optional[str],
    ) -> ParseResult:
        hour = int(hour_text)
        minute = int(minute_text) if minute_text else 0
        if not is_valid_time(hour, minute):
            return failure("Invalid time")

        if meridiem is None:
            return ParseResult(
                date=base.replace(hour=hour % 24, minute=minute, second=0, microsecond=0),
                has_time_component=True,
                needs_clarification=True,
                ambiguous_hour=hour,
            )

        return ParseResult(
            date=base.replace(hour=to_24_hour(hour, meridiem), minute=minute, second=0, microsecond=0),
            has_time_component=True,
        )


def format_due(date: Optional[datetime], has_time_component: bool = True) -> str:
    """Human-readable due date, e.g. 'December 20, 2025 at 5:30 PM'."""
    if date is None:
        return "Not specified"
    day_part = f"{date.strftime('%B')} {date.day}, {date.year}"
    if not has_time_component:
        return f"{day_part} (end of day)"
    hour = date.hour % 12 or 12
    meridiem = "AM" if date.hour < 12 else "PM"
    return f"{day_part} at {hour}:{date.minute:02d} {meridiem}"
