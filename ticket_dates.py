from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from email.utils import parsedate_to_datetime
from typing import Optional

logger = logging.getLogger(__name__)

STORAGE_FORMAT = "%Y-%m-%d %H:%M:%S"
API_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
MIN_YEAR = 2000
MAX_YEAR_AHEAD = 2

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

# Longest names first so "september" wins over "sep".
_MONTH_NAMES = "|".join(sorted(MONTHS, key=len, reverse=True))

_ORDINAL_RE = re.compile(r"(\d+)(st|nd|rd|th)\b", re.IGNORECASE)
_FROM_IP_RE = re.compile(r"from IP\s*(?:[0-9:][0-9A-Fa-f.:]*)?", re.IGNORECASE)
_LABEL_WORDS_RE = re.compile(r"Updated|Created", re.IGNORECASE)
_GMT_OFFSET_RE = re.compile(r"\s*GMT\s*[+-]\d{2}:?\d{2}(?:\s*\([^)]*\))?\s*$", re.IGNORECASE)

_RFC2822_RE = re.compile(r"^(?:[A-Za-z]{3},\s*)?\d{1,2}\s+[A-Za-z]{3}\s+\d{4}\s+\d{1,2}:\d{2}")
_ISO_UTC_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?Z$")

_MONTH_DAY_TIME_RE = re.compile(
    rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})\b,?\s*(\d{{4}})?,?\s*"
    r"(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AP]M)?",
    re.IGNORECASE,
)
_MONTH_DAY_RE = re.compile(
    rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})\b(?:,?\s*(\d{{4}})\b)?",
    re.IGNORECASE,
)
_YEAR_FIRST_RE = re.compile(r"\b(\d{4})[-/](\d{1,2})[-/](\d{1,2})\b")
_MONTH_FIRST_RE = re.compile(r"\b(\d{1,2})[-/](\d{1,2})[-/](\d{4})\b")


@dataclass(frozen=True)
class NormalizedInstant:
    """A parsed timestamp plus whether the source string carried a UTC marker.

    ``value`` is naive when the source had no offset; such values are wall-clock
    times in the dashboard's local zone.
    """

    value: datetime
    is_utc: bool = False

    def local(self, tz: Optional[tzinfo] = None) -> datetime:
        if self.value.tzinfo is None:
            return self.value
        return self.value.astimezone(tz)

    def utc(self, tz: Optional[tzinfo] = None) -> datetime:
        return self.aware(tz).astimezone(timezone.utc)

    def aware(self, tz: Optional[tzinfo] = None) -> datetime:
        if self.value.tzinfo is not None:
            return self.value
        if tz is not None:
            return self.value.replace(tzinfo=tz)
        return self.value.astimezone()

    def timestamp(self, tz: Optional[tzinfo] = None) -> float:
        return self.aware(tz).timestamp()

    def calendar_day(self, tz: Optional[tzinfo] = None) -> date:
        if self.is_utc:
            return self.utc(tz).date()
        return self.local(tz).date()

    def day_key(self, tz: Optional[tzinfo] = None) -> str:
        return self.calendar_day(tz).isoformat()


def clean_timestamp(raw: Optional[str]) -> str:
    if raw is None:
        return ""
    text = _ORDINAL_RE.sub(r"\1", str(raw))
    text = _FROM_IP_RE.sub(" ", text)
    text = _LABEL_WORDS_RE.sub("", text)
    text = _GMT_OFFSET_RE.sub("", text)
    return " ".join(text.split())


def is_iso_utc(raw: Optional[str]) -> bool:
    if not raw:
        return False
    return bool(_ISO_UTC_RE.match(str(raw).strip()))


def _year_in_range(value: datetime, now: datetime) -> bool:
    return MIN_YEAR <= value.year <= now.year + MAX_YEAR_AHEAD


def _parse_native(text: str) -> Optional[datetime]:
    candidate = text
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        pass
    if not _RFC2822_RE.match(text):
        return None
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None


def _to_24_hour(hour: int, marker: Optional[str]) -> int:
    if not marker:
        return hour
    marker = marker.upper()
    if marker == "AM" and hour == 12:
        return 0
    if marker == "PM" and hour < 12:
        return hour + 12
    return hour


def _parse_month_day_time(text: str, now: datetime) -> Optional[datetime]:
    match = _MONTH_DAY_TIME_RE.search(text)
    if not match:
        return None
    month_name, day, year, hour, minute, second, marker = match.groups()
    try:
        return datetime(
            int(year) if year else now.year,
            MONTHS[month_name.lower()],
            int(day),
            _to_24_hour(int(hour), marker),
            int(minute),
            int(second or 0),
        )
    except ValueError:
        return None


def _parse_month_day(text: str, now: datetime) -> Optional[datetime]:
    match = _MONTH_DAY_RE.search(text)
    if not match:
        return None
    month_name, day, year = match.groups()
    try:
        return datetime(int(year) if year else now.year, MONTHS[month_name.lower()], int(day))
    except ValueError:
        return None


def _parse_year_first(text: str, now: datetime) -> Optional[datetime]:  # noqa: ARG001
    match = _YEAR_FIRST_RE.search(text)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def _parse_month_first(text: str, now: datetime) -> Optional[datetime]:  # noqa: ARG001
    # A four-digit leading group means year-first; never reread it as US order.
    if _YEAR_FIRST_RE.search(text):
        return None
    match = _MONTH_FIRST_RE.search(text)
    if not match:
        return None
    month, day, year = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


_STRATEGIES = (
    _parse_month_day_time,
    _parse_month_day,
    _parse_year_first,
    _parse_month_first,
)


def parse_timestamp(raw: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a noisy helpdesk timestamp, returning ``None`` when nothing fits.

    Strategies run in a fixed order and the first result whose year falls in
    ``[2000, now.year + 2]`` wins. There is deliberately no loose last-resort
    parse.
    """

    if now is None:
        now = datetime.now(timezone.utc)
    text = clean_timestamp(raw)
    if not text:
        return None

    parsed = _parse_native(text)
    if parsed is not None and _year_in_range(parsed, now):
        return parsed

    for strategy in _STRATEGIES:
        parsed = strategy(text, now)
        if parsed is not None and _year_in_range(parsed, now):
            return parsed

    logger.debug("Unparseable timestamp: %r", raw)
    return None


def to_display_instant(
    raw: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[NormalizedInstant]:
    """Return the parsed instant for aggregation, or ``None`` for Unknown."""

    parsed = parse_timestamp(raw, now=now)
    if parsed is None:
        return None
    return NormalizedInstant(parsed, is_utc=is_iso_utc(raw))


def to_storage_timestamp(
    raw: Optional[str],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> str:
    """Canonical ``YYYY-MM-DD HH:MM:SS`` (UTC, no suffix) for persistence.

    Absent or unparseable input maps to ``now``.
    """

    if now is None:
        now = datetime.now(timezone.utc)
    instant = to_display_instant(raw, now=now) if raw else None
    if instant is None:
        current = now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
        return current.astimezone(timezone.utc).strftime(STORAGE_FORMAT)
    return instant.utc(tz).strftime(STORAGE_FORMAT)


def storage_to_api(stored: Optional[str]) -> Optional[str]:
    if not stored:
        return None
    try:
        value = datetime.strptime(str(stored), STORAGE_FORMAT)
    except ValueError:
        return str(stored)
    return value.strftime(API_FORMAT)


def format_timestamp(raw: Optional[str], tz: Optional[tzinfo] = None) -> str:
    if not raw:
        return "Unknown"
    instant = to_display_instant(raw)
    if instant is None:
        return clean_timestamp(raw) or "Unknown"
    if instant.is_utc:
        return instant.utc(tz).strftime("%b %d, %Y %I:%M %p UTC")
    return instant.local(tz).strftime("%b %d, %Y %I:%M %p")
