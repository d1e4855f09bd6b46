from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Iterable, Optional

from ticket_dates import NormalizedInstant, to_display_instant

UNSOLVED_PATTERN = re.compile(r"open|pending|in[-\s]?progress|waiting|todo")
RESOLVED_PATTERN = re.compile(r"resolved|closed|done|completed")
BRAND_SUFFIXES = ("com", "au")
DEFAULT_BRAND_LIMIT = 8

DATE_COLUMNS = {"created_at", "updated_at", "first_reply_at"}
TEXT_COLUMNS = {"ticket_id", "subject", "brand", "status", "assigned_to", "client_name", "client_email"}

_BRAND_SEPARATOR_RE = re.compile(r"(\s+|\.+)")
_BRAND_LEADING_RE = re.compile(r"^[\s_]+")
_BRAND_SUFFIX_RE = re.compile(r"\.(%s)\b" % "|".join(BRAND_SUFFIXES), re.IGNORECASE)


@dataclass(frozen=True)
class DayBucket:
    key: str
    label: str
    count: int


@dataclass(frozen=True)
class DayComparison:
    today: int
    yesterday: int
    diff: int
    percent: int
    positive: bool


def field(record: Any, name: str) -> Any:
    """Read ``name`` from a dict-like row or an ORM object."""

    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def select_created(record: Any) -> Optional[str]:
    return field(record, "created_at")


def select_updated_or_created(record: Any) -> Optional[str]:
    return field(record, "updated_at") or field(record, "created_at")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _instants(
    records: Iterable[Any],
    selector: Callable[[Any], Optional[str]],
    now: Optional[datetime],
) -> Iterable[NormalizedInstant]:
    for record in records:
        instant = to_display_instant(selector(record), now=now)
        if instant is not None:
            yield instant


def _day_label(day: date) -> str:
    return f"{day:%b} {day.day}"


# --------------------------------------------------------------------------------------
# Day bucketing
# --------------------------------------------------------------------------------------


def bucket_by_day(
    records: Iterable[Any],
    selector: Callable[[Any], Optional[str]] = select_updated_or_created,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> list[DayBucket]:
    counts: Counter[date] = Counter()
    for instant in _instants(records, selector, now):
        counts[instant.calendar_day(tz)] += 1
    return [
        DayBucket(key=day.isoformat(), label=_day_label(day), count=counts[day])
        for day in sorted(counts)
    ]


def count_on_day(
    records: Iterable[Any],
    target: datetime,
    selector: Callable[[Any], Optional[str]] = select_created,
    local_day: Optional[date] = None,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> int:
    """Count records falling on the day of ``target``.

    UTC-tagged records are compared against ``target``'s UTC date; the rest
    against the local calendar day, which ``local_day`` overrides.
    """

    if target.tzinfo is None:
        target = target.replace(tzinfo=tz) if tz is not None else target.astimezone()
    utc_day = target.astimezone(timezone.utc).date()
    if local_day is None:
        local_day = target.astimezone(tz).date()

    total = 0
    for instant in _instants(records, selector, now or target):
        expected = utc_day if instant.is_utc else local_day
        if instant.calendar_day(tz) == expected:
            total += 1
    return total


def percent_delta(current: int, previous: int) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return _round_half_up((current - previous) / previous * 100)


def compare_today_yesterday(
    records: Iterable[Any],
    now: datetime,
    selector: Callable[[Any], Optional[str]] = select_created,
    tz: Optional[tzinfo] = None,
) -> DayComparison:
    """Today vs yesterday counts.

    On the UTC path "yesterday" is exactly 24 hours before ``now``; on the
    local path it is the calendar day before today.
    """

    records = list(records)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz) if tz is not None else now.astimezone()
    local_today = now.astimezone(tz).date()

    today = count_on_day(records, now, selector, local_day=local_today, now=now, tz=tz)
    yesterday = count_on_day(
        records,
        now - timedelta(hours=24),
        selector,
        local_day=local_today - timedelta(days=1),
        now=now,
        tz=tz,
    )
    diff = today - yesterday
    return DayComparison(
        today=today,
        yesterday=yesterday,
        diff=diff,
        percent=percent_delta(today, yesterday),
        positive=diff >= 0,
    )


# --------------------------------------------------------------------------------------
# Brands
# --------------------------------------------------------------------------------------


def normalize_brand(name: Optional[str]) -> str:
    if not name:
        return "Unknown"
    brand = _BRAND_LEADING_RE.sub("", str(name)).strip()
    if not brand:
        return "Unknown"
    parts = []
    for part in _BRAND_SEPARATOR_RE.split(brand):
        if not part:
            continue
        if part.isspace():
            parts.append(" ")
        elif part.startswith("."):
            parts.append(part)
        else:
            # upper() can expand a character ("ß" -> "SS"); keep one
            parts.append(part[:1].upper()[:1] + part[1:].lower())
    return _BRAND_SUFFIX_RE.sub(lambda m: "." + m.group(1).lower(), "".join(parts))


def group_by_brand(records: Iterable[Any], limit: Optional[int] = None) -> list[tuple[str, int]]:
    counter: Counter[str] = Counter(normalize_brand(field(r, "brand")) for r in records)
    return counter.most_common(limit)


# --------------------------------------------------------------------------------------
# Status and reply time
# --------------------------------------------------------------------------------------


def _status_text(record: Any) -> str:
    return str(field(record, "status") or "").lower()


def count_unsolved(records: Iterable[Any]) -> int:
    return sum(1 for r in records if UNSOLVED_PATTERN.search(_status_text(r)))


def count_resolved(records: Iterable[Any]) -> int:
    return sum(1 for r in records if RESOLVED_PATTERN.search(_status_text(r)))


def _elapsed_minutes(
    later: Optional[str],
    earlier: Optional[str],
    now: Optional[datetime],
    tz: Optional[tzinfo],
) -> Optional[float]:
    end = to_display_instant(later, now=now)
    start = to_display_instant(earlier, now=now)
    if end is None or start is None:
        return None
    delta = end.timestamp(tz) - start.timestamp(tz)
    if delta < 0:
        return None
    return delta / 60


def average_first_reply_minutes(
    records: Iterable[Any],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> int:
    minutes: list[float] = []
    for record in records:
        explicit = field(record, "first_reply_minutes")
        if isinstance(explicit, (int, float)) and not isinstance(explicit, bool):
            minutes.append(float(explicit))
            continue
        created = field(record, "created_at")
        value = _elapsed_minutes(field(record, "first_reply_at"), created, now, tz)
        if value is None:
            value = _elapsed_minutes(field(record, "updated_at"), created, now, tz)
        if value is not None:
            minutes.append(value)
    if not minutes:
        return 0
    return _round_half_up(sum(minutes) / len(minutes))


# --------------------------------------------------------------------------------------
# Ticket table
# --------------------------------------------------------------------------------------


def filter_tickets(
    records: Iterable[Any],
    status: Optional[str] = None,
    brand: Optional[str] = None,
    query: Optional[str] = None,
) -> list[Any]:
    status = (status or "").strip().lower()
    brand_label = normalize_brand(brand) if (brand or "").strip() else ""
    query = (query or "").strip().lower()

    rows = []
    for record in records:
        if status and _status_text(record) != status:
            continue
        if brand_label and normalize_brand(field(record, "brand")) != brand_label:
            continue
        if query:
            haystack = " ".join(
                str(field(record, name) or "")
                for name in ("ticket_id", "subject", "client_name", "client_email")
            ).lower()
            if query not in haystack:
                continue
        rows.append(record)
    return rows


def sort_tickets(records: Iterable[Any], key: str = "updated_at", descending: bool = True) -> list[Any]:
    """Sort table rows; unparseable or missing dates always sink to the bottom."""

    rows = list(records)
    if key in DATE_COLUMNS:
        dated, undated = [], []
        for record in rows:
            instant = to_display_instant(field(record, key))
            if instant is None:
                undated.append(record)
            else:
                dated.append((instant.timestamp(), record))
        dated.sort(key=lambda pair: pair[0], reverse=descending)
        return [record for _, record in dated] + undated
    if key in TEXT_COLUMNS:
        if key == "brand":
            return sorted(rows, key=lambda r: normalize_brand(field(r, "brand")).lower(), reverse=descending)
        return sorted(rows, key=lambda r: str(field(r, key) or "").lower(), reverse=descending)
    raise ValueError(f"Unsupported sort column: {key}")


# --------------------------------------------------------------------------------------
# Dashboard payload
# --------------------------------------------------------------------------------------


def summarize(
    records: Iterable[Any],
    now: datetime,
    tz: Optional[tzinfo] = None,
    brand_limit: int = DEFAULT_BRAND_LIMIT,
) -> dict:
    records = list(records)
    per_day = bucket_by_day(records, now=now, tz=tz)
    resolved = count_resolved(records)
    days = max(len(per_day), 1)
    comparison = compare_today_yesterday(records, now, tz=tz)
    return {
        "total": len(records),
        "unsolved": count_unsolved(records),
        "resolved": resolved,
        "avg_first_reply_minutes": average_first_reply_minutes(records, now=now, tz=tz),
        "tickets_per_day": [asdict(bucket) for bucket in per_day],
        "avg_created_per_day": _round_half_up(sum(b.count for b in per_day) / days),
        "avg_resolved_per_day": _round_half_up(resolved / days),
        "today_vs_yesterday": asdict(comparison),
        "brands": [{"brand": name, "count": count} for name, count in group_by_brand(records, brand_limit)],
    }
