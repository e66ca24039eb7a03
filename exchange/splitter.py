from __future__ import annotations
"""
Split / filter a record set by marker creation day (UTC).

Photos follow their markers, so every result keeps the photo-reference
invariant of its input. Markers without a parseable created_at are grouped
under UNKNOWN_DAY and never match a date filter.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from common.logging_setup import get_logger
from common.types import Marker, RecordSet
from common.utils import day_key, parse_iso8601


log = get_logger("exchange.splitter")

UNKNOWN_DAY = "unknown"

DateLike = Union[str, date, datetime]


@dataclass(frozen=True)
class DateRangeSummary:
    earliest: Optional[str]
    latest: Optional[str]
    all_dates: List[str] = field(default_factory=list)
    total_days: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "earliest": self.earliest,
            "latest": self.latest,
            "all_dates": list(self.all_dates),
            "total_days": self.total_days,
        }


def _created(m: Marker) -> Optional[datetime]:
    if not m.created_at:
        return None
    try:
        return parse_iso8601(m.created_at)
    except ValueError:
        return None


def _day(m: Marker) -> str:
    if _created(m) is None:
        return UNKNOWN_DAY
    return day_key(m.created_at)


def _bound(v: DateLike, end: bool) -> datetime:
    """A date-only bound covers the whole day: 00:00 for start, 23:59:59.999999 for end."""
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if isinstance(v, date):
        dt = datetime.combine(v, time.min, tzinfo=timezone.utc)
        return dt + timedelta(days=1, microseconds=-1) if end else dt
    s = str(v).strip()
    if len(s) == 10:
        return _bound(date.fromisoformat(s), end)
    return parse_iso8601(s)


def subset(records: RecordSet, markers: Iterable[Marker]) -> RecordSet:
    """The given markers plus exactly the photos that belong to them."""
    kept = tuple(markers)
    ids = {m.id for m in kept}
    return RecordSet(markers=kept, photos=tuple(p for p in records.photos if p.marker_id in ids))


def group_markers_by_day(markers: Iterable[Marker]) -> Dict[str, List[Marker]]:
    out: Dict[str, List[Marker]] = {}
    for m in markers:
        out.setdefault(_day(m), []).append(m)
    return out


def filter_by_date_range(records: RecordSet, start: DateLike, end: DateLike) -> RecordSet:
    """Markers created within [start, end] (inclusive) and their photos."""
    try:
        lo, hi = _bound(start, end=False), _bound(end, end=True)
    except ValueError as e:
        raise ValueError(f"Invalid date range: {e}") from e
    if lo > hi:
        raise ValueError("Invalid date range: start is after end")
    kept = []
    for m in records.markers:
        ts = _created(m)
        if ts is not None and lo <= ts <= hi:
            kept.append(m)
    return subset(records, kept)


def filter_by_dates(records: RecordSet, dates: Iterable[str]) -> RecordSet:
    wanted = set(dates)
    return subset(records, (m for m in records.markers if _day(m) in wanted))


def split_by_dates(records: RecordSet, dates: Iterable[str]) -> Dict[str, RecordSet]:
    """One record set per requested day, in request order; days without markers are skipped."""
    days = list(dict.fromkeys(dates))
    if not days:
        raise ValueError("At least one date is required")
    grouped = group_markers_by_day(records.markers)
    out: Dict[str, RecordSet] = {}
    for d in days:
        if d not in grouped:
            log.warning("No markers for date", extra={"extra": {"date": d}})
            continue
        out[d] = subset(records, grouped[d])
    log.info("Split record set", extra={"extra": {"requested": len(days), "splits": len(out)}})
    return out


def date_range_summary(records: RecordSet) -> DateRangeSummary:
    days = sorted(d for d in group_markers_by_day(records.markers) if d != UNKNOWN_DAY)
    if not days:
        return DateRangeSummary(None, None, [], 0)
    return DateRangeSummary(days[0], days[-1], days, len(days))
