from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from dateutil.rrule import rruleset, rrulestr

from yogacal.models import ExternalEventInstance
from yogacal.timezones import resolve_zone, to_utc


logger = logging.getLogger(__name__)

UNTIL_UTC_PATTERN = re.compile(r"UNTIL=(\d{8}T\d{6})Z", re.IGNORECASE)
DEFAULT_MAX_OCCURRENCES = 1000


@dataclass
class CalendarEntry:
    """A master VEVENT with wall-clock times in ``tzid`` (None means UTC/floating).

    ``zone`` holds the tzinfo the feed itself defined for ``tzid``, if any.
    """

    uid: str
    start: datetime
    end: datetime
    tzid: str | None = None
    rrule: str | None = None
    exdates: list[datetime] = field(default_factory=list)
    title: str = ""
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    all_day: bool = False
    recurrence_id: datetime | None = None
    zone: tzinfo | None = None

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def wall_clock(value: datetime | date, tzid: str | None, defined_zone: tzinfo | None = None) -> datetime:
    """Naive wall-clock datetime of ``value`` as seen in ``tzid``."""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value
    zone = (resolve_zone(tzid) or defined_zone) if tzid else timezone.utc
    if zone is None:
        return value.replace(tzinfo=None)
    return value.astimezone(zone).replace(tzinfo=None)


def recurrence_key(value: datetime, all_day: bool = False) -> str:
    if all_day:
        return value.date().isoformat()
    return value.isoformat()


def _localize_until(rule: str, tzid: str | None, defined_zone: tzinfo | None = None) -> str:
    # dateutil rejects a UTC UNTIL next to a naive DTSTART.
    def _replace(match: re.Match[str]) -> str:
        until_utc = datetime.strptime(match.group(1), "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
        local = wall_clock(until_utc, tzid, defined_zone)
        return f"UNTIL={local.strftime('%Y%m%dT%H%M%S')}"

    return UNTIL_UTC_PATTERN.sub(_replace, rule)


def make_instance(entry: CalendarEntry, start: datetime, recurrence_id: str) -> ExternalEventInstance:
    # Wall-clock duration is kept across DST changes; each end is normalised on its own.
    end = start + entry.duration
    tzid = None if entry.all_day else entry.tzid
    return ExternalEventInstance(
        uid=entry.uid,
        recurrence_id=recurrence_id,
        start=to_utc(start, tzid, entry.zone),
        end=to_utc(end, tzid, entry.zone),
        title=entry.title,
        description=entry.description,
        location=entry.location,
        status=entry.status,
        source_timezone=tzid,
    )


def occurrence_starts(
    entry: CalendarEntry,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[datetime]:
    """Wall-clock starts of ``entry``'s RRULE overlapping the UTC window, EXDATEs removed."""
    rule_text = str(entry.rrule or "").strip()
    if rule_text.upper().startswith("RRULE:"):
        rule_text = rule_text[len("RRULE:"):]
    rule_set = rruleset()
    rule_set.rrule(rrulestr(_localize_until(rule_text, entry.tzid, entry.zone), dtstart=entry.start))
    excluded = {wall_clock(item, entry.tzid, entry.zone) for item in entry.exdates}
    excluded_days = {item.date() for item in excluded} if entry.all_day else set()

    # Search in wall-clock space with a day of slack, then filter exactly in UTC.
    slack = timedelta(days=1)
    lower = window_start.astimezone(timezone.utc).replace(tzinfo=None) - entry.duration - slack
    upper = window_end.astimezone(timezone.utc).replace(tzinfo=None) + slack
    starts: list[datetime] = []
    for occurrence in rule_set.between(lower, upper, inc=True):
        if occurrence in excluded or occurrence.date() in excluded_days:
            continue
        tzid = None if entry.all_day else entry.tzid
        start_utc = to_utc(occurrence, tzid, entry.zone)
        end_utc = to_utc(occurrence + entry.duration, tzid, entry.zone)
        if end_utc <= window_start or start_utc > window_end:
            continue
        starts.append(occurrence)
        if len(starts) >= max_occurrences:
            logger.warning("RRULE for %s truncated at %d occurrences", entry.uid, max_occurrences)
            break
    return starts


def expand_entry(
    entry: CalendarEntry,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[ExternalEventInstance]:
    if entry.recurrence_id is not None:
        return [make_instance(entry, entry.start, recurrence_key(entry.recurrence_id, entry.all_day))]
    if not entry.rrule:
        return [make_instance(entry, entry.start, entry.uid)]
    return [
        make_instance(entry, start, recurrence_key(start, entry.all_day))
        for start in occurrence_starts(entry, window_start, window_end, max_occurrences)
    ]
