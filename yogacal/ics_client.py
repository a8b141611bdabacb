from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from yogacal.http_client import HttpClient
from yogacal.models import ExternalEventInstance, UpstreamError, overlaps_window
from yogacal.recurrence import (
    DEFAULT_MAX_OCCURRENCES,
    CalendarEntry,
    expand_entry,
    make_instance,
    recurrence_key,
)


logger = logging.getLogger(__name__)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _to_wall(value: datetime | date, reference: tzinfo | None) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, datetime.min.time())
    if value.tzinfo is None:
        return value
    return value.astimezone(reference or timezone.utc).replace(tzinfo=None)


def _list_values(prop: Any) -> list[Any]:
    if prop is None:
        return []
    props = prop if isinstance(prop, list) else [prop]
    values: list[Any] = []
    for item in props:
        dts = getattr(item, "dts", None)
        if dts is None:
            values.append(getattr(item, "dt", item))
            continue
        values.extend(entry.dt for entry in dts)
    return values


def _start_fields(vevent: ICEvent) -> tuple[datetime, str | None, tzinfo | None, bool]:
    prop = vevent.get("DTSTART")
    if prop is None:
        raise ValueError("DTSTART missing")
    raw = prop.dt
    if not isinstance(raw, datetime):
        return datetime.combine(raw, datetime.min.time()), None, None, True
    tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
    if raw.tzinfo is None:
        return raw, (str(tzid) if tzid else None), None, False
    if tzid:
        return raw.replace(tzinfo=None), str(tzid), raw.tzinfo, False
    return raw.astimezone(timezone.utc).replace(tzinfo=None), "UTC", timezone.utc, False


def entry_from_vevent(vevent: ICEvent) -> CalendarEntry | None:
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None
    start, tzid, reference, all_day = _start_fields(vevent)

    if vevent.get("DTEND") is not None:
        end = _to_wall(vevent.get("DTEND").dt, reference)
    elif vevent.get("DURATION") is not None:
        end = start + vevent.get("DURATION").dt
    else:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

    rrule_prop = vevent.get("RRULE")
    if isinstance(rrule_prop, list):
        rrule_prop = rrule_prop[0] if rrule_prop else None
    rrule = rrule_prop.to_ical().decode("utf-8") if rrule_prop is not None else None

    recurrence_prop = vevent.get("RECURRENCE-ID")
    recurrence_id = _to_wall(recurrence_prop.dt, reference) if recurrence_prop is not None else None

    return CalendarEntry(
        uid=uid,
        start=start,
        end=end,
        tzid=tzid,
        rrule=rrule,
        exdates=[_to_wall(value, reference) for value in _list_values(vevent.get("EXDATE"))],
        title=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        status=str(vevent.get("STATUS", "") or "CONFIRMED").strip().upper(),
        all_day=all_day,
        recurrence_id=recurrence_id,
        zone=reference,
    )


def parse_ics(raw_data: Any) -> tuple[str | None, list[CalendarEntry]]:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    calendar_name = str(calendar_obj.get("X-WR-CALNAME", "") or "").strip() or None
    entries: list[CalendarEntry] = []
    for component in calendar_obj.walk("VEVENT"):
        try:
            entry = entry_from_vevent(component)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Skipping malformed VEVENT %s: %s", component.get("UID", ""), exc)
            continue
        if entry is not None:
            entries.append(entry)
    return calendar_name, entries


def expand_entries(
    entries: list[CalendarEntry],
    window_start: datetime,
    window_end: datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[ExternalEventInstance]:
    """Concrete, non-cancelled instances overlapping the window, one per (uid, recurrence_id).

    A series whose RRULE cannot be expanded yields its own first occurrence,
    marked ``expanded=False`` and kept regardless of the window.
    """
    overridden = {
        (entry.uid, recurrence_key(entry.recurrence_id, entry.all_day))
        for entry in entries
        if entry.recurrence_id is not None
    }
    by_key: dict[tuple[str, str], ExternalEventInstance] = {}
    for entry in entries:
        try:
            instances = expand_entry(entry, window_start, window_end, max_occurrences)
        except (ValueError, TypeError, OverflowError) as exc:
            logger.warning(
                "Event %s has a malformed recurrence, keeping only its first occurrence: %s", entry.uid, exc
            )
            first = make_instance(entry, entry.start, recurrence_key(entry.start, entry.all_day))
            instances = [replace(first, expanded=False)]
        for instance in instances:
            if entry.recurrence_id is None and instance.key in overridden:
                continue
            by_key[instance.key] = instance
    return [
        instance
        for instance in by_key.values()
        if instance.status != "CANCELLED"
        and (
            not instance.expanded
            or overlaps_window(instance.start, instance.end, window_start, window_end)
        )
    ]


class IcsFeedClient:
    def __init__(self, http: HttpClient, max_occurrences: int = DEFAULT_MAX_OCCURRENCES) -> None:
        self.http = http
        self.max_occurrences = max_occurrences

    def fetch_text(self, feed_url: str) -> str:
        url = feed_url.strip()
        if url.lower().startswith("webcal://"):
            url = "https://" + url[len("webcal://"):]
        response = self.http.get(url, headers={"Accept": "text/calendar, */*"})
        if not response.ok:
            raise UpstreamError(
                f"Failed to fetch ICS feed: {response.status_code} {response.text[:300]}",
                status=response.status_code,
            )
        return response.text

    def fetch_instances(
        self, feed_url: str, window_start: datetime, window_end: datetime
    ) -> tuple[str | None, list[ExternalEventInstance]]:
        text = self.fetch_text(feed_url)
        try:
            calendar_name, entries = parse_ics(text)
        except ValueError as exc:
            raise UpstreamError(f"ICS feed could not be parsed: {exc}") from exc
        return calendar_name, expand_entries(entries, window_start, window_end, self.max_occurrences)
