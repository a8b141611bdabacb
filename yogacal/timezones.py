"""Wall-clock to UTC conversion for calendar timestamps.

Offsets are resolved for the calendar date being converted, so a summer
occurrence of a weekly class lands on a different UTC hour than a winter one.
Unknown zone identifiers fall back to a coarse seasonal estimate for a few
zone families; that estimate is an approximation and is logged as such.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from yogacal.models import serialize_datetime


logger = logging.getLogger(__name__)

UTC_ALIASES = {"utc", "z", "gmt", "etc/utc", "etc/gmt", "zulu"}

# Outlook/Exchange feeds put Windows zone names in TZID.
WINDOWS_ZONE_ALIASES = {
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Romance Standard Time": "Europe/Paris",
    "GMT Standard Time": "Europe/London",
    "Eastern Standard Time": "America/New_York",
    "Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "Pacific Standard Time": "America/Los_Angeles",
}


def resolve_zone(tzid: str | None) -> ZoneInfo | timezone | None:
    """Return a tzinfo for ``tzid`` or None when it is not a known zone."""
    name = str(tzid or "").strip().strip('"')
    if not name:
        return None
    if name.lower() in UTC_ALIASES:
        return timezone.utc
    name = WINDOWS_ZONE_ALIASES.get(name, name)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _is_summer(local: datetime) -> bool:
    # Rough northern-hemisphere DST period, March through October.
    return 3 <= local.month <= 10


def fallback_offset(tzid: str, local: datetime) -> timedelta:
    summer = _is_summer(local)
    if "Europe/" in tzid:
        return timedelta(hours=2 if summer else 1)
    if "America/" in tzid or "US/" in tzid:
        if "Eastern" in tzid or "New_York" in tzid:
            return timedelta(hours=-4 if summer else -5)
        if "Central" in tzid or "Chicago" in tzid:
            return timedelta(hours=-5 if summer else -6)
        if "Mountain" in tzid or "Denver" in tzid:
            return timedelta(hours=-6 if summer else -7)
        if "Pacific" in tzid or "Los_Angeles" in tzid:
            return timedelta(hours=-7 if summer else -8)
    return timedelta(0)


def zone_offset(local: datetime, tzid: str, defined_zone: tzinfo | None = None) -> timedelta:
    """UTC offset of ``tzid`` on the date of the naive wall-clock ``local``.

    ``defined_zone`` is the zone a feed defines itself (a VTIMEZONE block)
    and is used when ``tzid`` is not a name ``zoneinfo`` knows.

    A wall-clock time that does not exist because clocks sprang forward is
    resolved with the offset in force before the transition (``fold=0``).
    """
    zone = resolve_zone(tzid) or defined_zone
    if zone is None:
        logger.warning("Unknown timezone %s, falling back to seasonal offset estimate", tzid)
        return fallback_offset(str(tzid), local)
    offset = local.replace(tzinfo=zone, fold=0).utcoffset()
    return offset or timedelta(0)


def to_utc(
    value: datetime | date | str | None,
    tzid: str | None = None,
    defined_zone: tzinfo | None = None,
) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            value = date.fromisoformat(text)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    if not tzid:
        return value.replace(tzinfo=timezone.utc)
    return (value - zone_offset(value, tzid, defined_zone)).replace(tzinfo=timezone.utc)


def to_utc_iso(value: datetime | date | str | None, tzid: str | None = None) -> str | None:
    return serialize_datetime(to_utc(value, tzid))
