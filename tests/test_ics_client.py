import unittest
from datetime import datetime, timezone
from unittest import mock

from yogacal.ics_client import IcsFeedClient, expand_entries, parse_ics
from yogacal.models import UpstreamError, serialize_datetime


STUDIO_FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Yoga Studio//Schedule//EN
X-WR-CALNAME:Studio Schedule
BEGIN:VEVENT
UID:flow@example.com
DTSTART;TZID=Europe/Berlin:20240101T100000
DTEND;TZID=Europe/Berlin:20240101T110000
RRULE:FREQ=DAILY;COUNT=10
EXDATE;TZID=Europe/Berlin:20240105T100000
SUMMARY:Vinyasa Flow
LOCATION:Studio Mitte
END:VEVENT
BEGIN:VEVENT
UID:flow@example.com
RECURRENCE-ID;TZID=Europe/Berlin:20240103T100000
DTSTART;TZID=Europe/Berlin:20240103T120000
DTEND;TZID=Europe/Berlin:20240103T130000
SUMMARY:Vinyasa Flow (moved)
LOCATION:Studio Mitte
END:VEVENT
BEGIN:VEVENT
UID:flow@example.com
RECURRENCE-ID;TZID=Europe/Berlin:20240104T100000
DTSTART;TZID=Europe/Berlin:20240104T100000
DTEND;TZID=Europe/Berlin:20240104T110000
STATUS:CANCELLED
SUMMARY:Vinyasa Flow
END:VEVENT
BEGIN:VEVENT
UID:workshop@example.com
DTSTART:20240106T140000Z
DTEND:20240106T160000Z
SUMMARY:Yin Workshop
DESCRIPTION:Bring a blanket
END:VEVENT
END:VCALENDAR
"""

CUSTOM_ZONE_FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Microsoft Corporation//Outlook 16.0 MIMEDIR//EN
BEGIN:VTIMEZONE
TZID:Customized Time Zone
BEGIN:STANDARD
DTSTART:16011028T030000
TZOFFSETFROM:+0200
TZOFFSETTO:+0100
RRULE:FREQ=YEARLY;BYDAY=-1SU;BYMONTH=10
END:STANDARD
BEGIN:DAYLIGHT
DTSTART:16010325T020000
TZOFFSETFROM:+0100
TZOFFSETTO:+0200
RRULE:FREQ=YEARLY;BYDAY=-1SU;BYMONTH=3
END:DAYLIGHT
END:VTIMEZONE
BEGIN:VEVENT
UID:winter@example.com
DTSTART;TZID=Customized Time Zone:20240110T100000
DTEND;TZID=Customized Time Zone:20240110T110000
SUMMARY:Morning Flow
END:VEVENT
BEGIN:VEVENT
UID:summer@example.com
DTSTART;TZID=Customized Time Zone:20240710T100000
DTEND;TZID=Customized Time Zone:20240710T110000
SUMMARY:Morning Flow
END:VEVENT
END:VCALENDAR
"""

WINDOW_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 1, 31, tzinfo=timezone.utc)


class IcsParsingTests(unittest.TestCase):
    def test_parse_reads_calendar_name_and_entries(self) -> None:
        name, entries = parse_ics(STUDIO_FEED)
        self.assertEqual(name, "Studio Schedule")
        self.assertEqual(len(entries), 4)
        master = entries[0]
        self.assertEqual(master.tzid, "Europe/Berlin")
        self.assertEqual(master.start, datetime(2024, 1, 1, 10, 0))
        self.assertEqual(master.exdates, [datetime(2024, 1, 5, 10, 0)])
        self.assertEqual(entries[3].tzid, "UTC")

    def test_expansion_applies_overrides_and_cancellations(self) -> None:
        _, entries = parse_ics(STUDIO_FEED)
        instances = expand_entries(entries, WINDOW_START, WINDOW_END)
        flow = {item.recurrence_id: item for item in instances if item.uid == "flow@example.com"}
        self.assertEqual(len(flow), 8)
        self.assertNotIn("2024-01-04T10:00:00", flow)
        self.assertNotIn("2024-01-05T10:00:00", flow)
        moved = flow["2024-01-03T10:00:00"]
        self.assertEqual(moved.title, "Vinyasa Flow (moved)")
        self.assertEqual(serialize_datetime(moved.start), "2024-01-03T11:00:00Z")

        (workshop,) = [item for item in instances if item.uid == "workshop@example.com"]
        self.assertEqual(workshop.recurrence_id, "workshop@example.com")
        self.assertEqual(serialize_datetime(workshop.start), "2024-01-06T14:00:00Z")
        self.assertEqual(workshop.description, "Bring a blanket")

    def test_events_outside_window_are_dropped(self) -> None:
        _, entries = parse_ics(STUDIO_FEED)
        instances = expand_entries(entries, datetime(2024, 1, 7, tzinfo=timezone.utc), WINDOW_END)
        self.assertEqual({item.uid for item in instances}, {"flow@example.com"})
        self.assertEqual(len(instances), 4)

    def test_malformed_event_is_skipped(self) -> None:
        feed = """BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:broken@example.com
SUMMARY:No start
END:VEVENT
BEGIN:VEVENT
UID:ok@example.com
DTSTART:20240110T090000Z
SUMMARY:Morning Yoga
END:VEVENT
END:VCALENDAR
"""
        with self.assertLogs("yogacal.ics_client", level="WARNING"):
            name, entries = parse_ics(feed)
        self.assertIsNone(name)
        self.assertEqual([entry.uid for entry in entries], ["ok@example.com"])
        self.assertEqual((entries[0].end - entries[0].start).total_seconds(), 3600)

    def test_feed_defined_timezone_is_used(self) -> None:
        _, entries = parse_ics(CUSTOM_ZONE_FEED)
        self.assertEqual(entries[0].tzid, "Customized Time Zone")

        with self.assertNoLogs("yogacal.timezones", level="WARNING"):
            instances = expand_entries(entries, WINDOW_START, datetime(2024, 8, 1, tzinfo=timezone.utc))

        starts = {item.uid: serialize_datetime(item.start) for item in instances}
        self.assertEqual(starts["winter@example.com"], "2024-01-10T09:00:00Z")
        self.assertEqual(starts["summer@example.com"], "2024-07-10T08:00:00Z")

    def test_unexpandable_series_keeps_first_occurrence(self) -> None:
        feed = """BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:series@example.com
DTSTART:20240102T100000Z
DTEND:20240102T110000Z
RRULE:FREQ=DAILY;COUNT=3;BYDAY=XX
SUMMARY:Hatha
END:VEVENT
END:VCALENDAR
"""
        _, entries = parse_ics(feed)
        with self.assertLogs("yogacal.ics_client", level="WARNING"):
            instances = expand_entries(entries, datetime(2024, 1, 10, tzinfo=timezone.utc), WINDOW_END)

        (instance,) = instances
        self.assertFalse(instance.expanded)
        self.assertEqual(instance.recurrence_id, "2024-01-02T10:00:00")
        self.assertEqual(serialize_datetime(instance.start), "2024-01-02T10:00:00Z")


class IcsFeedClientTests(unittest.TestCase):
    def test_webcal_scheme_is_fetched_over_https(self) -> None:
        http = mock.Mock()
        http.get.return_value = mock.Mock(ok=True, status_code=200, text=STUDIO_FEED)
        client = IcsFeedClient(http)

        name, instances = client.fetch_instances("webcal://example.com/studio.ics", WINDOW_START, WINDOW_END)

        self.assertEqual(http.get.call_args.args[0], "https://example.com/studio.ics")
        self.assertEqual(name, "Studio Schedule")
        self.assertEqual(len(instances), 9)

    def test_http_error_raises_upstream_error(self) -> None:
        http = mock.Mock()
        http.get.return_value = mock.Mock(ok=False, status_code=404, text="not found")
        with self.assertRaises(UpstreamError) as ctx:
            IcsFeedClient(http).fetch_text("https://example.com/missing.ics")
        self.assertEqual(ctx.exception.status, 404)


if __name__ == "__main__":
    unittest.main()
