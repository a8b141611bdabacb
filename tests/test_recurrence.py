import unittest
from datetime import datetime, timezone

from yogacal.models import serialize_datetime
from yogacal.recurrence import CalendarEntry, expand_entry, occurrence_starts


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecurrenceTests(unittest.TestCase):
    def test_daily_rule_with_exdate(self) -> None:
        entry = CalendarEntry(
            uid="daily",
            start=datetime(2024, 1, 1, 10, 0),
            end=datetime(2024, 1, 1, 11, 0),
            tzid="Europe/Berlin",
            rrule="FREQ=DAILY",
            exdates=[datetime(2024, 1, 5, 10, 0)],
        )
        instances = expand_entry(entry, _utc(2024, 1, 1), _utc(2024, 1, 10, 23, 59, 59))
        self.assertEqual(len(instances), 9)
        recurrence_ids = [item.recurrence_id for item in instances]
        self.assertIn("2024-01-01T10:00:00", recurrence_ids)
        self.assertNotIn("2024-01-05T10:00:00", recurrence_ids)
        self.assertEqual(serialize_datetime(instances[0].start), "2024-01-01T09:00:00Z")

    def test_weekly_class_keeps_local_time_across_dst(self) -> None:
        entry = CalendarEntry(
            uid="weekly",
            start=datetime(2024, 3, 4, 18, 0),
            end=datetime(2024, 3, 4, 19, 30),
            tzid="Europe/Berlin",
            rrule="RRULE:FREQ=WEEKLY",
        )
        instances = expand_entry(entry, _utc(2024, 3, 1), _utc(2024, 4, 10))
        starts = {item.recurrence_id: serialize_datetime(item.start) for item in instances}
        self.assertEqual(starts["2024-03-25T18:00:00"], "2024-03-25T17:00:00Z")
        self.assertEqual(starts["2024-04-01T18:00:00"], "2024-04-01T16:00:00Z")
        for item in instances:
            self.assertEqual((item.end - item.start).total_seconds(), 90 * 60)

    def test_utc_until_is_inclusive(self) -> None:
        entry = CalendarEntry(
            uid="until",
            start=datetime(2024, 1, 1, 10, 0),
            end=datetime(2024, 1, 1, 11, 0),
            tzid="Europe/Berlin",
            rrule="FREQ=DAILY;UNTIL=20240103T090000Z",
        )
        self.assertEqual(len(occurrence_starts(entry, _utc(2023, 12, 1), _utc(2024, 2, 1))), 3)

    def test_all_day_series_uses_date_keys(self) -> None:
        entry = CalendarEntry(
            uid="retreat",
            start=datetime(2024, 6, 1),
            end=datetime(2024, 6, 2),
            rrule="FREQ=WEEKLY;COUNT=3",
            all_day=True,
        )
        instances = expand_entry(entry, _utc(2024, 5, 1), _utc(2024, 7, 1))
        self.assertEqual([item.recurrence_id for item in instances], ["2024-06-01", "2024-06-08", "2024-06-15"])
        self.assertEqual(serialize_datetime(instances[0].start), "2024-06-01T00:00:00Z")

    def test_single_and_override_entries(self) -> None:
        single = CalendarEntry(uid="once", start=datetime(2024, 1, 2, 9, 0), end=datetime(2024, 1, 2, 10, 0))
        self.assertEqual([item.recurrence_id for item in expand_entry(single, _utc(2024, 1, 1), _utc(2024, 2, 1))], ["once"])

        override = CalendarEntry(
            uid="daily",
            start=datetime(2024, 1, 3, 12, 0),
            end=datetime(2024, 1, 3, 13, 0),
            tzid="Europe/Berlin",
            recurrence_id=datetime(2024, 1, 3, 10, 0),
        )
        (instance,) = expand_entry(override, _utc(2024, 1, 1), _utc(2024, 2, 1))
        self.assertEqual(instance.recurrence_id, "2024-01-03T10:00:00")
        self.assertEqual(serialize_datetime(instance.start), "2024-01-03T11:00:00Z")

    def test_occurrences_are_capped(self) -> None:
        entry = CalendarEntry(
            uid="hourly",
            start=datetime(2024, 1, 1, 0, 0),
            end=datetime(2024, 1, 1, 0, 30),
            rrule="FREQ=HOURLY",
        )
        with self.assertLogs("yogacal.recurrence", level="WARNING"):
            starts = occurrence_starts(entry, _utc(2024, 1, 1), _utc(2024, 2, 1), max_occurrences=5)
        self.assertEqual(len(starts), 5)


if __name__ == "__main__":
    unittest.main()
