import unittest
from datetime import datetime, timezone
from unittest import mock

from yogacal.google_client import GoogleCalendarClient, item_to_instance
from yogacal.models import GoogleOAuthConfig, UpstreamError, serialize_datetime


def _page(items: list[dict], next_token: str | None = None) -> mock.Mock:
    payload: dict = {"items": items}
    if next_token:
        payload["nextPageToken"] = next_token
    response = mock.Mock(ok=True, status_code=200)
    response.json.return_value = payload
    return response


class ItemMappingTests(unittest.TestCase):
    def test_recurring_instance_mapping(self) -> None:
        instance = item_to_instance(
            {
                "id": "abc_20240506T160000Z",
                "recurringEventId": "abc",
                "summary": "Hatha",
                "location": "Studio Nord",
                "status": "confirmed",
                "start": {"dateTime": "2024-05-06T18:00:00+02:00", "timeZone": "Europe/Berlin"},
                "end": {"dateTime": "2024-05-06T19:00:00+02:00", "timeZone": "Europe/Berlin"},
            }
        )
        self.assertEqual(instance.uid, "abc_20240506T160000Z")
        self.assertEqual(instance.recurrence_id, "abc-2024-05-06T18:00:00+02:00")
        self.assertEqual(serialize_datetime(instance.start), "2024-05-06T16:00:00Z")
        self.assertEqual(instance.status, "CONFIRMED")
        self.assertEqual(instance.source_timezone, "Europe/Berlin")

    def test_floating_and_all_day_times(self) -> None:
        floating = item_to_instance(
            {
                "id": "one",
                "start": {"dateTime": "2024-05-06T18:00:00", "timeZone": "Europe/Berlin"},
                "end": {"dateTime": "2024-05-06T19:00:00", "timeZone": "Europe/Berlin"},
            }
        )
        self.assertEqual(floating.recurrence_id, "one-2024-05-06T18:00:00")
        self.assertEqual(serialize_datetime(floating.start), "2024-05-06T16:00:00Z")

        all_day = item_to_instance({"id": "day", "start": {"date": "2024-05-10"}, "end": {"date": "2024-05-11"}})
        self.assertEqual(serialize_datetime(all_day.start), "2024-05-10T00:00:00Z")
        self.assertEqual(serialize_datetime(all_day.end), "2024-05-11T00:00:00Z")

    def test_items_without_times_are_ignored(self) -> None:
        self.assertIsNone(item_to_instance({"id": "x", "start": {}}))
        self.assertIsNone(item_to_instance({"start": {"date": "2024-05-10"}, "end": {"date": "2024-05-11"}}))


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.http = mock.Mock()
        self.client = GoogleCalendarClient(GoogleOAuthConfig(), self.http)
        self.time_min = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.time_max = datetime(2024, 7, 30, tzinfo=timezone.utc)

    def test_follows_page_tokens(self) -> None:
        item = {"id": "a", "start": {"date": "2024-05-10"}, "end": {"date": "2024-05-11"}}
        self.http.get.side_effect = [_page([item], "page-2"), _page([dict(item, id="b")])]

        instances = self.client.fetch_instances("token-1", "team@group.calendar.google.com", self.time_min, self.time_max)

        self.assertEqual([item.uid for item in instances], ["a", "b"])
        first, second = self.http.get.call_args_list
        self.assertEqual(
            first.args[0],
            "https://www.googleapis.com/calendar/v3/calendars/team%40group.calendar.google.com/events",
        )
        self.assertEqual(first.kwargs["params"]["singleEvents"], "true")
        self.assertEqual(first.kwargs["params"]["maxResults"], "2500")
        self.assertEqual(first.kwargs["params"]["timeMin"], "2024-05-01T00:00:00Z")
        self.assertNotIn("pageToken", first.kwargs["params"])
        self.assertEqual(second.kwargs["params"]["pageToken"], "page-2")
        self.assertEqual(first.kwargs["headers"]["Authorization"], "Bearer token-1")

    def test_error_status_raises(self) -> None:
        self.http.get.return_value = mock.Mock(ok=False, status_code=401, text="unauthorized")
        with self.assertRaises(UpstreamError) as ctx:
            self.client.fetch_instances("stale", "primary", self.time_min, self.time_max)
        self.assertEqual(ctx.exception.status, 401)


if __name__ == "__main__":
    unittest.main()
