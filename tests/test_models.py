import unittest
from datetime import datetime, timezone

from yogacal.models import (
    AppConfig,
    CalendarFeed,
    CanonicalEvent,
    LegacyKeywordRule,
    ListKeywordRule,
    RematchResult,
    SyncResult,
    UnsupportedFeedError,
    serialize_datetime,
    sync_window,
    tag_rule_from_dict,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_defaults_and_clamping(self) -> None:
        cfg = AppConfig.from_dict({"sync": {"max_results": 9999, "interval_seconds": 5}, "rematch": {"batch_size": 0}})
        self.assertEqual(cfg.sync.default_window_days, 90)
        self.assertEqual(cfg.sync.historical_window_days, 365)
        self.assertEqual(cfg.sync.max_results, 2500)
        self.assertEqual(cfg.sync.interval_seconds, 30)
        self.assertEqual(cfg.rematch.batch_size, 1)
        self.assertEqual(cfg.google.token_url, "https://oauth2.googleapis.com/token")
        self.assertFalse(cfg.google.is_configured())

    def test_oauth_feed_calendar_id(self) -> None:
        feed = CalendarFeed(id="f1", user_id="u1", calendar_name="oauth:google:team@group.calendar.google.com:Team")
        self.assertTrue(feed.is_oauth)
        self.assertFalse(feed.is_ics)
        self.assertEqual(feed.oauth_calendar_id, "team@group.calendar.google.com")

    def test_ics_feed_is_not_oauth(self) -> None:
        feed = CalendarFeed(id="f1", user_id="u1", feed_url="https://example.com/a.ics", calendar_name="oauth:google:x")
        self.assertTrue(feed.is_ics)
        self.assertFalse(feed.is_oauth)
        with self.assertRaises(UnsupportedFeedError):
            _ = feed.oauth_calendar_id

    def test_manual_override_signals(self) -> None:
        base = dict(user_id="u1", uid="a", recurrence_id="a", start_time="x", end_time="y")
        self.assertFalse(CanonicalEvent(**base).is_manually_overridden)
        self.assertTrue(CanonicalEvent(**base, invoice_type="teacher_invoice").is_manually_overridden)
        self.assertTrue(CanonicalEvent(**base, substitute_notes="covered by Sam").is_manually_overridden)
        self.assertFalse(CanonicalEvent(**base, substitute_notes="   ").is_manually_overridden)
        teacher = CanonicalEvent(**base, studio_id="t1").with_teacher_ids({"t1"})
        self.assertTrue(teacher.is_manually_overridden)
        self.assertTrue(teacher.to_dict()["manually_overridden"])

    def test_tag_rule_from_dict_variants(self) -> None:
        self.assertEqual(tag_rule_from_dict({"tag_id": "t", "keyword": "Yin"}), LegacyKeywordRule("t", "Yin"))
        self.assertEqual(
            tag_rule_from_dict({"tag_id": "t", "keyword": "yin", "keywords": ["restorative"]}),
            ListKeywordRule("t", ("restorative", "yin"), ()),
        )
        self.assertIsNone(tag_rule_from_dict({"tag_id": "t"}))
        self.assertIsNone(tag_rule_from_dict({"keyword": "yin"}))

    def test_sync_window_direction(self) -> None:
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        start, end = sync_window(now, "default", 90)
        self.assertEqual(start, now)
        self.assertEqual(serialize_datetime(end), "2024-08-30T12:00:00Z")
        start, end = sync_window(now, "historical", 365)
        self.assertEqual(end, now)
        self.assertEqual(serialize_datetime(start), "2023-06-02T12:00:00Z")

    def test_result_payloads(self) -> None:
        payload = SyncResult(feed_id="f1", type="ics", count=4, deleted=1, written=2).to_dict()
        self.assertEqual(payload, {"success": True, "count": 4, "type": "ics", "deleted": 1, "written": 2})
        self.assertEqual(RematchResult(0, 0).message, "No events found to rematch")
        self.assertEqual(
            RematchResult(10, 3).to_dict()["message"],
            "Successfully rematched 3 out of 10 events",
        )


if __name__ == "__main__":
    unittest.main()
