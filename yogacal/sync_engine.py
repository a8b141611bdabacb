from __future__ import annotations

import logging
import re
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from yogacal.config_manager import ConfigManager
from yogacal.filters import apply_filter_policy
from yogacal.google_client import GoogleCalendarClient
from yogacal.http_client import HttpClient
from yogacal.ics_client import IcsFeedClient
from yogacal.matching import MatchingContext, load_matching_context, safe_match_studio_id, safe_match_tags
from yogacal.models import (
    SYNC_MODES,
    CalendarFeed,
    CanonicalEvent,
    ExternalEventInstance,
    FeedNotFoundError,
    GoogleOAuthConfig,
    OAuthIntegrationMissingError,
    SyncError,
    SyncResult,
    UnsupportedFeedError,
    overlaps_window,
    serialize_datetime,
    sync_window,
    utc_now,
)
from yogacal.oauth import OAuthTokenManager
from yogacal.reconciler import apply_plan, plan_reconciliation
from yogacal.state_store import StateStore


logger = logging.getLogger(__name__)

STUDENT_COUNT_PATTERNS = {
    "studio": (
        re.compile(r"(?:teilnehmer\s+)?(?:studio|vor ort|in[- ]person)\s*[:=]\s*(\d+)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:x\s*)?(?:studio|vor ort|in[- ]person)\b", re.IGNORECASE),
    ),
    "online": (
        re.compile(r"(?:teilnehmer\s+)?(?:online|zoom|livestream)\s*[:=]\s*(\d+)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:x\s*)?(?:online|zoom|livestream)\b", re.IGNORECASE),
    ),
}


def _first_count(description: str, patterns: tuple[re.Pattern[str], ...]) -> int | None:
    for pattern in patterns:
        match = pattern.search(description)
        if match:
            return int(match.group(1))
    return None


def extract_student_counts(description: str, historical: bool) -> tuple[int | None, int | None]:
    """Attendance noted in past event descriptions, e.g. ``Studio: 12`` or ``3 online``."""
    if not historical or not description:
        return None, None
    return (
        _first_count(description, STUDENT_COUNT_PATTERNS["studio"]),
        _first_count(description, STUDENT_COUNT_PATTERNS["online"]),
    )


def build_canonical_event(
    feed: CalendarFeed,
    instance: ExternalEventInstance,
    existing: CanonicalEvent | None,
    context: MatchingContext,
    historical: bool,
) -> CanonicalEvent:
    event_ref = f"{instance.uid}/{instance.recurrence_id}"
    tags = safe_match_tags(instance.content, instance.location, context.rules, context.tag_map, event_ref)
    students_studio, students_online = extract_student_counts(instance.description, historical)

    event = CanonicalEvent(
        user_id=feed.user_id,
        uid=instance.uid,
        recurrence_id=instance.recurrence_id,
        start_time=serialize_datetime(instance.start) or "",
        end_time=serialize_datetime(instance.end) or "",
        feed_id=feed.id,
        title=instance.title,
        location=instance.location,
        description=instance.description,
        tags=tags,
        status=instance.status or "CONFIRMED",
        students_studio=students_studio,
        students_online=students_online,
    )
    if existing is None:
        event.studio_id = safe_match_studio_id(instance.location, context.studios, event_ref)
        return event

    event.id = existing.id
    event.studio_id = existing.studio_id or safe_match_studio_id(instance.location, context.studios, event_ref)
    if existing.students_studio is not None:
        event.students_studio = existing.students_studio
    if existing.students_online is not None:
        event.students_online = existing.students_online
    event.custom_tags = list(existing.custom_tags)
    event.visibility = existing.visibility
    event.image_url = existing.image_url
    event.invoice_type = existing.invoice_type
    event.substitute_notes = existing.substitute_notes
    return event


@dataclass
class SweepSummary:
    synced: int
    failed: int
    results: list[dict[str, Any]]
    errors: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.failed == 0,
            "synced_feeds": self.results,
            "errors": self.errors,
            "total_feeds": self.synced + self.failed,
            "successful_syncs": self.synced,
            "failed_syncs": self.failed,
        }


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        google_config: GoogleOAuthConfig | None = None,
        http: HttpClient | None = None,
        token_manager: OAuthTokenManager | None = None,
        ics_client: IcsFeedClient | None = None,
        google_client: GoogleCalendarClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._clock = clock
        config = config_manager.load()
        self.google_config = google_config or config.google
        self.http = http or HttpClient(config.http)
        self.token_manager = token_manager or OAuthTokenManager(
            self.google_config, state_store, self.http, clock=clock
        )
        self.ics_client = ics_client or IcsFeedClient(self.http, max_occurrences=config.sync.max_occurrences)
        self.google_client = google_client or GoogleCalendarClient(
            self.google_config, self.http, max_results=config.sync.max_results
        )
        self._feed_locks: dict[str, threading.Lock] = {}
        self._feed_locks_guard = threading.Lock()

    def _lock_for(self, feed_id: str) -> threading.Lock:
        with self._feed_locks_guard:
            return self._feed_locks.setdefault(feed_id, threading.Lock())

    def sync_feed(
        self,
        feed_id: str,
        mode: str = "default",
        window_days: int | None = None,
        trigger: str = "manual",
    ) -> SyncResult:
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        if window_days is not None and int(window_days) < 1:
            raise ValueError("window_days must be positive")

        with self._lock_for(feed_id):
            return self._sync_feed_locked(feed_id, mode, window_days, trigger)

    def _sync_feed_locked(self, feed_id: str, mode: str, window_days: int | None, trigger: str) -> SyncResult:
        started_at = utc_now()
        event_count = 0
        try:
            feed = self.state_store.get_feed(feed_id)
            if feed is None:
                raise FeedNotFoundError(f"Feed {feed_id} not found")

            config = self.config_manager.load()
            days = int(window_days) if window_days is not None else config.sync.window_days_for(mode)
            now = self._clock()
            window_start, window_end = sync_window(now, mode, days)

            calendar_name: str | None = None
            if feed.is_ics:
                feed_type = "ics"
                calendar_name, instances = self.ics_client.fetch_instances(
                    str(feed.feed_url), window_start, window_end
                )
            elif feed.is_oauth:
                feed_type = "oauth"
                instances = self._fetch_oauth_instances(feed, window_start, window_end)
            else:
                raise UnsupportedFeedError(f"Feed {feed_id} has neither a feed URL nor an OAuth calendar")

            unexpanded_uids = {item.uid for item in instances if not item.expanded}
            instances = [
                item for item in instances if overlaps_window(item.start, item.end, window_start, window_end)
            ]
            instances = apply_filter_policy(
                feed,
                instances,
                lambda: self.state_store.list_active_filter_rules(feed.user_id, feed.id),
            )
            event_count = len(instances)

            context = load_matching_context(self.state_store, feed.user_id)
            existing = self.state_store.get_events_by_keys(feed.user_id, [item.key for item in instances])
            historical = mode == "historical"
            fresh = [
                build_canonical_event(feed, item, existing.get(item.key), context, historical)
                for item in instances
            ]

            stored = self.state_store.events_in_window(feed.user_id, feed.id, window_start, window_end)
            plan = plan_reconciliation(fresh, stored, keep_uids=unexpanded_uids)
            outcome = apply_plan(self.state_store, plan)
            self.state_store.mark_feed_synced(feed.id, now, calendar_name if feed_type == "ics" else None)

            duration_ms = int((utc_now() - started_at).total_seconds() * 1000)
            message = (
                f"{feed_type} sync ({mode}): {outcome.upserted} events, "
                f"{outcome.written} written, {outcome.deleted} deleted"
            )
            self.state_store.record_sync_run(
                trigger=trigger,
                feed_id=feed.id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                event_count=outcome.upserted,
            )
            logger.info("Feed %s: %s in %dms", feed.id, message, duration_ms)
            return SyncResult(
                feed_id=feed.id,
                type=feed_type,
                count=outcome.upserted,
                deleted=outcome.deleted,
                written=outcome.written,
                calendar_name=calendar_name,
                synced_at=now,
            )
        except Exception as exc:
            duration_ms = int((utc_now() - started_at).total_seconds() * 1000)
            error_message = f"{type(exc).__name__}: {exc}"
            self.state_store.record_sync_run(
                trigger=trigger,
                feed_id=feed_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                event_count=event_count,
            )
            self.state_store.record_audit_event(
                feed_id=feed_id,
                uid="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "mode": mode,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            logger.error("Sync of feed %s failed: %s", feed_id, error_message)
            if isinstance(exc, SyncError):
                raise
            raise SyncError(error_message) from exc

    def _fetch_oauth_instances(
        self, feed: CalendarFeed, window_start: datetime, window_end: datetime
    ) -> list[ExternalEventInstance]:
        calendar_id = feed.oauth_calendar_id
        integration = self.state_store.get_oauth_integration(feed.user_id, "google")
        if integration is None:
            raise OAuthIntegrationMissingError(f"No Google integration found for user {feed.user_id}")
        access_token = self.token_manager.get_access_token(integration)
        return self.google_client.fetch_instances(access_token, calendar_id, window_start, window_end)

    def sync_due_feeds(self, trigger: str = "scheduled") -> SweepSummary:
        """Sync every feed never synced or last synced before the staleness cutoff."""
        config = self.config_manager.load()
        cutoff = self._clock() - timedelta(minutes=config.sync.stale_after_minutes)
        feeds = self.state_store.list_due_feeds(cutoff)
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for feed in feeds:
            try:
                result = self.sync_feed(feed.id, trigger=trigger)
            except SyncError as exc:
                errors.append({"feed_id": feed.id, "error": str(exc)})
                continue
            results.append({"feed_id": feed.id, **result.to_dict()})
        if feeds:
            logger.info("Sweep synced %d of %d due feeds", len(results), len(feeds))
        return SweepSummary(synced=len(results), failed=len(errors), results=results, errors=errors)
