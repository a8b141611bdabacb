from __future__ import annotations

import logging
import re
from typing import Callable, Iterable

from yogacal.models import CalendarFeed, ExternalEventInstance, SyncFilterRule


logger = logging.getLogger(__name__)


def rule_matches(rule: SyncFilterRule, title: str, location: str, description: str) -> bool:
    if not rule.is_active:
        return False
    targets = {"title": title, "location": location, "description": description}
    content = targets.get(str(rule.pattern_type).lower())
    if content is None:
        return False
    content = content or ""
    pattern = str(rule.pattern_value or "")
    match_type = str(rule.match_type).lower()
    if match_type == "regex":
        try:
            return re.search(pattern, content, re.IGNORECASE) is not None
        except re.error:
            logger.warning("Invalid regex pattern in sync filter rule %s: %r", rule.id, pattern)
            return False

    lower_content = content.lower()
    lower_pattern = pattern.lower()
    if match_type == "contains":
        return lower_pattern in lower_content
    if match_type == "exact":
        return lower_content == lower_pattern
    if match_type == "starts_with":
        return lower_content.startswith(lower_pattern)
    if match_type == "ends_with":
        return lower_content.endswith(lower_pattern)
    return False


def event_passes(event: ExternalEventInstance, rules: Iterable[SyncFilterRule]) -> bool:
    return any(rule_matches(rule, event.title, event.location, event.description) for rule in rules)


def apply_filter_policy(
    feed: CalendarFeed,
    events: list[ExternalEventInstance],
    load_rules: Callable[[], list[SyncFilterRule]],
) -> list[ExternalEventInstance]:
    """Keep the events a feed is allowed to persist.

    ``yoga_only`` feeds and mixed calendars with filtering switched off pass
    everything. A filtering mixed calendar with no active rules passes
    nothing.
    """
    approach = feed.sync_approach or "yoga_only"
    if approach != "mixed_calendar":
        return list(events)
    if not feed.filtering_enabled:
        logger.info("Mixed calendar feed %s has filtering disabled, syncing all events", feed.id)
        return list(events)

    rules = [rule for rule in load_rules() if rule.is_active]
    if not rules:
        logger.info("No filter rules found for mixed calendar feed %s, syncing no events", feed.id)
        return []
    kept = [item for item in events if event_passes(item, rules)]
    logger.info("Filtered %d events to %d events for feed %s", len(events), len(kept), feed.id)
    return kept
