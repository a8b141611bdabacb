from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping

from yogacal.models import LegacyKeywordRule, ListKeywordRule, StudioPattern, TagRule

if TYPE_CHECKING:
    from yogacal.state_store import StateStore


logger = logging.getLogger(__name__)


def rule_matches(rule: TagRule, content: str, location: str) -> bool:
    """``content`` is the lowercased title+description; ``location`` is raw."""
    if isinstance(rule, LegacyKeywordRule):
        return rule.keyword.lower() in content
    if isinstance(rule, ListKeywordRule):
        if any(keyword.lower() in content for keyword in rule.keywords):
            return True
        lower_location = (location or "").lower()
        return bool(lower_location) and any(
            keyword.lower() in lower_location for keyword in rule.location_keywords
        )
    raise TypeError(f"Unsupported tag rule: {type(rule).__name__}")


def match_tags(
    content: str,
    location: str,
    rules: Iterable[TagRule],
    tag_map: Mapping[str, str],
) -> list[str]:
    """Slugs of every matching rule's tag, deduplicated, unknown tag ids dropped."""
    slugs: list[str] = []
    for rule in rules:
        if not rule_matches(rule, content, location):
            continue
        slug = tag_map.get(rule.tag_id)
        if slug and slug not in slugs:
            slugs.append(slug)
    return slugs


def match_studio_id(location: str, studios: Iterable[StudioPattern]) -> str | None:
    if not location:
        return None
    lower_location = location.lower()
    for studio in studios:
        patterns = [str(p).lower() for p in studio.location_match or [] if str(p or "").strip()]
        if any(pattern in lower_location for pattern in patterns):
            return studio.id
    return None


def safe_match_tags(
    content: str,
    location: str,
    rules: Iterable[TagRule],
    tag_map: Mapping[str, str],
    event_ref: str = "",
) -> list[str]:
    try:
        return match_tags(content, location, rules, tag_map)
    except Exception:
        logger.exception("Tag matching failed for event %s", event_ref or "<unknown>")
        return []


def safe_match_studio_id(location: str, studios: Iterable[StudioPattern], event_ref: str = "") -> str | None:
    try:
        return match_studio_id(location, studios)
    except Exception:
        logger.exception("Studio matching failed for event %s", event_ref or "<unknown>")
        return None


@dataclass
class MatchingContext:
    rules: list[TagRule] = field(default_factory=list)
    tag_map: dict[str, str] = field(default_factory=dict)
    studios: list[StudioPattern] = field(default_factory=list)
    teacher_ids: set[str] = field(default_factory=set)


def load_matching_context(
    state_store: "StateStore",
    user_id: str,
    *,
    include_tags: bool = True,
    include_studios: bool = True,
) -> MatchingContext:
    """Fetch the user's rules, tag slugs, studios and teacher entities concurrently."""
    context = MatchingContext()
    with ThreadPoolExecutor(max_workers=4) as pool:
        rules_future = pool.submit(state_store.list_tag_rules, user_id) if include_tags else None
        tags_future = pool.submit(state_store.tag_map) if include_tags else None
        studios_future = pool.submit(state_store.list_studios, user_id) if include_studios else None
        teachers_future = pool.submit(state_store.teacher_entity_ids, user_id) if include_studios else None
        if rules_future is not None and tags_future is not None:
            context.rules = rules_future.result()
            context.tag_map = tags_future.result()
        if studios_future is not None and teachers_future is not None:
            context.studios = studios_future.result()
            context.teacher_ids = teachers_future.result()
    return context
