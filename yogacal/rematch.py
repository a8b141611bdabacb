from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from yogacal.matching import MatchingContext, load_matching_context, safe_match_studio_id, safe_match_tags
from yogacal.models import CanonicalEvent, RematchBatchError, RematchResult
from yogacal.state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass
class RematchRequest:
    user_id: str
    feed_id: str | None = None
    event_ids: list[int] = field(default_factory=list)
    rematch_tags: bool = True
    rematch_studios: bool = True
    batch_size: int = 100


def compute_changes(
    event: CanonicalEvent,
    context: MatchingContext,
    *,
    rematch_tags: bool,
    rematch_studios: bool,
) -> dict[str, Any]:
    """Fields whose recomputed value differs from what is stored."""
    changes: dict[str, Any] = {}
    event_ref = f"{event.uid}/{event.recurrence_id}"
    content = f"{event.title} {event.description}".lower()

    if rematch_tags and context.rules:
        tags = safe_match_tags(content, event.location, context.rules, context.tag_map, event_ref)
        if sorted(tags) != sorted(event.tags):
            changes["tags"] = tags

    event.with_teacher_ids(context.teacher_ids)
    if rematch_studios and context.studios and not event.is_manually_overridden:
        studio_id = safe_match_studio_id(event.location, context.studios, event_ref)
        if studio_id != event.studio_id:
            changes["studio_id"] = studio_id
    return changes


class RematchProcessor:
    def __init__(self, state_store: StateStore, max_workers: int = 8) -> None:
        self.state_store = state_store
        self.max_workers = max(1, max_workers)

    def run(self, request: RematchRequest) -> RematchResult:
        if not str(request.user_id or "").strip():
            raise ValueError("user_id is required")
        if request.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        events = self.state_store.list_events(
            request.user_id, feed_id=request.feed_id, event_ids=request.event_ids
        )
        if not events:
            return RematchResult(total_events_processed=0, updated_count=0)

        context = load_matching_context(
            self.state_store,
            request.user_id,
            include_tags=request.rematch_tags,
            include_studios=request.rematch_studios,
        )

        updated = 0
        for offset in range(0, len(events), request.batch_size):
            batch_number = offset // request.batch_size + 1
            batch = events[offset : offset + request.batch_size]
            pending = []
            for event in batch:
                changes = compute_changes(
                    event,
                    context,
                    rematch_tags=request.rematch_tags,
                    rematch_studios=request.rematch_studios,
                )
                if changes and event.id is not None:
                    pending.append((event.id, changes))
            updated += self._write_batch(batch_number, pending)

        logger.info(
            "Rematch for user %s: %d of %d events updated", request.user_id, updated, len(events)
        )
        return RematchResult(total_events_processed=len(events), updated_count=updated)

    def _write_batch(self, batch_number: int, pending: list[tuple[int, dict[str, Any]]]) -> int:
        if not pending:
            return 0
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending))) as pool:
            futures = [
                pool.submit(self.state_store.update_event_fields, event_id, changes)
                for event_id, changes in pending
            ]
            wait(futures)
        failures = [future.exception() for future in futures if future.exception() is not None]
        if failures:
            details = "; ".join(f"{type(exc).__name__}: {exc}" for exc in failures)
            logger.error("Rematch batch %d failed: %s", batch_number, details)
            raise RematchBatchError(batch_number, details)
        return len(pending)
