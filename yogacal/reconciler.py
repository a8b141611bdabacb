from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from yogacal.models import CanonicalEvent
from yogacal.state_store import StateStore


@dataclass
class ReconcilePlan:
    upserts: list[CanonicalEvent] = field(default_factory=list)
    stale: list[CanonicalEvent] = field(default_factory=list)

    @property
    def stale_ids(self) -> list[int]:
        return [event.id for event in self.stale if event.id is not None]


@dataclass
class ReconcileOutcome:
    deleted: int
    written: int
    upserted: int


def plan_reconciliation(
    fresh: Iterable[CanonicalEvent],
    stored: Iterable[CanonicalEvent],
    keep_uids: Iterable[str] = (),
) -> ReconcilePlan:
    """Stale rows are stored keys absent from ``fresh``; every fresh row is upserted.

    Fresh rows sharing a ``(uid, recurrence_id)`` collapse to the last one seen,
    so the two sets never share a key. Stored rows of ``keep_uids`` (series the
    source could not expand) are never stale.
    """
    by_key: dict[tuple[str, str], CanonicalEvent] = {}
    for event in fresh:
        by_key[event.key] = event
    kept = set(keep_uids)
    stale = [event for event in stored if event.key not in by_key and event.uid not in kept]
    return ReconcilePlan(upserts=list(by_key.values()), stale=stale)


def apply_plan(state_store: StateStore, plan: ReconcilePlan) -> ReconcileOutcome:
    deleted = state_store.delete_events(plan.stale_ids)
    written = state_store.upsert_events(plan.upserts)
    return ReconcileOutcome(deleted=deleted, written=written, upserted=len(plan.upserts))
