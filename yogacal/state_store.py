from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from yogacal.models import (
    BillingEntity,
    CalendarFeed,
    CanonicalEvent,
    OAuthIntegration,
    StudioPattern,
    SyncFilterRule,
    TagRule,
    parse_iso_datetime,
    serialize_datetime,
    tag_rule_from_dict,
)


# Columns owned by sync; invoice_type and substitute_notes are only ever set by hand.
SYNC_COLUMNS = (
    "feed_id",
    "title",
    "description",
    "location",
    "start_time",
    "end_time",
    "tags_json",
    "custom_tags_json",
    "studio_id",
    "students_studio",
    "students_online",
    "status",
    "visibility",
    "image_url",
)
PARTIAL_UPDATE_COLUMNS = {"tags": "tags_json", "studio_id": "studio_id"}


def _utc_now() -> str:
    return serialize_datetime(datetime.now(timezone.utc)) or ""


def _json_list(value: Any) -> list[str]:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(x) for x in loaded] if isinstance(loaded, list) else []


def _event_from_row(row: sqlite3.Row) -> CanonicalEvent:
    return CanonicalEvent(
        id=int(row["id"]),
        user_id=row["user_id"],
        feed_id=row["feed_id"],
        uid=row["uid"],
        recurrence_id=row["recurrence_id"],
        title=row["title"] or "",
        description=row["description"] or "",
        location=row["location"] or "",
        start_time=row["start_time"],
        end_time=row["end_time"],
        tags=_json_list(row["tags_json"]),
        custom_tags=_json_list(row["custom_tags_json"]),
        studio_id=row["studio_id"],
        students_studio=row["students_studio"],
        students_online=row["students_online"],
        status=row["status"] or "CONFIRMED",
        visibility=row["visibility"] or "public",
        image_url=row["image_url"],
        invoice_type=row["invoice_type"],
        substitute_notes=row["substitute_notes"],
        studio_is_teacher=bool(row["studio_is_teacher"]),
        updated_at=row["updated_at"],
    )


def _event_params(event: CanonicalEvent) -> dict[str, Any]:
    return {
        "user_id": event.user_id,
        "uid": event.uid,
        "recurrence_id": event.recurrence_id,
        "feed_id": event.feed_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "tags_json": json.dumps(list(event.tags), ensure_ascii=False),
        "custom_tags_json": json.dumps(list(event.custom_tags), ensure_ascii=False),
        "studio_id": event.studio_id,
        "students_studio": event.students_studio,
        "students_online": event.students_online,
        "status": event.status,
        "visibility": event.visibility,
        "image_url": event.image_url,
        "invoice_type": event.invoice_type,
        "substitute_notes": event.substitute_notes,
        "updated_at": _utc_now(),
    }


EVENT_SELECT = """
    SELECT e.*, CASE WHEN b.entity_type = 'teacher' THEN 1 ELSE 0 END AS studio_is_teacher
    FROM events e
    LEFT JOIN billing_entities b ON b.id = e.studio_id
"""

UPSERT_EVENT_SQL = f"""
    INSERT INTO events(user_id, uid, recurrence_id, {", ".join(SYNC_COLUMNS)},
                       invoice_type, substitute_notes, updated_at)
    VALUES (:user_id, :uid, :recurrence_id, {", ".join(":" + c for c in SYNC_COLUMNS)},
            :invoice_type, :substitute_notes, :updated_at)
    ON CONFLICT(user_id, uid, recurrence_id) DO UPDATE SET
        {", ".join(f"{c} = excluded.{c}" for c in SYNC_COLUMNS)},
        updated_at = excluded.updated_at
    WHERE {" OR ".join(f"events.{c} IS NOT excluded.{c}" for c in SYNC_COLUMNS)}
"""


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_feeds (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            feed_url TEXT,
            calendar_name TEXT,
            sync_approach TEXT NOT NULL DEFAULT 'yoga_only',
            filtering_enabled INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            feed_id TEXT,
            uid TEXT NOT NULL,
            recurrence_id TEXT NOT NULL,
            title TEXT,
            description TEXT,
            location TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            tags_json TEXT NOT NULL DEFAULT '[]',
            custom_tags_json TEXT NOT NULL DEFAULT '[]',
            studio_id TEXT,
            students_studio INTEGER,
            students_online INTEGER,
            status TEXT,
            visibility TEXT,
            image_url TEXT,
            invoice_type TEXT,
            substitute_notes TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, uid, recurrence_id)
        );

        CREATE INDEX IF NOT EXISTS events_feed_start ON events(user_id, feed_id, start_time);

        CREATE TABLE IF NOT EXISTS tags (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            slug TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tag_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            tag_id TEXT NOT NULL,
            keyword TEXT,
            keywords_json TEXT,
            location_keywords_json TEXT
        );

        CREATE TABLE IF NOT EXISTS billing_entities (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT,
            entity_type TEXT NOT NULL DEFAULT 'studio',
            location_match_json TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS sync_filter_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            calendar_feed_id TEXT NOT NULL,
            pattern_type TEXT NOT NULL,
            pattern_value TEXT NOT NULL,
            match_type TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS oauth_calendar_integrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            expires_at TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, provider)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            feed_id TEXT,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            event_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            feed_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Feeds

    def add_feed(self, feed: CalendarFeed) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_feeds(id, user_id, feed_url, calendar_name, sync_approach,
                                               filtering_enabled, last_synced_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feed.id,
                        feed.user_id,
                        feed.feed_url,
                        feed.calendar_name,
                        feed.sync_approach,
                        int(feed.filtering_enabled),
                        serialize_datetime(feed.last_synced_at),
                        _utc_now(),
                    ),
                )
                conn.commit()

    def get_feed(self, feed_id: str) -> CalendarFeed | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_feeds WHERE id = ?", (str(feed_id),)).fetchone()
        if row is None:
            return None
        return self._feed_from_row(row)

    def list_due_feeds(self, cutoff: datetime) -> list[CalendarFeed]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM calendar_feeds
                    WHERE last_synced_at IS NULL OR last_synced_at < ?
                    ORDER BY created_at, id
                    """,
                    (serialize_datetime(cutoff),),
                ).fetchall()
        return [self._feed_from_row(row) for row in rows]

    def mark_feed_synced(self, feed_id: str, synced_at: datetime, calendar_name: str | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                if calendar_name:
                    conn.execute(
                        "UPDATE calendar_feeds SET last_synced_at = ?, calendar_name = ? WHERE id = ?",
                        (serialize_datetime(synced_at), calendar_name, str(feed_id)),
                    )
                else:
                    conn.execute(
                        "UPDATE calendar_feeds SET last_synced_at = ? WHERE id = ?",
                        (serialize_datetime(synced_at), str(feed_id)),
                    )
                conn.commit()

    @staticmethod
    def _feed_from_row(row: sqlite3.Row) -> CalendarFeed:
        return CalendarFeed(
            id=row["id"],
            user_id=row["user_id"],
            feed_url=row["feed_url"],
            calendar_name=row["calendar_name"],
            sync_approach=row["sync_approach"] or "yoga_only",
            filtering_enabled=bool(row["filtering_enabled"]),
            last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        )

    # Tags, studios and filter rules

    def add_tag(self, tag_id: str, slug: str, user_id: str | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("INSERT INTO tags(id, user_id, slug) VALUES (?, ?, ?)", (tag_id, user_id, slug))
                conn.commit()

    def tag_map(self) -> dict[str, str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, slug FROM tags").fetchall()
        return {str(row["id"]): str(row["slug"]) for row in rows}

    def add_tag_rule(
        self,
        *,
        user_id: str,
        tag_id: str,
        keyword: str | None = None,
        keywords: list[str] | None = None,
        location_keywords: list[str] | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tag_rules(user_id, tag_id, keyword, keywords_json, location_keywords_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        tag_id,
                        keyword,
                        json.dumps(keywords) if keywords is not None else None,
                        json.dumps(location_keywords) if location_keywords is not None else None,
                    ),
                )
                conn.commit()

    def list_tag_rules(self, user_id: str) -> list[TagRule]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM tag_rules WHERE user_id = ? ORDER BY id", (str(user_id),)
                ).fetchall()
        rules: list[TagRule] = []
        for row in rows:
            rule = tag_rule_from_dict(
                {
                    "tag_id": row["tag_id"],
                    "keyword": row["keyword"],
                    "keywords": _json_list(row["keywords_json"]),
                    "location_keywords": _json_list(row["location_keywords_json"]),
                }
            )
            if rule is not None:
                rules.append(rule)
        return rules

    def add_billing_entity(self, entity: BillingEntity) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO billing_entities(id, user_id, name, entity_type, location_match_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        entity.id,
                        entity.user_id,
                        entity.name,
                        entity.entity_type,
                        json.dumps(entity.location_match, ensure_ascii=False),
                    ),
                )
                conn.commit()

    def list_studios(self, user_id: str) -> list[StudioPattern]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, location_match_json FROM billing_entities
                    WHERE user_id = ? AND entity_type = 'studio'
                    ORDER BY rowid
                    """,
                    (str(user_id),),
                ).fetchall()
        return [StudioPattern(id=row["id"], location_match=_json_list(row["location_match_json"])) for row in rows]

    def teacher_entity_ids(self, user_id: str) -> set[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id FROM billing_entities WHERE user_id = ? AND entity_type = 'teacher'",
                    (str(user_id),),
                ).fetchall()
        return {str(row["id"]) for row in rows}

    def add_filter_rule(self, *, user_id: str, feed_id: str, rule: SyncFilterRule) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_filter_rules(user_id, calendar_feed_id, pattern_type, pattern_value,
                                                  match_type, is_active)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, feed_id, rule.pattern_type, rule.pattern_value, rule.match_type, int(rule.is_active)),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def list_active_filter_rules(self, user_id: str, feed_id: str) -> list[SyncFilterRule]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM sync_filter_rules
                    WHERE user_id = ? AND calendar_feed_id = ? AND is_active = 1
                    ORDER BY id
                    """,
                    (str(user_id), str(feed_id)),
                ).fetchall()
        return [
            SyncFilterRule(
                id=int(row["id"]),
                pattern_type=row["pattern_type"],
                pattern_value=row["pattern_value"],
                match_type=row["match_type"],
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    # OAuth integrations

    def save_oauth_integration(
        self,
        *,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_calendar_integrations(user_id, provider, access_token, refresh_token,
                                                            expires_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at = excluded.expires_at,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, provider, access_token, refresh_token, serialize_datetime(expires_at), _utc_now()),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT id FROM oauth_calendar_integrations WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                ).fetchone()
        return int(row["id"])

    def get_oauth_integration(self, user_id: str, provider: str = "google") -> OAuthIntegration | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM oauth_calendar_integrations WHERE user_id = ? AND provider = ?",
                    (str(user_id), str(provider)),
                ).fetchone()
        if row is None:
            return None
        return OAuthIntegration(
            id=int(row["id"]),
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=parse_iso_datetime(row["expires_at"]),
        )

    def update_oauth_token(self, integration_id: int, access_token: str, expires_at: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE oauth_calendar_integrations
                    SET access_token = ?, expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, serialize_datetime(expires_at), _utc_now(), int(integration_id)),
                )
                conn.commit()

    # Events

    def list_events(
        self,
        user_id: str,
        feed_id: str | None = None,
        event_ids: Iterable[int] | None = None,
    ) -> list[CanonicalEvent]:
        clauses = ["e.user_id = ?"]
        params: list[Any] = [str(user_id)]
        if feed_id:
            clauses.append("e.feed_id = ?")
            params.append(str(feed_id))
        ids = [int(x) for x in event_ids or []]
        if ids:
            clauses.append(f"e.id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"{EVENT_SELECT} WHERE {' AND '.join(clauses)} ORDER BY e.start_time, e.id",
                    params,
                ).fetchall()
        return [_event_from_row(row) for row in rows]

    def events_in_window(
        self, user_id: str, feed_id: str, window_start: datetime, window_end: datetime
    ) -> list[CanonicalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    {EVENT_SELECT}
                    WHERE e.user_id = ? AND e.feed_id = ? AND e.end_time > ? AND e.start_time <= ?
                    ORDER BY e.start_time, e.id
                    """,
                    (str(user_id), str(feed_id), serialize_datetime(window_start), serialize_datetime(window_end)),
                ).fetchall()
        return [_event_from_row(row) for row in rows]

    def get_events_by_keys(self, user_id: str, keys: Iterable[tuple[str, str]]) -> dict[tuple[str, str], CanonicalEvent]:
        wanted = set(keys)
        if not wanted:
            return {}
        uids = sorted({uid for uid, _ in wanted})
        found: dict[tuple[str, str], CanonicalEvent] = {}
        with self._lock:
            with self._connect() as conn:
                for offset in range(0, len(uids), 500):
                    chunk = uids[offset : offset + 500]
                    rows = conn.execute(
                        f"{EVENT_SELECT} WHERE e.user_id = ? AND e.uid IN ({', '.join('?' for _ in chunk)})",
                        [str(user_id), *chunk],
                    ).fetchall()
                    for row in rows:
                        event = _event_from_row(row)
                        if event.key in wanted:
                            found[event.key] = event
        return found

    def delete_events(self, event_ids: Iterable[int]) -> int:
        ids = [int(x) for x in event_ids]
        if not ids:
            return 0
        deleted = 0
        with self._lock:
            with self._connect() as conn:
                for offset in range(0, len(ids), 500):
                    chunk = ids[offset : offset + 500]
                    cursor = conn.execute(
                        f"DELETE FROM events WHERE id IN ({', '.join('?' for _ in chunk)})", chunk
                    )
                    deleted += cursor.rowcount
                conn.commit()
        return deleted

    def upsert_events(self, events: Iterable[CanonicalEvent]) -> int:
        """Insert or update on ``(user_id, uid, recurrence_id)``; returns rows actually written."""
        params = [_event_params(event) for event in events]
        if not params:
            return 0
        with self._lock:
            with self._connect() as conn:
                before = conn.total_changes
                conn.executemany(UPSERT_EVENT_SQL, params)
                conn.commit()
                return conn.total_changes - before

    def update_event_fields(self, event_id: int, fields: dict[str, Any]) -> None:
        assignments: list[str] = []
        values: list[Any] = []
        for name, value in fields.items():
            column = PARTIAL_UPDATE_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"Field not updatable: {name}")
            assignments.append(f"{column} = ?")
            values.append(json.dumps(list(value), ensure_ascii=False) if column == "tags_json" else value)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        values.append(_utc_now())
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE events SET {', '.join(assignments)} WHERE id = ?",
                    [*values, int(event_id)],
                )
                conn.commit()
        if cursor.rowcount == 0:
            raise LookupError(f"Event {event_id} not found")

    def set_manual_billing(
        self,
        event_id: int,
        *,
        invoice_type: str | None = None,
        substitute_notes: str | None = None,
        studio_id: str | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE events
                    SET invoice_type = ?, substitute_notes = ?, studio_id = COALESCE(?, studio_id), updated_at = ?
                    WHERE id = ?
                    """,
                    (invoice_type, substitute_notes, studio_id, _utc_now(), int(event_id)),
                )
                conn.commit()

    # Run history

    def record_sync_run(
        self,
        *,
        trigger: str,
        feed_id: str | None,
        status: str,
        message: str,
        duration_ms: int,
        event_count: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, feed_id, status, message, duration_ms, event_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, feed_id, status, message, duration_ms, event_count),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, feed_id, status, message, duration_ms, event_count
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        feed_id: str,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, feed_id, uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), feed_id, uid, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, feed_id, uid, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
