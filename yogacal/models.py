from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Union


SYNC_APPROACHES = ("yoga_only", "mixed_calendar")
SYNC_MODES = ("default", "historical")
OAUTH_FEED_PREFIX = "oauth:google:"
TEACHER_INVOICE = "teacher_invoice"


class SyncError(Exception):
    status_code = 500


class FeedNotFoundError(SyncError):
    status_code = 404


class UnsupportedFeedError(SyncError):
    status_code = 400


class OAuthIntegrationMissingError(SyncError):
    pass


class UpstreamError(SyncError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class CircuitOpenError(UpstreamError):
    pass


class RematchBatchError(Exception):
    def __init__(self, batch: int, details: str) -> None:
        super().__init__(f"Failed to update batch {batch}: {details}")
        self.batch = batch
        self.details = details


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def sync_window(now: datetime, mode: str, window_days: int) -> tuple[datetime, datetime]:
    """Historical syncs look back from now, default syncs look ahead."""
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    span = timedelta(days=max(1, int(window_days)))
    if mode == "historical":
        return now_utc - span, now_utc
    return now_utc, now_utc + span


@dataclass
class GoogleOAuthConfig:
    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    refresh_buffer_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleOAuthConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            token_url=str(data.get("token_url", "")).strip() or "https://oauth2.googleapis.com/token",
            api_base_url=str(data.get("api_base_url", "")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            refresh_buffer_seconds=max(0, int(data.get("refresh_buffer_seconds", 300))),
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class SyncConfig:
    default_window_days: int = 90
    historical_window_days: int = 365
    max_results: int = 2500
    stale_after_minutes: int = 30
    interval_seconds: int = 300
    max_occurrences: int = 1000
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            default_window_days=max(1, int(data.get("default_window_days", 90))),
            historical_window_days=max(1, int(data.get("historical_window_days", 365))),
            max_results=min(2500, max(1, int(data.get("max_results", 2500)))),
            stale_after_minutes=max(1, int(data.get("stale_after_minutes", 30))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            max_occurrences=max(1, int(data.get("max_occurrences", 1000))),
            enabled=bool(data.get("enabled", True)),
        )

    def window_days_for(self, mode: str) -> int:
        if mode == "historical":
            return self.historical_window_days
        return self.default_window_days


@dataclass
class HTTPConfig:
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 1.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0
    max_retry_after_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HTTPConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1.0, float(data.get("timeout_seconds", 30.0))),
            max_retries=max(0, int(data.get("max_retries", 3))),
            backoff_seconds=max(0.0, float(data.get("backoff_seconds", 1.0))),
            circuit_failure_threshold=max(1, int(data.get("circuit_failure_threshold", 5))),
            circuit_recovery_seconds=max(0.0, float(data.get("circuit_recovery_seconds", 60.0))),
            max_retry_after_seconds=max(0.0, float(data.get("max_retry_after_seconds", 60.0))),
        )


@dataclass
class RematchConfig:
    batch_size: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RematchConfig":
        data = data or {}
        return cls(batch_size=max(1, int(data.get("batch_size", 100))))


@dataclass
class AppConfig:
    google: GoogleOAuthConfig = field(default_factory=GoogleOAuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    rematch: RematchConfig = field(default_factory=RematchConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleOAuthConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            http=HTTPConfig.from_dict(data.get("http")),
            rematch=RematchConfig.from_dict(data.get("rematch")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarFeed:
    id: str
    user_id: str
    feed_url: str | None = None
    calendar_name: str | None = None
    sync_approach: str = "yoga_only"
    filtering_enabled: bool = False
    last_synced_at: datetime | None = None

    @property
    def is_ics(self) -> bool:
        return bool(self.feed_url and self.feed_url.strip())

    @property
    def is_oauth(self) -> bool:
        return not self.is_ics and str(self.calendar_name or "").startswith(OAUTH_FEED_PREFIX)

    @property
    def oauth_calendar_id(self) -> str:
        """Calendar id from ``oauth:google:<calendar_id>[:<display name>]``."""
        if not self.is_oauth:
            raise UnsupportedFeedError(f"Feed {self.id} is not an OAuth calendar feed")
        remainder = str(self.calendar_name)[len(OAUTH_FEED_PREFIX):]
        calendar_id = remainder.split(":", 1)[0].strip()
        if not calendar_id:
            raise UnsupportedFeedError(f"Feed {self.id} has an invalid OAuth calendar reference")
        return calendar_id


@dataclass
class ExternalEventInstance:
    uid: str
    recurrence_id: str
    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    source_timezone: str | None = None
    # False when the series could not be expanded and only its first occurrence is known.
    expanded: bool = True

    @property
    def key(self) -> tuple[str, str]:
        return (self.uid, self.recurrence_id)

    @property
    def content(self) -> str:
        return f"{self.title} {self.description}".lower()


@dataclass
class CanonicalEvent:
    user_id: str
    uid: str
    recurrence_id: str
    start_time: str
    end_time: str
    feed_id: str | None = None
    id: int | None = None
    title: str = ""
    location: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    custom_tags: list[str] = field(default_factory=list)
    studio_id: str | None = None
    students_studio: int | None = None
    students_online: int | None = None
    status: str = "CONFIRMED"
    visibility: str = "public"
    image_url: str | None = None
    invoice_type: str | None = None
    substitute_notes: str | None = None
    studio_is_teacher: bool = False
    updated_at: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.uid, self.recurrence_id)

    @property
    def is_manually_overridden(self) -> bool:
        """Studio/billing assignment was set by hand and must survive rematching."""
        return (
            self.invoice_type == TEACHER_INVOICE
            or bool(str(self.substitute_notes or "").strip())
            or self.studio_is_teacher
        )

    def with_teacher_ids(self, teacher_ids: set[str]) -> "CanonicalEvent":
        self.studio_is_teacher = bool(self.studio_id and self.studio_id in teacher_ids)
        return self

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("studio_is_teacher", None)
        payload["manually_overridden"] = self.is_manually_overridden
        return payload


@dataclass(frozen=True)
class LegacyKeywordRule:
    tag_id: str
    keyword: str


@dataclass(frozen=True)
class ListKeywordRule:
    tag_id: str
    keywords: tuple[str, ...] = ()
    location_keywords: tuple[str, ...] = ()


TagRule = Union[LegacyKeywordRule, ListKeywordRule]


def _clean_keywords(values: Any) -> tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    return tuple(str(x).strip() for x in values if str(x or "").strip())


def tag_rule_from_dict(data: dict[str, Any]) -> TagRule | None:
    tag_id = str(data.get("tag_id", "") or "").strip()
    if not tag_id:
        return None
    keywords = _clean_keywords(data.get("keywords"))
    location_keywords = _clean_keywords(data.get("location_keywords"))
    legacy = str(data.get("keyword", "") or "").strip()
    if keywords or location_keywords:
        if legacy and legacy not in keywords:
            keywords = keywords + (legacy,)
        return ListKeywordRule(tag_id=tag_id, keywords=keywords, location_keywords=location_keywords)
    if legacy:
        return LegacyKeywordRule(tag_id=tag_id, keyword=legacy)
    return None


@dataclass
class StudioPattern:
    id: str
    location_match: list[str] = field(default_factory=list)


@dataclass
class BillingEntity:
    id: str
    user_id: str
    name: str = ""
    entity_type: str = "studio"
    location_match: list[str] = field(default_factory=list)


@dataclass
class SyncFilterRule:
    pattern_type: str
    pattern_value: str
    match_type: str = "contains"
    is_active: bool = True
    id: int | None = None


@dataclass
class OAuthIntegration:
    id: int
    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass
class SyncResult:
    feed_id: str
    type: str
    count: int
    deleted: int = 0
    written: int = 0
    calendar_name: str | None = None
    synced_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "count": self.count,
            "type": self.type,
            "deleted": self.deleted,
            "written": self.written,
        }


@dataclass
class RematchResult:
    total_events_processed: int
    updated_count: int

    @property
    def message(self) -> str:
        if self.total_events_processed == 0:
            return "No events found to rematch"
        return f"Successfully rematched {self.updated_count} out of {self.total_events_processed} events"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "total_events_processed": self.total_events_processed,
            "updated_count": self.updated_count,
            "message": self.message,
        }


def overlaps_window(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    return end > window_start and start <= window_end
