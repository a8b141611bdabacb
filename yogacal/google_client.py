from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

from yogacal.http_client import HttpClient
from yogacal.models import ExternalEventInstance, GoogleOAuthConfig, UpstreamError, serialize_datetime
from yogacal.timezones import to_utc


logger = logging.getLogger(__name__)

MAX_PAGES = 100


def _time_value(block: Any) -> tuple[str, str | None] | None:
    if not isinstance(block, dict):
        return None
    raw = block.get("dateTime") or block.get("date")
    if not isinstance(raw, str) or not raw.strip():
        return None
    zone = block.get("timeZone")
    return raw.strip(), zone if isinstance(zone, str) and zone.strip() else None


def item_to_instance(item: dict[str, Any]) -> ExternalEventInstance | None:
    event_id = str(item.get("id", "") or "").strip()
    start = _time_value(item.get("start"))
    end = _time_value(item.get("end"))
    if not event_id or start is None or end is None:
        return None
    start_raw, start_zone = start
    end_raw, end_zone = end
    master_id = str(item.get("recurringEventId", "") or "").strip() or event_id
    return ExternalEventInstance(
        uid=event_id,
        recurrence_id=f"{master_id}-{start_raw}",
        start=to_utc(start_raw, start_zone),
        end=to_utc(end_raw, end_zone),
        title=str(item.get("summary", "") or ""),
        description=str(item.get("description", "") or ""),
        location=str(item.get("location", "") or ""),
        status=str(item.get("status", "") or "confirmed").upper(),
        source_timezone=start_zone,
    )


class GoogleCalendarClient:
    def __init__(self, config: GoogleOAuthConfig, http: HttpClient, max_results: int = 2500) -> None:
        self.config = config
        self.http = http
        self.max_results = max(1, min(2500, int(max_results)))

    def _events_url(self, calendar_id: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/calendars/{quote(calendar_id, safe='')}/events"

    def list_event_items(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "timeMin": serialize_datetime(time_min),
            "timeMax": serialize_datetime(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(self.max_results),
        }
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        for _ in range(MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            response = self.http.get(
                self._events_url(calendar_id),
                params=page_params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if not response.ok:
                raise UpstreamError(
                    f"Failed to fetch calendar events: {response.status_code} {response.text[:500]}",
                    status=response.status_code,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError("Calendar API returned invalid JSON") from exc
            if not isinstance(payload, dict):
                raise UpstreamError("Calendar API response has unexpected payload shape")
            items.extend(item for item in payload.get("items") or [] if isinstance(item, dict))
            next_token = payload.get("nextPageToken")
            page_token = next_token.strip() if isinstance(next_token, str) and next_token.strip() else None
            if page_token is None:
                return items
        raise UpstreamError(f"Calendar {calendar_id} exceeded {MAX_PAGES} result pages")

    def fetch_instances(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[ExternalEventInstance]:
        instances: list[ExternalEventInstance] = []
        for item in self.list_event_items(access_token, calendar_id, time_min, time_max):
            try:
                instance = item_to_instance(item)
            except ValueError:
                logger.warning("Skipping calendar item %s with unparseable times", item.get("id"))
                continue
            if instance is not None:
                instances.append(instance)
        return instances
