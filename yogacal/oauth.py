from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from yogacal.http_client import HttpClient
from yogacal.models import GoogleOAuthConfig, OAuthIntegration, UpstreamError, utc_now
from yogacal.state_store import StateStore


logger = logging.getLogger(__name__)

STATE_VALID = "valid"
STATE_REFRESHING = "refreshing"
STATE_REFRESH_FAILED = "refresh_failed"

DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class OAuthTokenManager:
    """Hands out access tokens per (user, provider), refreshing expired ones.

    A failed refresh keeps the stored token and moves the pair to
    ``refresh_failed``; the caller carries on and the provider API call is
    expected to reject the stale token.
    """

    def __init__(
        self,
        config: GoogleOAuthConfig,
        state_store: StateStore,
        http: HttpClient,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.state_store = state_store
        self.http = http
        self._clock = clock
        self._states: dict[tuple[str, str], str] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def state_for(self, user_id: str, provider: str = "google") -> str:
        return self._states.get((user_id, provider), STATE_VALID)

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def is_expired(self, integration: OAuthIntegration) -> bool:
        if integration.expires_at is None:
            return True
        buffer = timedelta(seconds=self.config.refresh_buffer_seconds)
        return integration.expires_at - buffer <= self._clock()

    def get_access_token(self, integration: OAuthIntegration) -> str:
        key = (integration.user_id, integration.provider)
        if not self.is_expired(integration) or not integration.refresh_token:
            return integration.access_token

        with self._lock_for(key):
            # Another request may have refreshed while we waited.
            latest = self.state_store.get_oauth_integration(integration.user_id, integration.provider)
            if latest is not None and not self.is_expired(latest):
                self._states[key] = STATE_VALID
                return latest.access_token

            self._states[key] = STATE_REFRESHING
            try:
                access_token, expires_at = self.refresh(integration)
            except UpstreamError as exc:
                self._states[key] = STATE_REFRESH_FAILED
                logger.warning(
                    "Token refresh failed for user %s (%s); continuing with stored token: %s",
                    integration.user_id,
                    integration.provider,
                    exc,
                )
                return integration.access_token

            self.state_store.update_oauth_token(integration.id, access_token, expires_at)
            integration.access_token = access_token
            integration.expires_at = expires_at
            self._states[key] = STATE_VALID
            return access_token

    def refresh(self, integration: OAuthIntegration) -> tuple[str, datetime]:
        if not self.config.is_configured():
            raise UpstreamError("OAuth client credentials are not configured")
        response = self.http.post(
            self.config.token_url,
            data={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": integration.refresh_token or "",
                "grant_type": "refresh_token",
            },
            headers={"Accept": "application/json"},
        )
        if not response.ok:
            raise UpstreamError(
                f"Token refresh failed: {response.status_code} {response.text[:300]}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise UpstreamError("Token response is missing a non-empty access_token")
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return access_token.strip(), self._clock() + timedelta(seconds=expires_in)
