"""Outbound HTTP with per-call timeouts, bounded retries and a circuit breaker.

Retries cover transport errors and 429/5xx answers; other statuses are
returned to the caller unchanged. After ``circuit_failure_threshold``
consecutive failures the breaker for that host opens and calls fail fast
until ``circuit_recovery_seconds`` have passed, when one trial call is let
through. A server ``Retry-After`` is honoured up to ``max_retry_after_seconds``.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable
from urllib.parse import urlsplit

import requests

from yogacal.models import CircuitOpenError, HTTPConfig, UpstreamError


logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None

    def _state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.recovery_seconds:
            return "half_open"
        return "open"

    @property
    def state(self) -> str:
        with self._lock:
            return self._state()

    def allow(self) -> bool:
        with self._lock:
            state = self._state()
            if state != "half_open":
                return state == "closed"
            # Admit this caller as the trial; everyone else waits out another recovery period.
            self._opened_at = self._clock()
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._opened_at = self._clock()


class HttpClient:
    def __init__(
        self,
        config: HTTPConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or HTTPConfig()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()

    def breaker_for(self, url: str) -> CircuitBreaker:
        host = urlsplit(url).netloc or url
        with self._breakers_lock:
            breaker = self._breakers.get(host)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=self.config.circuit_failure_threshold,
                    recovery_seconds=self.config.circuit_recovery_seconds,
                )
                self._breakers[host] = breaker
            return breaker

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        breaker = self.breaker_for(url)
        if not breaker.allow():
            logger.warning("Circuit open for %s, failing fast", urlsplit(url).netloc)
            raise CircuitOpenError(f"Circuit open for {urlsplit(url).netloc}; skipping {method} request")
        kwargs.setdefault("timeout", self.config.timeout_seconds)

        attempt = 0
        while True:
            try:
                response = self.session.request(method, url, **kwargs)
            except requests.RequestException as exc:
                if attempt >= self.config.max_retries:
                    breaker.record_failure()
                    raise UpstreamError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc
                self._backoff(attempt, f"{type(exc).__name__}", None)
                attempt += 1
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt < self.config.max_retries:
                self._backoff(attempt, f"status={response.status_code}", response)
                attempt += 1
                continue

            if response.status_code in RETRY_STATUS_CODES:
                breaker.record_failure()
            else:
                breaker.record_success()
            return response

    def _backoff(self, attempt: int, reason: str, response: requests.Response | None) -> None:
        delay = self.config.backoff_seconds * (2**attempt)
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                try:
                    delay = min(float(retry_after), self.config.max_retry_after_seconds)
                except ValueError:
                    pass
        logger.warning(
            "HTTP call retrying in %.1fs (%s, attempt %d/%d)",
            delay,
            reason,
            attempt + 1,
            self.config.max_retries,
        )
        self._sleep(delay)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)
