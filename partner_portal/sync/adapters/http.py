"""
HTTP plumbing shared by the LMS and CRM fetchers.

``PageClient.get_json`` performs one logical page request: it counts every
HTTP call, honours 429 responses with a fixed sleep before retrying the same
request (bounded), and converts transport failures and non-2xx statuses into
a ``FetchError`` value instead of raising. Callers treat an errored request
as an empty page.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, List, Mapping

import requests

from ..errors import TransientProviderError
from ..metrics import record_api_call, record_rate_limit_retry
from .health import ApiHealth, get_api_health

RATE_LIMITED = "rate_limited"
HTTP_ERROR = "http_error"
TRANSPORT_ERROR = "transport_error"
INVALID_PAYLOAD = "invalid_payload"


@dataclass
class ApiCallStats:
    """API accounting accumulated over one sync run."""

    calls_made: int = 0
    calls_saved: int = 0
    cache_hits: int = 0
    rate_limited: int = 0
    retries: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def snapshot(self) -> "ApiCallStats":
        return ApiCallStats(**asdict(self))

    def since(self, baseline: "ApiCallStats") -> "ApiCallStats":
        """Counts accumulated after ``baseline`` was taken."""
        current = asdict(self)
        previous = asdict(baseline)
        return ApiCallStats(**{name: current[name] - previous[name] for name in current})


@dataclass(frozen=True)
class FetchError:
    """Describes why a page request produced no items."""

    kind: str
    url: str
    message: str
    http_status: int | None = None

    @property
    def not_found(self) -> bool:
        return self.http_status == 404


@dataclass
class Page:
    number: int
    items: List[Mapping[str, Any]] = field(default_factory=list)
    error: FetchError | None = None
    total: int | None = None


class PageClient:
    """Issue page requests with rate-limit backoff and error absorption."""

    def __init__(
        self,
        *,
        source: str,
        headers: Mapping[str, str],
        session: requests.Session | None = None,
        timeout: float = 30.0,
        rate_limit_backoff: float = 10.0,
        max_rate_limit_retries: int = 3,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
        stats: ApiCallStats | None = None,
        health: ApiHealth | None = None,
    ) -> None:
        self.source = source
        self.headers = dict(headers)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.rate_limit_backoff = max(0.0, float(rate_limit_backoff))
        self.max_rate_limit_retries = max(1, int(max_rate_limit_retries))
        self.sleep = sleep_fn
        self.logger = logger or logging.getLogger(__name__)
        self.stats = stats or ApiCallStats()
        self.health = health or get_api_health(source)

    def pause(self, seconds: float) -> None:
        if seconds > 0:
            self.sleep(seconds)

    def get_json(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
    ) -> tuple[Mapping[str, Any] | None, FetchError | None]:
        try:
            response = self._send(url, params)
        except TransientProviderError as exc:
            if exc.http_status == 429:
                return None, self._fail(RATE_LIMITED, url, str(exc), 429, outcome=None)
            return None, self._fail(TRANSPORT_ERROR, url, str(exc), None, outcome="transport_error")

        if not response.ok:
            return None, self._fail(
                HTTP_ERROR,
                url,
                _response_message(response),
                response.status_code,
                outcome="error",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            return None, self._fail(INVALID_PAYLOAD, url, f"Invalid JSON: {exc}", response.status_code, "error")
        if not isinstance(payload, Mapping):
            return None, self._fail(
                INVALID_PAYLOAD, url, "Expected a JSON object", response.status_code, outcome="error"
            )

        record_api_call(self.source, "ok")
        self.health.record_success()
        return payload, None

    def _send(self, url: str, params: Mapping[str, Any] | None) -> requests.Response:
        """GET one page, retrying the same request while rate limited."""
        retries = 0
        while True:
            self.stats.calls_made += 1
            try:
                response = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                raise TransientProviderError(str(exc)) from exc

            if response.status_code == 429:
                self.stats.rate_limited += 1
                record_api_call(self.source, "rate_limited")
                if retries >= self.max_rate_limit_retries:
                    raise TransientProviderError(f"Rate limited after {retries} retries", http_status=429)
                retries += 1
                self.stats.retries += 1
                record_rate_limit_retry(self.source)
                self.logger.warning(
                    "Upstream rate limit hit; backing off before retrying the same page",
                    extra={
                        "sync_source": self.source,
                        "sync_url": url,
                        "sync_retry": retries,
                        "sync_backoff_seconds": self.rate_limit_backoff,
                    },
                )
                self.pause(self.rate_limit_backoff)
                continue

            return response

    def _fail(self, kind: str, url: str, message: str, status: int | None, outcome: str | None) -> FetchError:
        self.stats.errors += 1
        if outcome is not None:
            record_api_call(self.source, outcome)
        # 404s do not count against API health.
        if status != 404:
            self.health.record_error(message)
        self.logger.warning(
            "Upstream page request failed; treating page as empty",
            extra={
                "sync_source": self.source,
                "sync_url": url,
                "sync_error_kind": kind,
                "sync_http_status": status,
                "sync_error": message,
            },
        )
        return FetchError(kind=kind, url=url, message=message, http_status=status)


def _response_message(response) -> str:
    text = (getattr(response, "text", "") or "").strip()
    if len(text) > 500:
        text = text[:500] + "..."
    return f"HTTP {response.status_code}" + (f": {text}" if text else "")
