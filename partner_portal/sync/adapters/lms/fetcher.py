"""
Paginated fetcher for the LMS REST API.

Collections are returned as ``{"data": [{"id", "attributes", ...}], "links":
{"next": ...}}``. Pages are requested one at a time with a fixed delay
between them; a page with no items (or an errored page) ends the sequence.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, List, Mapping
from urllib.parse import urljoin

import requests

from ...errors import ProviderConfigurationError
from ...utils import ensure_utc, format_api_datetime, parse_api_datetime
from ..http import ApiCallStats, FetchError, Page, PageClient

DEFAULT_BASE_URL = "https://api.northpass.com"
DEFAULT_PAGE_SIZE = 100
MAX_TRANSCRIPT_PAGES = 20
UPDATED_SINCE_PARAM = "filter[updated_at][gteq]"


@dataclass
class TranscriptResult:
    """Course transcript items for one user."""

    user_id: str
    items: List[Mapping[str, Any]] = field(default_factory=list)
    error: FetchError | None = None

    @property
    def not_found(self) -> bool:
        return self.error is not None and self.error.not_found


class LmsFetcher:
    """Stream LMS collections page by page."""

    source = "lms"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = 0.125,
        record_delay: float = 0.1,
        rate_limit_backoff: float = 10.0,
        max_rate_limit_retries: int = 3,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
        stats: ApiCallStats | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigurationError("LMS_API_KEY is not configured.")
        if not base_url:
            raise ProviderConfigurationError("LMS_API_BASE_URL is not configured.")
        self.base_url = base_url.rstrip("/") + "/"
        self.page_size = max(1, int(page_size))
        self.page_delay = page_delay
        self.record_delay = record_delay
        self.logger = logger or logging.getLogger(__name__)
        self.client = PageClient(
            source=self.source,
            headers={"X-Api-Key": api_key, "Accept": "application/json"},
            session=session,
            timeout=timeout,
            rate_limit_backoff=rate_limit_backoff,
            max_rate_limit_retries=max_rate_limit_retries,
            sleep_fn=sleep_fn,
            logger=self.logger,
            stats=stats,
        )

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **overrides) -> "LmsFetcher":
        options: dict[str, Any] = {
            "api_key": config.get("LMS_API_KEY"),
            "base_url": config.get("LMS_API_BASE_URL") or DEFAULT_BASE_URL,
            "page_size": config.get("LMS_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            "page_delay": config.get("LMS_PAGE_DELAY_SECONDS", 0.125),
            "record_delay": config.get("LMS_RECORD_DELAY_SECONDS", 0.1),
            "rate_limit_backoff": config.get("LMS_RATE_LIMIT_BACKOFF_SECONDS", 10.0),
            "max_rate_limit_retries": config.get("LMS_MAX_RATE_LIMIT_RETRIES", 3),
            "timeout": config.get("LMS_REQUEST_TIMEOUT_SECONDS", 30.0),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def stats(self) -> ApiCallStats:
        return self.client.stats

    # Public API -----------------------------------------------------------------

    def iter_pages(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        max_pages: int | None = None,
    ) -> Iterator[Page]:
        """
        Yield non-empty pages of ``path``; an errored page is yielded once
        (with ``error`` set and no items) and ends the sequence. With
        ``since``, records not updated after it are dropped, and a listing
        with nothing newer counts as a saved call.
        """
        url: str | None = urljoin(self.base_url, path.lstrip("/"))
        query: dict[str, Any] | None = {"limit": self.page_size, **(params or {})}
        if since is not None:
            query[UPDATED_SINCE_PARAM] = format_api_datetime(since)

        number = 0
        fresh = 0
        while url:
            if max_pages is not None and number >= max_pages:
                break
            if number > 0:
                self.client.pause(self.page_delay)
            number += 1
            payload, error = self.client.get_json(url, params=query)
            if error is not None:
                yield Page(number=number, error=error)
                return
            items = payload.get("data") or []
            if not isinstance(items, list):
                items = [items]
            if not items:
                break
            if since is not None:
                # The updated_at filter is inclusive; records at the watermark were stored last run.
                items = [item for item in items if _updated_after(item, since)]
            if items:
                fresh += len(items)
                yield Page(number=number, items=items)
            next_link = (payload.get("links") or {}).get("next")
            url = urljoin(self.base_url, next_link) if next_link else None
            # The next link already carries the query string.
            query = None
        if since is not None and not fresh:
            self.stats.calls_saved += 1

    def iter_records(self, path: str, **kwargs) -> Iterator[Mapping[str, Any]]:
        for page in self.iter_pages(path, **kwargs):
            yield from page.items

    def iter_users(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("/v2/people", since=since)

    def iter_groups(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("/v2/groups", since=since)

    def iter_courses(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("/v2/courses", since=since)

    def iter_group_memberships(self, group_id: str) -> Iterator[Page]:
        return self.iter_pages(f"/v2/groups/{group_id}/memberships")

    def fetch_transcripts(self, user_id: str) -> TranscriptResult:
        """Collect a user's course transcript items (non-course resources are dropped)."""
        result = TranscriptResult(user_id=user_id)
        for page in self.iter_pages(f"/v2/transcripts/{user_id}", max_pages=MAX_TRANSCRIPT_PAGES):
            if page.error is not None:
                result.error = page.error
                break
            for item in page.items:
                attributes = item.get("attributes") or {}
                if attributes.get("resource_type") == "course":
                    result.items.append(item)
        return result

    def throttle(self) -> None:
        """Fixed delay between per-record sub-resource calls."""
        self.client.pause(self.record_delay)


def _updated_after(item: Mapping[str, Any], since: datetime) -> bool:
    updated_at = parse_api_datetime((item.get("attributes") or {}).get("updated_at"))
    return updated_at is None or updated_at > ensure_utc(since)
