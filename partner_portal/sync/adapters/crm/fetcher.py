"""
Paginated fetcher for the CRM objects API.

The CRM pages with ``skip``/``take`` and wraps results as
``{"success": true, "data": {"results": [...], "count": N}}``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping, Sequence

import requests

from ...errors import ProviderConfigurationError
from ..http import INVALID_PAYLOAD, ApiCallStats, FetchError, Page, PageClient

DEFAULT_PAGE_SIZE = 100

ACCOUNT_FIELDS: Sequence[str] = (
    "id",
    "name",
    "partner_Tier__cf",
    "account_Status__cf",
    "account_Owner__cf",
    "account_Owner_Email__cf",
    "partner_Type__cf",
    "website",
    "crmId",
    "mailingCountry",
    "region",
    "parentAccountId",
    "updated",
)

CONTACT_FIELDS: Sequence[str] = (
    "id",
    "email",
    "firstName",
    "lastName",
    "title",
    "phone",
    "accountName",
    "contact_Status__cf",
    "updated",
)

LEAD_FIELDS: Sequence[str] = (
    "id",
    "email",
    "firstName",
    "lastName",
    "company",
    "accountName",
    "status",
    "leadSource",
    "updated",
)


def _format_filter_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S")


class CrmFetcher:
    """Stream CRM objects page by page."""

    source = "crm"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        tenant_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = 0.125,
        rate_limit_backoff: float = 10.0,
        max_rate_limit_retries: int = 3,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
        stats: ApiCallStats | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("CRM_API_BASE_URL", base_url),
                ("CRM_API_KEY", api_key),
                ("CRM_TENANT_ID", tenant_id),
            )
            if not value
        ]
        if missing:
            raise ProviderConfigurationError(f"CRM sync is not configured: missing {', '.join(missing)}.")
        self.base_url = base_url.rstrip("/")
        self.page_size = max(1, int(page_size))
        self.page_delay = page_delay
        self.logger = logger or logging.getLogger(__name__)
        self.client = PageClient(
            source=self.source,
            headers={
                "Authorization": f"prm-key {api_key}",
                "X-PRM-TenantId": str(tenant_id),
                "Accept": "application/json",
            },
            session=session,
            timeout=timeout,
            rate_limit_backoff=rate_limit_backoff,
            max_rate_limit_retries=max_rate_limit_retries,
            sleep_fn=sleep_fn,
            logger=self.logger,
            stats=stats,
        )

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **overrides) -> "CrmFetcher":
        options: dict[str, Any] = {
            "base_url": config.get("CRM_API_BASE_URL"),
            "api_key": config.get("CRM_API_KEY"),
            "tenant_id": config.get("CRM_TENANT_ID"),
            "page_size": config.get("CRM_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            "page_delay": config.get("CRM_PAGE_DELAY_SECONDS", config.get("LMS_PAGE_DELAY_SECONDS", 0.125)),
            "rate_limit_backoff": config.get("LMS_RATE_LIMIT_BACKOFF_SECONDS", 10.0),
            "max_rate_limit_retries": config.get("LMS_MAX_RATE_LIMIT_RETRIES", 3),
            "timeout": config.get("LMS_REQUEST_TIMEOUT_SECONDS", 30.0),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def stats(self) -> ApiCallStats:
        return self.client.stats

    def iter_pages(
        self,
        object_name: str,
        *,
        fields: Sequence[str],
        since: datetime | None = None,
        start_skip: int = 0,
    ) -> Iterator[Page]:
        url = f"{self.base_url}/api/objects/v1/{object_name}"
        skip = max(0, start_skip)
        number = 0
        while True:
            if number > 0:
                self.client.pause(self.page_delay)
            number += 1
            params: dict[str, Any] = {
                "fields": ",".join(fields),
                "skip": skip,
                "take": self.page_size,
                "orderby": "Id",
            }
            if since is not None:
                params["filter"] = f"Updated > '{_format_filter_datetime(since)}'"

            payload, error = self.client.get_json(url, params=params)
            if error is None and not payload.get("success", True):
                error = FetchError(
                    kind=INVALID_PAYLOAD,
                    url=url,
                    message=str(payload.get("message") or "CRM reported success=false"),
                )
                self.client.stats.errors += 1
            if error is not None:
                yield Page(number=number, error=error)
                return

            data = payload.get("data") or {}
            results = data.get("results") or []
            total = data.get("count")
            if not results:
                if number == 1 and since is not None:
                    self.stats.calls_saved += 1
                return
            yield Page(number=number, items=results, total=total)
            skip += len(results)
            if len(results) < self.page_size:
                return
            if isinstance(total, int) and skip >= total:
                return

    def iter_accounts(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("Account", fields=ACCOUNT_FIELDS, since=since)

    def iter_contacts(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("Contact", fields=CONTACT_FIELDS, since=since)

    def iter_leads(self, *, since: datetime | None = None) -> Iterator[Page]:
        return self.iter_pages("Lead", fields=LEAD_FIELDS, since=since)
