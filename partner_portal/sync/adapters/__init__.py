"""
Upstream API adapters (LMS and CRM) and their shared HTTP plumbing.
"""

from .crm.fetcher import CrmFetcher
from .health import ApiHealth, get_api_health, health_snapshot
from .http import ApiCallStats, FetchError, Page, PageClient
from .lms.fetcher import LmsFetcher, TranscriptResult

__all__ = [
    "ApiCallStats",
    "ApiHealth",
    "CrmFetcher",
    "FetchError",
    "LmsFetcher",
    "Page",
    "PageClient",
    "TranscriptResult",
    "get_api_health",
    "health_snapshot",
]
