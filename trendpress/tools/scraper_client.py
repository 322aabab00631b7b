"""
HTTP client for the external scraper service.

The scraper itself runs out of process; this client asks it for the
recent posts of one account and hands back the raw records for
``post_from_raw``. It satisfies the ``PostSource`` protocol used by
``ScrapeJobHandler``.

Expected endpoint::

    GET {base_url}/accounts/{account}/posts  ->  [{"thread_id": ..., ...}, ...]

A ``{"posts": [...]}`` envelope is accepted too.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from trendpress.exceptions import TransientCollaboratorError, ValidationError
from trendpress.utils import with_retry

logger = logging.getLogger(__name__)


class ScraperClient:
    """Fetches raw posts from the scraper service.

    Args:
        base_url: Root URL of the scraper service.
        timeout_seconds: Per-request timeout; scraping a profile is slow.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @with_retry(
        max_attempts=2,
        base_delay=5.0,
        retryable_exceptions=(TransientCollaboratorError,),
        operation_name="scraper.fetch_posts",
    )
    async def fetch_posts(self, account: str) -> List[Dict[str, Any]]:
        """Raw post records for *account* (``@`` prefix optional)."""
        handle = account.lstrip("@")
        url = f"{self.base_url}/accounts/{quote(handle, safe='')}/posts"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.get(url)
        except httpx.TransportError as exc:
            raise TransientCollaboratorError("scraper", f"request for @{handle} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCollaboratorError("scraper", f"HTTP {response.status_code} for @{handle}")
        if response.status_code == 404:
            raise ValidationError(f"Scraper does not know account @{handle}")
        response.raise_for_status()

        data = response.json()
        if isinstance(data, dict):
            data = data.get("posts", [])
        if not isinstance(data, list):
            raise TransientCollaboratorError("scraper", f"unexpected response shape for @{handle}")

        records = [item for item in data if isinstance(item, dict)]
        logger.info("[SCRAPER] Fetched %d post(s) for @%s", len(records), handle)
        return records


__all__ = [
    "ScraperClient",
]
