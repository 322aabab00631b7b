"""
Media storage backed by Supabase Storage.

Articles reference media that platforms must be able to fetch while the
publish job runs, so source media is copied into a bucket we control.
Scraped CDN links tend to expire within hours.
"""

import logging
import mimetypes
from typing import Optional

import httpx

from trendpress.exceptions import TransientCollaboratorError
from trendpress.utils import with_retry

logger = logging.getLogger(__name__)


class MediaStorage:
    """Upload and URL-issuing service for article media.

    Args:
        client: Supabase ``AsyncClient`` (``SupabaseDB.client``).
        bucket: Storage bucket name.
        download_timeout: Timeout for fetching source media, in seconds.
        transport: Optional ``httpx`` transport for downloads (tests use
            ``MockTransport``).
    """

    def __init__(
        self,
        client: "AsyncClient",  # noqa: F821
        bucket: str = "media",
        download_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.download_timeout = download_timeout
        self.transport = transport

    async def upload(
        self,
        data: bytes,
        destination_key: str,
        content_type: Optional[str] = None,
    ) -> str:
        """Store *data* under *destination_key* and return its public URL."""
        content_type = content_type or (
            mimetypes.guess_type(destination_key)[0] or "application/octet-stream"
        )
        bucket = self.client.storage.from_(self.bucket)
        await bucket.upload(
            path=destination_key,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        url = await bucket.get_public_url(destination_key)
        logger.info("[STORAGE] Uploaded %s (%d bytes)", destination_key, len(data))
        return url

    async def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        """Issue a time-limited URL for a private object."""
        response = await self.client.storage.from_(self.bucket).create_signed_url(
            key, ttl_seconds
        )
        return response.get("signedURL") or response["signedUrl"]

    @with_retry(
        max_attempts=3,
        base_delay=2.0,
        retryable_exceptions=(TransientCollaboratorError,),
        operation_name="storage.download",
    )
    async def _download(self, url: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url)
        except httpx.TransportError as exc:
            raise TransientCollaboratorError("storage", f"download failed: {exc}") from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientCollaboratorError(
                "storage", f"download returned {response.status_code}"
            )
        response.raise_for_status()
        return response

    async def rehost(self, url: str, destination_key: str) -> str:
        """Copy remote media at *url* into the bucket.

        Returns:
            Public URL of the stored copy.
        """
        response = await self._download(url)
        content_type = response.headers.get("content-type", "").split(";")[0] or None
        return await self.upload(response.content, destination_key, content_type)
