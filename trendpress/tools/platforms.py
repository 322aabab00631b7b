"""
Async publish clients for the supported social platforms.

Each publisher turns an approved ``SynthesizedArticle`` into one post on its
platform using the workspace's credentials and ``httpx``:

- ``ThreadsPublisher``: Threads Graph API, container create then publish.
- ``InstagramPublisher``: Instagram Graph API, media container then
  ``media_publish``. Instagram requires an image or video.
- ``TwitterPublisher``: X API v2 ``POST /2/tweets`` with a user-context
  OAuth 2.0 token. Text only.

Threads also refreshes long-lived tokens (``refresh_credentials``) and
reads post insights (``fetch_metrics``); the other publishers return
``None`` for both.

Failure mapping shared by all publishers:
    - timeouts, transport errors, HTTP 429 and 5xx ->
      ``TransientCollaboratorError``
    - HTTP 401/403 and Graph API error code 190 -> ``PlatformAuthError``
    - any other 4xx -> ``PlatformContentRejectedError``

None of these APIs accept an idempotency key, so a publish that timed out
after the platform accepted it cannot be detected remotely; the caller's
read-check-act-record sequence is the only guard.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from trendpress.exceptions import (
    PlatformAuthError,
    PlatformContentRejectedError,
    TransientCollaboratorError,
)
from trendpress.models import Platform, PlatformCredentials, PostMetrics, SynthesizedArticle
from trendpress.pipeline.sanitizer import strip_platform_references
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """What a platform returns for a successful publish."""

    platform_post_id: str
    url: Optional[str] = None


def render_post_text(article: SynthesizedArticle, platform: Platform) -> str:
    """Compose the text posted to *platform* for *article*.

    Headline and body are joined, links and mentions stripped, and the
    result truncated to the platform limit. Single-source articles carry a
    ``Credit: @account`` line.
    """
    text = "\n\n".join(part for part in (article.headline, article.body) if part)
    text = strip_platform_references(text)

    credit = ""
    if len(article.source_accounts) == 1:
        credit = f"\n\nCredit: @{article.source_accounts[0].lstrip('@')}"

    limit = platform.char_limit - len(credit)
    if len(text) > limit:
        text = text[: limit - 1].rstrip() + "…"
    return text + credit


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if "detail" in data:
            return str(data["detail"])
        if "title" in data:
            return str(data["title"])
    return str(data)[:200]


def _graph_error_code(response: httpx.Response) -> Optional[int]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data["error"].get("code")
    return None


class PlatformPublisher:
    """Base class for platform publish clients.

    Args:
        timeout_seconds: Per-request HTTP timeout.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    platform: Platform
    # Sequential HTTP requests in one publish, status polls excluded
    request_count: int = 1

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def max_duration(self) -> float:
        """Worst-case wall time of one publish.

        Every request running into its HTTP timeout plus every built-in
        wait. Callers size their own timeout from this.
        """
        return self.request_count * self.timeout_seconds

    async def publish(
        self,
        article: SynthesizedArticle,
        credentials: PlatformCredentials,
    ) -> PublishResult:
        """Publish *article* and return the platform's id and URL."""
        raise NotImplementedError

    async def refresh_credentials(
        self, credentials: PlatformCredentials
    ) -> Optional[PlatformCredentials]:
        """Exchange a long-lived token for a fresh one.

        Returns ``None`` on platforms without a refresh flow.
        """
        return None

    async def fetch_metrics(
        self, platform_post_id: str, credentials: PlatformCredentials
    ) -> Optional[PostMetrics]:
        """Current engagement counters of a published post, if the platform reports them."""
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        name = self.platform.value
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientCollaboratorError(name, f"timeout calling {url}") from exc
        except httpx.TransportError as exc:
            raise TransientCollaboratorError(name, f"transport error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCollaboratorError(
                name, f"HTTP {response.status_code}: {_error_message(response)}"
            )
        if response.status_code in (401, 403) or _graph_error_code(response) == 190:
            raise PlatformAuthError(f"{name}: {_error_message(response)}")
        if response.status_code >= 400:
            raise PlatformContentRejectedError(
                f"{name} rejected the post: {_error_message(response)}"
            )
        return response.json()

    async def _permalink(
        self, client: httpx.AsyncClient, url: str, params: Dict[str, str]
    ) -> Optional[str]:
        # The post already exists at this point; a lookup failure must not
        # fail the publish.
        try:
            data = await self._request(client, "GET", url, params=params)
        except (TransientCollaboratorError, PlatformAuthError, PlatformContentRejectedError) as exc:
            logger.warning("[PUBLISH] %s permalink lookup failed: %s", self.platform.value, exc)
            return None
        return data.get("permalink")


# ======================================================================
# THREADS
# ======================================================================


class ThreadsPublisher(PlatformPublisher):
    """Threads Graph API publisher."""

    platform = Platform.THREADS
    BASE_URL: str = "https://graph.threads.net/v1.0"
    REFRESH_URL: str = "https://graph.threads.net/refresh_access_token"
    INSIGHT_METRICS = ("views", "likes", "replies", "reposts", "quotes")
    request_count = 3

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        container_wait_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout_seconds, transport)
        self.container_wait_seconds = container_wait_seconds

    @property
    def max_duration(self) -> float:
        return super().max_duration + self.container_wait_seconds

    async def publish(
        self,
        article: SynthesizedArticle,
        credentials: PlatformCredentials,
    ) -> PublishResult:
        text = render_post_text(article, self.platform)
        data: Dict[str, str] = {"access_token": credentials.access_token, "text": text}
        if article.media_url and article.media_type == "video":
            data.update(media_type="VIDEO", video_url=article.media_url)
        elif article.media_url:
            data.update(media_type="IMAGE", image_url=article.media_url)
        else:
            data["media_type"] = "TEXT"

        async with self._client() as client:
            container = await self._request(
                client, "POST", f"{self.BASE_URL}/{credentials.account_id}/threads", data=data
            )
            # Threads needs time to fetch and process media before publish
            await asyncio.sleep(self.container_wait_seconds)
            published = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/{credentials.account_id}/threads_publish",
                data={"creation_id": container["id"], "access_token": credentials.access_token},
            )
            post_id = published["id"]
            url = await self._permalink(
                client,
                f"{self.BASE_URL}/{post_id}",
                {"fields": "permalink", "access_token": credentials.access_token},
            )

        logger.info("[PUBLISH] Threads post %s created for article %s", post_id, article.id)
        return PublishResult(platform_post_id=post_id, url=url)

    async def refresh_credentials(
        self, credentials: PlatformCredentials
    ) -> Optional[PlatformCredentials]:
        # Only unexpired long-lived tokens can be refreshed; an expired one
        # comes back as Graph error 190.
        async with self._client() as client:
            data = await self._request(
                client,
                "GET",
                self.REFRESH_URL,
                params={"grant_type": "th_refresh_token", "access_token": credentials.access_token},
            )
        expires_in = int(data.get("expires_in") or 0)
        return PlatformCredentials(
            account_id=credentials.account_id,
            access_token=data["access_token"],
            handle=credentials.handle,
            expires_at=utc_now() + timedelta(seconds=expires_in) if expires_in else None,
        )

    async def fetch_metrics(
        self, platform_post_id: str, credentials: PlatformCredentials
    ) -> Optional[PostMetrics]:
        async with self._client() as client:
            data = await self._request(
                client,
                "GET",
                f"{self.BASE_URL}/{platform_post_id}/insights",
                params={
                    "metric": ",".join(self.INSIGHT_METRICS),
                    "access_token": credentials.access_token,
                },
            )

        counts: Dict[str, int] = {}
        for item in data.get("data") or []:
            name = item.get("name")
            if name not in self.INSIGHT_METRICS:
                continue
            # Media insights report "values"; user-level ones "total_value"
            total = item.get("total_value")
            if isinstance(total, dict):
                value = total.get("value")
            else:
                points = item.get("values") or [{}]
                value = points[0].get("value")
            counts[name] = int(value or 0)
        return PostMetrics(**counts)


# ======================================================================
# INSTAGRAM
# ======================================================================


class InstagramPublisher(PlatformPublisher):
    """Instagram Graph API publisher (business accounts)."""

    platform = Platform.INSTAGRAM
    BASE_URL: str = "https://graph.facebook.com/v19.0"
    request_count = 3

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 5.0,
        max_polls: int = 30,
        poll_timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout_seconds, transport)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls
        # Status reads are small; a slow one is retried by the next poll
        self.poll_timeout_seconds = min(poll_timeout_seconds, timeout_seconds)

    @property
    def max_duration(self) -> float:
        polling = self.max_polls * (self.poll_interval_seconds + self.poll_timeout_seconds)
        return super().max_duration + polling

    async def publish(
        self,
        article: SynthesizedArticle,
        credentials: PlatformCredentials,
    ) -> PublishResult:
        if not article.media_url:
            raise PlatformContentRejectedError("instagram requires an image or video")

        data: Dict[str, str] = {
            "access_token": credentials.access_token,
            "caption": render_post_text(article, self.platform),
        }
        if article.media_type == "video":
            data.update(media_type="REELS", video_url=article.media_url)
        else:
            data["image_url"] = article.media_url

        async with self._client() as client:
            container = await self._request(
                client, "POST", f"{self.BASE_URL}/{credentials.account_id}/media", data=data
            )
            await self._wait_until_ready(client, container["id"], credentials.access_token)
            published = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/{credentials.account_id}/media_publish",
                data={"creation_id": container["id"], "access_token": credentials.access_token},
            )
            media_id = published["id"]
            url = await self._permalink(
                client,
                f"{self.BASE_URL}/{media_id}",
                {"fields": "permalink", "access_token": credentials.access_token},
            )

        logger.info("[PUBLISH] Instagram media %s created for article %s", media_id, article.id)
        return PublishResult(platform_post_id=media_id, url=url)

    async def _wait_until_ready(
        self, client: httpx.AsyncClient, container_id: str, token: str
    ) -> None:
        for _ in range(self.max_polls):
            status = await self._request(
                client,
                "GET",
                f"{self.BASE_URL}/{container_id}",
                params={"fields": "status_code", "access_token": token},
                timeout=self.poll_timeout_seconds,
            )
            code = status.get("status_code")
            if code == "FINISHED":
                return
            if code == "ERROR":
                raise PlatformContentRejectedError(
                    f"instagram could not process media for container {container_id}"
                )
            await asyncio.sleep(self.poll_interval_seconds)
        raise TransientCollaboratorError(
            "instagram", f"container {container_id} not ready after {self.max_polls} polls"
        )


# ======================================================================
# X / TWITTER
# ======================================================================


class TwitterPublisher(PlatformPublisher):
    """X API v2 publisher. Media is not attached."""

    platform = Platform.TWITTER
    BASE_URL: str = "https://api.twitter.com/2"

    async def publish(
        self,
        article: SynthesizedArticle,
        credentials: PlatformCredentials,
    ) -> PublishResult:
        async with self._client() as client:
            data = await self._request(
                client,
                "POST",
                f"{self.BASE_URL}/tweets",
                headers={
                    "Authorization": f"Bearer {credentials.access_token}",
                    "Content-Type": "application/json",
                },
                json={"text": render_post_text(article, self.platform)},
            )

        tweet_id = data["data"]["id"]
        handle = (credentials.handle or "i").lstrip("@")
        logger.info("[PUBLISH] Tweet %s created for article %s", tweet_id, article.id)
        return PublishResult(
            platform_post_id=tweet_id,
            url=f"https://x.com/{handle}/status/{tweet_id}",
        )


def default_publishers(timeout_seconds: float = 60.0) -> Dict[Platform, PlatformPublisher]:
    """One publisher per supported platform."""
    return {
        Platform.THREADS: ThreadsPublisher(timeout_seconds=timeout_seconds),
        Platform.INSTAGRAM: InstagramPublisher(timeout_seconds=timeout_seconds),
        Platform.TWITTER: TwitterPublisher(timeout_seconds=timeout_seconds),
    }
