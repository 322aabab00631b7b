"""
Publish scheduler: executes ``publish`` jobs for approved articles.

One job publishes one article on one platform. The sequence is
read-check-act-record:

1. defer while the job is ahead of ``scheduled_publish_at``
2. re-read the article: not approved, or already published on this
   platform, means nothing to do and no remote call
3. check the workspace's rolling 24h publish quota
4. call the platform with a timeout
5. record the result with a conditional update that only matches while
   the platform's ``published_at`` is still unset

Steps 3 to 5 hold a per-workspace lock so concurrent jobs of one
workspace cannot both pass the quota check. Workspaces never share a lock.

A timeout after the platform accepted the post cannot be told apart from
a failed call; the retry publishes again. None of the platform APIs offer
an idempotency key to close that window.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from trendpress.exceptions import (
    JobDeferred,
    QuotaExceeded,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import (
    Job,
    Platform,
    PlatformPublication,
    PublishPayload,
    ReviewState,
    SynthesizedArticle,
    Workspace,
    dedupe_key_for,
)
from trendpress.scheduling.credentials import CredentialKeeper
from trendpress.scheduling.publish_windows import next_publish_slot
from trendpress.tools.platforms import PlatformPublisher
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)

QUOTA_WINDOW = timedelta(hours=24)
# Store reads and the publication write around the platform call
RECORD_MARGIN_SECONDS = 30.0


class PublishScheduler:
    """Publishes approved articles per platform under the workspace quota.

    Args:
        db: Store client (``SupabaseDB``).
        queue: ``JobQueue`` used by :meth:`scan_workspace`.
        publishers: Platform -> publish client.
        publish_timeout_seconds: Floor for the platform call timeout. Each
            call gets at least its publisher's ``max_duration``.
        keeper: Supplies credentials, refreshing tokens close to expiry.
    """

    def __init__(
        self,
        db: Any,
        queue: Any,
        publishers: Dict[Platform, PlatformPublisher],
        publish_timeout_seconds: float = 120.0,
        keeper: Optional[CredentialKeeper] = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.publishers = publishers
        self.publish_timeout_seconds = publish_timeout_seconds
        self.keeper = keeper or CredentialKeeper(db, publishers)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def call_timeout(self, publisher: PlatformPublisher) -> float:
        """Timeout for one ``publisher.publish`` call."""
        return max(self.publish_timeout_seconds, publisher.max_duration)

    @property
    def max_call_timeout(self) -> float:
        """Longest call timeout across every configured platform."""
        return max(
            [self.publish_timeout_seconds]
            + [self.call_timeout(p) for p in self.publishers.values()]
        )

    @property
    def job_timeout_seconds(self) -> float:
        """Handler timeout a worker needs so no publish call is cut short."""
        return self.max_call_timeout + RECORD_MARGIN_SECONDS

    # ================================================================
    # PUBLISH JOB
    # ================================================================

    async def handle(self, job: Job, now: Optional[datetime] = None) -> Dict[str, Any]:
        """``publish`` job handler.

        Raises:
            JobDeferred: The job ran before its scheduled time.
            QuotaExceeded: The workspace hit ``daily_post_limit``.
            ConfigurationError: The workspace has no credentials for the
                platform.
            PlatformAuthError: The platform refused a token refresh.
            ValidationError: Unknown workspace or article.
            TransientCollaboratorError: Platform timeout or transient
                failure.
        """
        payload: PublishPayload = job.typed_payload()
        now = now or utc_now()
        if now < payload.scheduled_publish_at:
            raise JobDeferred(payload.scheduled_publish_at, "scheduled for later")

        article = await self.db.get_article(payload.article_id)
        if article is None:
            raise ValidationError(f"Unknown article {payload.article_id}")
        skipped = self._skip_reason(article, payload.platform)
        if skipped:
            logger.info("[PUBLISH] Article %s on %s: %s", article.id, payload.platform.value, skipped)
            return {"article_id": article.id, "platform": payload.platform.value, "skipped": skipped}

        workspace = await self.db.get_workspace(payload.workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {payload.workspace_id}")
        credentials = await self.keeper.credentials_for(workspace, payload.platform, now)
        publisher = self.publishers.get(payload.platform)
        if publisher is None:
            raise ValidationError(f"No publisher for platform {payload.platform.value}")

        async with self._locks[workspace.id]:
            # Another job may have published this pair while we waited
            article = await self.db.get_article(payload.article_id)
            skipped = self._skip_reason(article, payload.platform)
            if skipped:
                return {"article_id": article.id, "platform": payload.platform.value, "skipped": skipped}

            if not article.publications:
                await self._check_quota(workspace, now)

            timeout = self.call_timeout(publisher)
            try:
                result = await asyncio.wait_for(
                    publisher.publish(article, credentials),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                raise TransientCollaboratorError(
                    payload.platform.value,
                    f"publish timed out after {timeout:.0f}s",
                ) from exc

            recorded = await self.db.record_publication(
                article.id,
                payload.platform,
                PlatformPublication(
                    published_at=utc_now(),
                    published_url=result.url,
                    platform_post_id=result.platform_post_id,
                ),
            )

        if not recorded:
            logger.warning(
                "[PUBLISH] Duplicate publish of article %s on %s (post %s); an earlier delivery recorded first",
                article.id,
                payload.platform.value,
                result.platform_post_id,
            )
        else:
            logger.info(
                "[PUBLISH] Article %s published on %s: %s",
                article.id,
                payload.platform.value,
                result.url or result.platform_post_id,
            )
        return {
            "article_id": article.id,
            "platform": payload.platform.value,
            "platform_post_id": result.platform_post_id,
            "url": result.url,
            "recorded": recorded,
        }

    @staticmethod
    def _skip_reason(article: SynthesizedArticle, platform: Platform) -> Optional[str]:
        if article.review_state is not ReviewState.APPROVED:
            return f"article is {article.review_state.value}"
        if article.is_published(platform):
            return "already published"
        return None

    # ================================================================
    # QUOTA
    # ================================================================

    async def _check_quota(self, workspace: Workspace, now: datetime) -> None:
        """Raise ``QuotaExceeded`` when the trailing 24h are full.

        The job moves to the first publish slot after the oldest
        publication in the window drops out of it.
        """
        published = await self.db.get_publication_times_since(workspace.id, now - QUOTA_WINDOW)
        if len(published) < workspace.daily_post_limit:
            return
        # The window frees one place per expiring publication; we need
        # enough of them to get back under the limit.
        expiring = published[len(published) - workspace.daily_post_limit]
        run_at = next_publish_slot(
            expiring + QUOTA_WINDOW,
            workspace.publish_times,
            0.0,
            workspace.timezone,
        )
        logger.info(
            "[PUBLISH] Workspace %s at daily limit (%d/%d), deferring to %s",
            workspace.id,
            len(published),
            workspace.daily_post_limit,
            run_at.isoformat(),
        )
        raise QuotaExceeded(workspace.id, workspace.daily_post_limit, run_at)

    # ================================================================
    # PUBLISH SCAN
    # ================================================================

    async def scan_workspace(self, workspace_id: str) -> Dict[str, Any]:
        """Enqueue publish jobs missing for approved, scheduled articles.

        Covers articles approved outside the pipeline and crashes between
        approval and enqueue. A pair that ever had a job is left alone;
        terminal failures are re-run through ``JobQueue.retry``.
        """
        workspace = await self.db.get_workspace(workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {workspace_id}")

        enqueued: List[str] = []
        for article in await self.db.get_approved_articles(workspace.id):
            for platform in workspace.platforms:
                if article.is_published(platform):
                    continue
                payload = PublishPayload(
                    workspace_id=workspace.id,
                    article_id=article.id,
                    platform=platform,
                    scheduled_publish_at=article.scheduled_publish_at,
                )
                if await self.db.get_latest_job_by_dedupe_key(dedupe_key_for(payload)) is not None:
                    continue
                handle = await self.queue.submit(payload, delay_until=article.scheduled_publish_at)
                if handle.created:
                    enqueued.append(f"{article.id}:{platform.value}")

        if enqueued:
            logger.info("[PUBLISH] Workspace %s: enqueued %d missing publish jobs", workspace.id, len(enqueued))
        return {"workspace_id": workspace.id, "enqueued": enqueued}

    async def handle_scan(self, job: Job) -> Dict[str, Any]:
        """``publish-scan`` job handler."""
        return await self.scan_workspace(job.typed_payload().workspace_id)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "PublishScheduler",
    "QUOTA_WINDOW",
]
