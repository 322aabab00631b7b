"""
Metrics refresh: engagement counters for recently published articles.

A ``metrics-refresh`` job covers one workspace. It reads every article
published on Threads within ``lookback_days`` and overwrites the stored
views, likes, replies, reposts and quotes with the current insight
values. The cron poller enqueues the job every ``metrics_interval_minutes``.

One article failing does not stop the rest; an auth failure does, because
every later call would use the same token.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from trendpress.exceptions import (
    ConfigurationError,
    PlatformContentRejectedError,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import Job, MetricsRefreshPayload, Platform
from trendpress.scheduling.credentials import CredentialKeeper
from trendpress.tools.platforms import PlatformPublisher
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)

# Platforms whose insight API is read
METRICS_PLATFORMS = (Platform.THREADS,)


class MetricsRefresher:
    """``metrics-refresh`` job handler.

    Args:
        db: Store client (``SupabaseDB``).
        publishers: Platform -> client that can fetch insights.
        keeper: Supplies (and refreshes) platform credentials.
        lookback_days: How far back published articles are still tracked.
        request_spacing_seconds: Pause between insight calls.
    """

    def __init__(
        self,
        db: Any,
        publishers: Dict[Platform, PlatformPublisher],
        keeper: CredentialKeeper,
        lookback_days: int = 7,
        request_spacing_seconds: float = 1.0,
    ) -> None:
        self.db = db
        self.publishers = publishers
        self.keeper = keeper
        self.lookback = timedelta(days=lookback_days)
        self.request_spacing_seconds = request_spacing_seconds

    async def handle(self, job: Job, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Refresh the metrics of one workspace's published articles.

        Raises:
            ValidationError: Unknown workspace.
            PlatformAuthError: The platform refused the workspace token.
        """
        payload: MetricsRefreshPayload = job.typed_payload()
        now = now or utc_now()
        workspace = await self.db.get_workspace(payload.workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {payload.workspace_id}")

        stats = {"checked": 0, "updated": 0, "failed": 0}
        for platform in METRICS_PLATFORMS:
            publisher = self.publishers.get(platform)
            if publisher is None or platform not in workspace.platforms:
                continue
            try:
                credentials = await self.keeper.credentials_for(workspace, platform, now)
            except ConfigurationError as exc:
                logger.warning("[METRICS] Skipping %s for workspace %s: %s", platform.value, workspace.id, exc)
                continue

            articles = await self.db.get_published_articles_since(workspace.id, platform, now - self.lookback)
            for index, article in enumerate(articles):
                post_id = article.publications[platform].platform_post_id
                stats["checked"] += 1
                if index and self.request_spacing_seconds:
                    await asyncio.sleep(self.request_spacing_seconds)
                try:
                    metrics = await publisher.fetch_metrics(post_id, credentials)
                except (TransientCollaboratorError, PlatformContentRejectedError):
                    logger.warning(
                        "[METRICS] Failed to fetch %s insights for article %s (post %s)",
                        platform.value,
                        article.id,
                        post_id,
                        exc_info=True,
                    )
                    stats["failed"] += 1
                    continue
                if metrics is None:
                    continue
                await self.db.update_article_metrics(article.id, metrics)
                stats["updated"] += 1
                logger.debug(
                    "[METRICS] Article %s: views=%d likes=%d replies=%d reposts=%d",
                    article.id,
                    metrics.views,
                    metrics.likes,
                    metrics.replies,
                    metrics.reposts,
                )

        logger.info(
            "[METRICS] Workspace %s: %d checked, %d updated, %d failed",
            workspace.id,
            stats["checked"],
            stats["updated"],
            stats["failed"],
        )
        return {"workspace_id": workspace.id, **stats}


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "METRICS_PLATFORMS",
    "MetricsRefresher",
]
