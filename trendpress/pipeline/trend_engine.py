"""
Trend engine: clusters accepted posts into topics and hands hot topics to
synthesis.

One scan of a workspace:

1. Load unclustered posts and recently updated topics inside the
   workspace's ``max_post_age_hours`` window.
2. Assign posts to topics (``TopicClusterer``) and persist topics and
   post links.
3. Recompute hot score, author count and post count for every loaded or
   touched topic.
4. For each topic at or above ``hot_score_threshold`` that has no
   non-rejected article and has grown since its last synthesis, reserve a
   ``DRAFT`` article and enqueue one ``synthesize`` job.

The reservation is an insert guarded by the store's one-active-article-per-
topic constraint, so two overlapping scans cannot both hand the same topic
to synthesis. Failures are isolated per workspace and per topic.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from trendpress.exceptions import DuplicateRecordError, ValidationError
from trendpress.logging.component_logger import ComponentLogger
from trendpress.models import (
    Job,
    ReviewState,
    SynthesizedArticle,
    SynthesizePayload,
    Topic,
    TopicStatus,
    Workspace,
    dedupe_key_for,
)
from trendpress.pipeline.clustering import TopicClusterer
from trendpress.pipeline.scoring import DEFAULT_HALF_LIFE_HOURS, distinct_authors, topic_hot_score
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class TrendScanResult:
    """Summary of one or more workspace scans."""

    workspaces_scanned: int = 0
    posts_clustered: int = 0
    topics_created: int = 0
    topics_updated: int = 0
    synthesis_enqueued: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "TrendScanResult") -> None:
        self.workspaces_scanned += other.workspaces_scanned
        self.posts_clustered += other.posts_clustered
        self.topics_created += other.topics_created
        self.topics_updated += other.topics_updated
        self.synthesis_enqueued += other.synthesis_enqueued
        self.errors.extend(other.errors)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TrendEngine:
    """Clusters posts, scores topics and triggers synthesis.

    Args:
        db: Store client (``SupabaseDB``).
        queue: ``JobQueue`` used to enqueue ``synthesize`` jobs.
        clusterer: Topic assignment strategy.
        half_life_hours: Hot-score decay half-life.
    """

    def __init__(
        self,
        db: Any,
        queue: Any,
        clusterer: Optional[TopicClusterer] = None,
        half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
    ) -> None:
        self.db = db
        self.queue = queue
        self.clusterer = clusterer or TopicClusterer()
        self.half_life_hours = half_life_hours
        self._log = ComponentLogger("trend")

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def run_trend_analysis(
        self,
        workspace_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrendScanResult:
        """Scan one workspace, or every active workspace when *workspace_id* is ``None``.

        A failing workspace is logged and skipped; the others still run.
        """
        now = now or utc_now()
        if workspace_id is not None:
            workspace = await self.db.get_workspace(workspace_id)
            workspaces = [workspace] if workspace and workspace.is_active else []
        else:
            workspaces = await self.db.get_active_workspaces()

        total = TrendScanResult()
        for workspace in workspaces:
            try:
                total.merge(await self.scan_workspace(workspace, now))
            except Exception as exc:
                logger.exception("[TREND] Scan failed for workspace %s", workspace.id)
                total.errors.append(f"{workspace.id}: {exc}")
        return total

    async def handle(self, job: Job) -> Dict[str, Any]:
        """``trend-scan`` job handler."""
        payload = job.typed_payload()
        workspace = await self.db.get_workspace(payload.workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {payload.workspace_id}")
        if not workspace.is_active:
            logger.info("[TREND] Workspace %s inactive, skipping scan", workspace.id)
            return TrendScanResult().as_dict()
        async with self._log.timed(f"trend scan of workspace {workspace.id}"):
            result = await self.scan_workspace(workspace, utc_now())
        return result.as_dict()

    async def scan_workspace(self, workspace: Workspace, now: datetime) -> TrendScanResult:
        """Run one full trend pass for *workspace* at time *now*."""
        result = TrendScanResult(workspaces_scanned=1)
        window_start = now - timedelta(hours=workspace.max_post_age_hours)

        posts = await self.db.get_unclustered_posts(workspace.id, window_start)
        topics = await self.db.get_recent_topics(workspace.id, window_start)

        assignment = self.clusterer.assign(posts, topics)
        new_ids = set(assignment.new_topic_ids)
        touched_ids = {t.id for t in assignment.topics}

        for topic in assignment.topics:
            member_ids = [pid for pid, tid in assignment.assignments.items() if tid == topic.id]
            topic.updated_at = now
            await self.db.save_topic(topic)
            await self.db.assign_posts_to_topic(member_ids, topic.id)
            result.posts_clustered += len(member_ids)
            if topic.id in new_ids:
                result.topics_created += 1
            else:
                result.topics_updated += 1

        scored = list(topics) + [t for t in assignment.topics if t.id in new_ids]
        logger.info(
            "[TREND] Workspace %s: %d posts -> %d new / %d updated topics",
            workspace.id,
            result.posts_clustered,
            result.topics_created,
            result.topics_updated,
        )

        for topic in scored:
            try:
                await self._rescore(topic, now, persist_timestamp=topic.id in touched_ids)
                if await self._maybe_enqueue_synthesis(workspace, topic):
                    result.synthesis_enqueued += 1
            except Exception as exc:
                logger.exception("[TREND] Topic %s failed in workspace %s", topic.id, workspace.id)
                result.errors.append(f"{topic.id}: {exc}")

        return result

    # =========================================================================
    # SCORING
    # =========================================================================

    async def _rescore(self, topic: Topic, now: datetime, persist_timestamp: bool) -> None:
        members = await self.db.get_posts_by_ids(topic.post_ids)
        score = topic_hot_score(members, now, self.half_life_hours)
        authors = distinct_authors(members)
        count = len(topic.post_ids)
        if (score, authors, count) == (topic.hot_score, topic.author_count, topic.post_count):
            return
        topic.hot_score = score
        topic.author_count = authors
        topic.post_count = count
        if persist_timestamp:
            topic.updated_at = now
        await self.db.save_topic(topic)

    # =========================================================================
    # SYNTHESIS HAND-OFF
    # =========================================================================

    async def _maybe_enqueue_synthesis(self, workspace: Workspace, topic: Topic) -> bool:
        if topic.hot_score < workspace.hot_score_threshold:
            return False

        existing = await self.db.get_active_article_for_topic(topic.id)
        if existing is not None:
            return await self._repair_missing_job(existing)

        if topic.post_count <= topic.synthesized_post_count:
            # Last article was rejected; wait for new members before retrying
            return False

        article = SynthesizedArticle(
            workspace_id=workspace.id,
            topic_id=topic.id,
            source_post_ids=list(topic.post_ids),
        )
        try:
            article = await self.db.reserve_article(article)
        except DuplicateRecordError:
            logger.info("[TREND] Topic %s already reserved by another scan", topic.id)
            return False

        topic.synthesized_post_count = topic.post_count
        topic.status = TopicStatus.SYNTHESIZED
        await self.db.save_topic(topic)

        await self._enqueue(article)
        logger.info(
            "[TREND] Topic %s (score=%.2f) handed to synthesis as article %s",
            topic.id,
            topic.hot_score,
            article.id,
        )
        return True

    async def _repair_missing_job(self, article: SynthesizedArticle) -> bool:
        """Re-enqueue synthesis for a reserved draft that never got a job."""
        if article.review_state is not ReviewState.DRAFT:
            return False
        if await self.db.get_latest_job_by_dedupe_key(dedupe_key_for(self._payload(article))) is not None:
            return False
        logger.warning("[TREND] Draft %s had no synthesize job, enqueueing", article.id)
        await self._enqueue(article)
        return True

    async def _enqueue(self, article: SynthesizedArticle) -> None:
        await self.queue.submit(self._payload(article))

    @staticmethod
    def _payload(article: SynthesizedArticle) -> SynthesizePayload:
        return SynthesizePayload(
            workspace_id=article.workspace_id,
            topic_id=article.topic_id,
            article_id=article.id,
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "TrendEngine",
    "TrendScanResult",
]
