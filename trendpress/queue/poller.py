"""
Cron poller: the periodic tick that feeds the job queue.

Every ``interval_seconds`` the poller:

1. Redelivers stalled jobs (claims past the visibility timeout).
2. For each active workspace, enqueues a ``trend-scan`` and a
   ``publish-scan`` job unless that workspace's previous scan is still
   live.
3. Enqueues one ``scrape`` job per target account, at most every
   ``scrape_interval_minutes`` per workspace.
4. Enqueues a ``metrics-refresh`` job for workspaces publishing on
   Threads, at most every ``metrics_interval_minutes``.
5. Once a day, prunes expired run records and stale posts.

The poller only enqueues; every piece of pipeline work runs in a worker.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from trendpress.exceptions import JobNotFoundError
from trendpress.models import (
    JobType,
    MetricsRefreshPayload,
    Platform,
    PublishScanPayload,
    ScrapePayload,
    TrendScanPayload,
    Workspace,
)
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)


class CronPoller:
    """Periodic enqueuer for scans, scrapes and maintenance.

    Args:
        db: Store client (``SupabaseDB``).
        queue: ``JobQueue``.
        interval_seconds: Tick period.
        scrape_interval_minutes: Minimum gap between scrape rounds of one
            workspace.
        tracker: Optional ``PipelineRunTracker`` for the daily prune.
        enable_scrapes: Whether to enqueue ``scrape`` jobs at all (off
            when no scraper service is configured).
        metrics_interval_minutes: Minimum gap between metrics refreshes of
            one workspace.
    """

    def __init__(
        self,
        db: Any,
        queue: Any,
        interval_seconds: int = 60,
        scrape_interval_minutes: int = 30,
        tracker: Any = None,
        enable_scrapes: bool = True,
        metrics_interval_minutes: int = 60,
    ) -> None:
        self.db = db
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.scrape_interval = timedelta(minutes=scrape_interval_minutes)
        self.tracker = tracker
        self.enable_scrapes = enable_scrapes
        self.metrics_interval = timedelta(minutes=metrics_interval_minutes)
        self._running: bool = False
        self._cycle_count: int = 0
        self._in_flight: Dict[Tuple[str, JobType], str] = {}
        self._last_scrape: Dict[str, datetime] = {}
        self._last_metrics: Dict[str, datetime] = {}
        self._last_prune: Optional[date] = None

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run the tick loop until :meth:`stop` is called."""
        self._running = True
        self._cycle_count = 0
        logger.info("[POLLER] Cron poller started (interval=%ds)", self.interval_seconds)

        while self._running:
            try:
                await self.run_once()
                self._cycle_count += 1
            except asyncio.CancelledError:
                logger.info("[POLLER] Cron poller cancelled")
                break
            except Exception:
                logger.exception("[POLLER] Unexpected error in poller tick")

            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("[POLLER] Cron poller sleep cancelled")
                break

        logger.info("[POLLER] Cron poller stopped")

    async def stop(self) -> None:
        """Make :meth:`start` exit after the current tick."""
        self._running = False
        logger.info("[POLLER] Cron poller stop requested")

    # ================================================================
    # TICK
    # ================================================================

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one tick.

        Returns:
            Counts of what the tick did: ``recovered``, ``trend_scans``,
            ``publish_scans``, ``scrapes``, ``metrics_refreshes`` and
            ``pruned``.
        """
        now = now or utc_now()
        stats = {
            "recovered": 0,
            "trend_scans": 0,
            "publish_scans": 0,
            "scrapes": 0,
            "metrics_refreshes": 0,
            "pruned": 0,
        }

        stats["recovered"] = await self.queue.recover_stalled(now)

        for workspace in await self.db.get_active_workspaces():
            try:
                if await self._enqueue_scan(workspace.id, JobType.TREND_SCAN, TrendScanPayload(workspace.id)):
                    stats["trend_scans"] += 1
                if await self._enqueue_scan(workspace.id, JobType.PUBLISH_SCAN, PublishScanPayload(workspace.id)):
                    stats["publish_scans"] += 1
                if self.enable_scrapes:
                    stats["scrapes"] += await self._enqueue_scrapes(workspace, now)
                if await self._enqueue_metrics_refresh(workspace, now):
                    stats["metrics_refreshes"] += 1
            except Exception:
                logger.exception("[POLLER] Failed to enqueue jobs for workspace %s", workspace.id)

        if self.tracker is not None and self._last_prune != now.date():
            try:
                pruned = await self.tracker.prune(now)
                stats["pruned"] = sum(pruned.values())
                self._last_prune = now.date()
            except Exception:
                logger.exception("[POLLER] Daily prune failed")

        logger.debug("[POLLER] Tick done: %s", stats)
        return stats

    async def _enqueue_scan(self, workspace_id: str, job_type: JobType, payload: Any) -> bool:
        key = (workspace_id, job_type)
        previous = self._in_flight.get(key)
        if previous is not None:
            try:
                job = await self.queue.get(previous)
                if not job.is_terminal:
                    logger.debug("[POLLER] %s for %s still in progress (%s)", job_type.value, workspace_id, previous)
                    return False
            except JobNotFoundError:
                pass
            del self._in_flight[key]

        handle = await self.queue.submit(payload)
        self._in_flight[key] = handle.id
        return handle.created

    async def _enqueue_scrapes(self, workspace: Workspace, now: datetime) -> int:
        last = self._last_scrape.get(workspace.id)
        if last is not None and now - last < self.scrape_interval:
            return 0

        created = 0
        for account in workspace.target_accounts:
            handle = await self.queue.submit(ScrapePayload(workspace_id=workspace.id, account=account))
            if handle.created:
                created += 1
        self._last_scrape[workspace.id] = now
        if created:
            logger.info("[POLLER] Enqueued %d scrape job(s) for workspace %s", created, workspace.id)
        return created

    async def _enqueue_metrics_refresh(self, workspace: Workspace, now: datetime) -> bool:
        if Platform.THREADS not in workspace.platforms:
            return False
        last = self._last_metrics.get(workspace.id)
        if last is not None and now - last < self.metrics_interval:
            return False
        handle = await self.queue.submit(MetricsRefreshPayload(workspace_id=workspace.id))
        self._last_metrics[workspace.id] = now
        return handle.created


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "CronPoller",
]
