"""
Entry point: run the worker pool and the cron poller.

Usage::

    python run.py

Both loops share one store client and one job queue. Ctrl+C (or SIGTERM)
asks them to stop; jobs in flight when the process dies are redelivered by
the next process's stalled-job recovery.
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

from trendpress.config import get_settings, validate_env  # noqa: E402

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


async def main() -> None:
    from trendpress.database import get_db
    from trendpress.logging import PipelineRunTracker, build_status_reporter
    from trendpress.models import JobType
    from trendpress.pipeline.admission import AdmissionFilter, ScrapeJobHandler
    from trendpress.pipeline.clustering import TopicClusterer
    from trendpress.pipeline.synthesis import SynthesisOrchestrator
    from trendpress.pipeline.trend_engine import TrendEngine
    from trendpress.queue import CronPoller, JobQueue, WorkerPool
    from trendpress.scheduling import (
        CredentialKeeper,
        MetricsRefresher,
        PublishScheduler,
        PublishWindowPlanner,
    )
    from trendpress.tools import MediaStorage, ScraperClient, default_publishers, get_llm

    validate_env()

    # ---- Shared collaborators --------------------------------------------
    db = await get_db()
    logger.info("Database connected")

    llm = get_llm(settings)
    queue = JobQueue(
        db,
        retry_policy=settings.retry,
        visibility_timeout_minutes=settings.visibility_timeout_minutes,
    )
    tracker = PipelineRunTracker(
        db,
        reporter=build_status_reporter(settings),
        run_retention_days=settings.pipeline_run_retention_days,
        post_retention_days=settings.post_retention_days,
    )

    # ---- Job handlers ----------------------------------------------------
    engine = TrendEngine(
        db,
        queue,
        clusterer=TopicClusterer(
            similarity_threshold=settings.similarity_threshold,
            max_keywords=settings.max_topic_keywords,
        ),
        half_life_hours=settings.hot_score_half_life_hours,
    )
    synthesis = SynthesisOrchestrator(
        db,
        queue,
        llm,
        media_storage=MediaStorage(db.client, bucket=settings.media_bucket),
        planner=PublishWindowPlanner(db),
    )
    publishers = default_publishers(settings.platform_timeout_seconds)
    keeper = CredentialKeeper(db, publishers, refresh_window_days=settings.token_refresh_window_days)
    publisher = PublishScheduler(
        db,
        queue,
        publishers,
        publish_timeout_seconds=settings.platform_timeout_seconds * 2,
        keeper=keeper,
    )
    metrics = MetricsRefresher(db, publishers, keeper, lookback_days=settings.metrics_lookback_days)
    job_timeout_seconds = max(settings.job_timeout_seconds, publisher.job_timeout_seconds)
    if job_timeout_seconds >= settings.visibility_timeout_minutes * 60:
        logger.warning(
            "Job timeout %.0fs reaches the %d min visibility timeout; slow jobs may be redelivered",
            job_timeout_seconds,
            settings.visibility_timeout_minutes,
        )

    handlers = {
        JobType.TREND_SCAN: engine.handle,
        JobType.SYNTHESIZE: synthesis.handle,
        JobType.PUBLISH: publisher.handle,
        JobType.PUBLISH_SCAN: publisher.handle_scan,
        JobType.METRICS_REFRESH: metrics.handle,
    }
    if settings.scraper_url:
        scraper = ScraperClient(settings.scraper_url, timeout_seconds=settings.scraper_timeout_seconds)
        handlers[JobType.SCRAPE] = ScrapeJobHandler(db, scraper, AdmissionFilter(db, llm)).handle
    else:
        logger.warning("SCRAPER_URL not set: scrape jobs will not be scheduled")

    pool = WorkerPool(
        queue,
        settings.queues,
        handlers,
        concurrency=settings.worker_concurrency,
        job_timeout_seconds=job_timeout_seconds,
        idle_sleep_seconds=settings.worker_idle_sleep_seconds,
        tracker=tracker,
    )
    poller = CronPoller(
        db,
        queue,
        interval_seconds=settings.poll_interval_seconds,
        scrape_interval_minutes=settings.scrape_interval_minutes,
        tracker=tracker,
        enable_scrapes=bool(settings.scraper_url),
        metrics_interval_minutes=settings.metrics_interval_minutes,
    )

    # ---- Run until asked to stop -----------------------------------------
    async def shutdown() -> None:
        logger.info("Shutdown requested")
        await poller.stop()
        await pool.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(shutdown()))
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still works
            pass

    await asyncio.gather(pool.start(), poller.start())
    logger.info("All loops stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
