"""
Operator commands for articles and jobs.

Usage::

    # Approve a draft: picks the next free publish slot and queues publishing
    python manage.py approve <article_id>

    # Reject a draft
    python manage.py reject <article_id> "off brand"

    # Re-enqueue a terminally failed job (e.g. a publish that exhausted its retries)
    python manage.py retry <job_id>

    # Queue a trend scan for a workspace right away instead of waiting for the poller
    python manage.py scan <workspace_id>

    # Queue a metrics refresh for a workspace's recently published articles
    python manage.py metrics <workspace_id>

    # Preview how a workspace's unclustered posts would group (read-only)
    python manage.py clusters <workspace_id>
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("manage")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="trendpress operator commands")
    commands = parser.add_subparsers(dest="command", required=True)

    approve = commands.add_parser("approve", help="Approve an article and schedule publishing")
    approve.add_argument("article_id")

    reject = commands.add_parser("reject", help="Reject an article")
    reject.add_argument("article_id")
    reject.add_argument("reason", nargs="?", default="rejected by operator")

    retry = commands.add_parser("retry", help="Re-enqueue a terminally failed job")
    retry.add_argument("job_id")

    scan = commands.add_parser("scan", help="Queue a trend scan for a workspace now")
    scan.add_argument("workspace_id")

    metrics = commands.add_parser("metrics", help="Queue a metrics refresh for a workspace now")
    metrics.add_argument("workspace_id")

    clusters = commands.add_parser("clusters", help="Preview how unclustered posts group")
    clusters.add_argument("workspace_id")
    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    from trendpress.config import get_settings, validate_env
    from trendpress.database import get_db
    from trendpress.exceptions import JobNotFoundError, ValidationError
    from trendpress.models import MetricsRefreshPayload, TrendScanPayload
    from trendpress.pipeline.clustering import cluster_documents
    from trendpress.pipeline.scoring import post_hot_score
    from trendpress.pipeline.synthesis import SynthesisOrchestrator
    from trendpress.queue import JobQueue
    from trendpress.scheduling import PublishWindowPlanner
    from trendpress.utils import truncate, utc_now

    validate_env()
    settings = get_settings()

    # --- Init database ------------------------------------------------
    db = await get_db()
    logger.info("Database connected")
    queue = JobQueue(db, retry_policy=settings.retry, visibility_timeout_minutes=settings.visibility_timeout_minutes)

    try:
        if args.command in ("approve", "reject"):
            # Review actions never call the model
            orchestrator = SynthesisOrchestrator(db, queue, llm=None, planner=PublishWindowPlanner(db))
            if args.command == "approve":
                article = await orchestrator.approve(args.article_id)
                logger.info(
                    "Article %s approved, publishing at %s",
                    article.id,
                    article.scheduled_publish_at.isoformat() if article.scheduled_publish_at else "?",
                )
            else:
                article = await orchestrator.reject(args.article_id, args.reason)
                logger.info("Article %s rejected: %s", article.id, args.reason)

        elif args.command == "retry":
            job = await queue.retry(args.job_id)
            logger.info("Job %s (%s) re-enqueued", job.id, job.job_type.value)

        elif args.command in ("scan", "metrics"):
            workspace = await db.get_workspace(args.workspace_id)
            if workspace is None:
                raise ValidationError(f"Unknown workspace {args.workspace_id}")
            if args.command == "scan":
                label, payload = "Trend scan", TrendScanPayload(workspace.id)
            else:
                label, payload = "Metrics refresh", MetricsRefreshPayload(workspace.id)
            handle = await queue.submit(payload)
            if handle.created:
                logger.info("%s queued as job %s", label, handle.id)
            else:
                logger.info("%s already queued for %s (job %s)", label, workspace.id, handle.id)

        elif args.command == "clusters":
            workspace = await db.get_workspace(args.workspace_id)
            if workspace is None:
                raise ValidationError(f"Unknown workspace {args.workspace_id}")
            now = utc_now()
            posts = await db.get_unclustered_posts(
                workspace.id, now - timedelta(hours=workspace.max_post_age_hours)
            )
            by_id = {p.id: p for p in posts}
            groups = cluster_documents([(p.id, p.content) for p in posts], settings.similarity_threshold)
            logger.info("%d unclustered post(s) form %d cluster(s)", len(posts), len(groups))
            for group in groups:
                lead = max((by_id[i] for i in group.doc_ids), key=lambda p: post_hot_score(p, now))
                logger.info(
                    "  %3d post(s) | %s | @%s: %s",
                    len(group.doc_ids),
                    " ".join(group.terms) or "-",
                    lead.source_account,
                    truncate(lead.content, 80),
                )

    except (ValidationError, JobNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
