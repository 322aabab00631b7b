"""Durable tracking of pipeline step executions.

``PipelineRunTracker.track`` wraps one job handler call in a
``pipeline_runs`` record (``RUNNING`` -> ``COMPLETED`` | ``FAILED``) with
duration, truncated error and result metadata, correlated to the job
through ``job.db_job_id`` (or the job id). Every outcome is also forwarded
to the status reporter.

``prune`` is the retention sweep run once a day by the poller.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from trendpress.exceptions import JobDeferred, PolicyRejection
from trendpress.logging.status_reporter import LoggingStatusReporter, StatusReporter
from trendpress.models import Job, PipelineRun, PipelineStep, RunStatus
from trendpress.utils import truncate, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_CHARS = 500


class PipelineRunTracker:
    """Records pipeline runs and reports their outcome.

    Args:
        db: Store client (``SupabaseDB``).
        reporter: Outcome sink; logging by default.
        run_retention_days: Age after which run records are pruned.
        post_retention_days: Age after which never-clustered posts are
            pruned.
    """

    def __init__(
        self,
        db: Any,
        reporter: Optional[StatusReporter] = None,
        run_retention_days: int = 7,
        post_retention_days: int = 30,
    ) -> None:
        self.db = db
        self.reporter = reporter or LoggingStatusReporter()
        self.run_retention_days = run_retention_days
        self.post_retention_days = post_retention_days

    async def track(
        self,
        job: Job,
        step: PipelineStep,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *fn* as one tracked execution of *step* for *job*.

        Exceptions from *fn* are recorded and re-raised unchanged.
        Deferrals and policy rejections count as completed runs.
        """
        run = PipelineRun(
            workspace_id=job.payload.get("workspace_id"),
            step=step,
            job_id=job.db_job_id or job.id,
        )
        await self._write(self.db.save_pipeline_run, run)
        started = time.monotonic()

        try:
            result = await fn()
        except JobDeferred as exc:
            await self._finish(run, started, RunStatus.COMPLETED, result={"deferred_until": exc.run_at.isoformat()})
            raise
        except PolicyRejection as exc:
            await self._finish(run, started, RunStatus.COMPLETED, result={"rejected": exc.reason})
            raise
        except Exception as exc:
            await self._finish(run, started, RunStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            raise

        await self._finish(
            run,
            started,
            RunStatus.COMPLETED,
            result=result if isinstance(result, dict) else None,
        )
        return result

    async def prune(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete expired run records and stale unclustered posts."""
        now = now or utc_now()
        runs = await self.db.delete_pipeline_runs_before(now - timedelta(days=self.run_retention_days))
        posts = await self.db.delete_unclustered_posts_before(now - timedelta(days=self.post_retention_days))
        logger.info("[TRACKER] Pruned %d pipeline runs and %d unclustered posts", runs, posts)
        return {"pipeline_runs": runs, "posts": posts}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _finish(
        self,
        run: PipelineRun,
        started: float,
        status: RunStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        run.status = status
        run.duration_ms = int((time.monotonic() - started) * 1000)
        run.finished_at = utc_now()
        run.result = result
        run.error = truncate(error, MAX_ERROR_CHARS) if error else None
        await self._write(self.db.update_pipeline_run, run)
        await self.reporter.report(
            status.value,
            {
                "step": run.step.value,
                "workspace_id": run.workspace_id,
                "job_id": run.job_id,
                "duration_ms": run.duration_ms,
                "error": run.error,
                "result": run.result,
            },
        )

    async def _write(self, op: Callable[[PipelineRun], Awaitable[Any]], run: PipelineRun) -> None:
        # Run records are observability only; a store hiccup must not fail the job
        try:
            await op(run)
        except Exception:
            logger.warning("[TRACKER] Could not persist pipeline run %s", run.id, exc_info=True)


__all__ = [
    "PipelineRunTracker",
]
