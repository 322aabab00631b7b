"""
Worker pool: claims jobs from named queues and runs their handlers.

Each worker task loops claim -> dispatch by job type -> settle. How a
handler's outcome settles the job:

- returns                                  -> ``DONE`` with the result
- ``PolicyRejection``                      -> ``DONE`` (a recorded transition)
- ``JobDeferred`` / ``QuotaExceeded``      -> back to ``PENDING`` at ``run_at``
- ``ValidationError``, ``ConfigurationError``,
  ``PlatformAuthError``, ``PlatformContentRejectedError``,
  unknown job type                         -> terminal ``FAILED``
- anything else (transient, retry exhausted,
  handler timeout)                         -> ``FAILED``, retried with backoff

Handlers run under ``asyncio.wait_for`` so one stuck job cannot hold a
worker forever. A worker cancelled mid-job leaves it ``ACTIVE``; the
poller's stalled-job recovery redelivers it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from trendpress.exceptions import (
    ConfigurationError,
    JobDeferred,
    PlatformAuthError,
    PlatformContentRejectedError,
    PolicyRejection,
    ValidationError,
)
from trendpress.models import Job, JobType, PipelineStep

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]

FATAL_ERRORS = (
    ValidationError,
    ConfigurationError,
    PlatformAuthError,
    PlatformContentRejectedError,
)

PIPELINE_STEPS: Dict[JobType, PipelineStep] = {
    JobType.SCRAPE: PipelineStep.SCRAPE,
    JobType.TREND_SCAN: PipelineStep.TREND,
    JobType.SYNTHESIZE: PipelineStep.SYNTHESIS,
    JobType.PUBLISH: PipelineStep.PUBLISH,
    JobType.METRICS_REFRESH: PipelineStep.METRICS,
}


class WorkerPool:
    """Pool of asyncio worker tasks pulling from named queues.

    Args:
        queue: ``JobQueue``.
        queue_names: Queues to serve; each worker polls them in turn.
        handlers: Job type -> async handler.
        concurrency: Number of worker tasks.
        job_timeout_seconds: Upper bound for one handler call.
        idle_sleep_seconds: Pause when every queue came back empty.
        tracker: Optional ``PipelineRunTracker`` wrapping pipeline steps.
    """

    def __init__(
        self,
        queue: Any,
        queue_names: Sequence[str],
        handlers: Dict[JobType, Handler],
        concurrency: int = 4,
        job_timeout_seconds: float = 300.0,
        idle_sleep_seconds: float = 2.0,
        tracker: Any = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.queue_names = list(queue_names)
        self.handlers = handlers
        self.concurrency = concurrency
        self.job_timeout_seconds = job_timeout_seconds
        self.idle_sleep_seconds = idle_sleep_seconds
        self.tracker = tracker
        self._running: bool = False
        self._tasks: List["asyncio.Task[None]"] = []

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run the worker tasks until :meth:`stop` is called."""
        self._running = True
        logger.info(
            "[WORKER] Starting %d workers on %s",
            self.concurrency,
            ", ".join(self.queue_names),
        )
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"worker-{i}")
            for i in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("[WORKER] Worker pool cancelled")
            for task in self._tasks:
                task.cancel()
            raise
        finally:
            self._tasks = []
        logger.info("[WORKER] Worker pool stopped")

    async def stop(self) -> None:
        """Ask the workers to exit after their current job."""
        self._running = False
        logger.info("[WORKER] Worker pool stop requested")

    @property
    def is_running(self) -> bool:
        return self._running

    # ================================================================
    # WORKER LOOP
    # ================================================================

    async def _worker_loop(self, index: int) -> None:
        # Stagger the starting queue so workers don't all drain the first one
        order = self.queue_names[index % len(self.queue_names):] + self.queue_names[: index % len(self.queue_names)]
        while self._running:
            try:
                worked = False
                for name in order:
                    job = await self.queue.claim_next(name)
                    if job is not None:
                        await self.process(job)
                        worked = True
                        break
                if not worked:
                    await asyncio.sleep(self.idle_sleep_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[WORKER] worker-%d loop error", index)
                await asyncio.sleep(self.idle_sleep_seconds)

    async def run_once(self, queue_name: str) -> Optional[Job]:
        """Claim and process at most one job from *queue_name*."""
        job = await self.queue.claim_next(queue_name)
        if job is None:
            return None
        return await self.process(job)

    # ================================================================
    # DISPATCH
    # ================================================================

    async def process(self, job: Job) -> Job:
        """Run the handler for a claimed *job* and settle it.

        Returns:
            The job as settled in the queue.
        """
        handler = self.handlers.get(job.job_type)
        if handler is None:
            return await self.queue.fail(job, f"no handler for job type {job.job_type.value}", retryable=False)

        logger.info(
            "[WORKER] Running %s job %s (attempt %d/%d)",
            job.job_type.value,
            job.id,
            job.attempts,
            job.max_attempts,
        )
        try:
            result = await asyncio.wait_for(self._invoke(handler, job), timeout=self.job_timeout_seconds)
        except JobDeferred as exc:
            return await self.queue.defer(job, exc.run_at, exc.reason)
        except PolicyRejection as exc:
            return await self.queue.complete(job, {"rejected": exc.reason})
        except FATAL_ERRORS as exc:
            return await self.queue.fail(job, f"{type(exc).__name__}: {exc}", retryable=False)
        except asyncio.TimeoutError:
            return await self.queue.fail(
                job, f"handler timed out after {self.job_timeout_seconds:.0f}s", retryable=True
            )
        except Exception as exc:
            logger.warning("[WORKER] %s job %s raised %s", job.job_type.value, job.id, exc, exc_info=True)
            return await self.queue.fail(job, f"{type(exc).__name__}: {exc}", retryable=True)

        return await self.queue.complete(job, result if isinstance(result, dict) else None)

    async def _invoke(self, handler: Handler, job: Job) -> Any:
        step = PIPELINE_STEPS.get(job.job_type)
        if self.tracker is None or step is None:
            return await handler(job)
        return await self.tracker.track(job, step, lambda: handler(job))


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "FATAL_ERRORS",
    "PIPELINE_STEPS",
    "WorkerPool",
]
