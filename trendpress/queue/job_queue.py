"""
Durable job queue on the ``jobs`` table.

The table is the source of truth: a lost worker never loses a job, it only
delays it until the visibility timeout redelivers it. Delivery is
at-least-once, so every handler is idempotent.

Job lifecycle::

    PENDING --claim--> ACTIVE --complete--> DONE
                         |--fail(retryable, attempts left)--> FAILED (run_at set)
                         |--fail(otherwise)--> FAILED (run_at cleared, terminal)
                         |--defer--> PENDING (attempt not counted)

Claims are conditional updates on ``(status, attempts)`` so two workers
cannot claim the same delivery. Jobs with ``run_at`` in the future are never
returned by :meth:`JobQueue.claim_next`.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from trendpress.config import RetryPolicy
from trendpress.exceptions import DuplicateRecordError, JobNotFoundError, ValidationError
from trendpress.models import (
    Job,
    JobHandle,
    JobPayload,
    JobStatus,
    JobType,
    dedupe_key_for,
    job_type_of,
    parse_payload,
    payload_to_dict,
)
from trendpress.utils import ensure_utc, truncate, utc_now

logger = logging.getLogger(__name__)


def _handle(job: Job, created: bool) -> JobHandle:
    return JobHandle(
        id=job.id,
        queue=job.queue,
        job_type=job.job_type,
        dedupe_key=job.dedupe_key,
        created=created,
    )


class JobQueue:
    """Enqueue, claim and settle jobs.

    Args:
        db: Store client (``SupabaseDB``).
        retry_policy: Attempt limits and backoff base.
        visibility_timeout_minutes: How long a claim may stay ``ACTIVE``
            before :meth:`recover_stalled` redelivers it.
    """

    def __init__(
        self,
        db: Any,
        retry_policy: Optional[RetryPolicy] = None,
        visibility_timeout_minutes: int = 15,
    ) -> None:
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()
        self.visibility_timeout = timedelta(minutes=visibility_timeout_minutes)

    # ================================================================
    # ENQUEUE
    # ================================================================

    async def enqueue(
        self,
        queue_name: str,
        job_type: JobType,
        payload: Union[JobPayload, Dict[str, Any]],
        delay_until: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> JobHandle:
        """Add a job, or return the live job already holding *dedupe_key*.

        Args:
            queue_name: Named queue the job is routed to.
            job_type: Type tag; *payload* must match its shape.
            payload: Typed payload or raw dict.
            delay_until: Earliest dispatch time; ``None`` means now.
            dedupe_key: Idempotency key. A live (non-terminal) job with
                the same key is returned instead of inserting.
            max_attempts: Override of the per-type attempt limit.

        Raises:
            ValidationError: If *payload* does not fit *job_type*.
        """
        data = payload if isinstance(payload, dict) else payload_to_dict(payload)
        typed = parse_payload(job_type, data)

        if dedupe_key:
            existing = await self.db.get_live_job_by_dedupe_key(dedupe_key)
            if existing is not None:
                logger.debug("[QUEUE] %s already queued as job %s", dedupe_key, existing.id)
                return _handle(existing, created=False)

        job = Job(
            queue=queue_name,
            job_type=job_type,
            payload=payload_to_dict(typed),
            max_attempts=max_attempts or self.retry_policy.attempts_for(job_type.value),
            run_at=ensure_utc(delay_until) if delay_until else utc_now(),
            dedupe_key=dedupe_key,
        )
        try:
            job = await self.db.insert_job(job)
        except DuplicateRecordError:
            # Lost an insert race on the dedupe key
            existing = await self.db.get_live_job_by_dedupe_key(dedupe_key)
            if existing is None:
                raise
            return _handle(existing, created=False)

        logger.info(
            "[QUEUE] Enqueued %s job %s on %s (run_at=%s)",
            job_type.value,
            job.id,
            queue_name,
            job.run_at.isoformat() if job.run_at else "now",
        )
        return _handle(job, created=True)

    async def submit(
        self,
        payload: JobPayload,
        delay_until: Optional[datetime] = None,
        dedupe_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> JobHandle:
        """Enqueue *payload* on its type's default queue under its canonical dedupe key."""
        job_type = job_type_of(payload)
        return await self.enqueue(
            job_type.default_queue,
            job_type,
            payload,
            delay_until=delay_until,
            dedupe_key=dedupe_key or dedupe_key_for(payload),
            max_attempts=max_attempts,
        )

    # ================================================================
    # CLAIM
    # ================================================================

    async def claim_next(self, queue_name: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Claim the oldest job on *queue_name* whose ``run_at`` has passed.

        Returns:
            The claimed job (``ACTIVE``, attempts incremented), or ``None``.
        """
        now = now or utc_now()
        for candidate in await self.db.get_ready_jobs(queue_name, now):
            if candidate.is_terminal or candidate.run_at is None or candidate.run_at > now:
                continue
            claimed = await self.db.claim_job(candidate, now)
            if claimed is not None:
                logger.debug(
                    "[QUEUE] Claimed %s job %s (attempt %d/%d)",
                    claimed.job_type.value,
                    claimed.id,
                    claimed.attempts,
                    claimed.max_attempts,
                )
                return claimed
        return None

    # ================================================================
    # SETTLE
    # ================================================================

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> Job:
        done = replace(job, status=JobStatus.DONE, result=result, last_error=None, run_at=None)
        await self._settle(job, done)
        return done

    async def fail(
        self,
        job: Job,
        error: Union[str, BaseException],
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> Job:
        """Record a failed attempt.

        Retryable failures with attempts left wait
        ``base_delay * 2 ** (attempts - 1)``; everything else is terminal.
        """
        now = now or utc_now()
        message = truncate(str(error) or type(error).__name__, 1000)
        if retryable and job.attempts < job.max_attempts:
            delay = self.retry_policy.base_delay_seconds * (2 ** max(0, job.attempts - 1))
            failed = replace(
                job, status=JobStatus.FAILED, last_error=message, run_at=now + timedelta(seconds=delay)
            )
            logger.warning(
                "[QUEUE] %s job %s failed (attempt %d/%d), retrying in %.0fs: %s",
                job.job_type.value,
                job.id,
                job.attempts,
                job.max_attempts,
                delay,
                message,
            )
        else:
            failed = replace(job, status=JobStatus.FAILED, last_error=message, run_at=None)
            logger.error(
                "[QUEUE] %s job %s failed permanently after %d attempt(s): %s",
                job.job_type.value,
                job.id,
                job.attempts,
                message,
            )
        await self._settle(job, failed)
        return failed

    async def defer(self, job: Job, run_at: datetime, reason: Optional[str] = None) -> Job:
        """Put *job* back to ``PENDING`` until *run_at* without spending the attempt."""
        deferred = replace(
            job,
            status=JobStatus.PENDING,
            attempts=max(0, job.attempts - 1),
            run_at=ensure_utc(run_at),
            claimed_at=None,
        )
        await self._settle(job, deferred)
        logger.info(
            "[QUEUE] %s job %s deferred to %s%s",
            job.job_type.value,
            job.id,
            deferred.run_at.isoformat(),
            f" ({reason})" if reason else "",
        )
        return deferred

    async def retry(self, job_id: str, now: Optional[datetime] = None) -> Job:
        """Re-enqueue a terminally failed job with a fresh attempt budget.

        Raises:
            JobNotFoundError: Unknown id.
            ValidationError: The job is not a terminal failure.
        """
        job = await self.get(job_id)
        if not (job.status is JobStatus.FAILED and job.run_at is None):
            raise ValidationError(f"Job {job_id} is {job.status.value}, only terminal failures can be retried")
        revived = replace(job, status=JobStatus.PENDING, attempts=0, run_at=now or utc_now(), claimed_at=None)
        if not await self.db.update_job(revived, expected_status=JobStatus.FAILED, expected_attempts=job.attempts):
            raise ValidationError(f"Job {job_id} changed while being retried")
        logger.info("[QUEUE] Job %s re-enqueued by operator", job_id)
        return revived

    async def recover_stalled(self, now: Optional[datetime] = None) -> int:
        """Redeliver ``ACTIVE`` jobs whose claim outlived the visibility timeout.

        A stalled job with attempts left is retried after the usual backoff;
        one without is failed terminally.

        Returns:
            Number of jobs recovered.
        """
        now = now or utc_now()
        recovered = 0
        for job in await self.db.get_stalled_jobs(now - self.visibility_timeout):
            await self.fail(job, "visibility timeout expired", retryable=True, now=now)
            recovered += 1
        if recovered:
            logger.warning("[QUEUE] Recovered %d stalled job(s)", recovered)
        return recovered

    async def get(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: Unknown id.
        """
        job = await self.db.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _settle(self, claimed: Job, updated: Job) -> None:
        ok = await self.db.update_job(
            updated, expected_status=JobStatus.ACTIVE, expected_attempts=claimed.attempts
        )
        if not ok:
            # Claim was recovered and redelivered while we worked
            logger.warning(
                "[QUEUE] Job %s changed under us, dropping %s result",
                claimed.id,
                updated.status.value,
            )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JobQueue",
]
