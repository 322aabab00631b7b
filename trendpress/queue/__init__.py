"""Durable job queue, worker pool and cron poller."""

from trendpress.queue.job_queue import JobQueue
from trendpress.queue.poller import CronPoller
from trendpress.queue.worker import WorkerPool

__all__ = [
    "CronPoller",
    "JobQueue",
    "WorkerPool",
]
