"""Scheduling subsystem: publish windows, quota, credentials and the publish and metrics job handlers."""

from trendpress.scheduling.credentials import CredentialKeeper
from trendpress.scheduling.metrics import MetricsRefresher
from trendpress.scheduling.publish_windows import PublishWindowPlanner, next_publish_slot
from trendpress.scheduling.publisher import PublishScheduler

__all__ = [
    "CredentialKeeper",
    "MetricsRefresher",
    "PublishScheduler",
    "PublishWindowPlanner",
    "next_publish_slot",
]
