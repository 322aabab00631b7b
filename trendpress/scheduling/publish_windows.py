"""
Publish windows: the times of day a workspace publishes at.

``next_publish_slot`` is the pure slot rule. ``PublishWindowPlanner``
layers slot capacity on top so approvals spread across the configured
times instead of piling onto the next one.

Times are interpreted in the workspace timezone; returned datetimes are
UTC.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from trendpress.exceptions import ConfigurationError
from trendpress.models import TIME_OF_DAY, Workspace
from trendpress.utils import ensure_utc

logger = logging.getLogger(__name__)

MAX_SEARCH_DAYS = 7


def parse_publish_time(value: str) -> time:
    """Parse ``"HH:MM"``.

    Raises:
        ConfigurationError: On any other shape or an out-of-range value.
    """
    match = TIME_OF_DAY.match(value) if isinstance(value, str) else None
    if match is None:
        raise ConfigurationError(f"Invalid publish time '{value}' (want HH:MM)")
    return time(int(match.group(1)), int(match.group(2)))


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown timezone '{name}'") from exc


def _slots_on(day: date, times: List[time], tz: ZoneInfo) -> List[datetime]:
    return [datetime.combine(day, t, tzinfo=tz) for t in times]


def next_publish_slot(
    after: datetime,
    publish_times: Sequence[str],
    review_window_hours: float = 0.0,
    tz: str = "UTC",
    max_days: int = MAX_SEARCH_DAYS,
) -> datetime:
    """Earliest configured slot at or after ``after + review_window_hours``.

    Args:
        after: Reference time (aware; naive is taken as UTC).
        publish_times: ``"HH:MM"`` times of day, any order.
        review_window_hours: Minimum lead time before the slot.
        tz: IANA timezone the times are expressed in.
        max_days: Days to search past the earliest allowed day.

    Returns:
        The slot in UTC.

    Raises:
        ConfigurationError: On empty or malformed times, or an unknown
            timezone.
    """
    if not publish_times:
        raise ConfigurationError("publish_times is empty")
    zone = resolve_timezone(tz)
    times = sorted(parse_publish_time(t) for t in publish_times)
    earliest = ensure_utc(after) + timedelta(hours=review_window_hours)
    local_day = earliest.astimezone(zone).date()

    for offset in range(max_days + 1):
        for slot in _slots_on(local_day + timedelta(days=offset), times, zone):
            if slot >= earliest:
                return slot.astimezone(timezone.utc)

    # Unreachable with a non-empty list: a later day always has a slot
    raise ConfigurationError("no publish slot found")


class PublishWindowPlanner:
    """Chooses the publish slot for a newly approved article.

    Each slot holds at most ``ceil(daily_post_limit / len(publish_times))``
    approved articles. When every slot in the next ``MAX_SEARCH_DAYS`` days
    is full, the first slot by time is used anyway; the publish quota is
    enforced again at publish time.
    """

    MAX_SEARCH_DAYS: int = MAX_SEARCH_DAYS

    def __init__(self, db: Any) -> None:
        self.db = db

    @staticmethod
    def slot_capacity(workspace: Workspace) -> int:
        return math.ceil(workspace.daily_post_limit / len(workspace.publish_times))

    async def find_slot(self, workspace: Workspace, approved_at: datetime) -> datetime:
        first = next_publish_slot(
            approved_at,
            workspace.publish_times,
            workspace.review_window_hours,
            workspace.timezone,
        )
        capacity = self.slot_capacity(workspace)
        horizon = first + timedelta(days=self.MAX_SEARCH_DAYS)

        candidate = first
        while candidate <= horizon:
            taken = await self.db.count_articles_scheduled_at(workspace.id, candidate)
            if taken < capacity:
                return candidate
            logger.debug(
                "[SCHEDULER] Slot %s full for workspace %s (%d/%d)",
                candidate.isoformat(),
                workspace.id,
                taken,
                capacity,
            )
            candidate = next_publish_slot(
                candidate + timedelta(minutes=1),
                workspace.publish_times,
                0.0,
                workspace.timezone,
            )

        logger.warning(
            "[SCHEDULER] No free slot within %d days for workspace %s, using %s",
            self.MAX_SEARCH_DAYS,
            workspace.id,
            first.isoformat(),
        )
        return first


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "MAX_SEARCH_DAYS",
    "PublishWindowPlanner",
    "next_publish_slot",
    "parse_publish_time",
    "resolve_timezone",
]
