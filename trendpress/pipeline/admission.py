"""
Admission filter for freshly scraped posts.

``evaluate`` is the pure rule check; ``AdmissionFilter`` adds the optional
language-model relevance check and persistence. Rules run in order and the
first failure wins:

1. ``likes < workspace.min_likes`` -> ``"low engagement"``
2. fewer than 5 words -> ``"short content"``
3. older than ``workspace.max_post_age_hours`` -> ``"stale post"``
4. (``admit`` only) off-topic per the workspace ``topic_filter`` ->
   ``"off topic"``; a model refusal -> ``"content policy"``

The relevance check fails open: if the model is unavailable the post is
accepted.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from trendpress.exceptions import (
    ContentPolicyError,
    RetryExhaustedError,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import Job, MediaItem, Post, Workspace
from trendpress.pipeline.scoring import post_hot_score
from trendpress.utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

MIN_WORDS = 5


class RejectReason:
    LOW_ENGAGEMENT = "low engagement"
    SHORT_CONTENT = "short content"
    STALE_POST = "stale post"
    OFF_TOPIC = "off topic"
    CONTENT_POLICY = "content policy"


@dataclass(frozen=True)
class AdmissionDecision:
    """Accept, or reject with a reason."""

    accepted: bool
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "AdmissionDecision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> "AdmissionDecision":
        return cls(accepted=False, reason=reason)


def evaluate(post: Post, workspace: Workspace, now: datetime) -> AdmissionDecision:
    """Apply the deterministic admission rules to *post*.

    Pure: the decision depends only on the arguments.
    """
    if post.likes < workspace.min_likes:
        return AdmissionDecision.reject(RejectReason.LOW_ENGAGEMENT)
    if post.word_count < MIN_WORDS:
        return AdmissionDecision.reject(RejectReason.SHORT_CONTENT)
    if post.age_hours(now) > workspace.max_post_age_hours:
        return AdmissionDecision.reject(RejectReason.STALE_POST)
    return AdmissionDecision.accept()


_METRIC = re.compile(r"(\d+(?:\.\d+)?)")


def parse_metric(value: Any) -> int:
    """Parse scraper counters such as ``"1.2K"``, ``"56M"`` or ``"1,234"``.

    Unparseable input counts as 0.
    """
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).replace(",", "").strip().upper()
    match = _METRIC.search(text)
    if not match:
        return 0
    number = float(match.group(1))
    if "M" in text:
        number *= 1_000_000
    elif "K" in text:
        number *= 1_000
    return int(round(number))


RELEVANCE_PROMPT = """You screen social media posts for a news curation feed.

Subject matter of this feed:
{topic_filter}

Decide whether the post the user sends is about this subject matter.
Return a JSON object: {{"relevant": true/false, "reason": "short explanation"}}"""


class AdmissionFilter:
    """Admits posts and persists the accepted ones.

    Args:
        db: Store client (``SupabaseDB``).
        llm: ``LLMClient`` for the relevance check; without one the check
            is skipped.
    """

    def __init__(self, db: Any, llm: Any = None) -> None:
        self.db = db
        self.llm = llm

    async def admit(
        self,
        post: Post,
        workspace: Workspace,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Run ``evaluate`` then, when configured, the relevance check."""
        decision = evaluate(post, workspace, now or utc_now())
        if not decision.accepted:
            return decision
        if not workspace.topic_filter or self.llm is None:
            return decision
        return await self._check_relevance(post, workspace)

    async def ingest(
        self,
        post: Post,
        workspace: Workspace,
        now: Optional[datetime] = None,
    ) -> Optional[Post]:
        """Admit *post* and upsert it when accepted.

        Returns:
            The stored post, or ``None`` when rejected.
        """
        decision = await self.admit(post, workspace, now)
        if not decision.accepted:
            logger.info(
                "[ADMISSION] Skipped %s/%s from @%s: %s",
                workspace.id,
                post.thread_id,
                post.source_account,
                decision.reason,
            )
            return None
        post.hot_score = post_hot_score(post)
        return await self.db.upsert_post(post)

    async def _check_relevance(self, post: Post, workspace: Workspace) -> AdmissionDecision:
        prompt = RELEVANCE_PROMPT.format(topic_filter=workspace.topic_filter)
        try:
            verdict = await self.llm.complete_json(prompt, post.content, max_tokens=256)
        except ContentPolicyError:
            return AdmissionDecision.reject(RejectReason.CONTENT_POLICY)
        except (TransientCollaboratorError, RetryExhaustedError, json.JSONDecodeError, ValueError) as exc:
            logger.warning(
                "[ADMISSION] Relevance check indeterminate for %s, accepting: %s",
                post.thread_id,
                exc,
            )
            return AdmissionDecision.accept()

        if verdict.get("relevant") is False:
            return AdmissionDecision.reject(RejectReason.OFF_TOPIC)
        return AdmissionDecision.accept()


# =============================================================================
# SCRAPE JOBS
# =============================================================================


class PostSource(Protocol):
    """Scraper collaborator: raw posts for one account."""

    async def fetch_posts(self, account: str) -> List[Dict[str, Any]]:
        ...


def post_from_raw(raw: Dict[str, Any], workspace_id: str, account: str) -> Post:
    """Build a ``Post`` from a scraper record.

    Raises:
        ValidationError: If the record has no thread id.
    """
    thread_id = raw.get("thread_id") or raw.get("id")
    if not thread_id:
        raise ValidationError("scraped post has no thread_id")
    return Post(
        workspace_id=workspace_id,
        thread_id=str(thread_id),
        source_account=(raw.get("account") or account).lstrip("@"),
        content=raw.get("content") or raw.get("text") or "",
        likes=parse_metric(raw.get("likes")),
        replies=parse_metric(raw.get("replies")),
        reposts=parse_metric(raw.get("reposts")),
        views=parse_metric(raw.get("views")),
        media=[MediaItem.from_dict(m) for m in raw.get("media") or []],
        source_url=raw.get("url") or raw.get("source_url"),
        posted_at=_timestamp(raw.get("posted_at")),
    )


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return None


class ScrapeJobHandler:
    """``scrape`` job handler: pull one account and ingest each post."""

    def __init__(self, db: Any, source: PostSource, admission: AdmissionFilter) -> None:
        self.db = db
        self.source = source
        self.admission = admission

    async def handle(self, job: Job) -> Dict[str, Any]:
        payload = job.typed_payload()
        workspace = await self.db.get_workspace(payload.workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {payload.workspace_id}")

        raw_posts = await self.source.fetch_posts(payload.account)
        now = utc_now()
        stats = {"fetched": len(raw_posts), "accepted": 0, "rejected": 0, "errors": 0}

        for raw in raw_posts:
            try:
                post = post_from_raw(raw, workspace.id, payload.account)
                stored = await self.admission.ingest(post, workspace, now)
            except Exception:
                logger.exception("[ADMISSION] Failed to ingest a post from @%s", payload.account)
                stats["errors"] += 1
                continue
            stats["accepted" if stored else "rejected"] += 1

        logger.info(
            "[ADMISSION] @%s for workspace %s: %d fetched, %d accepted, %d rejected",
            payload.account,
            workspace.id,
            stats["fetched"],
            stats["accepted"],
            stats["rejected"],
        )
        return stats


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "AdmissionDecision",
    "AdmissionFilter",
    "PostSource",
    "RejectReason",
    "ScrapeJobHandler",
    "evaluate",
    "parse_metric",
    "post_from_raw",
]
