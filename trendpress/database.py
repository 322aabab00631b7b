"""
Unified async database client for all pipeline state.

ALL store operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

The store is the single source of truth for state transitions. It relies on
these constraints (created by the schema, outside this package):

- ``posts``: unique ``(workspace_id, thread_id)``
- ``synthesized_articles``: unique ``topic_id`` where
  ``review_state <> 'rejected'``
- ``jobs``: unique ``dedupe_key`` where the job is still live

Usage::

    from trendpress.database import get_db

    db = await get_db()
    workspaces = await db.get_active_workspaces()
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from trendpress.exceptions import (
    ConfigurationError,
    DatabaseError,
    DuplicateRecordError,
    ValidationError,
)
from trendpress.models import (
    Job,
    JobStatus,
    PipelineRun,
    Platform,
    PlatformPublication,
    Post,
    PostMetrics,
    ReviewState,
    SynthesizedArticle,
    Topic,
    Workspace,
    publication_columns,
)
from trendpress.utils import isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _is_unique_violation(exc: APIError) -> bool:
    return getattr(exc, "code", None) == UNIQUE_VIOLATION


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** store client for the pipeline.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly; the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # WORKSPACES
    # -----------------------------------------------------------------

    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        """Get a workspace by id, or ``None`` if it does not exist."""
        validate_not_empty(workspace_id, "workspace_id")
        result = await (
            self.client.table("workspaces")
            .select("*")
            .eq("id", workspace_id)
            .limit(1)
            .execute()
        )
        return Workspace.from_row(result.data[0]) if result.data else None

    async def update_workspace_credentials(self, workspace: Workspace) -> None:
        """Write the workspace's platform credentials back, e.g. after a token refresh."""
        validate_not_empty(workspace.id, "workspace.id")
        await (
            self.client.table("workspaces")
            .update({"credentials": workspace.credentials_to_row()})
            .eq("id", workspace.id)
            .execute()
        )

    async def get_active_workspaces(self) -> List[Workspace]:
        """Get every workspace with ``is_active`` set, ordered by id."""
        result = await (
            self.client.table("workspaces")
            .select("*")
            .eq("is_active", True)
            .order("id", desc=False)
            .execute()
        )
        workspaces = []
        for row in result.data:
            try:
                workspaces.append(Workspace.from_row(row))
            except (ConfigurationError, KeyError, TypeError, ValueError) as exc:
                logger.error("[DB] Skipping misconfigured workspace %s: %s", row.get("id"), exc)
        return workspaces

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def upsert_post(self, post: Post) -> Post:
        """Insert a post or refresh the stored copy.

        Conflicts on ``(workspace_id, thread_id)`` update content and
        engagement only; the stored id and topic link are preserved.

        Returns:
            The stored post.

        Raises:
            ValidationError: On missing identifiers.
            DatabaseError: When the upsert returns no data.
        """
        validate_not_empty(post.workspace_id, "post.workspace_id")
        validate_not_empty(post.thread_id, "post.thread_id")

        row = post.to_row()
        row.pop("id")
        row.pop("topic_id")

        result = await (
            self.client.table("posts")
            .upsert(row, on_conflict="workspace_id,thread_id")
            .execute()
        )
        if not result.data:
            raise DatabaseError("Upsert succeeded but returned no data")
        return Post.from_row(result.data[0])

    async def get_unclustered_posts(
        self, workspace_id: str, since: datetime
    ) -> List[Post]:
        """Get posts without a topic observed at or after *since*."""
        result = await (
            self.client.table("posts")
            .select("*")
            .eq("workspace_id", workspace_id)
            .is_("topic_id", "null")
            .gte("observed_at", isoformat_or_none(since))
            .order("observed_at", desc=False)
            .execute()
        )
        return [Post.from_row(row) for row in result.data]

    async def get_posts_by_ids(self, post_ids: List[str]) -> List[Post]:
        """Get posts by id. Unknown ids are silently absent."""
        if not post_ids:
            return []
        result = await (
            self.client.table("posts")
            .select("*")
            .in_("id", list(post_ids))
            .execute()
        )
        return [Post.from_row(row) for row in result.data]

    async def assign_posts_to_topic(
        self, post_ids: List[str], topic_id: str
    ) -> None:
        """Link posts to a topic. Posts already linked keep their link."""
        validate_not_empty(topic_id, "topic_id")
        if not post_ids:
            return
        await (
            self.client.table("posts")
            .update({"topic_id": topic_id})
            .in_("id", list(post_ids))
            .is_("topic_id", "null")
            .execute()
        )

    async def delete_unclustered_posts_before(self, cutoff: datetime) -> int:
        """Delete posts never assigned to a topic observed before *cutoff*."""
        result = await (
            self.client.table("posts")
            .delete()
            .is_("topic_id", "null")
            .lt("observed_at", isoformat_or_none(cutoff))
            .execute()
        )
        return len(result.data or [])

    # -----------------------------------------------------------------
    # TOPICS
    # -----------------------------------------------------------------

    async def get_recent_topics(
        self, workspace_id: str, since: datetime
    ) -> List[Topic]:
        """Get topics updated at or after *since*, oldest first."""
        result = await (
            self.client.table("topics")
            .select("*")
            .eq("workspace_id", workspace_id)
            .gte("updated_at", isoformat_or_none(since))
            .order("created_at", desc=False)
            .execute()
        )
        return [Topic.from_row(row) for row in result.data]

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        validate_not_empty(topic_id, "topic_id")
        result = await (
            self.client.table("topics")
            .select("*")
            .eq("id", topic_id)
            .limit(1)
            .execute()
        )
        return Topic.from_row(result.data[0]) if result.data else None

    async def save_topic(self, topic: Topic) -> None:
        """Insert or update a topic by id."""
        validate_not_empty(topic.workspace_id, "topic.workspace_id")
        await (
            self.client.table("topics")
            .upsert(topic.to_row(), on_conflict="id")
            .execute()
        )

    # -----------------------------------------------------------------
    # SYNTHESIZED ARTICLES
    # -----------------------------------------------------------------

    async def reserve_article(self, article: SynthesizedArticle) -> SynthesizedArticle:
        """Insert a new article row for a topic.

        Raises:
            DuplicateRecordError: If the topic already has a non-rejected
                article.
            DatabaseError: When the insert returns no data.
        """
        validate_not_empty(article.topic_id, "article.topic_id")
        try:
            result = await (
                self.client.table("synthesized_articles")
                .insert(article.to_row())
                .execute()
            )
        except APIError as exc:
            if _is_unique_violation(exc):
                raise DuplicateRecordError(
                    "synthesized_articles", f"topic_id={article.topic_id}"
                ) from exc
            raise
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return SynthesizedArticle.from_row(result.data[0])

    async def get_article(self, article_id: str) -> Optional[SynthesizedArticle]:
        validate_not_empty(article_id, "article_id")
        result = await (
            self.client.table("synthesized_articles")
            .select("*")
            .eq("id", article_id)
            .limit(1)
            .execute()
        )
        return SynthesizedArticle.from_row(result.data[0]) if result.data else None

    async def get_active_article_for_topic(
        self, topic_id: str
    ) -> Optional[SynthesizedArticle]:
        """Get the topic's non-rejected article, if any."""
        result = await (
            self.client.table("synthesized_articles")
            .select("*")
            .eq("topic_id", topic_id)
            .neq("review_state", ReviewState.REJECTED.value)
            .limit(1)
            .execute()
        )
        return SynthesizedArticle.from_row(result.data[0]) if result.data else None

    async def update_article(self, article: SynthesizedArticle) -> None:
        """Persist review and content fields of an article.

        Per-platform publish columns are never written here; they belong
        to :meth:`record_publication`. Metrics belong to
        :meth:`update_article_metrics`.
        """
        validate_not_empty(article.id, "article.id")
        row = article.to_row()
        for platform in Platform:
            for column in publication_columns(platform, None, None, None):
                row.pop(column)
        for column in PostMetrics.columns(None):
            row.pop(column)
        row["updated_at"] = utc_now().isoformat()
        await (
            self.client.table("synthesized_articles")
            .update(row)
            .eq("id", article.id)
            .execute()
        )

    async def record_publication(
        self,
        article_id: str,
        platform: Platform,
        publication: PlatformPublication,
    ) -> bool:
        """Atomically record one platform's publish result.

        The update only matches while the platform's ``published_at``
        column is still null.

        Returns:
            ``True`` if this call recorded the publication, ``False`` if
            the platform was already recorded.
        """
        validate_not_empty(article_id, "article_id")
        result = await (
            self.client.table("synthesized_articles")
            .update(publication_columns(
                platform,
                publication.published_at,
                publication.published_url,
                publication.platform_post_id,
            ))
            .eq("id", article_id)
            .is_(f"published_at_{platform.value}", "null")
            .execute()
        )
        return bool(result.data)

    async def get_publication_times_since(
        self, workspace_id: str, since: datetime
    ) -> List[datetime]:
        """First-publication times of the workspace's articles at or after *since*.

        An article published on several platforms counts once, at its
        earliest platform publication.
        """
        stamp = isoformat_or_none(since)
        clauses = ",".join(
            f"published_at_{platform.value}.gte.{stamp}" for platform in Platform
        )
        result = await (
            self.client.table("synthesized_articles")
            .select("*")
            .eq("workspace_id", workspace_id)
            .or_(clauses)
            .execute()
        )
        times = []
        for row in result.data:
            first = SynthesizedArticle.from_row(row).first_published_at
            if first is not None and first >= since:
                times.append(first)
        return sorted(times)

    async def get_published_articles_since(
        self, workspace_id: str, platform: Platform, since: datetime
    ) -> List[SynthesizedArticle]:
        """Articles published on *platform* at or after *since*, oldest first."""
        result = await (
            self.client.table("synthesized_articles")
            .select("*")
            .eq("workspace_id", workspace_id)
            .gte(f"published_at_{platform.value}", isoformat_or_none(since))
            .not_.is_(f"platform_post_id_{platform.value}", "null")
            .order(f"published_at_{platform.value}", desc=False)
            .execute()
        )
        return [SynthesizedArticle.from_row(row) for row in result.data]

    async def update_article_metrics(self, article_id: str, metrics: PostMetrics) -> None:
        """Overwrite the stored engagement counters of an article."""
        validate_not_empty(article_id, "article_id")
        await (
            self.client.table("synthesized_articles")
            .update(PostMetrics.columns(metrics))
            .eq("id", article_id)
            .execute()
        )

    async def get_approved_articles(self, workspace_id: str) -> List[SynthesizedArticle]:
        """Get approved articles with a scheduled publish time."""
        result = await (
            self.client.table("synthesized_articles")
            .select("*")
            .eq("workspace_id", workspace_id)
            .eq("review_state", ReviewState.APPROVED.value)
            .not_.is_("scheduled_publish_at", "null")
            .order("scheduled_publish_at", desc=False)
            .execute()
        )
        return [SynthesizedArticle.from_row(row) for row in result.data]

    async def count_articles_scheduled_at(
        self, workspace_id: str, slot: datetime
    ) -> int:
        """Count approved articles already holding publish slot *slot*."""
        result = await (
            self.client.table("synthesized_articles")
            .select("id", count="exact")
            .eq("workspace_id", workspace_id)
            .eq("review_state", ReviewState.APPROVED.value)
            .eq("scheduled_publish_at", isoformat_or_none(slot))
            .execute()
        )
        return result.count or 0

    # -----------------------------------------------------------------
    # JOBS
    # -----------------------------------------------------------------

    async def insert_job(self, job: Job) -> Job:
        """Insert a job row.

        Raises:
            DuplicateRecordError: If a live job holds the same dedupe key.
            DatabaseError: When the insert returns no data.
        """
        validate_not_empty(job.queue, "job.queue")
        try:
            result = await self.client.table("jobs").insert(job.to_row()).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                raise DuplicateRecordError("jobs", f"dedupe_key={job.dedupe_key}") from exc
            raise
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return Job.from_row(result.data[0])

    async def get_job(self, job_id: str) -> Optional[Job]:
        validate_not_empty(job_id, "job_id")
        result = await (
            self.client.table("jobs")
            .select("*")
            .eq("id", job_id)
            .limit(1)
            .execute()
        )
        return Job.from_row(result.data[0]) if result.data else None

    async def get_live_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        """Get the non-terminal job holding *dedupe_key*, if any."""
        result = await (
            self.client.table("jobs")
            .select("*")
            .eq("dedupe_key", dedupe_key)
            .in_("status", [
                JobStatus.PENDING.value,
                JobStatus.ACTIVE.value,
                JobStatus.FAILED.value,
            ])
            .order("created_at", desc=True)
            .execute()
        )
        for row in result.data:
            job = Job.from_row(row)
            if not job.is_terminal:
                return job
        return None

    async def get_latest_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        """Get the most recent job for *dedupe_key* regardless of status."""
        result = await (
            self.client.table("jobs")
            .select("*")
            .eq("dedupe_key", dedupe_key)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return Job.from_row(result.data[0]) if result.data else None

    async def get_ready_jobs(
        self, queue: str, now: datetime, limit: int = 10
    ) -> List[Job]:
        """Get jobs on *queue* whose ``run_at`` has passed, oldest first."""
        validate_positive(limit, "limit")
        result = await (
            self.client.table("jobs")
            .select("*")
            .eq("queue", queue)
            .in_("status", [JobStatus.PENDING.value, JobStatus.FAILED.value])
            .lte("run_at", isoformat_or_none(now))
            .order("run_at", desc=False)
            .limit(limit)
            .execute()
        )
        return [Job.from_row(row) for row in result.data]

    async def claim_job(self, job: Job, now: datetime) -> Optional[Job]:
        """Atomically move a ready job to ``ACTIVE``.

        The update only matches while the row still has the status and
        attempt count the caller read, so two workers cannot claim the
        same delivery.

        Returns:
            The claimed job, or ``None`` if another worker won.
        """
        result = await (
            self.client.table("jobs")
            .update({
                "status": JobStatus.ACTIVE.value,
                "attempts": job.attempts + 1,
                "claimed_at": isoformat_or_none(now),
                "updated_at": isoformat_or_none(now),
            })
            .eq("id", job.id)
            .eq("status", job.status.value)
            .eq("attempts", job.attempts)
            .execute()
        )
        return Job.from_row(result.data[0]) if result.data else None

    async def update_job(
        self,
        job: Job,
        expected_status: Optional[JobStatus] = None,
        expected_attempts: Optional[int] = None,
    ) -> bool:
        """Write a job row back, optionally guarded by its current state.

        Returns:
            ``True`` if a row was updated.
        """
        row = job.to_row()
        row["updated_at"] = utc_now().isoformat()
        query = self.client.table("jobs").update(row).eq("id", job.id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        if expected_attempts is not None:
            query = query.eq("attempts", expected_attempts)
        result = await query.execute()
        return bool(result.data)

    async def get_stalled_jobs(self, cutoff: datetime) -> List[Job]:
        """Get ``ACTIVE`` jobs claimed at or before *cutoff*."""
        result = await (
            self.client.table("jobs")
            .select("*")
            .eq("status", JobStatus.ACTIVE.value)
            .lte("claimed_at", isoformat_or_none(cutoff))
            .execute()
        )
        return [Job.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # PIPELINE RUNS
    # -----------------------------------------------------------------

    async def save_pipeline_run(self, run: PipelineRun) -> str:
        """Insert a pipeline run record and return its id."""
        result = await self.client.table("pipeline_runs").insert(run.to_row()).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]["id"]

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        await (
            self.client.table("pipeline_runs")
            .update(run.to_row())
            .eq("id", run.id)
            .execute()
        )

    async def delete_pipeline_runs_before(self, cutoff: datetime) -> int:
        result = await (
            self.client.table("pipeline_runs")
            .delete()
            .lt("started_at", isoformat_or_none(cutoff))
            .execute()
        )
        return len(result.data or [])


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    The first call creates the :class:`SupabaseDB` singleton; subsequent
    calls return the same instance.
    """
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance
