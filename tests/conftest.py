"""Shared fixtures for the trendpress test suite."""

import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from trendpress.config import reset_settings
from trendpress.exceptions import DuplicateRecordError
from trendpress.models import (
    Job,
    JobStatus,
    Platform,
    PlatformCredentials,
    PlatformPublication,
    PipelineRun,
    Post,
    PostMetrics,
    ReviewState,
    SynthesizedArticle,
    Topic,
    Workspace,
)
from trendpress.utils import utc_now


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all API keys and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "ANTHROPIC_API_KEY",
        "SCRAPER_URL",
        "LLM_MODEL",
        "LOG_LEVEL",
        "STATUS_REPORTER",
        "WORKER_CONCURRENCY",
        "JOB_RETRY_BASE_DELAY",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query chain returns itself."""
    client = MagicMock()
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "upsert", "delete", "eq", "neq", "gte",
        "lte", "lt", "is_", "in_", "or_", "order", "limit",
    ):
        getattr(table_mock, method).return_value = table_mock
    table_mock.not_ = table_mock
    table_mock.execute = AsyncMock(return_value=MagicMock(data=[], count=0))
    client.table.return_value = table_mock
    return client


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class FakeDB:
    """In-memory stand-in for ``SupabaseDB``.

    Mirrors the store guarantees the pipeline relies on: post uniqueness
    per (workspace, thread), one non-rejected article per topic, one live
    job per dedupe key, conditional claims and write-once publications.
    """

    def __init__(self) -> None:
        self.workspaces: Dict[str, Workspace] = {}
        self.posts: Dict[str, Post] = {}
        self.topics: Dict[str, Topic] = {}
        self.articles: Dict[str, SynthesizedArticle] = {}
        self.jobs: Dict[str, Job] = {}
        self.runs: Dict[str, PipelineRun] = {}
        self.saved_credentials: List[tuple] = []
        self.client = MagicMock()

    # -- workspaces ---------------------------------------------------------
    def add_workspace(self, workspace: Workspace) -> Workspace:
        self.workspaces[workspace.id] = workspace
        return workspace

    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        return self.workspaces.get(workspace_id)

    async def get_active_workspaces(self) -> List[Workspace]:
        return sorted((w for w in self.workspaces.values() if w.is_active), key=lambda w: w.id)

    async def update_workspace_credentials(self, workspace: Workspace) -> None:
        self.saved_credentials.append((workspace.id, workspace.credentials_to_row()))
        stored = self.workspaces.get(workspace.id)
        if stored is not None:
            stored.credentials = copy.deepcopy(workspace.credentials)

    # -- posts --------------------------------------------------------------
    async def upsert_post(self, post: Post) -> Post:
        stored = copy.deepcopy(post)
        for existing in self.posts.values():
            if existing.workspace_id == post.workspace_id and existing.thread_id == post.thread_id:
                stored.id = existing.id
                stored.topic_id = existing.topic_id
                break
        else:
            stored.topic_id = None
        self.posts[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_unclustered_posts(self, workspace_id: str, since: datetime) -> List[Post]:
        found = [
            p for p in self.posts.values()
            if p.workspace_id == workspace_id and p.topic_id is None and p.observed_at >= since
        ]
        return [copy.deepcopy(p) for p in sorted(found, key=lambda p: p.observed_at)]

    async def get_posts_by_ids(self, post_ids: List[str]) -> List[Post]:
        return [copy.deepcopy(self.posts[i]) for i in post_ids if i in self.posts]

    async def assign_posts_to_topic(self, post_ids: List[str], topic_id: str) -> None:
        for post_id in post_ids:
            post = self.posts.get(post_id)
            if post is not None and post.topic_id is None:
                post.topic_id = topic_id

    async def delete_unclustered_posts_before(self, cutoff: datetime) -> int:
        doomed = [i for i, p in self.posts.items() if p.topic_id is None and p.observed_at < cutoff]
        for post_id in doomed:
            del self.posts[post_id]
        return len(doomed)

    # -- topics -------------------------------------------------------------
    async def get_recent_topics(self, workspace_id: str, since: datetime) -> List[Topic]:
        found = [t for t in self.topics.values() if t.workspace_id == workspace_id and t.updated_at >= since]
        return [copy.deepcopy(t) for t in sorted(found, key=lambda t: t.created_at)]

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        topic = self.topics.get(topic_id)
        return copy.deepcopy(topic) if topic else None

    async def save_topic(self, topic: Topic) -> None:
        self.topics[topic.id] = copy.deepcopy(topic)

    # -- articles -----------------------------------------------------------
    async def reserve_article(self, article: SynthesizedArticle) -> SynthesizedArticle:
        for existing in self.articles.values():
            if existing.topic_id == article.topic_id and existing.review_state is not ReviewState.REJECTED:
                raise DuplicateRecordError("synthesized_articles", f"topic_id={article.topic_id}")
        self.articles[article.id] = copy.deepcopy(article)
        return copy.deepcopy(article)

    async def get_article(self, article_id: str) -> Optional[SynthesizedArticle]:
        article = self.articles.get(article_id)
        return copy.deepcopy(article) if article else None

    async def get_active_article_for_topic(self, topic_id: str) -> Optional[SynthesizedArticle]:
        for article in self.articles.values():
            if article.topic_id == topic_id and article.review_state is not ReviewState.REJECTED:
                return copy.deepcopy(article)
        return None

    async def update_article(self, article: SynthesizedArticle) -> None:
        stored = copy.deepcopy(article)
        existing = self.articles.get(article.id)
        stored.publications = copy.deepcopy(existing.publications) if existing else {}
        stored.metrics = copy.deepcopy(existing.metrics) if existing else None
        stored.updated_at = utc_now()
        self.articles[article.id] = stored

    async def record_publication(
        self, article_id: str, platform: Platform, publication: PlatformPublication
    ) -> bool:
        article = self.articles.get(article_id)
        if article is None or platform in article.publications:
            return False
        article.publications[platform] = copy.deepcopy(publication)
        return True

    async def get_publication_times_since(self, workspace_id: str, since: datetime) -> List[datetime]:
        times = []
        for article in self.articles.values():
            first = article.first_published_at
            if article.workspace_id == workspace_id and first is not None and first >= since:
                times.append(first)
        return sorted(times)

    async def get_published_articles_since(
        self, workspace_id: str, platform: Platform, since: datetime
    ) -> List[SynthesizedArticle]:
        found = [
            a for a in self.articles.values()
            if a.workspace_id == workspace_id
            and platform in a.publications
            and a.publications[platform].published_at >= since
            and a.publications[platform].platform_post_id
        ]
        return [copy.deepcopy(a) for a in sorted(found, key=lambda a: a.publications[platform].published_at)]

    async def update_article_metrics(self, article_id: str, metrics: PostMetrics) -> None:
        self.articles[article_id].metrics = copy.deepcopy(metrics)

    async def get_approved_articles(self, workspace_id: str) -> List[SynthesizedArticle]:
        found = [
            a for a in self.articles.values()
            if a.workspace_id == workspace_id
            and a.review_state is ReviewState.APPROVED
            and a.scheduled_publish_at is not None
        ]
        return [copy.deepcopy(a) for a in sorted(found, key=lambda a: a.scheduled_publish_at)]

    async def count_articles_scheduled_at(self, workspace_id: str, slot: datetime) -> int:
        return sum(
            1 for a in self.articles.values()
            if a.workspace_id == workspace_id
            and a.review_state is ReviewState.APPROVED
            and a.scheduled_publish_at == slot
        )

    # -- jobs ---------------------------------------------------------------
    async def insert_job(self, job: Job) -> Job:
        if job.dedupe_key and await self.get_live_job_by_dedupe_key(job.dedupe_key):
            raise DuplicateRecordError("jobs", f"dedupe_key={job.dedupe_key}")
        self.jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_live_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        for job in reversed(list(self.jobs.values())):
            if job.dedupe_key == dedupe_key and not job.is_terminal:
                return copy.deepcopy(job)
        return None

    async def get_latest_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        for job in reversed(list(self.jobs.values())):
            if job.dedupe_key == dedupe_key:
                return copy.deepcopy(job)
        return None

    async def get_ready_jobs(self, queue: str, now: datetime, limit: int = 10) -> List[Job]:
        ready = [
            j for j in self.jobs.values()
            if j.queue == queue
            and j.status in (JobStatus.PENDING, JobStatus.FAILED)
            and j.run_at is not None
            and j.run_at <= now
        ]
        ready.sort(key=lambda j: j.run_at)
        return [copy.deepcopy(j) for j in ready[:limit]]

    async def claim_job(self, job: Job, now: datetime) -> Optional[Job]:
        stored = self.jobs.get(job.id)
        if stored is None or stored.status is not job.status or stored.attempts != job.attempts:
            return None
        stored.status = JobStatus.ACTIVE
        stored.attempts += 1
        stored.claimed_at = now
        stored.updated_at = now
        return copy.deepcopy(stored)

    async def update_job(
        self,
        job: Job,
        expected_status: Optional[JobStatus] = None,
        expected_attempts: Optional[int] = None,
    ) -> bool:
        stored = self.jobs.get(job.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status is not expected_status:
            return False
        if expected_attempts is not None and stored.attempts != expected_attempts:
            return False
        self.jobs[job.id] = copy.deepcopy(job)
        return True

    async def get_stalled_jobs(self, cutoff: datetime) -> List[Job]:
        return [
            copy.deepcopy(j) for j in self.jobs.values()
            if j.status is JobStatus.ACTIVE and j.claimed_at is not None and j.claimed_at <= cutoff
        ]

    # -- pipeline runs ------------------------------------------------------
    async def save_pipeline_run(self, run: PipelineRun) -> str:
        self.runs[run.id] = copy.deepcopy(run)
        return run.id

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        self.runs[run.id] = copy.deepcopy(run)

    async def delete_pipeline_runs_before(self, cutoff: datetime) -> int:
        doomed = [i for i, r in self.runs.items() if r.started_at < cutoff]
        for run_id in doomed:
            del self.runs[run_id]
        return len(doomed)


@pytest.fixture
def fake_db():
    return FakeDB()


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------
def make_workspace(**overrides) -> Workspace:
    values = dict(
        id="ws-1",
        name="Tech Trends",
        target_accounts=["@alice", "@bob"],
        min_likes=300,
        hot_score_threshold=50.0,
        max_post_age_hours=24,
        daily_post_limit=3,
        publish_times=["12:00", "18:00", "21:00"],
        review_window_hours=2.0,
        timezone="UTC",
        platforms=[Platform.THREADS],
        credentials={Platform.THREADS: PlatformCredentials(account_id="acct-1", access_token="token-1")},
    )
    values.update(overrides)
    return Workspace(**values)


def make_post(**overrides) -> Post:
    values = dict(
        workspace_id="ws-1",
        thread_id="t-1",
        source_account="alice",
        content="New open source model beats benchmarks on reasoning tasks today",
        likes=500,
        replies=40,
        reposts=20,
    )
    values.update(overrides)
    return Post(**values)


@pytest.fixture
def workspace():
    return make_workspace()


@pytest.fixture
def mock_llm():
    """An LLM client double with async ``complete``/``complete_json``."""
    llm = MagicMock()
    llm.complete = AsyncMock(return_value="")
    llm.complete_json = AsyncMock(return_value={})
    return llm
