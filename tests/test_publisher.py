"""Tests for the publish scheduler.

Validates:
- Jobs ahead of their slot are deferred
- An (article, platform) pair is published at most once, also when two
  deliveries race
- The rolling 24h quota and the slot it defers to
- The publish scan fills in missing jobs only
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_workspace
from trendpress.config import Settings
from trendpress.exceptions import (
    ConfigurationError,
    JobDeferred,
    QuotaExceeded,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import (
    Job,
    JobStatus,
    JobType,
    Platform,
    PlatformCredentials,
    PlatformPublication,
    PublishPayload,
    PublishScanPayload,
    ReviewState,
    SynthesizedArticle,
    payload_to_dict,
)
from trendpress.queue.job_queue import JobQueue
from trendpress.scheduling.publisher import PublishScheduler
from trendpress.tools.platforms import PlatformPublisher, PublishResult, default_publishers


SLOT = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class RecordingPublisher(PlatformPublisher):
    """Publisher double that counts calls and can stall."""

    platform = Platform.THREADS

    def __init__(self, delay: float = 0.0, timeout_seconds: float = 0.0) -> None:
        super().__init__(timeout_seconds)
        self.delay = delay
        self.calls = []
        self.tokens = []

    async def refresh_credentials(self, credentials):
        return PlatformCredentials(
            account_id=credentials.account_id,
            access_token="token-2",
            expires_at=credentials.expires_at + timedelta(days=60),
        )

    async def publish(self, article, credentials):
        self.calls.append(article.id)
        self.tokens.append(credentials.access_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        return PublishResult(platform_post_id=f"post-{len(self.calls)}", url="https://threads.net/p/1")


def _article(db, review_state=ReviewState.APPROVED, scheduled=SLOT, **kwargs):
    article = SynthesizedArticle(
        workspace_id="ws-1",
        topic_id=f"topic-{len(db.articles)}",
        review_state=review_state,
        headline="Headline",
        body="Body",
        scheduled_publish_at=scheduled,
        **kwargs,
    )
    db.articles[article.id] = article
    return article


def _publish_job(article, platform=Platform.THREADS):
    payload = PublishPayload(
        workspace_id=article.workspace_id,
        article_id=article.id,
        platform=platform,
        scheduled_publish_at=article.scheduled_publish_at,
    )
    return Job(queue="publish", job_type=JobType.PUBLISH, payload=payload_to_dict(payload))


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def scheduler(fake_db, publisher):
    fake_db.add_workspace(make_workspace())
    return PublishScheduler(fake_db, JobQueue(fake_db), {Platform.THREADS: publisher})


# =============================================================================
# PUBLISH
# =============================================================================


class TestPublish:

    @pytest.mark.asyncio
    async def test_early_job_is_deferred_to_slot(self, fake_db, scheduler, publisher):
        article = _article(fake_db)

        with pytest.raises(JobDeferred) as exc_info:
            await scheduler.handle(_publish_job(article), now=SLOT - timedelta(minutes=5))

        assert exc_info.value.run_at == SLOT
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_publishes_and_records(self, fake_db, scheduler, publisher):
        article = _article(fake_db)

        result = await scheduler.handle(_publish_job(article), now=SLOT)

        assert result["recorded"] is True
        assert result["platform_post_id"] == "post-1"
        publication = fake_db.articles[article.id].publications[Platform.THREADS]
        assert publication.platform_post_id == "post-1"
        assert publication.published_url == "https://threads.net/p/1"

    @pytest.mark.asyncio
    async def test_redelivery_does_not_publish_twice(self, fake_db, scheduler, publisher):
        article = _article(fake_db)
        job = _publish_job(article)

        await scheduler.handle(job, now=SLOT)
        again = await scheduler.handle(job, now=SLOT + timedelta(minutes=1))

        assert again["skipped"] == "already published"
        assert len(publisher.calls) == 1

    @pytest.mark.asyncio
    async def test_racing_deliveries_publish_once(self, fake_db, publisher):
        fake_db.add_workspace(make_workspace())
        slow = RecordingPublisher(delay=0.01)
        scheduler = PublishScheduler(fake_db, JobQueue(fake_db), {Platform.THREADS: slow})
        article = _article(fake_db)
        job = _publish_job(article)

        results = await asyncio.gather(
            scheduler.handle(job, now=SLOT),
            scheduler.handle(job, now=SLOT),
        )

        assert len(slow.calls) == 1
        assert sum(1 for r in results if r.get("skipped") == "already published") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [ReviewState.PENDING_REVIEW, ReviewState.REJECTED])
    async def test_unapproved_article_is_skipped(self, fake_db, scheduler, publisher, state):
        article = _article(fake_db, review_state=state)

        result = await scheduler.handle(_publish_job(article), now=SLOT)

        assert result["skipped"] == f"article is {state.value}"
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_unknown_article_raises(self, fake_db, scheduler):
        ghost = SynthesizedArticle(workspace_id="ws-1", topic_id="t", scheduled_publish_at=SLOT)
        with pytest.raises(ValidationError):
            await scheduler.handle(_publish_job(ghost), now=SLOT)

    @pytest.mark.asyncio
    async def test_missing_credentials_raise(self, fake_db, scheduler):
        article = _article(fake_db)
        with pytest.raises(ConfigurationError):
            await scheduler.handle(_publish_job(article, Platform.TWITTER), now=SLOT)

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_before_publishing(self, fake_db, publisher):
        fake_db.add_workspace(make_workspace(credentials={
            Platform.THREADS: PlatformCredentials(
                account_id="acct-1", access_token="token-1", expires_at=SLOT + timedelta(days=2)
            ),
        }))
        scheduler = PublishScheduler(fake_db, JobQueue(fake_db), {Platform.THREADS: publisher})
        article = _article(fake_db)

        await scheduler.handle(_publish_job(article), now=SLOT)

        assert publisher.tokens == ["token-2"]
        stored = fake_db.workspaces["ws-1"].credentials[Platform.THREADS]
        assert stored.access_token == "token-2"
        assert stored.expires_at == SLOT + timedelta(days=62)

    @pytest.mark.asyncio
    async def test_platform_timeout_is_transient(self, fake_db):
        fake_db.add_workspace(make_workspace())
        stuck = RecordingPublisher(delay=5)
        scheduler = PublishScheduler(
            fake_db, JobQueue(fake_db), {Platform.THREADS: stuck}, publish_timeout_seconds=0.01
        )
        article = _article(fake_db)

        with pytest.raises(TransientCollaboratorError):
            await scheduler.handle(_publish_job(article), now=SLOT)

        assert fake_db.articles[article.id].publications == {}

    @pytest.mark.asyncio
    async def test_slow_platform_gets_its_own_budget(self, fake_db):
        fake_db.add_workspace(make_workspace())
        slow = RecordingPublisher(delay=0.05, timeout_seconds=1.0)
        scheduler = PublishScheduler(
            fake_db, JobQueue(fake_db), {Platform.THREADS: slow}, publish_timeout_seconds=0.01
        )
        article = _article(fake_db)

        result = await scheduler.handle(_publish_job(article), now=SLOT)

        assert result["recorded"] is True
        assert scheduler.call_timeout(slow) == 1.0


class TestTimeoutSizing:

    def test_default_publishers_fit_inside_their_call_timeout(self, fake_db):
        settings = Settings()
        publishers = default_publishers(settings.platform_timeout_seconds)
        scheduler = PublishScheduler(
            fake_db,
            JobQueue(fake_db),
            publishers,
            publish_timeout_seconds=settings.platform_timeout_seconds * 2,
        )
        instagram = publishers[Platform.INSTAGRAM]

        # Container create plus every status poll and its wait
        polling = instagram.max_polls * instagram.poll_interval_seconds
        assert scheduler.call_timeout(instagram) >= polling + settings.platform_timeout_seconds
        for publisher in publishers.values():
            assert scheduler.call_timeout(publisher) >= publisher.max_duration

    def test_worker_timeout_covers_slowest_call_within_visibility(self, fake_db):
        settings = Settings()
        scheduler = PublishScheduler(
            fake_db,
            JobQueue(fake_db),
            default_publishers(settings.platform_timeout_seconds),
            publish_timeout_seconds=settings.platform_timeout_seconds * 2,
        )
        job_timeout = max(settings.job_timeout_seconds, scheduler.job_timeout_seconds)

        assert job_timeout > scheduler.max_call_timeout
        assert job_timeout < settings.visibility_timeout_minutes * 60


# =============================================================================
# QUOTA
# =============================================================================


def _published(db, at):
    return _article(
        db,
        scheduled=at,
        publications={Platform.THREADS: PlatformPublication(published_at=at)},
    )


class TestQuota:

    @pytest.mark.asyncio
    async def test_full_window_defers_to_next_slot_after_expiry(self, fake_db, scheduler, publisher):
        for hours_ago in (20, 10, 1):
            _published(fake_db, SLOT - timedelta(hours=hours_ago))
        article = _article(fake_db)

        with pytest.raises(QuotaExceeded) as exc_info:
            await scheduler.handle(_publish_job(article), now=SLOT)

        # Oldest publication (14th 16:00) leaves the window on the 15th at
        # 16:00; the next slot after that is 18:00
        assert exc_info.value.run_at == datetime(2025, 6, 15, 18, 0, tzinfo=timezone.utc)
        assert exc_info.value.limit == 3
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_publications_older_than_window_do_not_count(self, fake_db, scheduler, publisher):
        for hours_ago in (30, 26, 25):
            _published(fake_db, SLOT - timedelta(hours=hours_ago))
        article = _article(fake_db)

        result = await scheduler.handle(_publish_job(article), now=SLOT)

        assert result["recorded"] is True

    @pytest.mark.asyncio
    async def test_other_platforms_of_a_published_article_skip_quota(self, fake_db, publisher):
        ws = make_workspace(daily_post_limit=1)
        fake_db.add_workspace(ws)
        scheduler = PublishScheduler(fake_db, JobQueue(fake_db), {Platform.THREADS: publisher})
        article = _article(
            fake_db,
            publications={Platform.INSTAGRAM: PlatformPublication(published_at=SLOT - timedelta(minutes=5))},
        )

        result = await scheduler.handle(_publish_job(article), now=SLOT)

        assert result["recorded"] is True


# =============================================================================
# PUBLISH SCAN
# =============================================================================


class TestPublishScan:

    @pytest.mark.asyncio
    async def test_enqueues_missing_jobs_once(self, fake_db, scheduler):
        article = _article(fake_db)

        first = await scheduler.scan_workspace("ws-1")
        second = await scheduler.scan_workspace("ws-1")

        assert first["enqueued"] == [f"{article.id}:threads"]
        assert second["enqueued"] == []
        (job,) = fake_db.jobs.values()
        assert job.run_at == SLOT
        assert job.dedupe_key == f"publish:{article.id}:threads"

    @pytest.mark.asyncio
    async def test_published_and_unapproved_are_ignored(self, fake_db, scheduler):
        _published(fake_db, SLOT)
        _article(fake_db, review_state=ReviewState.PENDING_REVIEW)

        result = await scheduler.scan_workspace("ws-1")

        assert result["enqueued"] == []

    @pytest.mark.asyncio
    async def test_terminal_failure_is_not_resubmitted(self, fake_db, scheduler):
        article = _article(fake_db)
        await scheduler.scan_workspace("ws-1")
        job = next(iter(fake_db.jobs.values()))
        job.status = JobStatus.FAILED
        job.run_at = None

        result = await scheduler.scan_workspace("ws-1")

        assert result["enqueued"] == []
        assert fake_db.jobs[job.id].dedupe_key == f"publish:{article.id}:threads"

    @pytest.mark.asyncio
    async def test_handle_scan(self, fake_db, scheduler):
        _article(fake_db)
        job = Job(
            queue="pipeline",
            job_type=JobType.PUBLISH_SCAN,
            payload=payload_to_dict(PublishScanPayload(workspace_id="ws-1")),
        )

        result = await scheduler.handle_scan(job)

        assert len(result["enqueued"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_workspace_raises(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.scan_workspace("nope")
