"""Tests for the admission filter and the scrape job handler.

Validates:
- Rule order and reject reasons of ``evaluate``
- Scraper counter parsing
- The relevance check and its fail-open behaviour
- Ingest idempotence per (workspace, thread)
- ScrapeJobHandler per-post isolation
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_post, make_workspace
from trendpress.exceptions import ContentPolicyError, TransientCollaboratorError, ValidationError
from trendpress.models import Job, JobType
from trendpress.pipeline.admission import (
    AdmissionFilter,
    RejectReason,
    ScrapeJobHandler,
    evaluate,
    parse_metric,
    post_from_raw,
)


# =============================================================================
# evaluate
# =============================================================================


class TestEvaluate:
    """Deterministic admission rules."""

    def test_low_engagement_rejected(self, sample_utc_now):
        post = make_post(likes=10, posted_at=sample_utc_now)
        decision = evaluate(post, make_workspace(), sample_utc_now)
        assert decision.accepted is False
        assert decision.reason == RejectReason.LOW_ENGAGEMENT

    def test_short_content_rejected(self, sample_utc_now):
        post = make_post(content="Hi", posted_at=sample_utc_now)
        decision = evaluate(post, make_workspace(), sample_utc_now)
        assert decision.reason == RejectReason.SHORT_CONTENT

    def test_stale_post_rejected(self, sample_utc_now):
        post = make_post(posted_at=sample_utc_now - timedelta(hours=30))
        decision = evaluate(post, make_workspace(max_post_age_hours=24), sample_utc_now)
        assert decision.reason == RejectReason.STALE_POST

    def test_engagement_checked_before_length(self, sample_utc_now):
        post = make_post(likes=1, content="Hi", posted_at=sample_utc_now)
        assert evaluate(post, make_workspace(), sample_utc_now).reason == RejectReason.LOW_ENGAGEMENT

    def test_likes_exactly_at_floor_accepted(self, sample_utc_now):
        post = make_post(likes=300, posted_at=sample_utc_now)
        assert evaluate(post, make_workspace(min_likes=300), sample_utc_now).accepted is True

    def test_five_words_accepted(self, sample_utc_now):
        post = make_post(content="one two three four five", posted_at=sample_utc_now)
        assert evaluate(post, make_workspace(), sample_utc_now).accepted is True


# =============================================================================
# parse_metric / post_from_raw
# =============================================================================


class TestParseMetric:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1.2K", 1200),
            ("56M", 56_000_000),
            ("1,234", 1234),
            ("987", 987),
            (42, 42),
            (None, 0),
            ("n/a", 0),
        ],
    )
    def test_parse_metric(self, raw, expected):
        assert parse_metric(raw) == expected


class TestPostFromRaw:

    def test_builds_post_from_scraper_record(self):
        post = post_from_raw(
            {
                "thread_id": "abc",
                "content": "Some long enough content for a post",
                "likes": "2.5K",
                "replies": "12",
                "media": [{"url": "https://cdn.example/a.mp4", "type": "video"}],
                "url": "https://threads.net/@alice/post/abc",
                "posted_at": "2025-06-15T10:00:00Z",
            },
            "ws-1",
            "@alice",
        )
        assert post.thread_id == "abc"
        assert post.source_account == "alice"
        assert post.likes == 2500
        assert post.replies == 12
        assert post.media[0].is_video
        assert post.posted_at is not None

    def test_missing_thread_id_raises(self):
        with pytest.raises(ValidationError):
            post_from_raw({"content": "no id here"}, "ws-1", "alice")

    def test_unparseable_timestamp_is_dropped(self):
        post = post_from_raw({"thread_id": "x", "posted_at": "yesterday-ish"}, "ws-1", "alice")
        assert post.posted_at is None


# =============================================================================
# AdmissionFilter
# =============================================================================


class TestAdmissionFilter:

    @pytest.mark.asyncio
    async def test_rejected_post_is_not_persisted(self, fake_db, sample_utc_now):
        admission = AdmissionFilter(fake_db)
        stored = await admission.ingest(make_post(likes=10, posted_at=sample_utc_now), make_workspace(), sample_utc_now)
        assert stored is None
        assert fake_db.posts == {}

    @pytest.mark.asyncio
    async def test_accepted_post_is_stored_with_hot_score(self, fake_db, sample_utc_now):
        admission = AdmissionFilter(fake_db)
        stored = await admission.ingest(make_post(posted_at=sample_utc_now), make_workspace(), sample_utc_now)
        assert stored is not None
        # 500*1.5 + 40*2 + 20
        assert stored.hot_score == 850.0
        assert len(fake_db.posts) == 1

    @pytest.mark.asyncio
    async def test_reingest_refreshes_counters_without_duplicating(self, fake_db, sample_utc_now):
        admission = AdmissionFilter(fake_db)
        ws = make_workspace()
        first = await admission.ingest(make_post(likes=400, posted_at=sample_utc_now), ws, sample_utc_now)
        fake_db.posts[first.id].topic_id = "topic-1"

        second = await admission.ingest(make_post(likes=900, posted_at=sample_utc_now), ws, sample_utc_now)

        assert len(fake_db.posts) == 1
        assert second.id == first.id
        assert second.likes == 900
        assert second.topic_id == "topic-1"

    @pytest.mark.asyncio
    async def test_off_topic_post_rejected(self, fake_db, mock_llm, sample_utc_now):
        mock_llm.complete_json.return_value = {"relevant": False, "reason": "sports"}
        admission = AdmissionFilter(fake_db, mock_llm)
        decision = await admission.admit(
            make_post(posted_at=sample_utc_now), make_workspace(topic_filter="AI research"), sample_utc_now
        )
        assert decision.reason == RejectReason.OFF_TOPIC

    @pytest.mark.asyncio
    async def test_model_refusal_is_content_policy(self, fake_db, mock_llm, sample_utc_now):
        mock_llm.complete_json.side_effect = ContentPolicyError("refused")
        admission = AdmissionFilter(fake_db, mock_llm)
        decision = await admission.admit(
            make_post(posted_at=sample_utc_now), make_workspace(topic_filter="AI"), sample_utc_now
        )
        assert decision.reason == RejectReason.CONTENT_POLICY

    @pytest.mark.asyncio
    async def test_relevance_check_fails_open(self, fake_db, mock_llm, sample_utc_now):
        mock_llm.complete_json.side_effect = TransientCollaboratorError("llm", "overloaded")
        admission = AdmissionFilter(fake_db, mock_llm)
        decision = await admission.admit(
            make_post(posted_at=sample_utc_now), make_workspace(topic_filter="AI"), sample_utc_now
        )
        assert decision.accepted is True

    @pytest.mark.asyncio
    async def test_no_topic_filter_skips_model(self, fake_db, mock_llm, sample_utc_now):
        admission = AdmissionFilter(fake_db, mock_llm)
        decision = await admission.admit(make_post(posted_at=sample_utc_now), make_workspace(), sample_utc_now)
        assert decision.accepted is True
        mock_llm.complete_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_rule_rejection_skips_model(self, fake_db, mock_llm, sample_utc_now):
        admission = AdmissionFilter(fake_db, mock_llm)
        await admission.admit(
            make_post(likes=1, posted_at=sample_utc_now), make_workspace(topic_filter="AI"), sample_utc_now
        )
        mock_llm.complete_json.assert_not_called()


# =============================================================================
# ScrapeJobHandler
# =============================================================================


def _scrape_job(account="@alice"):
    return Job(
        queue="ingest",
        job_type=JobType.SCRAPE,
        payload={"workspace_id": "ws-1", "account": account},
    )


class TestScrapeJobHandler:

    @pytest.mark.asyncio
    async def test_ingests_each_post_and_counts(self, fake_db):
        fake_db.add_workspace(make_workspace())
        source = MagicMock()
        source.fetch_posts = AsyncMock(return_value=[
            {"thread_id": "1", "content": "A long enough post about model releases", "likes": "1K"},
            {"thread_id": "2", "content": "Too few likes on this one here", "likes": 3},
            {"content": "record without an id"},
        ])
        handler = ScrapeJobHandler(fake_db, source, AdmissionFilter(fake_db))

        stats = await handler.handle(_scrape_job())

        assert stats == {"fetched": 3, "accepted": 1, "rejected": 1, "errors": 1}
        source.fetch_posts.assert_awaited_once_with("@alice")
        assert len(fake_db.posts) == 1

    @pytest.mark.asyncio
    async def test_unknown_workspace_raises(self, fake_db):
        handler = ScrapeJobHandler(fake_db, MagicMock(), AdmissionFilter(fake_db))
        with pytest.raises(ValidationError):
            await handler.handle(_scrape_job())

    @pytest.mark.asyncio
    async def test_source_failure_propagates(self, fake_db):
        fake_db.add_workspace(make_workspace())
        source = MagicMock()
        source.fetch_posts = AsyncMock(side_effect=TransientCollaboratorError("scraper", "down"))
        handler = ScrapeJobHandler(fake_db, source, AdmissionFilter(fake_db))
        with pytest.raises(TransientCollaboratorError):
            await handler.handle(_scrape_job())
