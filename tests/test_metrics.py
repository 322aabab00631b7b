"""Tests for credential upkeep and the metrics refresh job.

Validates:
- Tokens far from expiry are used as-is, tokens inside the refresh window
  are refreshed and written back
- A failed refresh falls back to the current token while it is still valid
- Metrics are refreshed for articles published inside the lookback window,
  one failing article does not stop the rest
"""

from datetime import timedelta
from unittest.mock import patch, AsyncMock

import pytest

from conftest import make_workspace
from trendpress.exceptions import (
    ConfigurationError,
    PlatformAuthError,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import (
    Job,
    JobType,
    MetricsRefreshPayload,
    Platform,
    PlatformCredentials,
    PlatformPublication,
    PostMetrics,
    ReviewState,
    SynthesizedArticle,
    payload_to_dict,
)
from trendpress.scheduling.credentials import CredentialKeeper
from trendpress.scheduling.metrics import MetricsRefresher
from trendpress.tools.platforms import PlatformPublisher


class InsightsPublisher(PlatformPublisher):
    """Threads double answering refresh and insight calls."""

    platform = Platform.THREADS

    def __init__(self, refresh_error=None, failing_posts=(), auth_error=False) -> None:
        super().__init__()
        self.refresh_error = refresh_error
        self.failing_posts = set(failing_posts)
        self.auth_error = auth_error
        self.refreshed = []
        self.fetched = []

    async def refresh_credentials(self, credentials):
        self.refreshed.append(credentials.access_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return PlatformCredentials(
            account_id=credentials.account_id,
            access_token="new-token",
            expires_at=credentials.expires_at + timedelta(days=60),
        )

    async def fetch_metrics(self, platform_post_id, credentials):
        self.fetched.append((platform_post_id, credentials.access_token))
        if self.auth_error:
            raise PlatformAuthError("threads: token revoked")
        if platform_post_id in self.failing_posts:
            raise TransientCollaboratorError("threads", "HTTP 503")
        return PostMetrics(views=100, likes=10, replies=2, reposts=1)


def _credentials(now, days_left):
    return PlatformCredentials(
        account_id="acct-1", access_token="old-token", expires_at=now + timedelta(days=days_left)
    )


def _published(db, now, post_id, hours_ago, platform=Platform.THREADS):
    article = SynthesizedArticle(
        workspace_id="ws-1",
        topic_id=f"topic-{len(db.articles)}",
        review_state=ReviewState.APPROVED,
        publications={
            platform: PlatformPublication(
                published_at=now - timedelta(hours=hours_ago), platform_post_id=post_id
            )
        },
    )
    db.articles[article.id] = article
    return article


def _metrics_job(workspace_id="ws-1"):
    payload = MetricsRefreshPayload(workspace_id=workspace_id)
    return Job(queue="pipeline", job_type=JobType.METRICS_REFRESH, payload=payload_to_dict(payload))


# =============================================================================
# CREDENTIALS
# =============================================================================


class TestCredentialKeeper:

    @pytest.mark.asyncio
    async def test_token_far_from_expiry_is_used_as_is(self, fake_db, sample_utc_now):
        publisher = InsightsPublisher()
        workspace = fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, 30)})
        )

        creds = await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
            workspace, Platform.THREADS, sample_utc_now
        )

        assert creds.access_token == "old-token"
        assert publisher.refreshed == []
        assert fake_db.saved_credentials == []

    @pytest.mark.asyncio
    async def test_token_inside_window_is_refreshed_and_saved(self, fake_db, sample_utc_now):
        publisher = InsightsPublisher()
        workspace = fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, 3)})
        )

        creds = await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
            workspace, Platform.THREADS, sample_utc_now
        )

        assert creds.access_token == "new-token"
        assert publisher.refreshed == ["old-token"]
        ((workspace_id, row),) = fake_db.saved_credentials
        assert workspace_id == "ws-1"
        assert row["threads"]["access_token"] == "new-token"
        assert fake_db.workspaces["ws-1"].credentials[Platform.THREADS].access_token == "new-token"

    @pytest.mark.asyncio
    async def test_token_without_expiry_is_never_refreshed(self, fake_db, sample_utc_now):
        publisher = InsightsPublisher()
        workspace = fake_db.add_workspace(make_workspace())

        creds = await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
            workspace, Platform.THREADS, sample_utc_now
        )

        assert creds.access_token == "token-1"
        assert publisher.refreshed == []

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_valid_token(self, fake_db, sample_utc_now, caplog):
        publisher = InsightsPublisher(refresh_error=TransientCollaboratorError("threads", "HTTP 502"))
        workspace = fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, 2)})
        )

        creds = await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
            workspace, Platform.THREADS, sample_utc_now
        )

        assert creds.access_token == "old-token"
        assert fake_db.saved_credentials == []
        assert "token refresh for workspace ws-1 failed" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_refresh_of_lapsed_token_raises(self, fake_db, sample_utc_now):
        publisher = InsightsPublisher(refresh_error=TransientCollaboratorError("threads", "HTTP 502"))
        workspace = fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, -1)})
        )

        with pytest.raises(TransientCollaboratorError):
            await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
                workspace, Platform.THREADS, sample_utc_now
            )

    @pytest.mark.asyncio
    async def test_refused_refresh_raises(self, fake_db, sample_utc_now):
        publisher = InsightsPublisher(refresh_error=PlatformAuthError("threads: token revoked"))
        workspace = fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, 2)})
        )

        with pytest.raises(PlatformAuthError):
            await CredentialKeeper(fake_db, {Platform.THREADS: publisher}).credentials_for(
                workspace, Platform.THREADS, sample_utc_now
            )

    @pytest.mark.asyncio
    async def test_missing_credentials_raise(self, fake_db, sample_utc_now):
        workspace = fake_db.add_workspace(make_workspace())
        with pytest.raises(ConfigurationError):
            await CredentialKeeper(fake_db, {}).credentials_for(workspace, Platform.TWITTER, sample_utc_now)


# =============================================================================
# METRICS REFRESH
# =============================================================================


@pytest.fixture
def no_sleep():
    with patch("trendpress.scheduling.metrics.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


class TestMetricsRefresher:

    def _refresher(self, db, publisher):
        publishers = {Platform.THREADS: publisher}
        return MetricsRefresher(db, publishers, CredentialKeeper(db, publishers))

    @pytest.mark.asyncio
    async def test_updates_recently_published_articles(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(make_workspace())
        publisher = InsightsPublisher()
        recent = _published(fake_db, sample_utc_now, "th-1", hours_ago=5)
        older = _published(fake_db, sample_utc_now, "th-2", hours_ago=6 * 24)
        expired = _published(fake_db, sample_utc_now, "th-3", hours_ago=8 * 24)

        result = await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert result == {"workspace_id": "ws-1", "checked": 2, "updated": 2, "failed": 0}
        assert [post_id for post_id, _ in publisher.fetched] == ["th-2", "th-1"]
        assert fake_db.articles[recent.id].metrics.views == 100
        assert fake_db.articles[older.id].metrics.likes == 10
        assert fake_db.articles[expired.id].metrics is None
        # Spaced out between calls, not before the first
        no_sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_one_failing_article_does_not_stop_the_rest(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(make_workspace())
        publisher = InsightsPublisher(failing_posts={"th-1"})
        failing = _published(fake_db, sample_utc_now, "th-1", hours_ago=3)
        fine = _published(fake_db, sample_utc_now, "th-2", hours_ago=1)

        result = await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert result["failed"] == 1
        assert result["updated"] == 1
        assert fake_db.articles[failing.id].metrics is None
        assert fake_db.articles[fine.id].metrics is not None

    @pytest.mark.asyncio
    async def test_auth_failure_stops_the_job(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(make_workspace())
        publisher = InsightsPublisher(auth_error=True)
        _published(fake_db, sample_utc_now, "th-1", hours_ago=3)
        _published(fake_db, sample_utc_now, "th-2", hours_ago=1)

        with pytest.raises(PlatformAuthError):
            await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert len(publisher.fetched) == 1

    @pytest.mark.asyncio
    async def test_uses_refreshed_token(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(
            make_workspace(credentials={Platform.THREADS: _credentials(sample_utc_now, 1)})
        )
        publisher = InsightsPublisher()
        _published(fake_db, sample_utc_now, "th-1", hours_ago=2)

        await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert publisher.fetched == [("th-1", "new-token")]

    @pytest.mark.asyncio
    async def test_workspace_not_on_threads_is_skipped(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(make_workspace(platforms=[Platform.TWITTER]))
        publisher = InsightsPublisher()
        _published(fake_db, sample_utc_now, "th-1", hours_ago=2)

        result = await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert result["checked"] == 0
        assert publisher.fetched == []

    @pytest.mark.asyncio
    async def test_missing_credentials_skip_platform(self, fake_db, sample_utc_now, no_sleep):
        fake_db.add_workspace(make_workspace(credentials={}))
        publisher = InsightsPublisher()
        _published(fake_db, sample_utc_now, "th-1", hours_ago=2)

        result = await self._refresher(fake_db, publisher).handle(_metrics_job(), now=sample_utc_now)

        assert result["checked"] == 0

    @pytest.mark.asyncio
    async def test_unknown_workspace_raises(self, fake_db, sample_utc_now):
        with pytest.raises(ValidationError):
            await self._refresher(fake_db, InsightsPublisher()).handle(_metrics_job("ghost"), now=sample_utc_now)
