"""
Core data models for the trendpress pipeline.

Defines the records that flow between pipeline stages and the store:

- ``Post``: a scraped social-media item accepted by admission.
- ``Topic``: a cluster of related posts with a hot score.
- ``SynthesizedArticle``: the article produced for a hot topic, with
  per-platform publish state.
- ``Workspace``: tenant configuration read by every stage.
- ``Job`` plus the typed job payloads (one dataclass per job type).
- ``PipelineRun``: durable record of one pipeline step execution.

Every record converts to and from a store row with ``to_row()`` /
``from_row()``. Timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from trendpress.exceptions import ConfigurationError, ValidationError
from trendpress.utils import generate_id, isoformat_or_none, parse_timestamp, utc_now


# =============================================================================
# ENUMS
# =============================================================================


class Platform(Enum):
    """Social platforms an article can be published to."""

    THREADS = "threads"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"

    @property
    def char_limit(self) -> int:
        """Maximum post length accepted by the platform."""
        return {
            Platform.THREADS: 500,
            Platform.INSTAGRAM: 2200,
            Platform.TWITTER: 280,
        }[self]


class ReviewState(Enum):
    """Review lifecycle of a synthesized article.

    Transitions:
        DRAFT -> PENDING_REVIEW -> APPROVED
                                -> REJECTED
        DRAFT -> REJECTED (content policy, empty output)
    """

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Rejected articles never move again."""
        return self is ReviewState.REJECTED


class TopicStatus(Enum):
    """Whether a topic has handed an article to synthesis yet."""

    ACTIVE = "active"
    SYNTHESIZED = "synthesized"


class JobType(Enum):
    """Kinds of asynchronous work, each with its own payload shape."""

    SCRAPE = "scrape"
    TREND_SCAN = "trend-scan"
    SYNTHESIZE = "synthesize"
    PUBLISH = "publish"
    PUBLISH_SCAN = "publish-scan"
    METRICS_REFRESH = "metrics-refresh"

    @property
    def default_queue(self) -> str:
        """Named queue a job of this type is routed to."""
        if self is JobType.SCRAPE:
            return "ingest"
        if self is JobType.PUBLISH:
            return "publish"
        return "pipeline"


class JobStatus(Enum):
    """Job lifecycle.

    Transitions:
        PENDING -> ACTIVE -> DONE
                          -> FAILED -> (retry) -> ACTIVE
        FAILED is terminal once ``run_at`` is cleared.
    """

    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"


class PipelineStep(Enum):
    """Pipeline steps tracked as ``PipelineRun`` records."""

    SCRAPE = "scrape"
    TREND = "trend"
    SYNTHESIS = "synthesis"
    PUBLISH = "publish"
    METRICS = "metrics"


class RunStatus(Enum):
    """Status of a tracked pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# POSTS
# =============================================================================


@dataclass
class MediaItem:
    """A media attachment on a scraped post."""

    url: str
    type: str = "image"  # "image" | "video"

    @property
    def is_video(self) -> bool:
        return self.type == "video" or self.url.lower().split("?")[0].endswith(".mp4")

    @classmethod
    def from_dict(cls, data: Any) -> "MediaItem":
        if isinstance(data, str):
            return cls(url=data)
        return cls(url=data["url"], type=data.get("type", "image"))


@dataclass
class Post:
    """A scraped post that passed admission.

    Unique per ``(workspace_id, thread_id)``; re-ingestion refreshes the
    engagement counters of the stored row instead of inserting.

    Attributes:
        workspace_id: Owning workspace.
        thread_id: Source-platform identifier of the post.
        source_account: Handle of the author.
        content: Post text.
        likes: Like count at observation time.
        replies: Reply count at observation time.
        reposts: Repost count at observation time.
        views: View count at observation time.
        media: Attached media, in source order.
        source_url: Link to the post on its platform.
        posted_at: Publication time reported by the source, when known.
        observed_at: When the scraper saw the post.
        topic_id: Topic membership link, set by the trend engine.
        hot_score: Per-post engagement score.
        id: Store primary key.
    """

    workspace_id: str
    thread_id: str
    source_account: str
    content: str
    likes: int = 0
    replies: int = 0
    reposts: int = 0
    views: int = 0
    media: List[MediaItem] = field(default_factory=list)
    source_url: Optional[str] = None
    posted_at: Optional[datetime] = None
    observed_at: datetime = field(default_factory=utc_now)
    topic_id: Optional[str] = None
    hot_score: float = 0.0
    id: str = field(default_factory=generate_id)

    @property
    def reference_time(self) -> datetime:
        """Timestamp used for age and recency: ``posted_at`` when known."""
        return self.posted_at or self.observed_at

    def age_hours(self, now: datetime) -> float:
        return max(0.0, (now - self.reference_time).total_seconds() / 3600)

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "thread_id": self.thread_id,
            "source_account": self.source_account,
            "content": self.content,
            "likes": self.likes,
            "replies": self.replies,
            "reposts": self.reposts,
            "views": self.views,
            "media": [asdict(m) for m in self.media],
            "source_url": self.source_url,
            "posted_at": isoformat_or_none(self.posted_at),
            "observed_at": isoformat_or_none(self.observed_at),
            "topic_id": self.topic_id,
            "hot_score": self.hot_score,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            thread_id=row["thread_id"],
            source_account=row.get("source_account") or "",
            content=row.get("content") or "",
            likes=row.get("likes") or 0,
            replies=row.get("replies") or 0,
            reposts=row.get("reposts") or 0,
            views=row.get("views") or 0,
            media=[MediaItem.from_dict(m) for m in row.get("media") or []],
            source_url=row.get("source_url"),
            posted_at=parse_timestamp(row.get("posted_at")),
            observed_at=parse_timestamp(row.get("observed_at")) or utc_now(),
            topic_id=row.get("topic_id"),
            hot_score=float(row.get("hot_score") or 0.0),
        )


# =============================================================================
# TOPICS
# =============================================================================


@dataclass
class Topic:
    """A cluster of related posts within one workspace.

    Membership only grows. ``keywords`` is the term bag the clusterer
    compares new posts against; ``synthesized_post_count`` remembers how
    many members the topic had when its last article was reserved.
    """

    workspace_id: str
    label: str
    post_ids: List[str] = field(default_factory=list)
    keywords: Dict[str, int] = field(default_factory=dict)
    author_count: int = 0
    post_count: int = 0
    hot_score: float = 0.0
    status: TopicStatus = TopicStatus.ACTIVE
    synthesized_post_count: int = 0
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "label": self.label,
            "post_ids": list(self.post_ids),
            "keywords": dict(self.keywords),
            "author_count": self.author_count,
            "post_count": self.post_count,
            "hot_score": self.hot_score,
            "status": self.status.value,
            "synthesized_post_count": self.synthesized_post_count,
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Topic":
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            label=row.get("label") or "",
            post_ids=list(row.get("post_ids") or []),
            keywords=dict(row.get("keywords") or {}),
            author_count=row.get("author_count") or 0,
            post_count=row.get("post_count") or 0,
            hot_score=float(row.get("hot_score") or 0.0),
            status=TopicStatus(row.get("status") or TopicStatus.ACTIVE.value),
            synthesized_post_count=row.get("synthesized_post_count") or 0,
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# ARTICLES
# =============================================================================


@dataclass
class PlatformPublication:
    """Outcome of publishing an article on one platform."""

    published_at: datetime
    published_url: Optional[str] = None
    platform_post_id: Optional[str] = None


@dataclass
class PostMetrics:
    """Engagement counters of a published post, as last fetched."""

    views: int = 0
    likes: int = 0
    replies: int = 0
    reposts: int = 0
    quotes: int = 0
    fetched_at: datetime = field(default_factory=utc_now)

    @staticmethod
    def columns(metrics: Optional["PostMetrics"]) -> Dict[str, Any]:
        """Flat store columns; all ``None`` when nothing was fetched yet."""
        return {
            "views": metrics.views if metrics else None,
            "likes": metrics.likes if metrics else None,
            "replies": metrics.replies if metrics else None,
            "reposts": metrics.reposts if metrics else None,
            "quotes": metrics.quotes if metrics else None,
            "metrics_updated_at": isoformat_or_none(metrics.fetched_at) if metrics else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["PostMetrics"]:
        fetched_at = parse_timestamp(row.get("metrics_updated_at"))
        if fetched_at is None:
            return None
        return cls(
            views=row.get("views") or 0,
            likes=row.get("likes") or 0,
            replies=row.get("replies") or 0,
            reposts=row.get("reposts") or 0,
            quotes=row.get("quotes") or 0,
            fetched_at=fetched_at,
        )


@dataclass
class SynthesizedArticle:
    """The article produced from a hot topic.

    At most one non-rejected article exists per topic. Publish state is
    kept per platform and each platform's fields are written exactly once.
    """

    workspace_id: str
    topic_id: str
    review_state: ReviewState = ReviewState.DRAFT
    headline: str = ""
    body: str = ""
    original_body: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    format_used: Optional[str] = None
    review_reason: Optional[str] = None
    source_post_ids: List[str] = field(default_factory=list)
    source_accounts: List[str] = field(default_factory=list)
    scheduled_publish_at: Optional[datetime] = None
    publications: Dict[Platform, PlatformPublication] = field(default_factory=dict)
    metrics: Optional[PostMetrics] = None
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def is_published(self, platform: Platform) -> bool:
        return platform in self.publications

    @property
    def first_published_at(self) -> Optional[datetime]:
        if not self.publications:
            return None
        return min(p.published_at for p in self.publications.values())

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "topic_id": self.topic_id,
            "review_state": self.review_state.value,
            "headline": self.headline,
            "body": self.body,
            "original_body": self.original_body,
            "media_url": self.media_url,
            "media_type": self.media_type,
            "format_used": self.format_used,
            "review_reason": self.review_reason,
            "source_post_ids": list(self.source_post_ids),
            "source_accounts": list(self.source_accounts),
            "scheduled_publish_at": isoformat_or_none(self.scheduled_publish_at),
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }
        for platform in Platform:
            pub = self.publications.get(platform)
            row.update(publication_columns(
                platform,
                pub.published_at if pub else None,
                pub.published_url if pub else None,
                pub.platform_post_id if pub else None,
            ))
        row.update(PostMetrics.columns(self.metrics))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SynthesizedArticle":
        publications: Dict[Platform, PlatformPublication] = {}
        for platform in Platform:
            published_at = parse_timestamp(row.get(f"published_at_{platform.value}"))
            if published_at is not None:
                publications[platform] = PlatformPublication(
                    published_at=published_at,
                    published_url=row.get(f"published_url_{platform.value}"),
                    platform_post_id=row.get(f"platform_post_id_{platform.value}"),
                )
        return cls(
            id=row["id"],
            workspace_id=row["workspace_id"],
            topic_id=row["topic_id"],
            review_state=ReviewState(row.get("review_state") or ReviewState.DRAFT.value),
            headline=row.get("headline") or "",
            body=row.get("body") or "",
            original_body=row.get("original_body") or "",
            media_url=row.get("media_url"),
            media_type=row.get("media_type"),
            format_used=row.get("format_used"),
            review_reason=row.get("review_reason"),
            source_post_ids=list(row.get("source_post_ids") or []),
            source_accounts=list(row.get("source_accounts") or []),
            scheduled_publish_at=parse_timestamp(row.get("scheduled_publish_at")),
            publications=publications,
            metrics=PostMetrics.from_row(row),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


def publication_columns(
    platform: Platform,
    published_at: Optional[datetime],
    published_url: Optional[str],
    platform_post_id: Optional[str],
) -> Dict[str, Any]:
    """Flat store columns holding one platform's publish state."""
    return {
        f"published_at_{platform.value}": isoformat_or_none(published_at),
        f"published_url_{platform.value}": published_url,
        f"platform_post_id_{platform.value}": platform_post_id,
    }


# =============================================================================
# WORKSPACES
# =============================================================================

# "9:00" and "09:00" both read as nine o'clock
TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

DEFAULT_AUTO_APPROVE_PROMPT = (
    "Approve if the news is relevant to tech/AI and logically coherent. "
    "Reject spam, irrelevant chatter, or promotional filler."
)


@dataclass
class PlatformCredentials:
    """Credentials a workspace uses to publish on one platform.

    ``expires_at`` is set for long-lived tokens that must be refreshed
    before they lapse (Threads); ``None`` means the token does not expire.
    """

    account_id: str
    access_token: str
    handle: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"account_id": self.account_id, "access_token": self.access_token}
        if self.handle:
            data["handle"] = self.handle
        if self.expires_at is not None:
            data["expires_at"] = isoformat_or_none(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformCredentials":
        return cls(
            account_id=str(data["account_id"]),
            access_token=data["access_token"],
            handle=data.get("handle"),
            expires_at=parse_timestamp(data.get("expires_at")),
        )


@dataclass
class Workspace:
    """Tenant configuration.

    Every threshold is workspace-scoped. Read as immutable configuration
    for the duration of a job.
    """

    id: str
    name: str
    is_active: bool = True
    target_accounts: List[str] = field(default_factory=list)
    min_likes: int = 300
    hot_score_threshold: float = 50.0
    max_post_age_hours: int = 24
    daily_post_limit: int = 3
    publish_times: List[str] = field(default_factory=lambda: ["12:00", "18:00", "22:00"])
    review_window_hours: float = 1.0
    timezone: str = "Asia/Hong_Kong"
    translation_prompt: str = ""
    synthesis_language: str = ""
    synthesis_prompt: str = ""
    topic_filter: str = ""
    auto_approve_drafts: bool = False
    auto_approve_prompt: str = DEFAULT_AUTO_APPROVE_PROMPT
    platforms: List[Platform] = field(default_factory=list)
    credentials: Dict[Platform, PlatformCredentials] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.daily_post_limit < 1:
            raise ConfigurationError(
                f"Workspace {self.id}: daily_post_limit must be >= 1"
            )
        if not self.publish_times:
            raise ConfigurationError(f"Workspace {self.id}: publish_times is empty")
        for value in self.publish_times:
            if not isinstance(value, str) or not TIME_OF_DAY.match(value):
                raise ConfigurationError(
                    f"Workspace {self.id}: invalid publish time '{value}' (want HH:MM)"
                )

    def credentials_for(self, platform: Platform) -> PlatformCredentials:
        """
        Get the credentials for *platform*.

        Raises:
            ConfigurationError: If the workspace has none for that platform.
        """
        creds = self.credentials.get(platform)
        if creds is None or not creds.access_token:
            raise ConfigurationError(
                f"Workspace {self.id} has no {platform.value} credentials"
            )
        return creds

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Workspace":
        credentials = {
            Platform(key): PlatformCredentials.from_dict(value)
            for key, value in (row.get("credentials") or {}).items()
        }
        kwargs: Dict[str, Any] = {
            f.name: row[f.name]
            for f in fields(cls)
            if f.name in row
            and row[f.name] is not None
            and f.name not in ("platforms", "credentials")
        }
        kwargs["platforms"] = [Platform(p) for p in row.get("platforms") or []]
        kwargs["credentials"] = credentials
        return cls(**kwargs)

    def credentials_to_row(self) -> Dict[str, Any]:
        """The ``credentials`` column: platform value -> credential dict."""
        return {platform.value: creds.to_dict() for platform, creds in self.credentials.items()}


# =============================================================================
# JOB PAYLOADS (one dataclass per job type)
# =============================================================================


@dataclass(frozen=True)
class ScrapePayload:
    workspace_id: str
    account: str


@dataclass(frozen=True)
class TrendScanPayload:
    workspace_id: str


@dataclass(frozen=True)
class SynthesizePayload:
    workspace_id: str
    topic_id: str
    article_id: str


@dataclass(frozen=True)
class PublishPayload:
    workspace_id: str
    article_id: str
    platform: Platform
    scheduled_publish_at: datetime


@dataclass(frozen=True)
class PublishScanPayload:
    workspace_id: str


@dataclass(frozen=True)
class MetricsRefreshPayload:
    workspace_id: str


JobPayload = Union[
    ScrapePayload,
    TrendScanPayload,
    SynthesizePayload,
    PublishPayload,
    PublishScanPayload,
    MetricsRefreshPayload,
]

PAYLOAD_TYPES: Dict[JobType, Type[Any]] = {
    JobType.SCRAPE: ScrapePayload,
    JobType.TREND_SCAN: TrendScanPayload,
    JobType.SYNTHESIZE: SynthesizePayload,
    JobType.PUBLISH: PublishPayload,
    JobType.PUBLISH_SCAN: PublishScanPayload,
    JobType.METRICS_REFRESH: MetricsRefreshPayload,
}


def _parse_field(name: str, value: Any) -> Any:
    if name == "platform":
        try:
            return value if isinstance(value, Platform) else Platform(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown platform '{value}'") from exc
    if name == "scheduled_publish_at":
        try:
            parsed = parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid timestamp '{value}'") from exc
        if parsed is None:
            raise ValidationError("scheduled_publish_at is required")
        return parsed
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Payload field '{name}' must be a non-empty string")
    return value


def parse_payload(job_type: JobType, data: Any) -> JobPayload:
    """
    Build the typed payload for *job_type* from a raw dict.

    Args:
        job_type: Type tag of the job.
        data: Raw payload as stored on the job row.

    Returns:
        The payload dataclass for that job type.

    Raises:
        ValidationError: If *data* is not a dict, misses a field, or a
            field has the wrong shape.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"{job_type.value} payload must be a dict")
    payload_cls = PAYLOAD_TYPES[job_type]
    kwargs: Dict[str, Any] = {}
    for f in fields(payload_cls):
        if f.name not in data:
            raise ValidationError(
                f"{job_type.value} payload missing field '{f.name}'"
            )
        kwargs[f.name] = _parse_field(f.name, data[f.name])
    return payload_cls(**kwargs)


def payload_to_dict(payload: JobPayload) -> Dict[str, Any]:
    """Serialise a typed payload into the JSON stored on the job row."""
    data: Dict[str, Any] = {}
    for f in fields(payload):
        value = getattr(payload, f.name)
        if isinstance(value, Platform):
            value = value.value
        elif isinstance(value, datetime):
            value = isoformat_or_none(value)
        data[f.name] = value
    return data


def job_type_of(payload: JobPayload) -> JobType:
    """Type tag matching a payload instance."""
    for job_type, payload_cls in PAYLOAD_TYPES.items():
        if isinstance(payload, payload_cls):
            return job_type
    raise ValidationError(f"Unsupported payload type {type(payload).__name__}")


def dedupe_key_for(payload: JobPayload) -> str:
    """Canonical dedupe key of a payload.

    Synthesis is keyed by the reserved article and publishing by (article,
    platform) so a redelivered trigger never produces a second live job for
    the same work.
    """
    if isinstance(payload, ScrapePayload):
        return f"scrape:{payload.workspace_id}:{payload.account.lstrip('@').lower()}"
    if isinstance(payload, SynthesizePayload):
        return f"synthesize:{payload.article_id}"
    if isinstance(payload, PublishPayload):
        return f"publish:{payload.article_id}:{payload.platform.value}"
    return f"{job_type_of(payload).value}:{payload.workspace_id}"


# =============================================================================
# JOBS
# =============================================================================


@dataclass
class Job:
    """A unit of asynchronous work.

    A ``FAILED`` job with ``run_at`` set is waiting for its next attempt;
    with ``run_at`` cleared it is terminal until re-enqueued.
    """

    queue: str
    job_type: JobType
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 1
    run_at: Optional[datetime] = field(default_factory=utc_now)
    dedupe_key: Optional[str] = None
    db_job_id: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    claimed_at: Optional[datetime] = None
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        if self.status is JobStatus.DONE:
            return True
        return self.status is JobStatus.FAILED and self.run_at is None

    def typed_payload(self) -> JobPayload:
        return parse_payload(self.job_type, self.payload)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "job_type": self.job_type.value,
            "payload": dict(self.payload),
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": isoformat_or_none(self.run_at),
            "dedupe_key": self.dedupe_key,
            "db_job_id": self.db_job_id,
            "last_error": self.last_error,
            "result": self.result,
            "claimed_at": isoformat_or_none(self.claimed_at),
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=row["id"],
            queue=row["queue"],
            job_type=JobType(row["job_type"]),
            payload=dict(row.get("payload") or {}),
            status=JobStatus(row["status"]),
            attempts=row.get("attempts") or 0,
            max_attempts=row.get("max_attempts") or 1,
            run_at=parse_timestamp(row.get("run_at")),
            dedupe_key=row.get("dedupe_key"),
            db_job_id=row.get("db_job_id"),
            last_error=row.get("last_error"),
            result=row.get("result"),
            claimed_at=parse_timestamp(row.get("claimed_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class JobHandle:
    """Reference returned by ``JobQueue.enqueue``.

    ``created`` is ``False`` when a live job with the same dedupe key
    already existed and was returned instead.
    """

    id: str
    queue: str
    job_type: JobType
    dedupe_key: Optional[str] = None
    created: bool = True


# =============================================================================
# PIPELINE RUNS
# =============================================================================


@dataclass
class PipelineRun:
    """Durable record of one pipeline step execution."""

    workspace_id: Optional[str]
    step: PipelineStep
    status: RunStatus = RunStatus.RUNNING
    job_id: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    id: str = field(default_factory=generate_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "step": self.step.value,
            "status": self.status.value,
            "job_id": self.job_id,
            "error": self.error,
            "result": self.result,
            "duration_ms": self.duration_ms,
            "started_at": isoformat_or_none(self.started_at),
            "finished_at": isoformat_or_none(self.finished_at),
        }


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Enums
    "Platform",
    "ReviewState",
    "TopicStatus",
    "JobType",
    "JobStatus",
    "PipelineStep",
    "RunStatus",
    # Records
    "MediaItem",
    "Post",
    "Topic",
    "PlatformPublication",
    "PostMetrics",
    "SynthesizedArticle",
    "PlatformCredentials",
    "Workspace",
    "Job",
    "JobHandle",
    "PipelineRun",
    # Payloads
    "ScrapePayload",
    "TrendScanPayload",
    "SynthesizePayload",
    "PublishPayload",
    "PublishScanPayload",
    "MetricsRefreshPayload",
    "JobPayload",
    "PAYLOAD_TYPES",
    "parse_payload",
    "payload_to_dict",
    "job_type_of",
    "dedupe_key_for",
    "publication_columns",
    "DEFAULT_AUTO_APPROVE_PROMPT",
    "TIME_OF_DAY",
]
