"""
Article synthesis: turns a hot topic's posts into a reviewable article.

``SynthesisOrchestrator.handle`` consumes ``synthesize`` jobs for articles
the trend engine has reserved in ``DRAFT``:

1. classify the best post format (falls back to ``LISTICLE``)
2. synthesize ``{headline, content}`` from the member posts
3. translate to the workspace language, using its translation prompt as
   style guide
4. sanitize; nothing left rejects the article
5. pick media (first video, else first image, newest post first) and
   re-host it in our bucket
6. persist ``PENDING_REVIEW``
7. optionally auto-approve through a language-model judgment

``approve`` and ``reject`` are the review transitions, used both by
auto-approval and by external reviewers. Approval fixes the publish slot
and enqueues one ``publish`` job per configured platform.

A model refusal rejects the article and raises ``ContentPolicyError`` so
the runtime records the job as done. Any other failure leaves the article
in ``DRAFT`` for the job's next attempt.
"""

from __future__ import annotations

import json
import logging
import posixpath
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from trendpress.exceptions import (
    ContentPolicyError,
    RetryExhaustedError,
    TransientCollaboratorError,
    ValidationError,
)
from trendpress.models import (
    Job,
    MediaItem,
    Post,
    PublishPayload,
    ReviewState,
    SynthesizedArticle,
    Workspace,
)
from trendpress.pipeline.formats import DEFAULT_FORMAT, POST_FORMATS, get_format
from trendpress.pipeline.sanitizer import sanitize_text, strip_platform_references
from trendpress.scheduling.publish_windows import PublishWindowPlanner
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 15000
EMPTY_AFTER_SANITIZATION = "empty after sanitization"

CLASSIFY_PROMPT = """You are a social media editor. Read the posts the user sends, all about the same story, and decide which format best fits the content.

## AVAILABLE FORMATS
{formats}

Return a JSON object: {{"format": "one of the format IDs above", "reason": "one sentence"}}"""

SYNTHESIS_PROMPT = """{persona}

## FORMAT RULES
Structure: {structure}
Style: {description}

Rules:
1. Open with one or two short, punchy sentences.
2. No academic phrasing such as "Source 1 reports" or "The author discusses".
3. Do not output the structural labels above; they guide your layout only.
4. Do not include @usernames, author handles or URLs. Refer to sources generically.
5. The headline must match the content: a headline promising 5 items needs 5 items.
6. "content" is the final post, ready to publish, as a single string.

Return a JSON object: {{"headline": "...", "content": "..."}}"""

DEFAULT_PERSONA = (
    "You are a viral social media editor. Synthesize these clustered social "
    "media posts into a high-impact, skimmable curated summary using the "
    "{format_id} format."
)

TRANSLATE_PROMPT = """Translate the text the user sends to {language}.{style}
Do not include any @usernames, author handles or URLs.
Keep list markers and emojis exactly as they are.
Output ONLY the translated text."""

JUDGE_PROMPT = """You are an AI content moderator. Judge whether the article the user sends should be approved for publication.

Instructions:
{instruction}

Return a JSON object: {{"approved": true/false, "reason": "short explanation"}}"""


def select_media(posts: List[Post]) -> Optional[MediaItem]:
    """First video across *posts*, else the first image.

    *posts* should be ordered newest first.
    """
    media = [item for post in posts for item in post.media if item.url]
    for item in media:
        if item.is_video:
            return item
    return media[0] if media else None


def _storage_key(article: SynthesizedArticle, url: str, is_video: bool) -> str:
    ext = posixpath.splitext(urlparse(url).path)[1].lower()
    if not ext or len(ext) > 5:
        ext = ".mp4" if is_video else ".jpg"
    return f"{article.workspace_id}/{article.id}{ext}"


class SynthesisOrchestrator:
    """Drives one article from ``DRAFT`` to review.

    Args:
        db: Store client (``SupabaseDB``).
        queue: ``JobQueue`` for publish jobs.
        llm: ``LLMClient``.
        media_storage: ``MediaStorage`` for re-hosting; ``None`` keeps
            source URLs.
        planner: Publish slot planner; built from *db* when omitted.
    """

    def __init__(
        self,
        db: Any,
        queue: Any,
        llm: Any,
        media_storage: Any = None,
        planner: Optional[PublishWindowPlanner] = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.llm = llm
        self.media_storage = media_storage
        self.planner = planner or PublishWindowPlanner(db)

    # =========================================================================
    # JOB HANDLER
    # =========================================================================

    async def handle(self, job: Job) -> Dict[str, Any]:
        """``synthesize`` job handler.

        Raises:
            ValidationError: Unknown workspace, topic or article.
            ContentPolicyError: The model refused; the article is already
                rejected.
        """
        payload = job.typed_payload()
        workspace = await self._workspace(payload.workspace_id)
        article = await self._article(payload.article_id)
        if article.review_state is not ReviewState.DRAFT:
            logger.info(
                "[SYNTHESIS] Article %s already %s, nothing to do",
                article.id,
                article.review_state.value,
            )
            return {"article_id": article.id, "review_state": article.review_state.value}

        topic = await self.db.get_topic(payload.topic_id)
        if topic is None:
            raise ValidationError(f"Unknown topic {payload.topic_id}")

        posts = await self.db.get_posts_by_ids(topic.post_ids or article.source_post_ids)
        posts.sort(key=lambda p: p.reference_time, reverse=True)
        if not posts:
            await self.reject(article.id, "no source posts")
            return {"article_id": article.id, "review_state": ReviewState.REJECTED.value}

        try:
            format_id = await self._classify(posts)
            raw_headline, raw_body = await self._synthesize(workspace, posts, format_id)
            headline, body = await self._translate(workspace, raw_headline, raw_body)
        except ContentPolicyError as exc:
            await self.reject(article.id, exc.reason)
            logger.warning("[SYNTHESIS] Article %s rejected by content policy", article.id)
            raise

        clean_headline = sanitize_text(headline, is_headline=True)
        clean_body = sanitize_text(body)
        if not clean_headline or not clean_body:
            await self.reject(article.id, EMPTY_AFTER_SANITIZATION)
            return {"article_id": article.id, "review_state": ReviewState.REJECTED.value}

        article.headline = clean_headline
        article.body = clean_body
        article.original_body = raw_body
        article.format_used = format_id
        article.source_post_ids = [p.id for p in posts]
        article.source_accounts = list(dict.fromkeys(p.source_account for p in posts if p.source_account))
        await self._attach_media(article, posts)
        article.review_state = ReviewState.PENDING_REVIEW
        await self.db.update_article(article)
        logger.info(
            "[SYNTHESIS] Article %s ready for review (%s, %d posts)",
            article.id,
            format_id,
            len(posts),
        )

        if workspace.auto_approve_drafts:
            await self._auto_review(workspace, article)
        return {"article_id": article.id, "review_state": article.review_state.value}

    # =========================================================================
    # REVIEW TRANSITIONS
    # =========================================================================

    async def approve(
        self,
        article_id: str,
        now: Optional[datetime] = None,
    ) -> SynthesizedArticle:
        """Approve an article, fix its publish slot and enqueue publish jobs.

        Re-approving an approved article keeps its slot and only enqueues
        jobs that are missing.

        Raises:
            ValidationError: Unknown or rejected article.
        """
        article = await self._article(article_id)
        if article.review_state is ReviewState.REJECTED:
            raise ValidationError(f"Article {article_id} is rejected and cannot be approved")
        workspace = await self._workspace(article.workspace_id)

        if article.review_state is not ReviewState.APPROVED or article.scheduled_publish_at is None:
            article.scheduled_publish_at = await self.planner.find_slot(workspace, now or utc_now())
            article.review_state = ReviewState.APPROVED
            article.review_reason = None
            await self.db.update_article(article)

        for platform in workspace.platforms:
            if article.is_published(platform):
                continue
            await self.queue.submit(
                PublishPayload(
                    workspace_id=workspace.id,
                    article_id=article.id,
                    platform=platform,
                    scheduled_publish_at=article.scheduled_publish_at,
                ),
                delay_until=article.scheduled_publish_at,
            )

        logger.info(
            "[SYNTHESIS] Article %s approved for %s on %s",
            article.id,
            article.scheduled_publish_at.isoformat(),
            ", ".join(p.value for p in workspace.platforms) or "no platforms",
        )
        return article

    async def reject(self, article_id: str, reason: str) -> SynthesizedArticle:
        """Move an article to ``REJECTED``. Terminal."""
        article = await self._article(article_id)
        article.review_state = ReviewState.REJECTED
        article.review_reason = reason
        await self.db.update_article(article)
        logger.info("[SYNTHESIS] Article %s rejected: %s", article.id, reason)
        return article

    # =========================================================================
    # LANGUAGE-MODEL STEPS
    # =========================================================================

    async def _classify(self, posts: List[Post]) -> str:
        formats = "\n\n".join(
            f"{f.id}: {f.description}\nUse when: {f.trigger}" for f in POST_FORMATS.values()
        )
        summaries = "\n".join(f"- {p.content[:200]}" for p in posts)
        try:
            data = await self.llm.complete_json(
                CLASSIFY_PROMPT.format(formats=formats), summaries, max_tokens=256
            )
        except (TransientCollaboratorError, RetryExhaustedError, json.JSONDecodeError, ValueError) as exc:
            logger.warning("[SYNTHESIS] Format classification failed, using %s: %s", DEFAULT_FORMAT, exc)
            return DEFAULT_FORMAT
        return get_format(str(data.get("format") or "")).id

    async def _synthesize(
        self, workspace: Workspace, posts: List[Post], format_id: str
    ) -> Tuple[str, str]:
        post_format = get_format(format_id)
        persona = workspace.synthesis_prompt or DEFAULT_PERSONA.format(format_id=post_format.id)
        prompt = SYNTHESIS_PROMPT.format(
            persona=persona,
            structure=post_format.structure,
            description=post_format.description,
        )
        context = "\n\n---\n\n".join(
            f"[Account: {p.source_account}]\n{strip_platform_references(p.content)}" for p in posts
        )
        data = await self.llm.complete_json(prompt, f"Posts:\n{context[:MAX_CONTEXT_CHARS]}")

        content = data.get("content")
        if isinstance(content, list):
            content = "\n".join(str(line) for line in content)
        headline = data.get("headline")
        if not isinstance(headline, str) or not isinstance(content, str):
            raise ValueError("synthesis reply is missing headline or content")
        return headline, content

    async def _translate(self, workspace: Workspace, headline: str, body: str) -> Tuple[str, str]:
        if not workspace.synthesis_language:
            return headline, body
        style = f' Style guide: "{workspace.translation_prompt}"' if workspace.translation_prompt else ""
        prompt = TRANSLATE_PROMPT.format(language=workspace.synthesis_language, style=style)
        translated_body = await self.llm.complete(prompt, body, temperature=0.1)
        translated_headline = await self.llm.complete(
            prompt + "\nThis is a headline: keep it short and clickable.", headline, temperature=0.1
        )
        return translated_headline, translated_body

    async def _auto_review(self, workspace: Workspace, article: SynthesizedArticle) -> None:
        prompt = JUDGE_PROMPT.format(instruction=workspace.auto_approve_prompt)
        try:
            verdict = await self.llm.complete_json(
                prompt, f"Title: {article.headline}\n\n{article.body}", max_tokens=256
            )
        except ContentPolicyError as exc:
            await self.reject(article.id, exc.reason)
            return
        except (TransientCollaboratorError, RetryExhaustedError, json.JSONDecodeError, ValueError) as exc:
            logger.warning("[SYNTHESIS] Auto-review of %s failed, leaving for manual review: %s", article.id, exc)
            return

        approved = verdict.get("approved")
        if not isinstance(approved, bool):
            logger.warning("[SYNTHESIS] Auto-review of %s returned no verdict, leaving for manual review", article.id)
            return
        if approved:
            approved_article = await self.approve(article.id)
            article.review_state = approved_article.review_state
            article.scheduled_publish_at = approved_article.scheduled_publish_at
        else:
            rejected = await self.reject(article.id, str(verdict.get("reason") or "auto-review rejected"))
            article.review_state = rejected.review_state

    # =========================================================================
    # MEDIA
    # =========================================================================

    async def _attach_media(self, article: SynthesizedArticle, posts: List[Post]) -> None:
        item = select_media(posts)
        if item is None:
            return
        article.media_url = item.url
        article.media_type = "video" if item.is_video else "image"
        if self.media_storage is None:
            return
        try:
            article.media_url = await self.media_storage.rehost(
                item.url, _storage_key(article, item.url, item.is_video)
            )
        except Exception as exc:
            logger.warning("[SYNTHESIS] Media re-host failed for %s, keeping source URL: %s", article.id, exc)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def _workspace(self, workspace_id: str) -> Workspace:
        workspace = await self.db.get_workspace(workspace_id)
        if workspace is None:
            raise ValidationError(f"Unknown workspace {workspace_id}")
        return workspace

    async def _article(self, article_id: str) -> SynthesizedArticle:
        article = await self.db.get_article(article_id)
        if article is None:
            raise ValidationError(f"Unknown article {article_id}")
        return article


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "EMPTY_AFTER_SANITIZATION",
    "SynthesisOrchestrator",
    "select_media",
]
