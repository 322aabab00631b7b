"""
Async language-model client for translation, synthesis and review calls.

Uses the ``anthropic`` Python SDK (``AsyncAnthropic``) against the Messages
API. The pipeline only needs a text-in/text-out contract:
``complete(prompt, input) -> text``, where *prompt* carries the instructions
(sent as the system prompt) and *input* is the material to work on.

Failure kinds surfaced to callers:
    - ``TransientCollaboratorError``: rate limits, timeouts, connection and
      5xx errors. Retried here with exponential backoff; exhaustion raises
      ``RetryExhaustedError``.
    - ``ContentPolicyError``: the model refused. Never retried.
Any other ``anthropic`` error propagates unchanged.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

import anthropic
from anthropic import AsyncAnthropic

from trendpress.exceptions import ContentPolicyError, TransientCollaboratorError
from trendpress.utils import with_retry

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a model reply as a JSON object.

    Markdown code fences (` ```json ... ``` `) are stripped before parsing.

    Raises:
        json.JSONDecodeError: If the reply is not valid JSON.
        ValueError: If the JSON is not an object.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1 :]
        else:
            cleaned = cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]

    data = json.loads(cleaned.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LLMClient:
    """Async language-model client.

    Args:
        api_key: Anthropic API key.  Falls back to the
            ``ANTHROPIC_API_KEY`` environment variable.
        model: Model identifier.
        timeout_seconds: Per-request timeout.
        max_attempts: Attempts for transient failures.
        retry_base_delay: First backoff delay in seconds.
        client: Pre-built ``AsyncAnthropic`` (tests inject a mock).

    Raises:
        KeyError: If no API key or client is provided and the environment
            variable is missing.

    Usage::

        llm = LLMClient()
        text = await llm.complete("Translate to English.", "你好")
        data = await llm.complete_json("Return {approved: bool}", article)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.client = client or AsyncAnthropic(
            api_key=api_key or os.environ["ANTHROPIC_API_KEY"],
            timeout=timeout_seconds,
            max_retries=0,
        )
        self.model = model
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._create_with_retry = with_retry(
            max_attempts=max_attempts,
            base_delay=retry_base_delay,
            retryable_exceptions=(TransientCollaboratorError,),
            operation_name="llm.complete",
        )(self._create)

    # ------------------------------------------------------------------
    # Text completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: str,
        input: str,
        max_tokens: int = 4096,
        temperature: float = 0.3,
    ) -> str:
        """Run *prompt* over *input* and return the reply text.

        Args:
            prompt: Instructions, sent as the system prompt.
            input: Material to process, sent as the user message.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature (0.0 -- 1.0).

        Raises:
            ContentPolicyError: If the model refuses.
            RetryExhaustedError: If transient failures outlast the attempts.
        """
        return await self._create_with_retry(prompt, input, max_tokens, temperature)

    async def complete_json(
        self,
        prompt: str,
        input: str,
        max_tokens: int = 4096,
    ) -> Dict[str, Any]:
        """Like :meth:`complete` but parse the reply as a JSON object.

        Raises:
            json.JSONDecodeError: If the model returns invalid JSON.
            ValueError: If the JSON is not an object.
        """
        json_prompt = (
            f"{prompt}\n\n"
            "IMPORTANT: Return ONLY valid JSON, no markdown, no explanation."
        )
        text = await self.complete(json_prompt, input, max_tokens=max_tokens, temperature=0.1)
        return parse_json_response(text)

    async def _create(
        self,
        prompt: str,
        input: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                system=prompt,
                messages=[{"role": "user", "content": input}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except _TRANSIENT_ERRORS as exc:
            raise TransientCollaboratorError("llm", str(exc)) from exc

        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens

        logger.debug(
            "LLM complete: in=%d out=%d tokens",
            response.usage.input_tokens,
            response.usage.output_tokens,
        )

        if response.stop_reason == "refusal":
            raise ContentPolicyError("language model refused the content")

        return "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    @property
    def usage_stats(self) -> Dict[str, int]:
        """Cumulative token usage since this client was instantiated."""
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }


# ---------------------------------------------------------------------------
# MODULE-LEVEL FACTORY
# ---------------------------------------------------------------------------


def get_llm(settings: Any = None) -> LLMClient:
    """Create an :class:`LLMClient` configured from :class:`~trendpress.config.Settings`."""
    if settings is None:
        from trendpress.config import get_settings

        settings = get_settings()
    return LLMClient(
        model=settings.llm_model,
        timeout_seconds=settings.llm_timeout_seconds,
        max_attempts=settings.llm_max_attempts,
    )
