"""
Time, id and retry helpers shared by the pipeline, queue and clients.

Every timestamp the pipeline compares (post age, publish slots, job
``run_at``) goes through ``utc_now``/``ensure_utc`` so naive and aware
values never mix. ``with_retry`` wraps async collaborator calls and turns
exhaustion into ``RetryExhaustedError``.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

from trendpress.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ===========================================================================
# TIME AND IDS
# ===========================================================================


def utc_now() -> datetime:
    """Aware ``datetime`` for now in UTC. Use instead of ``datetime.utcnow()``."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a UUID4 string for database primary keys."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """Convert *dt* to aware UTC; naive values are read as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a timestamp coming back from the store.

    PostgREST returns ISO-8601 strings, sometimes with a trailing ``Z``.

    Args:
        value: ISO string, datetime, or ``None``.

    Returns:
        Timezone-aware UTC datetime, or ``None`` when *value* is empty.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    """Serialise an optional datetime for a TIMESTAMPTZ column."""
    return ensure_utc(dt).isoformat() if dt is not None else None


def truncate(text: str, limit: int = 500) -> str:
    """Cut *text* to at most *limit* characters."""
    if len(text) <= limit:
        return text
    return text[:limit]


# ===========================================================================
# RETRY
# ===========================================================================



def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Retry an ``async`` function with exponential backoff.

    Only exceptions in *retryable_exceptions* are retried; anything else
    propagates on the first attempt. Wait before attempt ``n + 1`` is
    ``base_delay * 2 ** (n - 1)``.

    Args:
        max_attempts: Total attempts, the first call included.
        base_delay: Seconds to wait after the first failure.
        retryable_exceptions: Exception types worth another attempt.
        operation_name: Name used in log lines; defaults to the wrapped
            function's ``__name__``.

    Raises:
        RetryExhaustedError: Every attempt failed. The last exception is
            kept as ``last_error``.

    Usage::

        @with_retry(
            max_attempts=2,
            base_delay=5.0,
            retryable_exceptions=(TransientCollaboratorError,),
        )
        async def fetch_posts(self, account: str) -> List[Dict[str, Any]]:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt == max_attempts:
                        break
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "[RETRY] %s attempt %d/%d failed: %s. Retrying in %.1fs",
                        op_name,
                        attempt,
                        max_attempts,
                        e,
                        delay,
                    )
                    await asyncio.sleep(delay)

            logger.error(
                "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                op_name,
                max_attempts,
                last_error,
            )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        return wrapper

    return decorator
