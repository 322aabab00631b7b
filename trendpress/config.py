"""
Process-wide settings for workers, the poller and collaborator clients.

Values come from ``config/settings.yaml``, then environment overrides;
every field has a default so a bare checkout runs. Workspace-level
policy (thresholds, publish times, credentials) lives on the ``Workspace``
record in the store; this module only covers process-wide settings.

Provides:
    - RetryPolicy: Per-job-type attempt limits and backoff base
    - Settings: Process settings (YAML, then env overrides)
    - get_settings(): Singleton accessor for Settings
    - reset_settings(): Drop the cached Settings (tests, reloads)
    - validate_env(): Check the process secrets before startup
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from trendpress.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# .env is optional
# ---------------------------------------------------------------------------
load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# ===========================================================================
# RETRY POLICY
# ===========================================================================


@dataclass
class RetryPolicy:
    """
    Attempt limits for queued jobs, keyed by job type value.

    ``base_delay_seconds`` seeds the exponential backoff used when a job
    fails with a retryable error: ``base * 2 ** (attempts - 1)``.
    """

    base_delay_seconds: float = 15.0
    max_attempts: Dict[str, int] = field(default_factory=lambda: {
        "scrape": 2,
        "trend-scan": 1,
        "synthesize": 3,
        "publish": 5,
        "publish-scan": 1,
        "metrics-refresh": 1,
    })

    def __post_init__(self) -> None:
        """Override the backoff base from ``JOB_RETRY_BASE_DELAY`` if set."""
        env_val = os.environ.get("JOB_RETRY_BASE_DELAY")
        if env_val is not None:
            try:
                self.base_delay_seconds = float(env_val)
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var JOB_RETRY_BASE_DELAY='{env_val}': {exc}"
                ) from exc

    def attempts_for(self, job_type: str) -> int:
        """
        Get the attempt limit for a job type.

        Args:
            job_type: Job type value (e.g. ``"publish"``).

        Returns:
            Maximum attempts; unknown types get a single attempt.
        """
        return self.max_attempts.get(job_type, 1)


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Process settings shared by ``run.py`` and ``manage.py``.

    Fields map one-to-one to top-level YAML keys; a subset can also be set
    through environment variables (see ``from_yaml``). The nested ``retry``
    section builds :class:`RetryPolicy`.
    """

    # LLM settings
    llm_model: str = "claude-sonnet-4-5"
    llm_timeout_seconds: float = 60.0
    llm_max_attempts: int = 3

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    status_reporter: str = "logging"  # "logging" | "jsonl"

    # Queue and workers
    poll_interval_seconds: int = 60
    worker_concurrency: int = 4
    worker_idle_sleep_seconds: float = 2.0
    job_timeout_seconds: float = 300.0
    visibility_timeout_minutes: int = 15
    queues: List[str] = field(default_factory=lambda: ["ingest", "pipeline", "publish"])
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Trend engine
    similarity_threshold: float = 0.25
    hot_score_half_life_hours: float = 24.0
    max_topic_keywords: int = 25

    # Ingestion
    scrape_interval_minutes: int = 30
    scraper_url: str = ""
    scraper_timeout_seconds: float = 120.0

    # Publishing
    platform_timeout_seconds: float = 60.0
    media_bucket: str = "media"
    token_refresh_window_days: float = 7.0

    # Metrics
    metrics_interval_minutes: int = 60
    metrics_lookback_days: int = 7

    # Housekeeping
    pipeline_run_retention_days: int = 7
    post_retention_days: int = 30

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Build settings from *path*, then apply environment overrides.

        A missing file yields the defaults. Unknown YAML keys are ignored.

        Args:
            path: YAML file; defaults to ``config/settings.yaml`` at the
                repository root.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an environment override has an invalid value.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Build RetryPolicy from nested YAML section
        # -----------------------------------------------------------------
        retry_data = data.pop("retry", {}) or {}
        retry = RetryPolicy()
        if "base_delay_seconds" in retry_data and "JOB_RETRY_BASE_DELAY" not in os.environ:
            retry.base_delay_seconds = float(retry_data["base_delay_seconds"])
        retry.max_attempts.update(retry_data.get("max_attempts", {}))

        known = {f.name for f in fields(cls)} - {"retry"}
        kwargs: Dict[str, Any] = {k: v for k, v in data.items() if k in known}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown settings keys: %s", sorted(unknown))

        # -----------------------------------------------------------------
        # Environment variable overrides
        # -----------------------------------------------------------------
        env_overrides: Dict[str, Tuple[str, Callable[[str], Any]]] = {
            "LLM_MODEL": ("llm_model", str),
            "LLM_TIMEOUT_SECONDS": ("llm_timeout_seconds", float),
            "LOG_LEVEL": ("log_level", str),
            "STATUS_REPORTER": ("status_reporter", str),
            "POLL_INTERVAL_SECONDS": ("poll_interval_seconds", int),
            "WORKER_CONCURRENCY": ("worker_concurrency", int),
            "JOB_TIMEOUT_SECONDS": ("job_timeout_seconds", float),
            "SIMILARITY_THRESHOLD": ("similarity_threshold", float),
            "MEDIA_BUCKET": ("media_bucket", str),
            "SCRAPER_URL": ("scraper_url", str),
        }
        for env_key, (attr_name, cast_fn) in env_overrides.items():
            env_val = os.environ.get(env_key)
            if env_val is not None:
                try:
                    kwargs[attr_name] = cast_fn(env_val)
                except (ValueError, TypeError) as exc:
                    raise ConfigurationError(
                        f"Invalid value for env var {env_key}='{env_val}': {exc}"
                    ) from exc

        settings = cls(retry=retry, **kwargs)
        if settings.status_reporter not in ("logging", "jsonl"):
            raise ConfigurationError(
                f"Unknown status_reporter '{settings.status_reporter}'"
            )
        return settings


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide ``Settings``, loaded on first use and cached."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "ANTHROPIC_API_KEY",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Check that the process secrets are present.

    Platform credentials are per workspace and live in the store, so only
    process-level secrets are checked here.

    Args:
        strict: If ``True``, raise on missing required vars.

    Returns:
        Mapping of variable name to whether it is set.

    Raises:
        ConfigurationError: If *strict* and any required variable is missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        is_set = bool(os.environ.get(var))
        status[var] = is_set
        if not is_set:
            missing.append(var)

    if missing:
        logger.warning("Missing required environment variables: %s", missing)

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status
