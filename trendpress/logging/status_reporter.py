"""Status reporting for pipeline outcomes.

A ``StatusReporter`` receives one ``report(status, details)`` call per
tracked pipeline step. The pipeline only depends on that interface; which
implementation is active comes from ``Settings.status_reporter``:

- ``"logging"``: ``LoggingStatusReporter``, one log line per report.
- ``"jsonl"``: ``JsonlStatusReporter``, one JSON object per line in
  ``<log_dir>/status.jsonl`` (written with ``aiofiles``).
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Protocol

import aiofiles

from trendpress.utils import utc_now

logger = logging.getLogger(__name__)


class StatusReporter(Protocol):
    async def report(self, status: str, details: Dict[str, Any]) -> None:
        ...


class LoggingStatusReporter:
    """Writes each report to the ``trendpress.status`` logger."""

    def __init__(self, name: str = "trendpress.status") -> None:
        self._logger = logging.getLogger(name)

    async def report(self, status: str, details: Dict[str, Any]) -> None:
        level = logging.WARNING if status == "failed" else logging.INFO
        self._logger.log(level, "[STATUS] %s %s", status, json.dumps(details, default=str, sort_keys=True))


class JsonlStatusReporter:
    """Appends reports to a JSON Lines file.

    Args:
        path: Target file; parent directories are created.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def report(self, status: str, details: Dict[str, Any]) -> None:
        line = json.dumps(
            {"timestamp": utc_now().isoformat(), "status": status, **details},
            default=str,
            ensure_ascii=False,
        )
        async with self._lock:
            async with aiofiles.open(self.path, mode="a", encoding="utf-8") as f:
                await f.write(line + "\n")


def build_status_reporter(settings: Any) -> StatusReporter:
    """Reporter selected by ``settings.status_reporter``."""
    if settings.status_reporter == "jsonl":
        return JsonlStatusReporter(Path(settings.log_dir) / "status.jsonl")
    return LoggingStatusReporter()


__all__ = [
    "JsonlStatusReporter",
    "LoggingStatusReporter",
    "StatusReporter",
    "build_status_reporter",
]
