"""Per-component logger wrapper and timed-operation context manager.

``ComponentLogger`` binds a bracketed component prefix (``[SYNTHESIS]``,
``[PUBLISH]``...) to a standard-library logger so call sites don't repeat
it. ``TimedOperation`` is the async context manager returned by
``ComponentLogger.timed()``; it logs the elapsed time and outcome of a
block.
"""

import logging
import time
from typing import Any, Optional


class ComponentLogger:
    """Wrapper that prefixes every message with the component tag.

    Usage::

        log = ComponentLogger("worker")
        log.info("Started %d workers", 4)
        async with log.timed("trend-scan ws-1"):
            await engine.scan_workspace(ws, now)
    """

    def __init__(self, component: str, logger: Optional[logging.Logger] = None) -> None:
        self.component = component
        self.prefix = f"[{component.upper()}]"
        self.logger = logger or logging.getLogger(f"trendpress.{component.lower()}")

    def _log(self, level: int, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.log(level, f"{self.prefix} {message}", *args, **kwargs)

    def debug(self, message: str, *args: Any) -> None:
        self._log(logging.DEBUG, message, *args)

    def info(self, message: str, *args: Any) -> None:
        self._log(logging.INFO, message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self._log(logging.WARNING, message, *args)

    def error(self, message: str, *args: Any, exc_info: bool = False) -> None:
        self._log(logging.ERROR, message, *args, exc_info=exc_info)

    def timed(self, message: str) -> "TimedOperation":
        """Return an async context manager that logs start/end with duration."""
        return TimedOperation(self, message)


class TimedOperation:
    """Async context manager that measures and logs operation duration.

    On entry, logs at DEBUG. On success, logs at INFO with the duration.
    On exception, logs at ERROR with the duration and re-raises (does
    **not** suppress it). ``duration_ms`` is available after exit.
    """

    def __init__(self, logger: ComponentLogger, message: str) -> None:
        self.logger = logger
        self.message = message
        self._start: Optional[float] = None
        self.duration_ms: Optional[int] = None

    async def __aenter__(self) -> "TimedOperation":
        self._start = time.monotonic()
        self.logger.debug("Starting: %s", self.message)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self._start is not None
        self.duration_ms = int((time.monotonic() - self._start) * 1000)

        if exc_type is not None:
            self.logger.error(
                "Failed: %s (%dms): %s: %s",
                self.message,
                self.duration_ms,
                exc_type.__name__,
                exc_val,
            )
        else:
            self.logger.info("Completed: %s (%dms)", self.message, self.duration_ms)
        # Return None (falsy) so exceptions propagate
