"""Logging system: component loggers, status reporters and pipeline run tracking."""
from trendpress.logging.component_logger import ComponentLogger, TimedOperation
from trendpress.logging.pipeline_run_tracker import PipelineRunTracker
from trendpress.logging.status_reporter import (
    JsonlStatusReporter,
    LoggingStatusReporter,
    StatusReporter,
    build_status_reporter,
)

__all__ = [
    "ComponentLogger", "TimedOperation",
    "PipelineRunTracker",
    "StatusReporter", "LoggingStatusReporter", "JsonlStatusReporter",
    "build_status_reporter",
]
