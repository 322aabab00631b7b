"""
Custom exception classes for the trendpress pipeline.

Exceptions are grouped by how the job runtime reacts to them: validation
and configuration problems fail a job without retry, transient collaborator
problems are retried with backoff, and policy or quota outcomes are state
transitions rather than errors.

Hierarchy:
    Exception
    +-- PipelineError (base for pipeline outcomes)
    |   +-- TransientCollaboratorError
    |   +-- PolicyRejection
    |   |   +-- ContentPolicyError
    |   +-- QuotaExceeded
    |   +-- JobDeferred
    |   +-- PlatformAuthError
    |   +-- PlatformContentRejectedError
    |   +-- JobNotFoundError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    |   +-- DuplicateRecordError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from datetime import datetime
from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PipelineError(Exception):
    """Base exception for all pipeline outcomes raised by job handlers."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails (malformed payload or record)."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class DuplicateRecordError(DatabaseError):
    """Raised when an insert violates a unique constraint.

    Attributes:
        table: Table the insert targeted.
        key: Human-readable description of the conflicting key.
    """

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"Duplicate record in {table}: {key}")


class ConfigurationError(Exception):
    """Raised when system or workspace configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# COLLABORATOR EXCEPTIONS
# =============================================================================


class TransientCollaboratorError(PipelineError):
    """Network, timeout or rate-limit failure from an external collaborator.

    Attributes:
        collaborator: Name of the failing collaborator (``"llm"``,
            ``"threads"``, ``"storage"``...).
    """

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"[{collaborator}] {message}")


class PlatformAuthError(PipelineError):
    """Raised when a platform rejects the workspace credentials."""

    pass


class PlatformContentRejectedError(PipelineError):
    """Raised when a platform refuses the submitted content."""

    pass


# =============================================================================
# STATE-TRANSITION OUTCOMES
# =============================================================================


class PolicyRejection(PipelineError):
    """Content was explicitly rejected. Terminal, recorded as a transition.

    Attributes:
        reason: Why the content was rejected.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ContentPolicyError(PolicyRejection):
    """The language model refused to process the content."""

    pass


class JobDeferred(PipelineError):
    """The job is not eligible yet and must run again at ``run_at``.

    Attributes:
        run_at: Earliest time the job may be dispatched again.
    """

    def __init__(self, run_at: datetime, reason: str = "not yet due"):
        self.run_at = run_at
        self.reason = reason
        super().__init__(f"Deferred until {run_at.isoformat()}: {reason}")


class QuotaExceeded(JobDeferred):
    """Workspace publish quota reached; the job moves to ``run_at``."""

    def __init__(self, workspace_id: str, limit: int, run_at: datetime):
        self.workspace_id = workspace_id
        self.limit = limit
        super().__init__(
            run_at, f"workspace {workspace_id} reached daily limit {limit}"
        )


class JobNotFoundError(PipelineError):
    """Raised when a job id does not resolve to a stored job."""

    def __init__(self, job_id: str, detail: Optional[str] = None):
        self.job_id = job_id
        super().__init__(detail or f"Job {job_id} not found")


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PipelineError",
    # Core
    "ValidationError",
    "DatabaseError",
    "DuplicateRecordError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Collaborators
    "TransientCollaboratorError",
    "PlatformAuthError",
    "PlatformContentRejectedError",
    # Outcomes
    "PolicyRejection",
    "ContentPolicyError",
    "JobDeferred",
    "QuotaExceeded",
    "JobNotFoundError",
]
