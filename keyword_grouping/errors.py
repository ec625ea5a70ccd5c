"""Exception taxonomy for the keyword grouping pipeline.

Every failure that crosses a component boundary is one of these classes. The
orchestrator maps them to user-facing terminal events; anything else is
reported as an unknown failure.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for pipeline failures.

    Parameters
    ----------
    message : str
        Human-readable description.
    stats : Any, optional
        Partial progress (e.g. ``EmbeddingStats``) at the time of failure.
    """

    code = "unknown"

    def __init__(self, message: str = "", stats: Optional[Any] = None):
        super().__init__(message)
        self.stats = stats


class ValidationError(PipelineError):
    """Preconditions of a job are not met; the job never starts."""

    code = "validation"


class ProviderError(PipelineError):
    """Embedding provider call failed.

    Parameters
    ----------
    message : str
        Description of the failure.
    status_code : int, optional
        HTTP status reported by the provider, when known.
    retryable : bool
        Whether another attempt may succeed (5xx, timeouts, connection errors).
    """

    code = "provider_error"

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        retryable: bool = True,
        stats: Optional[Any] = None,
    ):
        super().__init__(message, stats=stats)
        self.status_code = status_code
        self.retryable = retryable


class RateLimited(ProviderError):
    """Provider throttled the request (HTTP 429 or equivalent)."""

    code = "rate_limited"

    def __init__(self, message: str = "", stats: Optional[Any] = None):
        super().__init__(message, status_code=429, retryable=True, stats=stats)


class StreamWriteError(PipelineError):
    """Writing a hand-off file failed.

    Parameters
    ----------
    path : str
        File being written.
    bytes_written : int
        Bytes successfully written before the failure; reported as the
        estimated data size for diagnostics.
    """

    code = "stream_write_error"

    def __init__(self, message: str, path: str = "", bytes_written: int = 0):
        super().__init__(message)
        self.path = path
        self.bytes_written = bytes_written


class Aborted(PipelineError):
    """Cooperative cancellation was observed."""

    code = "aborted"


class CacheUnavailable(PipelineError):
    """Embedding cache backend failed; callers degrade to an always-miss cache."""

    code = "cache_unavailable"


class JobAlreadyRunning(PipelineError):
    """A job for the same (scope, kind) is already active."""

    code = "job_already_running"
