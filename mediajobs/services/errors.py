"""Typed error taxonomy and engine-boundary classification.

Not all errors are equal. Engine adapters convert whatever their transport
raises into one of these types, so the pipeline never parses messages:

- TransientEngineError: retry with backoff (network, HTTP 429, HTTP 5xx)
- FatalEngineError: do not retry; advance the fallback chain or fail the job
  (safety rejection, malformed input, HTTP 400/401/403/404/422)
- StageTimeoutError: a call exceeded its stage timeout; fatal
- InvalidStateError: a lifecycle transition that the current status forbids
- QueueTimeoutError / LimiterCancelledError: rate limiter wait failures
- ResourceCleanupError: scratch cleanup failed; logged, never fails a job
"""

from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional
import httpx
import structlog

logger = structlog.get_logger()


class EngineError(Exception):
    """Base class for failures reported by an external engine."""

    def __init__(self, message: str, engine: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.engine = engine
        self.status_code = status_code


class TransientEngineError(EngineError):
    """Retryable engine failure."""

    def __init__(
        self,
        message: str,
        engine: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, engine=engine, status_code=status_code)
        self.retry_after = retry_after


class FatalEngineError(EngineError):
    """Non-retryable engine failure (rejection, bad input, permanent 4xx)."""


class StageTimeoutError(TimeoutError):
    """An engine call ran past its stage timeout."""

    def __init__(self, stage: str, timeout_seconds: float):
        minutes = timeout_seconds / 60
        if timeout_seconds >= 60 and minutes == int(minutes):
            label = f"{int(minutes)} minutes"
        else:
            label = f"{timeout_seconds:g} seconds"
        super().__init__(f"Stage '{stage}' timed out after {label}")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class InvalidStateError(Exception):
    """A job status transition is not allowed from the current status."""

    def __init__(self, job_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} job {job_id} in status '{status}'")
        self.job_id = job_id
        self.status = status
        self.action = action


class JobNotFoundError(LookupError):
    """No job with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class QueueTimeoutError(TimeoutError):
    """A caller waited in a rate limiter queue past the ceiling."""


class LimiterCancelledError(Exception):
    """A queued rate limiter caller was cancelled by cancel_all()."""


class ResourceCleanupError(Exception):
    """Scratch storage could not be released."""


class ErrorType(Enum):
    """Classification of raw errors for the boundary conversion."""
    NETWORK = auto()       # Timeouts, connection issues
    RATE_LIMIT = auto()    # HTTP 429, quota exceeded
    INVALID_INPUT = auto() # HTTP 400/404/422, validation errors
    TRANSIENT = auto()     # HTTP 5xx
    PERMANENT = auto()     # HTTP 401/402/403, safety rejection
    UNKNOWN = auto()


RETRYABLE_TYPES = {ErrorType.NETWORK, ErrorType.RATE_LIMIT, ErrorType.TRANSIENT}


@dataclass
class ClassifiedError:
    """Error with classification for boundary conversion."""
    error_type: ErrorType
    original_error: Exception
    message: str
    status_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_TYPES


class ErrorClassifier:
    """
    Classifies raw transport errors and converts them to the typed taxonomy.

    Usage:
        try:
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise error_classifier.to_engine_error(e, engine="fal:face-swap") from e
    """

    STATUS_CODE_MAP = {
        429: ErrorType.RATE_LIMIT,

        400: ErrorType.INVALID_INPUT,
        404: ErrorType.INVALID_INPUT,
        405: ErrorType.INVALID_INPUT,
        413: ErrorType.INVALID_INPUT,
        422: ErrorType.INVALID_INPUT,

        401: ErrorType.PERMANENT,
        402: ErrorType.PERMANENT,
        403: ErrorType.PERMANENT,

        408: ErrorType.TRANSIENT,
        500: ErrorType.TRANSIENT,
        502: ErrorType.TRANSIENT,
        503: ErrorType.TRANSIENT,
        504: ErrorType.TRANSIENT,
    }

    NETWORK_EXCEPTIONS = (
        httpx.TimeoutException,
        httpx.NetworkError,
        httpx.RemoteProtocolError,
        ConnectionError,
        TimeoutError,
    )

    SAFETY_TERMS = ("nsfw", "content policy", "safety", "moderation", "prohibited")

    def classify(self, error: Exception) -> ClassifiedError:
        """
        Classify an error.

        Args:
            error: The exception to classify

        Returns:
            ClassifiedError with type and status code
        """
        status_code = self._extract_status_code(error)
        error_type = self._determine_type(error, status_code)
        classified = ClassifiedError(
            error_type=error_type,
            original_error=error,
            message=str(error) or type(error).__name__,
            status_code=status_code,
        )
        logger.debug(
            "Error classified",
            error_type=error_type.name,
            retryable=classified.retryable,
            status_code=status_code,
            message=classified.message[:100],
        )
        return classified

    def classify_status(self, status_code: int) -> ErrorType:
        """Map an HTTP status code to an error type."""
        if status_code in self.STATUS_CODE_MAP:
            return self.STATUS_CODE_MAP[status_code]
        if status_code >= 500:
            return ErrorType.TRANSIENT
        if status_code >= 400:
            return ErrorType.INVALID_INPUT
        return ErrorType.UNKNOWN

    def _determine_type(self, error: Exception, status_code: Optional[int]) -> ErrorType:
        if isinstance(error, self.NETWORK_EXCEPTIONS):
            return ErrorType.NETWORK

        if status_code:
            return self.classify_status(status_code)

        error_str = str(error).lower()

        if any(term in error_str for term in self.SAFETY_TERMS):
            return ErrorType.PERMANENT

        if any(term in error_str for term in ("timeout", "timed out", "econnreset", "socket hang up")):
            return ErrorType.NETWORK

        if any(term in error_str for term in ("rate limit", "too many requests", "quota", "resource_exhausted")):
            return ErrorType.RATE_LIMIT

        if any(term in error_str for term in ("invalid", "validation", "bad request")):
            return ErrorType.INVALID_INPUT

        if any(term in error_str for term in ("unauthorized", "forbidden", "api key", "authentication")):
            return ErrorType.PERMANENT

        return ErrorType.UNKNOWN

    def _extract_status_code(self, error: Exception) -> Optional[int]:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code
        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int):
            return status_code
        return None

    def to_engine_error(self, error: Exception, engine: Optional[str] = None) -> EngineError:
        """
        Convert a raw error into the typed taxonomy.

        Already-typed errors pass through unchanged. Unknown errors are
        treated as fatal so a fallback chain can advance instead of
        retrying something nobody understands.

        Args:
            error: Raw exception from the transport or SDK
            engine: Engine name for context

        Returns:
            TransientEngineError or FatalEngineError
        """
        if isinstance(error, EngineError):
            return error

        classified = self.classify(error)
        message = f"{engine}: {classified.message}" if engine else classified.message

        if classified.retryable:
            retry_after = None
            if isinstance(error, httpx.HTTPStatusError):
                retry_after = parse_retry_after(error.response.headers.get("retry-after"))
            return TransientEngineError(
                message,
                engine=engine,
                status_code=classified.status_code,
                retry_after=retry_after,
            )
        return FatalEngineError(message, engine=engine, status_code=classified.status_code)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


# Singleton instance for convenience
error_classifier = ErrorClassifier()
