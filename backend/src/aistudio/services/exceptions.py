"""Service error hierarchy for the job and prompt queue.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- ValidationError / NotFoundError / AccessDenied: Request-level errors, raised
  before any job is created
- ProviderError: The image or LLM provider returned an error
  (TransientError, PermanentError, ContentPolicyError)
- JobTimeoutError: Staleness detected by the reaper
- InternalError: Unexpected failure, job left for the next reaper pass
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class ValidationError(ServiceError):
    """Bad input (malformed row/model reference, missing images, bad priority)."""

    pass


class NotFoundError(ServiceError):
    """Referenced row, model or job does not exist."""

    pass


class AccessDenied(ServiceError):
    """Caller does not own the referenced resource."""

    pass


class ProviderError(ServiceError):
    """Base exception for image and LLM provider failures.

    Terminal for the job that hit it; the message is stored verbatim in job.error.
    """

    retryable: bool = False


class TransientError(ProviderError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    retryable = True


class PermanentError(ProviderError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Configuration errors (missing API token)
    """

    retryable = False


class ContentPolicyError(ProviderError):
    """Content policy violation reported by the provider."""

    retryable = False


class JobTimeoutError(ServiceError):
    """Job exceeded the age threshold for its state.

    Messages always start with "timeout: " (scheduled cleanup) or "reset: "
    (manual queue reset) so operators can tell infrastructure stalls apart from
    organic provider failures.
    """

    PREFIXES = ("timeout: ", "reset: ")

    def __init__(self, message: str):
        if not message.startswith(self.PREFIXES):
            raise ValueError(f"Timeout message needs a timeout or reset prefix: {message!r}")
        super().__init__(message)


class InternalError(ServiceError):
    """Unexpected failure while processing a job."""

    pass


# Storage-specific errors
class StorageError(ServiceError):
    """Base exception for object storage errors."""

    pass


class StorageUploadError(StorageError):
    """Provider output could not be downloaded or uploaded to storage."""

    pass
