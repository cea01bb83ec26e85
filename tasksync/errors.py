"""
Error taxonomy for TaskSync.

Adapters classify every transport failure into TransientAdapterError or
PermanentAdapterError before it reaches the sync engine; nothing else
crosses the adapter boundary.
"""

import requests


class TaskSyncError(Exception):
    """Base class for all TaskSync errors."""


class ValidationError(TaskSyncError, ValueError):
    """Raised when a canonical mutation carries an illegal value."""

    def __init__(self, message: str, field: str | None = None, value: object = None):
        super().__init__(message)
        self.field = field
        self.value = value


class MalformedPayloadError(TaskSyncError):
    """Raised when an inbound webhook does not match the platform schema."""

    def __init__(self, message: str, platform: str | None = None):
        super().__init__(message)
        self.platform = platform


class AdapterError(TaskSyncError):
    """Classified failure of an outbound platform call."""

    retryable = False

    def __init__(self, message: str, platform: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code

    @property
    def kind(self) -> str:
        return "transient" if self.retryable else "permanent"


class TransientAdapterError(AdapterError):
    """Network timeout, rate limit or server-side failure. Retried with backoff."""

    retryable = True


class PermanentAdapterError(AdapterError):
    """Authentication failure or schema rejection. Dead-lettered immediately."""

    retryable = False


class ServiceUnavailableError(TaskSyncError):
    """Inbound queue is full or the service is not running."""


# HTTP statuses that are worth retrying
TRANSIENT_STATUSES = {408, 425, 429}


def classify_http_status(platform: str, status_code: int, message: str = "") -> AdapterError:
    """
    Map an HTTP status code to a classified adapter error.

    Args:
        platform: Platform name for error context
        status_code: HTTP status returned by the platform
        message: Optional detail (response body excerpt)

    Returns:
        TransientAdapterError for 408/425/429/5xx, PermanentAdapterError otherwise
    """
    detail = f"HTTP {status_code}"
    if message:
        detail = f"{detail}: {message[:200]}"

    if status_code in TRANSIENT_STATUSES or status_code >= 500:
        return TransientAdapterError(detail, platform=platform, status_code=status_code)

    if status_code in (401, 403):
        detail = f"Authentication failed ({detail})"

    return PermanentAdapterError(detail, platform=platform, status_code=status_code)


def classify_request_exception(platform: str, exc: Exception) -> AdapterError:
    """
    Map a requests exception to a classified adapter error.

    Timeouts and connection failures are transient; an HTTPError is
    classified by its status code; anything else is permanent.
    """
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return classify_http_status(platform, exc.response.status_code, exc.response.text or "")

    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return TransientAdapterError(f"{type(exc).__name__}: {exc}", platform=platform)

    return PermanentAdapterError(f"{type(exc).__name__}: {exc}", platform=platform)
