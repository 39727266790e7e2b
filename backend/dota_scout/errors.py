from __future__ import annotations

from typing import Dict, Optional


class ScoutDataError(RuntimeError):
    """Base class for typed failures surfaced by the data layer."""

    status_code = 500
    error = "Unknown error"
    retryable = False

    def __init__(self, message: str = "", details: Optional[str] = None) -> None:
        super().__init__(message or self.error)
        self.details = details or message or None


class RateLimitedError(ScoutDataError):
    status_code = 429
    error = "Rate limited"
    retryable = True

    def __init__(
        self,
        message: str = "",
        details: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


class NotFoundError(ScoutDataError):
    status_code = 404
    error = "Data Not Found"


class DataValidationError(ScoutDataError):
    """The normalizer rejected a malformed upstream payload."""

    status_code = 422
    error = "Invalid data"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message, message)
        self.kind = kind
        self.error = f"Invalid {kind} data"


class NetworkError(ScoutDataError):
    error = "Network error"
    retryable = True


class UpstreamError(ScoutDataError):
    pass


class ConfigError(ValueError):
    pass


def to_error_payload(exc: BaseException) -> Dict[str, object]:
    if isinstance(exc, ScoutDataError):
        payload: Dict[str, object] = {"error": exc.error, "status": exc.status_code}
        if exc.details:
            payload["details"] = exc.details
        return payload
    payload = {"error": "Unknown error", "status": 500}
    if str(exc):
        payload["details"] = str(exc)
    return payload
