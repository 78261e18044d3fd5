from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    INVALID_MODEL = "invalid_model"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH = "auth"
    UNKNOWN = "unknown"


class SchedulerError(Exception):
    """Base class for errors raised by the scheduler."""


class ModelCatalogError(SchedulerError):
    pass


class GenerationError(SchedulerError):
    """A failed call to the text-generation service."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        network: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.network = network


class CredentialRejectedError(SchedulerError):
    """Raised when a pinned credential is rejected by the service."""

    def __init__(self, label: str, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"credential {label} was rejected{detail}")
        self.label = label


class NoHealthyCredentialsError(SchedulerError):
    def __init__(self, checked: int) -> None:
        super().__init__(f"no healthy credentials ({checked} checked)")
        self.checked = checked


class RequestDeadlineExceededError(SchedulerError):
    pass


class RequestCancelledError(SchedulerError):
    pass


class RetryBudgetExhaustedError(SchedulerError):
    def __init__(self, iterations: int, last_error: str | None = None) -> None:
        suffix = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"gave up after {iterations} iterations{suffix}")
        self.iterations = iterations
        self.last_error = last_error


@dataclass(slots=True)
class ErrorClassification:
    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None = None


_STATUS_KINDS: dict[int, ErrorKind] = {
    401: ErrorKind.AUTH,
    403: ErrorKind.AUTH,
    404: ErrorKind.INVALID_MODEL,
    429: ErrorKind.RATE_LIMIT,
}

_INVALID_MODEL_PATTERNS: tuple[str, ...] = (
    "model not found",
    "is not found for api version",
    "unknown model",
    "unsupported model",
    "invalid model",
    "not supported for generatecontent",
)

_QUOTA_PATTERNS: tuple[str, ...] = (
    "daily limit",
    "per day",
    "perday",
)

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "resource has been exhausted",
    "resource_exhausted",
    "429",
)

_AUTH_PATTERNS: tuple[str, ...] = (
    "api key not valid",
    "invalid api key",
    "api_key_invalid",
    "unauthorized",
    "unauthenticated",
    "permission denied",
    "permission_denied",
    "forbidden",
    "401",
    "403",
)

_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "fetch failed",
    "temporarily unavailable",
    "overloaded",
    "503",
)


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None


def _is_quota_message(text: str) -> str | None:
    if "quota" in text and "exceeded" in text:
        return "quota exceeded"
    return _first_match(text, _QUOTA_PATTERNS)


class ErrorClassifier:
    """Maps a failed generation attempt to an ``ErrorKind``.

    Exception types and HTTP status codes are consulted first, then the
    message text. Subclass and override ``classify`` to plug in a different
    taxonomy.
    """

    def classify(self, exc: BaseException) -> ErrorClassification:
        if isinstance(exc, CredentialRejectedError):
            return ErrorClassification(ErrorKind.AUTH, "credential_rejected")
        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
            return ErrorClassification(ErrorKind.NETWORK, "timeout")
        if isinstance(exc, httpx.TransportError):
            return ErrorClassification(ErrorKind.NETWORK, "transport_error")

        text = str(exc).lower()
        status_code = getattr(exc, "status_code", None)
        if isinstance(exc, GenerationError) and exc.network:
            return ErrorClassification(ErrorKind.NETWORK, "transport_error")

        if isinstance(status_code, int):
            classified = self._classify_status(status_code, text)
            if classified is not None:
                return classified

        return self.classify_text(text)

    def classify_text(self, text: str) -> ErrorClassification:
        text = text.lower()
        pattern = _first_match(text, _INVALID_MODEL_PATTERNS)
        if pattern:
            return ErrorClassification(ErrorKind.INVALID_MODEL, "invalid_model", pattern)
        pattern = _first_match(text, _RATE_LIMIT_PATTERNS)
        if pattern:
            return ErrorClassification(ErrorKind.RATE_LIMIT, "rate_limit", pattern)
        pattern = _is_quota_message(text)
        if pattern:
            return ErrorClassification(ErrorKind.QUOTA_EXCEEDED, "quota_exceeded", pattern)
        pattern = _first_match(text, _AUTH_PATTERNS)
        if pattern:
            return ErrorClassification(ErrorKind.AUTH, "auth", pattern)
        pattern = _first_match(text, _NETWORK_PATTERNS)
        if pattern:
            return ErrorClassification(ErrorKind.NETWORK, "network", pattern)
        return ErrorClassification(ErrorKind.UNKNOWN, "unmatched")

    def _classify_status(
        self, status_code: int, text: str
    ) -> ErrorClassification | None:
        if status_code == 429:
            # Per-minute and per-day exhaustion both arrive as 429.
            pattern = _first_match(text, _QUOTA_PATTERNS)
            if pattern:
                return ErrorClassification(
                    ErrorKind.QUOTA_EXCEEDED, "status_429_daily", pattern
                )
            return ErrorClassification(ErrorKind.RATE_LIMIT, "status_429")
        if status_code >= 500:
            return ErrorClassification(ErrorKind.NETWORK, f"status_{status_code}")
        if status_code == 400:
            # Bad requests carry the real reason in the body.
            return None
        kind = _STATUS_KINDS.get(status_code)
        if kind is None:
            return None
        if kind is ErrorKind.INVALID_MODEL and _first_match(text, _AUTH_PATTERNS):
            return ErrorClassification(ErrorKind.AUTH, f"status_{status_code}")
        return ErrorClassification(kind, f"status_{status_code}")
