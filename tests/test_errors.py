from __future__ import annotations

import asyncio

import httpx
import pytest

from open_llm_scheduler.errors import (
    CredentialRejectedError,
    ErrorClassification,
    ErrorClassifier,
    ErrorKind,
    GenerationError,
)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("models/gemini-9 is not found for API version v1beta", ErrorKind.INVALID_MODEL),
        ("Unknown model: gemini-x", ErrorKind.INVALID_MODEL),
        ("429 Too Many Requests", ErrorKind.RATE_LIMIT),
        ("Resource has been exhausted (e.g. check quota).", ErrorKind.RATE_LIMIT),
        ("Quota exceeded for metric generate_requests", ErrorKind.QUOTA_EXCEEDED),
        ("API key not valid. Please pass a valid API key.", ErrorKind.AUTH),
        ("Permission denied on resource project", ErrorKind.AUTH),
        ("fetch failed: ECONNREFUSED", ErrorKind.NETWORK),
        ("The model is overloaded. Please try again later.", ErrorKind.NETWORK),
        ("Candidate was blocked due to SAFETY", ErrorKind.UNKNOWN),
    ],
)
def test_classify_text(message: str, expected: ErrorKind) -> None:
    assert ErrorClassifier().classify(GenerationError(message)).kind is expected


@pytest.mark.parametrize(
    ("status_code", "message", "expected"),
    [
        (401, "Unauthorized", ErrorKind.AUTH),
        (403, "The caller does not have permission", ErrorKind.AUTH),
        (404, "models/foo not found", ErrorKind.INVALID_MODEL),
        (429, "You exceeded your current quota", ErrorKind.RATE_LIMIT),
        (429, "Quota exceeded: requests per day", ErrorKind.QUOTA_EXCEEDED),
        (500, "Internal error", ErrorKind.NETWORK),
        (503, "Service Unavailable", ErrorKind.NETWORK),
        (400, "API key not valid. Please pass a valid API key.", ErrorKind.AUTH),
        (400, "Invalid JSON payload received", ErrorKind.UNKNOWN),
    ],
)
def test_classify_status_codes(status_code: int, message: str, expected: ErrorKind) -> None:
    error = GenerationError(f"[{status_code}] {message}", status_code=status_code)
    assert ErrorClassifier().classify(error).kind is expected


def test_transport_errors_are_network() -> None:
    classifier = ErrorClassifier()
    request = httpx.Request("POST", "https://example.test")

    assert classifier.classify(httpx.ReadTimeout("slow", request=request)).kind is ErrorKind.NETWORK
    connect_error = httpx.ConnectError("down", request=request)
    assert classifier.classify(connect_error).kind is ErrorKind.NETWORK
    assert classifier.classify(asyncio.TimeoutError()).kind is ErrorKind.NETWORK
    assert classifier.classify(GenerationError("boom", network=True)).kind is ErrorKind.NETWORK


def test_credential_rejected_is_auth() -> None:
    classification = ErrorClassifier().classify(CredentialRejectedError("Key 1"))
    assert classification == ErrorClassification(ErrorKind.AUTH, "credential_rejected")


def test_classification_reports_matched_pattern() -> None:
    classification = ErrorClassifier().classify_text("Rate limit reached for requests")
    assert classification.kind is ErrorKind.RATE_LIMIT
    assert classification.matched_rule == "rate_limit"
    assert classification.matched_pattern == "rate limit"


def test_classifier_can_be_extended() -> None:
    class SafetyAwareClassifier(ErrorClassifier):
        def classify(self, exc: BaseException) -> ErrorClassification:
            if "safety" in str(exc).lower():
                return ErrorClassification(ErrorKind.INVALID_MODEL, "safety_block")
            return super().classify(exc)

    classifier = SafetyAwareClassifier()
    assert classifier.classify(GenerationError("blocked: SAFETY")).kind is ErrorKind.INVALID_MODEL
    assert classifier.classify(GenerationError("rate limit")).kind is ErrorKind.RATE_LIMIT
