from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from open_llm_scheduler.errors import GenerationError

if TYPE_CHECKING:
    from open_llm_scheduler.credentials import Credential

logger = logging.getLogger("open_llm_scheduler.generation")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"


@dataclass(slots=True)
class GenerationResponse:
    text: str
    tokens_used: int | None = None


class TextGenerator(Protocol):
    async def generate(
        self,
        *,
        prompt: str,
        temperature: float,
        model: str,
        credential: Credential,
        max_output_tokens: int | None = None,
    ) -> GenerationResponse: ...


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "request", None)
    if isinstance(request, httpx.Request):
        details["request_url"] = str(request.url)
    return details


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            status = error.get("status")
            message = str(error.get("message") or "").strip()
            if status and message:
                return f"{status}: {message}"
            return message or str(status or response.reason_phrase)
        if isinstance(error, str):
            return error
    return response.text.strip() or response.reason_phrase


def _extract_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        feedback = payload.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise GenerationError(f"empty response (block reason: {reason or 'none'})")
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))


class GeminiTextGenerator:
    """``TextGenerator`` for the Generative Language ``generateContent`` API."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 60.0,
        connect_timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=timeout_seconds,
                connect=connect_timeout_seconds,
            ),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
        )

    async def generate(
        self,
        *,
        prompt: str,
        temperature: float,
        model: str,
        credential: Credential,
        max_output_tokens: int | None = None,
    ) -> GenerationResponse:
        generation_config: dict[str, Any] = {"temperature": temperature}
        if max_output_tokens is not None:
            generation_config["maxOutputTokens"] = max_output_tokens
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        url = f"{self._base_url}/v1beta/models/{model}:generateContent"
        try:
            response = await self._client.post(
                url,
                json=body,
                headers={"x-goog-api-key": credential.secret},
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "generation_request_error credential=%s model=%s error_type=%s error=%s",
                credential.label,
                model,
                details["error_type"],
                details["error"],
            )
            raise GenerationError(
                f"network error: {details['error_type']}: {details['error']}",
                network=True,
            ) from exc

        if response.status_code >= 400:
            message = _error_message(response)
            raise GenerationError(
                f"[{response.status_code}] {message}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationError("malformed response body") from exc
        text = _extract_text(payload)
        usage = payload.get("usageMetadata") or {}
        tokens = usage.get("totalTokenCount") if isinstance(usage, dict) else None
        return GenerationResponse(
            text=text,
            tokens_used=int(tokens) if isinstance(tokens, (int, float)) else None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
