from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from open_llm_scheduler.context import SchedulerContext
from open_llm_scheduler.credentials import Credential, CredentialPool
from open_llm_scheduler.errors import ErrorKind, NoHealthyCredentialsError
from open_llm_scheduler.generation import TextGenerator

logger = logging.getLogger("open_llm_scheduler.health")

PROBE_PROMPT = "Reply with only: OK"
PROBE_MAX_OUTPUT_TOKENS = 10
PROBE_TEMPERATURE = 0.1

# Outcomes that say something about the credential itself.
_CREDENTIAL_FAILURES = frozenset(
    {
        ErrorKind.AUTH,
        ErrorKind.RATE_LIMIT,
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.UNKNOWN,
    }
)


@dataclass(slots=True)
class ProbeResult:
    credential: Credential
    healthy: bool
    latency_ms: float
    error_kind: ErrorKind | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.credential.label,
            "masked": self.credential.masked,
            "healthy": self.healthy,
            "latency_ms": round(self.latency_ms, 1),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


@dataclass(slots=True)
class HealthReport:
    results: list[ProbeResult] = field(default_factory=list)

    @property
    def healthy(self) -> list[Credential]:
        return [result.credential for result in self.results if result.healthy]

    @property
    def unhealthy(self) -> list[ProbeResult]:
        return [result for result in self.results if not result.healthy]

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": len(self.healthy),
            "unhealthy": len(self.unhealthy),
            "credentials": [result.to_dict() for result in self.results],
        }


class HealthChecker:
    """Sends one minimal probe per credential before a run commits to it."""

    def __init__(
        self,
        *,
        context: SchedulerContext,
        generator: TextGenerator,
        probe_model: str = "gemini-2.0-flash-lite",
        delay_seconds: float = 2.0,
        raise_on_empty: bool = True,
    ) -> None:
        self._context = context
        self._generator = generator
        self.probe_model = probe_model
        self.delay_seconds = delay_seconds
        self.raise_on_empty = raise_on_empty

    async def check(self, pool: CredentialPool) -> HealthReport:
        report = HealthReport()
        credentials = pool.credentials
        for position, credential in enumerate(credentials):
            if position > 0 and self.delay_seconds > 0:
                await self._context.sleep(self.delay_seconds)
            result = await self.probe(credential)
            self._apply(pool, result)
            report.results.append(result)

        logger.info(
            "health_check_complete healthy=%d unhealthy=%d model=%s",
            len(report.healthy),
            len(report.unhealthy),
            self.probe_model,
        )
        if not report.healthy and self.raise_on_empty:
            raise NoHealthyCredentialsError(len(credentials))
        return report

    async def probe(self, credential: Credential) -> ProbeResult:
        started = self._context.now()
        try:
            await self._generator.generate(
                prompt=PROBE_PROMPT,
                temperature=PROBE_TEMPERATURE,
                model=self.probe_model,
                credential=credential,
                max_output_tokens=PROBE_MAX_OUTPUT_TOKENS,
            )
        except Exception as exc:
            classification = self._context.classifier.classify(exc)
            message = str(exc).split("\n")[0][:200]
            logger.warning(
                "health_probe_failed credential=%s kind=%s error=%s",
                credential.label,
                classification.kind.value,
                message,
            )
            return ProbeResult(
                credential=credential,
                healthy=False,
                latency_ms=(self._context.now() - started) * 1000.0,
                error_kind=classification.kind,
                error=message,
            )
        logger.info("health_probe_ok credential=%s", credential.label)
        return ProbeResult(
            credential=credential,
            healthy=True,
            latency_ms=(self._context.now() - started) * 1000.0,
        )

    def _apply(self, pool: CredentialPool, result: ProbeResult) -> None:
        if result.healthy:
            pool.record_success(result.credential)
        elif result.error_kind in _CREDENTIAL_FAILURES:
            pool.record_failure(result.credential, result.error_kind)
        self._context.emit(
            "health_probe",
            credential=result.credential.label,
            healthy=result.healthy,
            kind=result.error_kind.value if result.error_kind else None,
        )
