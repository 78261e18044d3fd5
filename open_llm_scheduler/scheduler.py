from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from open_llm_scheduler.audit import JsonlEventLog
from open_llm_scheduler.batch import (
    BatchCoordinator,
    BatchResult,
    ProgressCallback,
    WorkItem,
)
from open_llm_scheduler.config import ModelCatalog, load_model_catalog
from open_llm_scheduler.context import Clock, SchedulerContext
from open_llm_scheduler.credentials import Credential, CredentialPool
from open_llm_scheduler.errors import ErrorClassifier
from open_llm_scheduler.executor import (
    ExecutionResult,
    ExecutorPolicy,
    ExhaustionHandler,
    RequestExecutor,
)
from open_llm_scheduler.generation import GeminiTextGenerator, TextGenerator
from open_llm_scheduler.health import HealthChecker, HealthReport
from open_llm_scheduler.model_chain import ModelChain
from open_llm_scheduler.quota import QuotaTracker
from open_llm_scheduler.settings import Settings
from open_llm_scheduler.snapshot import SnapshotStore

logger = logging.getLogger("open_llm_scheduler")


class Scheduler:
    """One independent scheduler instance: pool, quotas, chain and executor."""

    def __init__(
        self,
        settings: Settings,
        *,
        secrets: Sequence[str] | None = None,
        generator: TextGenerator | None = None,
        catalog: ModelCatalog | None = None,
        clock: Clock | None = None,
        classifier: ErrorClassifier | None = None,
        strategy: str | None = None,
        on_exhausted: ExhaustionHandler | None = None,
    ) -> None:
        self.settings = settings
        self._event_log = (
            JsonlEventLog(settings.scheduler_event_log_path)
            if settings.scheduler_event_log_enabled
            else None
        )
        self.context = SchedulerContext(
            clock=clock,
            classifier=classifier,
            event_log=self._event_log,
            reset_timezone=settings.daily_reset_timezone,
        )
        self.catalog = catalog or load_model_catalog(settings.model_catalog_path)
        self.pool = CredentialPool.from_secrets(
            secrets if secrets is not None else settings.api_keys_list,
            self.context,
        )
        self.quota = QuotaTracker(self.context, self.catalog.default_limits)
        self.chain = ModelChain(
            self.catalog,
            self.context,
            self.pool,
            self.quota,
            strategy=strategy or settings.default_strategy,
            primary_model=settings.primary_model,
        )
        self._owns_generator = generator is None
        self.generator: TextGenerator = generator or GeminiTextGenerator(
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.generation_timeout_seconds,
            connect_timeout_seconds=settings.generation_connect_timeout_seconds,
        )
        self.executor = RequestExecutor(
            context=self.context,
            pool=self.pool,
            quota=self.quota,
            chain=self.chain,
            generator=self.generator,
            policy=ExecutorPolicy(
                quota_cooldown_seconds=settings.quota_cooldown_seconds,
                min_request_interval_seconds=settings.min_request_interval_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
                max_output_tokens=settings.max_output_tokens,
                estimated_output_tokens=settings.estimated_output_tokens,
                enforce_local_quota=settings.enforce_local_quota,
                smart_selection=settings.smart_selection,
            ),
            on_exhausted=on_exhausted,
        )
        self.health_checker = HealthChecker(
            context=self.context,
            generator=self.generator,
            probe_model=settings.health_probe_model,
            delay_seconds=settings.health_probe_delay_seconds,
        )
        self.coordinator = BatchCoordinator(
            context=self.context,
            pool=self.pool,
            quota=self.quota,
            executor=self.executor,
            batch_size=settings.batch_size,
            max_concurrent_batches=settings.max_concurrent_batches,
            granularity=settings.assignment_granularity,
        )
        self._snapshots = (
            SnapshotStore(settings.scheduler_snapshot_path)
            if settings.scheduler_snapshot_path
            else None
        )
        self.restore_snapshot()

    def set_on_exhausted(self, handler: ExhaustionHandler | None) -> None:
        """Install the coroutine asked for a new secret when every credential is unusable."""
        self.executor.on_exhausted = handler

    async def health_check(self) -> HealthReport:
        return await self.pool.run_health_check(self.health_checker)

    async def run(
        self,
        items: Sequence[WorkItem],
        *,
        phase: str = "processing",
        strategy: str | None = None,
        temperature: float | None = None,
        progress_callback: ProgressCallback | None = None,
        skip_health_check: bool = False,
        deadline_seconds: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[BatchResult]:
        if strategy and strategy != self.chain.strategy:
            self.chain.use_strategy(strategy)

        if skip_health_check:
            healthy: list[Credential] = self.pool.get_all_available()
        else:
            healthy = (await self.health_check()).healthy

        deadline = (
            self.context.now() + deadline_seconds if deadline_seconds is not None else None
        )
        try:
            return await self.coordinator.run(
                items,
                healthy,
                phase=phase,
                temperature=self.settings.temperature if temperature is None else temperature,
                progress_callback=progress_callback,
                deadline=deadline,
                cancel=cancel,
            )
        finally:
            self.save_snapshot()

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float | None = None,
        deadline_seconds: float | None = None,
    ) -> ExecutionResult:
        deadline = (
            self.context.now() + deadline_seconds if deadline_seconds is not None else None
        )
        return await self.executor.execute_detailed(
            prompt,
            self.settings.temperature if temperature is None else temperature,
            deadline=deadline,
        )

    def diagnostics(self) -> dict[str, Any]:
        return {
            "strategy": self.chain.strategy,
            "active_model": self.chain.active_model,
            "counters": self.context.diagnostics.snapshot(),
            "credentials": self.pool.statistics(),
            "usage": self.context.usage.daily_summary(self.context.today()),
        }

    def restore_snapshot(self) -> None:
        if self._snapshots is None:
            return
        payload = self._snapshots.load()
        if not payload:
            return
        credentials = self.pool.restore_state(payload.get("credentials") or {})
        quotas = self.quota.restore_state(payload.get("quotas") or {}, self.pool.credentials)
        logger.info(
            "snapshot_restored path=%s credentials=%d quota_windows=%d",
            self._snapshots.path,
            credentials,
            quotas,
        )

    def save_snapshot(self) -> None:
        if self._snapshots is None:
            return
        self._snapshots.save(
            credentials=self.pool.export_state(),
            quotas=self.quota.export_state(),
            saved_at=self.context.now(),
        )

    async def aclose(self) -> None:
        if self._owns_generator and isinstance(self.generator, GeminiTextGenerator):
            await self.generator.aclose()
        if self._event_log is not None:
            self._event_log.close()
