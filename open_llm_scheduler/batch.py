from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from open_llm_scheduler.context import SchedulerContext
from open_llm_scheduler.credentials import Credential, CredentialPool, CredentialStatus
from open_llm_scheduler.errors import (
    CredentialRejectedError,
    NoHealthyCredentialsError,
    RequestCancelledError,
    RequestDeadlineExceededError,
    RetryBudgetExhaustedError,
)
from open_llm_scheduler.executor import ExecutionResult, RequestExecutor
from open_llm_scheduler.parsing import extract_confidence, parse_response
from open_llm_scheduler.quota import QuotaTracker

logger = logging.getLogger("open_llm_scheduler.batch")

EVALUATION_FAILED = "evaluation_failed"
DEADLINE_EXCEEDED = "deadline_exceeded"
CANCELLED = "cancelled"


class AssignmentGranularity(str, Enum):
    ITEM = "item"
    BATCH = "batch"


class ProgressStatus(str, Enum):
    RUNNING = "running"
    WAITING_FOR_QUOTA = "waiting_for_quota"
    COMPLETED = "completed"


@dataclass(slots=True)
class WorkItem:
    id: str
    prompt: str
    task_type: str = "generic"


@dataclass(slots=True)
class BatchResult:
    id: str
    parsed_result: dict[str, Any] | None
    error: str | None = None
    confidence: float | None = None
    tokens_used: int = 0
    model: str | None = None
    credential: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BatchProgress:
    phase: str
    status: ProgressStatus
    total_items: int
    processed_items: int
    current_batch: int
    total_batches: int
    time_elapsed_ms: int
    estimated_remaining_ms: int | None
    quota_snapshot: list[dict[str, Any]] = field(default_factory=list)
    detail: str | None = None


ProgressCallback = Callable[[BatchProgress], None]


def split_batches(items: Sequence[WorkItem], batch_size: int) -> list[list[WorkItem]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [list(items[start : start + batch_size]) for start in range(0, len(items), batch_size)]


def estimate_remaining_ms(processed: int, total: int, elapsed_ms: float) -> int | None:
    if processed <= 0 or elapsed_ms <= 0:
        return None
    items_per_ms = processed / elapsed_ms
    return int(round((total - processed) / items_per_ms))


class _RunTracker:
    def __init__(
        self,
        *,
        phase: str,
        total_items: int,
        total_batches: int,
        started_at: float,
        callback: ProgressCallback | None,
        snapshot: Callable[[], list[dict[str, Any]]],
        context: SchedulerContext,
    ) -> None:
        self.phase = phase
        self.total_items = total_items
        self.total_batches = total_batches
        self.started_at = started_at
        self.processed = 0
        self.completed_batches = 0
        self._callback = callback
        self._snapshot = snapshot
        self._context = context

    def publish(self, status: ProgressStatus, detail: str | None = None) -> BatchProgress:
        elapsed_ms = max(0.0, (self._context.now() - self.started_at) * 1000.0)
        progress = BatchProgress(
            phase=self.phase,
            status=status,
            total_items=self.total_items,
            processed_items=self.processed,
            current_batch=self.completed_batches,
            total_batches=self.total_batches,
            time_elapsed_ms=int(elapsed_ms),
            estimated_remaining_ms=(
                0
                if status is ProgressStatus.COMPLETED
                else estimate_remaining_ms(self.processed, self.total_items, elapsed_ms)
            ),
            quota_snapshot=self._snapshot(),
            detail=detail,
        )
        self._context.emit(
            "batch_progress",
            phase=progress.phase,
            status=progress.status.value,
            processed=progress.processed_items,
            total=progress.total_items,
            current_batch=progress.current_batch,
            total_batches=progress.total_batches,
        )
        if self._callback is not None:
            try:
                self._callback(progress)
            except Exception:
                logger.exception("batch_progress_callback_failed phase=%s", self.phase)
        return progress

    def on_event(self, event: dict[str, Any]) -> None:
        if event.get("event") != "quota_cooldown":
            return
        detail = f"waiting {float(event.get('seconds') or 0):.0f}s for quota reset"
        self.publish(ProgressStatus.WAITING_FOR_QUOTA, detail)


class BatchCoordinator:
    """Fans work items out over the healthy credentials.

    Items are split into fixed-size batches that all run concurrently (up to
    ``max_concurrent_batches`` at a time). Each item is pinned to
    ``healthy[i % K]`` (or, with batch granularity, ``healthy[b % K]``) among
    the healthy credentials that are still valid when the item starts.
    Retrying is left entirely to the executor.
    """

    def __init__(
        self,
        *,
        context: SchedulerContext,
        pool: CredentialPool,
        quota: QuotaTracker,
        executor: RequestExecutor,
        batch_size: int = 20,
        max_concurrent_batches: int = 5,
        granularity: AssignmentGranularity | str = AssignmentGranularity.ITEM,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_concurrent_batches <= 0:
            raise ValueError("max_concurrent_batches must be positive")
        self._context = context
        self._pool = pool
        self._quota = quota
        self._executor = executor
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.granularity = AssignmentGranularity(granularity)

    async def run(
        self,
        items: Sequence[WorkItem],
        healthy: Sequence[Credential],
        *,
        phase: str = "processing",
        temperature: float = 0.3,
        progress_callback: ProgressCallback | None = None,
        deadline: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[BatchResult]:
        counts = Counter(item.id for item in items)
        duplicates = sorted(item_id for item_id, count in counts.items() if count > 1)
        if duplicates:
            raise ValueError(f"Duplicate work item ids: {', '.join(duplicates)}")
        batches = split_batches(items, self.batch_size)
        tracker = _RunTracker(
            phase=phase,
            total_items=len(items),
            total_batches=len(batches),
            started_at=self._context.now(),
            callback=progress_callback,
            snapshot=self.quota_snapshot,
            context=self._context,
        )
        healthy = list(healthy)
        logger.info(
            "batch_run_start phase=%s items=%d batches=%d healthy=%d granularity=%s",
            phase,
            len(items),
            len(batches),
            len(healthy),
            self.granularity.value,
        )
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)
        results: dict[str, BatchResult] = {}

        async def run_batch(batch_index: int, batch: list[WorkItem]) -> None:
            async with semaphore:
                offset = batch_index * self.batch_size
                batch_results = await asyncio.gather(
                    *(
                        self._run_item(
                            item,
                            offset + position,
                            batch_index,
                            healthy,
                            temperature=temperature,
                            deadline=deadline,
                            cancel=cancel,
                        )
                        for position, item in enumerate(batch)
                    )
                )
            for result in batch_results:
                results[result.id] = result
            tracker.processed += len(batch_results)
            tracker.completed_batches += 1
            tracker.publish(ProgressStatus.RUNNING)

        self._context.add_listener(tracker.on_event)
        try:
            await asyncio.gather(
                *(run_batch(index, batch) for index, batch in enumerate(batches))
            )
        finally:
            self._context.remove_listener(tracker.on_event)

        tracker.publish(ProgressStatus.COMPLETED)
        failed = sum(1 for result in results.values() if result.error)
        logger.info(
            "batch_run_complete phase=%s items=%d failed=%d",
            phase,
            len(results),
            failed,
        )
        return list(results.values())

    def assign(
        self, index: int, batch_index: int, healthy: Sequence[Credential]
    ) -> Credential | None:
        live = [
            credential
            for credential in healthy
            if credential.status is not CredentialStatus.INVALID and credential in self._pool
        ]
        slot = index if self.granularity is AssignmentGranularity.ITEM else batch_index
        return self._pool.get_by_round_robin(slot, candidates=live)

    def quota_snapshot(self) -> list[dict[str, Any]]:
        rows = []
        for credential in self._pool.credentials:
            rows.append(
                {
                    "credential": credential.label,
                    "masked": credential.masked,
                    "status": credential.status.value,
                    "remaining_pct": round(self._quota.remaining_pct(credential), 4),
                }
            )
        return rows

    async def _run_item(
        self,
        item: WorkItem,
        index: int,
        batch_index: int,
        healthy: list[Credential],
        *,
        temperature: float,
        deadline: float | None,
        cancel: asyncio.Event | None,
    ) -> BatchResult:
        pinned = self.assign(index, batch_index, healthy)
        while True:
            try:
                execution = await self._executor.execute_detailed(
                    item.prompt,
                    temperature,
                    pinned,
                    healthy=healthy,
                    deadline=deadline,
                    cancel=cancel,
                )
            except CredentialRejectedError as exc:
                substitute = self._substitute(exc.label, healthy)
                logger.info(
                    "batch_item_reassigned item=%s rejected=%s substitute=%s",
                    item.id,
                    exc.label,
                    substitute.label if substitute else "unpinned",
                )
                pinned = substitute
                continue
            except RequestDeadlineExceededError:
                return BatchResult(id=item.id, parsed_result=None, error=DEADLINE_EXCEEDED)
            except RequestCancelledError:
                return BatchResult(id=item.id, parsed_result=None, error=CANCELLED)
            except (NoHealthyCredentialsError, RetryBudgetExhaustedError) as exc:
                logger.error("batch_item_failed item=%s error=%s", item.id, exc)
                return BatchResult(id=item.id, parsed_result=None, error=EVALUATION_FAILED)
            return self._to_result(item, execution)

    def _substitute(
        self, rejected_label: str, healthy: list[Credential]
    ) -> Credential | None:
        for credential in healthy:
            if credential.label == rejected_label:
                continue
            if self._pool.is_available(credential):
                return credential
        return None

    @staticmethod
    def _to_result(item: WorkItem, execution: ExecutionResult) -> BatchResult:
        return BatchResult(
            id=item.id,
            parsed_result=parse_response(execution.text, item.task_type),
            confidence=extract_confidence(execution.text),
            tokens_used=execution.tokens_used,
            model=execution.model,
            credential=execution.credential,
        )
