from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from open_llm_scheduler.context import SchedulerContext
from open_llm_scheduler.credentials import Credential, CredentialPool, CredentialStatus
from open_llm_scheduler.errors import (
    CredentialRejectedError,
    ErrorClassification,
    ErrorKind,
    NoHealthyCredentialsError,
    RequestCancelledError,
    RequestDeadlineExceededError,
    RetryBudgetExhaustedError,
)
from open_llm_scheduler.generation import TextGenerator
from open_llm_scheduler.model_chain import ModelChain
from open_llm_scheduler.parsing import estimate_tokens
from open_llm_scheduler.quota import QuotaTracker

logger = logging.getLogger("open_llm_scheduler.executor")

ExhaustionHandler = Callable[[], Awaitable[str | None]]


@dataclass(slots=True)
class ExecutorPolicy:
    quota_cooldown_seconds: float = 60.0
    min_request_interval_seconds: float = 1.0
    network_backoff_base_seconds: float = 1.0
    unknown_backoff_base_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    max_unknown_attempts: int = 5
    max_iterations: int | None = None
    max_output_tokens: int | None = 2048
    estimated_output_tokens: int = 1000
    enforce_local_quota: bool = True
    smart_selection: bool = False


@dataclass(slots=True)
class ExecutionResult:
    text: str
    model: str
    credential: str
    tokens_used: int
    attempts: int


@dataclass(slots=True)
class _AttemptState:
    pinned: Credential | None
    healthy: list[Credential]
    deadline: float | None
    cancel: asyncio.Event | None
    iterations: int = 0
    network_failures: int = 0
    unknown_failures: int = 0
    last_error: str | None = None


class RequestExecutor:
    """Runs one prompt to completion against the credential pool.

    Transient failures are absorbed by rotating credentials, falling back
    along the model chain, backing off, or cooling down and restarting the
    chain. The only failure surfaced to the caller for a live pool is
    ``CredentialRejectedError`` when a pinned credential is rejected.

    When no credential in the pool is usable, the optional ``on_exhausted``
    coroutine is asked for a fresh secret before falling back to the chain
    and the cooldown. Concurrent requests share a single pending ask.
    """

    def __init__(
        self,
        *,
        context: SchedulerContext,
        pool: CredentialPool,
        quota: QuotaTracker,
        chain: ModelChain,
        generator: TextGenerator,
        policy: ExecutorPolicy | None = None,
        on_exhausted: ExhaustionHandler | None = None,
    ) -> None:
        self._context = context
        self._pool = pool
        self._quota = quota
        self._chain = chain
        self._generator = generator
        self._policy = policy or ExecutorPolicy()
        self._next_slot = 0.0
        self._cooldown_until = 0.0
        self._restarted_for = 0.0
        self.on_exhausted = on_exhausted
        self._replenishing: asyncio.Task[bool] | None = None

    @property
    def policy(self) -> ExecutorPolicy:
        return self._policy

    async def execute(
        self,
        prompt: str,
        temperature: float = 0.3,
        pinned: Credential | None = None,
        *,
        healthy: Sequence[Credential] | None = None,
        deadline: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> str:
        result = await self.execute_detailed(
            prompt,
            temperature,
            pinned,
            healthy=healthy,
            deadline=deadline,
            cancel=cancel,
        )
        return result.text

    async def execute_detailed(
        self,
        prompt: str,
        temperature: float = 0.3,
        pinned: Credential | None = None,
        *,
        healthy: Sequence[Credential] | None = None,
        deadline: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        state = _AttemptState(
            pinned=pinned,
            healthy=list(healthy) if healthy is not None else [],
            deadline=deadline,
            cancel=cancel,
        )
        base_estimate = estimate_tokens(prompt, "") + self._policy.estimated_output_tokens

        while True:
            state.iterations += 1
            self._check_limits(state)
            model = self._chain.active_model
            # Prompts larger than a whole token window still go out on an idle window.
            estimate = min(base_estimate, self._quota.limits_for(model).tpm - 1)
            credential = self._select(state, model, estimate)
            if credential is None:
                if await self._replenish():
                    continue
                if self._pool.all_invalid():
                    raise NoHealthyCredentialsError(len(self._pool))
                await self._recover_from_exhaustion(model, state)
                continue

            if self._policy.enforce_local_quota and not self._quota.has_headroom(
                credential, model, estimate
            ):
                await self._wait_for_headroom(credential, model, estimate, state)
                continue

            if state.pinned is None:
                await self._respect_spacing(state)

            logger.debug(
                "executor_attempt iteration=%d credential=%s model=%s pinned=%s",
                state.iterations,
                credential.label,
                model,
                state.pinned is not None,
            )
            try:
                response = await self._generator.generate(
                    prompt=prompt,
                    temperature=temperature,
                    model=model,
                    credential=credential,
                    max_output_tokens=self._policy.max_output_tokens,
                )
            except Exception as exc:
                classification = self._context.classifier.classify(exc)
                await self._handle_failure(exc, classification, credential, model, state)
                continue

            tokens = response.tokens_used or estimate_tokens(prompt, response.text)
            self._quota.record(credential, model, tokens)
            self._pool.record_success(credential)
            self._context.usage.record(
                credential=credential.label,
                model=model,
                tokens=tokens,
                day=self._context.today(),
            )
            self._context.diagnostics.increment("successful_calls")
            self._context.emit(
                "request_succeeded",
                credential=credential.label,
                model=model,
                tokens=tokens,
                attempts=state.iterations,
            )
            return ExecutionResult(
                text=response.text,
                model=model,
                credential=credential.label,
                tokens_used=tokens,
                attempts=state.iterations,
            )

    def _check_limits(self, state: _AttemptState) -> None:
        if state.cancel is not None and state.cancel.is_set():
            raise RequestCancelledError("request cancelled")
        if state.deadline is not None and self._context.now() >= state.deadline:
            raise RequestDeadlineExceededError(
                f"deadline exceeded after {state.iterations - 1} attempts"
            )
        limit = self._policy.max_iterations
        if limit is not None and state.iterations > limit:
            raise RetryBudgetExhaustedError(state.iterations - 1, state.last_error)

    def _select(
        self, state: _AttemptState, model: str, estimate: int
    ) -> Credential | None:
        if state.pinned is not None:
            pinned = state.pinned
            if pinned.status is CredentialStatus.INVALID:
                raise CredentialRejectedError(pinned.label)
            if self._pool.is_available(pinned):
                return pinned
            alternate = self._alternate_pinned(state)
            if alternate is not None:
                return alternate
            logger.info(
                "executor_unpin credential=%s reason=no_healthy_alternate", pinned.label
            )
            state.pinned = None

        candidates = self._pool.get_all_available()
        if not candidates:
            return None
        if not self._policy.enforce_local_quota:
            return candidates[0]

        with_headroom = [
            candidate
            for candidate in candidates
            if self._quota.has_headroom(candidate, model, estimate)
        ]
        if with_headroom:
            if self._policy.smart_selection:
                return max(
                    with_headroom,
                    key=lambda candidate: self._quota.remaining_pct(candidate, model),
                )
            return with_headroom[0]
        return min(
            candidates,
            key=lambda candidate: self._quota.seconds_until_headroom(
                candidate, model, estimate
            ),
        )

    def _alternate_pinned(self, state: _AttemptState) -> Credential | None:
        current = state.pinned
        for candidate in state.healthy:
            if candidate is current:
                continue
            if self._pool.is_available(candidate):
                state.pinned = candidate
                self._context.diagnostics.increment("key_rotations")
                logger.info(
                    "executor_repin from=%s to=%s",
                    current.label if current else None,
                    candidate.label,
                )
                self._context.emit(
                    "key_rotation",
                    previous=current.label if current else None,
                    credential=candidate.label,
                    pinned=True,
                )
                return candidate
        return None

    async def _wait_for_headroom(
        self,
        credential: Credential,
        model: str,
        estimate: int,
        state: _AttemptState,
    ) -> None:
        blocking = self._quota.blocking_windows(credential, model, estimate)
        if "rpd" in blocking:
            logger.info(
                "executor_daily_quota_reached credential=%s model=%s",
                credential.label,
                model,
            )
            self._pool.record_failure(credential, ErrorKind.RATE_LIMIT)
            self._context.diagnostics.increment("key_rotations")
            return
        wait = self._quota.seconds_until_headroom(credential, model, estimate)
        logger.info(
            "executor_quota_wait credential=%s model=%s windows=%s seconds=%.1f",
            credential.label,
            model,
            ",".join(blocking),
            wait,
        )
        self._context.emit(
            "quota_wait",
            credential=credential.label,
            model=model,
            windows=blocking,
            seconds=wait,
        )
        await self._sleep(wait, state)

    async def _respect_spacing(self, state: _AttemptState) -> None:
        rpm = self._chain.active.limits.rpm
        interval = max(self._policy.min_request_interval_seconds, 60.0 / rpm)
        with self._context.lock:
            now = self._context.now()
            slot = max(now, self._next_slot)
            self._next_slot = slot + interval
        if slot > now:
            await self._sleep(slot - now, state)

    async def _handle_failure(
        self,
        exc: Exception,
        classification: ErrorClassification,
        credential: Credential,
        model: str,
        state: _AttemptState,
    ) -> None:
        kind = classification.kind
        state.last_error = str(exc).split("\n")[0][:200]
        self._context.diagnostics.record_failure(kind.value)
        logger.warning(
            "executor_attempt_failed iteration=%d credential=%s model=%s kind=%s rule=%s error=%s",
            state.iterations,
            credential.label,
            model,
            kind.value,
            classification.matched_rule,
            state.last_error,
        )
        self._context.emit(
            "request_failed",
            credential=credential.label,
            model=model,
            kind=kind.value,
            rule=classification.matched_rule,
            iteration=state.iterations,
        )

        if kind is ErrorKind.INVALID_MODEL:
            await self._recover_from_exhaustion(model, state)
            return

        if kind in (ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_EXCEEDED):
            self._pool.record_failure(credential, kind)
            self._context.diagnostics.increment("key_rotations")
            if state.pinned is None:
                return
            if self._alternate_pinned(state) is not None:
                return
            if self._chain.try_next(expected=model):
                return
            logger.info(
                "executor_unpin credential=%s reason=chain_exhausted", credential.label
            )
            state.pinned = None
            return

        if kind is ErrorKind.NETWORK:
            delay = min(
                self._policy.max_backoff_seconds,
                self._policy.network_backoff_base_seconds * 2**state.network_failures,
            )
            state.network_failures += 1
            self._context.diagnostics.increment("retries")
            await self._sleep(delay, state)
            return

        if kind is ErrorKind.AUTH:
            self._pool.record_failure(credential, kind)
            if state.pinned is not None:
                raise CredentialRejectedError(credential.label, state.last_error) from exc
            self._context.diagnostics.increment("key_rotations")
            return

        self._pool.record_failure(credential, kind)
        state.unknown_failures += 1
        if state.unknown_failures >= self._policy.max_unknown_attempts:
            state.unknown_failures = 0
            await self._recover_from_exhaustion(model, state)
            return
        delay = min(
            self._policy.max_backoff_seconds,
            self._policy.unknown_backoff_base_seconds * 2 ** (state.unknown_failures - 1)
            + self._context.rng.uniform(0.0, 1.0),
        )
        self._context.diagnostics.increment("retries")
        await self._sleep(delay, state)

    async def _replenish(self) -> bool:
        if self.on_exhausted is None:
            return False
        task = self._replenishing
        if task is None or task.done():
            task = asyncio.ensure_future(self._ask_for_credential(self.on_exhausted))
            self._replenishing = task
        return await asyncio.shield(task)

    async def _ask_for_credential(self, handler: ExhaustionHandler) -> bool:
        if self._pool.has_available():
            return True
        logger.warning("executor_credentials_exhausted count=%d", len(self._pool))
        secret = await handler()
        if not secret or not secret.strip():
            logger.info("executor_replenish_declined")
            return False
        credential = self._pool.add(secret)
        if not self._pool.is_available(credential):
            logger.info(
                "executor_replenish_unusable credential=%s status=%s",
                credential.label,
                credential.status.value,
            )
            return False
        self._chain.restart()
        self._context.emit("credential_replenished", credential=credential.label)
        return True

    async def _recover_from_exhaustion(self, model: str, state: _AttemptState) -> None:
        if self._chain.try_next(expected=model):
            return
        await self._cooldown(state)

    async def _cooldown(self, state: _AttemptState) -> None:
        with self._context.lock:
            now = self._context.now()
            if self._cooldown_until > now:
                until = self._cooldown_until
            else:
                until = now + self._policy.quota_cooldown_seconds
                self._cooldown_until = until
                self._context.diagnostics.increment("cooldowns")
                logger.warning(
                    "executor_quota_cooldown seconds=%.1f strategy=%s model=%s",
                    self._policy.quota_cooldown_seconds,
                    self._chain.strategy,
                    self._chain.active_model,
                )
                self._context.emit(
                    "quota_cooldown",
                    seconds=self._policy.quota_cooldown_seconds,
                    model=self._chain.active_model,
                    until=until,
                )
        await self._sleep(until - now, state)
        with self._context.lock:
            if self._restarted_for == until:
                return
            self._restarted_for = until
            self._pool.reset_rate_limited()
            self._pool.revive_errored()
            self._chain.restart()

    async def _sleep(self, seconds: float, state: _AttemptState) -> None:
        if seconds <= 0:
            return
        if state.deadline is not None:
            remaining = state.deadline - self._context.now()
            if remaining <= 0:
                raise RequestDeadlineExceededError("deadline exceeded while waiting")
            if seconds >= remaining:
                await self._context.sleep(remaining)
                raise RequestDeadlineExceededError("deadline exceeded while waiting")
        await self._context.sleep(seconds)
        if state.cancel is not None and state.cancel.is_set():
            raise RequestCancelledError("request cancelled")
