from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from open_llm_scheduler.config import ModelCatalog, ModelProfile

if TYPE_CHECKING:
    from open_llm_scheduler.context import SchedulerContext
    from open_llm_scheduler.credentials import CredentialPool
    from open_llm_scheduler.quota import QuotaTracker

logger = logging.getLogger("open_llm_scheduler.model_chain")

SPEED = "speed"
QUALITY = "quality"


class ModelChain:
    """Prioritized fallback list of models with exactly one active entry.

    Advancing to the next model resets every rate-limited credential to
    active and refreshes the quota limits for the new model. Credentials
    that are quota-exhausted or invalid keep their status.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        context: SchedulerContext,
        pool: CredentialPool,
        quota: QuotaTracker,
        *,
        strategy: str = SPEED,
        primary_model: str | None = None,
    ) -> None:
        self._catalog = catalog
        self._context = context
        self._pool = pool
        self._quota = quota
        self._primary_model = primary_model
        self._strategy = strategy
        self._profiles: list[ModelProfile] = catalog.profiles_for(strategy, primary_model)
        self._index = 0
        self._quota.activate(self.active, self._pool.credentials)

    @property
    def strategy(self) -> str:
        return self._strategy

    @property
    def profiles(self) -> Sequence[ModelProfile]:
        return tuple(self._profiles)

    @property
    def active_index(self) -> int:
        return self._index

    @property
    def active(self) -> ModelProfile:
        return self._profiles[self._index]

    @property
    def active_model(self) -> str:
        return self.active.name

    def has_next(self) -> bool:
        return self._index + 1 < len(self._profiles)

    def try_next(self, expected: str | None = None) -> bool:
        """Advance to the next model.

        With ``expected`` set, only advances while ``expected`` is still the
        active model; a caller that lost the race sees ``True`` and simply
        retries on whatever model is now active.
        """
        with self._context.lock:
            if expected is not None and expected != self.active_model:
                return True
            if not self.has_next():
                logger.warning(
                    "model_chain_exhausted strategy=%s model=%s",
                    self._strategy,
                    self.active_model,
                )
                return False
            previous = self.active_model
            self._index += 1
            self._context.diagnostics.increment("model_fallbacks")
            self._pool.reset_rate_limited()
            self._quota.activate(self.active, self._pool.credentials)
        logger.info(
            "model_fallback strategy=%s from=%s to=%s index=%d",
            self._strategy,
            previous,
            self.active_model,
            self._index,
        )
        self._context.emit(
            "model_fallback",
            strategy=self._strategy,
            previous=previous,
            model=self.active_model,
            index=self._index,
        )
        return True

    def restart(self) -> None:
        with self._context.lock:
            self._index = 0
            self._quota.activate(self.active, self._pool.credentials)
        logger.info(
            "model_chain_restart strategy=%s model=%s", self._strategy, self.active_model
        )

    def use_strategy(self, strategy: str) -> None:
        profiles = self._catalog.profiles_for(strategy, self._primary_model)
        with self._context.lock:
            self._strategy = strategy
            self._profiles = profiles
            self._index = 0
            self._quota.activate(self.active, self._pool.credentials)
        logger.info("model_chain_strategy strategy=%s model=%s", strategy, self.active_model)
