from __future__ import annotations

import pytest

from open_llm_scheduler.context import SchedulerContext
from open_llm_scheduler.credentials import CredentialPool, CredentialStatus
from open_llm_scheduler.errors import ErrorKind, ModelCatalogError
from open_llm_scheduler.model_chain import ModelChain
from open_llm_scheduler.quota import QuotaTracker
from tests.scheduler_test_utils import SECRETS, FakeClock, make_catalog, make_context


def _chain(
    strategy: str = "speed", primary_model: str | None = None
) -> tuple[ModelChain, CredentialPool, QuotaTracker, SchedulerContext]:
    context = make_context(FakeClock())
    catalog = make_catalog(**{"model-c": {"rpm": 7, "tpm": 70000, "rpd": 70}})
    catalog.strategies["triple"] = ["model-a", "model-b", "model-c"]
    pool = CredentialPool.from_secrets(SECRETS, context)
    quota = QuotaTracker(context, catalog.default_limits)
    chain = ModelChain(
        catalog, context, pool, quota, strategy=strategy, primary_model=primary_model
    )
    return chain, pool, quota, context


def test_chain_starts_at_first_model_and_activates_quota() -> None:
    chain, _, quota, _ = _chain()

    assert chain.active_index == 0
    assert chain.active_model == "model-a"
    assert quota.active_model == "model-a"


def test_try_next_resets_rate_limited_but_not_other_states() -> None:
    chain, pool, quota, _ = _chain("triple")
    limited, exhausted, invalid = pool.credentials
    pool.record_failure(limited, ErrorKind.RATE_LIMIT)
    pool.record_failure(exhausted, ErrorKind.QUOTA_EXCEEDED)
    pool.record_failure(invalid, ErrorKind.AUTH)

    assert chain.try_next() is True

    assert chain.active_model == "model-b"
    assert quota.active_model == "model-b"
    assert limited.status is CredentialStatus.ACTIVE
    assert exhausted.status is CredentialStatus.QUOTA_EXCEEDED
    assert invalid.status is CredentialStatus.INVALID


def test_try_next_returns_false_at_end_of_chain() -> None:
    chain, _, _, _ = _chain("single")

    assert chain.has_next() is False
    assert chain.try_next() is False
    assert chain.active_model == "model-a"


def test_expected_model_makes_advance_happen_once() -> None:
    chain, _, _, context = _chain("triple")

    assert chain.try_next(expected="model-a") is True
    assert chain.try_next(expected="model-a") is True
    assert chain.try_next(expected="model-a") is True

    assert chain.active_model == "model-b"
    assert context.diagnostics.model_fallbacks == 1


def test_restart_and_use_strategy() -> None:
    chain, _, quota, _ = _chain("triple")
    chain.try_next()
    chain.try_next()
    assert chain.active_model == "model-c"
    assert quota.limits_for("model-c").rpm == 7

    chain.restart()
    assert chain.active_index == 0
    assert quota.active_model == "model-a"

    chain.use_strategy("quality")
    assert chain.strategy == "quality"
    assert [profile.name for profile in chain.profiles] == ["model-b", "model-a"]
    assert chain.active_model == "model-b"


def test_primary_model_is_moved_to_front() -> None:
    chain, _, _, _ = _chain("speed", primary_model="model-b")

    assert [profile.name for profile in chain.profiles] == ["model-b", "model-a"]


def test_unknown_strategy_is_rejected() -> None:
    chain, _, _, _ = _chain()
    with pytest.raises(ModelCatalogError):
        chain.use_strategy("cheapest")
