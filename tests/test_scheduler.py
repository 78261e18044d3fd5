from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from open_llm_scheduler import Scheduler, WorkItem
from open_llm_scheduler.batch import BatchProgress, ProgressStatus
from open_llm_scheduler.credentials import Credential, CredentialStatus
from open_llm_scheduler.errors import GenerationError
from tests.scheduler_test_utils import (
    SECRETS,
    START_TIME,
    FakeClock,
    ScriptedGenerator,
    make_catalog,
    make_settings,
)


def _scheduler(
    respond: Any = None, *, strategy: str | None = None, **settings: Any
) -> tuple[Scheduler, ScriptedGenerator, FakeClock]:
    clock = FakeClock()
    generator = ScriptedGenerator(respond)
    scheduler = Scheduler(
        make_settings(**settings),
        generator=generator,
        catalog=make_catalog(),
        clock=clock,
        strategy=strategy,
    )
    return scheduler, generator, clock


def _items(count: int) -> list[WorkItem]:
    return [
        WorkItem(id=f"paper-{index}", prompt=f"Assess paper {index}")
        for index in range(count)
    ]


def test_unhealthy_credential_is_never_assigned_work() -> None:
    def respond(credential: Credential, model: str, prompt: str) -> Any:
        if credential.label == "Key 1":
            return GenerationError("[400] API key not valid.", status_code=400)
        return "OK"

    scheduler, generator, _ = _scheduler(respond)

    results = asyncio.run(scheduler.run(_items(6)))

    assert all(result.ok for result in results)
    assert len(generator.calls_for("Key 1")) == 1
    assert {result.credential for result in results} == {"Key 2", "Key 3"}
    assert scheduler.pool.credentials[0].status is CredentialStatus.INVALID


def test_exhausted_single_model_strategy_waits_and_recovers() -> None:
    recovered_at = START_TIME + 30
    clock_holder: dict[str, FakeClock] = {}

    def respond(credential: Credential, model: str, prompt: str) -> Any:
        if clock_holder["clock"].now() < recovered_at:
            return GenerationError("[429] Resource has been exhausted", status_code=429)
        return "OK"

    scheduler, _, clock = _scheduler(respond, strategy="single")
    clock_holder["clock"] = clock
    updates: list[BatchProgress] = []

    results = asyncio.run(
        scheduler.run(_items(4), skip_health_check=True, progress_callback=updates.append)
    )

    assert all(result.ok for result in results)
    assert scheduler.context.diagnostics.cooldowns >= 1
    assert ProgressStatus.WAITING_FOR_QUOTA in {update.status for update in updates}
    assert updates[-1].status is ProgressStatus.COMPLETED
    assert clock.now() >= START_TIME + 60


def test_rejected_pool_is_replenished_by_the_exhaustion_handler() -> None:
    replacement = "AIzaSyZ-replacement-test-key-0009"

    def respond(credential: Credential, model: str, prompt: str) -> Any:
        if credential.secret == SECRETS[0]:
            return GenerationError("[400] API key not valid.", status_code=400)
        return "OK"

    scheduler, _, _ = _scheduler(respond, gemini_api_keys=SECRETS[0])
    asks: list[int] = []

    async def ask() -> str:
        asks.append(1)
        return replacement

    scheduler.set_on_exhausted(ask)

    results = asyncio.run(scheduler.run(_items(3), skip_health_check=True))

    assert all(result.ok for result in results)
    assert {result.credential for result in results} == {"Key 2"}
    assert asks == [1]
    assert [row["status"] for row in scheduler.diagnostics()["credentials"]] == [
        "invalid",
        "active",
    ]


def test_invalid_primary_model_falls_back_once() -> None:
    def respond(credential: Credential, model: str, prompt: str) -> Any:
        if model == "model-a":
            return GenerationError(
                "[404] models/model-a is not found for API version v1beta",
                status_code=404,
            )
        return "OK"

    scheduler, _, _ = _scheduler(respond)

    results = asyncio.run(scheduler.run(_items(5), skip_health_check=True))

    assert {result.model for result in results} == {"model-b"}
    assert scheduler.context.diagnostics.model_fallbacks == 1
    assert scheduler.diagnostics()["active_model"] == "model-b"


def test_run_can_switch_strategy() -> None:
    scheduler, _, _ = _scheduler()

    results = asyncio.run(
        scheduler.run(_items(2), strategy="quality", skip_health_check=True)
    )

    assert scheduler.chain.strategy == "quality"
    assert {result.model for result in results} == {"model-b"}


def test_generate_returns_execution_details() -> None:
    scheduler, _, _ = _scheduler(lambda credential, model, prompt: "Confidence: 0.8")

    result = asyncio.run(scheduler.generate("Summarise the corpus"))

    assert result.text == "Confidence: 0.8"
    assert result.model == "model-a"
    diagnostics = scheduler.diagnostics()
    assert diagnostics["counters"]["successful_calls"] == 1
    assert diagnostics["usage"]["total_requests"] == 1
    assert SECRETS[0] not in str(diagnostics)


def test_schedulers_are_independent() -> None:
    first, _, _ = _scheduler()
    second, _, _ = _scheduler()

    asyncio.run(first.generate("hello"))

    assert first.context.diagnostics.successful_calls == 1
    assert second.context.diagnostics.successful_calls == 0
    assert second.pool.credentials[0].request_count == 0


def test_snapshot_survives_restart(tmp_path: Path) -> None:
    snapshot_path = tmp_path / "state" / "scheduler.yaml"
    scheduler, _, clock = _scheduler(scheduler_snapshot_path=str(snapshot_path))

    asyncio.run(scheduler.run(_items(3), skip_health_check=True))

    assert snapshot_path.exists()
    assert SECRETS[0] not in snapshot_path.read_text(encoding="utf-8")

    restored = Scheduler(
        make_settings(scheduler_snapshot_path=str(snapshot_path)),
        generator=ScriptedGenerator(),
        catalog=make_catalog(),
        clock=clock,
    )
    assert [credential.request_count for credential in restored.pool.credentials] == [1, 1, 1]
    usage = restored.quota.snapshot(restored.pool.credentials[0])
    assert usage["Key 1"]["model-a"]["rpd"]["used"] == 1


def test_event_log_is_written_without_secrets_or_prompts(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    scheduler, _, _ = _scheduler(
        scheduler_event_log_enabled=True,
        scheduler_event_log_path=str(log_path),
    )

    async def _run() -> None:
        await scheduler.generate("very private prompt")
        await scheduler.aclose()

    asyncio.run(_run())

    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert "request_succeeded" in {record["event"] for record in records}
    content = log_path.read_text(encoding="utf-8")
    assert SECRETS[0] not in content
    assert "very private prompt" not in content
