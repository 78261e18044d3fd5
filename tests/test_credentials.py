from __future__ import annotations

from typing import Any

import pytest

from open_llm_scheduler.credentials import (
    CredentialPool,
    CredentialStatus,
    mask_secret,
    secret_fingerprint,
)
from open_llm_scheduler.errors import ErrorKind
from tests.scheduler_test_utils import SECRETS, FakeClock, make_context


def _pool(clock: FakeClock | None = None) -> CredentialPool:
    return CredentialPool.from_secrets(SECRETS, make_context(clock))


def test_from_secrets_strips_dedupes_and_labels() -> None:
    pool = CredentialPool.from_secrets(
        [f" {SECRETS[0]} ", "", SECRETS[1], SECRETS[0], "   "], make_context()
    )

    assert [credential.label for credential in pool.credentials] == ["Key 1", "Key 2"]
    assert pool.credentials[0].secret == SECRETS[0]


def test_from_secrets_requires_at_least_one_secret() -> None:
    with pytest.raises(ValueError):
        CredentialPool.from_secrets(["", "  "], make_context())


def test_mask_secret_hides_middle_and_short_secrets() -> None:
    assert mask_secret("AIzaSyA-first-test-key-0001") == "AIzaSyA-" + "*" * 15 + "0001"
    assert mask_secret("short-key") == "*********"
    assert len(secret_fingerprint(SECRETS[0])) == 32


def test_credential_repr_never_contains_secret() -> None:
    pool = _pool()
    assert SECRETS[0] not in repr(pool.credentials[0])


def test_available_set_is_non_empty_while_any_credential_is_active() -> None:
    pool = _pool()
    first, second, third = pool.credentials
    pool.record_failure(first, ErrorKind.AUTH)
    pool.record_failure(second, ErrorKind.QUOTA_EXCEEDED)

    assert pool.get_all_available() == [third]
    assert pool.get_current_available() is third

    pool.record_failure(third, ErrorKind.RATE_LIMIT)
    assert pool.get_all_available() == []
    assert pool.get_current_available() is None


def test_rate_limited_credential_is_promoted_once_reset_passes() -> None:
    clock = FakeClock()
    context = make_context(clock)
    pool = CredentialPool.from_secrets(SECRETS, context)
    events: list[dict[str, Any]] = []
    context.add_listener(events.append)
    credential = pool.credentials[0]

    pool.record_failure(credential, ErrorKind.RATE_LIMIT)
    assert credential.reset_at == clock.now() + 90
    assert credential not in pool.get_all_available()

    clock.advance(89)
    assert credential not in pool.get_all_available()

    clock.advance(1)
    assert credential in pool.get_all_available()
    assert credential.status is CredentialStatus.ACTIVE
    assert credential.reset_at is None
    assert credential.error_count == 0

    pool.get_all_available()
    promotions = [
        event
        for event in events
        if event["event"] == "credential_status" and event["status"] == "active"
    ]
    assert len(promotions) == 1


def test_quota_exceeded_waits_an_hour_and_is_not_downgraded() -> None:
    clock = FakeClock()
    pool = _pool(clock)
    credential = pool.credentials[0]

    pool.record_failure(credential, ErrorKind.QUOTA_EXCEEDED)
    assert credential.status is CredentialStatus.QUOTA_EXCEEDED
    assert credential.reset_at == clock.now() + 3600

    pool.record_failure(credential, ErrorKind.RATE_LIMIT)
    assert credential.status is CredentialStatus.QUOTA_EXCEEDED
    assert credential.reset_at == clock.now() + 3600

    clock.advance(3600)
    assert pool.is_available(credential)


def test_auth_failure_is_terminal() -> None:
    clock = FakeClock()
    pool = _pool(clock)
    credential = pool.credentials[1]

    pool.record_failure(credential, ErrorKind.AUTH)
    pool.record_failure(credential, ErrorKind.RATE_LIMIT)
    pool.record_success(credential)
    clock.advance(10_000)

    assert credential.status is CredentialStatus.INVALID
    assert credential not in pool.get_all_available()


def test_repeated_unknown_errors_soft_disable_after_threshold() -> None:
    pool = _pool()
    credential = pool.credentials[0]

    pool.record_failure(credential, ErrorKind.UNKNOWN)
    pool.record_failure(credential, ErrorKind.UNKNOWN)
    assert credential.status is CredentialStatus.ACTIVE
    assert credential.error_count == 2

    pool.record_failure(credential, ErrorKind.UNKNOWN)
    assert credential.status is CredentialStatus.ERROR
    assert credential not in pool.get_all_available()
    assert len(pool) == 3


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (ErrorKind.RATE_LIMIT, CredentialStatus.ACTIVE),
        (ErrorKind.UNKNOWN, CredentialStatus.ACTIVE),
        (ErrorKind.QUOTA_EXCEEDED, CredentialStatus.QUOTA_EXCEEDED),
        (ErrorKind.AUTH, CredentialStatus.INVALID),
    ],
)
def test_record_success_zeroes_errors_and_promotes_only_soft_states(
    kind: ErrorKind, expected: CredentialStatus
) -> None:
    pool = _pool()
    credential = pool.credentials[0]
    for _ in range(3):
        pool.record_failure(credential, kind)

    pool.record_success(credential)

    assert credential.error_count == 0
    assert credential.status is expected
    assert credential.request_count == 1


def test_round_robin_is_index_modulo_available() -> None:
    pool = _pool()
    credentials = pool.credentials

    picks = [pool.get_by_round_robin(index) for index in range(10)]
    assert picks == [credentials[index % 3] for index in range(10)]

    subset = credentials[1:]
    assert [pool.get_by_round_robin(index, subset) for index in range(4)] == [
        subset[0],
        subset[1],
        subset[0],
        subset[1],
    ]
    assert pool.get_by_round_robin(5, []) is None


def test_reset_rate_limited_leaves_other_states_alone() -> None:
    pool = _pool()
    limited, exhausted, invalid = pool.credentials
    pool.record_failure(limited, ErrorKind.RATE_LIMIT)
    pool.record_failure(exhausted, ErrorKind.QUOTA_EXCEEDED)
    pool.record_failure(invalid, ErrorKind.AUTH)

    assert pool.reset_rate_limited() == 1
    assert limited.status is CredentialStatus.ACTIVE
    assert limited.error_count == 0
    assert limited.reset_at is None
    assert exhausted.status is CredentialStatus.QUOTA_EXCEEDED
    assert invalid.status is CredentialStatus.INVALID


def test_add_and_remove_credentials() -> None:
    pool = _pool()

    added = pool.add("AIzaSyD-fourth-test-key-0004")
    assert added.label == "Key 4"
    assert pool.add("AIzaSyD-fourth-test-key-0004") is added
    assert len(pool) == 4

    assert pool.remove(SECRETS[0]) is True
    assert pool.remove("missing") is False
    assert pool.find("Key 1") is None
    assert pool.find("Key 4") is added


def test_remove_matches_secrets_not_labels() -> None:
    pool = _pool()

    assert pool.remove("Key 1") is False
    assert len(pool) == 3
    assert pool.remove(f"  {SECRETS[1]} ") is True
    assert [credential.label for credential in pool.credentials] == ["Key 1", "Key 3"]


def test_removed_credential_is_no_longer_available() -> None:
    pool = _pool()
    first = pool.credentials[0]

    pool.remove(SECRETS[0])

    assert first.status is CredentialStatus.ACTIVE
    assert first not in pool
    assert pool.is_available(first) is False
    assert pool.credentials[0] in pool


def test_remove_refuses_to_empty_the_pool() -> None:
    pool = CredentialPool.from_secrets([SECRETS[0]], make_context())
    with pytest.raises(ValueError):
        pool.remove(SECRETS[0])


def test_statistics_are_masked() -> None:
    pool = _pool()
    pool.record_failure(pool.credentials[0], ErrorKind.RATE_LIMIT)

    rows = pool.statistics()

    assert rows[0]["status"] == "rate_limited"
    assert rows[0]["masked"] == mask_secret(SECRETS[0])
    assert all(SECRETS[0] not in str(row) for row in rows)


def test_export_and_restore_state_by_fingerprint() -> None:
    clock = FakeClock()
    pool = _pool(clock)
    pool.record_failure(pool.credentials[0], ErrorKind.QUOTA_EXCEEDED)
    pool.record_success(pool.credentials[1])
    state = pool.export_state()

    assert SECRETS[0] not in str(state)

    restored_pool = _pool(clock)
    assert restored_pool.restore_state(state) == 3
    first, second, _ = restored_pool.credentials
    assert first.status is CredentialStatus.QUOTA_EXCEEDED
    assert first.reset_at == clock.now() + 3600
    assert second.request_count == 1


def test_revive_errored_and_all_invalid() -> None:
    pool = _pool()
    first, second, third = pool.credentials
    for _ in range(3):
        pool.record_failure(first, ErrorKind.UNKNOWN)
    pool.record_failure(second, ErrorKind.AUTH)
    pool.record_failure(third, ErrorKind.AUTH)

    assert pool.all_invalid() is False
    assert pool.revive_errored() == 1
    assert first.status is CredentialStatus.ACTIVE

    pool.record_failure(first, ErrorKind.AUTH)
    assert pool.all_invalid() is True
