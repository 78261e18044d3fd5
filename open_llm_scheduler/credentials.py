from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from open_llm_scheduler.errors import ErrorKind

if TYPE_CHECKING:
    from open_llm_scheduler.context import SchedulerContext
    from open_llm_scheduler.health import HealthReport

logger = logging.getLogger("open_llm_scheduler.credentials")

RATE_LIMIT_COOLDOWN_SECONDS = 90.0
QUOTA_COOLDOWN_SECONDS = 3600.0
ERROR_THRESHOLD = 3


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID = "invalid"
    ERROR = "error"


def mask_secret(secret: str) -> str:
    if len(secret) <= 12:
        return "*" * len(secret)
    return f"{secret[:8]}{'*' * (len(secret) - 12)}{secret[-4:]}"


def secret_fingerprint(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:32]


@dataclass(slots=True, eq=False)
class Credential:
    secret: str = field(repr=False)
    label: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    error_count: int = 0
    request_count: int = 0
    last_used_at: float | None = None
    reset_at: float | None = None

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)

    @property
    def fingerprint(self) -> str:
        return secret_fingerprint(self.secret)


class CredentialHealthCheck(Protocol):
    async def check(self, pool: CredentialPool) -> HealthReport: ...


@dataclass(slots=True)
class PoolPolicy:
    rate_limit_cooldown_seconds: float = RATE_LIMIT_COOLDOWN_SECONDS
    quota_cooldown_seconds: float = QUOTA_COOLDOWN_SECONDS
    error_threshold: int = ERROR_THRESHOLD


class CredentialPool:
    """Ordered set of interchangeable credentials and their health.

    Status transitions::

        active --RATE_LIMIT-->      rate_limited   (reset_at = now + 90s)
        active --QUOTA_EXCEEDED-->  quota_exceeded (reset_at = now + 1h)
        active --AUTH-->            invalid        (terminal)
        active --other x3-->        error          (skipped until a success)

    ``rate_limited`` and ``quota_exceeded`` return to ``active`` lazily, on
    the first availability lookup after ``reset_at``.
    """

    def __init__(
        self,
        credentials: Sequence[Credential],
        context: SchedulerContext,
        policy: PoolPolicy | None = None,
    ) -> None:
        if not credentials:
            raise ValueError("At least one credential is required.")
        self._credentials: list[Credential] = list(credentials)
        self._context = context
        self._policy = policy or PoolPolicy()
        self._next_label = len(self._credentials) + 1

    @classmethod
    def from_secrets(
        cls,
        secrets: Iterable[str],
        context: SchedulerContext,
        policy: PoolPolicy | None = None,
    ) -> CredentialPool:
        unique: list[str] = []
        for raw in secrets:
            secret = (raw or "").strip()
            if secret and secret not in unique:
                unique.append(secret)
        if not unique:
            raise ValueError("No credentials configured. Set GEMINI_API_KEYS.")
        credentials = [
            Credential(secret=secret, label=f"Key {index}")
            for index, secret in enumerate(unique, start=1)
        ]
        logger.info("credential_pool_initialized count=%d", len(credentials))
        return cls(credentials, context, policy)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def find(self, secret_or_label: str) -> Credential | None:
        """Look a credential up by its secret or its ``Key N`` label."""
        for credential in self._credentials:
            if secret_or_label in (credential.secret, credential.label):
                return credential
        return None

    def __contains__(self, credential: object) -> bool:
        with self._context.lock:
            return any(member is credential for member in self._credentials)

    def get_all_available(self) -> list[Credential]:
        with self._context.lock:
            now = self._context.now()
            available: list[Credential] = []
            for credential in self._credentials:
                self._promote_if_due(credential, now)
                if credential.status is CredentialStatus.ACTIVE:
                    available.append(credential)
            return available

    def get_current_available(self) -> Credential | None:
        available = self.get_all_available()
        return available[0] if available else None

    def get_by_round_robin(
        self, index: int, candidates: Sequence[Credential] | None = None
    ) -> Credential | None:
        pool = list(candidates) if candidates is not None else self.get_all_available()
        if not pool:
            return None
        return pool[index % len(pool)]

    def has_available(self) -> bool:
        return bool(self.get_all_available())

    def active_count(self) -> int:
        return len(self.get_all_available())

    def is_available(self, credential: Credential) -> bool:
        with self._context.lock:
            if credential not in self:
                return False
            self._promote_if_due(credential, self._context.now())
            return credential.status is CredentialStatus.ACTIVE

    def record_success(self, credential: Credential) -> None:
        with self._context.lock:
            credential.request_count += 1
            credential.last_used_at = self._context.now()
            credential.error_count = 0
            if credential.status in (
                CredentialStatus.RATE_LIMITED,
                CredentialStatus.ERROR,
            ):
                self._transition(credential, CredentialStatus.ACTIVE, None)

    def record_failure(self, credential: Credential, kind: ErrorKind) -> None:
        with self._context.lock:
            now = self._context.now()
            credential.error_count += 1
            credential.last_used_at = now
            if credential.status is CredentialStatus.INVALID:
                return

            if kind is ErrorKind.AUTH:
                self._transition(credential, CredentialStatus.INVALID, None)
            elif kind is ErrorKind.QUOTA_EXCEEDED:
                reset_at = now + self._policy.quota_cooldown_seconds
                self._transition(
                    credential,
                    CredentialStatus.QUOTA_EXCEEDED,
                    max(reset_at, credential.reset_at or 0.0),
                )
            elif kind is ErrorKind.RATE_LIMIT:
                if credential.status is CredentialStatus.QUOTA_EXCEEDED:
                    return
                reset_at = now + self._policy.rate_limit_cooldown_seconds
                self._transition(
                    credential,
                    CredentialStatus.RATE_LIMITED,
                    max(reset_at, credential.reset_at or 0.0),
                )
            elif credential.error_count >= self._policy.error_threshold:
                if credential.status is CredentialStatus.ACTIVE:
                    self._transition(credential, CredentialStatus.ERROR, None)

    def add(self, secret: str, label: str | None = None) -> Credential:
        secret = secret.strip()
        if not secret:
            raise ValueError("Credential secret must not be empty.")
        with self._context.lock:
            existing = self._by_secret(secret)
            if existing is not None:
                return existing
            credential = Credential(secret=secret, label=label or f"Key {self._next_label}")
            self._next_label += 1
            self._credentials.append(credential)
        logger.info("credential_added credential=%s", credential.label)
        self._context.emit("credential_added", credential=credential.label)
        return credential

    def remove(self, secret: str) -> bool:
        with self._context.lock:
            credential = self._by_secret(secret.strip())
            if credential is None:
                return False
            if len(self._credentials) == 1:
                raise ValueError("Cannot remove the last credential.")
            self._credentials.remove(credential)
        logger.info("credential_removed credential=%s", credential.label)
        self._context.emit("credential_removed", credential=credential.label)
        return True

    def reset_rate_limited(self) -> int:
        reset = 0
        with self._context.lock:
            for credential in self._credentials:
                if credential.status is CredentialStatus.RATE_LIMITED:
                    credential.error_count = 0
                    self._transition(credential, CredentialStatus.ACTIVE, None)
                    reset += 1
        if reset:
            logger.info("credential_rate_limits_reset count=%d", reset)
        return reset

    def revive_errored(self) -> int:
        revived = 0
        with self._context.lock:
            for credential in self._credentials:
                if credential.status is CredentialStatus.ERROR:
                    credential.error_count = 0
                    self._transition(credential, CredentialStatus.ACTIVE, None)
                    revived += 1
        return revived

    def all_invalid(self) -> bool:
        with self._context.lock:
            return all(
                credential.status is CredentialStatus.INVALID
                for credential in self._credentials
            )

    async def run_health_check(self, checker: CredentialHealthCheck) -> HealthReport:
        return await checker.check(self)

    def statistics(self) -> list[dict[str, Any]]:
        with self._context.lock:
            return [
                {
                    "label": credential.label,
                    "masked": credential.masked,
                    "status": credential.status.value,
                    "error_count": credential.error_count,
                    "request_count": credential.request_count,
                    "last_used_at": credential.last_used_at,
                    "reset_at": credential.reset_at,
                }
                for credential in self._credentials
            ]

    def export_state(self) -> dict[str, dict[str, Any]]:
        with self._context.lock:
            return {
                credential.fingerprint: {
                    "label": credential.label,
                    "status": credential.status.value,
                    "error_count": credential.error_count,
                    "request_count": credential.request_count,
                    "last_used_at": credential.last_used_at,
                    "reset_at": credential.reset_at,
                }
                for credential in self._credentials
            }

    def restore_state(self, state: dict[str, dict[str, Any]]) -> int:
        restored = 0
        with self._context.lock:
            for credential in self._credentials:
                entry = state.get(credential.fingerprint)
                if not isinstance(entry, dict):
                    continue
                try:
                    credential.status = CredentialStatus(entry.get("status", "active"))
                except ValueError:
                    continue
                credential.error_count = int(entry.get("error_count") or 0)
                credential.request_count = int(entry.get("request_count") or 0)
                credential.last_used_at = entry.get("last_used_at")
                credential.reset_at = entry.get("reset_at")
                restored += 1
        return restored

    def _by_secret(self, secret: str) -> Credential | None:
        for credential in self._credentials:
            if credential.secret == secret:
                return credential
        return None

    def _promote_if_due(self, credential: Credential, now: float) -> None:
        if credential.status not in (
            CredentialStatus.RATE_LIMITED,
            CredentialStatus.QUOTA_EXCEEDED,
        ):
            return
        if credential.reset_at is not None and now < credential.reset_at:
            return
        credential.error_count = 0
        self._transition(credential, CredentialStatus.ACTIVE, None)

    def _transition(
        self,
        credential: Credential,
        status: CredentialStatus,
        reset_at: float | None,
    ) -> None:
        previous = credential.status
        credential.status = status
        credential.reset_at = reset_at
        if previous is status:
            return
        logger.info(
            "credential_status credential=%s from=%s to=%s reset_at=%s",
            credential.label,
            previous.value,
            status.value,
            reset_at,
        )
        self._context.emit(
            "credential_status",
            credential=credential.label,
            previous=previous.value,
            status=status.value,
            reset_at=reset_at,
        )
