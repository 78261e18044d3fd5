from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from open_llm_scheduler.config import ModelProfile, QuotaLimits

if TYPE_CHECKING:
    from open_llm_scheduler.context import SchedulerContext
    from open_llm_scheduler.credentials import Credential

logger = logging.getLogger("open_llm_scheduler.quota")

MINUTE_WINDOW_SECONDS = 60.0
DEFAULT_ESTIMATED_TOKENS = 1000


@dataclass(slots=True)
class QuotaWindow:
    limit: int
    used: int = 0
    reset_at: float = 0.0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def remaining_ratio(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit


@dataclass(slots=True)
class CredentialQuota:
    rpm: QuotaWindow
    tpm: QuotaWindow
    rpd: QuotaWindow
    last_used_at: float | None = None

    def windows(self) -> dict[str, QuotaWindow]:
        return {"rpm": self.rpm, "tpm": self.tpm, "rpd": self.rpd}


class QuotaTracker:
    """Local mirror of the service's per-credential, per-model limits.

    Minute windows (RPM, TPM) roll over 60 seconds after their last reset.
    The daily window (RPD) rolls over at the next local midnight of the
    context's reset timezone. Rollover happens lazily on every lookup and is
    idempotent.
    """

    def __init__(
        self,
        context: SchedulerContext,
        default_limits: QuotaLimits | None = None,
    ) -> None:
        self._context = context
        self._default_limits = default_limits or QuotaLimits(rpm=2, tpm=125000, rpd=50)
        self._limits: dict[str, QuotaLimits] = {}
        self._quotas: dict[tuple[str, str], CredentialQuota] = {}
        self._labels: dict[str, str] = {}
        self._active_model: str | None = None

    @property
    def active_model(self) -> str | None:
        return self._active_model

    def limits_for(self, model: str) -> QuotaLimits:
        return self._limits.get(model, self._default_limits)

    def init_for(self, credential: Credential, profile: ModelProfile) -> CredentialQuota:
        with self._context.lock:
            self._limits[profile.name] = profile.limits
            self._labels[credential.fingerprint] = credential.label
            key = (credential.fingerprint, profile.name)
            quota = self._quotas.get(key)
            if quota is None:
                quota = self._new_quota(profile.limits)
                self._quotas[key] = quota
            else:
                quota.rpm.limit = profile.limits.rpm
                quota.tpm.limit = profile.limits.tpm
                quota.rpd.limit = profile.limits.rpd
            return quota

    def activate(
        self, profile: ModelProfile, credentials: Iterable[Credential] = ()
    ) -> None:
        with self._context.lock:
            self._active_model = profile.name
            for credential in credentials:
                self.init_for(credential, profile)
            for (_, model), quota in self._quotas.items():
                if model == profile.name:
                    quota.rpm.limit = profile.limits.rpm
                    quota.tpm.limit = profile.limits.tpm
                    quota.rpd.limit = profile.limits.rpd
        logger.info(
            "quota_model_activated model=%s rpm=%d tpm=%d rpd=%d",
            profile.name,
            profile.limits.rpm,
            profile.limits.tpm,
            profile.limits.rpd,
        )

    def has_headroom(
        self,
        credential: Credential,
        model: str,
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ) -> bool:
        with self._context.lock:
            quota = self._quota(credential, model)
            self._rollover(quota)
            return not self._blocking_windows(quota, estimated_tokens)

    def record(self, credential: Credential, model: str, tokens_used: int) -> None:
        with self._context.lock:
            quota = self._quota(credential, model)
            self._rollover(quota)
            quota.rpm.used += 1
            quota.tpm.used += max(0, int(tokens_used))
            quota.rpd.used += 1
            quota.last_used_at = self._context.now()

    def remaining_pct(self, credential: Credential, model: str | None = None) -> float:
        model = model or self._active_model
        if model is None:
            return 1.0
        with self._context.lock:
            quota = self._quota(credential, model)
            self._rollover(quota)
            return min(window.remaining_ratio for window in quota.windows().values())

    def blocking_windows(
        self,
        credential: Credential,
        model: str,
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ) -> list[str]:
        with self._context.lock:
            quota = self._quota(credential, model)
            self._rollover(quota)
            return self._blocking_windows(quota, estimated_tokens)

    def seconds_until_headroom(
        self,
        credential: Credential,
        model: str,
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    ) -> float:
        with self._context.lock:
            quota = self._quota(credential, model)
            self._rollover(quota)
            blocking = self._blocking_windows(quota, estimated_tokens)
            if not blocking:
                return 0.0
            now = self._context.now()
            windows = quota.windows()
            return max(0.0, max(windows[name].reset_at for name in blocking) - now)

    def snapshot(self, credential: Credential | None = None) -> dict[str, Any]:
        with self._context.lock:
            rows: dict[str, Any] = {}
            for (fingerprint, model), quota in sorted(self._quotas.items()):
                if credential is not None and fingerprint != credential.fingerprint:
                    continue
                self._rollover(quota)
                label = self._labels.get(fingerprint, fingerprint[:8])
                rows.setdefault(label, {})[model] = {
                    name: {
                        "used": window.used,
                        "limit": window.limit,
                        "reset_at": window.reset_at,
                    }
                    for name, window in quota.windows().items()
                }
            return rows

    def export_state(self) -> dict[str, dict[str, Any]]:
        with self._context.lock:
            exported: dict[str, dict[str, Any]] = {}
            for (fingerprint, model), quota in self._quotas.items():
                exported.setdefault(fingerprint, {})[model] = {
                    "last_used_at": quota.last_used_at,
                    **{
                        name: {"used": window.used, "reset_at": window.reset_at}
                        for name, window in quota.windows().items()
                    },
                }
            return exported

    def restore_state(
        self, state: dict[str, dict[str, Any]], credentials: Iterable[Credential]
    ) -> int:
        restored = 0
        with self._context.lock:
            for credential in credentials:
                models = state.get(credential.fingerprint)
                if not isinstance(models, dict):
                    continue
                self._labels[credential.fingerprint] = credential.label
                for model, entry in models.items():
                    if not isinstance(entry, dict):
                        continue
                    quota = self._quota(credential, model)
                    for name, window in quota.windows().items():
                        saved = entry.get(name) or {}
                        window.used = max(0, int(saved.get("used") or 0))
                        window.reset_at = float(saved.get("reset_at") or 0.0)
                    quota.last_used_at = entry.get("last_used_at")
                    self._rollover(quota)
                    restored += 1
        return restored

    def _quota(self, credential: Credential, model: str) -> CredentialQuota:
        key = (credential.fingerprint, model)
        quota = self._quotas.get(key)
        if quota is None:
            self._labels[credential.fingerprint] = credential.label
            quota = self._new_quota(self.limits_for(model))
            self._quotas[key] = quota
        return quota

    def _new_quota(self, limits: QuotaLimits) -> CredentialQuota:
        now = self._context.now()
        return CredentialQuota(
            rpm=QuotaWindow(limit=limits.rpm, reset_at=now + MINUTE_WINDOW_SECONDS),
            tpm=QuotaWindow(limit=limits.tpm, reset_at=now + MINUTE_WINDOW_SECONDS),
            rpd=QuotaWindow(limit=limits.rpd, reset_at=self._next_daily_reset(now)),
        )

    def _rollover(self, quota: CredentialQuota) -> None:
        now = self._context.now()
        for window in (quota.rpm, quota.tpm):
            if now >= window.reset_at:
                window.used = 0
                window.reset_at = now + MINUTE_WINDOW_SECONDS
        if now >= quota.rpd.reset_at:
            quota.rpd.used = 0
            quota.rpd.reset_at = self._next_daily_reset(now)

    def _next_daily_reset(self, now: float) -> float:
        tz = self._context.reset_timezone
        local = datetime.fromtimestamp(now, tz=tz)
        midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=tz)
        return midnight.timestamp()

    @staticmethod
    def _blocking_windows(quota: CredentialQuota, estimated_tokens: int) -> list[str]:
        blocking: list[str] = []
        if quota.rpm.used >= quota.rpm.limit:
            blocking.append("rpm")
        if quota.tpm.used + max(0, estimated_tokens) >= quota.tpm.limit:
            blocking.append("tpm")
        if quota.rpd.used >= quota.rpd.limit:
            blocking.append("rpd")
        return blocking
