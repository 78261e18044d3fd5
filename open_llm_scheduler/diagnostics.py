from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from threading import Lock
from typing import Any

USAGE_HISTORY_DAYS = 7


@dataclass(slots=True)
class Diagnostics:
    """Informational counters for a scheduler instance."""

    key_rotations: int = 0
    model_fallbacks: int = 0
    retries: int = 0
    successful_calls: int = 0
    cooldowns: int = 0
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def record_failure(self, kind: str) -> None:
        with self._lock:
            self.failures_by_kind[kind] = self.failures_by_kind.get(kind, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "key_rotations": self.key_rotations,
                "model_fallbacks": self.model_fallbacks,
                "retries": self.retries,
                "successful_calls": self.successful_calls,
                "cooldowns": self.cooldowns,
                "failures_by_kind": dict(self.failures_by_kind),
            }


@dataclass(slots=True)
class UsageEntry:
    requests: int = 0
    tokens: int = 0


class UsageLedger:
    """Per-day request and token usage keyed by (credential label, model).

    The current day is archived when the date changes and only the last
    ``USAGE_HISTORY_DAYS`` archived days are kept.
    """

    def __init__(self, history_days: int = USAGE_HISTORY_DAYS) -> None:
        self._history_days = history_days
        self._lock = Lock()
        self._day: date | None = None
        self._current: dict[tuple[str, str], UsageEntry] = {}
        self._history: dict[str, dict[str, dict[str, int]]] = {}

    def record(self, *, credential: str, model: str, tokens: int, day: date) -> None:
        with self._lock:
            self._roll(day)
            entry = self._current.setdefault((credential, model), UsageEntry())
            entry.requests += 1
            entry.tokens += max(0, int(tokens))

    def daily_summary(self, day: date | None = None) -> dict[str, Any]:
        with self._lock:
            if day is not None:
                self._roll(day)
            by_model: dict[str, dict[str, int]] = {}
            by_credential: dict[str, dict[str, int]] = {}
            total_requests = 0
            total_tokens = 0
            for (credential, model), entry in sorted(self._current.items()):
                for bucket, key in ((by_model, model), (by_credential, credential)):
                    row = bucket.setdefault(key, {"requests": 0, "tokens": 0})
                    row["requests"] += entry.requests
                    row["tokens"] += entry.tokens
                total_requests += entry.requests
                total_tokens += entry.tokens
            return {
                "date": self._day.isoformat() if self._day else None,
                "total_requests": total_requests,
                "total_tokens": total_tokens,
                "by_model": by_model,
                "by_credential": by_credential,
            }

    def history(self) -> dict[str, dict[str, dict[str, int]]]:
        with self._lock:
            return {day: dict(rows) for day, rows in self._history.items()}

    def _roll(self, day: date) -> None:
        if self._day is None:
            self._day = day
            return
        if day == self._day:
            return
        if self._current:
            self._history[self._day.isoformat()] = {
                f"{credential}|{model}": {
                    "requests": entry.requests,
                    "tokens": entry.tokens,
                }
                for (credential, model), entry in self._current.items()
            }
        self._current = {}
        self._day = day
        while len(self._history) > self._history_days:
            self._history.pop(min(self._history))
