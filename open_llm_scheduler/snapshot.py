from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

logger = logging.getLogger("open_llm_scheduler.snapshot")

SNAPSHOT_VERSION = 1


class SnapshotStore:
    """YAML snapshot of credential status and quota usage.

    Credentials are keyed by a hash prefix of their secret; secrets are never
    written. Writes go to a temporary file that replaces the target.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValueError(f"Expected YAML object in '{self.path}'.")
        version = payload.get("version")
        if version != SNAPSHOT_VERSION:
            logger.warning(
                "snapshot_version_mismatch path=%s version=%s expected=%d",
                self.path,
                version,
                SNAPSHOT_VERSION,
            )
            return {}
        return payload

    def save(
        self,
        *,
        credentials: dict[str, Any],
        quotas: dict[str, Any],
        saved_at: float,
    ) -> None:
        payload = {
            "version": SNAPSHOT_VERSION,
            "saved_at": saved_at,
            "credentials": credentials,
            "quotas": quotas,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise
        logger.info("snapshot_saved path=%s credentials=%d", self.path, len(credentials))
