from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

REDACTED = "[redacted]"
SENSITIVE_FIELDS = frozenset({"secret", "api_key", "prompt", "text", "response"})


def redact_event(event: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``event`` with secrets and prompt bodies removed."""
    sanitized: dict[str, Any] = {}
    for key, value in event.items():
        if key in SENSITIVE_FIELDS and value is not None:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = redact_event(value)
        elif isinstance(value, list):
            sanitized[key] = [
                redact_event(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            sanitized[key] = value
    return sanitized


class JsonlEventLog:
    """Appends scheduler events to a JSONL file from a background thread.

    ``log`` never blocks the event loop: records go into a bounded queue and
    are counted as dropped when it is full. The drop count is written as a
    final record on ``close``.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._writer: Thread | None = None
        self._dropped = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._writer = Thread(
                target=self._write_loop, name="scheduler-event-writer", daemon=True
            )
            self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = _encode({"ts": int(time.time()), **redact_event(event)})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        queue = self._queue
        writer = self._writer
        if queue is None or writer is None:
            return
        self._queue = None
        queue.put(None)
        writer.join(timeout=2.0)

    def _write_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "event_log_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
