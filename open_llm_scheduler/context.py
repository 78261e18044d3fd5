from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from datetime import date, datetime
from threading import RLock
from typing import TYPE_CHECKING, Any, Protocol
from zoneinfo import ZoneInfo

from open_llm_scheduler.diagnostics import Diagnostics, UsageLedger
from open_llm_scheduler.errors import ErrorClassifier

if TYPE_CHECKING:
    from open_llm_scheduler.audit import JsonlEventLog

logger = logging.getLogger("open_llm_scheduler")

DEFAULT_RESET_TIMEZONE = "America/Los_Angeles"

EventListener = Callable[[dict[str, Any]], None]


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class SchedulerContext:
    """State shared by every component of one scheduler instance.

    Holds the clock, the error classifier, the random source used for
    jitter, diagnostics, usage accounting and the event fan-out. Components
    take the context explicitly; nothing here is process-global.

    ``lock`` guards every credential status and quota window mutation.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        classifier: ErrorClassifier | None = None,
        rng: random.Random | None = None,
        event_log: JsonlEventLog | None = None,
        reset_timezone: str = DEFAULT_RESET_TIMEZONE,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.classifier = classifier or ErrorClassifier()
        self.rng = rng or random.Random()
        self.event_log = event_log
        self.reset_timezone = ZoneInfo(reset_timezone)
        self.lock = RLock()
        self.diagnostics = Diagnostics()
        self.usage = UsageLedger()
        self._listeners: list[EventListener] = []

    def now(self) -> float:
        return self.clock.now()

    async def sleep(self, seconds: float) -> None:
        await self.clock.sleep(seconds)

    def local_now(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=self.reset_timezone)

    def today(self) -> date:
        return self.local_now().date()

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: str, **fields: Any) -> None:
        record = {"event": event, "at": self.now(), **fields}
        if self.event_log is not None:
            self.event_log.log(record)
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("scheduler_event_listener_failed event=%s", event)
