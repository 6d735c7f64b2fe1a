from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HaltResult:
    confirmed: bool
    waited_seconds: float


class CancellationSupervisor:
    """Cooperative cancellation flag with a bounded wait for the run to stop."""

    def __init__(
        self,
        is_executing: Callable[[], bool],
        *,
        poll_interval: float = 0.1,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._is_executing = is_executing
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def request_cancellation(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    def is_executing(self) -> bool:
        return self._is_executing()

    async def wait_for_halt(
        self,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> HaltResult:
        limit = self.timeout if timeout is None else timeout
        interval = self.poll_interval if poll_interval is None else poll_interval
        started = self._clock()
        while True:
            waited = self._clock() - started
            if not self.is_executing():
                logger.info("Execution halt confirmed after %.2fs", waited)
                return HaltResult(confirmed=True, waited_seconds=waited)
            if waited >= limit:
                logger.warning("Execution did not halt within %.1fs; proceeding anyway", limit)
                return HaltResult(confirmed=False, waited_seconds=waited)
            await self._sleep(max(0.0, min(interval, limit - waited)))
