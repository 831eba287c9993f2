# kalina: Cancellable interval timer owned by a turn. Drives the cosmetic "thinking for N seconds" counter.

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("kalina.ticker")


class Ticker:
    """
    Calls on_tick(elapsed_seconds) every `interval` seconds until cancelled.

    cancel() is idempotent and safe to call from any exit path; after it
    returns no further ticks are delivered.
    """

    def __init__(self, interval: float, on_tick: Callable[[float], None]) -> None:
        self.interval = interval
        self.on_tick = on_tick
        self.elapsed = 0.0
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    def start(self) -> "Ticker":
        if self._task is None and not self._cancelled:
            self._task = asyncio.create_task(self._run(), name="kalina-ticker")
        return self

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            # kalina: Accumulate by interval (not wall clock) so the counter advances in fixed 0.1s steps.
            self.elapsed = round(self.elapsed + self.interval, 3)
            try:
                self.on_tick(self.elapsed)
            except Exception:
                logger.exception("Ticker callback failed; stopping ticker.")
                break

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
