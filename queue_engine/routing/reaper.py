"""Missed-ticket reaper — periodic sweep of stale CALLED tickets.

The reaper is just another caller of ``QueueEngine.sweep_missed``; it has
no storage access of its own. The sweep is blocking (thread locks, store
I/O) so each cycle runs in a worker thread, keeping the event loop free.
"""

from __future__ import annotations

import asyncio
import logging

from queue_engine.config import REAPER_INTERVAL_SECONDS
from queue_engine.domain import SweepResult

logger = logging.getLogger(__name__)


class MissedTicketReaper:
    """Run ``engine.sweep_missed()`` every *interval* seconds.

    * ``start()`` / ``stop()`` manage the background task
    * ``run_once()`` performs a single sweep (also used by the loop)
    """

    def __init__(self, engine, interval: float = REAPER_INTERVAL_SECONDS) -> None:
        self._engine = engine
        self.interval = interval
        self._task: asyncio.Task | None = None
        self.cycles = 0
        self.reaped_total = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Reaper started (every %.0fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Reaper stopped after %d cycle(s)", self.cycles)

    async def run_once(self) -> SweepResult:
        result = await asyncio.to_thread(self._engine.sweep_missed)
        self.cycles += 1
        self.reaped_total += len(result.reaped_ticket_ids)
        return result

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reaper cycle failed — retrying next interval")
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
