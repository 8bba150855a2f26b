"""Aggregation sweeper.

Background task that runs every AGGREGATION_SWEEP_INTERVAL seconds and
recalculates every closed job that has no episodes yet.
"""

from __future__ import annotations

import asyncio
import logging

from config import settings

logger = logging.getLogger("linewatch.aggregation_sweeper")


class AggregationSweeper:
    """Background task: periodic batch aggregation sweep."""

    def __init__(self, orchestrator, interval: int | None = None):
        self.orchestrator = orchestrator
        self.interval = interval if interval is not None else settings.AGGREGATION_SWEEP_INTERVAL
        self._running = False

    async def start(self) -> None:
        if self.interval <= 0:
            logger.info("AggregationSweeper disabled (AGGREGATION_SWEEP_INTERVAL=0)")
            return
        self._running = True
        logger.info("AggregationSweeper started (every %ds)", self.interval)

        while self._running:
            try:
                results = await self.orchestrator.recalculate()
                if results:
                    logger.info("Aggregation sweep processed %d job(s)", len(results))
            except Exception as exc:
                logger.error("AggregationSweeper cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("AggregationSweeper stopped")
