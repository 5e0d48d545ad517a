"""Live market worker: quotes -> simulated ledger -> signal evaluation.

Runs inside the API process (the services keep their state in memory) and
is started/stopped by the application lifespan.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from models.market import AssetQuote, SentimentSnapshot
from services.market_data import MarketDataService
from services.signals import SignalsService
from services.simulation import SimulationService
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("signal_worker")

_MIN_INTERVAL_SECONDS = 1.0


class SignalWorker:
    def __init__(
        self,
        market_data: MarketDataService,
        simulation: SimulationService,
        signals: SignalsService,
        interval_seconds: float = 30.0,
    ):
        self.market_data = market_data
        self.simulation = simulation
        self.signals = signals
        self.interval_seconds = max(_MIN_INTERVAL_SECONDS, float(interval_seconds))

        self.latest_quotes: list[AssetQuote] = []
        self.latest_sentiment: Optional[SentimentSnapshot] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> dict:
        """One pass. Quote fetch failures propagate; the loop decides what to do."""
        quotes = await self.market_data.fetch_quotes()
        sentiment = await self.market_data.fetch_sentiment()
        self.latest_quotes = quotes
        self.latest_sentiment = sentiment

        closed = await self.simulation.update_open_trades(quotes)
        fired = await self.signals.evaluate(quotes, sentiment)

        self.last_tick_at = utcnow()
        self.last_error = None
        return {"quotes": len(quotes), "closed_trades": len(closed), "signals_fired": len(fired)}

    async def _run_loop(self) -> None:
        logger.info("Signal worker started", interval_seconds=self.interval_seconds)
        while True:
            try:
                stats = await self.tick()
                if stats["closed_trades"] or stats["signals_fired"]:
                    logger.info("Live tick complete", **stats)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Live tick failed", error=str(exc))
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop(), name="signal-worker")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Signal worker stopped")
