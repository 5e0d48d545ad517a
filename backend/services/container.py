"""Component graph wiring. The application lifespan builds one container."""

from __future__ import annotations

from dataclasses import dataclass

from services.backtester import PatternBacktester
from services.history_feed import HistoryFeed
from services.history_store import TimeSeriesStore
from services.kv_store import KeyValueStore
from services.learning import LearningService
from services.market_data import MarketDataService
from services.pattern_library import PatternLibrary
from services.refinement import PatternRefinementService
from services.signals import SignalsService
from services.simulation import SimulationService
from workers.signal_worker import SignalWorker


@dataclass
class ServiceContainer:
    history: TimeSeriesStore
    history_feed: HistoryFeed
    backtester: PatternBacktester
    patterns: PatternLibrary
    simulation: SimulationService
    learning: LearningService
    signals: SignalsService
    market_data: MarketDataService
    worker: SignalWorker

    @classmethod
    def build(cls, cfg, store: KeyValueStore) -> "ServiceContainer":
        history = TimeSeriesStore(significant_intensity=cfg.SIGNIFICANT_INTENSITY_THRESHOLD)
        simulation = SimulationService(store, base_trade_size_usd=cfg.BASE_TRADE_SIZE_USD)
        refiner = PatternRefinementService(
            base_url=cfg.REFINEMENT_API_URL,
            api_key=cfg.REFINEMENT_API_KEY,
            model=cfg.REFINEMENT_MODEL,
            timeout=cfg.REFINEMENT_TIMEOUT_SECONDS,
        )
        signals = SignalsService(
            store,
            cooldown_seconds=cfg.SIGNAL_COOLDOWN_SECONDS,
            event_limit=cfg.SIGNAL_EVENT_LIMIT,
        )
        market_data = MarketDataService(
            cfg.MARKET_DATA_URL,
            sentiment_url=cfg.SENTIMENT_FEED_URL,
            timeout=cfg.MARKET_DATA_TIMEOUT_SECONDS,
        )
        return cls(
            history=history,
            history_feed=HistoryFeed(
                url=cfg.HISTORY_FEED_URL,
                csv_path=cfg.HISTORY_CSV_PATH,
                timeout=cfg.HISTORY_FEED_TIMEOUT_SECONDS,
            ),
            backtester=PatternBacktester(history),
            patterns=PatternLibrary(store),
            simulation=simulation,
            learning=LearningService(
                store,
                ledger=simulation,
                refiner=refiner,
                poll_interval_seconds=cfg.EXPERIMENT_POLL_INTERVAL_SECONDS,
                max_running_seconds=cfg.EXPERIMENT_MAX_RUNNING_SECONDS,
                log_limit=cfg.ACTIVITY_LOG_LIMIT,
            ),
            signals=signals,
            market_data=market_data,
            worker=SignalWorker(
                market_data,
                simulation,
                signals,
                interval_seconds=cfg.SIGNAL_WORKER_INTERVAL_SECONDS,
            ),
        )

    async def load(self) -> None:
        """Restore every persisted collection, then re-arm running experiments."""
        await self.patterns.load()
        await self.simulation.load()
        await self.learning.load()
        await self.signals.load()
        await self.learning.restore_polls()

    async def shutdown(self) -> None:
        await self.worker.stop()
        await self.learning.shutdown()
