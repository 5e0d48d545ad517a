import asyncio
from datetime import datetime, timedelta
from typing import Optional

from models.experiment import Experiment, ExperimentStatus
from models.history import ComparisonOperator
from models.market import AssetQuote, SentimentSnapshot, find_quote
from models.signal import (
    AvailableSignal,
    SignalEvent,
    TriggerCondition,
    TriggerMetric,
    TriggerSource,
)
from services.kv_store import (
    ACTIVATED_SIGNALS_KEY,
    SIGNAL_EVENTS_KEY,
    KeyValueStore,
    read_collection,
    write_collection,
)
from services.subscriptions import Subscribable
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("signals")

# Sentiment feeds report 0-1; thresholds are configured on a 0-100 scale.
SENTIMENT_SCALE = 100.0


def default_trigger_condition() -> TriggerCondition:
    return TriggerCondition(
        metric=TriggerMetric.PRICE_CHANGE_24H,
        operator=ComparisonOperator.GT,
        threshold=5.0,
        source=TriggerSource.TRIGGER_ASSET,
    )


def condition_met(value: float, condition: TriggerCondition) -> bool:
    if condition.operator == ComparisonOperator.GT:
        return value > condition.threshold
    return value < condition.threshold


class SignalsService(Subscribable):
    """Activated signals and the bounded log of their firings.

    ``evaluate`` is driven by an external tick (see ``workers.signal_worker``);
    the service never schedules itself.
    """

    def __init__(
        self,
        store: KeyValueStore,
        cooldown_seconds: float = 3600.0,
        event_limit: int = 50,
    ):
        super().__init__()
        self._store = store
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.event_limit = event_limit
        self._signals: list[AvailableSignal] = []
        self._events: list[SignalEvent] = []
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        async with self._lock:
            self._signals = await read_collection(self._store, ACTIVATED_SIGNALS_KEY, AvailableSignal)
            self._events = (await read_collection(self._store, SIGNAL_EVENTS_KEY, SignalEvent))[: self.event_limit]
        logger.info("Signals loaded", signals=len(self._signals), events=len(self._events))

    def activated_signals(self) -> list[AvailableSignal]:
        return [signal.model_copy(deep=True) for signal in self._signals]

    def events(self) -> list[SignalEvent]:
        """Most recent first"""
        return [event.model_copy(deep=True) for event in self._events]

    def get(self, signal_id: str) -> Optional[AvailableSignal]:
        signal = next((s for s in self._signals if s.id == signal_id), None)
        return signal.model_copy(deep=True) if signal else None

    async def _commit(self) -> None:
        await write_collection(self._store, ACTIVATED_SIGNALS_KEY, self._signals)
        await write_collection(self._store, SIGNAL_EVENTS_KEY, self._events)
        self._notify()

    async def promote(
        self, experiment: Experiment, condition: Optional[TriggerCondition] = None
    ) -> Optional[AvailableSignal]:
        """Re-arm a completed experiment as a live signal. One signal per experiment id."""
        if experiment.status != ExperimentStatus.COMPLETED:
            logger.warning(
                "Only completed experiments can be promoted",
                experiment_id=experiment.id,
                status=experiment.status.value,
            )
            return None

        async with self._lock:
            if any(s.id == experiment.id for s in self._signals):
                logger.warning("Signal already active", signal_id=experiment.id)
                return None

            signal = AvailableSignal(
                id=experiment.id,
                title=experiment.title,
                description=experiment.description,
                trigger_asset=experiment.trigger_asset,
                affected_asset=experiment.affected_asset,
                trade_direction=experiment.trade_direction,
                trigger_condition=condition or default_trigger_condition(),
            )
            self._signals.append(signal)
            await self._commit()

        logger.info(
            "Signal activated",
            signal_id=signal.id,
            condition=signal.trigger_condition.describe(),
        )
        return signal.model_copy(deep=True)

    async def deactivate(self, signal_id: str) -> bool:
        async with self._lock:
            remaining = [s for s in self._signals if s.id != signal_id]
            if len(remaining) == len(self._signals):
                return False
            self._signals = remaining
            await self._commit()
        logger.info("Signal deactivated", signal_id=signal_id)
        return True

    def _metric_value(
        self,
        signal: AvailableSignal,
        live_assets: list[AssetQuote],
        sentiment: Optional[SentimentSnapshot],
    ) -> Optional[float]:
        condition = signal.trigger_condition
        if condition.metric == TriggerMetric.SENTIMENT_SCORE:
            if sentiment is None:
                return None
            return sentiment.sentiment_score * SENTIMENT_SCALE

        symbol = signal.affected_asset if condition.source == TriggerSource.AFFECTED_ASSET else signal.trigger_asset
        quote = find_quote(live_assets, symbol)
        return quote.change_24h if quote else None

    def _cooling_down(self, signal_id: str, now: datetime) -> bool:
        last = next((e for e in self._events if e.signal.id == signal_id), None)
        return last is not None and now - last.triggered_at < self.cooldown

    async def evaluate(
        self,
        live_assets: list[AssetQuote],
        sentiment: Optional[SentimentSnapshot] = None,
    ) -> list[SignalEvent]:
        """Fire every signal whose condition holds and is out of cooldown; returns new events."""
        async with self._lock:
            if not self._signals and not self._events:
                return []

            now = utcnow()
            fired: list[SignalEvent] = []
            for signal in self._signals:
                value = self._metric_value(signal, live_assets, sentiment)
                if value is None or not condition_met(value, signal.trigger_condition):
                    continue
                if self._cooling_down(signal.id, now):
                    continue
                affected = find_quote(live_assets, signal.affected_asset)
                if affected is None:
                    logger.debug("Signal hit without affected asset quote", signal_id=signal.id)
                    continue

                event = SignalEvent(
                    event_id=f"{signal.id}-{int(now.timestamp() * 1000)}",
                    signal=signal.model_copy(deep=True),
                    triggered_price=affected.price,
                    triggered_at=now,
                    live_price=affected.price,
                )
                self._events.insert(0, event)
                fired.append(event)
                logger.info(
                    "Signal fired",
                    signal_id=signal.id,
                    metric=signal.trigger_condition.metric.value,
                    value=round(value, 4),
                    price=affected.price,
                )

            del self._events[self.event_limit :]

            repriced = False
            for event in self._events:
                quote = find_quote(live_assets, event.signal.affected_asset)
                if quote is not None and quote.price != event.live_price:
                    event.live_price = quote.price
                    repriced = True

            if fired or repriced:
                await self._commit()

        return [event.model_copy(deep=True) for event in fired]
