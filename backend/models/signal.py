from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.experiment import TradeDirection
from models.history import ComparisonOperator
from utils.utcnow import utcnow


class TriggerMetric(str, Enum):
    PRICE_CHANGE_24H = "price_change_24h"
    SENTIMENT_SCORE = "sentiment_score"  # compared on a 0-100 scale


class TriggerSource(str, Enum):
    TRIGGER_ASSET = "trigger_asset"
    AFFECTED_ASSET = "affected_asset"
    GLOBAL = "global"


class TriggerCondition(BaseModel):
    metric: TriggerMetric
    operator: ComparisonOperator
    threshold: float
    source: TriggerSource = TriggerSource.TRIGGER_ASSET

    def describe(self) -> str:
        symbol = ">" if self.operator == ComparisonOperator.GT else "<"
        return f"{self.metric.value} on {self.source.value} {symbol} {self.threshold}"


class AvailableSignal(BaseModel):
    """A promoted experiment re-armed to fire on live data."""

    id: str
    title: str
    description: str = ""
    trigger_asset: str
    affected_asset: str
    trade_direction: TradeDirection
    trigger_condition: TriggerCondition


class SignalEvent(BaseModel):
    event_id: str
    signal: AvailableSignal
    triggered_price: float
    triggered_at: datetime = Field(default_factory=utcnow)
    live_price: Optional[float] = None  # refreshed from the latest quote on every tick
