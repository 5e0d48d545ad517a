from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from utils.utcnow import utcnow


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class ExperimentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class LogType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INFO = "info"


class LearningPattern(BaseModel):
    """A discovered cross-asset pattern awaiting approval."""

    id: str
    title: str
    description: str = ""
    category: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    observation_count: int = 0
    trigger_asset: str
    affected_asset: str
    trade_direction: TradeDirection


class ExperimentResult(BaseModel):
    pnl: Optional[float] = None  # None until the linked trade closes, or on dispatch failure
    trade_id: Optional[str] = None


class Experiment(LearningPattern):
    """An approved pattern tracked through one simulated trade."""

    status: ExperimentStatus = ExperimentStatus.PENDING
    result: Optional[ExperimentResult] = None
    approved_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> "Experiment":
        return self.model_copy(deep=True)


class LogEntry(BaseModel):
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    type: LogType = LogType.INFO
    experiment_id: Optional[str] = None
    detail: Optional[str] = None  # e.g. the full refinement suggestion
