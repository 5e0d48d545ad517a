from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PatternMetric(str, Enum):
    """Daily metrics a backtest pattern can threshold on."""

    DAILY_CHANGE = "daily_change"
    VOLATILITY = "volatility"


class ComparisonOperator(str, Enum):
    GT = "gt"
    LT = "lt"


class SliceDirection(str, Enum):
    BEFORE = "before"
    AFTER = "after"


_METRIC_ALIASES = {
    "dailyChange": PatternMetric.DAILY_CHANGE.value,
    "daily change": PatternMetric.DAILY_CHANGE.value,
}


class HistoryEntry(BaseModel):
    """One observation of the historical archive for a single day.

    Several entries can share a date (one per detected event).
    """

    model_config = ConfigDict(frozen=True)

    date: date
    price: float
    daily_change: float = 0.0  # %
    volatility: float = 0.0  # %
    volume_change: float = 0.0  # %
    event_type: str = ""
    direction: str = ""  # POSITIVE / NEGATIVE / NEUTRAL
    intensity_score: float = 0.0  # 0-10
    status: str = ""  # e.g. "EVENT DETECTED"


class Pattern(BaseModel):
    """Declarative threshold rule evaluated by the backtester."""

    id: str
    name: str = ""
    metric: PatternMetric
    operator: ComparisonOperator
    value: float
    analysis_window: int = Field(ge=1)  # entries forward

    @field_validator("metric", mode="before")
    @classmethod
    def _accept_camel_case_metric(cls, value: object) -> object:
        if isinstance(value, str):
            return _METRIC_ALIASES.get(value, value)
        return value


class BacktestMatch(BaseModel):
    date: date
    performance: float  # % change over the analysis window


class BacktestSummary(BaseModel):
    total: int = 0
    successes: int = 0  # performance > 0
    total_return: float = 0.0

    @property
    def average_return(self) -> float:
        return self.total_return / self.total if self.total else 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total * 100 if self.total else 0.0


class BacktestResult(BaseModel):
    matches: list[BacktestMatch] = []
    summary: BacktestSummary = Field(default_factory=BacktestSummary)


class DateRange(BaseModel):
    min: Optional[date] = None
    max: Optional[date] = None


class ChartSeries(BaseModel):
    """One price per calendar day, chronological."""

    labels: list[date] = []
    prices: list[float] = []


class SurroundingEvents(BaseModel):
    before: list[HistoryEntry] = []
    after: list[HistoryEntry] = []
