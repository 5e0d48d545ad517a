from .history import (
    BacktestMatch,
    BacktestResult,
    BacktestSummary,
    ChartSeries,
    ComparisonOperator,
    DateRange,
    HistoryEntry,
    Pattern,
    PatternMetric,
    SliceDirection,
    SurroundingEvents,
)
from .experiment import (
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    LearningPattern,
    LogEntry,
    LogType,
    TradeDirection,
)
from .market import AssetQuote, SentimentSnapshot
from .signal import (
    AvailableSignal,
    SignalEvent,
    TriggerCondition,
    TriggerMetric,
    TriggerSource,
)

__all__ = [
    "BacktestMatch",
    "BacktestResult",
    "BacktestSummary",
    "ChartSeries",
    "ComparisonOperator",
    "DateRange",
    "HistoryEntry",
    "Pattern",
    "PatternMetric",
    "SliceDirection",
    "SurroundingEvents",
    "Experiment",
    "ExperimentResult",
    "ExperimentStatus",
    "LearningPattern",
    "LogEntry",
    "LogType",
    "TradeDirection",
    "AssetQuote",
    "SentimentSnapshot",
    "AvailableSignal",
    "SignalEvent",
    "TriggerCondition",
    "TriggerMetric",
    "TriggerSource",
]
