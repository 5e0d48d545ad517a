"""
Pattern Backtester
"When the condition held on BTC, what happened N entries later?"
"""
import numpy as np

from models.history import (
    BacktestMatch,
    BacktestResult,
    BacktestSummary,
    ComparisonOperator,
    Pattern,
)
from services.history_store import TimeSeriesStore
from utils.logger import get_logger

logger = get_logger("backtester")


CONDITION_HANDLERS = {
    ComparisonOperator.GT: np.greater,
    ComparisonOperator.LT: np.less,
}


class PatternBacktester:
    """Evaluates a Pattern against every entry of the loaded archive"""

    def __init__(self, store: TimeSeriesStore):
        self.store = store

    def run(self, pattern: Pattern) -> BacktestResult:
        """Run backtest

        Entries without a full forward window (the last ``analysis_window``
        entries) are never evaluated.
        """
        history = self.store.entries()
        window = pattern.analysis_window
        usable = len(history) - window
        if usable <= 0:
            return BacktestResult()

        prices = np.array([entry.price for entry in history], dtype=float)
        metric = np.array(
            [getattr(entry, pattern.metric.value) for entry in history[:usable]],
            dtype=float,
        )

        # Check condition (vectorized); a zero price has no defined return
        hits = CONDITION_HANDLERS[pattern.operator](metric, pattern.value)
        hits &= prices[:usable] > 0
        match_idx = np.flatnonzero(hits)

        start = prices[match_idx]
        end = prices[match_idx + window]
        performance = (end - start) / start * 100.0

        matches = [
            BacktestMatch(date=history[i].date, performance=float(perf))
            for i, perf in zip(match_idx.tolist(), performance.tolist())
        ]
        return BacktestResult(matches=matches, summary=self._summarize(matches))

    @staticmethod
    def _summarize(matches: list[BacktestMatch]) -> BacktestSummary:
        # Sequential sum keeps results identical to a plain left-to-right loop
        total_return = 0.0
        successes = 0
        for match in matches:
            total_return += match.performance
            if match.performance > 0:
                successes += 1
        return BacktestSummary(total=len(matches), successes=successes, total_return=total_return)
