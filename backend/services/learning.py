"""Experiment lifecycle: approved patterns tracked through one simulated trade.

State machine per experiment::

    pending --dispatch--> running --trade closes--> completed
    completed --resume--> pending (re-dispatched)
    any --recycle--> removed

A failed dispatch (asset not in the live snapshot, no trade located) is a
``completed`` experiment whose result carries ``pnl=None`` plus a failure
log entry. All mutations run under one lock and follow
mutate -> persist -> notify.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Coroutine, Optional, Protocol

from models.experiment import (
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    LearningPattern,
    LogEntry,
    LogType,
    TradeDirection,
)
from models.market import AssetQuote, find_quote
from models.simulation import SimulatedTrade, TradeStatus
from services.kv_store import (
    ACTIVITY_LOGS_KEY,
    EXPERIMENTS_KEY,
    KeyValueStore,
    read_collection,
    write_collection,
)
from services.subscriptions import Subscribable
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("learning")


class TradeLedger(Protocol):
    async def open_position(self, asset: AssetQuote, direction: TradeDirection) -> Any: ...

    async def list_trades(self) -> list[SimulatedTrade]: ...


class RefinementProvider(Protocol):
    async def suggest_refinement(self, pattern: LearningPattern, prior_pnl: Optional[float] = None) -> str: ...


def format_currency(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


class LearningService(Subscribable):
    """Owns the experiment collection and its activity log."""

    def __init__(
        self,
        store: KeyValueStore,
        ledger: TradeLedger,
        refiner: RefinementProvider,
        poll_interval_seconds: float = 5.0,
        max_running_seconds: Optional[float] = None,
        log_limit: int = 100,
    ):
        super().__init__()
        self._store = store
        self._ledger = ledger
        self._refiner = refiner
        self.poll_interval_seconds = poll_interval_seconds
        self.max_running_seconds = max_running_seconds
        self.log_limit = log_limit

        self._experiments: list[Experiment] = []
        self._logs: list[LogEntry] = []
        self._lock = asyncio.Lock()
        self._polls: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    # ==================== STATE ====================

    async def load(self) -> None:
        """Restore persisted experiments and logs; bad data loads as empty."""
        async with self._lock:
            self._experiments = await read_collection(self._store, EXPERIMENTS_KEY, Experiment)
            self._logs = (await read_collection(self._store, ACTIVITY_LOGS_KEY, LogEntry))[: self.log_limit]
        logger.info("Experiments loaded", experiments=len(self._experiments), logs=len(self._logs))

    def experiments(self) -> list[Experiment]:
        """Most recently approved first"""
        ordered = sorted(self._experiments, key=lambda e: e.approved_at, reverse=True)
        return [experiment.snapshot() for experiment in ordered]

    def logs(self) -> list[LogEntry]:
        """Most recent first"""
        return [entry.model_copy() for entry in self._logs]

    def get(self, experiment_id: str) -> Optional[Experiment]:
        experiment = self._find(experiment_id)
        return experiment.snapshot() if experiment else None

    def is_pattern_in_experiments(self, pattern_id: str) -> bool:
        return self._find(pattern_id) is not None

    def is_polling(self, experiment_id: str) -> bool:
        task = self._polls.get(experiment_id)
        return task is not None and not task.done()

    def _find(self, experiment_id: str) -> Optional[Experiment]:
        return next((e for e in self._experiments if e.id == experiment_id), None)

    def _add_log(
        self,
        message: str,
        log_type: LogType,
        experiment_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        entry = LogEntry(
            id=uuid.uuid4().hex,
            timestamp=utcnow(),
            message=message,
            type=log_type,
            experiment_id=experiment_id,
            detail=detail,
        )
        self._logs.insert(0, entry)
        del self._logs[self.log_limit :]

    async def _commit(self) -> None:
        """Persist both collections then notify; persistence failures are swallowed."""
        await write_collection(self._store, EXPERIMENTS_KEY, self._experiments)
        await write_collection(self._store, ACTIVITY_LOGS_KEY, self._logs)
        self._notify()

    # ==================== OPERATIONS ====================

    async def approve(self, pattern: LearningPattern, live_assets: list[AssetQuote]) -> Optional[Experiment]:
        """Create a pending experiment for ``pattern`` and dispatch it.

        Returns None when an experiment with the same id already exists.
        """
        async with self._lock:
            if self._find(pattern.id) is not None:
                logger.warning("Pattern is already in experiments", pattern_id=pattern.id)
                return None

            experiment = Experiment(
                **pattern.model_dump(include=set(LearningPattern.model_fields)),
                status=ExperimentStatus.PENDING,
                result=None,
                approved_at=utcnow(),
            )
            self._experiments.insert(0, experiment)
            self._add_log(f'Pattern "{pattern.title}" approved for testing.', LogType.INFO, experiment.id)
            await self._commit()
            logger.info("Pattern approved", experiment_id=experiment.id, affected_asset=experiment.affected_asset)

            await self._dispatch(experiment, live_assets)
            return experiment.snapshot()

    async def resume(self, experiment_id: str, live_assets: list[AssetQuote]) -> Optional[Experiment]:
        """Restart a completed experiment; anything else is a logged no-op."""
        async with self._lock:
            experiment = self._find(experiment_id)
            if experiment is None or experiment.status != ExperimentStatus.COMPLETED:
                logger.warning(
                    "Cannot resume experiment: not completed or does not exist",
                    experiment_id=experiment_id,
                    status=experiment.status.value if experiment else None,
                )
                return None

            self._cancel_poll(experiment_id)
            experiment.status = ExperimentStatus.PENDING
            experiment.result = None
            experiment.approved_at = utcnow()
            self._add_log(f'Resuming experiment "{experiment.title}".', LogType.INFO, experiment.id)
            await self._commit()

            await self._dispatch(experiment, live_assets)
            return experiment.snapshot()

    async def recycle(self, experiment_id: str) -> bool:
        """Remove the experiment now, then ask for a refinement in the background."""
        async with self._lock:
            experiment = self._find(experiment_id)
            if experiment is None:
                logger.debug("Recycle ignored, unknown experiment", experiment_id=experiment_id)
                return False

            self._cancel_poll(experiment_id)
            final = experiment.snapshot()
            prior_pnl = final.result.pnl if final.result and final.result.pnl is not None else 0.0

            self._experiments = [e for e in self._experiments if e.id != experiment_id]
            self._add_log(f'Experiment "{final.title}" sent to R&D for refinement.', LogType.INFO, experiment_id)
            await self._commit()
            logger.info("Experiment recycled", experiment_id=experiment_id, prior_pnl=prior_pnl)

        self._spawn(self._refine_recycled(final, prior_pnl), name=f"refine-{experiment_id}")
        return True

    async def recycle_pattern(self, pattern: LearningPattern) -> str:
        """Ask for a refinement of a pattern that was never approved."""
        async with self._lock:
            self._add_log(f'Pattern "{pattern.title}" sent back to AI for immediate refinement.', LogType.INFO)
            await self._commit()

        suggestion = await self._request_suggestion(pattern, None)
        async with self._lock:
            self._add_log(f'AI proposed refinement for "{pattern.title}".', LogType.INFO, detail=suggestion)
            await self._commit()
        return suggestion

    async def restore_polls(self) -> int:
        """Re-arm completion polls for experiments persisted as running."""
        restored = 0
        async with self._lock:
            for experiment in self._experiments:
                if experiment.status != ExperimentStatus.RUNNING:
                    continue
                trade_id = experiment.result.trade_id if experiment.result else None
                if trade_id:
                    self._start_poll(experiment.id, trade_id)
                    restored += 1
                    continue
                await self._fail_dispatch(
                    experiment,
                    f'Experiment "{experiment.title}" was interrupted before its trade was linked.',
                )
        if restored:
            logger.info("Restored experiment polls", count=restored)
        return restored

    async def shutdown(self) -> None:
        tasks = list(self._polls.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._polls.clear()
        self._background.clear()

    # ==================== DISPATCH ====================

    async def _dispatch(self, experiment: Experiment, live_assets: list[AssetQuote]) -> None:
        """Open the experiment's trade and start polling it. Caller holds the lock."""
        quote = find_quote(live_assets, experiment.affected_asset)
        if quote is None:
            await self._fail_dispatch(
                experiment,
                f"Cannot run experiment {experiment.id}: Asset {experiment.affected_asset} not found.",
            )
            return

        experiment.status = ExperimentStatus.RUNNING
        experiment.result = ExperimentResult(pnl=None, trade_id=None)
        await self._commit()

        try:
            await self._ledger.open_position(quote, experiment.trade_direction)
            trades = await self._ledger.list_trades()
        except Exception as exc:
            logger.error(
                "Trade ledger rejected experiment",
                experiment_id=experiment.id,
                error=str(exc),
                exc_info=True,
            )
            await self._fail_dispatch(
                experiment,
                f'Failed to open a trade for experiment "{experiment.title}": {exc}',
            )
            return

        trade = self._locate_new_trade(experiment, quote, trades)
        if trade is None:
            await self._fail_dispatch(
                experiment,
                f'Failed to find newly created trade for experiment "{experiment.title}".',
            )
            return

        experiment.result = ExperimentResult(pnl=None, trade_id=trade.id)
        await self._commit()
        logger.info("Experiment running", experiment_id=experiment.id, trade_id=trade.id, symbol=quote.symbol)
        self._start_poll(experiment.id, trade.id)

    def _locate_new_trade(
        self, experiment: Experiment, quote: AssetQuote, trades: list[SimulatedTrade]
    ) -> Optional[SimulatedTrade]:
        """Newest open trade on the asset that no other experiment already tracks."""
        linked = {
            e.result.trade_id
            for e in self._experiments
            if e is not experiment and e.result is not None and e.result.trade_id
        }
        symbol = quote.symbol.upper()
        newest_first = sorted(trades, key=lambda t: t.opened_at, reverse=True)
        for trade in newest_first:
            if trade.symbol.upper() == symbol and trade.status == TradeStatus.OPEN and trade.id not in linked:
                return trade
        return None

    async def _fail_dispatch(self, experiment: Experiment, message: str) -> None:
        logger.error(message, experiment_id=experiment.id)
        experiment.status = ExperimentStatus.COMPLETED
        experiment.result = ExperimentResult(pnl=None, trade_id=None)
        self._add_log(message, LogType.FAILURE, experiment.id)
        await self._commit()

    # ==================== COMPLETION POLLING ====================

    def _start_poll(self, experiment_id: str, trade_id: str) -> None:
        self._cancel_poll(experiment_id)
        task = asyncio.create_task(
            self._poll_until_closed(experiment_id, trade_id),
            name=f"experiment-poll-{experiment_id}",
        )
        self._polls[experiment_id] = task

        def _forget(done: asyncio.Task, eid: str = experiment_id) -> None:
            if self._polls.get(eid) is done:
                del self._polls[eid]

        task.add_done_callback(_forget)

    def _cancel_poll(self, experiment_id: str) -> None:
        task = self._polls.pop(experiment_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _poll_until_closed(self, experiment_id: str, trade_id: str) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_seconds)
            try:
                trades = await self._ledger.list_trades()
            except Exception as exc:
                logger.warning("Trade ledger poll failed", experiment_id=experiment_id, error=str(exc))
                trades = []

            trade = next((t for t in trades if t.id == trade_id), None)
            if trade is not None and trade.status == TradeStatus.CLOSED:
                await self._complete(experiment_id, trade_id, trade.pnl if trade.pnl is not None else 0.0)
                return

            if self._overdue(experiment_id):
                await self._expire(experiment_id, trade_id)
                return

    def _overdue(self, experiment_id: str) -> bool:
        """Running time counts from approved_at so it carries across restarts."""
        if self.max_running_seconds is None:
            return False
        experiment = self._find(experiment_id)
        if experiment is None:
            return False
        return (utcnow() - experiment.approved_at).total_seconds() >= self.max_running_seconds

    def _still_tracking(self, experiment: Optional[Experiment], trade_id: str) -> bool:
        return (
            experiment is not None
            and experiment.status == ExperimentStatus.RUNNING
            and experiment.result is not None
            and experiment.result.trade_id == trade_id
        )

    async def _complete(self, experiment_id: str, trade_id: str, pnl: float) -> None:
        async with self._lock:
            experiment = self._find(experiment_id)
            if not self._still_tracking(experiment, trade_id):
                return
            log_type = LogType.SUCCESS if pnl >= 0 else LogType.FAILURE
            message = f'Experiment "{experiment.title}" completed. PNL: {format_currency(pnl)}.'
            self._add_log(message, log_type, experiment_id)
            experiment.status = ExperimentStatus.COMPLETED
            experiment.result = ExperimentResult(pnl=pnl, trade_id=trade_id)
            await self._commit()
        logger.info("Experiment completed", experiment_id=experiment_id, trade_id=trade_id, pnl=pnl)

    async def _expire(self, experiment_id: str, trade_id: str) -> None:
        async with self._lock:
            experiment = self._find(experiment_id)
            if not self._still_tracking(experiment, trade_id):
                return
            message = (
                f'Experiment "{experiment.title}" stopped after {self.max_running_seconds:g}s '
                "without its trade closing."
            )
            self._add_log(message, LogType.FAILURE, experiment_id)
            experiment.status = ExperimentStatus.COMPLETED
            experiment.result = ExperimentResult(pnl=None, trade_id=trade_id)
            await self._commit()
        logger.warning("Experiment exceeded max running time", experiment_id=experiment_id, trade_id=trade_id)

    # ==================== REFINEMENT ====================

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request_suggestion(self, pattern: LearningPattern, prior_pnl: Optional[float]) -> str:
        try:
            return await self._refiner.suggest_refinement(pattern, prior_pnl)
        except Exception as exc:
            logger.warning("Refinement provider failed", pattern_id=pattern.id, error=str(exc))
            return ""

    async def _refine_recycled(self, final: Experiment, prior_pnl: float) -> None:
        """Works on a snapshot taken at recycle time; never touches the experiments."""
        suggestion = await self._request_suggestion(final, prior_pnl)
        if suggestion:
            logger.info("AI refinement suggestion", experiment_id=final.id, suggestion=suggestion)
            message = f'AI proposed refinement for "{final.title}".'
            log_type = LogType.INFO
        else:
            message = f'No refinement could be produced for "{final.title}".'
            log_type = LogType.FAILURE
        async with self._lock:
            self._add_log(message, log_type, final.id, detail=suggestion or None)
            await self._commit()
