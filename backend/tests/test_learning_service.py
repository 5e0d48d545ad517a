import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.experiment import Experiment, ExperimentResult, ExperimentStatus, LogType
from models.market import AssetQuote
from models.simulation import SimulatedTrade, TradeStatus
from services.kv_store import ACTIVITY_LOGS_KEY, EXPERIMENTS_KEY, InMemoryKeyValueStore
from services.learning import LearningService
from services.simulation import SimulationService
from utils.utcnow import utcnow


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _refiner(suggestion: str = "Require a volume spike above 40% before entering."):
    refiner = AsyncMock()
    refiner.suggest_refinement = AsyncMock(return_value=suggestion)
    return refiner


def _service(store, ledger, refiner=None, **kwargs) -> LearningService:
    kwargs.setdefault("poll_interval_seconds", 0.01)
    return LearningService(store, ledger=ledger, refiner=refiner or _refiner(), **kwargs)


def _eth_rally(live_assets, price: float = 3600.0) -> list[AssetQuote]:
    return [q.model_copy(update={"price": price}) if q.symbol == "ETH" else q for q in live_assets]


@pytest.mark.asyncio
async def test_approve_dispatches_and_links_trade(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    notified = []
    service.subscribe(lambda: notified.append(True))
    try:
        experiment = await service.approve(learning_pattern, live_assets)

        assert experiment.status == ExperimentStatus.RUNNING
        trades = ledger.trades()
        assert len(trades) == 1
        assert trades[0].symbol == "ETH"
        assert experiment.result == ExperimentResult(pnl=None, trade_id=trades[0].id)
        assert service.is_polling("p1")
        assert service.is_pattern_in_experiments("p1")
        assert notified

        persisted = kv_store.raw(EXPERIMENTS_KEY)
        assert persisted[0]["id"] == "p1"
        assert persisted[0]["status"] == "running"
        assert service.logs()[0].message == 'Pattern "BTC strength lifts ETH" approved for testing.'
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_approving_same_pattern_twice_keeps_one_experiment(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        duplicate = await service.approve(learning_pattern, live_assets)

        assert duplicate is None
        assert [e.id for e in service.experiments()] == ["p1"]
        assert len(ledger.trades()) == 1
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_unknown_asset_completes_with_null_pnl_and_one_failure(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    pattern = learning_pattern.model_copy(update={"affected_asset": "ZZZ"})
    notified = []
    service.subscribe(lambda: notified.append(True))

    experiment = await service.approve(pattern, live_assets)
    assert len(notified) == 2

    assert experiment.status == ExperimentStatus.COMPLETED
    assert experiment.result is not None
    assert experiment.result.pnl is None
    failures = [entry for entry in service.logs() if entry.type == LogType.FAILURE]
    assert len(failures) == 1
    assert failures[0].message == "Cannot run experiment p1: Asset ZZZ not found."
    assert failures[0].experiment_id == "p1"
    assert ledger.trades() == []
    assert not service.is_polling("p1")


@pytest.mark.asyncio
async def test_trade_close_completes_experiment(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        notified = []
        service.subscribe(lambda: notified.append(True))

        closed = await ledger.update_open_trades(_eth_rally(live_assets))
        assert len(closed) == 1

        await _wait_for(lambda: service.get("p1").status == ExperimentStatus.COMPLETED)
        experiment = service.get("p1")
        assert experiment.result.pnl == pytest.approx(200.0)
        assert len(notified) == 1
        assert experiment.result.trade_id == closed[0].id
        latest = service.logs()[0]
        assert latest.type == LogType.SUCCESS
        assert latest.message == 'Experiment "BTC strength lifts ETH" completed. PNL: $200.00.'
        assert not service.is_polling("p1")
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_losing_trade_is_logged_as_failure(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        await ledger.update_open_trades(_eth_rally(live_assets, price=2700.0))

        await _wait_for(lambda: service.get("p1").status == ExperimentStatus.COMPLETED)
        assert service.get("p1").result.pnl < 0
        assert service.logs()[0].type == LogType.FAILURE
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_ledger_error_is_a_dispatch_failure(kv_store, learning_pattern, live_assets):
    ledger = AsyncMock()
    ledger.open_position = AsyncMock(side_effect=RuntimeError("ledger offline"))
    ledger.list_trades = AsyncMock(return_value=[])
    service = _service(kv_store, ledger)

    experiment = await service.approve(learning_pattern, live_assets)

    assert experiment.status == ExperimentStatus.COMPLETED
    assert experiment.result.pnl is None
    assert service.logs()[0].type == LogType.FAILURE


@pytest.mark.asyncio
async def test_missing_trade_is_a_dispatch_failure(kv_store, learning_pattern, live_assets):
    ledger = AsyncMock()
    ledger.open_position = AsyncMock(return_value=None)
    ledger.list_trades = AsyncMock(return_value=[])
    service = _service(kv_store, ledger)

    experiment = await service.approve(learning_pattern, live_assets)

    assert experiment.status == ExperimentStatus.COMPLETED
    assert experiment.result.pnl is None
    assert service.logs()[0].message == 'Failed to find newly created trade for experiment "BTC strength lifts ETH".'


@pytest.mark.asyncio
async def test_experiments_on_same_asset_link_distinct_trades(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    second = learning_pattern.model_copy(update={"id": "p2", "title": "Second ETH idea"})
    try:
        await service.approve(learning_pattern, live_assets)
        await service.approve(second, live_assets)

        ordered = service.experiments()
        assert [e.id for e in ordered] == ["p2", "p1"]
        assert ordered[0].result.trade_id != ordered[1].result.trade_id
        assert {t.id for t in ledger.trades()} == {e.result.trade_id for e in ordered}
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_recycle_removes_immediately_and_refines_in_background(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    release = asyncio.Event()

    async def slow_suggestion(pattern, prior_pnl=None):
        await release.wait()
        return "Add a BTC dominance filter."

    refiner = AsyncMock()
    refiner.suggest_refinement = AsyncMock(side_effect=slow_suggestion)
    service = _service(kv_store, ledger, refiner=refiner)
    try:
        await service.approve(learning_pattern, live_assets)
        notified = []
        service.subscribe(lambda: notified.append(True))

        assert await service.recycle("p1") is True
        assert len(notified) == 1

        # Removal is visible before the refinement finishes.
        assert service.experiments() == []
        assert not service.is_polling("p1")
        assert kv_store.raw(EXPERIMENTS_KEY) == []
        assert service.logs()[0].message == 'Experiment "BTC strength lifts ETH" sent to R&D for refinement.'

        release.set()
        await _wait_for(lambda: service.logs()[0].message.startswith("AI proposed refinement"))
        assert len(notified) == 2

        refined_pattern, prior_pnl = refiner.suggest_refinement.await_args.args
        assert refined_pattern.id == "p1"
        assert prior_pnl == 0.0
        assert service.logs()[0].detail == "Add a BTC dominance filter."
        assert service.experiments() == []
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_recycled_experiment_ignores_later_trade_close(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        await service.recycle("p1")
        await ledger.update_open_trades(_eth_rally(live_assets))
        await asyncio.sleep(0.05)

        assert service.get("p1") is None
        assert not any(entry.type == LogType.SUCCESS for entry in service.logs())
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_recycle_unknown_experiment_is_noop(kv_store):
    service = _service(kv_store, AsyncMock())
    assert await service.recycle("missing") is False
    assert service.logs() == []


@pytest.mark.asyncio
async def test_reapproval_after_recycle_creates_fresh_experiment(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        await service.recycle("p1")
        again = await service.approve(learning_pattern, live_assets)

        assert again is not None
        assert again.status == ExperimentStatus.RUNNING
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_resume_restarts_completed_experiment(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    no_eth = [q for q in live_assets if q.symbol != "ETH"]
    try:
        failed = await service.approve(learning_pattern, no_eth)
        assert failed.status == ExperimentStatus.COMPLETED
        notified = []
        service.subscribe(lambda: notified.append(True))

        resumed = await service.resume("p1", live_assets)

        assert resumed.status == ExperimentStatus.RUNNING
        assert resumed.result.trade_id is not None
        assert resumed.approved_at >= failed.approved_at
        # resume, running, trade linked
        assert len(notified) == 3
        messages = [entry.message for entry in service.logs()]
        assert 'Resuming experiment "BTC strength lifts ETH".' in messages
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_resume_is_noop_unless_completed(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)

        assert await service.resume("p1", live_assets) is None
        assert await service.resume("missing", live_assets) is None
        assert service.get("p1").status == ExperimentStatus.RUNNING
        assert len(ledger.trades()) == 1
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_max_running_duration_stops_poll(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger, max_running_seconds=0.05)
    try:
        await service.approve(learning_pattern, live_assets)

        await _wait_for(lambda: service.get("p1").status == ExperimentStatus.COMPLETED)
        experiment = service.get("p1")
        assert experiment.result.pnl is None
        assert experiment.result.trade_id is not None
        assert service.logs()[0].type == LogType.FAILURE
        assert "without its trade closing" in service.logs()[0].message
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_pending_status_is_the_only_state_without_result(kv_store, learning_pattern, live_assets):
    ledger = SimulationService(kv_store)
    service = _service(kv_store, ledger)
    try:
        await service.approve(learning_pattern, live_assets)
        await service.approve(learning_pattern.model_copy(update={"id": "p2", "affected_asset": "ZZZ"}), live_assets)

        for experiment in service.experiments():
            assert (experiment.result is None) == (experiment.status == ExperimentStatus.PENDING)
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_log_retention_limit(kv_store, learning_pattern, live_assets):
    service = _service(kv_store, AsyncMock(), log_limit=3)

    for idx in range(3):
        pattern = learning_pattern.model_copy(update={"id": f"x{idx}", "affected_asset": "ZZZ"})
        await service.approve(pattern, live_assets)

    logs = service.logs()
    assert len(logs) == 3
    assert logs[0].experiment_id == "x2"
    assert len(kv_store.raw(ACTIVITY_LOGS_KEY)) == 3


@pytest.mark.asyncio
async def test_recycle_pattern_logs_suggestion(kv_store, learning_pattern):
    refiner = _refiner("Wait for a daily close above resistance.")
    service = _service(kv_store, AsyncMock(), refiner=refiner)

    suggestion = await service.recycle_pattern(learning_pattern)

    assert suggestion == "Wait for a daily close above resistance."
    refiner.suggest_refinement.assert_awaited_once_with(learning_pattern, None)
    assert service.logs()[0].detail == suggestion
    assert service.experiments() == []


@pytest.mark.asyncio
async def test_load_and_restore_polls(learning_pattern):
    running = Experiment(
        **learning_pattern.model_dump(),
        status=ExperimentStatus.RUNNING,
        result=ExperimentResult(trade_id="ethereum-abc"),
    )
    orphan = Experiment(
        **learning_pattern.model_copy(update={"id": "p2", "title": "Orphan"}).model_dump(),
        status=ExperimentStatus.RUNNING,
        result=ExperimentResult(),
    )
    store = InMemoryKeyValueStore(
        {EXPERIMENTS_KEY: [running.model_dump(mode="json"), orphan.model_dump(mode="json")]}
    )
    closed_trade = SimulatedTrade(
        id="ethereum-abc",
        asset=AssetQuote(id="ethereum", symbol="ETH", price=3000.0),
        direction="buy",
        entry_price=3000.0,
        size_usd=1000.0,
        pnl=-25.0,
        status=TradeStatus.CLOSED,
    )
    ledger = AsyncMock()
    ledger.list_trades = AsyncMock(return_value=[closed_trade])
    service = _service(store, ledger)
    try:
        await service.load()
        restored = await service.restore_polls()

        assert restored == 1
        assert service.get("p2").status == ExperimentStatus.COMPLETED
        assert service.get("p2").result.pnl is None

        await _wait_for(lambda: service.get("p1").status == ExperimentStatus.COMPLETED)
        assert service.get("p1").result.pnl == -25.0
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_restored_poll_counts_running_time_from_approval(learning_pattern):
    stale = Experiment(
        **learning_pattern.model_dump(),
        status=ExperimentStatus.RUNNING,
        result=ExperimentResult(trade_id="ethereum-abc"),
        approved_at=utcnow() - timedelta(hours=2),
    )
    store = InMemoryKeyValueStore({EXPERIMENTS_KEY: [stale.model_dump(mode="json")]})
    ledger = AsyncMock()
    ledger.list_trades = AsyncMock(return_value=[])
    service = _service(store, ledger, max_running_seconds=3600)
    try:
        await service.load()
        assert await service.restore_polls() == 1

        await _wait_for(lambda: service.get("p1").status == ExperimentStatus.COMPLETED)
        experiment = service.get("p1")
        assert experiment.result.pnl is None
        assert experiment.result.trade_id == "ethereum-abc"
        assert "without its trade closing" in service.logs()[0].message
    finally:
        await service.shutdown()



@pytest.mark.asyncio
async def test_load_with_malformed_data_starts_empty():
    store = InMemoryKeyValueStore({EXPERIMENTS_KEY: {"oops": True}, ACTIVITY_LOGS_KEY: [{"bad": 1}]})
    service = _service(store, AsyncMock())

    await service.load()

    assert service.experiments() == []
    assert service.logs() == []
