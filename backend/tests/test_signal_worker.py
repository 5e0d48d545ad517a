import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.market import SentimentSnapshot
from services.market_data import MarketDataError
from workers import signal_worker
from workers.signal_worker import SignalWorker


def _worker(live_assets, **overrides):
    market_data = SimpleNamespace(
        fetch_quotes=AsyncMock(return_value=live_assets),
        fetch_sentiment=AsyncMock(return_value=SentimentSnapshot(sentiment_score=0.7)),
    )
    simulation = SimpleNamespace(update_open_trades=AsyncMock(return_value=[]))
    signals = SimpleNamespace(evaluate=AsyncMock(return_value=[object()]))
    parts = {"market_data": market_data, "simulation": simulation, "signals": signals}
    parts.update(overrides)
    return SignalWorker(parts["market_data"], parts["simulation"], parts["signals"], interval_seconds=5)


@pytest.mark.asyncio
async def test_tick_feeds_ledger_then_signals(live_assets):
    worker = _worker(live_assets)

    stats = await worker.tick()

    worker.simulation.update_open_trades.assert_awaited_once_with(live_assets)
    worker.signals.evaluate.assert_awaited_once_with(live_assets, worker.latest_sentiment)
    assert stats == {"quotes": 3, "closed_trades": 0, "signals_fired": 1}
    assert worker.latest_quotes == live_assets
    assert worker.latest_sentiment.sentiment_score == 0.7
    assert worker.last_tick_at is not None


@pytest.mark.asyncio
async def test_loop_survives_fetch_failure(monkeypatch, live_assets):
    market_data = SimpleNamespace(
        fetch_quotes=AsyncMock(side_effect=MarketDataError("429 Too Many Requests")),
        fetch_sentiment=AsyncMock(return_value=None),
    )
    worker = _worker(live_assets, market_data=market_data)
    sleep_mock = AsyncMock(side_effect=asyncio.CancelledError())
    monkeypatch.setattr(signal_worker.asyncio, "sleep", sleep_mock)

    with pytest.raises(asyncio.CancelledError):
        await worker._run_loop()

    sleep_mock.assert_awaited_once_with(5.0)
    worker.simulation.update_open_trades.assert_not_called()
    assert "429" in worker.last_error


@pytest.mark.asyncio
async def test_start_and_stop(live_assets):
    worker = _worker(live_assets)

    worker.start()
    assert worker.running
    await asyncio.sleep(0)
    await worker.stop()

    assert not worker.running
    worker.market_data.fetch_quotes.assert_awaited()


def test_interval_has_a_floor(live_assets):
    worker = SignalWorker(
        SimpleNamespace(),
        SimpleNamespace(),
        SimpleNamespace(),
        interval_seconds=0,
    )
    assert worker.interval_seconds == 1.0
