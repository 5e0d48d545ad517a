import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.experiment import TradeDirection
from models.market import AssetQuote
from models.simulation import CloseReason, InvestmentStyle, RiskTolerance, TradeStatus
from services.kv_store import SIMULATED_TRADES_KEY, WALLET_SETTINGS_KEY, InMemoryKeyValueStore
from services.simulation import SimulationService


def _eth(price: float = 2000.0) -> AssetQuote:
    return AssetQuote(id="ethereum", symbol="ETH", name="Ethereum", price=price, change_24h=1.0)


@pytest.mark.asyncio
async def test_open_position_uses_wallet_sizing_and_persists(kv_store):
    service = SimulationService(kv_store, base_trade_size_usd=1000.0)

    trade = await service.open_position(_eth(), TradeDirection.BUY)

    assert trade.id.startswith("ethereum-")
    assert trade.status == TradeStatus.OPEN
    assert trade.size_usd == pytest.approx(1000.0)
    assert trade.take_profit_price == pytest.approx(2100.0)
    assert trade.stop_loss_price == pytest.approx(1950.0)
    assert kv_store.raw(SIMULATED_TRADES_KEY)[0]["id"] == trade.id


@pytest.mark.asyncio
async def test_position_size_scales_with_style_risk_and_confidence(kv_store):
    service = SimulationService(kv_store, base_trade_size_usd=1000.0)

    await service.update_settings(
        investment_style=InvestmentStyle.SWING_TRADING,
        risk_tolerance=RiskTolerance.AGGRESSIVE,
        ai_confidence=85.0,
    )

    # 1000 * 1.5 * 1.5 = 2250, plus 10 points of confidence above neutral
    assert service.position_size() == pytest.approx(2250.0 * 1.10)
    assert kv_store.raw(WALLET_SETTINGS_KEY)["investment_style"] == "swing_trading"


@pytest.mark.asyncio
async def test_sell_targets_are_mirrored(kv_store):
    service = SimulationService(kv_store)

    trade = await service.open_position(_eth(), TradeDirection.SELL)

    assert trade.take_profit_price == pytest.approx(1900.0)
    assert trade.stop_loss_price == pytest.approx(2050.0)


@pytest.mark.asyncio
async def test_take_profit_closes_trade_and_raises_confidence(kv_store):
    service = SimulationService(kv_store)
    trade = await service.open_position(_eth(), TradeDirection.BUY)

    closed = await service.update_open_trades([_eth(2200.0)])

    assert [t.id for t in closed] == [trade.id]
    stored = service.get_trade(trade.id)
    assert stored.status == TradeStatus.CLOSED
    assert stored.close_reason == CloseReason.TAKE_PROFIT
    assert stored.close_price == 2200.0
    assert stored.pnl == pytest.approx(100.0)
    assert service.settings.ai_confidence > 75.0


@pytest.mark.asyncio
async def test_stop_loss_on_short_position(kv_store):
    service = SimulationService(kv_store)
    await service.open_position(_eth(), TradeDirection.SELL)

    closed = await service.update_open_trades([_eth(2100.0)])

    assert closed[0].close_reason == CloseReason.STOP_LOSS
    assert closed[0].pnl == pytest.approx(-50.0)
    assert service.settings.ai_confidence < 75.0


@pytest.mark.asyncio
async def test_open_trade_is_marked_to_market(kv_store):
    service = SimulationService(kv_store)
    trade = await service.open_position(_eth(), TradeDirection.BUY)

    closed = await service.update_open_trades([_eth(2020.0)])

    assert closed == []
    stored = service.get_trade(trade.id)
    assert stored.status == TradeStatus.OPEN
    assert stored.pnl == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_time_limit_closes_stale_trade(kv_store):
    service = SimulationService(kv_store)
    trade = await service.open_position(_eth(), TradeDirection.BUY)

    later = trade.opened_at + timedelta(hours=25)
    closed = await service.update_open_trades([_eth(2010.0)], now=later)

    assert closed[0].close_reason == CloseReason.TIME_LIMIT
    assert closed[0].closed_at == later
    assert service.settings.ai_confidence == pytest.approx(74.8)


@pytest.mark.asyncio
async def test_quotes_for_other_assets_leave_trade_untouched(kv_store):
    service = SimulationService(kv_store)
    trade = await service.open_position(_eth(), TradeDirection.BUY)

    closed = await service.update_open_trades([AssetQuote(id="bitcoin", symbol="BTC", price=1.0)])

    assert closed == []
    assert service.get_trade(trade.id).pnl == 0.0


@pytest.mark.asyncio
async def test_confidence_is_clamped(kv_store):
    service = SimulationService(kv_store)
    await service.update_settings(ai_confidence=94.9)
    await service.open_position(_eth(), TradeDirection.BUY)

    await service.update_open_trades([_eth(4000.0)])

    assert service.settings.ai_confidence == 95.0


@pytest.mark.asyncio
async def test_list_trades_returns_newest_first(kv_store):
    service = SimulationService(kv_store)
    first = await service.open_position(_eth(), TradeDirection.BUY)
    second = await service.open_position(_eth(), TradeDirection.SELL)

    assert [t.id for t in await service.list_trades()] == [second.id, first.id]


@pytest.mark.asyncio
async def test_reset_wallet_clears_trades_and_settings(kv_store):
    service = SimulationService(kv_store)
    await service.update_settings(risk_tolerance=RiskTolerance.CONSERVATIVE)
    await service.open_position(_eth(), TradeDirection.BUY)

    await service.reset_wallet()

    assert service.trades() == []
    assert service.settings.risk_tolerance == RiskTolerance.MODERATE
    assert kv_store.raw(SIMULATED_TRADES_KEY) == []


@pytest.mark.asyncio
async def test_load_restores_trades_and_settings(kv_store):
    service = SimulationService(kv_store)
    await service.update_settings(investment_style=InvestmentStyle.SCALPING)
    trade = await service.open_position(_eth(), TradeDirection.BUY)

    reloaded = SimulationService(kv_store)
    await reloaded.load()

    assert reloaded.get_trade(trade.id) is not None
    assert reloaded.settings.investment_style == InvestmentStyle.SCALPING


@pytest.mark.asyncio
async def test_persist_failure_keeps_in_memory_state():
    store = InMemoryKeyValueStore()
    store.set = AsyncMock(side_effect=OSError("disk full"))
    service = SimulationService(store)

    trade = await service.open_position(_eth(), TradeDirection.BUY)

    assert service.get_trade(trade.id) is not None
