import asyncio
import uuid
from datetime import datetime
from typing import Optional

from models.experiment import TradeDirection
from models.market import AssetQuote
from models.simulation import (
    CloseReason,
    InvestmentStyle,
    RiskTolerance,
    SimulatedTrade,
    TradeStatus,
    WalletSettings,
)
from services.kv_store import (
    SIMULATED_TRADES_KEY,
    WALLET_SETTINGS_KEY,
    KeyValueStore,
    read_collection,
    write_collection,
)
from services.subscriptions import Subscribable
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("simulation")


STYLE_SIZE_MULTIPLIER = {
    InvestmentStyle.SCALPING: 0.5,
    InvestmentStyle.DAY_TRADING: 1.0,
    InvestmentStyle.SWING_TRADING: 1.5,
}
RISK_SIZE_MULTIPLIER = {
    RiskTolerance.CONSERVATIVE: 0.75,
    RiskTolerance.MODERATE: 1.0,
    RiskTolerance.AGGRESSIVE: 1.5,
}
# (take profit %, stop loss %) before style/confidence scaling
RISK_TARGET_PERCENT = {
    RiskTolerance.CONSERVATIVE: (3.0, -1.5),
    RiskTolerance.MODERATE: (5.0, -2.5),
    RiskTolerance.AGGRESSIVE: (10.0, -5.0),
}
STYLE_TARGET_SCALE = {
    InvestmentStyle.SCALPING: 0.5,
    InvestmentStyle.DAY_TRADING: 1.0,
    InvestmentStyle.SWING_TRADING: 2.0,
}
MAX_TRADE_DURATION_HOURS = {
    InvestmentStyle.SCALPING: 1,
    InvestmentStyle.DAY_TRADING: 24,
    InvestmentStyle.SWING_TRADING: 72,
}
QUICK_TRADE_MINUTES = {
    InvestmentStyle.SCALPING: 15,
    InvestmentStyle.DAY_TRADING: 120,
    InvestmentStyle.SWING_TRADING: 720,
}

CONFIDENCE_BASELINE = 75.0
CONFIDENCE_FLOOR = 50.0
CONFIDENCE_CEILING = 95.0


class SimulationService(Subscribable):
    """Paper trading ledger used to measure experiment outcomes.

    Exposes the trade-ledger contract the learning service depends on:
    ``open_position`` and ``list_trades``. Positions are marked to market by
    ``update_open_trades`` and close on take profit, stop loss or when they
    outlive the investment style's time limit.
    """

    def __init__(self, store: KeyValueStore, base_trade_size_usd: float = 1000.0):
        super().__init__()
        self._store = store
        self.base_trade_size_usd = base_trade_size_usd
        self._trades: list[SimulatedTrade] = []
        self._settings = WalletSettings()
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        self._trades = await read_collection(self._store, SIMULATED_TRADES_KEY, SimulatedTrade)
        try:
            raw = await self._store.get(WALLET_SETTINGS_KEY)
            self._settings = WalletSettings.model_validate(raw) if raw else WalletSettings()
        except Exception as exc:
            logger.warning("Failed to load wallet settings, using defaults", error=str(exc))
            self._settings = WalletSettings()
        logger.info("Simulation ledger loaded", trades=len(self._trades))

    # ==================== LEDGER CONTRACT ====================

    async def open_position(self, asset: AssetQuote, direction: TradeDirection) -> SimulatedTrade:
        """Open a simulated position sized from the wallet settings"""
        async with self._lock:
            size_usd = self.position_size()
            trade = SimulatedTrade(
                id=f"{asset.id}-{uuid.uuid4().hex[:12]}",
                asset=asset.model_copy(),
                direction=TradeDirection(direction),
                entry_price=asset.price,
                size_usd=size_usd,
                opened_at=utcnow(),
            )
            trade.take_profit_price, trade.stop_loss_price = self.target_prices(trade)

            self._trades.insert(0, trade)
            await self._persist_trades()
            self._notify()

        logger.info(
            "Opened simulated position",
            trade_id=trade.id,
            symbol=asset.symbol,
            direction=trade.direction.value,
            entry_price=asset.price,
            size_usd=round(size_usd, 2),
            style=self._settings.investment_style.value,
            risk=self._settings.risk_tolerance.value,
            confidence=round(self._settings.ai_confidence, 2),
        )
        return trade

    async def list_trades(self) -> list[SimulatedTrade]:
        return self.trades()

    def trades(self) -> list[SimulatedTrade]:
        """All trades, newest first"""
        return [trade.model_copy() for trade in self._trades]

    def get_trade(self, trade_id: str) -> Optional[SimulatedTrade]:
        for trade in self._trades:
            if trade.id == trade_id:
                return trade.model_copy()
        return None

    # ==================== SIZING ====================

    def position_size(self) -> float:
        style = STYLE_SIZE_MULTIPLIER[self._settings.investment_style]
        risk = RISK_SIZE_MULTIPLIER[self._settings.risk_tolerance]
        base_size = self.base_trade_size_usd * style * risk
        # 75% confidence is neutral; each point above/below scales the size
        adjustment = base_size * (self._settings.ai_confidence / 100 - CONFIDENCE_BASELINE / 100)
        return base_size + adjustment

    def target_prices(self, trade: SimulatedTrade) -> tuple[float, float]:
        """(take_profit_price, stop_loss_price) under the current settings"""
        take_profit_pct, stop_loss_pct = RISK_TARGET_PERCENT[self._settings.risk_tolerance]
        style_scale = STYLE_TARGET_SCALE[self._settings.investment_style]
        confidence_factor = 1 + (self._settings.ai_confidence - CONFIDENCE_BASELINE) / 50
        take_profit_pct *= style_scale * confidence_factor
        stop_loss_pct *= style_scale * confidence_factor

        if trade.direction == TradeDirection.BUY:
            return (
                trade.entry_price * (1 + take_profit_pct / 100),
                trade.entry_price * (1 + stop_loss_pct / 100),
            )
        return (
            trade.entry_price * (1 - take_profit_pct / 100),
            trade.entry_price * (1 - stop_loss_pct / 100),
        )

    # ==================== MARK TO MARKET ====================

    async def update_open_trades(
        self, quotes: list[AssetQuote], now: Optional[datetime] = None
    ) -> list[SimulatedTrade]:
        """Re-price open trades and close the ones that hit a target; returns closed trades"""
        now = now or utcnow()
        price_by_id = {quote.id: quote.price for quote in quotes}
        closed: list[SimulatedTrade] = []

        async with self._lock:
            updated = False
            for trade in self._trades:
                if trade.status != TradeStatus.OPEN:
                    continue
                current_price = price_by_id.get(trade.asset.id)
                if current_price is None:
                    continue

                units = trade.size_usd / trade.entry_price if trade.entry_price else 0.0
                price_change = current_price - trade.entry_price
                trade.pnl = price_change * units if trade.direction == TradeDirection.BUY else -price_change * units
                updated = True

                reason = self._close_reason(trade, current_price, now)
                if reason is None:
                    continue

                take_profit, stop_loss = self.target_prices(trade)
                trade.status = TradeStatus.CLOSED
                trade.close_price = current_price
                trade.closed_at = now
                trade.close_reason = reason
                trade.take_profit_price = take_profit
                trade.stop_loss_price = stop_loss
                self._update_ai_confidence(trade)
                closed.append(trade.model_copy())
                logger.info(
                    "Closed simulated position",
                    trade_id=trade.id,
                    symbol=trade.symbol,
                    reason=reason.value,
                    pnl=round(trade.pnl or 0.0, 2),
                )

            if updated:
                await self._persist_trades()
                if closed:
                    await self._persist_settings()
                self._notify()

        return closed

    def _close_reason(self, trade: SimulatedTrade, price: float, now: datetime) -> Optional[CloseReason]:
        take_profit, stop_loss = self.target_prices(trade)
        if trade.direction == TradeDirection.BUY:
            if price >= take_profit:
                return CloseReason.TAKE_PROFIT
            if price <= stop_loss:
                return CloseReason.STOP_LOSS
        else:
            if price <= take_profit:
                return CloseReason.TAKE_PROFIT
            if price >= stop_loss:
                return CloseReason.STOP_LOSS

        max_hours = MAX_TRADE_DURATION_HOURS[self._settings.investment_style]
        held_hours = (now - trade.opened_at).total_seconds() / 3600
        if held_hours > max_hours:
            return CloseReason.TIME_LIMIT
        return None

    def _update_ai_confidence(self, trade: SimulatedTrade) -> None:
        if trade.pnl is None:
            return

        if trade.close_reason == CloseReason.TIME_LIMIT:
            # Fixed penalty regardless of P/L: the thesis did not play out in time.
            change = -0.2
        else:
            pnl_pct = trade.pnl / trade.size_usd * 100 if trade.size_usd else 0.0
            change = pnl_pct * (0.2 if pnl_pct >= 0 else 0.4)
            if trade.close_reason == CloseReason.TAKE_PROFIT:
                change *= 1.75
            elif trade.close_reason == CloseReason.STOP_LOSS:
                change *= 2.5

            closed_at = trade.closed_at or utcnow()
            held_minutes = (closed_at - trade.opened_at).total_seconds() / 60
            quick = held_minutes < QUICK_TRADE_MINUTES[self._settings.investment_style]
            if quick and trade.close_reason == CloseReason.TAKE_PROFIT:
                change += 0.35
            if quick and trade.close_reason == CloseReason.STOP_LOSS:
                change -= 0.6

        confidence = self._settings.ai_confidence + change
        self._settings.ai_confidence = max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEILING, confidence))
        logger.debug(
            "AI confidence updated",
            confidence=round(self._settings.ai_confidence, 2),
            change=round(change, 2),
            trade_id=trade.id,
        )

    # ==================== SETTINGS ====================

    @property
    def settings(self) -> WalletSettings:
        return self._settings.model_copy()

    async def update_settings(self, **changes) -> WalletSettings:
        async with self._lock:
            merged = {**self._settings.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
            self._settings = WalletSettings.model_validate(merged)
            await self._persist_settings()
            self._notify()
        return self.settings

    async def reset_wallet(self) -> None:
        async with self._lock:
            self._trades = []
            self._settings = WalletSettings()
            await self._persist_trades()
            await self._persist_settings()
            self._notify()
        logger.info("Simulated wallet reset")

    async def _persist_trades(self) -> None:
        await write_collection(self._store, SIMULATED_TRADES_KEY, self._trades)

    async def _persist_settings(self) -> None:
        try:
            await self._store.set(WALLET_SETTINGS_KEY, self._settings.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("Failed to persist wallet settings", error=str(exc))
