from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.experiment import TradeDirection
from models.market import AssetQuote
from utils.utcnow import utcnow


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TIME_LIMIT = "time_limit"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class InvestmentStyle(str, Enum):
    SCALPING = "scalping"
    DAY_TRADING = "day_trading"
    SWING_TRADING = "swing_trading"


class WalletSettings(BaseModel):
    """Simulated wallet sizing preferences"""

    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    investment_style: InvestmentStyle = InvestmentStyle.DAY_TRADING
    ai_confidence: float = Field(default=75.0, ge=0.0, le=100.0)  # 75 is neutral


class SimulatedTrade(BaseModel):
    """Paper position held by the simulation ledger"""

    id: str
    asset: AssetQuote
    direction: TradeDirection
    entry_price: float
    size_usd: float
    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    close_price: Optional[float] = None
    pnl: Optional[float] = 0.0  # USD
    status: TradeStatus = TradeStatus.OPEN
    close_reason: Optional[CloseReason] = None
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None

    @property
    def symbol(self) -> str:
        return self.asset.symbol
