from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_services
from models.simulation import InvestmentStyle, RiskTolerance, TradeStatus
from services.container import ServiceContainer

simulation_router = APIRouter(prefix="/simulation", tags=["Simulation"])


class UpdateSettingsRequest(BaseModel):
    risk_tolerance: Optional[RiskTolerance] = None
    investment_style: Optional[InvestmentStyle] = None
    ai_confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)


# ==================== TRADES ====================


@simulation_router.get("/trades")
async def list_simulated_trades(
    status: Optional[TradeStatus] = Query(default=None),
    services: ServiceContainer = Depends(get_services),
):
    """Simulated trades, newest first"""
    trades = services.simulation.trades()
    if status is not None:
        trades = [t for t in trades if t.status == status]
    closed = [t for t in trades if t.status == TradeStatus.CLOSED]
    return {
        "total": len(trades),
        "realized_pnl": sum(t.pnl or 0.0 for t in closed),
        "trades": [t.model_dump(mode="json") for t in trades],
    }


# ==================== SETTINGS ====================


@simulation_router.get("/settings")
async def get_wallet_settings(services: ServiceContainer = Depends(get_services)):
    return {
        **services.simulation.settings.model_dump(mode="json"),
        "position_size_usd": services.simulation.position_size(),
    }


@simulation_router.put("/settings")
async def update_wallet_settings(
    request: UpdateSettingsRequest,
    services: ServiceContainer = Depends(get_services),
):
    updated = await services.simulation.update_settings(**request.model_dump())
    return updated.model_dump(mode="json")


@simulation_router.post("/reset")
async def reset_wallet(services: ServiceContainer = Depends(get_services)):
    """Drop every simulated trade and restore default settings"""
    await services.simulation.reset_wallet()
    return {"status": "reset"}
