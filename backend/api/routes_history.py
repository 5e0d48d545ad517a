"""Historical archive queries and pattern backtests."""

from __future__ import annotations

import asyncio
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_services
from models.history import Pattern, SliceDirection
from services.container import ServiceContainer

router = APIRouter(prefix="/history", tags=["History"])


def _require_history(services: ServiceContainer) -> None:
    if not services.history.is_loaded:
        raise HTTPException(status_code=503, detail="Historical archive is not loaded")


@router.get("/range")
async def get_date_range(services: ServiceContainer = Depends(get_services)):
    """First and last archive dates (both null when nothing is loaded)"""
    result = services.history.date_range()
    return {
        "min": result.min.isoformat() if result.min else None,
        "max": result.max.isoformat() if result.max else None,
        "entries": len(services.history),
    }


@router.get("/day/{day}")
async def get_day(day: date, services: ServiceContainer = Depends(get_services)):
    _require_history(services)
    entries = services.history.entries_on(day)
    return {"date": day.isoformat(), "entries": [e.model_dump(mode="json") for e in entries]}


@router.get("/neighbors/{day}")
async def get_neighbors(
    day: date,
    count: int = Query(default=3, ge=1, le=50),
    services: ServiceContainer = Depends(get_services),
):
    """Significant events surrounding a day"""
    _require_history(services)
    return services.history.neighbors(day, count).model_dump(mode="json")


@router.get("/slice/{day}")
async def get_slice(
    day: date,
    count: int = Query(default=7, ge=0, le=365),
    direction: SliceDirection = Query(default=SliceDirection.AFTER),
    services: ServiceContainer = Depends(get_services),
):
    _require_history(services)
    entries = services.history.slice(day, count, direction)
    return {
        "date": day.isoformat(),
        "direction": direction.value,
        "entries": [e.model_dump(mode="json") for e in entries],
    }


@router.get("/chart/{day}")
async def get_chart(
    day: date,
    window_days: int = Query(default=30, ge=0, le=365),
    services: ServiceContainer = Depends(get_services),
):
    _require_history(services)
    return services.history.window_around(day, window_days).model_dump(mode="json")


@router.post("/backtest")
async def run_backtest(pattern: Pattern, services: ServiceContainer = Depends(get_services)):
    """Evaluate a threshold pattern over the whole archive"""
    _require_history(services)
    result = await asyncio.to_thread(services.backtester.run, pattern)
    return {
        "pattern": pattern.model_dump(mode="json"),
        "matches": [m.model_dump(mode="json") for m in result.matches],
        "summary": {
            "total": result.summary.total,
            "successes": result.summary.successes,
            "total_return": result.summary.total_return,
            "average_return": result.summary.average_return,
            "success_rate": result.summary.success_rate,
        },
    }
