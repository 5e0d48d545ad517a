"""Experiment lifecycle: approve, recycle, resume and the activity log."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_services
from models.experiment import ExperimentStatus, LearningPattern
from models.market import AssetQuote
from services.container import ServiceContainer
from services.market_data import MarketDataError
from utils.logger import get_logger

logger = get_logger("routes_experiments")

router = APIRouter(prefix="/experiments", tags=["Experiments"])


async def _live_assets(services: ServiceContainer) -> list[AssetQuote]:
    """Latest worker snapshot, or a fresh fetch before the first tick."""
    if services.worker.latest_quotes:
        return services.worker.latest_quotes
    try:
        return await services.market_data.fetch_quotes()
    except MarketDataError as e:
        logger.warning("Live quotes unavailable for dispatch", error=str(e))
        return []


@router.get("")
async def list_experiments(services: ServiceContainer = Depends(get_services)):
    """Experiments, most recently approved first"""
    return [e.model_dump(mode="json") for e in services.learning.experiments()]


@router.get("/logs")
async def list_activity_logs(services: ServiceContainer = Depends(get_services)):
    return [entry.model_dump(mode="json") for entry in services.learning.logs()]


@router.post("")
async def approve_pattern(pattern: LearningPattern, services: ServiceContainer = Depends(get_services)):
    if services.learning.is_pattern_in_experiments(pattern.id):
        raise HTTPException(status_code=409, detail="Pattern is already in experiments")
    experiment = await services.learning.approve(pattern, await _live_assets(services))
    if experiment is None:
        raise HTTPException(status_code=409, detail="Pattern is already in experiments")
    return experiment.model_dump(mode="json")


@router.post("/refine")
async def refine_pattern(pattern: LearningPattern, services: ServiceContainer = Depends(get_services)):
    """Ask for a refinement of a pattern that has not been approved"""
    suggestion = await services.learning.recycle_pattern(pattern)
    return {"id": pattern.id, "suggestion": suggestion}


@router.post("/{experiment_id}/recycle")
async def recycle_experiment(experiment_id: str, services: ServiceContainer = Depends(get_services)):
    if not await services.learning.recycle(experiment_id):
        raise HTTPException(status_code=404, detail="Experiment not found")
    return {"status": "recycled", "id": experiment_id}


@router.post("/{experiment_id}/resume")
async def resume_experiment(experiment_id: str, services: ServiceContainer = Depends(get_services)):
    existing = services.learning.get(experiment_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    if existing.status != ExperimentStatus.COMPLETED:
        raise HTTPException(status_code=409, detail=f"Experiment is {existing.status.value}, not completed")

    experiment = await services.learning.resume(experiment_id, await _live_assets(services))
    if experiment is None:
        raise HTTPException(status_code=409, detail="Experiment could not be resumed")
    return experiment.model_dump(mode="json")
