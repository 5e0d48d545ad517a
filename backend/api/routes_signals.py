"""Activated signals and their firing log."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_services
from models.experiment import ExperimentStatus
from models.signal import TriggerCondition
from services.container import ServiceContainer

router = APIRouter(prefix="/signals", tags=["Signals"])


class PromoteRequest(BaseModel):
    experiment_id: str
    trigger_condition: Optional[TriggerCondition] = None


@router.get("")
async def list_signals(services: ServiceContainer = Depends(get_services)):
    return [s.model_dump(mode="json") for s in services.signals.activated_signals()]


@router.get("/events")
async def list_signal_events(services: ServiceContainer = Depends(get_services)):
    """Signal firings, most recent first"""
    return [e.model_dump(mode="json") for e in services.signals.events()]


@router.post("")
async def promote_experiment(request: PromoteRequest, services: ServiceContainer = Depends(get_services)):
    """Promote a completed, profitable experiment to a live signal"""
    experiment = services.learning.get(request.experiment_id)
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    if experiment.status != ExperimentStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Only completed experiments can be promoted")
    pnl = experiment.result.pnl if experiment.result else None
    if pnl is None or pnl <= 0:
        raise HTTPException(status_code=409, detail="Only profitable experiments can be promoted")
    if services.signals.get(experiment.id) is not None:
        raise HTTPException(status_code=409, detail="Signal already active")

    signal = await services.signals.promote(experiment, request.trigger_condition)
    if signal is None:
        raise HTTPException(status_code=409, detail="Signal already active")
    return signal.model_dump(mode="json")


@router.delete("/{signal_id}")
async def deactivate_signal(signal_id: str, services: ServiceContainer = Depends(get_services)):
    if not await services.signals.deactivate(signal_id):
        raise HTTPException(status_code=404, detail="Signal not found")
    return {"status": "deactivated", "id": signal_id}
