from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_services
from models.history import Pattern
from services.container import ServiceContainer

router = APIRouter(prefix="/patterns", tags=["Patterns"])


@router.get("")
async def list_patterns(services: ServiceContainer = Depends(get_services)):
    return [p.model_dump(mode="json") for p in services.patterns.patterns()]


@router.post("")
async def save_pattern(pattern: Pattern, services: ServiceContainer = Depends(get_services)):
    """Create a pattern, or replace the saved one with the same id"""
    saved = await services.patterns.save(pattern)
    return saved.model_dump(mode="json")


@router.delete("/{pattern_id}")
async def delete_pattern(pattern_id: str, services: ServiceContainer = Depends(get_services)):
    if not await services.patterns.delete(pattern_id):
        raise HTTPException(status_code=404, detail="Pattern not found")
    return {"status": "deleted", "id": pattern_id}
