from fastapi import APIRouter

from .routes_experiments import router as experiments_router
from .routes_history import router as history_router
from .routes_patterns import router as patterns_router
from .routes_signals import router as signals_router
from .routes_simulation import simulation_router

router = APIRouter()
router.include_router(history_router)
router.include_router(patterns_router)
router.include_router(experiments_router)
router.include_router(signals_router)
router.include_router(simulation_router)

__all__ = ["router"]
