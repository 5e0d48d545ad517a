import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import router
from models.database import create_engine_for, create_session_factory, init_database
from services.container import ServiceContainer
from services.history_feed import HistoryFeedError
from services.kv_store import SqlKeyValueStore
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting PatternLab backend...")

    engine = create_engine_for(settings.DATABASE_URL)
    services = None
    try:
        await init_database(engine)
        store = SqlKeyValueStore(create_session_factory(engine))

        services = ServiceContainer.build(settings, store)
        app.state.services = services
        await services.load()
        logger.info(
            "Persisted state restored",
            experiments=len(services.learning.experiments()),
            signals=len(services.signals.activated_signals()),
            trades=len(services.simulation.trades()),
        )

        # The API stays up without history; history routes answer 503 until loaded.
        try:
            loaded = await services.history.load_from_feed(services.history_feed)
            logger.info("Historical archive ready", entries=loaded)
        except HistoryFeedError as e:
            logger.error("Historical archive unavailable", error=str(e))

        services.worker.start()
        logger.info("All services started successfully")

        yield

    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("Shutting down...")
        if services is not None:
            await services.shutdown()
        await engine.dispose()
        logger.info("Shutdown complete")


app = FastAPI(
    title="PatternLab",
    description="Historical pattern backtesting, simulated experiments and live trade signals",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(router, prefix="/api")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe - history loaded and live worker ticking?"""
    services = getattr(request.app.state, "services", None)
    checks = {
        "history": bool(services and services.history.is_loaded),
        "signal_worker": bool(services and services.worker.running),
    }
    return {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "last_tick_at": services.worker.last_tick_at.isoformat()
        if services and services.worker.last_tick_at
        else None,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        # Single worker: the services hold their collections in process memory.
        timeout_keep_alive=30,
    )
