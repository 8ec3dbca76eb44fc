import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from pointsledger.core.config import settings
from pointsledger.core.database import engine, init_db
from pointsledger.core.exceptions import (
    InvalidPointsAmount,
    InvalidStreakDate,
    TransientStoreError,
    UnknownActionType,
)
from pointsledger.routers import gamification, members, points
from pointsledger.services.gamification_service import get_gamification_service
from pointsledger.services.leaderboard import LeaderboardRefresher

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine)
    service = get_gamification_service()
    service.startup()

    refresher = LeaderboardRefresher(service.leaderboard, settings.leaderboard_refresh_seconds)
    refresher.start()
    logger.info("%s %s started", settings.app_name, settings.version)
    yield
    await refresher.stop()


# Create FastAPI instance
app = FastAPI(
    title=settings.app_name,
    description="Points ledger, login streaks, badges and leaderboard for a learning platform",
    version=settings.version,
    lifespan=lifespan,
)

# CORS middleware for the web frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

app.include_router(points.router, prefix="/points", tags=["Points"])
app.include_router(gamification.router, prefix="/gamification", tags=["Gamification"])
app.include_router(members.router, prefix="/members", tags=["Members"])


@app.exception_handler(UnknownActionType)
async def unknown_action_handler(request: Request, exc: UnknownActionType):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(InvalidPointsAmount)
@app.exception_handler(InvalidStreakDate)
async def invalid_input_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
async def transient_store_handler(request: Request, exc: TransientStoreError):
    """Tell clients the request is safe to retry later."""
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
        headers={"Retry-After": "1"},
    )


@app.get("/")
async def root():
    return {
        "message": f"Welcome to the {settings.app_name} API",
        "version": settings.version,
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "services": {
            "database": "ready",
            "ledger": "active",
        }
    }


if __name__ == "__main__":
    uvicorn.run(
        "pointsledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
