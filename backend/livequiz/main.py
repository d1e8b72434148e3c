"""
Live Quiz Sync
FastAPI Application Entry Point

Holds the per-process collaborators on ``app.state``:
1. broadcaster: fan-out hub for push subscribers
2. rate_limiter: write-action quota per user
3. session_factory: database sessions for the WebSocket loop
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livequiz.config import settings
from livequiz.database import engine, AsyncSessionLocal
from livequiz.services.broadcaster import EventBroadcaster
from livequiz.services.rate_limiter import RateLimiter
from livequiz.api.health import router as health_router
from livequiz.api.sessions import router as sessions_router
from livequiz.api.live import router as live_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("livequiz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: close push subscribers and the engine on shutdown."""
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info("Skipping create_all; ensure Alembic migrations are applied (alembic upgrade head)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.broadcaster.shutdown()
    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Real-time session synchronization and response capture for live classroom quizzes",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.broadcaster = EventBroadcaster()
    app.state.rate_limiter = RateLimiter()
    app.state.session_factory = AsyncSessionLocal

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routes
    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(live_router)

    @app.get("/", tags=["Health"])
    async def root():
        """Health check endpoint."""
        return {
            "status": "online",
            "app": settings.APP_NAME,
            "version": "1.0.0",
        }

    return app


app = create_app()
