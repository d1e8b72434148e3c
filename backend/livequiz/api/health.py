"""Health check routes."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.config import settings
from livequiz.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Health"])


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Detailed health check."""
    database = "connected"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error(f"Health check database round-trip failed: {exc}")
        database = "unavailable"
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "push_subscribers": await request.app.state.broadcaster.count(),
        "app": settings.APP_NAME,
        "version": "1.0.0",
    }
