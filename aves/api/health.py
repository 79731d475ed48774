"""
Health check endpoints.
/health always answers 200 and reports the database separately;
/health/ready is the strict readiness probe.
"""

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from aves.config import settings
from aves.dependencies import get_task_runner, get_vision_engine
from aves.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_status() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except (SQLAlchemyError, OSError) as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check():
    """Liveness: the API is up; database connectivity is reported, not required."""
    db_ok, db_error = await _database_status()

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "vision_engine": settings.VISION_ENGINE,
        "active_generation_jobs": len(get_task_runner().active_jobs),
        "database": "connected" if db_ok else "unreachable",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check():
    """Readiness: 200 only when the database and the vision engine are usable."""
    db_ok, _ = await _database_status()
    engine_ok = await get_vision_engine().health_check()
    ready = db_ok and engine_ok
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"ready": ready, "database": db_ok, "vision_engine": engine_ok},
    )
