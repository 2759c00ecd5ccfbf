"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and the
durable store is reachable. Redis only backs rate limiting, so it is
reported but never makes the service unhealthy.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth import __version__
from skillsauth.db.engine import get_db
from skillsauth.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {e.__class__.__name__}"

    checks["redis"] = "ok" if get_redis() is not None else "disabled"

    status = "healthy" if checks["database"] == "ok" else "degraded"
    return {"status": status, **checks}
