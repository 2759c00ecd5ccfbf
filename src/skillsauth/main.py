"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis pool, database
engine). Middleware, CORS, error handlers and routers are registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from skillsauth import __version__
from skillsauth.api import api_router
from skillsauth.config import settings
from skillsauth.errors import register_error_handlers
from skillsauth.log import configure_logging
from skillsauth.middleware.rate_limit import RateLimitMiddleware
from skillsauth.middleware.request_id import RequestIdMiddleware
from skillsauth.middleware.security import SecurityHeadersMiddleware
from skillsauth.redis_client import close_redis, init_redis

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "skillsauth.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    try:
        await init_redis()
        logger.info("skillsauth.redis_connected", url=settings.redis_url)
    except (RedisError, OSError) as e:
        # Redis is optional; only rate limiting is lost
        logger.warning("skillsauth.redis_unavailable", error=str(e))

    yield

    logger.info("skillsauth.shutdown")
    await close_redis()

    from skillsauth.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    configure_logging(settings.log_level, json=settings.log_json)

    app = FastAPI(
        title="Skills Auth",
        description="Device codes, CLI sessions and scoped API tokens for the skills marketplace",
        version=__version__,
        lifespan=lifespan,
    )

    register_error_handlers(app)

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs middleware in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware, rpm=settings.rate_limit_issue_rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    return app


# Default app instance (used by uvicorn: skillsauth.main:app)
app = create_app()
