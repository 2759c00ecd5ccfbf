"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Unlike a CRUD API, most of these routes are reachable without
credentials (a CLI that isn't logged in yet has to start somewhere), so
auth is declared per handler with Depends(require_session) /
Depends(RequireScope(...)) rather than at include_router level.
"""

from fastapi import APIRouter

from skillsauth.api.cli_auth import router as cli_auth_router
from skillsauth.api.device import router as device_router
from skillsauth.api.health import router as health_router
from skillsauth.api.orgs import router as orgs_router
from skillsauth.api.skills import router as skills_router
from skillsauth.api.tokens import router as tokens_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(device_router, tags=["device"])
api_router.include_router(cli_auth_router, tags=["cli-auth"])
api_router.include_router(tokens_router, tags=["tokens"])
api_router.include_router(orgs_router, tags=["orgs"])
api_router.include_router(skills_router, tags=["skills"])
