"""Device flow API: code issuance, approval, polling, refresh.

Learn: Routes for the headless CLI login:
- POST /device/code → new device_code + user_code (no auth)
- GET /device/lookup → approval page reads a pending code (session)
- POST /device/authorize → approve/deny (session)
- POST /device/token → poll; 200 with tokens once, otherwise
  400 {"error": authorization_pending | slow_down | expired_token | access_denied}
- POST /device/refresh → refresh token → new access token
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.context import AuthContext, user_uuid
from skillsauth.auth.dependencies import get_clock, require_session
from skillsauth.config import settings
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock
from skillsauth.errors import error_response
from skillsauth.schemas.device import (
    AuthorizeResult,
    DeviceAuthorizeRequest,
    DeviceCodeLookup,
    DeviceCodeRequest,
    DeviceCodeResponse,
    DeviceTokenRequest,
    RefreshRequest,
    RefreshResponse,
    TokenResponse,
)
from skillsauth.services.device_flow import (
    POLL_DENIED,
    POLL_PENDING,
    POLL_SLOW_DOWN,
    POLL_SUCCESS,
    DeviceFlowService,
)
from skillsauth.services.token_service import TokenService

router = APIRouter(prefix="/device")

# Poll outcomes → RFC 8628 error codes
_POLL_ERRORS = {
    POLL_PENDING: "authorization_pending",
    POLL_SLOW_DOWN: "slow_down",
    POLL_DENIED: "access_denied",
}


def _base_url(request: Request) -> str:
    return settings.public_base_url or str(request.base_url)


# ─── Issue ───────────────────────────────────────────────


@router.post("/code", response_model=DeviceCodeResponse)
async def issue_device_code(
    request: Request,
    body: DeviceCodeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    body = body or DeviceCodeRequest()
    client_info = body.client_info.model_dump(exclude_none=True) if body.client_info else None
    issued = await DeviceFlowService(db, clock).issue_device_code(
        _base_url(request), client_info=client_info, scopes=body.scopes
    )
    return DeviceCodeResponse(**asdict(issued))


# ─── Verification page ───────────────────────────────────


@router.get("/lookup", response_model=DeviceCodeLookup)
async def lookup_device_code(
    user_code: str,
    context: AuthContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return await DeviceFlowService(db, clock).get_device_code(user_code)


@router.post("/authorize", response_model=AuthorizeResult)
async def authorize_device(
    body: DeviceAuthorizeRequest,
    context: AuthContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await DeviceFlowService(db, clock).authorize(body.user_code, user_uuid(context), body.action)
    return AuthorizeResult()


# ─── Poll / refresh ──────────────────────────────────────


@router.post("/token", response_model=TokenResponse)
async def poll_device_token(
    body: DeviceTokenRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await DeviceFlowService(db, clock).poll_token(body.device_code)
    if result.status != POLL_SUCCESS:
        return error_response(_POLL_ERRORS.get(result.status, "expired_token"), 400)

    tokens = result.tokens
    return TokenResponse(
        access_token=tokens.access_token,
        expires_in=tokens.expires_in,
        refresh_token=tokens.refresh_token,
        refresh_expires_in=tokens.refresh_expires_in,
        user=result.user,
    )


@router.post("/refresh", response_model=RefreshResponse, response_model_exclude_none=True)
async def refresh_token(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await TokenService(db, clock=clock).refresh_access_token(body.refresh_token)
    return RefreshResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        refresh_token=result.refresh_token,
        refresh_expires_in=result.refresh_expires_in,
    )
