"""CLI session API: browser-redirect login for CLIs with a local listener.

Learn: Routes:
- POST /auth/cli/init → session_id + state (no auth)
- GET /auth/cli/sessions/:id → approval page reads the session (session)
- POST /auth/cli/authorize → approve/deny → {redirect_url} (session)
- POST /auth/cli/token → one-time code (+ PKCE verifier) → tokens
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.context import AuthContext, user_uuid
from skillsauth.auth.dependencies import get_clock, require_session
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock
from skillsauth.schemas.cli_auth import (
    CliAuthorizeRequest,
    CliAuthorizeResponse,
    CliInitRequest,
    CliInitResponse,
    CliSessionRead,
    CliTokenRequest,
)
from skillsauth.schemas.device import TokenResponse
from skillsauth.services.cli_flow import CliFlowService

router = APIRouter(prefix="/auth/cli")


@router.post("/init", response_model=CliInitResponse)
async def init_cli_session(
    body: CliInitRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    created = await CliFlowService(db, clock).create_session(
        body.callback_url,
        state=body.state,
        client_info=body.client_info.model_dump(exclude_none=True) if body.client_info else None,
        scopes=body.scopes,
        code_challenge=body.code_challenge,
        code_challenge_method=body.code_challenge_method,
    )
    return CliInitResponse(
        session_id=created.session_id, state=created.state, expires_in=created.expires_in
    )


@router.get("/sessions/{session_id}", response_model=CliSessionRead)
async def get_cli_session(
    session_id: uuid.UUID,
    context: AuthContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return await CliFlowService(db, clock).get_session(session_id)


@router.post("/authorize", response_model=CliAuthorizeResponse)
async def authorize_cli_session(
    body: CliAuthorizeRequest,
    context: AuthContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    redirect_url = await CliFlowService(db, clock).authorize(
        body.session_id, user_uuid(context), body.action
    )
    return CliAuthorizeResponse(redirect_url=redirect_url)


@router.post("/token", response_model=TokenResponse)
async def exchange_cli_code(
    body: CliTokenRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    exchanged = await CliFlowService(db, clock).exchange_code(
        body.code, body.session_id, code_verifier=body.code_verifier
    )
    tokens = exchanged.tokens
    return TokenResponse(
        access_token=tokens.access_token,
        expires_in=tokens.expires_in,
        refresh_token=tokens.refresh_token,
        refresh_expires_in=tokens.refresh_expires_in,
        user=exchanged.user,
    )
