"""Token API: personal API token lifecycle and identity echo.

Learn: Routes:
- GET /auth/me → who am I (anonymous callers get authenticated=false)
- POST /tokens → create a token (returns the raw value once!) (write)
- GET /tokens → list active tokens, no secrets (read)
- DELETE /tokens/:id → revoke (write, owner only)
- GET /tokens/validate → bearer-only identity echo for CLIs

A new token can never carry a scope its creator doesn't hold, so a
read-only token can't mint itself a write token.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.context import AuthContext, user_uuid
from skillsauth.auth.dependencies import (
    RequireScope,
    get_auth_context,
    get_clock,
    require_bearer,
)
from skillsauth.auth.scopes import SCOPE_READ, SCOPE_WRITE, validate_scopes
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock
from skillsauth.errors import Forbidden
from skillsauth.schemas.tokens import (
    ApiTokenCreate,
    ApiTokenCreated,
    ApiTokenList,
    ApiTokenRead,
    IdentityRead,
    TokenValidation,
)
from skillsauth.services.token_service import TokenService

router = APIRouter()


def grantable_scopes(context: AuthContext, requested: list[str]) -> list[str]:
    """Validate scopes for a new token minted by `context`.

    Org tokens can't mint tokens at all, and nobody can grant a scope they
    don't hold.
    """
    if context.org_id is not None:
        raise Forbidden("Org tokens cannot create tokens")
    scopes = validate_scopes(requested)
    missing = [s for s in scopes if not context.has_scope(s)]
    if missing:
        raise Forbidden(f"Cannot grant scopes you don't hold: {', '.join(missing)}")
    return scopes


@router.get("/auth/me", response_model=IdentityRead)
async def me(
    context: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not context.is_authenticated:
        return IdentityRead(authenticated=False)
    user = await TokenService(db).user_payload(user_uuid(context))
    return IdentityRead(
        authenticated=True,
        user_id=context.user_id,
        auth_method=context.auth_method,
        scopes=context.scopes,
        user=user,
    )


# ─── Personal API tokens ─────────────────────────────────


@router.post("/tokens", response_model=ApiTokenCreated, status_code=201)
async def create_token(
    body: ApiTokenCreate,
    context: AuthContext = Depends(RequireScope(SCOPE_WRITE)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    scopes = grantable_scopes(context, body.scopes)
    raw, row = await TokenService(db, clock=clock).create_api_token(
        user_uuid(context), body.name, scopes, body.expires_in_days
    )
    return ApiTokenCreated(
        id=row.id,
        name=row.name,
        token=raw,
        token_prefix=row.token_prefix,
        scopes=row.scopes,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


@router.get("/tokens", response_model=ApiTokenList)
async def list_tokens(
    context: AuthContext = Depends(RequireScope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    rows = await TokenService(db).list_api_tokens(user_uuid(context))
    return ApiTokenList(tokens=[ApiTokenRead.model_validate(r) for r in rows])


@router.delete("/tokens/{token_id}", status_code=204)
async def revoke_token(
    token_id: uuid.UUID,
    context: AuthContext = Depends(RequireScope(SCOPE_WRITE)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await TokenService(db, clock=clock).revoke_api_token(user_uuid(context), token_id)


@router.get("/tokens/validate", response_model=TokenValidation)
async def validate_token(context: AuthContext = Depends(require_bearer)):
    return TokenValidation(
        user_id=context.user_id,
        token_id=context.token_id,
        scopes=context.scopes,
    )
