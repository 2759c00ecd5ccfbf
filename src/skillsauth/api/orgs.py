"""Org API tokens: machine credentials owned by an organization.

Learn: Routes:
- POST /orgs/:org_id/tokens → create (write; org owner/admin only)
- GET /orgs/:org_id/tokens → list active org tokens (read; owner/admin)
- DELETE /orgs/:org_id/tokens/:id → revoke (write; owner/admin)

Org tokens default to the read scope. They authenticate like any other
bearer token, and they never show up in the creator's personal list.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.api.tokens import grantable_scopes
from skillsauth.auth.context import AuthContext, user_uuid
from skillsauth.auth.dependencies import RequireScope, get_clock
from skillsauth.auth.scopes import SCOPE_READ, SCOPE_WRITE
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock
from skillsauth.schemas.tokens import (
    ApiTokenCreated,
    ApiTokenList,
    ApiTokenRead,
    OrgApiTokenCreate,
)
from skillsauth.services.token_service import TokenService

router = APIRouter(prefix="/orgs")


@router.post("/{org_id}/tokens", response_model=ApiTokenCreated, status_code=201)
async def create_org_token(
    org_id: uuid.UUID,
    body: OrgApiTokenCreate,
    context: AuthContext = Depends(RequireScope(SCOPE_WRITE)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    scopes = grantable_scopes(context, body.scopes)
    raw, row = await TokenService(db, clock=clock).create_org_api_token(
        org_id, user_uuid(context), body.name, scopes, body.expires_in_days
    )
    return ApiTokenCreated(
        id=row.id,
        name=row.name,
        token=raw,
        token_prefix=row.token_prefix,
        scopes=row.scopes,
        created_at=row.created_at,
        expires_at=row.expires_at,
        org_id=row.org_id,
    )


@router.get("/{org_id}/tokens", response_model=ApiTokenList)
async def list_org_tokens(
    org_id: uuid.UUID,
    context: AuthContext = Depends(RequireScope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
):
    rows = await TokenService(db).list_org_api_tokens(org_id, user_uuid(context))
    return ApiTokenList(tokens=[ApiTokenRead.model_validate(r) for r in rows])


@router.delete("/{org_id}/tokens/{token_id}", status_code=204)
async def revoke_org_token(
    org_id: uuid.UUID,
    token_id: uuid.UUID,
    context: AuthContext = Depends(RequireScope(SCOPE_WRITE)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await TokenService(db, clock=clock).revoke_org_api_token(
        org_id, user_uuid(context), token_id
    )
