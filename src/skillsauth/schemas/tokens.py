"""Pydantic schemas for personal and org API tokens and identity echo endpoints."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from skillsauth.auth.scopes import ALL_SCOPES


class ApiTokenCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=lambda: list(ALL_SCOPES))
    expires_in_days: Optional[int] = Field(None, description="Expire in N days (None = never)")


class OrgApiTokenCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=lambda: ["read"])
    expires_in_days: Optional[int] = Field(None, description="Expire in N days (None = never)")


class ApiTokenCreated(BaseModel):
    """Response for token creation. The raw token is only shown ONCE."""
    id: uuid.UUID
    name: str
    token: str
    token_prefix: str
    scopes: list[str]
    created_at: datetime
    expires_at: Optional[datetime] = None
    org_id: Optional[uuid.UUID] = None


class ApiTokenRead(BaseModel):
    """Token info (without the secret)."""
    id: uuid.UUID
    name: str
    org_id: Optional[uuid.UUID] = None
    token_prefix: str
    scopes: list[str]
    last_used_at: Optional[datetime] = None
    created_at: datetime
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ApiTokenList(BaseModel):
    tokens: list[ApiTokenRead]


class IdentityRead(BaseModel):
    authenticated: bool
    user_id: Optional[str] = None
    auth_method: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    user: Optional[dict] = None


class TokenValidation(BaseModel):
    valid: bool = True
    user_id: str
    token_id: str
    scopes: list[str]


class SkillAccess(BaseModel):
    skill_id: uuid.UUID
    can_read: bool
    can_write: bool
    is_owner: bool
