"""Pydantic schemas for the browser-redirect CLI login."""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from skillsauth.schemas.device import ClientInfo


class CliInitRequest(BaseModel):
    callback_url: str = Field(..., max_length=255)
    state: Optional[str] = Field(None, max_length=255)
    client_info: Optional[ClientInfo] = None
    scopes: Optional[list[str]] = None
    code_challenge: Optional[str] = Field(None, max_length=128)
    code_challenge_method: Optional[Literal["S256", "plain"]] = None


class CliInitResponse(BaseModel):
    session_id: uuid.UUID
    state: str
    expires_in: int


class CliSessionRead(BaseModel):
    """What the approval page shows. The auth code hash never leaves the server."""
    id: uuid.UUID
    status: str
    callback_url: str
    scopes: list[str]
    client_info: Optional[dict] = None
    expires_at: datetime

    model_config = {"from_attributes": True}


class CliAuthorizeRequest(BaseModel):
    session_id: uuid.UUID
    action: Literal["approve", "deny"]


class CliAuthorizeResponse(BaseModel):
    redirect_url: str


class CliTokenRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=128)
    session_id: uuid.UUID
    code_verifier: Optional[str] = Field(None, max_length=128)
