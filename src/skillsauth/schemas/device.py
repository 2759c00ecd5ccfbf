"""Pydantic schemas for the device authorization flow.

Learn: Field names follow RFC 8628 (device_code, user_code,
verification_uri, interval) so off-the-shelf device-flow clients work.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ClientInfo(BaseModel):
    """Free-form description of the CLI asking to log in."""
    os: Optional[str] = Field(None, max_length=100)
    hostname: Optional[str] = Field(None, max_length=255)
    version: Optional[str] = Field(None, max_length=50)


# ─── Issue (CLI → server) ───────────────────────────────


class DeviceCodeRequest(BaseModel):
    client_info: Optional[ClientInfo] = None
    scopes: Optional[list[str]] = None


class DeviceCodeResponse(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


# ─── Verification page (browser) ────────────────────────


class DeviceCodeLookup(BaseModel):
    user_code: str
    status: str
    scopes: list[str]
    client_info: Optional[dict] = None
    expires_at: datetime

    model_config = {"from_attributes": True}


class DeviceAuthorizeRequest(BaseModel):
    user_code: str = Field(..., min_length=1, max_length=20)
    action: Literal["approve", "deny"]


class AuthorizeResult(BaseModel):
    success: bool = True


# ─── Poll / refresh (CLI → server) ──────────────────────


class DeviceTokenRequest(BaseModel):
    device_code: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UserBlock(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    user: UserBlock


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
