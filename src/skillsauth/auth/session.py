"""Identity session collaborator: who is logged in via the browser?

Learn: The web login itself (GitHub OAuth, cookies, CSRF) belongs to the
account service. This core only needs one question answered:
ResolveSession(request) -> {user_id, email} | None.

The default resolver verifies a signed JWT in the session cookie using a
shared secret. Deployments with a different login stack plug in their
own SessionResolver by overriding the get_session_resolver dependency.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import jwt
from starlette.requests import Request

from skillsauth.config import settings


class SessionError(Exception):
    """Raised when a session token can't be created or verified."""


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    email: Optional[str] = None


class SessionResolver(Protocol):
    async def resolve(self, request: Request) -> Optional[SessionIdentity]:
        ...


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_minutes: int = 60 * 24,
) -> str:
    """Sign a session cookie value (used by the account service and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "session",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.session_secret, algorithm=settings.session_algorithm)


def verify_session_token(token: str) -> dict:
    """Verify and decode a session JWT. Raises SessionError on failure."""
    try:
        payload = jwt.decode(
            token, settings.session_secret, algorithms=[settings.session_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise SessionError("Session has expired")
    except jwt.InvalidTokenError as e:
        raise SessionError(f"Invalid session: {e}")
    if payload.get("type") != "session" or not payload.get("sub"):
        raise SessionError("Not a session token")
    return payload


class CookieSessionResolver:
    """Reads the signed session cookie set by the account service."""

    def __init__(self, cookie_name: Optional[str] = None):
        self.cookie_name = cookie_name or settings.session_cookie_name

    async def resolve(self, request: Request) -> Optional[SessionIdentity]:
        token = request.cookies.get(self.cookie_name)
        if not token:
            return None
        try:
            payload = verify_session_token(token)
        except SessionError:
            return None
        return SessionIdentity(user_id=payload["sub"], email=payload.get("email"))


_default_resolver = CookieSessionResolver()


def get_session_resolver() -> SessionResolver:
    """FastAPI dependency. Override to plug in another login stack."""
    return _default_resolver
