"""Authentication context resolver.

Learn: Every protected route asks one question: who is calling, and with
which scopes? Resolution order:
1. `Authorization: Bearer <token>` → hash it, find an active ApiToken
   → {user_id, token scopes, auth_method="token"}
2. otherwise the session collaborator → {user_id, ALL scopes, "session"}
3. otherwise anonymous (user_id=None, no scopes)

A request carrying both a cookie and a bearer header is authenticated by
the token. An unknown bearer token falls through to the session check.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.codec import hash_token, looks_like_access_token
from skillsauth.auth.scopes import ALL_SCOPES
from skillsauth.auth.session import SessionResolver
from skillsauth.config import settings
from skillsauth.db.models import ApiToken, Clock, utcnow
from skillsauth.db.repository import AuthStore
from skillsauth.errors import Unauthenticated

logger = structlog.get_logger()

AUTH_METHOD_TOKEN = "token"
AUTH_METHOD_SESSION = "session"


@dataclass
class AuthContext:
    """The resolved {user_id, scopes, auth_method} tuple for one request."""

    user_id: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    auth_method: Optional[str] = None
    token_id: Optional[str] = None
    org_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthContextResolver:
    def __init__(
        self,
        db: AsyncSession,
        session_resolver: SessionResolver,
        clock: Clock = utcnow,
    ):
        self.store = AuthStore(db)
        self.session_resolver = session_resolver
        self.clock = clock

    async def resolve(self, request) -> AuthContext:
        raw = parse_bearer(request.headers.get("Authorization"))
        if raw:
            token = await self.validate_api_token(raw)
            if token is not None:
                return AuthContext(
                    user_id=str(token.user_id),
                    scopes=list(token.scopes),
                    auth_method=AUTH_METHOD_TOKEN,
                    token_id=str(token.id),
                    org_id=str(token.org_id) if token.org_id else None,
                )
            logger.info("auth.bearer_rejected", prefix=raw[:11])

        identity = await self.session_resolver.resolve(request)
        if identity is not None:
            return AuthContext(
                user_id=identity.user_id,
                scopes=list(ALL_SCOPES),
                auth_method=AUTH_METHOD_SESSION,
                email=identity.email,
            )

        return AuthContext()

    async def validate_api_token(self, raw: str) -> Optional[ApiToken]:
        """Return the active token row for a raw bearer value, or None.

        Tokens whose owner no longer exists are rejected even if the row
        itself is still active.
        """
        if not looks_like_access_token(raw):
            return None
        now = self.clock()
        token = await self.store.get_active_api_token(hash_token(raw), now)
        if token is None:
            return None
        if settings.verify_token_owner and await self.store.get_user(token.user_id) is None:
            logger.warning("auth.token_owner_missing", token_id=str(token.id))
            return None
        await self.store.touch_api_token(token.id, now)
        await self.store.commit()
        return token


def user_uuid(context: AuthContext) -> uuid.UUID:
    try:
        return uuid.UUID(context.user_id)
    except (TypeError, ValueError):
        raise Unauthenticated("Malformed user id in credentials")
