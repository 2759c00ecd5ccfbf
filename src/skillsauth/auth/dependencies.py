"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers. The resolver runs
once per request and every protected route reads the same AuthContext:

    context: AuthContext = Depends(require_auth)
    context: AuthContext = Depends(RequireScope(SCOPE_WRITE))
    context: AuthContext = Depends(require_session)

The clock is a dependency too, so tests can move time forward.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.context import (
    AUTH_METHOD_SESSION,
    AUTH_METHOD_TOKEN,
    AuthContext,
    AuthContextResolver,
)
from skillsauth.auth.scopes import require_scope
from skillsauth.auth.session import SessionResolver, get_session_resolver
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock, utcnow
from skillsauth.errors import Unauthenticated


def get_clock() -> Clock:
    return utcnow


async def get_auth_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    session_resolver: SessionResolver = Depends(get_session_resolver),
    clock: Clock = Depends(get_clock),
) -> AuthContext:
    """Resolve the caller (soft: anonymous requests get an empty context)."""
    resolver = AuthContextResolver(db, session_resolver, clock)
    return await resolver.resolve(request)


async def require_auth(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not context.is_authenticated:
        raise Unauthenticated("Authentication required")
    return context


async def require_session(context: AuthContext = Depends(require_auth)) -> AuthContext:
    """Interactive login only. Approving a CLI login with a bearer token is refused."""
    if context.auth_method != AUTH_METHOD_SESSION:
        raise Unauthenticated("A browser session is required")
    return context


async def require_bearer(context: AuthContext = Depends(require_auth)) -> AuthContext:
    if context.auth_method != AUTH_METHOD_TOKEN:
        raise Unauthenticated("A bearer token is required")
    return context


class RequireScope:
    """Dependency factory: `Depends(RequireScope("write"))`."""

    def __init__(self, scope: str):
        self.scope = scope

    async def __call__(self, context: AuthContext = Depends(require_auth)) -> AuthContext:
        require_scope(context, self.scope)
        return context
