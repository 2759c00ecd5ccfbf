"""Scope enforcement.

Learn: Three capabilities exist: read, write and publish. Interactive
session logins implicitly carry all of them; bearer tokens carry exactly
the scopes stored on their row at issuance (immutable afterwards).
"""

from collections.abc import Iterable

from skillsauth.errors import Forbidden, InvalidInput

SCOPE_READ = "read"
SCOPE_WRITE = "write"
SCOPE_PUBLISH = "publish"

ALL_SCOPES: tuple[str, ...] = (SCOPE_READ, SCOPE_WRITE, SCOPE_PUBLISH)


def validate_scopes(scopes: Iterable[str]) -> list[str]:
    """Reject unknown scopes and return them deduplicated in canonical order."""
    requested = set(scopes)
    unknown = requested - set(ALL_SCOPES)
    if unknown:
        raise InvalidInput(f"Invalid scopes: {', '.join(sorted(unknown))}")
    if not requested:
        raise InvalidInput("At least one scope is required")
    return [s for s in ALL_SCOPES if s in requested]


def require_scope(context, scope: str) -> None:
    """Raise Forbidden unless `scope` is in the context's scope set."""
    if scope not in context.scopes:
        raise Forbidden(f"Scope '{scope}' required")
