"""Typed errors for the authorization core.

Learn: Services raise one of these; the HTTP edge turns every AuthError
into a uniform `{"error": <code>}` body with the matching status. Each
class carries a default machine code and status, and call sites can
override both when a flow has its own public vocabulary (e.g. refresh
failures are `invalid_token` / `token_expired` with 401).

Taxonomy:
- InvalidInput       400  malformed request body / missing field
- Unauthenticated    401  missing or invalid credentials
- Forbidden          403  authenticated but lacking scope or ownership
- NotFound           404  unknown code/session/token (also masks existence)
- Expired            400  past expires_at
- AlreadyConsumed    409  replay of a one-time code or token
- StorageUnavailable 500  durable store failure, never retried here
"""

from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = structlog.get_logger()


class AuthError(Exception):
    """Base class for every error surfaced by the authorization core."""

    code: str = "server_error"
    status_code: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.code
        super().__init__(self.message)


class InvalidInput(AuthError):
    code = "invalid_request"
    status_code = 400


class Unauthenticated(AuthError):
    code = "unauthorized"
    status_code = 401


class Forbidden(AuthError):
    code = "insufficient_scope"
    status_code = 403


class NotFound(AuthError):
    code = "not_found"
    status_code = 404


class Expired(AuthError):
    code = "expired"
    status_code = 400


class AlreadyConsumed(AuthError):
    code = "already_used"
    status_code = 409


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    status_code = 500


def error_response(code: str, status_code: int, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code}, headers=headers)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request.auth_error",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        message=exc.message,
    )
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return error_response(exc.code, exc.status_code, headers)


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.info(
        "request.invalid",
        path=request.url.path,
        errors=[e.get("loc") for e in exc.errors()],
    )
    return error_response("invalid_request", 400)


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("request.storage_error", path=request.url.path, error=str(exc))
    return error_response("storage_unavailable", 500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
