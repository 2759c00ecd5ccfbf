"""CLI session authorization: the browser-redirect variant of CLI login.

Learn: When the CLI can open a local HTTP listener it skips the typed
user code:

    1. CLI → POST /auth/cli/init {callback_url, state, code_challenge?}
    2. CLI opens the browser on the approval page for session_id
    3. human approves → we redirect to callback_url?code=...&state=...
       (deny → callback_url?error=access_denied&state=...)
    4. CLI → POST /auth/cli/token {code, session_id, code_verifier?}

The callback must be loopback-only, so a leaked session id can't send
the auth code anywhere but the user's own machine. The auth code is
stored hashed and exchanged at most once (approved → consumed is a
conditional UPDATE).
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.codec import (
    generate_auth_code,
    generate_state,
    hash_token,
    hashes_match,
    is_local_callback,
    is_pkce_value,
    verify_code_challenge,
)
from skillsauth.auth.scopes import ALL_SCOPES, validate_scopes
from skillsauth.config import settings
from skillsauth.db.models import (
    CLI_APPROVED,
    CLI_CONSUMED,
    CLI_DENIED,
    CLI_EXPIRED,
    CLI_PENDING,
    CliAuthSession,
    Clock,
    utcnow,
)
from skillsauth.db.repository import AuthStore
from skillsauth.errors import AlreadyConsumed, Expired, InvalidInput, NotFound
from skillsauth.services.device_flow import ACTION_APPROVE, ACTION_DENY
from skillsauth.services.token_service import TokenPair, TokenService

logger = structlog.get_logger()

PKCE_METHODS = ("S256", "plain")
S256_CHALLENGE_LENGTH = 43


@dataclass
class CliSessionCreated:
    session_id: uuid.UUID
    state: str
    expires_in: int


@dataclass
class CodeExchange:
    tokens: TokenPair
    user: dict


def with_query(url: str, params: dict) -> str:
    """Append query parameters to a URL, keeping any it already has."""
    parts = urlsplit(url)
    query = urlencode(params)
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class CliFlowService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.store = AuthStore(db)
        self.clock = clock
        self.tokens = TokenService(db, clock=clock)

    async def create_session(
        self,
        callback_url: str,
        state: Optional[str] = None,
        client_info: Optional[dict] = None,
        scopes: Optional[list[str]] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> CliSessionCreated:
        if not is_local_callback(callback_url):
            raise InvalidInput("Invalid callback URL. Must be localhost.", code="invalid_callback_url")

        if state is None:
            state = generate_state()
        elif len(state) < settings.cli_state_min_length:
            raise InvalidInput("Invalid state parameter.", code="invalid_state")

        if code_challenge:
            if code_challenge_method not in PKCE_METHODS:
                raise InvalidInput(
                    "code_challenge_method must be S256 or plain", code="invalid_code_challenge"
                )
            if not is_pkce_value(code_challenge):
                raise InvalidInput(
                    "Malformed code_challenge", code="invalid_code_challenge"
                )
            if code_challenge_method == "S256" and len(code_challenge) != S256_CHALLENGE_LENGTH:
                raise InvalidInput(
                    "Invalid code_challenge length for S256", code="invalid_code_challenge"
                )
        else:
            code_challenge = None
            code_challenge_method = None

        granted = validate_scopes(scopes) if scopes is not None else list(ALL_SCOPES)
        now = self.clock()
        ttl = settings.cli_session_ttl_seconds
        row = CliAuthSession(
            callback_url=callback_url,
            state=state,
            status=CLI_PENDING,
            scopes=granted,
            client_info=client_info,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        await self.store.add(row)
        await self.store.commit()
        logger.info("cli_session.created", session_id=str(row.id), pkce=bool(code_challenge))
        return CliSessionCreated(session_id=row.id, state=state, expires_in=ttl)

    async def get_session(self, session_id: uuid.UUID) -> CliAuthSession:
        """Live session for the approval page; expired and unknown look the same."""
        row = await self.store.get_cli_session(session_id)
        if row is None or self.clock() > row.expires_at:
            raise NotFound("Invalid session", code="invalid_session")
        return row

    async def authorize(
        self, session_id: uuid.UUID, acting_user_id: uuid.UUID, action: str
    ) -> str:
        """Approve or deny a pending session and return the callback redirect URL."""
        if action not in (ACTION_APPROVE, ACTION_DENY):
            raise InvalidInput('action must be "approve" or "deny"')

        now = self.clock()
        row = await self.store.get_cli_session(session_id)
        if row is None:
            raise NotFound("Invalid session", code="invalid_session")
        if row.status == CLI_EXPIRED:
            raise Expired("Session expired", code="session_expired")
        if now > row.expires_at:
            if row.status == CLI_PENDING:
                await self.store.transition_cli_session(row.id, CLI_PENDING, CLI_EXPIRED)
                await self.store.commit()
            raise Expired("Session expired", code="session_expired")

        if action == ACTION_DENY:
            if not await self.store.transition_cli_session(row.id, CLI_PENDING, CLI_DENIED):
                await self.store.rollback()
                raise AlreadyConsumed("Session already processed", code="session_already_processed")
            await self.store.commit()
            logger.info("cli_session.denied", session_id=str(row.id), user_id=str(acting_user_id))
            return with_query(row.callback_url, {"error": "access_denied", "state": row.state})

        code = generate_auth_code()
        if not await self.store.transition_cli_session(
            row.id,
            CLI_PENDING,
            CLI_APPROVED,
            auth_code_hash=hash_token(code),
            user_id=acting_user_id,
        ):
            await self.store.rollback()
            raise AlreadyConsumed("Session already processed", code="session_already_processed")
        await self.store.commit()
        logger.info("cli_session.approved", session_id=str(row.id), user_id=str(acting_user_id))
        return with_query(row.callback_url, {"code": code, "state": row.state})

    async def exchange_code(
        self,
        code: str,
        session_id: uuid.UUID,
        code_verifier: Optional[str] = None,
    ) -> CodeExchange:
        now = self.clock()
        row = await self.store.get_cli_session(session_id)
        if row is None:
            raise NotFound("Invalid session", code="invalid_session")
        if now > row.expires_at:
            raise Expired("Session expired", code="session_expired")
        if row.status == CLI_CONSUMED:
            raise AlreadyConsumed("Code already used", code="code_already_used")
        if row.status != CLI_APPROVED or row.user_id is None:
            raise InvalidInput("Session not authorized", code="session_not_authorized")
        if not row.auth_code_hash or not hashes_match(code, row.auth_code_hash):
            raise InvalidInput("Invalid code", code="invalid_code")

        if row.code_challenge and row.code_challenge_method:
            if not code_verifier:
                raise InvalidInput("code_verifier required", code="code_verifier_required")
            if not is_pkce_value(code_verifier):
                raise InvalidInput("Malformed code_verifier", code="invalid_code_verifier")
            if not verify_code_challenge(code_verifier, row.code_challenge, row.code_challenge_method):
                raise InvalidInput("Invalid code_verifier", code="invalid_code_verifier")

        if not await self.store.transition_cli_session(row.id, CLI_APPROVED, CLI_CONSUMED):
            await self.store.rollback()
            raise AlreadyConsumed("Code already used", code="code_already_used")

        pair = await self.tokens.issue_token_pair(row.user_id, scopes=list(row.scopes))
        user = await self.tokens.user_payload(row.user_id)
        await self.store.commit()
        logger.info("cli_session.exchanged", session_id=str(row.id), user_id=str(row.user_id))
        return CodeExchange(tokens=pair, user=user)
