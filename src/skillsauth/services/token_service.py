"""Token issuance & refresh.

Learn: Two kinds of opaque bearer secrets:
- Access tokens ("sk_...") are ApiToken rows. Flow-issued ones live for
  an hour; personal API tokens may never expire.
- Refresh tokens ("srt_...") live for months and are SINGLE-USE.

Refresh rules:
1. Unknown hash, or a token already used → invalid_token
2. Past expires_at → token_expired, row left untouched
3. Otherwise flip used=false→true with one conditional UPDATE. Only one
   of N concurrent redemptions can win that write; the rest get
   invalid_token.
4. Always mint a new access token (revoking the one the refresh token
   was paired with). Mint a new refresh token only when the presented
   one is in the last third of its lifetime (rotation).

Redeeming a refresh token that was already rotated is a theft signal:
someone else holds its successor. Only then does the replay handler
(pluggable) run, and by default it revokes the user's whole refresh-token
family. Reusing a token that was redeemed without rotation is a plain
invalid_token with no side effects.

Storage failures propagate as StorageUnavailable and are never retried
here, so a token can't be issued twice by accident.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.codec import (
    ACCESS_DISPLAY_LEN,
    REFRESH_DISPLAY_LEN,
    generate_access_token,
    generate_refresh_token,
    hash_token,
    looks_like_refresh_token,
)
from skillsauth.auth.scopes import ALL_SCOPES, validate_scopes
from skillsauth.config import settings
from skillsauth.db.models import ApiToken, Clock, RefreshToken, utcnow
from skillsauth.db.repository import AuthStore
from skillsauth.errors import AlreadyConsumed, Expired, Forbidden, InvalidInput, NotFound

logger = structlog.get_logger()

ReplayHandler = Callable[[AuthStore, RefreshToken, datetime], Awaitable[None]]

ORG_TOKEN_ADMIN_ROLES = ("owner", "admin")
ORG_TOKEN_DEFAULT_SCOPES = ("read",)


@dataclass
class TokenPair:
    access_token: str
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    access_token_id: uuid.UUID
    refresh_token_id: uuid.UUID


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None

    @property
    def rotated(self) -> bool:
        return self.refresh_token is not None


async def revoke_refresh_family(store: AuthStore, token: RefreshToken, now: datetime) -> None:
    """Default replay policy: kill every outstanding refresh token of the user."""
    revoked = await store.revoke_user_refresh_tokens(token.user_id, now)
    logger.warning(
        "refresh.family_revoked",
        user_id=str(token.user_id),
        revoked=revoked,
    )


def _invalid_token() -> NotFound:
    return NotFound("Refresh token not recognised", code="invalid_token", status_code=401)


class TokenService:
    """Mints, refreshes, lists and revokes bearer credentials."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        on_replay: Optional[ReplayHandler] = None,
    ):
        self.db = db
        self.store = AuthStore(db)
        self.clock = clock
        if on_replay is None and settings.refresh_replay_revokes_family:
            on_replay = revoke_refresh_family
        self.on_replay = on_replay

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(seconds=settings.access_token_ttl_seconds)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=settings.refresh_token_ttl_days)

    # ─── Minting ─────────────────────────────────────────

    async def _mint_access_token(
        self,
        user_id: uuid.UUID,
        scopes: list[str],
        name: str,
        now: datetime,
        expires_at: Optional[datetime],
        org_id: Optional[uuid.UUID] = None,
    ) -> tuple[str, ApiToken]:
        raw = generate_access_token()
        row = ApiToken(
            user_id=user_id,
            org_id=org_id,
            name=name,
            token_hash=hash_token(raw),
            token_prefix=raw[:ACCESS_DISPLAY_LEN],
            scopes=list(scopes),
            created_at=now,
            expires_at=expires_at,
        )
        await self.store.add(row)
        return raw, row

    async def _mint_refresh_token(
        self,
        user_id: uuid.UUID,
        access_token_id: uuid.UUID,
        now: datetime,
        rotated_from: Optional[uuid.UUID] = None,
    ) -> tuple[str, RefreshToken]:
        raw = generate_refresh_token()
        row = RefreshToken(
            user_id=user_id,
            token_hash=hash_token(raw),
            token_prefix=raw[:REFRESH_DISPLAY_LEN],
            access_token_id=access_token_id,
            rotated_from=rotated_from,
            created_at=now,
            expires_at=now + self.refresh_ttl,
        )
        await self.store.add(row)
        return raw, row

    async def issue_token_pair(
        self,
        user_id: uuid.UUID,
        scopes: Optional[list[str]] = None,
        name: str = "CLI Auth",
    ) -> TokenPair:
        """Mint an access + refresh pair. The caller commits.

        Raw values exist only in the returned object; the DB keeps hashes.
        """
        now = self.clock()
        raw_access, access = await self._mint_access_token(
            user_id, scopes or list(ALL_SCOPES), name, now, now + self.access_ttl
        )
        raw_refresh, refresh = await self._mint_refresh_token(user_id, access.id, now)
        logger.info(
            "tokens.issued",
            user_id=str(user_id),
            access_prefix=access.token_prefix,
            refresh_prefix=refresh.token_prefix,
        )
        return TokenPair(
            access_token=raw_access,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_token=raw_refresh,
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
            access_token_id=access.id,
            refresh_token_id=refresh.id,
        )

    # ─── Refresh ─────────────────────────────────────────

    def _should_rotate(self, token: RefreshToken, now: datetime) -> bool:
        lifetime = token.expires_at - token.created_at
        remaining = token.expires_at - now
        return remaining < lifetime * settings.refresh_rotation_fraction

    async def refresh_access_token(self, raw_refresh_token: str) -> RefreshResult:
        now = self.clock()
        if not looks_like_refresh_token(raw_refresh_token):
            raise _invalid_token()

        token = await self.store.get_refresh_token(hash_token(raw_refresh_token))
        if token is None or token.revoked_at is not None:
            raise _invalid_token()

        if token.used:
            if await self.store.has_successor(token.id):
                logger.warning(
                    "refresh.replay_detected",
                    user_id=str(token.user_id),
                    prefix=token.token_prefix,
                )
                if self.on_replay is not None:
                    await self.on_replay(self.store, token, now)
                    await self.store.commit()
            else:
                logger.info("refresh.reused", prefix=token.token_prefix)
            raise AlreadyConsumed(
                "Refresh token already used", code="invalid_token", status_code=401
            )

        if now > token.expires_at:
            raise Expired("Refresh token expired", code="token_expired", status_code=401)

        if not await self.store.consume_refresh_token(token.id, now):
            # Lost the race to a concurrent redemption of the same token.
            logger.warning("refresh.concurrent_redemption", prefix=token.token_prefix)
            await self.store.rollback()
            raise AlreadyConsumed(
                "Refresh token already used", code="invalid_token", status_code=401
            )

        scopes = list(ALL_SCOPES)
        if token.access_token_id is not None:
            previous = await self.store.get_api_token(token.access_token_id)
            if previous is not None:
                scopes = list(previous.scopes)
            await self.store.revoke_api_token(token.access_token_id, now)

        raw_access, access = await self._mint_access_token(
            token.user_id, scopes, "CLI Auth (Refreshed)", now, now + self.access_ttl
        )
        result = RefreshResult(
            access_token=raw_access,
            expires_in=int(self.access_ttl.total_seconds()),
        )

        if self._should_rotate(token, now):
            raw_refresh, _ = await self._mint_refresh_token(
                token.user_id, access.id, now, rotated_from=token.id
            )
            result.refresh_token = raw_refresh
            result.refresh_expires_in = int(self.refresh_ttl.total_seconds())

        await self.store.commit()
        logger.info(
            "refresh.redeemed",
            user_id=str(token.user_id),
            prefix=token.token_prefix,
            rotated=result.rotated,
        )
        return result

    # ─── Personal API tokens ─────────────────────────────

    async def create_api_token(
        self,
        user_id: uuid.UUID,
        name: str,
        scopes: list[str],
        expires_in_days: Optional[int] = None,
    ) -> tuple[str, ApiToken]:
        """Create a long-lived token. The raw value is returned exactly once."""
        return await self._create_long_lived(user_id, name, scopes, expires_in_days)

    async def _create_long_lived(
        self,
        user_id: uuid.UUID,
        name: str,
        scopes: list[str],
        expires_in_days: Optional[int],
        org_id: Optional[uuid.UUID] = None,
    ) -> tuple[str, ApiToken]:
        name = (name or "").strip()
        if not name or len(name) > 100:
            raise InvalidInput("Token name is required (1-100 characters)")
        scopes = validate_scopes(scopes)
        if expires_in_days is not None and not 1 <= expires_in_days <= settings.api_token_max_days:
            raise InvalidInput(
                f"Expiration must be between 1 and {settings.api_token_max_days} days"
            )

        now = self.clock()
        expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
        raw, row = await self._mint_access_token(
            user_id, scopes, name, now, expires_at, org_id=org_id
        )
        await self.store.commit()
        logger.info(
            "api_token.created",
            user_id=str(user_id),
            org_id=str(org_id) if org_id else None,
            token_id=str(row.id),
            scopes=scopes,
        )
        return raw, row

    async def list_api_tokens(self, user_id: uuid.UUID) -> list[ApiToken]:
        """Active (unrevoked) tokens, newest first. Expired ones are included."""
        return await self.store.list_active_api_tokens(user_id)

    async def revoke_api_token(self, user_id: uuid.UUID, token_id: uuid.UUID) -> None:
        if not await self.store.revoke_api_token(token_id, self.clock(), user_id=user_id):
            raise NotFound("Token not found or already revoked")
        await self.store.commit()
        logger.info("api_token.revoked", user_id=str(user_id), token_id=str(token_id))

    # ─── Org API tokens ──────────────────────────────────

    async def require_org_admin(self, org_id: uuid.UUID, user_id: uuid.UUID) -> str:
        """Only org owners and admins manage an org's tokens."""
        role = await self.store.get_org_role(org_id, user_id)
        if role not in ORG_TOKEN_ADMIN_ROLES:
            raise Forbidden(
                "Only organization owners and admins can manage tokens",
                code="forbidden",
            )
        return role

    async def create_org_api_token(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        name: str,
        scopes: Optional[list[str]] = None,
        expires_in_days: Optional[int] = None,
    ) -> tuple[str, ApiToken]:
        """Mint a token owned by an org. Defaults to read-only."""
        await self.require_org_admin(org_id, user_id)
        if scopes is None:
            scopes = list(ORG_TOKEN_DEFAULT_SCOPES)
        return await self._create_long_lived(
            user_id, name, scopes, expires_in_days, org_id=org_id
        )

    async def list_org_api_tokens(
        self, org_id: uuid.UUID, user_id: uuid.UUID
    ) -> list[ApiToken]:
        await self.require_org_admin(org_id, user_id)
        return await self.store.list_org_api_tokens(org_id)

    async def revoke_org_api_token(
        self, org_id: uuid.UUID, user_id: uuid.UUID, token_id: uuid.UUID
    ) -> None:
        await self.require_org_admin(org_id, user_id)
        if not await self.store.revoke_api_token(token_id, self.clock(), org_id=org_id):
            raise NotFound("Token not found or already revoked")
        await self.store.commit()
        logger.info(
            "api_token.revoked",
            user_id=str(user_id),
            org_id=str(org_id),
            token_id=str(token_id),
        )

    async def user_payload(self, user_id: uuid.UUID) -> dict:
        """The `user` block returned alongside freshly issued tokens."""
        user = await self.store.get_user(user_id)
        payload = {"id": str(user_id)}
        if user is not None:
            payload.update(name=user.name, email=user.email, image=user.image)
        return payload
