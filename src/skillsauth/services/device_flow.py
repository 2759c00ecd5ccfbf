"""Device authorization flow (RFC 8628 style) for headless CLI login.

Learn: The CLI asks for a code pair, shows the short user_code to the
human, then polls with the long device_code while the human approves in
a browser:

    POST /device/code      → {device_code, user_code, verification_uri, ...}
    POST /device/authorize → human approves/denies (session auth)
    POST /device/token     → pending … pending … success (tokens) once

State machine:
    pending ──approve──▶ approved ──first poll──▶ consumed (tokens minted)
       │  └──deny────▶ denied
       └──time──────▶ expired        (approved also expires if never polled)

Both writes that matter (binding the code to a user, and consuming it
to mint tokens) are conditional UPDATEs on the current status, so two
concurrent pollers can never both see success.

Poll throttling is durable: last_polled_at on the row is compared against
the interval with a conditional UPDATE; polling too fast yields slow_down.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.codec import (
    generate_device_code,
    generate_user_code,
    normalize_user_code,
)
from skillsauth.auth.scopes import ALL_SCOPES, validate_scopes
from skillsauth.config import settings
from skillsauth.db.models import (
    DEVICE_APPROVED,
    DEVICE_CONSUMED,
    DEVICE_DENIED,
    DEVICE_EXPIRED,
    DEVICE_PENDING,
    Clock,
    DeviceCode,
    utcnow,
)
from skillsauth.db.repository import AuthStore
from skillsauth.errors import AlreadyConsumed, Expired, InvalidInput, NotFound, StorageUnavailable
from skillsauth.services.token_service import TokenPair, TokenService

logger = structlog.get_logger()

ACTION_APPROVE = "approve"
ACTION_DENY = "deny"

# Poll outcomes: a closed set, never raw storage errors.
POLL_PENDING = "pending"
POLL_SLOW_DOWN = "slow_down"
POLL_EXPIRED = "expired"
POLL_DENIED = "denied"
POLL_SUCCESS = "success"


@dataclass
class DeviceCodeIssued:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


@dataclass
class PollResult:
    status: str
    tokens: Optional[TokenPair] = None
    user: Optional[dict] = None


class DeviceFlowService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.store = AuthStore(db)
        self.clock = clock
        self.tokens = TokenService(db, clock=clock)

    # ─── Issuance ────────────────────────────────────────

    async def _user_code_available(self, user_code: str, now: datetime) -> bool:
        """A user code is free unless a live pending row holds it.

        A pending row that has silently expired is marked expired here,
        releasing the code.
        """
        holder = await self.store.get_pending_by_user_code(user_code)
        if holder is None:
            return True
        if now > holder.expires_at:
            await self.store.transition_device_code(holder.id, DEVICE_PENDING, DEVICE_EXPIRED)
            return True
        return False

    async def issue_device_code(
        self,
        base_url: str,
        client_info: Optional[dict] = None,
        scopes: Optional[list[str]] = None,
    ) -> DeviceCodeIssued:
        granted = validate_scopes(scopes) if scopes is not None else list(ALL_SCOPES)
        ttl = timedelta(seconds=settings.device_code_ttl_seconds)

        for attempt in range(settings.user_code_max_attempts):
            now = self.clock()
            user_code = generate_user_code()
            if not await self._user_code_available(user_code, now):
                logger.info("device.user_code_collision", attempt=attempt)
                continue

            device_code = generate_device_code()
            row = DeviceCode(
                device_code=device_code,
                user_code=user_code,
                status=DEVICE_PENDING,
                scopes=granted,
                client_info=client_info,
                created_at=now,
                expires_at=now + ttl,
            )
            try:
                await self.store.add(row)
            except IntegrityError:
                # Another worker took the same user code between check and insert.
                await self.store.rollback()
                logger.info("device.user_code_race", attempt=attempt)
                continue
            await self.store.commit()

            verification_uri = f"{base_url.rstrip('/')}/device"
            logger.info("device.issued", device_id=str(row.id), client_info=client_info)
            return DeviceCodeIssued(
                device_code=device_code,
                user_code=user_code,
                verification_uri=verification_uri,
                verification_uri_complete=f"{verification_uri}?user_code={user_code}",
                expires_in=settings.device_code_ttl_seconds,
                interval=settings.device_poll_interval_seconds,
            )

        raise StorageUnavailable("Could not allocate a unique user code")

    # ─── Verification page ───────────────────────────────

    async def get_device_code(self, user_code: str) -> DeviceCode:
        """Look up a live code for the approval page (404 when unknown/expired)."""
        normalized = normalize_user_code(user_code)
        if normalized is None:
            raise NotFound("Invalid code", code="invalid_code")
        row = await self.store.get_latest_by_user_code(normalized)
        if row is None or self.clock() > row.expires_at:
            raise NotFound("Invalid code", code="invalid_code")
        return row

    # ─── Authorize ───────────────────────────────────────

    async def authorize(
        self, user_code: str, acting_user_id: uuid.UUID, action: str
    ) -> None:
        """Bind a pending device code to a user (approve) or refuse it (deny)."""
        if action not in (ACTION_APPROVE, ACTION_DENY):
            raise InvalidInput('action must be "approve" or "deny"')

        normalized = normalize_user_code(user_code)
        if normalized is None:
            raise NotFound("Invalid code", code="invalid_code")

        now = self.clock()
        row = await self.store.get_pending_by_user_code(normalized)
        if row is None:
            latest = await self.store.get_latest_by_user_code(normalized)
            if latest is not None and latest.status == DEVICE_EXPIRED:
                raise Expired("Code expired", code="code_expired")
            if latest is not None and now <= latest.expires_at:
                raise AlreadyConsumed("Code already used", code="code_already_used")
            raise NotFound("Invalid code", code="invalid_code")

        if now > row.expires_at:
            await self.store.transition_device_code(row.id, DEVICE_PENDING, DEVICE_EXPIRED)
            await self.store.commit()
            raise Expired("Code expired", code="code_expired")

        if action == ACTION_APPROVE:
            changed = await self.store.transition_device_code(
                row.id,
                DEVICE_PENDING,
                DEVICE_APPROVED,
                user_id=acting_user_id,
                authorized_at=now,
            )
        else:
            changed = await self.store.transition_device_code(
                row.id, DEVICE_PENDING, DEVICE_DENIED, authorized_at=now
            )

        if not changed:
            await self.store.rollback()
            raise AlreadyConsumed("Code already used", code="code_already_used")

        await self.store.commit()
        logger.info(
            "device.approved" if action == ACTION_APPROVE else "device.denied",
            device_id=str(row.id),
            user_id=str(acting_user_id),
        )

    # ─── Poll ────────────────────────────────────────────

    async def _expire(self, row: DeviceCode) -> PollResult:
        if row.status in (DEVICE_PENDING, DEVICE_APPROVED):
            await self.store.transition_device_code(row.id, row.status, DEVICE_EXPIRED)
            await self.store.commit()
        return PollResult(status=POLL_EXPIRED)

    async def poll_token(self, device_code: str) -> PollResult:
        now = self.clock()
        row = await self.store.get_device_code(device_code)
        if row is None or row.status in (DEVICE_EXPIRED, DEVICE_CONSUMED):
            return PollResult(status=POLL_EXPIRED)

        if now > row.expires_at:
            return await self._expire(row)

        if row.status == DEVICE_DENIED:
            return PollResult(status=POLL_DENIED)

        if row.status == DEVICE_PENDING:
            if settings.device_poll_enforce_interval:
                not_after = now - timedelta(seconds=settings.device_poll_interval_seconds)
                allowed = await self.store.claim_poll_slot(row.id, now, not_after)
                await self.store.commit()
                if not allowed:
                    logger.info("device.slow_down", device_id=str(row.id))
                    return PollResult(status=POLL_SLOW_DOWN)
            return PollResult(status=POLL_PENDING)

        # Approved: claim the code exactly once, then mint in the same transaction.
        if not await self.store.transition_device_code(
            row.id, DEVICE_APPROVED, DEVICE_CONSUMED, last_polled_at=now
        ):
            await self.store.rollback()
            return PollResult(status=POLL_EXPIRED)

        pair = await self.tokens.issue_token_pair(
            row.user_id, scopes=list(row.scopes), name="CLI Device Auth"
        )
        user = await self.tokens.user_payload(row.user_id)
        await self.store.commit()
        logger.info("device.consumed", device_id=str(row.id), user_id=str(row.user_id))
        return PollResult(status=POLL_SUCCESS, tokens=pair, user=user)
