"""Persistence adapter for the four auth record families.

Learn: Every state transition that must happen at most once is a single
conditional UPDATE ("... WHERE id = :id AND status = :expected") and the
caller checks whether exactly one row changed. Two workers racing on the
same device code or refresh token can both read the row, but only one
UPDATE can match, and the loser sees rowcount 0 and backs off. Nothing here
relies on in-process locks, so it holds across processes and hosts.

Storage failures are wrapped in StorageUnavailable and never retried.
The store never commits; services own the transaction boundary.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.db.models import (
    ApiToken,
    CliAuthSession,
    DeviceCode,
    DEVICE_PENDING,
    OrgMember,
    RefreshToken,
    Skill,
    SkillPermission,
    User,
)
from skillsauth.errors import StorageUnavailable


class AuthStore:
    """Keyed insert, lookup and conditional update over the auth tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageUnavailable(str(e)) from e

    async def _scalar(self, stmt):
        # populate_existing: a long-lived session must not serve stale rows
        # after a conditional UPDATE issued by this or another worker.
        result = await self._execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def _changed(self, stmt) -> int:
        result = await self._execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount

    async def add(self, row) -> None:
        """Insert a row and flush so unique constraints fire immediately.

        IntegrityError propagates unwrapped: callers use it to detect a
        collision and retry after rolling back.
        """
        self.db.add(row)
        try:
            await self.db.flush()
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise StorageUnavailable(str(e)) from e

    async def rollback(self) -> None:
        await self.db.rollback()

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable(str(e)) from e

    # ─── Device codes ────────────────────────────────────

    async def get_device_code(self, device_code: str) -> Optional[DeviceCode]:
        return await self._scalar(
            select(DeviceCode).where(DeviceCode.device_code == device_code)
        )

    async def get_pending_by_user_code(self, user_code: str) -> Optional[DeviceCode]:
        return await self._scalar(
            select(DeviceCode).where(
                DeviceCode.user_code == user_code,
                DeviceCode.status == DEVICE_PENDING,
            )
        )

    async def get_latest_by_user_code(self, user_code: str) -> Optional[DeviceCode]:
        """Most recent row for a user code, whatever its status."""
        return await self._scalar(
            select(DeviceCode)
            .where(DeviceCode.user_code == user_code)
            .order_by(DeviceCode.created_at.desc())
            .limit(1)
        )

    async def transition_device_code(
        self, row_id: uuid.UUID, expected: str, new: str, **values: Any
    ) -> bool:
        """Compare-and-swap the status of one device code."""
        changed = await self._changed(
            update(DeviceCode)
            .where(DeviceCode.id == row_id, DeviceCode.status == expected)
            .values(status=new, **values)
        )
        return changed == 1

    async def claim_poll_slot(
        self, row_id: uuid.UUID, now: datetime, not_after: datetime
    ) -> bool:
        """Record a poll unless the previous one was later than `not_after`.

        The throttle state lives in the row itself so it survives restarts
        and is shared by every worker.
        """
        changed = await self._changed(
            update(DeviceCode)
            .where(
                DeviceCode.id == row_id,
                or_(
                    DeviceCode.last_polled_at.is_(None),
                    DeviceCode.last_polled_at <= not_after,
                ),
            )
            .values(last_polled_at=now)
        )
        return changed == 1

    # ─── CLI auth sessions ───────────────────────────────

    async def get_cli_session(self, session_id: uuid.UUID) -> Optional[CliAuthSession]:
        return await self._scalar(
            select(CliAuthSession).where(CliAuthSession.id == session_id)
        )

    async def transition_cli_session(
        self, session_id: uuid.UUID, expected: str, new: str, **values: Any
    ) -> bool:
        changed = await self._changed(
            update(CliAuthSession)
            .where(CliAuthSession.id == session_id, CliAuthSession.status == expected)
            .values(status=new, **values)
        )
        return changed == 1

    # ─── API tokens ──────────────────────────────────────

    async def get_api_token(self, token_id: uuid.UUID) -> Optional[ApiToken]:
        return await self._scalar(select(ApiToken).where(ApiToken.id == token_id))

    async def get_active_api_token(self, token_hash: str, now: datetime) -> Optional[ApiToken]:
        return await self._scalar(
            select(ApiToken).where(
                ApiToken.token_hash == token_hash,
                ApiToken.revoked_at.is_(None),
                or_(ApiToken.expires_at.is_(None), ApiToken.expires_at > now),
            )
        )

    async def _list_api_tokens(self, *criteria) -> list[ApiToken]:
        result = await self._execute(
            select(ApiToken)
            .where(ApiToken.revoked_at.is_(None), *criteria)
            .order_by(ApiToken.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_active_api_tokens(self, user_id: uuid.UUID) -> list[ApiToken]:
        """A user's own tokens. Tokens they minted for an org are listed there."""
        return await self._list_api_tokens(
            ApiToken.user_id == user_id, ApiToken.org_id.is_(None)
        )

    async def list_org_api_tokens(self, org_id: uuid.UUID) -> list[ApiToken]:
        return await self._list_api_tokens(ApiToken.org_id == org_id)

    async def touch_api_token(self, token_id: uuid.UUID, now: datetime) -> None:
        await self._changed(
            update(ApiToken).where(ApiToken.id == token_id).values(last_used_at=now)
        )

    async def revoke_api_token(
        self,
        token_id: uuid.UUID,
        now: datetime,
        user_id: Optional[uuid.UUID] = None,
        org_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Revoke one active token, optionally only if it belongs to `user_id`
        (personal tokens) or `org_id` (org tokens)."""
        stmt = update(ApiToken).where(
            ApiToken.id == token_id, ApiToken.revoked_at.is_(None)
        )
        if user_id is not None:
            stmt = stmt.where(ApiToken.user_id == user_id, ApiToken.org_id.is_(None))
        if org_id is not None:
            stmt = stmt.where(ApiToken.org_id == org_id)
        return await self._changed(stmt.values(revoked_at=now)) == 1

    # ─── Refresh tokens ──────────────────────────────────

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        return await self._scalar(
            select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        )

    async def consume_refresh_token(self, token_id: uuid.UUID, now: datetime) -> bool:
        """Flip `used` false → true. Exactly one caller ever gets True."""
        changed = await self._changed(
            update(RefreshToken)
            .where(
                RefreshToken.id == token_id,
                RefreshToken.used.is_(False),
                RefreshToken.revoked_at.is_(None),
            )
            .values(used=True, used_at=now)
        )
        return changed == 1

    async def has_successor(self, token_id: uuid.UUID) -> bool:
        """True when redeeming `token_id` minted a rotated replacement."""
        result = await self._execute(
            select(func.count())
            .select_from(RefreshToken)
            .where(RefreshToken.rotated_from == token_id)
        )
        return result.scalar_one() > 0

    async def revoke_user_refresh_tokens(self, user_id: uuid.UUID, now: datetime) -> int:
        return await self._changed(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )

    # ─── External facts (read-only) ──────────────────────

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self._scalar(select(User).where(User.id == user_id))

    async def get_skill(self, skill_id: uuid.UUID) -> Optional[Skill]:
        return await self._scalar(select(Skill).where(Skill.id == skill_id))

    async def get_org_role(self, org_id: uuid.UUID, user_id: uuid.UUID) -> Optional[str]:
        return await self._scalar(
            select(OrgMember.role).where(
                OrgMember.org_id == org_id, OrgMember.user_id == user_id
            )
        )

    async def has_skill_grant(
        self,
        skill_id: uuid.UUID,
        user_id: uuid.UUID,
        now: datetime,
        permission: Optional[str] = None,
    ) -> bool:
        stmt = select(func.count()).select_from(SkillPermission).where(
            SkillPermission.skill_id == skill_id,
            SkillPermission.grantee_type == "user",
            SkillPermission.grantee_id == str(user_id),
            or_(SkillPermission.expires_at.is_(None), SkillPermission.expires_at > now),
        )
        if permission is not None:
            stmt = stmt.where(SkillPermission.permission == permission)
        result = await self._execute(stmt)
        return result.scalar_one() > 0
