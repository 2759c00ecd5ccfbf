"""SQLAlchemy ORM models: single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic migrations mirror these definitions.

Two groups of tables live here:
- Owned by the authorization core (only this package writes them):
  device_codes, cli_auth_sessions, api_tokens, refresh_tokens
- External facts the core only reads: users, skills, skill_permissions,
  org_members. They're declared so queries can be expressed in the ORM
  and so tests can seed them.

Key concepts:
- Generic Uuid / JSON column types so the same models run on Postgres
  (production) and SQLite (tests)
- UTCDateTime keeps every timestamp timezone-aware on both backends
- Raw secrets are never stored: only SHA-256 hashes plus a display prefix
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# Services take a clock so expiry and throttling can be tested without sleeping.
Clock = Callable[[], datetime]


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way in, so values are normalised to UTC when
    bound and re-tagged as UTC when loaded.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Device code statuses
DEVICE_PENDING = "pending"
DEVICE_APPROVED = "approved"
DEVICE_DENIED = "denied"
DEVICE_EXPIRED = "expired"
DEVICE_CONSUMED = "consumed"

# CLI auth session statuses
CLI_PENDING = "pending"
CLI_APPROVED = "approved"
CLI_DENIED = "denied"
CLI_EXPIRED = "expired"
CLI_CONSUMED = "consumed"


# ══════════════════════════════════════════════════════════════
# Owned record families
# ══════════════════════════════════════════════════════════════


class DeviceCode(Base):
    """A pending CLI login waiting for a human to approve it in a browser.

    Learn: The CLI holds device_code (secret, polled), the human types
    user_code (short, shown on screen). user_code is only unique among
    pending rows. The partial unique index below enforces that at the
    storage level so two concurrent issuers can't both claim a code.

    Lifecycle: pending → approved | denied | expired; approved → consumed
    on the first successful poll (tokens minted exactly once).
    """

    __tablename__ = "device_codes"
    __table_args__ = (
        Index(
            "uq_device_codes_pending_user_code",
            "user_code",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_device_codes_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    device_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_code: Mapped[str] = mapped_column(String(9), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEVICE_PENDING
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    client_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    authorized_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class CliAuthSession(Base):
    """Browser-initiated CLI login that redirects to a localhost callback.

    Learn: The CLI picks `state` (CSRF) and optionally a PKCE challenge.
    On approval we mint a one-time auth code (stored hashed) and redirect
    to callback_url?code=...&state=...; the CLI then exchanges the code.
    """

    __tablename__ = "cli_auth_sessions"
    __table_args__ = (
        Index("idx_cli_auth_sessions_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    callback_url: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[str] = mapped_column(String(255), nullable=False)
    auth_code_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CLI_PENDING)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    client_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    code_challenge: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    code_challenge_method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ApiToken(Base):
    """Bearer token. Covers both personal API tokens and flow-issued access tokens.

    Learn: The raw token ("sk_...") is returned once and never stored.
    A token is usable iff revoked_at IS NULL and it hasn't expired.
    Scopes are fixed at issuance; revoke and reissue to change them.
    Org tokens carry org_id and belong to the org; user_id is whoever
    minted them.
    """

    __tablename__ = "api_tokens"
    __table_args__ = (
        Index("idx_api_tokens_user", "user_id"),
        Index("idx_api_tokens_org", "org_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    token_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and (
            self.expires_at is None or now < self.expires_at
        )


class RefreshToken(Base):
    """Single-use refresh token ("srt_...").

    Learn: `used` flips exactly once via a conditional UPDATE, so at most
    one of N concurrent redemptions wins. rotated_from points back at the
    token this one replaced (audit trail, not ownership).
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("idx_refresh_tokens_user", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    token_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    access_token_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    rotated_from: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


# ══════════════════════════════════════════════════════════════
# External facts (read-only from this package)
# ══════════════════════════════════════════════════════════════


class User(Base):
    """Marketplace account, owned by the account service."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Skill(Base):
    """A published skill. Only the access-relevant columns are mapped."""

    __tablename__ = "skills"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)
    visibility: Mapped[str] = mapped_column(
        String(20), nullable=False, default="public"
    )  # public | private | unlisted
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)


class SkillPermission(Base):
    __tablename__ = "skill_permissions"
    __table_args__ = (
        Index("idx_skill_permissions_grantee", "skill_id", "grantee_type", "grantee_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    skill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("skills.id", ondelete="CASCADE"), nullable=False
    )
    grantee_type: Mapped[str] = mapped_column(String(10), nullable=False)  # user | email
    grantee_id: Mapped[str] = mapped_column(String(255), nullable=False)
    permission: Mapped[str] = mapped_column(String(10), nullable=False)  # read | write
    granted_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class OrgMember(Base):
    __tablename__ = "org_members"

    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
