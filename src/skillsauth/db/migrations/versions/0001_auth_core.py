"""auth core tables

Creates the four owned record families (device_codes, cli_auth_sessions,
api_tokens, refresh_tokens). The external tables (users, skills,
skill_permissions, org_members) are owned by the marketplace schema and
only created here when missing, so a fresh database is usable on its own.

The partial unique index on device_codes(user_code) WHERE status='pending'
is what makes user codes collision-free under concurrent issuance.

Revision ID: 0001_auth_core
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001_auth_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TZ = sa.DateTime(timezone=True)


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    # ─── External facts (create only if absent) ──────────
    if not _has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("name", sa.String(100), nullable=True),
            sa.Column("image", sa.String(500), nullable=True),
            sa.Column("created_at", TZ, nullable=False),
        )
    if not _has_table("skills"):
        op.create_table(
            "skills",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("slug", sa.String(200), nullable=False),
            sa.Column("visibility", sa.String(20), nullable=False, server_default="public"),
            sa.Column("owner_id", sa.Uuid(), nullable=True),
            sa.Column("org_id", sa.Uuid(), nullable=True),
        )
    if not _has_table("skill_permissions"):
        op.create_table(
            "skill_permissions",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column(
                "skill_id",
                sa.Uuid(),
                sa.ForeignKey("skills.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("grantee_type", sa.String(10), nullable=False),
            sa.Column("grantee_id", sa.String(255), nullable=False),
            sa.Column("permission", sa.String(10), nullable=False),
            sa.Column("granted_by", sa.Uuid(), nullable=True),
            sa.Column("expires_at", TZ, nullable=True),
        )
        op.create_index(
            "idx_skill_permissions_grantee",
            "skill_permissions",
            ["skill_id", "grantee_type", "grantee_id"],
        )
    if not _has_table("org_members"):
        op.create_table(
            "org_members",
            sa.Column("org_id", sa.Uuid(), primary_key=True),
            sa.Column("user_id", sa.Uuid(), primary_key=True),
            sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        )

    # ─── Device codes ────────────────────────────────────
    op.create_table(
        "device_codes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("device_code", sa.String(64), nullable=False, unique=True),
        sa.Column("user_code", sa.String(9), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("client_info", sa.JSON(), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("expires_at", TZ, nullable=False),
        sa.Column("authorized_at", TZ, nullable=True),
        sa.Column("last_polled_at", TZ, nullable=True),
    )
    op.create_index(
        "uq_device_codes_pending_user_code",
        "device_codes",
        ["user_code"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index("idx_device_codes_status", "device_codes", ["status"])

    # ─── CLI auth sessions ───────────────────────────────
    op.create_table(
        "cli_auth_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("callback_url", sa.String(255), nullable=False),
        sa.Column("state", sa.String(255), nullable=False),
        sa.Column("auth_code_hash", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("client_info", sa.JSON(), nullable=True),
        sa.Column("code_challenge", sa.String(128), nullable=True),
        sa.Column("code_challenge_method", sa.String(10), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("expires_at", TZ, nullable=False),
    )
    op.create_index("idx_cli_auth_sessions_status", "cli_auth_sessions", ["status"])

    # ─── API tokens ──────────────────────────────────────
    op.create_table(
        "api_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("org_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("token_prefix", sa.String(16), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("last_used_at", TZ, nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("expires_at", TZ, nullable=True),
        sa.Column("revoked_at", TZ, nullable=True),
    )
    op.create_index("idx_api_tokens_user", "api_tokens", ["user_id"])
    op.create_index("idx_api_tokens_org", "api_tokens", ["org_id"])

    # ─── Refresh tokens ──────────────────────────────────
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("token_prefix", sa.String(16), nullable=False),
        sa.Column("access_token_id", sa.Uuid(), nullable=True),
        sa.Column("rotated_from", sa.Uuid(), nullable=True),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", TZ, nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("expires_at", TZ, nullable=False),
        sa.Column("revoked_at", TZ, nullable=True),
    )
    op.create_index("idx_refresh_tokens_user", "refresh_tokens", ["user_id"])


def downgrade() -> None:
    op.drop_table("refresh_tokens")
    op.drop_table("api_tokens")
    op.drop_table("cli_auth_sessions")
    op.drop_table("device_codes")
