"""Skill access check: exercises the permission collaborator.

Learn: GET /skills/:id/access tells a caller what they may do with a
skill. A skill the caller can't see answers 404, exactly like a skill
that doesn't exist, so private slugs never leak.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from skillsauth.auth.context import AuthContext, user_uuid
from skillsauth.auth.dependencies import RequireScope, get_clock
from skillsauth.auth.permissions import PermissionChecker, SqlPermissionChecker
from skillsauth.auth.scopes import SCOPE_READ
from skillsauth.db.engine import get_db
from skillsauth.db.models import Clock
from skillsauth.db.repository import AuthStore
from skillsauth.errors import NotFound
from skillsauth.schemas.tokens import SkillAccess

router = APIRouter(prefix="/skills")


@router.get("/{skill_id}/access", response_model=SkillAccess)
async def skill_access(
    skill_id: uuid.UUID,
    context: AuthContext = Depends(RequireScope(SCOPE_READ)),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    checker: PermissionChecker = SqlPermissionChecker(AuthStore(db), clock)
    user_id = user_uuid(context)
    if not await checker.has_access(skill_id, user_id):
        raise NotFound("Skill not found")
    return SkillAccess(
        skill_id=skill_id,
        can_read=True,
        can_write=await checker.can_write(skill_id, user_id),
        is_owner=await checker.is_owner(skill_id, user_id),
    )
