"""Permission collaborator: read-only questions about skill access.

Learn: Skills, orgs and grants are owned elsewhere; this module only
answers three questions over those tables:

- has_access: may the user see this skill at all?
  public/unlisted → yes; owner → yes; member of the owning org → yes;
  an unexpired user grant (read or write) → yes.
- is_owner: direct ownership only.
- can_write: owner, org owner/admin, or an unexpired write grant.

A private skill the user can't see is reported as not found by the
route, so its existence never leaks.
"""

import uuid
from typing import Protocol

from skillsauth.db.models import Clock, utcnow
from skillsauth.db.repository import AuthStore

PUBLIC_VISIBILITIES = ("public", "unlisted")
ORG_WRITE_ROLES = ("owner", "admin")


class PermissionChecker(Protocol):
    async def has_access(self, skill_id: uuid.UUID, user_id: uuid.UUID | None) -> bool:
        ...

    async def is_owner(self, skill_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        ...

    async def can_write(self, skill_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        ...


class SqlPermissionChecker:
    def __init__(self, store: AuthStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def has_access(self, skill_id: uuid.UUID, user_id: uuid.UUID | None) -> bool:
        skill = await self.store.get_skill(skill_id)
        if skill is None:
            return False
        if skill.visibility in PUBLIC_VISIBILITIES:
            return True
        if user_id is None:
            return False
        if skill.owner_id == user_id:
            return True
        if skill.org_id is not None and await self.store.get_org_role(skill.org_id, user_id):
            return True
        return await self.store.has_skill_grant(skill_id, user_id, self.clock())

    async def is_owner(self, skill_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        skill = await self.store.get_skill(skill_id)
        return skill is not None and skill.owner_id == user_id

    async def can_write(self, skill_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        skill = await self.store.get_skill(skill_id)
        if skill is None:
            return False
        if skill.owner_id == user_id:
            return True
        if skill.org_id is not None:
            role = await self.store.get_org_role(skill.org_id, user_id)
            if role in ORG_WRITE_ROLES:
                return True
        return await self.store.has_skill_grant(
            skill_id, user_id, self.clock(), permission="write"
        )
