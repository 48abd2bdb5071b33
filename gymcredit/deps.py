"""Shared FastAPI dependencies.

Identity is established by the upstream gateway, which forwards the tenant and
acting staff member in headers. This service only checks role membership.
"""

from beanie import PydanticObjectId
from fastapi import Depends, Header
from pydantic import BaseModel

from gymcredit.core.exceptions import ForbiddenError
from gymcredit.core.logging import bind_caller
from gymcredit.models.member import Member
from gymcredit.services import members as members_service

ADJUST_ROLES = ("OWNER", "ADMIN")
PASS_ADMIN_ROLES = ("OWNER", "ADMIN", "MANAGER")


class Caller(BaseModel):
    gym_id: str
    actor_id: str
    role: str


async def get_caller(
    gym_id: str = Header(..., alias="X-Gym-ID", min_length=1),
    actor_id: str = Header("system", alias="X-Actor-ID"),
    role: str = Header("STAFF", alias="X-Actor-Role"),
) -> Caller:
    """Dependency: tenant and actor for this request."""
    bind_caller(gym_id, actor_id)
    return Caller(gym_id=gym_id, actor_id=actor_id, role=role.upper())


def require_roles(*roles: str):
    """Dependency factory: caller must hold one of roles."""

    async def _require(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in roles:
            raise ForbiddenError("Permission denied")
        return caller

    return _require


async def get_member(member_id: PydanticObjectId, caller: Caller = Depends(get_caller)) -> Member:
    """Dependency: path member, scoped to the caller's gym."""
    return await members_service.get_member(caller.gym_id, member_id)
