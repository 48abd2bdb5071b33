from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from gymcredit.deps import ADJUST_ROLES, PASS_ADMIN_ROLES, Caller, get_caller, get_member, require_roles
from gymcredit.models.member import Member
from gymcredit.models.member_pass import MemberPass
from gymcredit.services import passes as passes_service

router = APIRouter()


class IssuePassRequest(BaseModel):
    product_id: PydanticObjectId
    notes: str | None = Field(default=None, max_length=500)


class CancelPassRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def pass_out(p: MemberPass) -> dict:
    return {
        "id": str(p.id),
        "member_id": str(p.member_id),
        "product_id": str(p.product_id),
        "purchase_id": p.purchase_id,
        "status": p.status.value,
        "credits_total": p.credits_total,
        "credits_remaining": p.credits_remaining,
        "expires_at": p.expires_at.isoformat() if p.expires_at else None,
        "notes": p.notes,
        "created_at": p.created_at.isoformat(),
    }


@router.get("/members/{member_id}/passes")
async def list_member_passes(member: Member = Depends(get_member)):
    """Active and historical passes."""
    items = await passes_service.list_passes(member.id, member.gym_id)
    return {"passes": [pass_out(p) for p in items]}


@router.post("/members/{member_id}/passes", status_code=status.HTTP_201_CREATED)
async def issue_member_pass(
    body: IssuePassRequest,
    member: Member = Depends(get_member),
    caller: Caller = Depends(require_roles(*PASS_ADMIN_ROLES)),
):
    """Assign a catalog pass to the member."""
    member_pass = await passes_service.issue_from_product(
        member.id, member.gym_id, body.product_id, notes=body.notes, created_by=caller.actor_id
    )
    return pass_out(member_pass)


@router.get("/passes/{pass_id}")
async def get_pass(pass_id: PydanticObjectId, caller: Caller = Depends(get_caller)):
    return pass_out(await passes_service.get_pass(pass_id, caller.gym_id))


@router.post("/passes/{pass_id}/cancel")
async def cancel_pass(
    pass_id: PydanticObjectId,
    body: CancelPassRequest,
    caller: Caller = Depends(require_roles(*PASS_ADMIN_ROLES)),
):
    member_pass = await passes_service.cancel(pass_id, caller.gym_id, body.reason, caller.actor_id)
    return pass_out(member_pass)


@router.post("/passes/expire")
async def expire_passes(caller: Caller = Depends(require_roles(*ADJUST_ROLES))):
    """Run the expiry sweep for the caller's gym now."""
    count = await passes_service.expire_overdue(gym_id=caller.gym_id)
    return {"expired": count}
