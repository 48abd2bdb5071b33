from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from gymcredit.deps import Caller, get_caller, get_member
from gymcredit.models.member import Member
from gymcredit.models.redemption import AccessEventType
from gymcredit.services import redemption as redemption_service

router = APIRouter()


class ResolveAccessRequest(BaseModel):
    event_type: AccessEventType = AccessEventType.CHECK_IN
    event_id: str | None = Field(default=None, max_length=200)
    member_pass_id: PydanticObjectId | None = None
    is_override: bool = False
    notes: str | None = Field(default=None, max_length=500)


@router.get("/{member_id}/access")
async def get_access_summary(member: Member = Depends(get_member)):
    """What would fund the member's next check-in."""
    return await redemption_service.access_summary(member)


@router.post("/{member_id}/access")
async def resolve_access(
    body: ResolveAccessRequest,
    member: Member = Depends(get_member),
    caller: Caller = Depends(get_caller),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Check-in or booking: fund it from subscription, pass, or store credit. Replays return the first result."""
    request = redemption_service.AccessRequest(
        member=member,
        event_type=body.event_type,
        member_pass_id=body.member_pass_id,
        is_override=body.is_override,
        actor_id=caller.actor_id,
        actor_role=caller.role,
        notes=body.notes,
    )
    event_id = body.event_id or (idempotency_key or "").strip()
    if event_id:
        request.event_id = event_id
    return await redemption_service.resolve_access(request)
