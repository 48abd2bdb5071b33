from decimal import Decimal

from beanie import PydanticObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gymcredit.deps import Caller, get_caller
from gymcredit.services import members as members_service
from gymcredit.services import purchases as purchases_service
from gymcredit.services.purchases import PurchaseKind

router = APIRouter()


class PurchaseEvent(BaseModel):
    member_id: PydanticObjectId
    purchase_id: str = Field(..., min_length=1, max_length=200)
    kind: PurchaseKind = "pass_purchase"
    amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    product_id: PydanticObjectId | None = None


@router.post("/purchases")
async def purchase_completed(body: PurchaseEvent, caller: Caller = Depends(get_caller)):
    """Billing reports a completed purchase (idempotent on purchase_id)."""
    member = await members_service.get_member(caller.gym_id, body.member_id)
    return await purchases_service.apply_purchase(
        member,
        body.purchase_id,
        body.kind,
        amount=body.amount,
        product_id=body.product_id,
        actor_id=caller.actor_id,
    )
