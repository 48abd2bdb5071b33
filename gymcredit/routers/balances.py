from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from gymcredit.deps import ADJUST_ROLES, Caller, get_member, require_roles
from gymcredit.models.bonus_transaction import BonusBalanceTransaction
from gymcredit.models.member import Member
from gymcredit.services import balances as balances_service
from gymcredit.services import ledger as ledger_service

router = APIRouter()


class AdjustBalanceRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    direction: Literal["add", "remove"]
    reason: str = Field(..., min_length=10, max_length=500)


def _txn_out(e: BonusBalanceTransaction) -> dict:
    return {
        "id": str(e.id),
        "type": e.type.value,
        "amount": str(e.amount),
        "balance_after": str(e.balance_after),
        "sequence": e.sequence,
        "description": e.description,
        "reference_type": e.reference_type,
        "reference_id": e.reference_id,
        "created_by": e.created_by,
        "created_at": e.created_at.isoformat(),
    }


@router.get("/{member_id}/bonus-balance")
async def get_balance(member: Member = Depends(get_member)):
    """Current store credit (record created at 0 on first read)."""
    balance = await balances_service.balance(member.id, member.gym_id)
    return {"member_id": str(member.id), "current_balance": str(balance)}


@router.post("/{member_id}/bonus-balance/adjust")
async def adjust_balance(
    body: AdjustBalanceRequest,
    member: Member = Depends(get_member),
    caller: Caller = Depends(require_roles(*ADJUST_ROLES)),
):
    """Manual staff adjustment; remove fails with INSUFFICIENT_BALANCE past zero."""
    entry, new_balance = await balances_service.adjust(
        member.id, member.gym_id, body.amount, body.direction, body.reason, caller.actor_id
    )
    return {"new_balance": str(new_balance), "transaction_id": str(entry.id)}


@router.get("/{member_id}/bonus-balance/transactions")
async def list_transactions(
    member: Member = Depends(get_member),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """Store-credit ledger, newest first."""
    entries, total = await ledger_service.list_history(member.id, page, limit)
    return {
        "transactions": [_txn_out(e) for e in entries],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/{member_id}/bonus-balance/audit")
async def audit_balance(
    member: Member = Depends(get_member),
    caller: Caller = Depends(require_roles(*ADJUST_ROLES)),
):
    """Replay the ledger and compare with the stored balance."""
    return await ledger_service.replay(member.id)
