"""Purchase completion events from billing: idempotent store-credit top-ups and pass grants."""

from decimal import Decimal
from typing import Literal

from beanie import PydanticObjectId

from gymcredit.core.audit import log_event
from gymcredit.core.exceptions import BadRequestError
from gymcredit.core.logging import get_logger
from gymcredit.models.bonus_transaction import BonusTxnType
from gymcredit.models.member import Member
from gymcredit.services import balances, passes

log = get_logger(__name__)

PurchaseKind = Literal["pass_purchase", "promo_bonus"]

_TXN_TYPES = {
    "pass_purchase": BonusTxnType.PASS_PURCHASE,
    "promo_bonus": BonusTxnType.PROMO_BONUS,
}


async def apply_purchase(
    member: Member,
    purchase_id: str,
    kind: PurchaseKind,
    amount: Decimal | None = None,
    product_id: PydanticObjectId | None = None,
    actor_id: str = "system",
) -> dict:
    """
    Credit store credit and/or grant the purchased pass. Safe to replay: the credit is keyed on
    purchase_id and the pass is issued once per purchase_id.
    """
    if kind not in _TXN_TYPES:
        raise BadRequestError(f"Invalid purchase kind: {kind}")
    if amount is None and product_id is None:
        raise BadRequestError("Purchase must carry an amount or a product")

    out: dict = {"purchase_id": purchase_id, "transaction_id": None, "balance": None, "pass_id": None}
    applied = False
    if amount is not None:
        entry, balance, credited = await balances.record_credit(
            member.id,
            member.gym_id,
            amount,
            _TXN_TYPES[kind],
            reference_type="purchase",
            reference_id=purchase_id,
            description=f"{kind.replace('_', ' ').capitalize()} {purchase_id}",
            created_by=actor_id,
            idempotency_key=f"purchase:{purchase_id}",
        )
        out["transaction_id"] = str(entry.id)
        out["balance"] = str(balance)
        applied = credited
    if product_id is not None:
        member_pass, issued = await passes.grant_from_product(
            member.id,
            member.gym_id,
            product_id,
            purchase_id=purchase_id,
            created_by=actor_id,
        )
        out["pass_id"] = str(member_pass.id)
        applied = applied or issued

    out["replayed"] = not applied
    if not applied:
        log.info("purchase_replayed", member_id=str(member.id), purchase_id=purchase_id)
        return out

    await log_event(
        member.gym_id,
        actor_id,
        "purchase_applied",
        "purchase",
        purchase_id,
        {"member_id": str(member.id), "kind": kind, "amount": str(amount) if amount is not None else None},
    )
    log.info("purchase_applied", member_id=str(member.id), purchase_id=purchase_id, kind=kind)
    return out
