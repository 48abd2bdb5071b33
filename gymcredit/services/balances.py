"""Store-credit balance operations: the monetary-safety boundary over the ledger."""

from decimal import Decimal
from typing import Literal

from beanie import PydanticObjectId

from gymcredit.core.audit import log_event
from gymcredit.core.exceptions import BadRequestError
from gymcredit.core.logging import get_logger
from gymcredit.core.money import positive_money
from gymcredit.models.bonus_transaction import BonusBalanceTransaction, BonusTxnType
from gymcredit.services import ledger

log = get_logger(__name__)

CREDIT_TYPES = (BonusTxnType.PASS_PURCHASE, BonusTxnType.PROMO_BONUS, BonusTxnType.MANUAL_ADJUSTMENT)
DEBIT_TYPES = (BonusTxnType.CLASS_ATTENDED, BonusTxnType.PURCHASE_APPLIED, BonusTxnType.MANUAL_ADJUSTMENT)


def reference_key(reference_type: str | None, reference_id: str | None) -> str | None:
    """Idempotency key for a debit tied to a business event; None when the event is anonymous."""
    if reference_type and reference_id:
        return f"{reference_type}:{reference_id}"
    return None


async def balance(member_id: PydanticObjectId, gym_id: str) -> Decimal:
    """Return current balance, creating the record at 0 if absent."""
    record = await ledger.get_or_create_balance(member_id, gym_id)
    return record.current_balance


async def record_credit(
    member_id: PydanticObjectId,
    gym_id: str,
    amount: Decimal | int | str,
    txn_type: BonusTxnType,
    reference_type: str | None = None,
    reference_id: str | None = None,
    description: str = "",
    created_by: str = "system",
    idempotency_key: str | None = None,
) -> ledger.LedgerWrite:
    """Add store credit. No sufficiency check. `created` is False for a repeated idempotency_key."""
    if txn_type not in CREDIT_TYPES:
        raise BadRequestError(f"Invalid credit type: {txn_type.value}")
    amount = positive_money(amount)
    return await ledger.record(
        member_id,
        gym_id,
        txn_type,
        amount,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        created_by=created_by,
        idempotency_key=idempotency_key,
    )


async def credit(
    member_id: PydanticObjectId,
    gym_id: str,
    amount: Decimal | int | str,
    txn_type: BonusTxnType,
    **kwargs,
) -> tuple[BonusBalanceTransaction, Decimal]:
    entry, new_balance, _ = await record_credit(member_id, gym_id, amount, txn_type, **kwargs)
    return entry, new_balance


async def debit(
    member_id: PydanticObjectId,
    gym_id: str,
    amount: Decimal | int | str,
    txn_type: BonusTxnType,
    reference_type: str | None = None,
    reference_id: str | None = None,
    description: str = "",
    created_by: str = "system",
) -> tuple[BonusBalanceTransaction, Decimal]:
    """
    Remove store credit; stored as a negative amount.
    Raises InsufficientBalanceError when amount exceeds the balance.
    A debit for an already-recorded (reference_type, reference_id) returns the original transaction.
    """
    if txn_type not in DEBIT_TYPES:
        raise BadRequestError(f"Invalid debit type: {txn_type.value}")
    amount = positive_money(amount)
    return await ledger.append(
        member_id,
        gym_id,
        txn_type,
        -amount,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        created_by=created_by,
        idempotency_key=reference_key(reference_type, reference_id),
    )


async def adjust(
    member_id: PydanticObjectId,
    gym_id: str,
    amount: Decimal | int | str,
    direction: Literal["add", "remove"],
    reason: str,
    actor_id: str,
) -> tuple[BonusBalanceTransaction, Decimal]:
    """Staff adjustment. `remove` is a debit and fails the same way."""
    reason = (reason or "").strip()
    if not reason:
        raise BadRequestError("Adjustment reason is required")
    if direction == "add":
        entry, new_balance = await credit(
            member_id, gym_id, amount, BonusTxnType.MANUAL_ADJUSTMENT,
            reference_type="adjustment", description=reason, created_by=actor_id,
        )
    elif direction == "remove":
        entry, new_balance = await debit(
            member_id, gym_id, amount, BonusTxnType.MANUAL_ADJUSTMENT,
            reference_type="adjustment", description=reason, created_by=actor_id,
        )
    else:
        raise BadRequestError(f"Invalid direction: {direction}")
    await log_event(
        gym_id,
        actor_id,
        "bonus_balance_adjusted",
        "member",
        str(member_id),
        {"direction": direction, "amount": str(entry.amount), "balance_after": str(new_balance), "reason": reason},
    )
    log.info("bonus_balance_adjusted", member_id=str(member_id), direction=direction, amount=str(entry.amount))
    return entry, new_balance
