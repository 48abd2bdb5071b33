"""Store-credit ledger: append-only transactions plus the per-member balance projection.

A writer reads the projection at version v, claims slot v+1 by inserting the
transaction (unique on member_id + sequence), then advances the projection with
a compare-and-set on version == v. Only one writer can own a slot, so the
read-decide-write of a debit is linearizable per member. If a writer dies
between the two writes, the projection lags the log by one entry and the next
reader rolls it forward from the ledger.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple

from beanie import PydanticObjectId
from beanie.operators import Set
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from gymcredit.core.config import get_settings
from gymcredit.core.exceptions import (
    BadRequestError,
    InsufficientBalanceError,
    InternalError,
    NotFoundError,
    persistence_guard,
)
from gymcredit.core.logging import get_logger
from gymcredit.core.money import ZERO, to_money
from gymcredit.core.pagination import paginate
from gymcredit.models.bonus_balance import BonusBalance
from gymcredit.models.bonus_transaction import BonusBalanceTransaction, BonusTxnType

log = get_logger(__name__)


class LedgerWrite(NamedTuple):
    entry: BonusBalanceTransaction
    balance_after: Decimal
    created: bool  # False when an idempotency key matched an earlier row


class LedgerAudit(BaseModel):
    """Result of replaying a member's ledger against the stored projection."""
    member_id: str
    entries: int
    ledger_total: Decimal
    projected_balance: Decimal | None = None
    projected_version: int = 0
    consistent: bool
    problems: list[str] = Field(default_factory=list)


async def _advance(balance_id: PydanticObjectId, expected_version: int, entry: BonusBalanceTransaction) -> bool:
    """Move the projection from expected_version to entry.sequence. False if someone already did."""
    result = await BonusBalance.find_one(
        BonusBalance.id == balance_id,
        BonusBalance.version == expected_version,
    ).update(
        Set(
            {
                BonusBalance.current_balance: entry.balance_after,
                BonusBalance.version: entry.sequence,
                BonusBalance.updated_at: datetime.utcnow(),
            }
        )
    )
    return bool(result and result.modified_count)


async def _catch_up(balance: BonusBalance) -> BonusBalance:
    """Apply ledger entries written after the projection's version."""
    while True:
        pending = await BonusBalanceTransaction.find_one(
            BonusBalanceTransaction.member_id == balance.member_id,
            BonusBalanceTransaction.sequence == balance.version + 1,
        )
        if pending is None:
            return balance
        log.warning(
            "ledger_projection_behind",
            member_id=str(balance.member_id),
            version=balance.version,
            pending_sequence=pending.sequence,
        )
        await _advance(balance.id, balance.version, pending)
        refreshed = await BonusBalance.get(balance.id)
        if refreshed is None:
            raise InternalError("Balance record vanished during catch-up")
        balance = refreshed


@persistence_guard
async def get_or_create_balance(member_id: PydanticObjectId, gym_id: str) -> BonusBalance:
    """Return the member's projection, creating it at 0 on first reference."""
    balance = await BonusBalance.find_one(BonusBalance.member_id == member_id)
    if balance is None:
        try:
            balance = BonusBalance(member_id=member_id, gym_id=gym_id)
            await balance.insert()
            log.info("bonus_balance_created", member_id=str(member_id))
        except DuplicateKeyError:
            # Concurrent first reference won the insert
            balance = await BonusBalance.find_one(BonusBalance.member_id == member_id)
            if balance is None:
                raise InternalError("Balance record missing after duplicate insert")
    if balance.gym_id != gym_id:
        raise NotFoundError("Member not found")
    return await _catch_up(balance)


@persistence_guard
async def read(member_id: PydanticObjectId) -> Decimal:
    """Current committed balance (0 if the member has no record yet)."""
    balance = await BonusBalance.find_one(BonusBalance.member_id == member_id)
    if balance is None:
        return ZERO
    balance = await _catch_up(balance)
    return balance.current_balance


@persistence_guard
async def find_by_idempotency_key(member_id: PydanticObjectId, key: str) -> BonusBalanceTransaction | None:
    return await BonusBalanceTransaction.find_one(
        BonusBalanceTransaction.member_id == member_id,
        BonusBalanceTransaction.idempotency_key == key,
    )


@persistence_guard
async def record(
    member_id: PydanticObjectId,
    gym_id: str,
    txn_type: BonusTxnType,
    amount: Decimal,
    *,
    reference_type: str | None = None,
    reference_id: str | None = None,
    description: str = "",
    created_by: str = "system",
    idempotency_key: str | None = None,
) -> LedgerWrite:
    """
    Record a signed store-credit change and advance the balance.
    Raises InsufficientBalanceError if the result would be negative; nothing is written.
    With an idempotency_key, a repeated call returns the original transaction and its balance_after.
    """
    amount = to_money(amount)
    if amount == ZERO:
        raise BadRequestError("Ledger amount must be non-zero")
    key = idempotency_key or f"txn_{uuid.uuid4().hex}"
    max_retries = get_settings().ledger_max_retries

    for attempt in range(1, max_retries + 1):
        if idempotency_key:
            prior = await find_by_idempotency_key(member_id, key)
            if prior is not None:
                log.info(
                    "ledger_append_duplicate",
                    member_id=str(member_id),
                    idempotency_key=key,
                    transaction_id=str(prior.id),
                )
                return LedgerWrite(prior, prior.balance_after, False)

        balance = await get_or_create_balance(member_id, gym_id)
        balance_after = balance.current_balance + amount
        if balance_after < ZERO:
            raise InsufficientBalanceError(available=balance.current_balance, requested=-amount)

        entry = BonusBalanceTransaction(
            member_id=member_id,
            gym_id=gym_id,
            type=txn_type,
            amount=amount,
            balance_after=balance_after,
            sequence=balance.version + 1,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=key,
            description=description,
            created_by=created_by,
        )
        try:
            await entry.insert()
        except DuplicateKeyError:
            # Another writer took this sequence slot (or this key); re-read and decide again
            log.info("ledger_append_conflict", member_id=str(member_id), sequence=entry.sequence, attempt=attempt)
            continue

        await _advance(balance.id, balance.version, entry)
        log.info(
            "ledger_appended",
            member_id=str(member_id),
            type=txn_type.value,
            amount=str(amount),
            balance_after=str(balance_after),
            sequence=entry.sequence,
            transaction_id=str(entry.id),
        )
        return LedgerWrite(entry, balance_after, True)

    log.error("ledger_append_exhausted", member_id=str(member_id), attempts=max_retries)
    raise InternalError("Store-credit ledger is busy, retry the request", details={"member_id": str(member_id)})


async def append(
    member_id: PydanticObjectId,
    gym_id: str,
    txn_type: BonusTxnType,
    amount: Decimal,
    **kwargs,
) -> tuple[BonusBalanceTransaction, Decimal]:
    """record() without the created flag. Returns (transaction, balance_after)."""
    entry, balance_after, _ = await record(member_id, gym_id, txn_type, amount, **kwargs)
    return entry, balance_after


@persistence_guard
async def list_history(
    member_id: PydanticObjectId,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[BonusBalanceTransaction], int]:
    """Newest-first page of the member's transactions and the total count."""
    page, limit, skip = paginate(page, limit)
    total = await BonusBalanceTransaction.find(BonusBalanceTransaction.member_id == member_id).count()
    entries = (
        await BonusBalanceTransaction.find(BonusBalanceTransaction.member_id == member_id)
        .sort(-BonusBalanceTransaction.sequence)
        .skip(skip)
        .limit(limit)
        .to_list()
    )
    return entries, total


@persistence_guard
async def replay(member_id: PydanticObjectId) -> LedgerAudit:
    """Rebuild the balance from the log and compare it with the stored projection."""
    problems: list[str] = []
    running = ZERO
    count = 0
    async for entry in BonusBalanceTransaction.find(
        BonusBalanceTransaction.member_id == member_id
    ).sort(+BonusBalanceTransaction.sequence):
        count += 1
        if entry.sequence != count:
            problems.append(f"sequence gap: expected {count}, found {entry.sequence}")
            count = entry.sequence
        running += entry.amount
        if entry.balance_after != running:
            problems.append(
                f"sequence {entry.sequence}: balance_after {entry.balance_after} != running total {running}"
            )
        if running < ZERO:
            problems.append(f"sequence {entry.sequence}: negative running total {running}")

    balance = await BonusBalance.find_one(BonusBalance.member_id == member_id)
    if balance is None:
        if count:
            problems.append("ledger has entries but no balance record")
        projected, version = None, 0
    else:
        projected, version = balance.current_balance, balance.version
        if projected != running:
            problems.append(f"projection {projected} != ledger total {running}")
        if version != count:
            problems.append(f"projection version {version} != last sequence {count}")

    return LedgerAudit(
        member_id=str(member_id),
        entries=count,
        ledger_total=running,
        projected_balance=projected,
        projected_version=version,
        consistent=not problems,
        problems=problems,
    )
