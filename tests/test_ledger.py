"""Ledger store: projection, history, replay and recovery."""

import asyncio
from decimal import Decimal

import pytest
from pymongo.errors import NetworkTimeout

from gymcredit.core.exceptions import InsufficientBalanceError, InternalError, NotFoundError
from gymcredit.models.bonus_balance import BonusBalance
from gymcredit.models.bonus_transaction import BonusBalanceTransaction, BonusTxnType
from gymcredit.services import balances, ledger

from .conftest import GYM_ID, OTHER_GYM_ID

pytestmark = pytest.mark.asyncio


async def test_read_without_record_is_zero(member):
    assert await ledger.read(member.id) == Decimal("0.00")
    assert await BonusBalance.find(BonusBalance.member_id == member.id).count() == 0


async def test_append_writes_row_and_projection(member):
    entry, balance_after = await ledger.append(
        member.id, GYM_ID, BonusTxnType.PROMO_BONUS, Decimal("25.50"), description="Welcome"
    )
    assert balance_after == Decimal("25.50")
    assert entry.sequence == 1
    assert entry.amount == Decimal("25.50")
    assert entry.balance_after == Decimal("25.50")
    assert await ledger.read(member.id) == Decimal("25.50")
    record = await BonusBalance.find_one(BonusBalance.member_id == member.id)
    assert record.version == 1


async def test_append_refuses_negative_result(member):
    await ledger.append(member.id, GYM_ID, BonusTxnType.PROMO_BONUS, Decimal("5.00"))
    with pytest.raises(InsufficientBalanceError):
        await ledger.append(member.id, GYM_ID, BonusTxnType.CLASS_ATTENDED, Decimal("-5.01"))
    assert await ledger.read(member.id) == Decimal("5.00")
    assert await BonusBalanceTransaction.find(BonusBalanceTransaction.member_id == member.id).count() == 1


async def test_idempotency_key_returns_prior_result(member):
    first, after_first = await ledger.append(
        member.id, GYM_ID, BonusTxnType.PASS_PURCHASE, Decimal("40.00"), idempotency_key="purchase:p-1"
    )
    await ledger.append(member.id, GYM_ID, BonusTxnType.PROMO_BONUS, Decimal("10.00"))
    again, after_again = await ledger.append(
        member.id, GYM_ID, BonusTxnType.PASS_PURCHASE, Decimal("40.00"), idempotency_key="purchase:p-1"
    )
    assert again.id == first.id
    assert after_again == after_first == Decimal("40.00")
    assert await ledger.read(member.id) == Decimal("50.00")


async def test_list_history_newest_first_and_paginated(member):
    for amount in ("1.00", "2.00", "3.00", "4.00", "5.00"):
        await ledger.append(member.id, GYM_ID, BonusTxnType.PROMO_BONUS, Decimal(amount))
    entries, total = await ledger.list_history(member.id, page=1, limit=2)
    assert total == 5
    assert [e.amount for e in entries] == [Decimal("5.00"), Decimal("4.00")]
    entries, _ = await ledger.list_history(member.id, page=3, limit=2)
    assert [e.amount for e in entries] == [Decimal("1.00")]


async def test_replay_matches_projection(member):
    await balances.credit(member.id, GYM_ID, "50.00", BonusTxnType.PROMO_BONUS)
    await balances.debit(member.id, GYM_ID, "12.25", BonusTxnType.CLASS_ATTENDED)
    await balances.credit(member.id, GYM_ID, "2.25", BonusTxnType.MANUAL_ADJUSTMENT)
    audit = await ledger.replay(member.id)
    assert audit.consistent
    assert audit.entries == 3
    assert audit.ledger_total == Decimal("40.00")
    assert audit.projected_balance == Decimal("40.00")


async def test_replay_flags_tampered_projection(member):
    await balances.credit(member.id, GYM_ID, "10.00", BonusTxnType.PROMO_BONUS)
    record = await BonusBalance.find_one(BonusBalance.member_id == member.id)
    record.current_balance = Decimal("99.00")
    await record.save()
    audit = await ledger.replay(member.id)
    assert not audit.consistent
    assert any("projection" in p for p in audit.problems)


async def test_projection_behind_log_is_rolled_forward(member):
    """A writer that died after inserting its row but before advancing the balance."""
    await balances.credit(member.id, GYM_ID, "30.00", BonusTxnType.PROMO_BONUS)
    await BonusBalanceTransaction(
        member_id=member.id,
        gym_id=GYM_ID,
        type=BonusTxnType.CLASS_ATTENDED,
        amount=Decimal("-10.00"),
        balance_after=Decimal("20.00"),
        sequence=2,
        idempotency_key="orphan",
    ).insert()

    assert await ledger.read(member.id) == Decimal("20.00")
    _, balance_after = await balances.debit(member.id, GYM_ID, "5.00", BonusTxnType.CLASS_ATTENDED)
    assert balance_after == Decimal("15.00")
    assert (await ledger.replay(member.id)).consistent


async def test_writer_losing_sequence_slot_rechecks_funds(member, monkeypatch):
    """Two debits of the full balance: the one that loses the slot must see the other's effect."""
    await balances.credit(member.id, GYM_ID, "50.00", BonusTxnType.PROMO_BONUS)
    real_get = ledger.get_or_create_balance
    calls = {"n": 0}

    async def racing_get(member_id, gym_id):
        record = await real_get(member_id, gym_id)
        calls["n"] += 1
        if calls["n"] == 1:
            # The rival debit commits its row after we read but before we insert
            await BonusBalanceTransaction(
                member_id=member_id,
                gym_id=gym_id,
                type=BonusTxnType.CLASS_ATTENDED,
                amount=Decimal("-50.00"),
                balance_after=Decimal("0.00"),
                sequence=record.version + 1,
                idempotency_key="rival",
            ).insert()
        return record

    monkeypatch.setattr(ledger, "get_or_create_balance", racing_get)
    with pytest.raises(InsufficientBalanceError):
        await balances.debit(member.id, GYM_ID, "50.00", BonusTxnType.CLASS_ATTENDED)

    monkeypatch.undo()
    assert await ledger.read(member.id) == Decimal("0.00")
    audit = await ledger.replay(member.id)
    assert audit.consistent
    assert audit.entries == 2


async def test_lazy_create_is_idempotent_under_concurrency(member):
    results = await asyncio.gather(*[balances.balance(member.id, GYM_ID) for _ in range(5)])
    assert results == [Decimal("0.00")] * 5
    assert await BonusBalance.find(BonusBalance.member_id == member.id).count() == 1


async def test_balance_record_is_tenant_scoped(member):
    await balances.credit(member.id, GYM_ID, "10.00", BonusTxnType.PROMO_BONUS)
    with pytest.raises(NotFoundError):
        await balances.balance(member.id, OTHER_GYM_ID)


async def test_datastore_failure_surfaces_as_internal_error(member, monkeypatch):
    await balances.credit(member.id, GYM_ID, "10.00", BonusTxnType.PROMO_BONUS)

    async def timed_out(self, *args, **kwargs):
        raise NetworkTimeout("timed out")

    monkeypatch.setattr(BonusBalanceTransaction, "insert", timed_out)
    with pytest.raises(InternalError) as exc_info:
        await balances.debit(member.id, GYM_ID, "5.00", BonusTxnType.CLASS_ATTENDED)
    assert exc_info.value.details["operation"] == "record"

    monkeypatch.undo()
    assert await ledger.read(member.id) == Decimal("10.00")


async def test_record_reports_whether_row_is_new(member):
    args = (member.id, GYM_ID, BonusTxnType.PASS_PURCHASE, Decimal("20.00"))
    first = await ledger.record(*args, idempotency_key="purchase:x")
    again = await ledger.record(*args, idempotency_key="purchase:x")
    assert first.created
    assert not again.created
    assert again.entry.id == first.entry.id
