"""Pass inventory: issue, consume, expire, cancel."""

import asyncio
from datetime import datetime, timedelta

import pytest
from beanie import PydanticObjectId
from pymongo.errors import AutoReconnect

from gymcredit.core.exceptions import (
    BadRequestError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    PassExpiredError,
    PassNotActiveError,
)
from gymcredit.models.audit_log import AuditLog
from gymcredit.models.member_pass import MemberPass, PassStatus
from gymcredit.models.pass_product import PassProduct
from gymcredit.services import passes

from .conftest import GYM_ID, OTHER_GYM_ID

pytestmark = pytest.mark.asyncio


async def _pass(member, credits_remaining=5, credits_total=5, expires_at=None, status=PassStatus.ACTIVE, created_at=None):
    p = MemberPass(
        member_id=member.id,
        gym_id=member.gym_id,
        product_id=PydanticObjectId(),
        status=status,
        credits_total=credits_total,
        credits_remaining=credits_remaining,
        expires_at=expires_at,
        created_at=created_at or datetime.utcnow(),
    )
    await p.insert()
    return p


async def test_issue_sets_expiry_and_credits(member):
    before = datetime.utcnow()
    p = await passes.issue(member.id, GYM_ID, PydanticObjectId(), credit_count=10, validity_days=30)
    assert p.status == PassStatus.ACTIVE
    assert p.credits_total == p.credits_remaining == 10
    assert before + timedelta(days=30) <= p.expires_at <= datetime.utcnow() + timedelta(days=30)


async def test_issue_without_validity_never_expires(member):
    p = await passes.issue(member.id, GYM_ID, PydanticObjectId(), credit_count=1)
    assert p.expires_at is None


@pytest.mark.parametrize("credit_count,validity_days", [(0, None), (5, 0)])
async def test_issue_rejects_bad_input(member, credit_count, validity_days):
    with pytest.raises(BadRequestError):
        await passes.issue(member.id, GYM_ID, PydanticObjectId(), credit_count=credit_count, validity_days=validity_days)


async def test_ten_credit_pack_depletes_then_refuses(member):
    p = await passes.issue(member.id, GYM_ID, PydanticObjectId(), credit_count=10, validity_days=30)
    for i in range(10):
        updated = await passes.consume(p.id, GYM_ID)
        assert updated.credits_remaining == 9 - i
        assert 0 <= updated.credits_remaining <= updated.credits_total
    assert updated.status == PassStatus.DEPLETED
    stored = await MemberPass.get(p.id)
    assert stored.status == PassStatus.DEPLETED
    assert stored.credits_remaining == 0
    with pytest.raises(InsufficientCreditsError):
        await passes.consume(p.id, GYM_ID)


async def test_last_credit_transitions_to_depleted(member):
    p = await _pass(member, credits_remaining=1)
    updated = await passes.consume(p.id, GYM_ID)
    assert updated.status == PassStatus.DEPLETED
    assert updated.credits_remaining == 0


async def test_consume_more_than_remaining(member):
    p = await _pass(member, credits_remaining=2)
    with pytest.raises(InsufficientCreditsError) as exc_info:
        await passes.consume(p.id, GYM_ID, credits=3)
    assert exc_info.value.code == "INSUFFICIENT_CREDITS"
    assert (await MemberPass.get(p.id)).credits_remaining == 2


async def test_expired_pass_is_marked_on_consume(member):
    p = await _pass(member, credits_remaining=5, expires_at=datetime.utcnow() - timedelta(days=1))
    with pytest.raises(PassExpiredError):
        await passes.consume(p.id, GYM_ID)
    stored = await MemberPass.get(p.id)
    assert stored.status == PassStatus.EXPIRED
    assert stored.credits_remaining == 5


@pytest.mark.parametrize("status", [PassStatus.CANCELLED, PassStatus.EXPIRED])
async def test_terminal_pass_not_active(member, status):
    p = await _pass(member, status=status)
    with pytest.raises(PassNotActiveError):
        await passes.consume(p.id, GYM_ID)


async def test_consume_is_tenant_and_owner_scoped(member, other_member):
    p = await _pass(member)
    with pytest.raises(NotFoundError):
        await passes.consume(p.id, OTHER_GYM_ID)
    with pytest.raises(NotFoundError):
        await passes.consume(p.id, GYM_ID, member_id=other_member.id)
    assert (await MemberPass.get(p.id)).credits_remaining == 5


async def test_list_active_orders_soonest_expiring_first(member):
    now = datetime.utcnow()
    never = await _pass(member, created_at=now - timedelta(days=10))
    later = await _pass(member, expires_at=now + timedelta(days=20))
    sooner = await _pass(member, expires_at=now + timedelta(days=2))
    await _pass(member, credits_remaining=0, status=PassStatus.DEPLETED)
    expired = await _pass(member, expires_at=now - timedelta(hours=1))

    active = await passes.list_active(member.id, GYM_ID)
    assert [p.id for p in active] == [sooner.id, later.id, never.id]
    assert (await MemberPass.get(expired.id)).status == PassStatus.EXPIRED


async def test_list_passes_includes_history_active_first(member):
    old_depleted = await _pass(member, credits_remaining=0, status=PassStatus.DEPLETED)
    active = await _pass(member)
    items = await passes.list_passes(member.id, GYM_ID)
    assert [p.id for p in items] == [active.id, old_depleted.id]
    assert await passes.list_passes(member.id, OTHER_GYM_ID) == []


async def test_expire_overdue_sweep(member, other_member):
    past = datetime.utcnow() - timedelta(minutes=5)
    await _pass(member, expires_at=past)
    await _pass(member, expires_at=datetime.utcnow() + timedelta(days=1))
    await _pass(other_member, expires_at=past)
    assert await passes.expire_overdue(gym_id=GYM_ID) == 1
    assert await passes.expire_overdue() == 1
    assert await passes.expire_overdue() == 0


async def test_cancel_from_any_state_and_idempotent(member):
    p = await _pass(member, credits_remaining=0, status=PassStatus.DEPLETED)
    cancelled = await passes.cancel(p.id, GYM_ID, "Refunded at front desk", "staff-1")
    assert cancelled.status == PassStatus.CANCELLED
    assert "Cancelled: Refunded at front desk" in cancelled.notes
    again = await passes.cancel(p.id, GYM_ID, "second click", "staff-1")
    assert again.status == PassStatus.CANCELLED
    assert "second click" not in (again.notes or "")
    assert await AuditLog.find(AuditLog.event_type == "pass_cancelled").count() == 1


async def test_issue_from_product(member, product):
    p = await passes.issue_from_product(member.id, GYM_ID, product.id, notes="Front desk sale", created_by="staff-1")
    assert p.credits_total == 10
    assert p.expires_at is not None
    assert p.product_id == product.id
    assert await AuditLog.find(AuditLog.event_type == "pass_issued").count() == 1


async def test_issue_from_product_is_idempotent_per_purchase(member, product):
    first = await passes.issue_from_product(member.id, GYM_ID, product.id, purchase_id="pur-1")
    second = await passes.issue_from_product(member.id, GYM_ID, product.id, purchase_id="pur-1")
    assert first.id == second.id
    assert await MemberPass.find(MemberPass.member_id == member.id).count() == 1


async def test_drop_in_product_defaults_to_one_credit(member):
    product = PassProduct(gym_id=GYM_ID, name="Drop-in", type="DROP_IN")
    await product.insert()
    p = await passes.issue_from_product(member.id, GYM_ID, product.id)
    assert p.credits_total == 1
    assert p.expires_at is None


async def test_issue_from_other_gyms_product_not_found(member):
    product = PassProduct(gym_id=OTHER_GYM_ID, name="Elsewhere pack", credit_count=5)
    await product.insert()
    with pytest.raises(NotFoundError):
        await passes.issue_from_product(member.id, GYM_ID, product.id)


async def test_inactive_product_rejected(member):
    product = PassProduct(gym_id=GYM_ID, name="Retired pack", credit_count=5, is_active=False)
    await product.insert()
    with pytest.raises(BadRequestError):
        await passes.issue_from_product(member.id, GYM_ID, product.id)


async def test_same_purchase_delivered_concurrently_issues_one_pass(member, product):
    results = await asyncio.gather(
        passes.issue_from_product(member.id, GYM_ID, product.id, purchase_id="order-1"),
        passes.issue_from_product(member.id, GYM_ID, product.id, purchase_id="order-1"),
    )
    assert results[0].id == results[1].id
    assert await MemberPass.find(MemberPass.purchase_id == "order-1").count() == 1
    assert await AuditLog.find(AuditLog.event_type == "pass_issued").count() == 1


async def test_duplicate_purchase_insert_returns_existing_pass(member, product, monkeypatch):
    """The lookup misses a pass the other delivery just wrote; the unique key still holds."""
    first, created = await passes.grant_from_product(member.id, GYM_ID, product.id, purchase_id="order-2")
    assert created

    real_find = passes._find_issued
    calls = {"n": 0}

    async def stale_find(*args):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_find(*args)

    monkeypatch.setattr(passes, "_find_issued", stale_find)
    second, created = await passes.grant_from_product(member.id, GYM_ID, product.id, purchase_id="order-2")
    assert not created
    assert second.id == first.id
    assert await MemberPass.find(MemberPass.member_id == member.id).count() == 1
    assert await AuditLog.find(AuditLog.event_type == "pass_issued").count() == 1


async def test_two_check_ins_race_for_last_credit(member):
    p = await _pass(member, credits_remaining=1)
    results = await asyncio.gather(
        passes.consume(p.id, GYM_ID, event_key="check_in:a"),
        passes.consume(p.id, GYM_ID, event_key="check_in:b"),
        return_exceptions=True,
    )
    won = [r for r in results if isinstance(r, MemberPass)]
    lost = [r for r in results if isinstance(r, Exception)]
    assert len(won) == 1
    assert len(lost) == 1 and isinstance(lost[0], InsufficientCreditsError)
    stored = await MemberPass.get(p.id)
    assert stored.credits_remaining == 0
    assert stored.status == PassStatus.DEPLETED


async def test_same_event_takes_one_credit(member):
    p = await _pass(member, credits_remaining=5)
    await passes.consume(p.id, GYM_ID, event_key="check_in:e1")
    again = await passes.consume(p.id, GYM_ID, event_key="check_in:e1")
    assert again.credits_remaining == 4
    stored = await MemberPass.get(p.id)
    assert stored.credits_remaining == 4
    assert stored.redeemed_events == ["check_in:e1"]


async def test_same_event_on_drained_pass_is_not_an_error(member):
    p = await _pass(member, credits_remaining=1)
    await passes.consume(p.id, GYM_ID, event_key="booking:b7")
    again = await passes.consume(p.id, GYM_ID, event_key="booking:b7")
    assert again.status == PassStatus.DEPLETED
    with pytest.raises(InsufficientCreditsError):
        await passes.consume(p.id, GYM_ID, event_key="booking:b8")


async def test_sweep_settles_active_pass_left_at_zero(member):
    stuck = await _pass(member, credits_remaining=0, status=PassStatus.ACTIVE)
    assert await passes.expire_overdue(gym_id=GYM_ID) == 0
    assert (await MemberPass.get(stuck.id)).status == PassStatus.DEPLETED


async def test_datastore_failure_surfaces_as_internal_error(member, monkeypatch):
    def unreachable(*args, **kwargs):
        raise AutoReconnect("primary stepped down")

    monkeypatch.setattr(MemberPass, "find", unreachable)
    with pytest.raises(InternalError) as exc_info:
        await passes.expire_overdue(gym_id=GYM_ID)
    assert exc_info.value.details["retryable"] is True
    assert exc_info.value.details["operation"] == "expire_overdue"
