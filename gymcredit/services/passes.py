"""Pass inventory: issuing, consuming, expiring and cancelling members' pack credits."""

from datetime import datetime, timedelta

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Inc, Or, Push, Set
from pymongo.errors import DuplicateKeyError

from gymcredit.core.audit import log_event
from gymcredit.core.config import get_settings
from gymcredit.core.exceptions import (
    BadRequestError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    PassExpiredError,
    PassNotActiveError,
    persistence_guard,
)
from gymcredit.core.logging import get_logger
from gymcredit.models.member_pass import MemberPass, PassStatus, purchase_issue_key
from gymcredit.models.pass_product import PassProduct

log = get_logger(__name__)


def soonest_expiring_first(passes: list[MemberPass]) -> list[MemberPass]:
    """Order passes by expires_at ascending, passes without expiry last, older first on ties."""
    return sorted(
        passes,
        key=lambda p: (p.expires_at is None, p.expires_at or datetime.max, p.created_at),
    )


@persistence_guard
async def get_pass(pass_id: PydanticObjectId, gym_id: str) -> MemberPass:
    member_pass = await MemberPass.get(pass_id)
    if not member_pass or member_pass.gym_id != gym_id:
        raise NotFoundError("Pass not found")
    return member_pass


async def _find_issued(member_id: PydanticObjectId, gym_id: str, issue_key: str) -> MemberPass | None:
    return await MemberPass.find_one(
        MemberPass.gym_id == gym_id,
        MemberPass.member_id == member_id,
        MemberPass.issue_key == issue_key,
    )


@persistence_guard
async def grant(
    member_id: PydanticObjectId,
    gym_id: str,
    product_id: PydanticObjectId,
    credit_count: int,
    validity_days: int | None = None,
    purchase_id: str | None = None,
    notes: str | None = None,
    created_by: str = "system",
) -> tuple[MemberPass, bool]:
    """
    Create an ACTIVE pass. Returns (pass, created).
    A purchase_id is issued at most once per member: repeats, concurrent ones included,
    return the existing pass with created=False.
    """
    if credit_count < 1:
        raise BadRequestError("Credits must be at least 1")
    if validity_days is not None and validity_days < 1:
        raise BadRequestError("Validity must be at least 1 day")
    issue_key = purchase_issue_key(purchase_id) if purchase_id else None
    if issue_key:
        existing = await _find_issued(member_id, gym_id, issue_key)
        if existing:
            return existing, False

    now = datetime.utcnow()
    member_pass = MemberPass(
        member_id=member_id,
        gym_id=gym_id,
        product_id=product_id,
        purchase_id=purchase_id,
        credits_total=credit_count,
        credits_remaining=credit_count,
        expires_at=now + timedelta(days=validity_days) if validity_days else None,
        notes=notes,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    if issue_key:
        member_pass.issue_key = issue_key
    try:
        await member_pass.insert()
    except DuplicateKeyError:
        # Concurrent delivery of the same purchase won the insert
        existing = await _find_issued(member_id, gym_id, member_pass.issue_key)
        if existing is None:
            raise InternalError("Pass missing after duplicate insert", details={"purchase_id": purchase_id})
        log.info("pass_issue_duplicate", purchase_id=purchase_id, pass_id=str(existing.id))
        return existing, False
    log.info(
        "pass_issued",
        pass_id=str(member_pass.id),
        member_id=str(member_id),
        product_id=str(product_id),
        credits=credit_count,
        expires_at=member_pass.expires_at.isoformat() if member_pass.expires_at else None,
    )
    return member_pass, True


async def issue(
    member_id: PydanticObjectId,
    gym_id: str,
    product_id: PydanticObjectId,
    credit_count: int,
    **kwargs,
) -> MemberPass:
    member_pass, _ = await grant(member_id, gym_id, product_id, credit_count, **kwargs)
    return member_pass


async def grant_from_product(
    member_id: PydanticObjectId,
    gym_id: str,
    product_id: PydanticObjectId,
    purchase_id: str | None = None,
    notes: str | None = None,
    created_by: str = "system",
) -> tuple[MemberPass, bool]:
    """Grant a pass from the gym's catalog item. Audited only when a pass is actually created."""
    product = await PassProduct.get(product_id)
    if not product or product.gym_id != gym_id:
        raise NotFoundError("Product not found")
    if not product.is_active:
        raise BadRequestError("Product is not available")
    member_pass, created = await grant(
        member_id,
        gym_id,
        product.id,
        credit_count=product.credit_count or 1,
        validity_days=product.validity_days,
        purchase_id=purchase_id,
        notes=notes,
        created_by=created_by,
    )
    if created:
        await log_event(
            gym_id,
            created_by,
            "pass_issued",
            "member_pass",
            str(member_pass.id),
            {"member_id": str(member_id), "product_id": str(product.id), "purchase_id": purchase_id},
        )
    return member_pass, created


async def issue_from_product(
    member_id: PydanticObjectId,
    gym_id: str,
    product_id: PydanticObjectId,
    **kwargs,
) -> MemberPass:
    member_pass, _ = await grant_from_product(member_id, gym_id, product_id, **kwargs)
    return member_pass


async def _mark_expired(member_pass: MemberPass) -> None:
    result = await MemberPass.find_one(
        MemberPass.id == member_pass.id,
        MemberPass.status == PassStatus.ACTIVE,
    ).update(Set({MemberPass.status: PassStatus.EXPIRED, MemberPass.updated_at: datetime.utcnow()}))
    if result and result.modified_count:
        member_pass.status = PassStatus.EXPIRED
        log.info("pass_expired", pass_id=str(member_pass.id), credits_remaining=member_pass.credits_remaining)


async def _diagnose(
    pass_id: PydanticObjectId,
    gym_id: str,
    credits: int,
    member_id: PydanticObjectId | None,
    event_key: str | None,
    now: datetime,
) -> MemberPass | None:
    """
    Explain why the conditional update matched nothing.
    Returns the pass if event_key already took its credit, None if the pass now looks consumable.
    """
    member_pass = await get_pass(pass_id, gym_id)
    if member_id is not None and member_pass.member_id != member_id:
        raise NotFoundError("Pass not found")
    if event_key is not None and event_key in member_pass.redeemed_events:
        return member_pass
    if member_pass.status == PassStatus.DEPLETED:
        # Empty pack, reported as insufficiency rather than a dead pass
        raise InsufficientCreditsError(str(pass_id), member_pass.credits_remaining, credits)
    if member_pass.status != PassStatus.ACTIVE:
        raise PassNotActiveError(str(pass_id), member_pass.status.value)
    if member_pass.is_expired(now):
        await _mark_expired(member_pass)
        raise PassExpiredError(str(pass_id))
    if member_pass.credits_remaining < credits:
        raise InsufficientCreditsError(str(pass_id), member_pass.credits_remaining, credits)
    return None


@persistence_guard
async def find_redeemed(member_id: PydanticObjectId, gym_id: str, event_key: str) -> MemberPass | None:
    """The pass an access event already took a credit from, if any."""
    return await MemberPass.find_one(
        MemberPass.member_id == member_id,
        MemberPass.gym_id == gym_id,
        MemberPass.redeemed_events == event_key,
    )


@persistence_guard
async def consume(
    pass_id: PydanticObjectId,
    gym_id: str,
    credits: int = 1,
    member_id: PydanticObjectId | None = None,
    event_key: str | None = None,
) -> MemberPass:
    """
    Take credits from an ACTIVE, unexpired pass in one conditional update.
    Raises NotFoundError, PassNotActiveError (EXPIRED/CANCELLED), PassExpiredError
    (after storing EXPIRED) or InsufficientCreditsError (also for DEPLETED passes).
    A pass reaching 0 becomes DEPLETED.
    With event_key the debit happens at most once per event: the key is recorded on the
    pass by the same update, and a repeat returns the pass without taking another credit.
    """
    if credits < 1:
        raise BadRequestError("Credits to consume must be at least 1")
    max_retries = get_settings().pass_max_retries

    for attempt in range(1, max_retries + 1):
        now = datetime.utcnow()
        filters = [
            MemberPass.id == pass_id,
            MemberPass.gym_id == gym_id,
            MemberPass.status == PassStatus.ACTIVE,
            MemberPass.credits_remaining >= credits,
            Or(MemberPass.expires_at == None, MemberPass.expires_at > now),  # noqa: E711
        ]
        changes = [Inc({MemberPass.credits_remaining: -credits}), Set({MemberPass.updated_at: now})]
        if member_id is not None:
            filters.append(MemberPass.member_id == member_id)
        if event_key is not None:
            filters.append(MemberPass.redeemed_events != event_key)
            changes.append(Push({MemberPass.redeemed_events: event_key}))
        updated = await MemberPass.find_one(*filters).update(*changes, response_type=UpdateResponse.NEW_DOCUMENT)
        if updated is not None:
            if updated.credits_remaining == 0:
                await _mark_depleted(pass_id)
                updated.status = PassStatus.DEPLETED
            log.info(
                "pass_consumed",
                pass_id=str(pass_id),
                credits=credits,
                credits_remaining=updated.credits_remaining,
                status=updated.status.value,
                event_key=event_key,
            )
            return updated
        already = await _diagnose(pass_id, gym_id, credits, member_id, event_key, now)
        if already is not None:
            log.info("pass_consume_replayed", pass_id=str(pass_id), event_key=event_key)
            return already
        log.info("pass_consume_retry", pass_id=str(pass_id), attempt=attempt)

    raise InternalError("Pass is busy, retry the request", details={"pass_id": str(pass_id)})


async def _mark_depleted(pass_id: PydanticObjectId) -> None:
    await MemberPass.find_one(
        MemberPass.id == pass_id,
        MemberPass.status == PassStatus.ACTIVE,
        MemberPass.credits_remaining == 0,
    ).update(Set({MemberPass.status: PassStatus.DEPLETED, MemberPass.updated_at: datetime.utcnow()}))


@persistence_guard
async def expire_overdue(gym_id: str | None = None, member_id: PydanticObjectId | None = None) -> int:
    """
    Move ACTIVE passes past expires_at to EXPIRED. Returns how many changed.
    Also settles ACTIVE passes left at 0 credits (a consume interrupted before its
    DEPLETED write) as DEPLETED; those are not counted.
    """
    now = datetime.utcnow()
    scope = []
    if gym_id is not None:
        scope.append(MemberPass.gym_id == gym_id)
    if member_id is not None:
        scope.append(MemberPass.member_id == member_id)

    stuck = await MemberPass.find(
        MemberPass.status == PassStatus.ACTIVE,
        MemberPass.credits_remaining <= 0,
        *scope,
    ).update_many(Set({MemberPass.status: PassStatus.DEPLETED, MemberPass.updated_at: now}))
    if stuck and stuck.modified_count:
        log.warning("passes_depleted_repaired", count=stuck.modified_count, gym_id=gym_id)

    result = await MemberPass.find(
        MemberPass.status == PassStatus.ACTIVE,
        MemberPass.expires_at != None,  # noqa: E711
        MemberPass.expires_at <= now,
        MemberPass.credits_remaining > 0,
        *scope,
    ).update_many(Set({MemberPass.status: PassStatus.EXPIRED, MemberPass.updated_at: now}))
    count = result.modified_count if result else 0
    if count:
        log.info("passes_expired", count=count, gym_id=gym_id)
    return count


@persistence_guard
async def list_active(member_id: PydanticObjectId, gym_id: str) -> list[MemberPass]:
    """ACTIVE passes with credits left, soonest-expiring first."""
    await expire_overdue(gym_id=gym_id, member_id=member_id)
    passes = await MemberPass.find(
        MemberPass.member_id == member_id,
        MemberPass.gym_id == gym_id,
        MemberPass.status == PassStatus.ACTIVE,
        MemberPass.credits_remaining > 0,
    ).to_list()
    return soonest_expiring_first(passes)


@persistence_guard
async def list_passes(member_id: PydanticObjectId, gym_id: str) -> list[MemberPass]:
    """All of the member's passes: active first, then newest first."""
    await expire_overdue(gym_id=gym_id, member_id=member_id)
    passes = (
        await MemberPass.find(MemberPass.member_id == member_id, MemberPass.gym_id == gym_id)
        .sort(-MemberPass.created_at)
        .to_list()
    )
    return sorted(passes, key=lambda p: p.status != PassStatus.ACTIVE)


@persistence_guard
async def cancel(pass_id: PydanticObjectId, gym_id: str, reason: str | None, actor_id: str) -> MemberPass:
    """Staff action. Already-cancelled passes are returned unchanged."""
    member_pass = await get_pass(pass_id, gym_id)
    if member_pass.status == PassStatus.CANCELLED:
        return member_pass
    notes = member_pass.notes
    if reason:
        notes = f"{notes}\nCancelled: {reason}" if notes else f"Cancelled: {reason}"
    previous_status = member_pass.status
    updated = await MemberPass.find_one(
        MemberPass.id == pass_id,
        MemberPass.status != PassStatus.CANCELLED,
    ).update(
        Set({MemberPass.status: PassStatus.CANCELLED, MemberPass.notes: notes, MemberPass.updated_at: datetime.utcnow()}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        return await get_pass(pass_id, gym_id)
    await log_event(
        gym_id,
        actor_id,
        "pass_cancelled",
        "member_pass",
        str(pass_id),
        {"previous_status": previous_status.value, "credits_remaining": updated.credits_remaining, "reason": reason},
    )
    log.info("pass_cancelled", pass_id=str(pass_id), previous_status=previous_status.value)
    return updated
