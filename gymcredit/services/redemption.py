"""
Redemption: decide which funding source pays for one access event and take exactly one debit.

Sources are tried in order, first grant wins:
subscription -> selected pass -> soonest-expiring pass -> store credit.
A pass the caller selected explicitly is authoritative: its failure is surfaced and
no other source is tried. When nothing funds the event, an authorized staff override
grants access without a debit; otherwise AccessDeniedError.

Each event is claimed in `redemptions` (unique per gym/event type/event id) before
funding, so replaying an event returns the original grant instead of debiting again.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal

from beanie import PydanticObjectId
from beanie.operators import Set
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from gymcredit.core.audit import log_event
from gymcredit.core.config import get_settings
from gymcredit.core.exceptions import (
    AccessDeniedError,
    AppError,
    ConflictError,
    InsufficientBalanceError,
    InsufficientCreditsError,
    InternalError,
    PassExpiredError,
    PassNotActiveError,
    persistence_guard,
)
from gymcredit.core.logging import get_logger
from gymcredit.core.money import ZERO, to_money
from gymcredit.models.bonus_transaction import BonusTxnType
from gymcredit.models.member import Member, MemberStatus
from gymcredit.models.member_pass import MemberPass
from gymcredit.models.redemption import AccessEventType, GrantedVia, Redemption, RedemptionStatus
from gymcredit.services import balances, ledger, members, passes

log = get_logger(__name__)

PASS_FAILURES = (PassNotActiveError, PassExpiredError, InsufficientCreditsError)


def _default_cost() -> Decimal:
    return get_settings().access_credit_cost


@dataclass
class AccessRequest:
    member: Member
    event_type: AccessEventType = AccessEventType.CHECK_IN
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    member_pass_id: PydanticObjectId | None = None
    is_override: bool = False
    actor_id: str = "system"
    actor_role: str | None = None
    notes: str | None = None
    cost: Decimal = field(default_factory=_default_cost)

    @property
    def gym_id(self) -> str:
        return self.member.gym_id

    @property
    def event_key(self) -> str:
        """Same shape as the ledger's reference key for the store-credit debit."""
        return balances.reference_key(self.event_type.value, self.event_id)


class AccessGrant(BaseModel):
    granted_via: GrantedVia
    debited: bool
    member_pass_id: str | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    credits_used: int = 0
    credits_remaining: int | None = None
    balance_after: Decimal | None = None
    redemption_id: str | None = None
    replayed: bool = False


class FundingSource(ABC):
    """One way of paying for an access event."""

    granted_via: GrantedVia

    @abstractmethod
    async def fund(self, request: AccessRequest) -> AccessGrant | None:
        """Commit the debit and return a grant, or None to let the next source try."""


class SubscriptionFunding(FundingSource):
    granted_via = GrantedVia.SUBSCRIPTION

    async def fund(self, request: AccessRequest) -> AccessGrant | None:
        subscription = await members.get_access_subscription(request.member)
        if subscription is None or subscription.is_credit_metered:
            return None
        return AccessGrant(granted_via=self.granted_via, debited=False)


def _pass_grant(member_pass: MemberPass) -> AccessGrant:
    return AccessGrant(
        granted_via=GrantedVia.PASS,
        debited=True,
        member_pass_id=str(member_pass.id),
        credits_used=1,
        credits_remaining=member_pass.credits_remaining,
    )


class SelectedPassFunding(FundingSource):
    """The pass the caller named. Failures propagate."""

    granted_via = GrantedVia.PASS

    async def fund(self, request: AccessRequest) -> AccessGrant | None:
        if request.member_pass_id is None:
            return None
        member_pass = await passes.consume(
            request.member_pass_id,
            request.gym_id,
            credits=1,
            member_id=request.member.id,
            event_key=request.event_key,
        )
        return _pass_grant(member_pass)


class SoonestExpiringPassFunding(FundingSource):
    granted_via = GrantedVia.PASS

    async def fund(self, request: AccessRequest) -> AccessGrant | None:
        if request.member_pass_id is not None:
            return None
        # An earlier attempt at this event may have drained a pass that is no longer listed
        prior = await passes.find_redeemed(request.member.id, request.gym_id, request.event_key)
        if prior is not None:
            log.info("pass_redemption_replayed", pass_id=str(prior.id), event_id=request.event_id)
            return _pass_grant(prior)
        for candidate in await passes.list_active(request.member.id, request.gym_id):
            try:
                member_pass = await passes.consume(
                    candidate.id,
                    request.gym_id,
                    credits=1,
                    member_id=request.member.id,
                    event_key=request.event_key,
                )
            except PASS_FAILURES as e:
                # Drained or expired since listing
                log.info("pass_candidate_skipped", pass_id=str(candidate.id), code=e.code)
                continue
            return _pass_grant(member_pass)
        return None


class StoreCreditFunding(FundingSource):
    granted_via = GrantedVia.BALANCE

    async def fund(self, request: AccessRequest) -> AccessGrant | None:
        if request.member_pass_id is not None:
            return None
        cost = to_money(request.cost)
        if cost <= ZERO:
            return None
        try:
            entry, balance_after = await balances.debit(
                request.member.id,
                request.gym_id,
                cost,
                BonusTxnType.CLASS_ATTENDED,
                reference_type=request.event_type.value,
                reference_id=request.event_id,
                description=f"Store credit used for {request.event_type.value.replace('_', ' ')}",
                created_by=request.actor_id,
            )
        except InsufficientBalanceError:
            return None
        return AccessGrant(
            granted_via=self.granted_via,
            debited=True,
            transaction_id=str(entry.id),
            amount=-entry.amount,
            balance_after=balance_after,
        )


DEFAULT_FUNDING_SOURCES: tuple[FundingSource, ...] = (
    SubscriptionFunding(),
    SelectedPassFunding(),
    SoonestExpiringPassFunding(),
    StoreCreditFunding(),
)


def _grant_from_redemption(redemption: Redemption) -> AccessGrant:
    return AccessGrant(
        granted_via=redemption.granted_via,
        debited=redemption.amount is not None or redemption.credits_used > 0,
        member_pass_id=str(redemption.member_pass_id) if redemption.member_pass_id else None,
        transaction_id=str(redemption.transaction_id) if redemption.transaction_id else None,
        amount=redemption.amount,
        credits_used=redemption.credits_used,
        redemption_id=str(redemption.id),
        replayed=True,
    )


async def _claim(request: AccessRequest) -> tuple[Redemption, AccessGrant | None]:
    """Insert the event's claim row; for a replayed event return its original grant."""
    redemption = Redemption(
        gym_id=request.gym_id,
        member_id=request.member.id,
        event_type=request.event_type,
        event_id=request.event_id,
        member_pass_id=request.member_pass_id,
        is_override=request.is_override,
        notes=request.notes,
        created_by=request.actor_id,
    )
    try:
        await redemption.insert()
        return redemption, None
    except DuplicateKeyError:
        pass

    existing = await Redemption.find_one(
        Redemption.gym_id == request.gym_id,
        Redemption.event_type == request.event_type,
        Redemption.event_id == request.event_id,
    )
    if existing is None:
        raise InternalError("Access event claim disappeared, retry the request")
    if existing.member_id != request.member.id:
        raise ConflictError("Access event already recorded for another member", details={"event_id": request.event_id})
    if existing.status == RedemptionStatus.GRANTED:
        log.info("access_replayed", event_id=request.event_id, redemption_id=str(existing.id))
        return existing, _grant_from_redemption(existing)

    ttl = timedelta(seconds=get_settings().redemption_claim_ttl_seconds)
    if existing.created_at + ttl > datetime.utcnow():
        raise ConflictError("Access event is already being processed", details={"event_id": request.event_id})
    # Abandoned claim: take it over
    result = await Redemption.find_one(
        Redemption.id == existing.id,
        Redemption.status == RedemptionStatus.PENDING,
        Redemption.created_at == existing.created_at,
    ).update(Set({Redemption.created_at: datetime.utcnow(), Redemption.created_by: request.actor_id}))
    if not (result and result.modified_count):
        raise ConflictError("Access event is already being processed", details={"event_id": request.event_id})
    log.warning("access_claim_taken_over", event_id=request.event_id, redemption_id=str(existing.id))
    return existing, None


async def _override(request: AccessRequest, failure: AppError | None) -> AccessGrant:
    role = (request.actor_role or "").upper()
    if not request.actor_id or request.actor_id == "system" or role not in get_settings().override_roles:
        raise AccessDeniedError(
            "Override requires an authorized staff member",
            details={"actor_role": request.actor_role},
        )
    await log_event(
        request.gym_id,
        request.actor_id,
        "access_override",
        "member",
        str(request.member.id),
        {
            "event_type": request.event_type.value,
            "event_id": request.event_id,
            "notes": request.notes,
            "bypassed": failure.code if failure else "no_funding_source",
        },
    )
    log.info("access_override", member_id=str(request.member.id), event_id=request.event_id, actor_role=role)
    return AccessGrant(granted_via=GrantedVia.OVERRIDE, debited=False)


async def _fund(request: AccessRequest, sources: tuple[FundingSource, ...]) -> AccessGrant:
    failure: AppError | None = None
    for source in sources:
        try:
            grant = await source.fund(request)
        except PASS_FAILURES as e:
            # Explicit selection is authoritative: do not fall through
            failure = e
            break
        if grant is not None:
            return grant
    if request.is_override:
        return await _override(request, failure)
    if failure is not None:
        raise failure
    raise AccessDeniedError(
        details={"member_id": str(request.member.id), "cost": str(to_money(request.cost))},
    )


@persistence_guard
async def resolve_access(
    request: AccessRequest,
    sources: tuple[FundingSource, ...] = DEFAULT_FUNDING_SOURCES,
) -> AccessGrant:
    """Fund one access event. Raises the selected pass's failure, AccessDeniedError or ConflictError."""
    if request.member.status != MemberStatus.ACTIVE:
        raise AccessDeniedError("Member is not active", details={"status": request.member.status.value})

    redemption, prior = await _claim(request)
    if prior is not None:
        return prior

    try:
        grant = await _fund(request, sources)
    except Exception:
        # Release the claim so the caller can retry once the member tops up
        await redemption.delete()
        raise

    await Redemption.find_one(Redemption.id == redemption.id).update(
        Set(
            {
                Redemption.status: RedemptionStatus.GRANTED,
                Redemption.granted_via: grant.granted_via,
                Redemption.member_pass_id: PydanticObjectId(grant.member_pass_id) if grant.member_pass_id else None,
                Redemption.transaction_id: PydanticObjectId(grant.transaction_id) if grant.transaction_id else None,
                Redemption.amount: grant.amount,
                Redemption.credits_used: grant.credits_used,
                Redemption.granted_at: datetime.utcnow(),
            }
        )
    )
    grant.redemption_id = str(redemption.id)
    log.info(
        "access_granted",
        member_id=str(request.member.id),
        event_type=request.event_type.value,
        event_id=request.event_id,
        granted_via=grant.granted_via.value,
        debited=grant.debited,
    )
    return grant


class PassBalance(BaseModel):
    pass_id: str
    product_id: str
    credits_remaining: int
    credits_total: int
    expires_at: datetime | None = None
    status: str


class AccessSummary(BaseModel):
    member_id: str
    has_active_subscription: bool
    active_passes: list[PassBalance]
    total_pack_credits: int
    store_credit: Decimal
    access_credit_cost: Decimal
    can_check_in: bool
    access_type: Literal["subscription", "pass", "balance", "none"]


@persistence_guard
async def access_summary(member: Member) -> AccessSummary:
    """What would fund this member's next check-in, without consuming anything."""
    subscription = await members.get_access_subscription(member)
    has_subscription = subscription is not None and not subscription.is_credit_metered
    active = await passes.list_active(member.id, member.gym_id)
    store_credit = await ledger.read(member.id)
    cost = to_money(get_settings().access_credit_cost)
    total_credits = sum(p.credits_remaining for p in active)

    if has_subscription:
        access_type = "subscription"
    elif total_credits > 0:
        access_type = "pass"
    elif cost > ZERO and store_credit >= cost:
        access_type = "balance"
    else:
        access_type = "none"

    return AccessSummary(
        member_id=str(member.id),
        has_active_subscription=has_subscription,
        active_passes=[
            PassBalance(
                pass_id=str(p.id),
                product_id=str(p.product_id),
                credits_remaining=p.credits_remaining,
                credits_total=p.credits_total,
                expires_at=p.expires_at,
                status=p.status.value,
            )
            for p in active
        ],
        total_pack_credits=total_credits,
        store_credit=store_credit,
        access_credit_cost=cost,
        can_check_in=member.status == MemberStatus.ACTIVE and access_type != "none",
        access_type=access_type,
    )
