"""Tenant-scoped member and subscription lookups."""

from beanie import PydanticObjectId
from beanie.operators import In

from gymcredit.core.exceptions import NotFoundError
from gymcredit.models.member import Member
from gymcredit.models.subscription import ACCESS_GRANTING_STATUSES, Subscription


async def get_member(gym_id: str, member_id: PydanticObjectId) -> Member:
    """Members of other gyms are reported as missing, never as forbidden."""
    member = await Member.get(member_id)
    if not member or member.gym_id != gym_id:
        raise NotFoundError("Member not found")
    return member


async def get_access_subscription(member: Member) -> Subscription | None:
    """Subscription currently granting access (ACTIVE or PAST_DUE), if any."""
    return await Subscription.find_one(
        Subscription.member_id == member.id,
        Subscription.gym_id == member.gym_id,
        In(Subscription.status, list(ACCESS_GRANTING_STATUSES)),
    )
