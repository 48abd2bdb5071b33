from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


# PAST_DUE members keep access while billing retries
ACCESS_GRANTING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class Subscription(Document):
    member_id: PydanticObjectId
    gym_id: str
    plan_name: str = ""
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    is_credit_metered: bool = False  # metered plans pay per visit from passes/store credit
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "subscriptions"
        indexes = [[("member_id", 1), ("status", 1)]]
