import uuid
from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class PassStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


def purchase_issue_key(purchase_id: str) -> str:
    return f"purchase:{purchase_id}"


class MemberPass(Document):
    """Pack credits owned by one member. Mutated only through services.passes."""
    member_id: PydanticObjectId
    gym_id: str
    product_id: PydanticObjectId
    purchase_id: str | None = None
    # purchase:<id> for purchased passes, random otherwise; unique per member
    issue_key: str = Field(default_factory=lambda: f"pass_{uuid.uuid4().hex}")
    status: PassStatus = PassStatus.ACTIVE
    credits_total: int
    credits_remaining: int
    # access events (event_type:event_id) that took a credit from this pass
    redeemed_events: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    notes: str | None = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "member_passes"
        indexes = [
            [("member_id", 1), ("status", 1), ("expires_at", 1)],
            [("gym_id", 1), ("status", 1), ("expires_at", 1)],
            IndexModel(
                [("gym_id", ASCENDING), ("member_id", ASCENDING), ("issue_key", ASCENDING)],
                unique=True,
                name="member_issue_unique",
            ),
            [("member_id", 1), ("redeemed_events", 1)],
        ]

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or datetime.utcnow())
