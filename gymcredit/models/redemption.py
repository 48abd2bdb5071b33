from datetime import datetime
from enum import Enum

from beanie import DecimalAnnotation, Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class AccessEventType(str, Enum):
    CHECK_IN = "check_in"
    BOOKING = "booking"


class GrantedVia(str, Enum):
    SUBSCRIPTION = "subscription"
    PASS = "pass"
    BALANCE = "balance"
    OVERRIDE = "override"


class RedemptionStatus(str, Enum):
    PENDING = "PENDING"
    GRANTED = "GRANTED"


class Redemption(Document):
    """One access event and how it was funded. Claimed before funding so replays never debit twice."""
    gym_id: str
    member_id: PydanticObjectId
    event_type: AccessEventType
    event_id: str
    status: RedemptionStatus = RedemptionStatus.PENDING
    granted_via: GrantedVia | None = None
    member_pass_id: PydanticObjectId | None = None
    transaction_id: PydanticObjectId | None = None
    amount: DecimalAnnotation | None = None
    credits_used: int = 0
    is_override: bool = False
    notes: str | None = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    granted_at: datetime | None = None

    class Settings:
        name = "redemptions"
        indexes = [
            IndexModel(
                [("gym_id", ASCENDING), ("event_type", ASCENDING), ("event_id", ASCENDING)],
                unique=True,
                name="event_unique",
            ),
            [("member_id", 1), ("created_at", -1)],
        ]
