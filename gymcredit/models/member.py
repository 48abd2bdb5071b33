from datetime import datetime
from enum import Enum

from beanie import Document
from pydantic import Field


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class Member(Document):
    """Gym member. Owned by the surrounding application; read here for tenant scoping."""
    gym_id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    status: MemberStatus = MemberStatus.ACTIVE
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "members"
        indexes = [[("gym_id", 1), ("status", 1)]]
