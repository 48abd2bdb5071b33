from datetime import datetime

from beanie import DecimalAnnotation, Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel

from gymcredit.core.money import ZERO


class BonusBalance(Document):
    """Store-credit projection per member; advanced only by the ledger."""
    member_id: PydanticObjectId
    gym_id: str
    current_balance: DecimalAnnotation = ZERO
    version: int = 0  # sequence of the last ledger entry applied
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "bonus_balances"
        indexes = [
            IndexModel([("member_id", ASCENDING)], unique=True, name="member_unique"),
            [("gym_id", 1)],
        ]
