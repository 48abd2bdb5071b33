from datetime import datetime
from enum import Enum

from beanie import DecimalAnnotation, Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class BonusTxnType(str, Enum):
    PASS_PURCHASE = "PASS_PURCHASE"
    CLASS_ATTENDED = "CLASS_ATTENDED"
    PURCHASE_APPLIED = "PURCHASE_APPLIED"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    PROMO_BONUS = "PROMO_BONUS"


class BonusBalanceTransaction(Document):
    """Immutable store-credit ledger row. Never updated or deleted."""
    member_id: PydanticObjectId
    gym_id: str
    type: BonusTxnType
    amount: DecimalAnnotation  # positive = credit, negative = debit
    balance_after: DecimalAnnotation
    sequence: int  # per-member, gapless, starts at 1
    reference_type: str | None = None  # check_in, booking, purchase, adjustment
    reference_id: str | None = None
    idempotency_key: str
    description: str = ""
    created_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "bonus_balance_transactions"
        indexes = [
            IndexModel([("member_id", ASCENDING), ("sequence", ASCENDING)], unique=True, name="member_sequence_unique"),
            IndexModel(
                [("member_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                name="member_idempotency_unique",
            ),
            IndexModel([("gym_id", ASCENDING), ("created_at", DESCENDING)]),
        ]
