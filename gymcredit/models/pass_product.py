from datetime import datetime
from enum import Enum

from beanie import DecimalAnnotation, Document
from pydantic import Field

from gymcredit.core.money import ZERO


class PassProductType(str, Enum):
    CLASS_PACK = "CLASS_PACK"
    DROP_IN = "DROP_IN"


class PassProduct(Document):
    """Catalog item that grants a MemberPass when purchased or assigned."""
    gym_id: str
    name: str
    type: PassProductType = PassProductType.CLASS_PACK
    credit_count: int | None = None  # None grants a single credit
    validity_days: int | None = None  # None never expires
    price_amount: DecimalAnnotation = ZERO
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "pass_products"
        indexes = [[("gym_id", 1), ("is_active", 1)]]
