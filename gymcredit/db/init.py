import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from gymcredit.core.config import get_settings
from gymcredit.models.audit_log import AuditLog
from gymcredit.models.bonus_balance import BonusBalance
from gymcredit.models.bonus_transaction import BonusBalanceTransaction
from gymcredit.models.failed_job import FailedJob
from gymcredit.models.member import Member
from gymcredit.models.member_pass import MemberPass
from gymcredit.models.pass_product import PassProduct
from gymcredit.models.redemption import Redemption
from gymcredit.models.subscription import Subscription

DOCUMENT_MODELS = [
    Member,
    Subscription,
    BonusBalance,
    BonusBalanceTransaction,
    PassProduct,
    MemberPass,
    Redemption,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database: AsyncIOMotorDatabase | None = None) -> None:
    """Register documents and build indexes. Tests pass an in-memory database."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
