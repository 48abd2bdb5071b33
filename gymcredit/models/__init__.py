from gymcredit.models.audit_log import AuditLog
from gymcredit.models.bonus_balance import BonusBalance
from gymcredit.models.bonus_transaction import BonusBalanceTransaction, BonusTxnType
from gymcredit.models.failed_job import FailedJob
from gymcredit.models.member import Member, MemberStatus
from gymcredit.models.member_pass import MemberPass, PassStatus
from gymcredit.models.pass_product import PassProduct, PassProductType
from gymcredit.models.redemption import AccessEventType, GrantedVia, Redemption
from gymcredit.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "AuditLog",
    "BonusBalance",
    "BonusBalanceTransaction",
    "BonusTxnType",
    "FailedJob",
    "Member",
    "MemberStatus",
    "MemberPass",
    "PassStatus",
    "PassProduct",
    "PassProductType",
    "AccessEventType",
    "GrantedVia",
    "Redemption",
    "Subscription",
    "SubscriptionStatus",
]
