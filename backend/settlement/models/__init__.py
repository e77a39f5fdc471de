from settlement.models.user import User
from settlement.models.listing import Listing, Bid, PriceHistory, ListingModeration
from settlement.models.order import Order, OrderTransition
from settlement.models.payout import Payout, PayoutClawback
from settlement.models.refund import Refund
from settlement.models.risk import FraudAlert, SellerRiskProfile, ProhibitedKeyword, AccessEvent
from settlement.models.fee_schedule import FeeSchedule
from settlement.models.platform_event import PlatformEvent
from settlement.models.audit_log import AuditLog
from settlement.models.notification import Notification
from settlement.models.webhook_event import WebhookEvent
from settlement.models.job_run import JobRun
from settlement.models.reconciliation_report import ReconciliationReport
from settlement.models.settings import SettlementSettings

__all__ = [
    "User",
    "Listing",
    "Bid",
    "PriceHistory",
    "ListingModeration",
    "Order",
    "OrderTransition",
    "Payout",
    "PayoutClawback",
    "Refund",
    "FraudAlert",
    "SellerRiskProfile",
    "ProhibitedKeyword",
    "AccessEvent",
    "FeeSchedule",
    "PlatformEvent",
    "AuditLog",
    "Notification",
    "WebhookEvent",
    "JobRun",
    "ReconciliationReport",
    "SettlementSettings",
]
