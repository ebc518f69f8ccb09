"""Database models package with tenant-aware billing entities."""
from .plan import AiPlan, AiTier, SubscriptionPlan
from .tenant import Tenant
from .subscription import PaymentProvider, RetiredSubscription, Subscription, SubscriptionStatus
from .manual_payment import ManualPayment, ManualPaymentMethod, ManualPaymentStatus
from .audit import AuditLog
from .webhook_event import ProcessedWebhookEvent

__all__ = [
    "AiPlan",
    "AiTier",
    "SubscriptionPlan",
    "Tenant",
    "Subscription",
    "RetiredSubscription",
    "SubscriptionStatus",
    "PaymentProvider",
    "ManualPayment",
    "ManualPaymentMethod",
    "ManualPaymentStatus",
    "AuditLog",
    "ProcessedWebhookEvent",
]
