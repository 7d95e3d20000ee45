"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from sadqa.models.base import Base
from sadqa.models.subscription import Subscription
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.audit_log import AuditLogEntry
from sadqa.models.recheck_history import RecheckHistoryEntry
from sadqa.models.webhook_event import WebhookEvent

# Export all for convenience
__all__ = [
    "Base", "Subscription", "PaymentRecord",
    "AuditLogEntry", "RecheckHistoryEntry", "WebhookEvent"
]
