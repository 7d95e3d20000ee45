"""Append-only audit log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sadqa.models.base import Base, utcnow

AUDIT_ACTIONS = (
    "created",
    "payment_verified",
    "payment_failed",
    "payment_rechecked",
    "audit_approved",
    "audit_rejected",
    "refunded",
    "subscription_activated",
    "subscription_paused",
    "subscription_resumed",
    "subscription_cancelled",
    "subscription_expired",
    "subscription_charged",
    "subscription_charge_failed",
)


class AuditLogEntry(Base):
    """One row per state-changing action; rows are never updated or deleted"""
    __tablename__ = "audit_log_entries"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(30), nullable=False)  # 'payment_record', 'subscription'
    entity_id = Column(Integer, nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    performed_by = Column(String(255), nullable=False)
    performed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    details = Column(Text, nullable=True)
    previous_values = Column(JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "action": self.action,
            "performedBy": self.performed_by,
            "performedAt": self.performed_at.isoformat() if self.performed_at else None,
            "details": self.details,
            "previousValues": self.previous_values,
        }
