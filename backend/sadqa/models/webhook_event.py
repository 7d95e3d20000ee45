"""Gateway webhook event ledger model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime
from sadqa.models.base import Base, utcnow


class WebhookEvent(Base):
    """Webhook event ledger for idempotency; the unique event id is the claim"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    gateway_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
