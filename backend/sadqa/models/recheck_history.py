"""Payment recheck history model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, ForeignKey
from sadqa.models.base import Base, utcnow


class RecheckHistoryEntry(Base):
    """One row per reconciliation attempt against the gateway, successful or not"""
    __tablename__ = "payment_recheck_history"

    id = Column(Integer, primary_key=True, index=True)
    payment_record_id = Column(Integer, ForeignKey("payment_records.id", ondelete="CASCADE"), nullable=False, index=True)
    performed_by = Column(String(255), nullable=False)
    performed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    razorpay_payment_id = Column(String(255), nullable=True)
    previous_status = Column(String(20), nullable=False)
    current_status = Column(String(20), nullable=False)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    raw_gateway_response = Column(JSON, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
