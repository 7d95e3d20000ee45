"""Payment record model (one-off donations, marketplace purchases, billing cycles)"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sadqa.models.base import Base, utcnow

PAYMENT_KINDS = ("donation", "purchase", "subscription_cycle")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
AUDIT_STATUSES = ("unverified", "verified", "rejected")


class PaymentRecord(Base):
    """A single payment expected from or captured by the gateway"""
    __tablename__ = "payment_records"
    __table_args__ = (
        # At most one open billing cycle per subscription
        Index(
            "uq_payment_records_open_cycle",
            "cycle_of",
            unique=True,
            sqlite_where=text("status = 'pending' AND cycle_of IS NOT NULL"),
            postgresql_where=text("status = 'pending' AND cycle_of IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(30), default="donation", nullable=False, index=True)
    cycle_of = Column(Integer, ForeignKey("sadqa_subscriptions.id", ondelete="CASCADE"), nullable=True, index=True)
    cycle_sequence = Column(Integer, nullable=True)

    razorpay_order_id = Column(String(255), nullable=True, index=True)
    razorpay_payment_id = Column(String(255), nullable=True, index=True)
    razorpay_refund_id = Column(String(255), nullable=True)

    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    payer_name = Column(String(255), nullable=True)
    payer_email = Column(String(255), nullable=True)
    payer_phone = Column(String(50), nullable=True)
    payer_user_id = Column(String(255), nullable=True, index=True)
    purpose = Column(String(255), nullable=True)

    status = Column(String(20), default="pending", nullable=False, index=True)
    payment_verified = Column(Boolean, default=False, nullable=False)
    payment_verified_at = Column(DateTime(timezone=True), nullable=True)
    audit_status = Column(String(20), default="unverified", nullable=False)
    is_visible_in_reports = Column(Boolean, default=False, nullable=False)
    is_visible_in_public = Column(Boolean, default=False, nullable=False)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    # Set once a billing cycle has been added to its subscription totals
    counted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="cycles")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "subscriptionId": self.cycle_of,
            "cycleSequence": self.cycle_sequence,
            "razorpayOrderId": self.razorpay_order_id,
            "razorpayPaymentId": self.razorpay_payment_id,
            "amount": self.amount_paise,
            "currency": self.currency,
            "payerName": self.payer_name,
            "payerEmail": self.payer_email,
            "status": self.status,
            "paymentVerified": self.payment_verified,
            "paymentVerifiedAt": self.payment_verified_at.isoformat() if self.payment_verified_at else None,
            "auditStatus": self.audit_status,
            "isVisibleInReports": self.is_visible_in_reports,
            "isVisibleInPublic": self.is_visible_in_public,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "failureReason": self.failure_reason,
        }
