"""Recurring donation (Sadqa) subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint
from sqlalchemy.orm import relationship
from sadqa.models.base import Base, utcnow

CADENCES = ("daily", "weekly", "monthly", "yearly")
SUBSCRIPTION_STATUSES = ("pending_payment", "active", "paused", "cancelled", "expired")


class Subscription(Base):
    """Recurring donation commitment mirrored from a gateway subscription"""
    __tablename__ = "sadqa_subscriptions"
    __table_args__ = (
        CheckConstraint("amount_paise > 0", name="ck_sadqa_subscriptions_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)  # opaque caller id from the auth service
    user_name = Column(String(255), nullable=True)
    user_email = Column(String(255), nullable=True)
    user_phone = Column(String(50), nullable=True)

    cadence = Column(String(20), nullable=False)  # 'daily', 'weekly', 'monthly', 'yearly'
    amount_paise = Column(Integer, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)

    razorpay_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    razorpay_customer_id = Column(String(255), nullable=True)
    razorpay_plan_id = Column(String(255), nullable=True)

    status = Column(String(30), default="pending_payment", nullable=False, index=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    next_payment_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)

    total_paid_paise = Column(Integer, default=0, nullable=False)
    payment_count = Column(Integer, default=0, nullable=False)
    failed_payment_count = Column(Integer, default=0, nullable=False)
    total_cycles = Column(Integer, nullable=False)
    remaining_cycles = Column(Integer, nullable=True)  # recomputed on resume

    paused_reason = Column(Text, nullable=True)
    cancelled_reason = Column(Text, nullable=True)
    last_actor = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    cycles = relationship("PaymentRecord", back_populates="subscription", order_by="PaymentRecord.cycle_sequence")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "cadence": self.cadence,
            "amount": self.amount_paise,
            "currency": self.currency,
            "razorpaySubscriptionId": self.razorpay_subscription_id,
            "status": self.status,
            "startDate": _iso(self.start_date),
            "nextPaymentDate": _iso(self.next_payment_date),
            "lastPaymentDate": _iso(self.last_payment_date),
            "endDate": _iso(self.end_date),
            "totalPaid": self.total_paid_paise,
            "paymentCount": self.payment_count,
            "failedPaymentCount": self.failed_payment_count,
            "totalCycles": self.total_cycles,
            "remainingCycles": self.remaining_cycles,
            "pausedReason": self.paused_reason,
            "cancelledReason": self.cancelled_reason,
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def _iso(value):
    return value.isoformat() if value else None
