"""Pydantic schemas for donations and payment reconciliation"""
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional


class CreateDonationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: int = Field(gt=0, description="Amount in paise")
    kind: Literal["donation", "purchase"] = "donation"
    currency: str = "INR"
    payer_name: Optional[str] = Field(None, alias="donorName")
    payer_email: Optional[str] = Field(None, alias="donorEmail")
    payer_phone: Optional[str] = Field(None, alias="donorPhone")
    purpose: Optional[str] = None


class ConfirmCheckoutRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RecheckPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    donation_id: int = Field(alias="donationId")
    payment_id: Optional[str] = Field(None, alias="paymentId")


class BulkRecheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    donation_ids: List[int] = Field(alias="donationIds", min_length=1)


class AuditDecisionRequest(BaseModel):
    approve: bool
    notes: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Partial refund in paise; full refund when omitted")
