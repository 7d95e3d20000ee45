"""Donation API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from sadqa.core.config import settings
from sadqa.core.errors import SadqaError, http_status_for
from sadqa.core.security import CallerIdentity, optional_identity
from sadqa.db.session import get_db
from sadqa.schemas.donations import ConfirmCheckoutRequest, CreateDonationRequest
from sadqa.services import donation_service
from sadqa.services.gateway_client import RazorpayClient, get_gateway_client

router = APIRouter(prefix="/api/donations", tags=["donations"])
logger = logging.getLogger(__name__)


def _actor(identity: Optional[CallerIdentity]) -> str:
    return identity.actor if identity else "guest"


@router.post("")
async def create_donation(
    body: CreateDonationRequest,
    identity: Optional[CallerIdentity] = Depends(optional_identity),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    """Create a one-off donation (or purchase) and its gateway order"""
    try:
        record, order = await donation_service.create_donation(
            db, gateway, body.amount, _actor(identity),
            kind=body.kind,
            currency=body.currency,
            payer_name=body.payer_name,
            payer_email=body.payer_email,
            payer_phone=body.payer_phone,
            payer_user_id=identity.user_id if identity else None,
            purpose=body.purpose
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {
        "donation": record.to_dict(),
        "order": {"id": order.get("id"), "amount": order.get("amount"), "currency": order.get("currency")},
        "keyId": settings.RAZORPAY_KEY_ID,
    }


@router.post("/{donation_id}/confirm")
def confirm_donation(
    donation_id: int,
    body: ConfirmCheckoutRequest,
    identity: Optional[CallerIdentity] = Depends(optional_identity),
    db: Session = Depends(get_db)
):
    """Checkout callback: verify the payment signature and complete the donation"""
    try:
        record = donation_service.confirm_checkout(
            db, donation_id,
            order_id=body.razorpay_order_id,
            payment_id=body.razorpay_payment_id,
            signature=body.razorpay_signature,
            performed_by=_actor(identity)
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"donation": record.to_dict()}
