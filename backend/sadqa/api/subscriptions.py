"""Sadqa subscription API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from sadqa.core.errors import SadqaError, http_status_for
from sadqa.core.security import CallerIdentity, require_identity
from sadqa.db.session import get_db
from sadqa.schemas.subscriptions import CreateSubscriptionRequest, LifecycleRequest
from sadqa.services import subscription_service
from sadqa.services.gateway_client import RazorpayClient, get_gateway_client

router = APIRouter(prefix="/api/sadqa-subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.post("")
async def create_subscription(
    body: CreateSubscriptionRequest,
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    """Start a recurring donation; the donor completes payment at the returned URL"""
    try:
        subscription, short_url = await subscription_service.create_subscription(
            db, gateway, identity,
            cadence_name=body.cadence,
            amount_paise=body.amount,
            user_name=body.user_name,
            user_email=body.user_email,
            user_phone=body.user_phone,
            total_cycles=body.total_cycles
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {
        "subscription": subscription.to_dict(),
        "razorpaySubscriptionId": subscription.razorpay_subscription_id,
        "shortUrl": short_url,
    }


@router.get("")
def list_subscriptions(
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db)
):
    """List the caller's subscriptions"""
    subscriptions = subscription_service.list_user_subscriptions(db, identity)
    return {"subscriptions": [s.to_dict() for s in subscriptions]}


@router.get("/{subscription_id}")
def get_subscription(
    subscription_id: int,
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db)
):
    try:
        subscription = subscription_service.get_subscription_for_caller(db, subscription_id, identity)
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"subscription": subscription_service.get_subscription_summary(db, subscription)}


@router.post("/{subscription_id}/pause")
async def pause_subscription(
    subscription_id: int,
    body: LifecycleRequest,
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    try:
        subscription = await subscription_service.pause_subscription(
            db, gateway, subscription_id, identity, body.reason or "Paused by donor"
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"subscription": subscription.to_dict()}


@router.post("/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: int,
    body: LifecycleRequest,
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    try:
        subscription = await subscription_service.resume_subscription(
            db, gateway, subscription_id, identity, body.reason
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"subscription": subscription.to_dict()}


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: int,
    body: LifecycleRequest,
    identity: CallerIdentity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    try:
        subscription = await subscription_service.cancel_subscription(
            db, gateway, subscription_id, identity, body.reason or "Cancelled by donor"
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"subscription": subscription.to_dict()}
