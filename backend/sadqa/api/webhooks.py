"""Payment gateway webhook routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from sadqa.core.errors import SignatureInvalid
from sadqa.core.logging import request_id_var
from sadqa.core.observability import capture_exception
from sadqa.db.session import get_db
from sadqa.services.webhook_service import process_razorpay_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger("webhooks")


@router.post("/razorpay")
async def razorpay_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Razorpay webhook events

    Note: The signature covers the raw bytes, so the body is read before any
    JSON parsing. Anything other than a bad signature answers 200 so the
    gateway does not retry.
    """
    payload = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    correlation_id = request_id_var.get()

    try:
        return process_razorpay_webhook(
            payload, signature, db,
            event_id_header=request.headers.get("x-razorpay-event-id"),
            correlation_id=correlation_id
        )
    except SignatureInvalid:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected webhook with invalid signature from {client_ip}")
        raise HTTPException(400, "Invalid signature")
    except Exception as e:
        capture_exception(e, "razorpay-webhook", correlation_id=correlation_id)
        return {"received": True}
