"""One-off donations and marketplace purchases: order creation, checkout confirmation, refunds"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from sadqa.core.config import settings
from sadqa.core.errors import GatewayError, InvalidTransition, PreconditionFailed, SignatureInvalid
from sadqa.core.signatures import verify_payment_signature
from sadqa.models.payment_record import PaymentRecord
from sadqa.services.gateway_client import RazorpayClient
from sadqa.services.payment_records import (
    apply_status, build_receipt, create_payment_record, get_payment_record,
    mark_completed, mark_failed
)

logger = logging.getLogger(__name__)


async def create_donation(
    db: Session,
    gateway: RazorpayClient,
    amount_paise: int,
    performed_by: str,
    kind: str = "donation",
    currency: str = "INR",
    payer_name: Optional[str] = None,
    payer_email: Optional[str] = None,
    payer_phone: Optional[str] = None,
    payer_user_id: Optional[str] = None,
    purpose: Optional[str] = None
) -> Tuple[PaymentRecord, Dict[str, Any]]:
    """Create a pending record and the gateway order that will pay it"""
    if kind not in ("donation", "purchase"):
        raise PreconditionFailed(f"Unsupported payment kind: {kind}")

    record = create_payment_record(
        db, amount_paise, performed_by,
        kind=kind, currency=currency,
        payer_name=payer_name, payer_email=payer_email, payer_phone=payer_phone,
        payer_user_id=payer_user_id, purpose=purpose
    )
    receipt = build_receipt(kind, record.id)
    try:
        order = await gateway.create_order(
            amount_paise, receipt, currency=currency,
            notes={"payment_record_id": str(record.id), "kind": kind}
        )
    except GatewayError as e:
        mark_failed(db, record, "system", reason=f"Order creation failed: {e}")
        raise

    record.razorpay_order_id = order.get("id")
    db.commit()
    db.refresh(record)
    logger.info(f"Created {kind} {record.id} with order {record.razorpay_order_id}")
    return record, order


def confirm_checkout(
    db: Session,
    record_id: int,
    order_id: str,
    payment_id: str,
    signature: str,
    performed_by: str
) -> PaymentRecord:
    """Complete a record from the browser checkout callback after checking its signature"""
    if not verify_payment_signature(order_id, payment_id, signature, settings.RAZORPAY_KEY_SECRET):
        raise SignatureInvalid("Invalid payment signature")

    record = get_payment_record(db, record_id)
    if record.razorpay_order_id and record.razorpay_order_id != order_id:
        raise PreconditionFailed("Order does not belong to this donation")

    mark_completed(db, record, performed_by, payment_id=payment_id, order_id=order_id,
                   details=f"Checkout confirmed for payment {payment_id}")
    db.refresh(record)
    return record


async def refund_donation(
    db: Session,
    gateway: RazorpayClient,
    record_id: int,
    performed_by: str,
    amount_paise: Optional[int] = None
) -> PaymentRecord:
    """Refund a completed payment through the gateway"""
    record = get_payment_record(db, record_id)
    if record.status != "completed":
        raise InvalidTransition(
            f"Only completed payments can be refunded (status is {record.status})",
            current_state=record.status, event="refunded"
        )
    if not record.razorpay_payment_id:
        raise PreconditionFailed("No Razorpay payment ID found")
    if amount_paise is not None and not 0 < amount_paise <= record.amount_paise:
        raise PreconditionFailed("Refund amount must be positive and at most the paid amount")

    payment_id = record.razorpay_payment_id
    db.rollback()
    refund = await gateway.refund_payment(payment_id, amount_paise)

    changed = apply_status(
        db, record_id, "completed", "refunded", performed_by,
        action="refunded",
        details=f"Refund {refund.get('id')} of {refund.get('amount', amount_paise)}",
        updates={"razorpay_refund_id": refund.get("id")}
    )
    if not changed:
        logger.warning(f"Refund {refund.get('id')} issued but record {record_id} was no longer completed")
    record = get_payment_record(db, record_id)
    return record
