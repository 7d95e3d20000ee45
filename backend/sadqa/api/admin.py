"""Admin API routes: payment reconciliation, audit decisions, refunds and subscription actions"""
import json
import logging
from typing import Callable
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from sadqa.core.errors import RecordNotFound, SadqaError, http_status_for
from sadqa.core.security import CallerIdentity, require_admin
from sadqa.db.session import get_db, get_session_factory
from sadqa.schemas.donations import (
    AuditDecisionRequest, BulkRecheckRequest, RecheckPaymentRequest, RefundRequest
)
from sadqa.schemas.subscriptions import AdminActionRequest
from sadqa.services import donation_service, subscription_service
from sadqa.services.gateway_client import RazorpayClient, get_gateway_client
from sadqa.services.payment_records import (
    ENTITY_PAYMENT, get_audit_log, get_payment_record, get_recheck_history, set_audit_status
)
from sadqa.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def get_reconciliation_service(
    gateway: RazorpayClient = Depends(get_gateway_client),
    session_factory: Callable[[], Session] = Depends(get_session_factory)
) -> ReconciliationService:
    """Dependency: reconciliation service bound to the gateway and a session factory"""
    return ReconciliationService(gateway, session_factory)


# ============================================================================
# DONATIONS
# ============================================================================

@router.get("/donations/{donation_id}")
def get_donation(
    donation_id: int,
    admin: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Donation with its audit log and recheck history"""
    try:
        record = get_payment_record(db, donation_id)
    except RecordNotFound as e:
        raise HTTPException(404, str(e))
    data = record.to_dict()
    data["auditLog"] = [entry.to_dict() for entry in get_audit_log(db, ENTITY_PAYMENT, donation_id)]
    data["paymentRecheckHistory"] = [
        {
            "recheckId": entry.id,
            "performedBy": entry.performed_by,
            "performedAt": entry.performed_at.isoformat() if entry.performed_at else None,
            "razorpayPaymentId": entry.razorpay_payment_id,
            "previousStatus": entry.previous_status,
            "newStatus": entry.current_status,
            "success": entry.success,
            "errorMessage": entry.error_message,
            "retryAttempt": entry.attempts,
        }
        for entry in get_recheck_history(db, donation_id)
    ]
    return {"donation": data}


@router.post("/donations/recheck-payment")
async def recheck_payment(
    body: RecheckPaymentRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Recheck one donation's payment status against the gateway"""
    try:
        result = await service.recheck(body.donation_id, body.payment_id, performed_by=admin.actor)
    except RecordNotFound as e:
        raise HTTPException(404, str(e))
    return result.to_dict()


@router.post("/donations/bulk-recheck-payment")
async def bulk_recheck_payment(
    body: BulkRecheckRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Recheck many donations, streaming NDJSON progress events.

    The recheck keeps running if the client disconnects.
    """
    logger.info(f"Bulk recheck of {len(body.donation_ids)} donations requested by {admin.actor}")
    job = service.bulk_recheck(body.donation_ids, performed_by=admin.actor)

    async def stream():
        async for event in job.events():
            yield json.dumps(event) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/donations/{donation_id}/audit")
def audit_donation(
    donation_id: int,
    body: AuditDecisionRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Approve or reject a donation for public reporting"""
    try:
        record = set_audit_status(db, donation_id, body.approve, admin.actor, body.notes)
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"donation": record.to_dict()}


@router.post("/donations/{donation_id}/refund")
async def refund_donation(
    donation_id: int,
    body: RefundRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    try:
        record = await donation_service.refund_donation(db, gateway, donation_id, admin.actor, body.amount)
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    return {"donation": record.to_dict()}


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

@router.patch("/sadqa-subscriptions/{subscription_id}/action")
async def subscription_action(
    subscription_id: int,
    body: AdminActionRequest,
    admin: CallerIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway_client)
):
    """Pause, resume or cancel a subscription on the donor's behalf"""
    try:
        subscription = await subscription_service.admin_subscription_action(
            db, gateway, subscription_id, admin,
            action=body.action, reason=body.reason, admin_notes=body.admin_notes
        )
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
    logger.info(f"Admin {admin.user_id} performed {body.action} on subscription {subscription_id}")
    return {"subscription": subscription.to_dict(), "message": f"Subscription {body.action} successful"}


@router.post("/sadqa-subscriptions/{subscription_id}/sync")
async def sync_subscription(
    subscription_id: int,
    admin: CallerIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Reconcile a subscription's status with the gateway"""
    try:
        return await service.sync_subscription(subscription_id, performed_by=admin.actor)
    except SadqaError as e:
        raise HTTPException(http_status_for(e), str(e))
