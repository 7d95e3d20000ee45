"""Subscription service - Sadqa subscription orchestration for donors and admins"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from sadqa.core.errors import Forbidden, GatewayError, InvalidTransition, PreconditionFailed
from sadqa.core.observability import capture_exception
from sadqa.core.security import CallerIdentity
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.subscription import Subscription, CADENCES
from sadqa.services import cadence
from sadqa.services import subscription_state
from sadqa.services.gateway_client import RazorpayClient
from sadqa.services.payment_records import (
    ENTITY_SUBSCRIPTION, add_audit_entry, create_payment_record, get_audit_log
)

logger = logging.getLogger("lifecycle")

ADMIN_ACTIONS = ("pause", "resume", "cancel")


def get_subscription_for_caller(db: Session, subscription_id: int, identity: CallerIdentity) -> Subscription:
    """Load a subscription the caller owns (admins may load any)"""
    subscription = subscription_state.get_subscription(db, subscription_id)
    if not identity.is_admin and subscription.user_id != identity.user_id:
        raise Forbidden("You do not have access to this subscription")
    return subscription


def list_user_subscriptions(db: Session, identity: CallerIdentity) -> List[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == identity.user_id)
        .order_by(Subscription.created_at.desc())
        .all()
    )


def get_subscription_summary(db: Session, subscription: Subscription) -> Dict[str, Any]:
    """Subscription with its billing cycles and audit trail"""
    data = subscription.to_dict()
    data["remainingCycles"] = subscription_state.remaining_cycles(subscription)
    data["cycles"] = [cycle.to_dict() for cycle in subscription.cycles]
    data["auditLog"] = [entry.to_dict() for entry in get_audit_log(db, ENTITY_SUBSCRIPTION, subscription.id)]
    return data


async def create_subscription(
    db: Session,
    gateway: RazorpayClient,
    identity: CallerIdentity,
    cadence_name: str,
    amount_paise: int,
    user_name: Optional[str] = None,
    user_email: Optional[str] = None,
    user_phone: Optional[str] = None,
    total_cycles: Optional[int] = None
) -> Tuple[Subscription, Optional[str]]:
    """Create a local subscription awaiting its first payment, plus the gateway plan and subscription.

    Returns:
        (subscription, checkout short url from the gateway)
    """
    if cadence_name not in CADENCES:
        raise PreconditionFailed(f"Unknown cadence: {cadence_name}")
    if amount_paise <= 0:
        raise PreconditionFailed("Amount must be positive")
    if total_cycles is not None and total_cycles <= 0:
        raise PreconditionFailed("Total cycles must be positive")

    charge = cadence.billed_amount(cadence_name, amount_paise)
    subscription = Subscription(
        user_id=identity.user_id,
        user_name=user_name,
        user_email=user_email,
        user_phone=user_phone,
        cadence=cadence_name,
        amount_paise=amount_paise,
        status="pending_payment",
        total_cycles=total_cycles or cadence.default_total_cycles(cadence_name),
        last_actor=identity.actor,
    )
    db.add(subscription)
    db.flush()
    add_audit_entry(db, ENTITY_SUBSCRIPTION, subscription.id, "created", identity.actor,
                    details=f"{cadence_name} subscription of {amount_paise} paise")
    create_payment_record(
        db, charge, identity.actor,
        kind="subscription_cycle",
        payer_name=user_name,
        payer_email=user_email,
        payer_phone=user_phone,
        payer_user_id=identity.user_id,
        purpose=cadence.DISPLAY_NAMES[cadence_name],
        cycle_of=subscription.id,
        cycle_sequence=1,
        commit=False
    )
    db.commit()
    db.refresh(subscription)

    period, interval = cadence.BILLING_PERIODS[cadence_name]
    notes = {"subscription_id": str(subscription.id), "cadence": cadence_name, "user_id": identity.user_id}
    try:
        plan = await gateway.create_plan(
            period, interval, charge,
            name=f"Sadqa Subscription - {cadence.DISPLAY_NAMES[cadence_name]}",
            currency=subscription.currency,
            notes=notes
        )
        gateway_subscription = await gateway.create_subscription(
            plan["id"], total_count=subscription.total_cycles, notes=notes
        )
    except (GatewayError, KeyError) as e:
        logger.error(f"Gateway setup failed for subscription {subscription.id}: {e}")
        _discard_unlinked_subscription(db, subscription.id, identity.actor, str(e))
        if isinstance(e, KeyError):
            raise GatewayError("Razorpay plan response missing id") from e
        raise

    subscription.razorpay_plan_id = plan["id"]
    subscription.razorpay_subscription_id = gateway_subscription.get("id")
    db.commit()
    db.refresh(subscription)
    logger.info(f"Created subscription {subscription.id} ({cadence_name}) for user {identity.user_id}")
    return subscription, gateway_subscription.get("short_url")


def _discard_unlinked_subscription(db: Session, subscription_id: int, actor: str, error: str) -> None:
    """Remove a subscription whose gateway objects were never created, with its open cycle.

    A pending_payment row has no way out of the state machine on its own.
    """
    db.rollback()
    db.query(PaymentRecord).filter(PaymentRecord.cycle_of == subscription_id).delete(synchronize_session="fetch")
    db.query(Subscription).filter(Subscription.id == subscription_id).delete(synchronize_session="fetch")
    add_audit_entry(db, ENTITY_SUBSCRIPTION, subscription_id, "gateway_setup_failed", actor, details=error)
    db.commit()
    logger.info(f"Discarded subscription {subscription_id} after failed gateway setup")


def _apply_local_after_gateway(subscription: Subscription, event: str, transition, *args) -> Subscription:
    """Run the local transition once the gateway has already changed.

    If the local update loses a race the two sides disagree; that is
    captured so an operator can run a subscription sync.
    """
    try:
        return transition(*args)
    except InvalidTransition as e:
        if subscription.razorpay_subscription_id:
            capture_exception(
                e, "subscription-gateway-drift",
                subscription_id=subscription.id,
                razorpay_subscription_id=subscription.razorpay_subscription_id,
                event=event
            )
        raise


async def pause_subscription(
    db: Session,
    gateway: RazorpayClient,
    subscription_id: int,
    identity: CallerIdentity,
    reason: str
) -> Subscription:
    subscription = get_subscription_for_caller(db, subscription_id, identity)
    subscription_state.next_state(subscription.status, "pause")
    if subscription.razorpay_subscription_id:
        await gateway.pause_subscription(subscription.razorpay_subscription_id)
    return _apply_local_after_gateway(
        subscription, "pause", subscription_state.pause, db, subscription_id, reason, identity.actor
    )


async def resume_subscription(
    db: Session,
    gateway: RazorpayClient,
    subscription_id: int,
    identity: CallerIdentity,
    reason: Optional[str] = None
) -> Subscription:
    subscription = get_subscription_for_caller(db, subscription_id, identity)
    subscription_state.next_state(subscription.status, "resume")
    if subscription_state.remaining_cycles(subscription) <= 0:
        raise InvalidTransition("nothing to resume", current_state=subscription.status, event="resume")
    if subscription.razorpay_subscription_id:
        await gateway.resume_subscription(subscription.razorpay_subscription_id)
    return _apply_local_after_gateway(
        subscription, "resume", subscription_state.resume, db, subscription_id, reason, identity.actor
    )


async def cancel_subscription(
    db: Session,
    gateway: RazorpayClient,
    subscription_id: int,
    identity: CallerIdentity,
    reason: str
) -> Subscription:
    subscription = get_subscription_for_caller(db, subscription_id, identity)
    if subscription.status == "cancelled":
        return subscription
    subscription_state.next_state(subscription.status, "cancel")
    if subscription.razorpay_subscription_id:
        await gateway.cancel_subscription(subscription.razorpay_subscription_id)
    return _apply_local_after_gateway(
        subscription, "cancel", subscription_state.cancel, db, subscription_id, reason, identity.actor
    )


async def admin_subscription_action(
    db: Session,
    gateway: RazorpayClient,
    subscription_id: int,
    admin: CallerIdentity,
    action: str,
    reason: str,
    admin_notes: Optional[str] = None
) -> Subscription:
    """Pause, resume or cancel on an admin's behalf and append their notes"""
    if action not in ADMIN_ACTIONS:
        raise PreconditionFailed(f"Invalid action: {action}")
    if not reason or not reason.strip():
        raise PreconditionFailed("Reason is required for admin actions")

    subscription = subscription_state.get_subscription(db, subscription_id)
    if action == "cancel" and subscription.status == "cancelled":
        raise InvalidTransition("Subscription is already cancelled", current_state="cancelled", event="cancel")

    if action == "pause":
        subscription = await pause_subscription(db, gateway, subscription_id, admin, reason)
    elif action == "resume":
        subscription = await resume_subscription(db, gateway, subscription_id, admin, reason)
    else:
        subscription = await cancel_subscription(db, gateway, subscription_id, admin, reason)

    if admin_notes:
        note = f"[Admin {admin.user_id}]: {admin_notes}"
        subscription.notes = f"{subscription.notes}\n{note}" if subscription.notes else note
        db.commit()
        db.refresh(subscription)
    return subscription


def expire_due_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """Expire active/paused subscriptions whose term ended or whose cycles are used up"""
    now = now or datetime.now(timezone.utc)
    due_ids = [
        row.id for row in db.query(Subscription.id).filter(
            Subscription.status.in_(("active", "paused")),
            or_(
                Subscription.end_date <= now,
                Subscription.payment_count >= Subscription.total_cycles,
            )
        ).all()
    ]

    expired = 0
    for subscription_id in due_ids:
        try:
            subscription_state.expire(db, subscription_id, actor="system:expiry")
            expired += 1
        except InvalidTransition as e:
            logger.info(f"Subscription {subscription_id} not expired: {e}")
    if expired:
        logger.info(f"Expired {expired} subscriptions")
    return expired
