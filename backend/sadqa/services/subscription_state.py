"""Subscription state machine.

All status writes for Sadqa subscriptions happen here. Each public
operation checks the transition table, then issues one conditional UPDATE
keyed on the status it observed, and appends one audit entry.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update, select
from sqlalchemy.orm import Session

from sadqa.core.config import settings
from sadqa.core.errors import InvalidTransition, RecordNotFound
from sadqa.core.metrics import subscription_transitions_counter
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.subscription import Subscription
from sadqa.services import cadence
from sadqa.services.payment_records import (
    ENTITY_SUBSCRIPTION, add_audit_entry, apply_status
)

logger = logging.getLogger("lifecycle")

# (from_state, event) -> to_state
TRANSITIONS: Dict[tuple, str] = {
    ("pending_payment", "activate"): "active",
    ("active", "pause"): "paused",
    ("active", "halt"): "paused",
    ("paused", "resume"): "active",
    ("active", "cancel"): "cancelled",
    ("paused", "cancel"): "cancelled",
    ("active", "expire"): "expired",
    ("paused", "expire"): "expired",
}

TERMINAL_STATES = ("cancelled", "expired")

AUDIT_ACTIONS = {
    "activate": "subscription_activated",
    "pause": "subscription_paused",
    "halt": "subscription_paused",
    "resume": "subscription_resumed",
    "cancel": "subscription_cancelled",
    "expire": "subscription_expired",
}

HALT_PAUSE_REASON = "gateway halted after repeated failures"
GATEWAY_CANCEL_REASON = "gateway-initiated cancellation"


def can_transition(current: str, event: str) -> bool:
    return (current, event) in TRANSITIONS


def next_state(current: str, event: str) -> str:
    """Target state for `event`, or InvalidTransition when the pair is not allowed"""
    target = TRANSITIONS.get((current, event))
    if target is None:
        if current in TERMINAL_STATES:
            message = f"Subscription is already {current}"
        elif event == "resume":
            message = "Only paused subscriptions can be resumed"
        elif event in ("pause", "halt"):
            message = "Only active subscriptions can be paused"
        else:
            message = f"Cannot {event} a subscription that is {current}"
        raise InvalidTransition(message, current_state=current, event=event)
    return target


def get_subscription(db: Session, subscription_id: int) -> Subscription:
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not subscription:
        raise RecordNotFound(f"Subscription {subscription_id} not found")
    return subscription


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _transition(
    db: Session,
    subscription: Subscription,
    event: str,
    actor: str,
    values: Optional[Dict[str, Any]] = None,
    details: Optional[str] = None,
    commit: bool = True
) -> Subscription:
    current = subscription.status
    target = next_state(current, event)

    update_values = {"status": target, "last_actor": actor, "updated_at": _now()}
    if values:
        update_values.update(values)

    result = db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id, Subscription.status == current)
        .values(**update_values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(subscription)
        raise InvalidTransition(
            f"Subscription {subscription.id} changed from {current} to {subscription.status} concurrently",
            current_state=subscription.status,
            event=event
        )

    add_audit_entry(
        db, ENTITY_SUBSCRIPTION, subscription.id, AUDIT_ACTIONS[event], actor,
        details=details,
        previous_values={"status": current}
    )
    if commit:
        db.commit()
        db.refresh(subscription)
    subscription_transitions_counter.labels(event=event, to_state=target).inc()
    logger.info(f"Subscription {subscription.id}: {current} -> {target} ({event} by {actor})")
    return subscription


def activate(
    db: Session,
    subscription_id: int,
    actor: str,
    razorpay_subscription_id: Optional[str] = None,
    razorpay_customer_id: Optional[str] = None,
    next_payment_date: Optional[datetime] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> Subscription:
    """pending_payment -> active. Already active is a no-op."""
    subscription = get_subscription(db, subscription_id)
    if subscription.status == "active":
        return subscription

    start = start_date or _as_aware(subscription.start_date) or _now()
    values: Dict[str, Any] = {
        "start_date": start,
        "next_payment_date": next_payment_date or cadence.next_payment_date(start, subscription.cadence),
    }
    if razorpay_subscription_id:
        values["razorpay_subscription_id"] = razorpay_subscription_id
    if razorpay_customer_id:
        values["razorpay_customer_id"] = razorpay_customer_id
    if end_date:
        values["end_date"] = end_date

    return _transition(db, subscription, "activate", actor, values, details="Subscription activated")


def pause(db: Session, subscription_id: int, reason: str, actor: str) -> Subscription:
    """active -> paused"""
    subscription = get_subscription(db, subscription_id)
    return _transition(db, subscription, "pause", actor, {"paused_reason": reason}, details=reason)


def resume(db: Session, subscription_id: int, reason: Optional[str], actor: str) -> Subscription:
    """paused -> active, refusing when no billing cycles remain"""
    subscription = get_subscription(db, subscription_id)
    next_state(subscription.status, "resume")

    remaining = remaining_cycles(subscription)
    if remaining <= 0:
        raise InvalidTransition("nothing to resume", current_state=subscription.status, event="resume")

    now = _now()
    next_payment = _as_aware(subscription.next_payment_date)
    if next_payment is None or next_payment < now:
        next_payment = cadence.next_payment_date(now, subscription.cadence)

    return _transition(
        db, subscription, "resume", actor,
        {"remaining_cycles": remaining, "paused_reason": None, "next_payment_date": next_payment},
        details=reason or f"Resumed with {remaining} cycles remaining"
    )


def cancel(db: Session, subscription_id: int, reason: str, actor: str) -> Subscription:
    """active|paused -> cancelled. Already cancelled is a no-op."""
    subscription = get_subscription(db, subscription_id)
    if subscription.status == "cancelled":
        return subscription
    return _transition(
        db, subscription, "cancel", actor,
        {"cancelled_reason": reason, "end_date": _now(), "next_payment_date": None},
        details=reason
    )


def expire(db: Session, subscription_id: int, actor: str = "system") -> Subscription:
    """active|paused -> expired"""
    subscription = get_subscription(db, subscription_id)
    if subscription.status == "expired":
        return subscription
    return _transition(
        db, subscription, "expire", actor,
        {"end_date": _as_aware(subscription.end_date) or _now(), "next_payment_date": None},
        details="Subscription term ended"
    )


def remaining_cycles(subscription: Subscription) -> int:
    return subscription.total_cycles - subscription.payment_count - subscription.failed_payment_count


def record_cycle_result(
    db: Session,
    subscription_id: int,
    success: bool,
    amount_paise: Optional[int] = None,
    payment_id: Optional[str] = None,
    actor: str = "gateway",
    paid_at: Optional[datetime] = None,
    reason: Optional[str] = None
) -> Subscription:
    """Account for one billing-cycle outcome reported by the gateway.

    Success: counters move with SQL increments, the open cycle record is
    completed (or a completed one is inserted), failures reset. A payment id
    whose cycle was already counted for this subscription is ignored; a
    cycle completed by a recheck or payment.captured is counted exactly once.
    Failure: failed_payment_count increments and the subscription pauses the
    first time the count reaches HALT_PAUSE_THRESHOLD while active.
    """
    subscription = get_subscription(db, subscription_id)
    if subscription.status == "pending_payment":
        raise InvalidTransition(
            "Subscription must be activated before cycles are recorded",
            current_state=subscription.status,
            event="charge" if success else "halt"
        )

    if success:
        return _record_charge(db, subscription, amount_paise, payment_id, actor, paid_at)
    return _record_failure(db, subscription, actor, reason)


def _record_charge(
    db: Session,
    subscription: Subscription,
    amount_paise: Optional[int],
    payment_id: Optional[str],
    actor: str,
    paid_at: Optional[datetime]
) -> Subscription:
    # A cycle completed elsewhere (recheck, payment.captured) is still counted once here
    existing = None
    if payment_id:
        existing = db.query(PaymentRecord).filter(
            PaymentRecord.cycle_of == subscription.id,
            PaymentRecord.razorpay_payment_id == payment_id
        ).first()
        if existing is not None and existing.counted_at is not None:
            logger.info(f"Charge {payment_id} already recorded for subscription {subscription.id}")
            return subscription

    if amount_paise:
        amount = amount_paise
    elif existing is not None:
        amount = existing.amount_paise
    else:
        amount = cadence.billed_amount(subscription.cadence, subscription.amount_paise)
    paid_at = paid_at or _now()
    previous = {
        "paymentCount": subscription.payment_count,
        "totalPaid": subscription.total_paid_paise,
        "failedPaymentCount": subscription.failed_payment_count,
    }

    cycle_record = existing if existing is not None and existing.status in ("pending", "completed") else None
    if cycle_record is None:
        cycle_record = db.query(PaymentRecord).filter(
            PaymentRecord.cycle_of == subscription.id,
            PaymentRecord.status == "pending"
        ).first()

    # Claim the cycle row before the counters move
    if cycle_record is not None:
        if cycle_record.status == "completed":
            claimed = db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == cycle_record.id, PaymentRecord.counted_at.is_(None))
                .values(counted_at=paid_at)
                .execution_options(synchronize_session="fetch")
            ).rowcount == 1
        else:
            claimed = apply_status(
                db, cycle_record.id, "pending", "completed", actor,
                action="payment_verified",
                details=f"Billing cycle {cycle_record.cycle_sequence} charged",
                updates={"razorpay_payment_id": payment_id, "amount_paise": amount, "counted_at": paid_at},
                commit=False
            )
        if not claimed:
            db.rollback()
            logger.info(f"Cycle record {cycle_record.id} counted concurrently for subscription {subscription.id}")
            db.refresh(subscription)
            return subscription

    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id)
        .values(
            payment_count=Subscription.payment_count + 1,
            total_paid_paise=Subscription.total_paid_paise + amount,
            failed_payment_count=0,
            last_payment_date=paid_at,
            next_payment_date=cadence.next_payment_date(paid_at, subscription.cadence),
            last_actor=actor,
            updated_at=_now(),
        )
        .execution_options(synchronize_session="fetch")
    )

    if cycle_record is None:
        sequence = db.execute(
            select(Subscription.payment_count).where(Subscription.id == subscription.id)
        ).scalar_one()
        cycle = PaymentRecord(
            kind="subscription_cycle",
            cycle_of=subscription.id,
            cycle_sequence=sequence,
            razorpay_payment_id=payment_id,
            amount_paise=amount,
            currency=subscription.currency,
            payer_name=subscription.user_name,
            payer_email=subscription.user_email,
            payer_phone=subscription.user_phone,
            payer_user_id=subscription.user_id,
            purpose=cadence.DISPLAY_NAMES.get(subscription.cadence),
            status="completed",
            payment_verified=True,
            payment_verified_at=paid_at,
            processed_at=paid_at,
            counted_at=paid_at,
            audit_status="unverified",
            is_visible_in_reports=True,
            is_visible_in_public=False,
        )
        db.add(cycle)

    add_audit_entry(
        db, ENTITY_SUBSCRIPTION, subscription.id, "subscription_charged", actor,
        details=f"Charged {amount} {subscription.currency} (payment {payment_id})",
        previous_values=previous
    )
    db.commit()
    db.refresh(subscription)
    subscription_transitions_counter.labels(event="charge", to_state=subscription.status).inc()
    return subscription


def _record_failure(
    db: Session,
    subscription: Subscription,
    actor: str,
    reason: Optional[str]
) -> Subscription:
    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id)
        .values(
            failed_payment_count=Subscription.failed_payment_count + 1,
            last_actor=actor,
            updated_at=_now(),
        )
        .execution_options(synchronize_session="fetch")
    )
    failed_count = db.execute(
        select(Subscription.failed_payment_count).where(Subscription.id == subscription.id)
    ).scalar_one()
    add_audit_entry(
        db, ENTITY_SUBSCRIPTION, subscription.id, "subscription_charge_failed", actor,
        details=reason or f"Charge failed ({failed_count} consecutive)",
        previous_values={"failedPaymentCount": failed_count - 1}
    )

    if failed_count >= settings.HALT_PAUSE_THRESHOLD:
        paused = db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, Subscription.status == "active")
            .values(status="paused", paused_reason=HALT_PAUSE_REASON, last_actor=actor, updated_at=_now())
            .execution_options(synchronize_session="fetch")
        )
        if paused.rowcount == 1:
            add_audit_entry(
                db, ENTITY_SUBSCRIPTION, subscription.id, AUDIT_ACTIONS["halt"], actor,
                details=HALT_PAUSE_REASON,
                previous_values={"status": "active"}
            )
            subscription_transitions_counter.labels(event="halt", to_state="paused").inc()
            logger.warning(
                f"Subscription {subscription.id} paused after {failed_count} failed charges"
            )

    db.commit()
    db.refresh(subscription)
    return subscription
