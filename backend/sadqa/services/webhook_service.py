"""Razorpay webhook processing: verify, claim, route"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from sadqa.core.config import settings
from sadqa.core.errors import SignatureInvalid, InvalidTransition
from sadqa.core.metrics import (
    webhook_events_counter, webhook_signature_failures_counter, duplicate_events_counter
)
from sadqa.core.observability import capture_exception
from sadqa.core.otel import traced
from sadqa.core.signatures import verify_webhook_signature
from sadqa.models.subscription import Subscription
from sadqa.services import notification_service
from sadqa.services import subscription_state
from sadqa.services.payment_records import find_payment_record, mark_completed, mark_failed
from sadqa.services.webhook_ledger import claim_event, mark_event_processed

logger = logging.getLogger("webhooks")

GATEWAY_ACTOR = "gateway"

SUBSCRIPTION_EVENTS = (
    "subscription.activated",
    "subscription.charged",
    "subscription.halted",
    "subscription.cancelled",
)


def _entity(event: Dict[str, Any], name: str) -> Dict[str, Any]:
    """payload.<name>.entity, or {} when absent"""
    payload = event.get("payload") or {}
    wrapper = payload.get(name) or {}
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def process_razorpay_webhook(
    raw_body: bytes,
    signature: Optional[str],
    db: Session,
    event_id_header: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> Dict[str, Any]:
    """Verify, claim and dispatch one webhook delivery.

    Raises SignatureInvalid when the body does not match the signature. Any
    other failure is captured and swallowed so the gateway does not retry.
    """
    if not verify_webhook_signature(raw_body, signature, settings.RAZORPAY_WEBHOOK_SECRET):
        webhook_signature_failures_counter.inc()
        raise SignatureInvalid("Invalid webhook signature")

    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        capture_exception(e, "razorpay-webhook", correlation_id=correlation_id)
        return {"received": True}

    event_type = event.get("event") or "unknown"
    event_id = event.get("id") or event_id_header
    if not event_id:
        logger.warning(f"Webhook {event_type} carries no event id; not processed")
        webhook_events_counter.labels(event_type=event_type, outcome="missing_id").inc()
        return {"received": True}

    claim = claim_event(db, event_id, event_type)
    if not claim.claimed:
        duplicate_events_counter.inc()
        webhook_events_counter.labels(event_type=event_type, outcome="duplicate").inc()
        return {"received": True}

    with traced("webhook.dispatch", event_id=event_id, event_type=event_type, correlation_id=correlation_id):
        try:
            handled = dispatch_event(db, event)
        except Exception as e:
            db.rollback()
            capture_exception(
                e, "razorpay-webhook",
                event_id=event_id, event_type=event_type, correlation_id=correlation_id
            )
            mark_event_processed(db, event_id, error_message=f"{type(e).__name__}: {e}")
            webhook_events_counter.labels(event_type=event_type, outcome="error").inc()
            return {"received": True}

    mark_event_processed(db, event_id)
    webhook_events_counter.labels(
        event_type=event_type, outcome="processed" if handled else "ignored"
    ).inc()
    return {"received": True}


def dispatch_event(db: Session, event: Dict[str, Any]) -> bool:
    """Route a claimed event to its handler. Returns False for events we ignore."""
    event_type = event.get("event")
    if event_type in ("payment.captured", "order.paid"):
        handle_payment_captured(db, event)
    elif event_type == "payment.failed":
        handle_payment_failed(db, event)
    elif event_type == "subscription.activated":
        handle_subscription_activated(db, event)
    elif event_type == "subscription.charged":
        handle_subscription_charged(db, event)
    elif event_type == "subscription.halted":
        handle_subscription_halted(db, event)
    elif event_type == "subscription.cancelled":
        handle_subscription_cancelled(db, event)
    else:
        logger.debug(f"Ignoring webhook event {event_type}")
        return False
    return True


# ============================================================================
# PAYMENT EVENTS
# ============================================================================

def handle_payment_captured(db: Session, event: Dict[str, Any]) -> None:
    payment = _entity(event, "payment")
    order = _entity(event, "order")
    order_id = order.get("id") or payment.get("order_id")
    payment_id = payment.get("id")
    receipt = order.get("receipt")

    record = find_payment_record(db, order_id=order_id, receipt=receipt)
    if not record:
        logger.warning(
            f"No payment record for captured payment {payment_id} "
            f"(order {order_id}, receipt {receipt}); nothing updated"
        )
        return

    if mark_completed(db, record, GATEWAY_ACTOR, payment_id=payment_id, order_id=order_id,
                      details=f"{event.get('event')} for payment {payment_id}"):
        db.refresh(record)
        logger.info(f"Payment record {record.id} marked completed via webhook")
        if record.kind == "donation":
            notification_service.notify("donation_thank_you", {
                "donationId": record.id,
                "amount": record.amount_paise,
                "currency": record.currency,
                "payerName": record.payer_name,
                "payerEmail": record.payer_email,
                "payerPhone": record.payer_phone,
            })


def handle_payment_failed(db: Session, event: Dict[str, Any]) -> None:
    payment = _entity(event, "payment")
    payment_id = payment.get("id")
    record = find_payment_record(db, order_id=payment.get("order_id"), payment_id=payment_id)
    if not record:
        logger.warning(f"No payment record for failed payment {payment_id}; nothing updated")
        return
    reason = payment.get("error_description") or "Payment failed at gateway"
    if mark_failed(db, record, GATEWAY_ACTOR, reason=reason, payment_id=payment_id):
        logger.info(f"Payment record {record.id} marked failed: {reason}")


# ============================================================================
# SUBSCRIPTION EVENTS
# ============================================================================

def find_subscription(db: Session, gateway_subscription: Dict[str, Any]) -> Optional[Subscription]:
    """Locate by gateway subscription id, then by the id we put in the notes"""
    gateway_id = gateway_subscription.get("id")
    if gateway_id:
        subscription = db.query(Subscription).filter(
            Subscription.razorpay_subscription_id == gateway_id
        ).first()
        if subscription:
            return subscription

    notes = gateway_subscription.get("notes") or {}
    local_id = notes.get("subscription_id") if isinstance(notes, dict) else None
    if local_id:
        try:
            return db.query(Subscription).filter(Subscription.id == int(local_id)).first()
        except (TypeError, ValueError):
            logger.warning(f"Malformed subscription_id note {local_id!r} on {gateway_id}")
    return None


def _subscription_for_event(db: Session, event: Dict[str, Any]) -> Optional[Subscription]:
    gateway_subscription = _entity(event, "subscription")
    subscription = find_subscription(db, gateway_subscription)
    if not subscription:
        logger.warning(
            f"No local subscription for gateway subscription {gateway_subscription.get('id')} "
            f"({event.get('event')}); nothing updated"
        )
    return subscription


def _activate_from_event(db: Session, subscription: Subscription, event: Dict[str, Any]) -> Subscription:
    gateway_subscription = _entity(event, "subscription")
    return subscription_state.activate(
        db, subscription.id, GATEWAY_ACTOR,
        razorpay_subscription_id=gateway_subscription.get("id"),
        razorpay_customer_id=gateway_subscription.get("customer_id"),
        start_date=_from_epoch(gateway_subscription.get("start_at")),
        next_payment_date=_from_epoch(gateway_subscription.get("current_end")),
        end_date=_from_epoch(gateway_subscription.get("end_at")),
    )


def handle_subscription_activated(db: Session, event: Dict[str, Any]) -> None:
    subscription = _subscription_for_event(db, event)
    if not subscription:
        return
    if subscription.status != "pending_payment":
        logger.info(f"Subscription {subscription.id} already {subscription.status}; activation ignored")
        return
    _activate_from_event(db, subscription, event)


def handle_subscription_charged(db: Session, event: Dict[str, Any]) -> None:
    subscription = _subscription_for_event(db, event)
    if not subscription:
        return

    # charged can arrive before activated
    if subscription.status == "pending_payment":
        subscription = _activate_from_event(db, subscription, event)

    payment = _entity(event, "payment")
    subscription = subscription_state.record_cycle_result(
        db, subscription.id, success=True,
        amount_paise=payment.get("amount"),
        payment_id=payment.get("id"),
        actor=GATEWAY_ACTOR,
        paid_at=_from_epoch(payment.get("created_at")),
    )
    notification_service.notify("subscription_charged", {
        "subscriptionId": subscription.id,
        "paymentCount": subscription.payment_count,
        "amount": payment.get("amount"),
        "userEmail": subscription.user_email,
    })


def handle_subscription_halted(db: Session, event: Dict[str, Any]) -> None:
    subscription = _subscription_for_event(db, event)
    if not subscription:
        return
    if subscription.status in subscription_state.TERMINAL_STATES:
        logger.info(f"Halt for {subscription.status} subscription {subscription.id} ignored")
        return
    try:
        subscription_state.record_cycle_result(
            db, subscription.id, success=False, actor=GATEWAY_ACTOR,
            reason="Gateway reported subscription halted"
        )
    except InvalidTransition as e:
        logger.warning(f"Halt for subscription {subscription.id} not recorded: {e}")


def handle_subscription_cancelled(db: Session, event: Dict[str, Any]) -> None:
    subscription = _subscription_for_event(db, event)
    if not subscription:
        return
    if subscription.status in subscription_state.TERMINAL_STATES:
        return
    if subscription.status == "pending_payment":
        logger.warning(f"Gateway cancelled subscription {subscription.id} before activation")
        return
    subscription_state.cancel(db, subscription.id, subscription_state.GATEWAY_CANCEL_REASON, GATEWAY_ACTOR)
