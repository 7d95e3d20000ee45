"""Webhook event ledger used to process each gateway event id at most once"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sadqa.models.webhook_event import WebhookEvent

logger = logging.getLogger("webhooks")


@dataclass
class ClaimResult:
    event_id: str
    claimed: bool


def claim_event(db: Session, event_id: str, event_type: str) -> ClaimResult:
    """Insert the event id; the unique constraint decides who processes it.

    The claim is committed before any subscription or payment mutation, so a
    concurrent delivery of the same id fails its insert and gets claimed=False.
    """
    db.add(WebhookEvent(
        gateway_event_id=event_id,
        event_type=event_type,
        received_at=datetime.now(timezone.utc),
        processed=False,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate webhook event {event_id} ({event_type}) ignored")
        return ClaimResult(event_id=event_id, claimed=False)
    return ClaimResult(event_id=event_id, claimed=True)


def mark_event_processed(db: Session, event_id: str, error_message: Optional[str] = None) -> None:
    """Record the outcome of a claimed event"""
    event = db.query(WebhookEvent).filter(WebhookEvent.gateway_event_id == event_id).first()
    if event:
        event.processed = error_message is None
        event.processed_at = datetime.now(timezone.utc)
        event.error_message = error_message
        db.commit()


def get_event(db: Session, event_id: str) -> Optional[WebhookEvent]:
    return db.query(WebhookEvent).filter(WebhookEvent.gateway_event_id == event_id).first()
