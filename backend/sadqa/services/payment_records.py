"""Payment record store: status transitions, verification, visibility and audit trail.

Every status change goes through `apply_status`, a conditional UPDATE keyed on
the status the caller observed. A change that loses a race simply reports
"not applied" instead of overwriting the winner.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update, case
from sqlalchemy.orm import Session

from sadqa.core.errors import InvalidTransition, RecordNotFound, PreconditionFailed
from sadqa.core.metrics import payment_status_changes_counter
from sadqa.models.audit_log import AuditLogEntry
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.recheck_history import RecheckHistoryEntry

logger = logging.getLogger(__name__)

ENTITY_PAYMENT = "payment_record"
ENTITY_SUBSCRIPTION = "subscription"

# (from_status, to_status) pairs a payment record may take
PAYMENT_TRANSITIONS = {
    ("pending", "completed"),
    ("pending", "failed"),
    ("failed", "completed"),  # late capture reported by the gateway
    ("completed", "refunded"),
}

RECEIPT_PREFIXES = {
    "donation": "donation",
    "purchase": "scrap",
}
_RECEIPT_PATTERN = re.compile(r"^(donation|scrap)_(\d+)$")


def can_change_status(current: str, new: str) -> bool:
    return (current, new) in PAYMENT_TRANSITIONS


def derive_visibility(payment_verified: bool, status: str, audit_status: str) -> Tuple[bool, bool]:
    """Return (is_visible_in_reports, is_visible_in_public)"""
    in_reports = bool(payment_verified) and status == "completed"
    in_public = in_reports and audit_status == "verified"
    return in_reports, in_public


def update_visibility(record: PaymentRecord) -> bool:
    """Recompute derived visibility on a loaded record, returning True if it changed"""
    in_reports, in_public = derive_visibility(record.payment_verified, record.status, record.audit_status)
    changed = (record.is_visible_in_reports, record.is_visible_in_public) != (in_reports, in_public)
    record.is_visible_in_reports = in_reports
    record.is_visible_in_public = in_public
    return changed


# ============================================================================
# CORRELATION TOKENS
# ============================================================================

def build_receipt(kind: str, record_id: int) -> str:
    """Receipt token sent with a gateway order, e.g. donation_42"""
    prefix = RECEIPT_PREFIXES.get(kind)
    if not prefix:
        raise ValueError(f"Payment kind {kind} has no receipt prefix")
    return f"{prefix}_{record_id}"


def parse_receipt(receipt: Optional[str]) -> Optional[Tuple[str, int]]:
    """Return (kind, record_id) for a receipt token, or None when it is not ours"""
    if not receipt:
        return None
    match = _RECEIPT_PATTERN.match(receipt.strip())
    if not match:
        return None
    kind = "donation" if match.group(1) == "donation" else "purchase"
    return kind, int(match.group(2))


# ============================================================================
# AUDIT LOG / RECHECK HISTORY
# ============================================================================

def add_audit_entry(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    performed_by: str,
    details: Optional[str] = None,
    previous_values: Optional[Dict[str, Any]] = None
) -> AuditLogEntry:
    """Append an audit entry to the session (committed by the caller)"""
    entry = AuditLogEntry(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        performed_by=performed_by,
        performed_at=datetime.now(timezone.utc),
        details=details,
        previous_values=previous_values,
    )
    db.add(entry)
    return entry


def get_audit_log(db: Session, entity_type: str, entity_id: int) -> List[AuditLogEntry]:
    return (
        db.query(AuditLogEntry)
        .filter(AuditLogEntry.entity_type == entity_type, AuditLogEntry.entity_id == entity_id)
        .order_by(AuditLogEntry.id)
        .all()
    )


def add_recheck_entry(
    db: Session,
    record_id: int,
    performed_by: str,
    razorpay_payment_id: Optional[str],
    previous_status: str,
    current_status: str,
    success: bool,
    error_message: Optional[str] = None,
    raw_gateway_response: Optional[Dict[str, Any]] = None,
    attempts: int = 1
) -> RecheckHistoryEntry:
    entry = RecheckHistoryEntry(
        payment_record_id=record_id,
        performed_by=performed_by,
        performed_at=datetime.now(timezone.utc),
        razorpay_payment_id=razorpay_payment_id,
        previous_status=previous_status,
        current_status=current_status,
        success=success,
        error_message=error_message,
        raw_gateway_response=raw_gateway_response,
        attempts=attempts,
    )
    db.add(entry)
    return entry


def get_recheck_history(db: Session, record_id: int) -> List[RecheckHistoryEntry]:
    return (
        db.query(RecheckHistoryEntry)
        .filter(RecheckHistoryEntry.payment_record_id == record_id)
        .order_by(RecheckHistoryEntry.id)
        .all()
    )


# ============================================================================
# LOOKUPS
# ============================================================================

def get_payment_record(db: Session, record_id: int) -> PaymentRecord:
    record = db.query(PaymentRecord).filter(PaymentRecord.id == record_id).first()
    if not record:
        raise RecordNotFound(f"Payment record {record_id} not found")
    return record


def find_payment_record(
    db: Session,
    order_id: Optional[str] = None,
    receipt: Optional[str] = None,
    payment_id: Optional[str] = None
) -> Optional[PaymentRecord]:
    """Locate a record by gateway order id, then receipt token, then payment id"""
    if order_id:
        record = db.query(PaymentRecord).filter(PaymentRecord.razorpay_order_id == order_id).first()
        if record:
            return record

    parsed = parse_receipt(receipt)
    if parsed:
        kind, record_id = parsed
        record = db.query(PaymentRecord).filter(
            PaymentRecord.id == record_id, PaymentRecord.kind == kind
        ).first()
        if record:
            return record

    if payment_id:
        return db.query(PaymentRecord).filter(PaymentRecord.razorpay_payment_id == payment_id).first()
    return None


# ============================================================================
# STATUS CHANGES
# ============================================================================

def apply_status(
    db: Session,
    record_id: int,
    expected_status: str,
    new_status: str,
    performed_by: str,
    action: str,
    details: Optional[str] = None,
    updates: Optional[Dict[str, Any]] = None,
    commit: bool = True
) -> bool:
    """Move a record from `expected_status` to `new_status`.

    Returns False, without writing anything, when the row is no longer in
    `expected_status`. Raises InvalidTransition for pairs outside the table.
    """
    if not can_change_status(expected_status, new_status):
        raise InvalidTransition(
            f"Payment status cannot change from {expected_status} to {new_status}",
            current_state=expected_status,
            event=new_status
        )

    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {"status": new_status, "updated_at": now}
    if new_status == "completed":
        values.update(
            payment_verified=True,
            payment_verified_at=now,
            processed_at=now,
            failure_reason=None,
            is_visible_in_reports=True,
            is_visible_in_public=case((PaymentRecord.audit_status == "verified", True), else_=False),
        )
    else:
        values.update(is_visible_in_reports=False, is_visible_in_public=False)
        if new_status == "refunded":
            values["refunded_at"] = now
    if updates:
        values.update(updates)

    result = db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == record_id, PaymentRecord.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        logger.info(
            f"Payment record {record_id} not moved to {new_status}: no longer {expected_status}"
        )
        return False

    add_audit_entry(
        db, ENTITY_PAYMENT, record_id, action, performed_by,
        details=details,
        previous_values={"status": expected_status}
    )
    if commit:
        db.commit()
    payment_status_changes_counter.labels(to_status=new_status).inc()
    return True


def mark_completed(
    db: Session,
    record: PaymentRecord,
    performed_by: str,
    payment_id: Optional[str] = None,
    order_id: Optional[str] = None,
    details: Optional[str] = None,
    commit: bool = True
) -> bool:
    """Mark a record captured and verified; a record already completed is left alone"""
    if record.status not in ("pending", "failed"):
        return False

    updates: Dict[str, Any] = {}
    if payment_id:
        updates["razorpay_payment_id"] = payment_id
    if order_id and not record.razorpay_order_id:
        updates["razorpay_order_id"] = order_id

    return apply_status(
        db, record.id, record.status, "completed", performed_by,
        action="payment_verified",
        details=details or f"Payment {payment_id or record.razorpay_payment_id} captured",
        updates=updates,
        commit=commit
    )


def mark_failed(
    db: Session,
    record: PaymentRecord,
    performed_by: str,
    reason: Optional[str] = None,
    payment_id: Optional[str] = None,
    commit: bool = True
) -> bool:
    """Mark a pending record failed; completed records are never downgraded"""
    if record.status != "pending":
        return False
    updates: Dict[str, Any] = {"failure_reason": reason}
    if payment_id:
        updates["razorpay_payment_id"] = payment_id
    return apply_status(
        db, record.id, "pending", "failed", performed_by,
        action="payment_failed",
        details=reason,
        updates=updates,
        commit=commit
    )


def set_audit_status(
    db: Session,
    record_id: int,
    approve: bool,
    performed_by: str,
    notes: Optional[str] = None
) -> PaymentRecord:
    """Admin approval or rejection of a record for public reporting"""
    record = get_payment_record(db, record_id)
    new_audit_status = "verified" if approve else "rejected"
    if approve and not (record.payment_verified and record.status == "completed"):
        raise PreconditionFailed("Only verified, completed payments can be approved")

    previous = {
        "auditStatus": record.audit_status,
        "isVisibleInReports": record.is_visible_in_reports,
        "isVisibleInPublic": record.is_visible_in_public,
    }
    if record.audit_status == new_audit_status:
        return record

    record.audit_status = new_audit_status
    update_visibility(record)
    add_audit_entry(
        db, ENTITY_PAYMENT, record.id,
        "audit_approved" if approve else "audit_rejected",
        performed_by,
        details=notes,
        previous_values=previous
    )
    db.commit()
    db.refresh(record)
    return record


def create_payment_record(
    db: Session,
    amount_paise: int,
    performed_by: str,
    kind: str = "donation",
    currency: str = "INR",
    payer_name: Optional[str] = None,
    payer_email: Optional[str] = None,
    payer_phone: Optional[str] = None,
    payer_user_id: Optional[str] = None,
    purpose: Optional[str] = None,
    cycle_of: Optional[int] = None,
    cycle_sequence: Optional[int] = None,
    commit: bool = True
) -> PaymentRecord:
    if amount_paise <= 0:
        raise PreconditionFailed("Amount must be positive")

    record = PaymentRecord(
        kind=kind,
        amount_paise=amount_paise,
        currency=currency,
        payer_name=payer_name,
        payer_email=payer_email,
        payer_phone=payer_phone,
        payer_user_id=payer_user_id,
        purpose=purpose,
        cycle_of=cycle_of,
        cycle_sequence=cycle_sequence,
        status="pending",
        audit_status="unverified",
    )
    db.add(record)
    db.flush()
    add_audit_entry(db, ENTITY_PAYMENT, record.id, "created", performed_by,
                    details=f"{kind} of {amount_paise} {currency}")
    if commit:
        db.commit()
        db.refresh(record)
    return record
