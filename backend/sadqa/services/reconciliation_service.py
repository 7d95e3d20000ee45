"""Reconciliation of local payment and subscription state against the gateway.

A recheck reads the record, asks the gateway, then applies only the
transitions the payment table permits. Every attempt leaves a history row.
Bulk rechecks run as a background task that publishes progress events on a
queue; the task keeps going if nobody is listening any more.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from sadqa.core.config import settings
from sadqa.core.errors import (
    GatewayError, GatewayTimeout, GatewayUnavailable, InvalidTransition,
    PreconditionFailed, RecordNotFound
)
from sadqa.core.metrics import recheck_results_counter, bulk_rechecks_in_flight_gauge
from sadqa.core.observability import capture_exception
from sadqa.core.otel import traced
from sadqa.models.payment_record import PaymentRecord
from sadqa.services import subscription_state
from sadqa.services.gateway_client import RazorpayClient
from sadqa.services.payment_records import (
    add_recheck_entry, apply_status, can_change_status, get_payment_record
)

logger = logging.getLogger("reconciliation")

# Gateway payment status -> local payment record status
GATEWAY_PAYMENT_STATUS = {
    "captured": "completed",
    "failed": "failed",
    "refunded": "refunded",
    "created": "pending",
    "authorized": "pending",
}

# Gateway subscription status -> local subscription status (None: leave alone)
GATEWAY_SUBSCRIPTION_STATUS = {
    "active": "active",
    "halted": "paused",
    "paused": "paused",
    "cancelled": "cancelled",
    "completed": "expired",
    "expired": "expired",
    "created": None,
    "authenticated": None,
    "pending": None,
}

MISSING_PAYMENT_ID = "No Razorpay payment ID found"

# Bulk jobs still running, kept referenced until they finish
_running_jobs: Set[asyncio.Task] = set()


@dataclass
class RecheckResult:
    donation_id: int
    payment_id: Optional[str]
    previous_status: str
    current_status: str
    success: bool
    message: str
    error: Optional[str] = None
    gateway_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "donationId": self.donation_id,
            "paymentId": self.payment_id,
            "previousStatus": self.previous_status,
            "currentStatus": self.current_status,
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "gatewayStatus": self.gateway_status,
        }


@dataclass
class BulkRecheckJob:
    """Handle on a running bulk recheck; `events()` yields its progress"""
    total: int
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.queue.get()
            yield event
            if event.get("type") in ("complete", "error"):
                return


class ReconciliationService:
    """Rechecks payment records and subscriptions against the gateway"""

    def __init__(
        self,
        gateway: RazorpayClient,
        session_factory: Callable[[], Session],
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.BULK_RECHECK_BATCH_SIZE
        self.batch_delay = settings.BULK_RECHECK_BATCH_DELAY if batch_delay is None else batch_delay
        self.max_attempts = max_attempts or settings.RECHECK_MAX_ATTEMPTS
        self.retry_base_delay = (
            settings.RECHECK_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )

    async def _fetch_payment(self, payment_id: str) -> Tuple[Dict[str, Any], int]:
        """Fetch a payment, retrying timeouts and outages with exponential backoff"""
        last_error: Optional[GatewayError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.gateway.fetch_payment(payment_id), attempt
            except (GatewayTimeout, GatewayUnavailable) as e:
                last_error = e
                logger.warning(
                    f"Fetching payment {payment_id} failed (attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))
        raise last_error

    async def recheck(
        self,
        record_id: int,
        payment_id: Optional[str] = None,
        performed_by: str = "system"
    ) -> RecheckResult:
        """Reconcile one payment record. Raises RecordNotFound; every other failure is returned."""
        with traced("payment.recheck", donation_id=record_id, performed_by=performed_by):
            return await self._recheck(record_id, payment_id, performed_by)

    async def _recheck(self, record_id: int, payment_id: Optional[str], performed_by: str) -> RecheckResult:
        db = self.session_factory()
        try:
            record = get_payment_record(db, record_id)
            previous = record.status
            payment_id = payment_id or record.razorpay_payment_id
            db.rollback()

            if not payment_id:
                return self._finish_failure(
                    db, record_id, performed_by, None, previous, MISSING_PAYMENT_ID,
                    message="Recheck not possible", outcome="precondition_failed"
                )

            try:
                data, attempts = await self._fetch_payment(payment_id)
            except GatewayError as e:
                return self._finish_failure(
                    db, record_id, performed_by, payment_id, previous, str(e),
                    message="Could not reach payment gateway", outcome="gateway_error",
                    attempts=self.max_attempts
                )

            return self._apply_gateway_payment(db, record_id, payment_id, performed_by, data, attempts)
        finally:
            db.close()

    def _finish_failure(
        self,
        db: Session,
        record_id: int,
        performed_by: str,
        payment_id: Optional[str],
        status: str,
        error: str,
        message: str,
        outcome: str,
        raw: Optional[Dict[str, Any]] = None,
        attempts: int = 1,
        gateway_status: Optional[str] = None
    ) -> RecheckResult:
        add_recheck_entry(
            db, record_id, performed_by, payment_id, status, status,
            success=False, error_message=error, raw_gateway_response=raw, attempts=attempts
        )
        db.commit()
        recheck_results_counter.labels(outcome=outcome).inc()
        logger.warning(f"Recheck of payment record {record_id} failed: {error}")
        return RecheckResult(
            donation_id=record_id,
            payment_id=payment_id,
            previous_status=status,
            current_status=status,
            success=False,
            message=message,
            error=error,
            gateway_status=gateway_status,
        )

    def _apply_gateway_payment(
        self,
        db: Session,
        record_id: int,
        payment_id: str,
        performed_by: str,
        data: Dict[str, Any],
        attempts: int
    ) -> RecheckResult:
        record = get_payment_record(db, record_id)
        previous = record.status
        gateway_status = data.get("status")
        mapped = GATEWAY_PAYMENT_STATUS.get(gateway_status)

        if mapped is None:
            return self._finish_failure(
                db, record_id, performed_by, payment_id, previous,
                f"Unknown gateway payment status: {gateway_status}",
                message="Gateway status not recognised", outcome="unknown_status",
                raw=data, attempts=attempts, gateway_status=gateway_status
            )

        if mapped != previous and not can_change_status(previous, mapped):
            return self._finish_failure(
                db, record_id, performed_by, payment_id, previous,
                f"Gateway reports {gateway_status}; a {previous} record cannot become {mapped}",
                message="Gateway disagrees; record left unchanged", outcome="disagreement",
                raw=data, attempts=attempts, gateway_status=gateway_status
            )

        current = previous
        if mapped == previous:
            message = "Payment confirmed, no change"
        else:
            updates: Dict[str, Any] = {"razorpay_payment_id": payment_id}
            if mapped == "failed":
                updates["failure_reason"] = data.get("error_description") or "Payment failed at gateway"
            if data.get("order_id") and not record.razorpay_order_id:
                updates["razorpay_order_id"] = data["order_id"]
            changed = apply_status(
                db, record_id, previous, mapped, performed_by,
                action="payment_rechecked",
                details=f"Recheck: gateway status {gateway_status}",
                updates=updates,
                commit=False
            )
            if changed:
                current = mapped
                message = f"Payment status updated from {previous} to {mapped}"
            else:
                db.refresh(record)
                current = record.status
                message = f"Payment status changed concurrently to {current}"

        add_recheck_entry(
            db, record_id, performed_by, payment_id, previous, current,
            success=True, raw_gateway_response=data, attempts=attempts
        )
        db.commit()
        if current == "completed" and record.kind == "subscription_cycle":
            self._count_cycle(db, record, payment_id, performed_by)
        recheck_results_counter.labels(outcome="changed" if current != previous else "unchanged").inc()
        logger.info(f"Recheck of payment record {record_id}: {message}")
        return RecheckResult(
            donation_id=record_id,
            payment_id=payment_id,
            previous_status=previous,
            current_status=current,
            success=True,
            message=message,
            gateway_status=gateway_status,
        )

    def _count_cycle(self, db: Session, record: PaymentRecord, payment_id: str, performed_by: str) -> None:
        """Add a completed billing cycle to its subscription totals if nothing has yet"""
        if record.cycle_of is None or record.counted_at is not None:
            return
        try:
            subscription_state.record_cycle_result(
                db, record.cycle_of, success=True,
                amount_paise=record.amount_paise,
                payment_id=payment_id,
                actor=performed_by,
            )
        except InvalidTransition as e:
            # Counted later by subscription.charged once the subscription is active
            logger.warning(f"Cycle record {record.id} completed but not counted yet: {e}")

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def _recheck_item(self, record_id: int, performed_by: str) -> RecheckResult:
        try:
            return await self.recheck(record_id, None, performed_by)
        except RecordNotFound as e:
            recheck_results_counter.labels(outcome="not_found").inc()
            return RecheckResult(record_id, None, "unknown", "unknown", False, "Donation not found", str(e))
        except Exception as e:
            capture_exception(e, "bulk-recheck", donation_id=record_id)
            return RecheckResult(record_id, None, "unknown", "unknown", False, "Recheck failed", str(e))

    async def run_batches(
        self,
        record_ids: List[int],
        performed_by: str,
        on_progress: Optional[Callable[[int, int], Any]] = None
    ) -> List[RecheckResult]:
        """Recheck ids in fixed windows, concurrently within a window"""
        results: List[RecheckResult] = []
        total = len(record_ids)
        for start in range(0, total, self.batch_size):
            window = record_ids[start:start + self.batch_size]
            results.extend(await asyncio.gather(
                *(self._recheck_item(record_id, performed_by) for record_id in window)
            ))
            if on_progress:
                await on_progress(len(results), total)
            if start + self.batch_size < total and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
        return results

    def bulk_recheck(self, record_ids: List[int], performed_by: str) -> BulkRecheckJob:
        """Start a bulk recheck in the background and return its event handle"""
        job = BulkRecheckJob(total=len(record_ids))
        job.task = asyncio.get_running_loop().create_task(self._run_bulk(job, list(record_ids), performed_by))
        _running_jobs.add(job.task)
        job.task.add_done_callback(_running_jobs.discard)
        return job

    async def _run_bulk(self, job: BulkRecheckJob, record_ids: List[int], performed_by: str) -> None:
        bulk_rechecks_in_flight_gauge.inc()
        try:
            await job.queue.put({
                "type": "progress",
                "completed": 0,
                "total": job.total,
                "message": "Starting bulk payment recheck...",
            })

            async def publish(completed: int, total: int):
                await job.queue.put({
                    "type": "progress",
                    "completed": completed,
                    "total": total,
                    "message": f"Completed {completed} of {total} donations",
                })

            results = await self.run_batches(record_ids, performed_by, on_progress=publish)
            successful = sum(1 for r in results if r.success)
            await job.queue.put({
                "type": "complete",
                "results": [r.to_dict() for r in results],
                "summary": {
                    "total": len(results),
                    "successful": successful,
                    "failed": len(results) - successful,
                },
            })
            logger.info(f"Bulk recheck by {performed_by}: {successful}/{len(results)} succeeded")
        except Exception as e:
            capture_exception(e, "bulk-recheck", performed_by=performed_by, total=job.total)
            await job.queue.put({"type": "error", "error": str(e)})
        finally:
            bulk_rechecks_in_flight_gauge.dec()

    async def recheck_stale_payments(
        self,
        older_than_minutes: Optional[int] = None,
        limit: int = 100,
        performed_by: str = "system:stale-recheck"
    ) -> List[RecheckResult]:
        """Recheck pending records that already carry a gateway payment id"""
        minutes = older_than_minutes if older_than_minutes is not None else settings.STALE_PAYMENT_AGE_MINUTES
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        db = self.session_factory()
        try:
            record_ids = [
                row.id for row in db.query(PaymentRecord.id).filter(
                    PaymentRecord.status == "pending",
                    PaymentRecord.razorpay_payment_id.isnot(None),
                    PaymentRecord.updated_at < cutoff,
                ).order_by(PaymentRecord.updated_at).limit(limit).all()
            ]
        finally:
            db.close()

        if not record_ids:
            return []
        return await self.run_batches(record_ids, performed_by)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def sync_subscription(self, subscription_id: int, performed_by: str) -> Dict[str, Any]:
        """Bring a subscription's status in line with the gateway through legal transitions"""
        db = self.session_factory()
        try:
            subscription = subscription_state.get_subscription(db, subscription_id)
            gateway_id = subscription.razorpay_subscription_id
            db.rollback()
            if not gateway_id:
                raise PreconditionFailed("Subscription has no gateway subscription id")

            data = await self.gateway.fetch_subscription(gateway_id)

            subscription = subscription_state.get_subscription(db, subscription_id)
            previous = subscription.status
            gateway_status = data.get("status")
            target = GATEWAY_SUBSCRIPTION_STATUS.get(gateway_status)
            message = "Subscription already in sync"

            if target and target != previous:
                try:
                    subscription = self._move_subscription(db, subscription, target, gateway_status, performed_by, data)
                    message = f"Subscription status updated from {previous} to {subscription.status}"
                except InvalidTransition as e:
                    message = f"Gateway reports {gateway_status}; not applied: {e}"
                    logger.warning(f"Sync of subscription {subscription_id}: {message}")
            elif target is None:
                message = f"Gateway status {gateway_status} leaves local state unchanged"

            return {
                "subscriptionId": subscription_id,
                "previousStatus": previous,
                "currentStatus": subscription.status,
                "gatewayStatus": gateway_status,
                "changed": subscription.status != previous,
                "message": message,
            }
        finally:
            db.close()

    def _move_subscription(self, db, subscription, target, gateway_status, performed_by, data):
        current = subscription.status
        reason = f"Synced from gateway status {gateway_status}"
        if target == "active" and current == "pending_payment":
            next_payment = None
            if data.get("current_end"):
                next_payment = datetime.fromtimestamp(int(data["current_end"]), tz=timezone.utc)
            return subscription_state.activate(
                db, subscription.id, performed_by,
                razorpay_customer_id=data.get("customer_id"),
                next_payment_date=next_payment
            )
        if target == "active":
            return subscription_state.resume(db, subscription.id, reason, performed_by)
        if target == "paused":
            return subscription_state.pause(db, subscription.id, reason, performed_by)
        if target == "cancelled":
            return subscription_state.cancel(db, subscription.id, reason, performed_by)
        if target == "expired":
            return subscription_state.expire(db, subscription.id, performed_by)
        raise InvalidTransition(f"No transition to {target}", current_state=current)
