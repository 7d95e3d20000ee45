"""Background scheduler tasks for subscription expiry and stale payment rechecks"""
import asyncio
import logging

from sadqa.core.config import settings
from sadqa.core.metrics import scheduler_runs_counter
from sadqa.db.session import SessionLocal
from sadqa.services.gateway_client import RazorpayClient
from sadqa.services.reconciliation_service import ReconciliationService
from sadqa.services.subscription_service import expire_due_subscriptions

logger = logging.getLogger(__name__)
reconciliation_logger = logging.getLogger("reconciliation")


def run_expiry_once() -> int:
    """Expire every subscription that is due. Returns how many were expired."""
    db = SessionLocal()
    try:
        return expire_due_subscriptions(db)
    finally:
        db.close()


async def run_stale_recheck_once(service: ReconciliationService = None) -> int:
    """Recheck pending payments that have sat unconfirmed. Returns how many changed."""
    service = service or ReconciliationService(RazorpayClient(), SessionLocal)
    results = await service.recheck_stale_payments()
    changed = sum(1 for r in results if r.success and r.current_status != r.previous_status)
    if results:
        reconciliation_logger.info(f"Stale payment recheck: {changed} of {len(results)} records updated")
    return changed


async def subscription_expiry_task():
    """Background task that expires subscriptions past their end date or cycle count"""
    while True:
        try:
            await asyncio.sleep(settings.EXPIRY_CHECK_INTERVAL)
            expired = run_expiry_once()
            scheduler_runs_counter.labels(job="subscription_expiry", status="success").inc()
            if expired:
                logger.info(f"Subscription expiry run expired {expired} subscriptions")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job="subscription_expiry", status="error").inc()
            logger.error(f"Error in subscription expiry task: {e}", exc_info=True)


async def stale_payment_recheck_task():
    """Background task that rechecks pending payments the webhook never confirmed"""
    while True:
        try:
            await asyncio.sleep(settings.STALE_PAYMENT_CHECK_INTERVAL)
            await run_stale_recheck_once()
            scheduler_runs_counter.labels(job="stale_payment_recheck", status="success").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job="stale_payment_recheck", status="error").inc()
            logger.error(f"Error in stale payment recheck task: {e}", exc_info=True)
