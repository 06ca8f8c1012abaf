"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_notification_outbox_worker():
    """Deliver queued order and agent emails (outbox pattern). Picks PENDING rows with next_run_at <= now."""
    try:
        from services.notification_outbox import notification_outbox
        counts = await notification_outbox.process_pending(limit=50)
        processed = counts["sent"] + counts["retrying"] + counts["failed"]
        if processed:
            logger.info(f"Notification outbox worker: {counts}")
        return {"message": f"Processed {processed} notifications", "count": processed, **counts}
    except Exception as e:
        logger.error(f"Notification outbox worker failed: {e}")
        raise


async def run_wallet_credit_reconciler():
    """Re-apply agent wallet credits left pending after a delivery."""
    try:
        from services.agent_wallet_service import reconcile_pending_credits
        count = await reconcile_pending_credits(limit=100)
        if count:
            logger.info(f"Wallet credit reconciler applied {count} pending credit(s)")
        return {"message": f"Applied {count} pending wallet credits", "count": count}
    except Exception as e:
        logger.error(f"Wallet credit reconciler failed: {e}")
        raise


# Map scheduler job id -> run function (for admin manual run)
JOB_RUNNERS = {
    "notification_outbox_worker": run_notification_outbox_worker,
    "wallet_credit_reconciler": run_wallet_credit_reconciler,
}
