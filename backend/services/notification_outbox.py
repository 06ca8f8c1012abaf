"""
Notification outbox.

Order transitions never send email inline. They insert a PENDING row into
notification_outbox and return; run_notification_outbox_worker (job_runner)
delivers rows through EmailService and retries with backoff.

Retry backoff seconds: 30s, 2m, 10m (3 attempts), then FAILED.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from database import database
from models import AuditAction, EmailTemplateAlias, NotificationOutboxItem, NotificationStatus
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EMAIL_BACKOFFS = [30, 120, 600]
MAX_EMAIL_ATTEMPTS = 3
CLAIM_LEASE_SECONDS = 300

ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
ORDER_SHIPPED = "ORDER_SHIPPED"
ORDER_DELIVERED = "ORDER_DELIVERED"
AGENT_APPROVED = "AGENT_APPROVED"

TEMPLATE_ALIASES: Dict[str, EmailTemplateAlias] = {
    ORDER_STATUS_UPDATE: EmailTemplateAlias.ORDER_STATUS_UPDATE,
    ORDER_SHIPPED: EmailTemplateAlias.ORDER_SHIPPED,
    ORDER_DELIVERED: EmailTemplateAlias.ORDER_DELIVERED,
    AGENT_APPROVED: EmailTemplateAlias.AGENT_APPROVED,
}


class NotificationOutbox:
    """Enqueue and deliver transactional notifications."""

    async def enqueue(
        self,
        template_key: str,
        order_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recipient: Optional[str] = None,
    ) -> str:
        if template_key not in TEMPLATE_ALIASES:
            raise ValueError(f"Unknown notification template: {template_key}")
        db = database.get_db()
        item = NotificationOutboxItem(
            template_key=template_key,
            order_id=order_id,
            recipient=recipient,
            context=context or {},
        )
        await db.notification_outbox.insert_one(item.model_dump())
        logger.info(f"Notification {template_key} queued for order {order_id}: {item.message_id}")
        return item.message_id

    async def process_pending(self, limit: int = 50) -> Dict[str, int]:
        """Deliver due PENDING rows. Returns counts per outcome."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        cursor = db.notification_outbox.find(
            {"status": NotificationStatus.PENDING.value, "next_run_at": {"$lte": now}},
            {"_id": 0},
        ).sort("next_run_at", 1).limit(limit)
        items = await cursor.to_list(length=limit)

        counts = {"sent": 0, "retrying": 0, "failed": 0, "skipped": 0}
        for item in items:
            # Lease the row so a second worker does not pick it up mid-send
            claimed = await db.notification_outbox.find_one_and_update(
                {
                    "message_id": item["message_id"],
                    "status": NotificationStatus.PENDING.value,
                    "next_run_at": {"$lte": now},
                },
                {"$set": {"next_run_at": now + timedelta(seconds=CLAIM_LEASE_SECONDS)}},
            )
            if not claimed:
                counts["skipped"] += 1
                continue
            outcome = await self._deliver(item, now)
            counts[outcome] += 1
        return counts

    async def _deliver(self, item: Dict[str, Any], now: datetime) -> str:
        from services.email_service import email_service

        db = database.get_db()
        message_id = item["message_id"]
        attempt = item.get("attempt_count", 0) + 1
        error_message = None

        try:
            recipient, customer_name = await self._resolve_recipient(item)
            if not recipient:
                error_message = "recipient missing"
            else:
                model = {"customer_name": customer_name, **(item.get("context") or {})}
                log = await email_service.send_email(
                    recipient=recipient,
                    template_alias=TEMPLATE_ALIASES[item["template_key"]],
                    template_model=model,
                    order_id=item.get("order_id"),
                )
                if log.status == "sent":
                    await db.notification_outbox.update_one(
                        {"message_id": message_id},
                        {"$set": {
                            "status": NotificationStatus.SENT.value,
                            "attempt_count": attempt,
                            "recipient": recipient,
                            "sent_at": now,
                        }},
                    )
                    return "sent"
                error_message = log.error_message or "send failed"
        except Exception as e:
            logger.warning(f"Notification {message_id} attempt {attempt} failed: {e}")
            error_message = str(e)

        if attempt < MAX_EMAIL_ATTEMPTS and attempt <= len(EMAIL_BACKOFFS):
            await db.notification_outbox.update_one(
                {"message_id": message_id},
                {"$set": {
                    "attempt_count": attempt,
                    "last_error": error_message,
                    "next_run_at": now + timedelta(seconds=EMAIL_BACKOFFS[attempt - 1]),
                }},
            )
            return "retrying"

        await db.notification_outbox.update_one(
            {"message_id": message_id},
            {"$set": {
                "status": NotificationStatus.FAILED.value,
                "attempt_count": attempt,
                "last_error": error_message,
            }},
        )
        await create_audit_log(
            action=AuditAction.EMAIL_FAILED,
            resource_type="order" if item.get("order_id") else None,
            resource_id=item.get("order_id"),
            metadata={"message_id": message_id, "template_key": item["template_key"], "error": error_message},
        )
        logger.error(f"Notification {message_id} failed permanently after {attempt} attempts: {error_message}")
        return "failed"

    async def _resolve_recipient(self, item: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        if item.get("recipient"):
            return item["recipient"], (item.get("context") or {}).get("customer_name")
        if not item.get("order_id"):
            return None, None

        db = database.get_db()
        order = await db.orders.find_one(
            {"order_id": item["order_id"]},
            {"_id": 0, "customer_info": 1, "buyer_id": 1},
        )
        if not order:
            return None, None
        customer = order.get("customer_info") or {}
        if customer.get("email"):
            return customer["email"], customer.get("name")
        if order.get("buyer_id"):
            buyer = await db.users.find_one({"user_id": order["buyer_id"]}, {"_id": 0, "email": 1, "name": 1})
            if buyer:
                return buyer.get("email"), buyer.get("name")
        return None, None


notification_outbox = NotificationOutbox()


async def notify_order_event(
    template_key: str,
    order: Dict[str, Any],
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Queue a buyer notification for an order. Failures are logged, never raised."""
    from services.order_workflow import get_status_display_name

    payload = {
        "order_number": order.get("order_number") or order.get("order_id"),
        "status": order.get("status"),
        "status_display_name": get_status_display_name(order.get("status")),
    }
    payload.update(context or {})
    try:
        return await notification_outbox.enqueue(template_key, order_id=order.get("order_id"), context=payload)
    except Exception as e:
        logger.error(f"Failed to queue {template_key} notification for order {order.get('order_id')}: {e}")
        return None
