"""
Order Status Service - artisan, buyer and admin status operations.

Every change goes through the transition authority in services.order_workflow,
appends an entry to status_history and is persisted with a versioned write.
Buyer notifications are queued in the outbox after the write; a queueing
failure is logged and never fails the status change.

Role checks (is this caller the artisan / buyer of the order) belong to the
API layer, see assert_order_participant.
"""
import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from models import Actor, PaymentStatus, RefundStatus, UserRole
from services.errors import (
    AuthorizationError, NoHistoryError, TerminalStateError,
    ValidationError, WindowExpiredError,
)
from services.notification_outbox import (
    ORDER_DELIVERED, ORDER_SHIPPED, ORDER_STATUS_UPDATE, notify_order_event,
)
from services.order_store import (
    as_utc, build_history_entry, check_expected_version,
    commit_order_update, get_order, utc_now,
)
from services.order_workflow import (
    DEDICATED_NOTIFICATION_STATUSES, DEFAULT_DELIVERY_DAYS, MODIFICATION_WINDOW,
    OrderStatus, ShippingMethod, TransitionContext,
    get_allowed_transitions, get_carrier, get_carrier_name, get_status_display_name,
    is_terminal_state, list_carriers, list_status_display_names,
    validate_status_transition,
)

logger = logging.getLogger(__name__)


async def apply_transition(
    order: Dict,
    new_status,
    actor: Actor,
    note: Optional[str] = None,
    context: TransitionContext = TransitionContext.STANDARD,
    set_fields: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    unset_fields: Optional[List[str]] = None,
) -> Dict:
    """Validate against the authority, append history and persist. Returns the updated order."""
    validate_status_transition(order["status"], new_status, context)
    target = OrderStatus(new_status).value
    now = utc_now()

    fields = {"status": target, "last_status_change_at": now}
    fields.update(set_fields or {})

    updated = await commit_order_update(
        order,
        set_fields=fields,
        history_entry=build_history_entry(target, actor, note, metadata, timestamp=now),
        unset_fields=unset_fields,
    )
    logger.info(
        f"Order {order['order_id']} transitioned: {order['status']} → {target} "
        f"by {actor.role}:{actor.user_id}"
    )
    return updated


async def update_status_with_history(
    order_id: str,
    new_status: str,
    actor: Actor,
    note: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    """
    Table-driven status change.

    Raises NotFoundError, InvalidTransitionError (with the allowed set) or
    ConflictError. Returns the updated order.
    """
    order = await get_order(order_id)
    check_expected_version(order, expected_version)

    updated = await apply_transition(order, new_status, actor, note)

    if OrderStatus(updated["status"]) not in DEDICATED_NOTIFICATION_STATUSES:
        await notify_order_event(ORDER_STATUS_UPDATE, updated, {"note": note})
    return updated


async def mark_as_received(
    order_id: str,
    actor: Actor,
    note: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    return await update_status_with_history(
        order_id, OrderStatus.RECEIVED, actor,
        note or "Order received by artisan", expected_version,
    )


async def mark_as_packed(
    order_id: str,
    actor: Actor,
    note: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    return await update_status_with_history(
        order_id, OrderStatus.PACKED, actor,
        note or "Order has been packed", expected_version,
    )


async def request_pickup_agent(
    order_id: str,
    actor: Actor,
    scheduled_at: Optional[datetime] = None,
    note: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    """Packed order waits for a shipping agent. shipping_method is set only once the parcel leaves."""
    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    now = utc_now()

    updated = await apply_transition(
        order,
        OrderStatus.PICKUP_REQUESTED,
        actor,
        note or "Pickup agent requested",
        set_fields={
            "shipping_details.pickup_requested_at": now,
            "shipping_details.pickup_scheduled_at": scheduled_at or now,
        },
    )

    await notify_order_event(
        ORDER_STATUS_UPDATE, updated,
        {"note": "A pickup agent has been requested for your order."},
    )
    return updated


async def confirm_self_shipping(
    order_id: str,
    actor: Actor,
    carrier: Optional[str],
    tracking_number: Optional[str],
    estimated_delivery: Optional[datetime] = None,
    proof_of_shipping: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    """Artisan ships with their own carrier."""
    if not carrier or not tracking_number or not tracking_number.strip():
        raise ValidationError("Carrier and tracking number are required")

    carrier_info = get_carrier(carrier.strip())
    tracking = tracking_number.strip()
    if carrier_info is None:
        # Unlisted carriers are stored as given, without format checks
        carrier_id = carrier.strip()
        carrier_name = carrier_id
    else:
        carrier_id = carrier.strip().lower()
        carrier_name = carrier_info["name"]
        if carrier_id != "other":
            tracking = tracking.upper()
        if not re.match(carrier_info["tracking_pattern"], tracking):
            raise ValidationError(f"Invalid tracking number format for {carrier_name}")

    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    now = utc_now()
    estimated = estimated_delivery or now + timedelta(days=DEFAULT_DELIVERY_DAYS)

    updated = await apply_transition(
        order,
        OrderStatus.SHIPPED,
        actor,
        f"Shipped via {carrier_name}. Tracking: {tracking}",
        context=TransitionContext.SELF_SHIP,
        set_fields={
            "shipping_method": ShippingMethod.SELF_SHIP.value,
            "shipping_details.carrier": carrier_id,
            "shipping_details.tracking_number": tracking,
            "shipping_details.proof_of_shipping": proof_of_shipping,
            "shipping_details.shipped_at": now,
            "tracking_number": tracking,
            "estimated_delivery": estimated,
        },
        metadata={"carrier": carrier_id, "tracking_number": tracking},
    )

    await notify_order_event(ORDER_SHIPPED, updated, {
        "carrier_name": carrier_name,
        "tracking_number": tracking,
        "estimated_delivery": estimated.date().isoformat(),
    })
    return updated


async def mark_as_delivered(
    order_id: str,
    actor: Actor,
    note: Optional[str] = None,
    signature: Optional[str] = None,
    confirmed_by: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict:
    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    now = utc_now()

    set_fields = {}
    if signature or confirmed_by:
        set_fields["delivery_confirmation"] = {
            "confirmed_at": now,
            "signature": signature,
            "confirmed_by": confirmed_by,
        }

    updated = await apply_transition(
        order,
        OrderStatus.DELIVERED,
        actor,
        note or "Order delivered successfully",
        set_fields=set_fields,
    )

    await notify_order_event(ORDER_DELIVERED, updated)
    return updated


async def cancel_order(
    order_id: str,
    actor: Actor,
    reason: Optional[str],
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Cancel with a mandatory reason. A paid order is flagged for refund."""
    if not reason or not reason.strip():
        raise ValidationError("Cancellation reason is required")
    reason = reason.strip()

    order = await get_order(order_id)
    check_expected_version(order, expected_version)

    refund_required = order.get("payment_status") == PaymentStatus.COMPLETED.value
    updated = await apply_transition(
        order,
        OrderStatus.CANCELLED,
        actor,
        f"Cancelled: {reason}",
        set_fields={
            "cancellation": {
                "reason": reason,
                "cancelled_by": actor.user_id,
                "cancelled_by_role": actor.role,
                "cancelled_at": utc_now(),
                "refund_status": RefundStatus.PENDING.value if refund_required else None,
            },
        },
    )

    await notify_order_event(ORDER_STATUS_UPDATE, updated, {"note": f"Reason: {reason}"})
    return {"order": updated, "refund_required": refund_required}


async def add_status_note(
    order_id: str,
    actor: Actor,
    note: Optional[str],
    expected_version: Optional[int] = None,
) -> Dict:
    """Append a note under the current status. Does not restart the modification window."""
    if not note or not note.strip():
        raise ValidationError("Note is required")

    order = await get_order(order_id)
    check_expected_version(order, expected_version)

    return await commit_order_update(
        order,
        history_entry=build_history_entry(order["status"], actor, note.strip(), {"note_only": True}),
    )


def find_previous_status(history: List[Dict[str, Any]]) -> Optional[str]:
    """
    Status a revert should restore.

    History is replayed as a stack of distinct statuses: a status change pushes,
    a revert entry pops, entries that repeat the current status (notes, agent
    assignment, acceptance) are ignored. Reverting twice therefore walks back two
    real changes instead of bouncing between the last two statuses.
    """
    stack: List[str] = []
    for entry in history or []:
        status = entry.get("status")
        metadata = entry.get("metadata") or {}
        if metadata.get("reverted_from"):
            if stack:
                stack.pop()
            if not stack or stack[-1] != status:
                stack.append(status)
        elif not stack or stack[-1] != status:
            stack.append(status)
    if len(stack) < 2:
        return None
    return stack[-2]


async def revert_status(
    order_id: str,
    actor: Actor,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Undo the latest status change within the modification window."""
    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    current = order["status"]

    if not can_modify_status(order, now):
        raise WindowExpiredError(
            f"Status can only be reverted within {int(MODIFICATION_WINDOW.total_seconds() // 60)} "
            f"minutes of the last change"
        )
    if is_terminal_state(current):
        raise TerminalStateError(f"Cannot revert an order that is {current}")

    history = order.get("status_history") or []
    previous = find_previous_status(history) if len(history) >= 2 else None
    if previous is None:
        raise NoHistoryError("No previous status to revert to")

    unset_fields = None
    if current == OrderStatus.SHIPPED.value:
        unset_fields = ["shipping_method"]

    now = now or utc_now()
    updated = await commit_order_update(
        order,
        set_fields={"status": previous, "last_status_change_at": now},
        history_entry=build_history_entry(
            previous,
            actor,
            f"Reverted from '{current}': {reason or 'Status correction'}",
            {"reverted_from": current, "revert": True},
            timestamp=now,
        ),
        unset_fields=unset_fields,
    )
    logger.info(f"Order {order_id} reverted: {current} → {previous} by {actor.role}:{actor.user_id}")

    await notify_order_event(ORDER_STATUS_UPDATE, updated, {"note": "Your order status was corrected."})
    return {"order": updated, "reverted_from": current, "reverted_to": previous}


def can_modify_status(order: Dict, now: Optional[datetime] = None) -> bool:
    """True while now - last_status_change_at is within the modification window."""
    last_change = as_utc(order.get("last_status_change_at"))
    if last_change is None:
        return False
    return (now or utc_now()) - last_change <= MODIFICATION_WINDOW


def get_modification_window_remaining(order: Dict, now: Optional[datetime] = None) -> int:
    """Whole seconds left in the window, never negative."""
    last_change = as_utc(order.get("last_status_change_at"))
    if last_change is None:
        return 0
    remaining = (last_change + MODIFICATION_WINDOW - (now or utc_now())).total_seconds()
    return max(0, math.floor(remaining))


async def get_status_history(order_id: str) -> Dict[str, Any]:
    order = await get_order(order_id)
    status = order["status"]
    history = [
        {**entry, "status_display_name": get_status_display_name(entry.get("status"))}
        for entry in order.get("status_history") or []
    ]
    return {
        "order_id": order["order_id"],
        "order_number": order.get("order_number"),
        "current_status": status,
        "status_display_name": get_status_display_name(status),
        "history": history,
        "can_modify": not is_terminal_state(status) and can_modify_status(order),
        "modification_window_remaining": get_modification_window_remaining(order),
        "allowed_transitions": get_allowed_transitions(status),
        "version": order.get("version", 0),
    }


async def get_order_status_info(order_id: str) -> Dict[str, Any]:
    """Status card shown on the order page."""
    order = await get_order(order_id)
    status = order["status"]
    shipping = order.get("shipping_details") or {}
    carrier = shipping.get("carrier")
    return {
        "order_id": order["order_id"],
        "order_number": order.get("order_number"),
        "status": status,
        "status_display_name": get_status_display_name(status),
        "last_status_change_at": order.get("last_status_change_at"),
        "can_modify": not is_terminal_state(status) and can_modify_status(order),
        "modification_window_remaining": get_modification_window_remaining(order),
        "allowed_transitions": get_allowed_transitions(status),
        "shipping_method": order.get("shipping_method"),
        "tracking_number": order.get("tracking_number"),
        "carrier_name": get_carrier_name(carrier) if carrier else None,
        "estimated_delivery": order.get("estimated_delivery"),
        "pickup_agent": {
            "name": shipping.get("pickup_agent_name"),
            "phone": shipping.get("pickup_agent_phone"),
        } if shipping.get("assigned_agent_id") else None,
        "delivery_confirmation": order.get("delivery_confirmation"),
        "cancellation": order.get("cancellation"),
        "version": order.get("version", 0),
    }


def get_shipping_carriers() -> List[Dict[str, str]]:
    return list_carriers()


def get_status_display_names() -> Dict[str, str]:
    return dict(list_status_display_names())


def assert_order_participant(order: Dict, actor: Actor, allow_buyer: bool = False) -> None:
    """Coarse access check: admin, the order's artisan, or (optionally) its buyer."""
    role = actor.role
    if role == UserRole.ADMIN.value:
        return
    if role in (UserRole.ARTISAN.value, UserRole.DISTRIBUTOR.value) and order.get("artisan_id") == actor.user_id:
        return
    if allow_buyer and order.get("buyer_id") == actor.user_id:
        return
    raise AuthorizationError("You do not have access to this order")
