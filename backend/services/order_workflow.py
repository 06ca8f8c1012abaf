"""
Order Workflow State Machine
Defines all valid states, transitions, carriers and timing rules for marketplace orders.
This is the single source of truth for order workflow logic: every service that
changes an order's status asks can_transition / validate_status_transition here.
"""
from enum import Enum
from typing import List, Dict, Optional, Set, Tuple
from datetime import timedelta

from services.errors import InvalidTransitionError


class OrderStatus(str, Enum):
    """Order lifecycle states"""
    PENDING = "pending"                       # Placed by buyer
    RECEIVED = "received"                     # Artisan acknowledged
    PACKED = "packed"
    PICKUP_REQUESTED = "pickup_requested"     # Waiting for a shipping agent
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"                   # Terminal
    CANCELLED = "cancelled"                   # Terminal


class ShippingMethod(str, Enum):
    PICKUP_AGENT = "pickup_agent"
    SELF_SHIP = "self_ship"


class TransitionContext(str, Enum):
    """Which path is asking for a status change"""
    STANDARD = "standard"                     # Artisan / buyer actions, table-driven
    SELF_SHIP = "self_ship"                   # Artisan confirms own carrier shipment
    AGENT_PICKUP = "agent_pickup"             # Assigned agent collects the parcel
    AGENT_DELIVERY = "agent_delivery"         # Assigned agent hands over the parcel
    ADMIN_OVERRIDE = "admin_override"         # Privileged, bypasses the table


# Valid state transitions - whitelist approach
STATUS_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.RECEIVED, OrderStatus.CANCELLED],
    OrderStatus.RECEIVED: [OrderStatus.PACKED, OrderStatus.CANCELLED],
    OrderStatus.PACKED: [OrderStatus.PICKUP_REQUESTED, OrderStatus.SHIPPED, OrderStatus.CANCELLED],
    OrderStatus.PICKUP_REQUESTED: [OrderStatus.SHIPPED, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED, OrderStatus.CANCELLED],   # Legacy
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    # Terminal states
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}


STATUS_DISPLAY_NAMES: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Order Placed",
    OrderStatus.RECEIVED: "Order Received",
    OrderStatus.PACKED: "Packed",
    OrderStatus.PICKUP_REQUESTED: "Pickup Requested",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}


# Terminal states - no further transitions possible
TERMINAL_STATUSES: Set[OrderStatus] = {
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
}


# Statuses from which a parcel may be physically handed over.
# in_transit / out_for_delivery are carrier-side states that may be written by
# tracking integrations; they are accepted here but never produced by this service.
IN_TRANSIT_STATUSES: Set[str] = {"shipped", "in_transit", "out_for_delivery"}


# Statuses from which the parcel can leave the artisan
SHIPPABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.PACKED,
    OrderStatus.PICKUP_REQUESTED,
}


# Statuses that have their own dedicated notification
DEDICATED_NOTIFICATION_STATUSES: Set[OrderStatus] = {
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.PICKUP_REQUESTED,
}


MODIFICATION_WINDOW = timedelta(minutes=15)

DEFAULT_DELIVERY_DAYS = 7


# Carrier id -> (display name, tracking number pattern)
SHIPPING_CARRIERS: Dict[str, Dict[str, str]] = {
    "fedex": {"name": "FedEx", "tracking_pattern": r"^[0-9]{12,22}$"},
    "ups": {"name": "UPS", "tracking_pattern": r"^1Z[A-Z0-9]{16}$"},
    "usps": {"name": "USPS", "tracking_pattern": r"^[0-9]{20,22}$"},
    "dhl": {"name": "DHL", "tracking_pattern": r"^[0-9]{10,11}$"},
    "bluedart": {"name": "BlueDart", "tracking_pattern": r"^[0-9]{11}$"},
    "delhivery": {"name": "Delhivery", "tracking_pattern": r"^[0-9]{13,14}$"},
    "dtdc": {"name": "DTDC", "tracking_pattern": r"^[A-Z][0-9]{8}$"},
    "ecom_express": {"name": "Ecom Express", "tracking_pattern": r"^[0-9]{11}$"},
    "india_post": {"name": "India Post", "tracking_pattern": r"^[A-Z]{2}[0-9]{9}[A-Z]{2}$"},
    "other": {"name": "Other", "tracking_pattern": r"^.{5,50}$"},
}


def _coerce(status) -> Optional[OrderStatus]:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def is_known_status(status) -> bool:
    return _coerce(status) is not None


def is_valid_transition(from_status, to_status) -> bool:
    """Check if a state transition is an edge of the table"""
    current = _coerce(from_status)
    target = _coerce(to_status)
    if current is None or target is None:
        return False
    return target in STATUS_TRANSITIONS.get(current, [])


def is_terminal_state(status) -> bool:
    """Check if a status is terminal (no further transitions)"""
    return _coerce(status) in TERMINAL_STATUSES


def can_transition(
    from_status,
    to_status,
    context: TransitionContext = TransitionContext.STANDARD,
) -> bool:
    """
    Single authority for every status change.

    STANDARD follows the table. The shipping paths are narrower than the table:
    self-ship and agent pickup may only ship from packed / pickup_requested, and an
    agent may only deliver a parcel that is already in transit. ADMIN_OVERRIDE
    accepts any known target status.
    """
    context = TransitionContext(context)
    target = _coerce(to_status)
    if target is None:
        return False

    if context == TransitionContext.ADMIN_OVERRIDE:
        return True

    if context in (TransitionContext.SELF_SHIP, TransitionContext.AGENT_PICKUP):
        return target == OrderStatus.SHIPPED and _coerce(from_status) in SHIPPABLE_STATUSES

    if context == TransitionContext.AGENT_DELIVERY:
        current = from_status.value if isinstance(from_status, OrderStatus) else from_status
        return target == OrderStatus.DELIVERED and current in IN_TRANSIT_STATUSES

    return is_valid_transition(from_status, target)


def get_allowed_transitions(
    status,
    context: TransitionContext = TransitionContext.STANDARD,
) -> List[str]:
    """Get list of valid next states from current status for the given path"""
    return [s.value for s in OrderStatus if can_transition(status, s, context)]


def validate_status_transition(
    from_status,
    to_status,
    context: TransitionContext = TransitionContext.STANDARD,
) -> None:
    """Raise InvalidTransitionError unless can_transition allows the change."""
    if not can_transition(from_status, to_status, context):
        current = from_status.value if isinstance(from_status, OrderStatus) else str(from_status)
        target = to_status.value if isinstance(to_status, OrderStatus) else str(to_status)
        raise InvalidTransitionError(current, target, get_allowed_transitions(from_status, context))


def get_status_display_name(status) -> str:
    current = _coerce(status)
    if current is None:
        return str(status)
    return STATUS_DISPLAY_NAMES[current]


def get_carrier(carrier_id: str) -> Optional[Dict[str, str]]:
    return SHIPPING_CARRIERS.get((carrier_id or "").lower())


def get_carrier_name(carrier_id: str) -> str:
    carrier = get_carrier(carrier_id)
    return carrier["name"] if carrier else carrier_id


def list_carriers() -> List[Dict[str, str]]:
    """Carrier options for the self-ship form."""
    return [{"id": key, "name": value["name"]} for key, value in SHIPPING_CARRIERS.items()]


def list_status_display_names() -> List[Tuple[str, str]]:
    return [(status.value, name) for status, name in STATUS_DISPLAY_NAMES.items()]
