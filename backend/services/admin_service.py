"""
Admin Service - privileged order operations and platform management.

assign_agent_to_order and override_order_status are the two operations that
step outside the normal actor rules; both leave an audit_logs entry.
"""
import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from auth import hash_password
from database import database
from models import (
    DEACTIVATING_FLAGS, Actor, AgentProfile, AuditAction, ServiceArea,
    UserFlag, UserFlagEntry, UserRole,
)
from services.agent_wallet_service import get_agent
from services.errors import (
    AlreadyAcceptedError, AlreadyAssignedError, ConflictError,
    NotFoundError, TerminalStateError, ValidationError,
)
from services.order_status_service import apply_transition
from services.order_store import (
    as_utc, build_history_entry, check_expected_version, commit_order_update,
    find_orders, get_order, paginate, pagination_meta, utc_now,
)
from services.order_workflow import (
    OrderStatus, TransitionContext, is_known_status, is_terminal_state,
)
from utils.audit import create_audit_log, get_audit_logs

logger = logging.getLogger(__name__)

AGENT_USER_FIELDS = {"name", "phone", "is_active"}
AGENT_PROFILE_FIELDS = {
    "commission_rate", "base_delivery_fee", "service_areas",
    "vehicle_type", "vehicle_number", "license_number",
}


def _admin_actor(admin_id: str) -> Actor:
    return Actor(user_id=admin_id, role=UserRole.ADMIN)


# ============================================
# ASSIGNMENT & OVERRIDE
# ============================================

async def assign_agent_to_order(
    order_id: str,
    agent_id: str,
    admin_id: str,
    note: Optional[str] = None,
    reassign: bool = False,
    expected_version: Optional[int] = None,
) -> Dict:
    """
    Assign a shipping agent. Status is unchanged; the assignment is recorded in
    history under the current status. An existing assignment is only replaced
    with reassign=True and only before the agent accepted.
    """
    agent = await get_agent(agent_id)
    profile = agent.get("agent_profile") or {}
    if not agent.get("is_active") or not profile.get("is_active"):
        raise ValidationError("Agent is not active")

    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    if is_terminal_state(order["status"]):
        raise TerminalStateError(f"Cannot assign an agent to a {order['status']} order")

    shipping = order.get("shipping_details") or {}
    current_agent = shipping.get("assigned_agent_id")
    if current_agent:
        if not reassign or current_agent == agent_id:
            raise AlreadyAssignedError(f"Order is already assigned to agent {current_agent}")
        if shipping.get("agent_accepted_at"):
            raise AlreadyAcceptedError("The assigned agent has already accepted this delivery")

    now = utc_now()
    set_fields = {
        "shipping_details.assigned_agent_id": agent_id,
        "shipping_details.agent_assigned_at": now,
        "shipping_details.agent_assigned_by": admin_id,
        "shipping_details.assignment_note": note,
        "shipping_details.pickup_agent_name": agent.get("name"),
        "shipping_details.pickup_agent_phone": agent.get("phone"),
        "shipping_details.agent_accepted": False,
        "shipping_details.agent_accepted_at": None,
    }
    metadata = {"assigned_agent_id": agent_id, "assigned_by": admin_id}
    if current_agent:
        metadata["reassigned_from"] = current_agent

    history_note = f"Assigned to delivery agent {agent.get('name') or agent_id}"
    if note:
        history_note = f"{history_note}: {note}"

    updated = await commit_order_update(
        order,
        set_fields=set_fields,
        history_entry=build_history_entry(order["status"], _admin_actor(admin_id), history_note, metadata, timestamp=now),
        extra_filter={"shipping_details.assigned_agent_id": current_agent},
    )
    logger.info(f"Order {order_id} assigned to agent {agent_id} by admin {admin_id}")

    await create_audit_log(
        action=AuditAction.ORDER_AGENT_ASSIGNED,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="order",
        resource_id=order_id,
        before_state={"assigned_agent_id": current_agent},
        after_state={"assigned_agent_id": agent_id},
        metadata={"note": note},
    )
    return updated


async def override_order_status(
    order_id: str,
    new_status: Optional[str],
    admin_id: str,
    reason: Optional[str],
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Set any known status regardless of the transition table. Reason is mandatory."""
    if not new_status or not reason or not reason.strip():
        raise ValidationError("New status and reason are required")
    if not is_known_status(new_status):
        raise ValidationError(f"Invalid status: {new_status}")
    reason = reason.strip()

    order = await get_order(order_id)
    check_expected_version(order, expected_version)
    previous_status = order["status"]

    updated = await apply_transition(
        order,
        new_status,
        _admin_actor(admin_id),
        f"Admin override: {reason}",
        context=TransitionContext.ADMIN_OVERRIDE,
        metadata={
            "admin_override": True,
            "previous_status": previous_status,
            "reason": reason,
        },
    )

    await create_audit_log(
        action=AuditAction.ORDER_STATUS_OVERRIDDEN,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="order",
        resource_id=order_id,
        before_state={"status": previous_status},
        after_state={"status": updated["status"]},
        reason_code=reason,
    )
    return {
        "order": updated,
        "previous_status": previous_status,
        "new_status": updated["status"],
    }


# ============================================
# ORDER VIEWS
# ============================================

async def get_all_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    artisan_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_status"] = payment_status
    if artisan_id:
        query["artisan_id"] = artisan_id
    if buyer_id:
        query["buyer_id"] = buyer_id
    if agent_id:
        query["shipping_details.assigned_agent_id"] = agent_id
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"order_number": pattern},
            {"order_id": pattern},
            {"customer_info.name": pattern},
            {"customer_info.email": pattern},
        ]
    if date_from or date_to:
        query["created_at"] = {}
        if date_from:
            query["created_at"]["$gte"] = date_from
        if date_to:
            query["created_at"]["$lte"] = date_to

    paging = paginate(page, limit)
    result = await find_orders(query, sort=[("created_at", -1)], skip=paging["skip"], limit=paging["limit"])
    return {
        "orders": result["orders"],
        "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
    }


async def get_pending_pickup_requests(
    pin_code: Optional[str] = None,
    city: Optional[str] = None,
    district: Optional[str] = None,
    include_assigned: bool = False,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """pickup_requested orders waiting for an agent, with broadcast / interest summary."""
    query: Dict[str, Any] = {"status": OrderStatus.PICKUP_REQUESTED.value}
    if not include_assigned:
        query["shipping_details.assigned_agent_id"] = None
    if pin_code:
        query["shipping_address.pin_code"] = str(pin_code)
    if city:
        query["shipping_address.city"] = {"$regex": re.escape(city), "$options": "i"}
    if district:
        query["shipping_address.district"] = {"$regex": re.escape(district), "$options": "i"}

    paging = paginate(page, limit)
    result = await find_orders(
        query,
        sort=[("shipping_details.pickup_requested_at", 1)],
        skip=paging["skip"],
        limit=paging["limit"],
    )

    requests = []
    for order in result["orders"]:
        shipping = order.get("shipping_details") or {}
        broadcast = shipping.get("broadcast_info") or {}
        requests.append({
            **order,
            "broadcasted": bool(broadcast.get("broadcasted_at")),
            "targeted_agent_count": len(broadcast.get("targeted_agent_ids") or []),
            "interested_agent_count": len(broadcast.get("interested_agents") or []),
        })
    return {
        "pickup_requests": requests,
        "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
    }


async def get_platform_stats() -> Dict[str, Any]:
    db = database.get_db()
    orders_by_status = {}
    for status in OrderStatus:
        orders_by_status[status.value] = await db.orders.count_documents({"status": status.value})

    revenue_rows = await db.orders.aggregate([
        {"$match": {"payment_status": "completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]).to_list(length=1)

    agent_query = {"role": UserRole.SHIPPING_AGENT.value}
    return {
        "orders": {
            "total": sum(orders_by_status.values()),
            "by_status": orders_by_status,
            "awaiting_agent": await db.orders.count_documents({
                "status": OrderStatus.PICKUP_REQUESTED.value,
                "shipping_details.assigned_agent_id": None,
            }),
        },
        "revenue": {"total": revenue_rows[0]["total"] if revenue_rows else 0},
        "agents": {
            "total": await db.users.count_documents(agent_query),
            "active": await db.users.count_documents({
                **agent_query, "is_active": True, "agent_profile.is_active": True,
            }),
        },
        "users": {
            "artisans": await db.users.count_documents({"role": UserRole.ARTISAN.value}),
            "customers": await db.users.count_documents({"role": UserRole.CUSTOMER.value}),
        },
        "agent_applications": {
            "pending": await db.agent_applications.count_documents({"status": {"$in": ["pending", "under_review"]}}),
        },
        "wallet_credits_pending": await db.orders.count_documents({"wallet_credit.status": "pending"}),
    }


async def get_activity_logs(
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    paging = paginate(page, limit)
    result = await get_audit_logs(
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        skip=paging["skip"],
        limit=paging["limit"],
    )
    return {
        "logs": result["logs"],
        "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
    }


# ============================================
# USER FLAGS
# ============================================

USER_PUBLIC_PROJECTION = {
    "_id": 0,
    "password_hash": 0,
    "agent_profile.credited_order_ids": 0,
    "agent_profile.bank_details": 0,
}


def _parse_flag(flag: Optional[str]) -> UserFlag:
    try:
        return UserFlag((flag or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid flag. Must be one of: {', '.join(f.value for f in UserFlag)}"
        )


async def _get_user(user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    user = await db.users.find_one({"user_id": user_id}, USER_PUBLIC_PROJECTION)
    if not user:
        raise NotFoundError(f"User not found: {user_id}")
    return user


async def add_user_flag(
    user_id: str,
    flag: str,
    admin_id: str,
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Flag a user account. scam, fraud and banned also deactivate the account,
    which takes an agent out of broadcast and assignment.
    """
    user_flag = _parse_flag(flag)
    user = await _get_user(user_id)
    if any(f.get("flag") == user_flag.value for f in user.get("user_flags") or []):
        raise ConflictError(f"User already has '{user_flag.value}' flag")

    entry = UserFlagEntry(
        flag=user_flag,
        reason=(reason or "").strip() or None,
        added_by=admin_id,
        expires_at=expires_at,
    ).model_dump()
    deactivate = user_flag in DEACTIVATING_FLAGS
    set_fields: Dict[str, Any] = {"updated_at": utc_now()}
    if deactivate:
        set_fields["is_active"] = False

    db = database.get_db()
    result = await db.users.update_one(
        {"user_id": user_id, "user_flags.flag": {"$ne": user_flag.value}},
        {"$push": {"user_flags": entry}, "$set": set_fields},
    )
    if result.matched_count == 0:
        raise ConflictError(f"User already has '{user_flag.value}' flag")
    logger.info(f"Flag {user_flag.value} added to user {user_id} by admin {admin_id}")

    await create_audit_log(
        action=AuditAction.USER_FLAG_ADDED,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="user",
        resource_id=user_id,
        before_state={"is_active": user.get("is_active")},
        after_state={"is_active": False if deactivate else user.get("is_active")},
        reason_code=entry["reason"],
        metadata={"flag": user_flag.value},
    )
    return await _get_user(user_id)


async def remove_user_flag(user_id: str, flag: str, admin_id: str) -> Dict[str, Any]:
    """Remove a flag. The account stays deactivated until an admin reactivates it."""
    user_flag = _parse_flag(flag)
    user = await _get_user(user_id)
    if not any(f.get("flag") == user_flag.value for f in user.get("user_flags") or []):
        raise ValidationError(f"User does not have '{user_flag.value}' flag")

    db = database.get_db()
    await db.users.update_one(
        {"user_id": user_id},
        {"$pull": {"user_flags": {"flag": user_flag.value}}, "$set": {"updated_at": utc_now()}},
    )
    logger.info(f"Flag {user_flag.value} removed from user {user_id} by admin {admin_id}")

    await create_audit_log(
        action=AuditAction.USER_FLAG_REMOVED,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="user",
        resource_id=user_id,
        metadata={"flag": user_flag.value},
    )
    return await _get_user(user_id)


async def get_flagged_users(flag: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_flags.0": {"$exists": True}}
    if flag:
        query["user_flags.flag"] = _parse_flag(flag).value

    db = database.get_db()
    paging = paginate(page, limit)
    total = await db.users.count_documents(query)
    users = await db.users.find(query, USER_PUBLIC_PROJECTION).sort(
        "updated_at", -1
    ).skip(paging["skip"]).limit(paging["limit"]).to_list(length=paging["limit"])
    return {
        "users": users,
        "pagination": pagination_meta(paging["page"], paging["limit"], total),
    }


# ============================================
# AGENT MANAGEMENT
# ============================================

async def get_all_agents(
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    district: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    db = database.get_db()
    query: Dict[str, Any] = {"role": UserRole.SHIPPING_AGENT.value}
    if is_active is not None:
        query["agent_profile.is_active"] = is_active
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"phone": pattern}]
    if district:
        query["agent_profile.service_areas.district"] = {"$regex": re.escape(district), "$options": "i"}

    paging = paginate(page, limit)
    total = await db.users.count_documents(query)
    agents = await db.users.find(
        query, USER_PUBLIC_PROJECTION,
    ).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"]).to_list(length=paging["limit"])
    return {
        "agents": agents,
        "pagination": pagination_meta(paging["page"], paging["limit"], total),
    }


def _as_number(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")


def _validate_profile_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    if "commission_rate" in updates:
        rate = _as_number(updates["commission_rate"], "Commission rate")
        if not 0 <= rate <= 100:
            raise ValidationError("Commission rate must be between 0 and 100")
        cleaned["commission_rate"] = rate
    if "base_delivery_fee" in updates:
        fee = _as_number(updates["base_delivery_fee"], "Base delivery fee")
        if fee < 0:
            raise ValidationError("Base delivery fee cannot be negative")
        cleaned["base_delivery_fee"] = fee
    if "service_areas" in updates:
        try:
            cleaned["service_areas"] = [ServiceArea(**a).model_dump() for a in updates["service_areas"] or []]
        except (TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid service area: {e}")
    for key in ("vehicle_type", "vehicle_number", "license_number"):
        if key in updates:
            cleaned[key] = updates[key]
    return cleaned


async def create_agent(data: Dict[str, Any], admin_id: str) -> Dict[str, Any]:
    """Create a shipping agent account directly (without the application workflow)."""
    for field in ("name", "email", "phone", "password"):
        if not data.get(field):
            raise ValidationError(f"{field} is required")

    db = database.get_db()
    email = data["email"].strip().lower()
    if await db.users.find_one({"email": email}, {"_id": 0, "user_id": 1}):
        raise ConflictError("A user with this email already exists")

    profile = AgentProfile(**_validate_profile_updates(data.get("agent_profile") or {})).model_dump()
    now = utc_now()
    user = {
        "user_id": str(uuid.uuid4()),
        "name": data["name"].strip(),
        "email": email,
        "phone": data["phone"].strip(),
        "role": UserRole.SHIPPING_AGENT.value,
        "is_active": True,
        "password_hash": hash_password(data["password"]),
        "agent_profile": profile,
        "created_by": admin_id,
        "created_at": now,
        "updated_at": now,
    }
    await db.users.insert_one(user)
    logger.info(f"Agent {user['user_id']} created by admin {admin_id}")

    await create_audit_log(
        action=AuditAction.AGENT_CREATED,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="agent",
        resource_id=user["user_id"],
        metadata={"email": email},
    )
    return await get_agent(user["user_id"])


async def update_agent_profile(agent_id: str, updates: Dict[str, Any], admin_id: str) -> Dict[str, Any]:
    """Admin edits: contact details, activation and commission settings."""
    before = await get_agent(agent_id)

    set_fields: Dict[str, Any] = {}
    for key in AGENT_USER_FIELDS & set(updates):
        set_fields[key] = updates[key]
    if "profile_active" in updates:
        set_fields["agent_profile.is_active"] = bool(updates["profile_active"])
    for key, value in _validate_profile_updates(
        {k: v for k, v in updates.items() if k in AGENT_PROFILE_FIELDS}
    ).items():
        set_fields[f"agent_profile.{key}"] = value

    if not set_fields:
        raise ValidationError("No valid fields to update")
    set_fields["updated_at"] = utc_now()

    db = database.get_db()
    await db.users.update_one({"user_id": agent_id}, {"$set": set_fields})
    after = await get_agent(agent_id)

    tracked = ("name", "phone", "is_active")
    profile_tracked = ("is_active", "commission_rate", "base_delivery_fee")
    await create_audit_log(
        action=AuditAction.AGENT_PROFILE_UPDATED,
        actor_role=UserRole.ADMIN,
        actor_id=admin_id,
        resource_type="agent",
        resource_id=agent_id,
        before_state={
            **{k: before.get(k) for k in tracked},
            **{f"profile_{k}": (before.get("agent_profile") or {}).get(k) for k in profile_tracked},
        },
        after_state={
            **{k: after.get(k) for k in tracked},
            **{f"profile_{k}": (after.get("agent_profile") or {}).get(k) for k in profile_tracked},
        },
    )
    logger.info(f"Agent {agent_id} updated by admin {admin_id}: {sorted(set_fields)}")
    return after


async def get_agent_performance(agent_id: str) -> Dict[str, Any]:
    agent = await get_agent(agent_id)
    profile = agent.get("agent_profile") or {}
    db = database.get_db()

    assigned_orders: List[Dict[str, Any]] = await db.orders.find(
        {"shipping_details.assigned_agent_id": agent_id},
        {"_id": 0, "order_id": 1, "status": 1, "shipping_details": 1},
    ).to_list(length=10000)

    delivered = [o for o in assigned_orders if o["status"] == OrderStatus.DELIVERED.value]
    cancelled = [o for o in assigned_orders if o["status"] == OrderStatus.CANCELLED.value]
    accepted = [o for o in assigned_orders if (o.get("shipping_details") or {}).get("agent_accepted_at")]

    durations = []
    for order in delivered:
        shipping = order.get("shipping_details") or {}
        picked_up, delivered_at = shipping.get("picked_up_at"), shipping.get("delivered_at")
        if picked_up and delivered_at:
            durations.append((as_utc(delivered_at) - as_utc(picked_up)).total_seconds() / 3600)

    total_assigned = len(assigned_orders)
    return {
        "agent_id": agent_id,
        "name": agent.get("name"),
        "rating": profile.get("rating", 0),
        "total_assigned": total_assigned,
        "total_accepted": len(accepted),
        "total_delivered": len(delivered),
        "total_cancelled": len(cancelled),
        "active": total_assigned - len(delivered) - len(cancelled),
        "acceptance_rate": round(len(accepted) / total_assigned * 100, 1) if total_assigned else 0,
        "success_rate": round(len(delivered) / total_assigned * 100, 1) if total_assigned else 0,
        "average_delivery_hours": round(sum(durations) / len(durations), 1) if durations else None,
        "total_earnings": profile.get("total_earnings", 0),
        "wallet_balance": profile.get("wallet_balance", 0),
    }
