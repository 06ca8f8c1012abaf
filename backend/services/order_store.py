"""
Order persistence helpers.

Every order mutation goes through commit_order_update, which writes with a
version-conditioned find_one_and_update. A concurrent writer that got there
first makes the filter miss and the caller gets ConflictError instead of
silently overwriting.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import database
from models import Actor, StatusHistoryEntry
from services.errors import ConflictError, NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes may come back naive depending on the client; treat them as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def get_order(order_id: str) -> Dict:
    """Fetch an order or raise NotFoundError."""
    db = database.get_db()
    try:
        order = await db.orders.find_one({"order_id": order_id}, {"_id": 0})
    except PyMongoError as e:
        logger.error(f"Failed to load order {order_id}: {e}")
        raise PersistenceError(f"Failed to load order {order_id}") from e
    if not order:
        raise NotFoundError(f"Order not found: {order_id}")
    return order


def check_expected_version(order: Dict, expected_version: Optional[int]) -> None:
    if expected_version is not None and order.get("version", 0) != expected_version:
        raise ConflictError(
            f"Order {order['order_id']} was modified concurrently "
            f"(expected version {expected_version}, found {order.get('version', 0)})"
        )


def build_history_entry(
    status: str,
    actor: Actor,
    note: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    entry = StatusHistoryEntry(
        status=status,
        timestamp=timestamp or utc_now(),
        updated_by=actor.user_id,
        updated_by_role=actor.role,
        note=note,
        metadata=metadata,
    )
    return entry.model_dump()


async def commit_order_update(
    order: Dict,
    set_fields: Optional[Dict[str, Any]] = None,
    history_entry: Optional[Dict[str, Any]] = None,
    push_fields: Optional[Dict[str, Any]] = None,
    extra_filter: Optional[Dict[str, Any]] = None,
    unset_fields: Optional[List[str]] = None,
) -> Dict:
    """
    Apply a conditional write against the version the caller read.

    Returns the updated order. Raises ConflictError when the stored version moved
    on (or extra_filter no longer matches), NotFoundError when the order is gone.
    """
    db = database.get_db()
    order_id = order["order_id"]

    query: Dict[str, Any] = {"order_id": order_id}
    if "version" in order:
        query["version"] = order["version"]
    else:
        # Orders created before versioning
        query["version"] = {"$exists": False}
    if extra_filter:
        query.update(extra_filter)

    update: Dict[str, Any] = {
        "$set": {**(set_fields or {}), "updated_at": utc_now()},
        "$inc": {"version": 1},
    }
    pushes: Dict[str, Any] = dict(push_fields or {})
    if history_entry is not None:
        pushes["status_history"] = history_entry
    if pushes:
        update["$push"] = pushes
    if unset_fields:
        update["$unset"] = {field: "" for field in unset_fields}

    try:
        updated = await db.orders.find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            updated.pop("_id", None)
            return updated
        exists = await db.orders.count_documents({"order_id": order_id})
    except PyMongoError as e:
        logger.error(f"Failed to update order {order_id}: {e}")
        raise PersistenceError(f"Failed to update order {order_id}") from e

    if not exists:
        raise NotFoundError(f"Order not found: {order_id}")
    logger.warning(f"Stale write rejected for order {order_id} at version {order.get('version', 0)}")
    raise ConflictError(f"Order {order_id} was modified concurrently, reload and retry")


async def find_orders(
    query: Dict[str, Any],
    sort: Optional[List] = None,
    skip: int = 0,
    limit: int = 20,
    projection: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Paginated order listing used by the dashboards."""
    db = database.get_db()
    try:
        total = await db.orders.count_documents(query)
        cursor = db.orders.find(query, projection or {"_id": 0})
        if sort:
            cursor = cursor.sort(sort)
        orders = await cursor.skip(skip).limit(limit).to_list(length=limit)
    except PyMongoError as e:
        logger.error(f"Failed to list orders: {e}")
        raise PersistenceError("Failed to list orders") from e
    return {"orders": orders, "total": total}


def paginate(page: int, limit: int) -> Dict[str, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 100))
    return {"page": page, "limit": limit, "skip": (page - 1) * limit}


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "current_page": page,
        "total_pages": (total + limit - 1) // limit,
        "total_items": total,
        "items_per_page": limit,
    }
