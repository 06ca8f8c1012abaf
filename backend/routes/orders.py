"""
Order status routes - artisan, buyer and admin status operations.

Business rule violations raised by the services (ServiceError subclasses) are
turned into HTTP responses by the handler registered in server.py.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from middleware import require_auth, actor_from_user
from services import order_status_service
from services.order_store import get_order
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["order-status"])


# ============================================
# MODELS
# ============================================

class StatusNoteRequest(BaseModel):
    note: Optional[str] = None
    expected_version: Optional[int] = None


class RequestPickupRequest(BaseModel):
    scheduled_at: Optional[datetime] = None
    note: Optional[str] = None
    expected_version: Optional[int] = None


class SelfShipRequest(BaseModel):
    carrier: str
    tracking_number: str
    estimated_delivery: Optional[datetime] = None
    proof_of_shipping: Optional[str] = None
    expected_version: Optional[int] = None


class DeliverRequest(BaseModel):
    note: Optional[str] = None
    signature: Optional[str] = None
    confirmed_by: Optional[str] = None
    expected_version: Optional[int] = None


class CancelRequest(BaseModel):
    reason: str
    expected_version: Optional[int] = None


class RevertRequest(BaseModel):
    reason: Optional[str] = None
    expected_version: Optional[int] = None


async def _load_for(order_id: str, current_user: dict, allow_buyer: bool = False):
    actor = actor_from_user(current_user)
    order = await get_order(order_id)
    order_status_service.assert_order_participant(order, actor, allow_buyer=allow_buyer)
    return actor


# ============================================
# LOOKUPS
# ============================================

@router.get("/shipping-carriers")
async def list_shipping_carriers():
    """Carriers accepted for self shipping."""
    return {"carriers": order_status_service.get_shipping_carriers()}


@router.get("/status-names")
async def list_status_names():
    return {"statuses": order_status_service.get_status_display_names()}


@router.get("/{order_id}/status-info")
async def get_status_info(order_id: str, current_user: dict = Depends(require_auth)):
    await _load_for(order_id, current_user, allow_buyer=True)
    return await order_status_service.get_order_status_info(order_id)


@router.get("/{order_id}/history")
async def get_status_history(order_id: str, current_user: dict = Depends(require_auth)):
    await _load_for(order_id, current_user, allow_buyer=True)
    return await order_status_service.get_status_history(order_id)


# ============================================
# STATUS CHANGES
# ============================================

@router.patch("/{order_id}/receive")
async def receive_order(
    order_id: str,
    request: Optional[StatusNoteRequest] = None,
    current_user: dict = Depends(require_auth),
):
    request = request or StatusNoteRequest()
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.mark_as_received(
        order_id, actor, request.note, request.expected_version
    )
    return {"success": True, "message": "Order marked as received", "order": order}


@router.patch("/{order_id}/pack")
async def pack_order(
    order_id: str,
    request: Optional[StatusNoteRequest] = None,
    current_user: dict = Depends(require_auth),
):
    request = request or StatusNoteRequest()
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.mark_as_packed(
        order_id, actor, request.note, request.expected_version
    )
    return {"success": True, "message": "Order marked as packed", "order": order}


@router.post("/{order_id}/request-pickup")
async def request_pickup(
    order_id: str,
    request: Optional[RequestPickupRequest] = None,
    current_user: dict = Depends(require_auth),
):
    """Hand a packed order over to the shipping agent network."""
    request = request or RequestPickupRequest()
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.request_pickup_agent(
        order_id,
        actor,
        scheduled_at=request.scheduled_at,
        note=request.note,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Pickup agent requested", "order": order}


@router.post("/{order_id}/self-ship")
async def self_ship(
    order_id: str,
    request: SelfShipRequest,
    current_user: dict = Depends(require_auth),
):
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.confirm_self_shipping(
        order_id,
        actor,
        carrier=request.carrier,
        tracking_number=request.tracking_number,
        estimated_delivery=request.estimated_delivery,
        proof_of_shipping=request.proof_of_shipping,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Order marked as shipped", "order": order}


@router.patch("/{order_id}/deliver")
async def deliver_order(
    order_id: str,
    request: Optional[DeliverRequest] = None,
    current_user: dict = Depends(require_auth),
):
    request = request or DeliverRequest()
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.mark_as_delivered(
        order_id,
        actor,
        note=request.note,
        signature=request.signature,
        confirmed_by=request.confirmed_by,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Order marked as delivered", "order": order}


@router.patch("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    request: CancelRequest,
    current_user: dict = Depends(require_auth),
):
    """Buyer, artisan or admin may cancel while the order is still cancellable."""
    actor = await _load_for(order_id, current_user, allow_buyer=True)
    result = await order_status_service.cancel_order(
        order_id, actor, request.reason, request.expected_version
    )
    return {
        "success": True,
        "message": "Order cancelled",
        "order": result["order"],
        "refund_required": result["refund_required"],
    }


@router.post("/{order_id}/note")
async def add_note(
    order_id: str,
    request: StatusNoteRequest,
    current_user: dict = Depends(require_auth),
):
    actor = await _load_for(order_id, current_user)
    order = await order_status_service.add_status_note(
        order_id, actor, request.note, request.expected_version
    )
    return {"success": True, "message": "Note added", "order": order}


@router.post("/{order_id}/revert")
async def revert_order_status(
    order_id: str,
    request: Optional[RevertRequest] = None,
    current_user: dict = Depends(require_auth),
):
    """Undo the latest status change within the modification window."""
    request = request or RevertRequest()
    actor = await _load_for(order_id, current_user)
    result = await order_status_service.revert_status(
        order_id, actor, reason=request.reason, expected_version=request.expected_version
    )
    return {
        "success": True,
        "message": f"Status reverted from {result['reverted_from']} to {result['reverted_to']}",
        **result,
    }
