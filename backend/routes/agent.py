"""
Shipping agent routes - opportunities, deliveries and wallet.
All endpoints act on the authenticated agent's own data.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from middleware import agent_route_guard
from services.shipping_assignment_service import shipping_assignment_service
from services import agent_wallet_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/agent", tags=["agent"])


# ============================================
# MODELS
# ============================================

class VersionedRequest(BaseModel):
    expected_version: Optional[int] = None


class PickupRequest(BaseModel):
    note: Optional[str] = None
    pickup_proof_image: Optional[str] = None
    expected_version: Optional[int] = None


class DeliveryRequest(BaseModel):
    note: Optional[str] = None
    delivery_proof_image: Optional[str] = None
    signature: Optional[str] = None
    otp: Optional[str] = None
    expected_version: Optional[int] = None


class PayoutRequest(BaseModel):
    amount: float


class BankDetailsRequest(BaseModel):
    account_holder: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None


class ServiceAreaItem(BaseModel):
    district: Optional[str] = None
    city: Optional[str] = None
    pin_codes: List[str] = []


class ServiceAreasRequest(BaseModel):
    service_areas: List[ServiceAreaItem]


# ============================================
# PROFILE & DASHBOARD
# ============================================

@router.get("/dashboard")
async def get_dashboard(current_user: dict = Depends(agent_route_guard)):
    return await shipping_assignment_service.get_agent_dashboard(current_user["user_id"])


@router.get("/profile")
async def get_profile(current_user: dict = Depends(agent_route_guard)):
    return await shipping_assignment_service.get_agent_profile(current_user["user_id"])


# ============================================
# OPPORTUNITIES
# ============================================

@router.get("/opportunities")
async def list_opportunities(
    page: int = 1,
    limit: int = 20,
    pin_code: Optional[str] = None,
    district: Optional[str] = None,
    current_user: dict = Depends(agent_route_guard),
):
    """Pickup requests this agent may express interest in."""
    return await shipping_assignment_service.get_available_opportunities(
        current_user["user_id"], page=page, limit=limit, pin_code=pin_code, district=district
    )


@router.post("/opportunities/{order_id}/interest")
async def express_interest(
    order_id: str,
    request: Optional[VersionedRequest] = None,
    current_user: dict = Depends(agent_route_guard),
):
    request = request or VersionedRequest()
    result = await shipping_assignment_service.express_interest(
        order_id, current_user["user_id"], expected_version=request.expected_version
    )
    return {"success": True, "message": "Interest recorded", **result}


# ============================================
# DELIVERIES
# ============================================

@router.get("/deliveries")
async def list_deliveries(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: dict = Depends(agent_route_guard),
):
    """Assigned deliveries, optionally filtered to pending / active / completed."""
    return await shipping_assignment_service.get_assigned_deliveries(
        current_user["user_id"], status=status, page=page, limit=limit
    )


@router.get("/deliveries/history")
async def delivery_history(
    page: int = 1,
    limit: int = 20,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    current_user: dict = Depends(agent_route_guard),
):
    return await shipping_assignment_service.get_delivery_history(
        current_user["user_id"], page=page, limit=limit, date_from=date_from, date_to=date_to
    )


@router.post("/deliveries/{order_id}/accept")
async def accept_delivery(
    order_id: str,
    request: Optional[VersionedRequest] = None,
    current_user: dict = Depends(agent_route_guard),
):
    request = request or VersionedRequest()
    result = await shipping_assignment_service.accept_delivery(
        order_id, current_user["user_id"], expected_version=request.expected_version
    )
    return {"success": True, "message": "Delivery accepted", **result}


@router.post("/deliveries/{order_id}/pickup")
async def confirm_pickup(
    order_id: str,
    request: Optional[PickupRequest] = None,
    current_user: dict = Depends(agent_route_guard),
):
    request = request or PickupRequest()
    order = await shipping_assignment_service.confirm_pickup(
        order_id,
        current_user["user_id"],
        note=request.note,
        pickup_proof_image=request.pickup_proof_image,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Pickup confirmed", "order": order}


@router.post("/deliveries/{order_id}/deliver")
async def mark_delivered(
    order_id: str,
    request: Optional[DeliveryRequest] = None,
    current_user: dict = Depends(agent_route_guard),
):
    request = request or DeliveryRequest()
    result = await shipping_assignment_service.mark_delivered(
        order_id,
        current_user["user_id"],
        note=request.note,
        delivery_proof_image=request.delivery_proof_image,
        signature=request.signature,
        otp=request.otp,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Delivery completed", **result}


# ============================================
# EARNINGS & WALLET
# ============================================

@router.get("/earnings")
async def get_earnings(period: str = "month", current_user: dict = Depends(agent_route_guard)):
    return await shipping_assignment_service.get_earnings(current_user["user_id"], period=period)


@router.get("/wallet")
async def get_wallet(current_user: dict = Depends(agent_route_guard)):
    return await agent_wallet_service.get_wallet(current_user["user_id"])


@router.post("/wallet/payout")
async def request_payout(request: PayoutRequest, current_user: dict = Depends(agent_route_guard)):
    result = await agent_wallet_service.request_payout(current_user["user_id"], request.amount)
    return {"success": True, "message": "Payout requested", **result}


@router.put("/bank-details")
async def update_bank_details(request: BankDetailsRequest, current_user: dict = Depends(agent_route_guard)):
    bank_details = await agent_wallet_service.update_bank_details(
        current_user["user_id"],
        request.account_holder,
        request.account_number,
        request.ifsc_code,
        request.bank_name,
    )
    return {"success": True, "bank_details": bank_details}


@router.put("/service-areas")
async def update_service_areas(request: ServiceAreasRequest, current_user: dict = Depends(agent_route_guard)):
    areas = await agent_wallet_service.update_service_areas(
        current_user["user_id"], [a.model_dump() for a in request.service_areas]
    )
    return {"success": True, "service_areas": areas}
