"""
Delivery agent application routes.
Submission and status lookup are public; review endpoints are admin only.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from typing import Optional, List, Dict, Any
from datetime import date
from middleware import admin_route_guard
from services.agent_application_service import agent_application_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/agent-applications", tags=["agent-applications"])


# ============================================
# MODELS
# ============================================

class PersonalInfo(BaseModel):
    full_name: str
    email: EmailStr
    phone: str
    date_of_birth: date


class VehicleInfo(BaseModel):
    vehicle_type: str
    vehicle_number: Optional[str] = None
    license_number: Optional[str] = None
    insurance_valid_until: Optional[date] = None


class ApplicationServiceArea(BaseModel):
    district: Optional[str] = None
    city: Optional[str] = None
    pin_codes: List[str] = []


class ApplicationBankDetails(BaseModel):
    account_holder: str
    account_number: str
    ifsc_code: str
    bank_name: str


class SubmitApplicationRequest(BaseModel):
    personal_info: PersonalInfo
    address: Dict[str, Any] = {}
    vehicle_info: VehicleInfo
    service_areas: List[ApplicationServiceArea]
    bank_details: Optional[ApplicationBankDetails] = None
    documents: Dict[str, Any] = {}
    emergency_contact: Optional[Dict[str, Any]] = None
    availability: Optional[Dict[str, Any]] = None
    experience: Optional[Dict[str, Any]] = None
    terms_accepted: bool = False


class ReviewNoteRequest(BaseModel):
    notes: Optional[str] = None


class MoreInfoRequest(BaseModel):
    requested_info: str


class RejectRequest(BaseModel):
    reason: str


# ============================================
# PUBLIC
# ============================================

@router.post("")
async def submit_application(request: SubmitApplicationRequest, http_request: Request):
    """Submit a delivery partner application."""
    result = await agent_application_service.submit_application(
        request.model_dump(mode="json"),
        submission_meta={
            "ip_address": http_request.client.host if http_request.client else None,
            "user_agent": http_request.headers.get("user-agent"),
        },
    )
    return {"success": True, "message": "Application submitted successfully", **result}


@router.get("/status/{identifier}")
async def get_application_status(identifier: str):
    """Look up by application id (AGT...) or by email."""
    return await agent_application_service.get_application_status(identifier)


# ============================================
# ADMIN
# ============================================

@router.get("/admin/stats")
async def get_application_stats(current_user: dict = Depends(admin_route_guard)):
    return await agent_application_service.get_application_stats()


@router.get("/admin")
async def list_applications(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: dict = Depends(admin_route_guard),
):
    return await agent_application_service.get_all_applications(
        status=status, search=search, page=page, limit=limit
    )


@router.get("/admin/{application_id}")
async def get_application(application_id: str, current_user: dict = Depends(admin_route_guard)):
    return await agent_application_service.get_application(application_id)


@router.patch("/admin/{application_id}/review")
async def mark_under_review(application_id: str, current_user: dict = Depends(admin_route_guard)):
    application = await agent_application_service.mark_under_review(application_id, current_user["user_id"])
    return {"success": True, "message": "Application marked as under review", "application": application}


@router.patch("/admin/{application_id}/request-info")
async def request_more_info(
    application_id: str,
    request: MoreInfoRequest,
    current_user: dict = Depends(admin_route_guard),
):
    application = await agent_application_service.request_more_info(
        application_id, current_user["user_id"], request.requested_info
    )
    return {"success": True, "message": "Additional information requested", "application": application}


@router.post("/admin/{application_id}/approve")
async def approve_application(
    application_id: str,
    request: Optional[ReviewNoteRequest] = None,
    current_user: dict = Depends(admin_route_guard),
):
    """Approve and create the agent account. The applicant receives a password setup link."""
    request = request or ReviewNoteRequest()
    result = await agent_application_service.approve_application(
        application_id, current_user["user_id"], request.notes or ""
    )
    return {"success": True, "message": "Application approved successfully", **result}


@router.post("/admin/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: RejectRequest,
    current_user: dict = Depends(admin_route_guard),
):
    application = await agent_application_service.reject_application(
        application_id, current_user["user_id"], request.reason
    )
    return {"success": True, "message": "Application rejected", "application": application}


@router.patch("/admin/{application_id}/documents/{document_type}/verify")
async def verify_document(
    application_id: str,
    document_type: str,
    current_user: dict = Depends(admin_route_guard),
):
    result = await agent_application_service.verify_document(
        application_id, document_type, current_user["user_id"]
    )
    return {"success": True, "message": f"{document_type} verified", **result}
