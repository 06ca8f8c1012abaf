from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr
from typing import Optional, List, Dict, Any
from datetime import datetime
from middleware import admin_route_guard
from services import admin_service
from services.shipping_assignment_service import shipping_assignment_service
from models import AuditAction, UserRole
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_route_guard)])


class BroadcastRequest(BaseModel):
    target_agent_ids: Optional[List[str]] = None
    target_pin_codes: Optional[List[str]] = None
    target_district: Optional[str] = None
    note: Optional[str] = None
    expected_version: Optional[int] = None


class AssignAgentRequest(BaseModel):
    agent_id: str
    note: Optional[str] = None
    reassign: bool = False
    expected_version: Optional[int] = None


class OverrideStatusRequest(BaseModel):
    new_status: str
    reason: str
    expected_version: Optional[int] = None


class UserFlagRequest(BaseModel):
    flag: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class CreateAgentRequest(BaseModel):
    name: str
    email: EmailStr
    phone: str
    password: str
    agent_profile: Optional[Dict[str, Any]] = None


# ============================================
# PLATFORM
# ============================================

@router.get("/stats")
async def get_stats():
    """Order, revenue, agent and application counts for the admin dashboard."""
    return await admin_service.get_platform_stats()


@router.get("/activity-logs")
async def get_activity_logs(
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = Query(50, le=200),
):
    return await admin_service.get_activity_logs(
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


# ============================================
# ORDERS
# ============================================

@router.get("/orders")
async def list_orders(
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
):
    return await admin_service.get_all_orders(
        status=status,
        payment_status=payment_status,
        artisan_id=artisan_id,
        buyer_id=buyer_id,
        agent_id=agent_id,
        search=search,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/pickup-requests")
async def list_pickup_requests(
    pin_code: Optional[str] = None,
    city: Optional[str] = None,
    district: Optional[str] = None,
    include_assigned: bool = False,
    page: int = 1,
    limit: int = 20,
):
    """Orders waiting for a pickup agent."""
    return await admin_service.get_pending_pickup_requests(
        pin_code=pin_code,
        city=city,
        district=district,
        include_assigned=include_assigned,
        page=page,
        limit=limit,
    )


@router.post("/orders/{order_id}/broadcast")
async def broadcast_pickup(
    order_id: str,
    request: BroadcastRequest,
    current_user: dict = Depends(admin_route_guard),
):
    result = await shipping_assignment_service.broadcast_pickup_request(
        order_id,
        current_user["user_id"],
        target_agent_ids=request.target_agent_ids,
        target_pin_codes=request.target_pin_codes,
        target_district=request.target_district,
        note=request.note,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": f"Pickup request sent to {result['agents_notified']} agent(s)", **result}


@router.post("/orders/{order_id}/assign-agent")
async def assign_agent(
    order_id: str,
    request: AssignAgentRequest,
    current_user: dict = Depends(admin_route_guard),
):
    order = await admin_service.assign_agent_to_order(
        order_id,
        request.agent_id,
        current_user["user_id"],
        note=request.note,
        reassign=request.reassign,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": "Agent assigned", "order": order}


@router.post("/orders/{order_id}/override-status")
async def override_status(
    order_id: str,
    request: OverrideStatusRequest,
    current_user: dict = Depends(admin_route_guard),
):
    """
    Set any known status, bypassing the transition table.
    The reason is mandatory and recorded in history and the audit log.
    """
    result = await admin_service.override_order_status(
        order_id,
        request.new_status,
        current_user["user_id"],
        request.reason,
        expected_version=request.expected_version,
    )
    return {"success": True, "message": f"Status overridden to {result['new_status']}", **result}


# ============================================
# USERS
# ============================================

@router.get("/users/flagged")
async def list_flagged_users(flag: Optional[str] = None, page: int = 1, limit: int = 20):
    return await admin_service.get_flagged_users(flag=flag, page=page, limit=limit)


@router.post("/users/{user_id}/flag")
async def add_user_flag(
    user_id: str,
    request: UserFlagRequest,
    current_user: dict = Depends(admin_route_guard),
):
    """scam, fraud and banned flags also deactivate the account."""
    user = await admin_service.add_user_flag(
        user_id,
        request.flag,
        current_user["user_id"],
        reason=request.reason,
        expires_at=request.expires_at,
    )
    return {"success": True, "message": f"Flag '{request.flag}' added to user", "user": user}


@router.delete("/users/{user_id}/flag/{flag}")
async def remove_user_flag(user_id: str, flag: str, current_user: dict = Depends(admin_route_guard)):
    user = await admin_service.remove_user_flag(user_id, flag, current_user["user_id"])
    return {"success": True, "message": f"Flag '{flag}' removed from user", "user": user}


# ============================================
# AGENTS
# ============================================

@router.get("/agents")
async def list_agents(
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    district: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
):
    return await admin_service.get_all_agents(
        is_active=is_active, search=search, district=district, page=page, limit=limit
    )


@router.post("/agents")
async def create_agent(request: CreateAgentRequest, current_user: dict = Depends(admin_route_guard)):
    agent = await admin_service.create_agent(request.model_dump(), current_user["user_id"])
    return {"success": True, "agent": agent}


@router.patch("/agents/{agent_id}")
async def update_agent(
    agent_id: str,
    updates: Dict[str, Any],
    current_user: dict = Depends(admin_route_guard),
):
    agent = await admin_service.update_agent_profile(agent_id, updates, current_user["user_id"])
    return {"success": True, "agent": agent}


@router.get("/agents/{agent_id}/performance")
async def agent_performance(agent_id: str):
    return await admin_service.get_agent_performance(agent_id)


# ============================================
# JOBS
# ============================================

class RunJobRequest(BaseModel):
    job: str


@router.post("/jobs/run")
async def run_job_now(body: RunJobRequest, current_user: dict = Depends(admin_route_guard)):
    """Run a single background job by id. Returns the job's message for the admin toast."""
    from job_runner import JOB_RUNNERS

    job_id = (body.job or "").strip()
    if not job_id or job_id not in JOB_RUNNERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )
    try:
        result = await JOB_RUNNERS[job_id]()
    except Exception as e:
        logger.error(f"Manual job run error ({job_id}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to run job: {job_id}"
        )

    await create_audit_log(
        action=AuditAction.ADMIN_ACTION,
        actor_role=UserRole.ADMIN,
        actor_id=current_user["user_id"],
        metadata={"action": "manual_job_run", "job_id": job_id, "result": result},
    )
    message = (result.get("message") if result else None) or f"Job {job_id} completed"
    return {"success": True, "job": job_id, "message": message}
