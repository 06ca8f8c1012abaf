"""
Delivery agent applications.

Applicants submit through the public form; an admin reviews the application,
may ask for more information, and finally approves or rejects it. Approval
creates (or upgrades) the user account with role shipping_agent and an
agent_profile seeded from the application, issues a password-setup token and
queues the AGENT_APPROVED email.

Status flow:
    pending -> under_review -> more_info_required -> approved | rejected
"""
import logging
import os
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from auth import generate_secure_token, generate_temporary_password, hash_password, hash_token
from database import database
from models import (
    AgentApplication, AgentApplicationStatus, AgentDocumentType, AgentProfile, AuditAction,
    BankDetails, ServiceArea, UserRole, VehicleType,
)
from services.errors import DuplicateApplicationError, NotFoundError, ValidationError
from services.notification_outbox import AGENT_APPROVED, notification_outbox
from services.order_store import paginate, pagination_meta, utc_now
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

COUNTERS_COLLECTION = "counters"
APPLICATION_COUNTER_PREFIX = "agent_application_seq_"
APPLICATION_ID_PREFIX = "AGT"
MINIMUM_AGE = 18
MIN_REJECTION_REASON_LENGTH = 10
SETUP_TOKEN_TTL_HOURS = 72
STATS_WINDOW_DAYS = 180


def _parse_date(value: Any, label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            pass
    raise ValidationError(f"{label} must be a valid date (YYYY-MM-DD)")


def calculate_age(date_of_birth: date, today: date) -> int:
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def _mask_bank_details(application: Dict[str, Any]) -> Dict[str, Any]:
    bank = application.get("bank_details")
    if bank and bank.get("account_number"):
        bank = dict(bank)
        bank["account_number_masked"] = "XXXX" + bank["account_number"][-4:]
        application["bank_details"] = bank
    return application


class AgentApplicationService:
    """Submission and admin review of delivery agent applications."""

    async def _next_application_id(self, now: datetime) -> str:
        """AGT<yy><mm><sequence>, sequence counted per month."""
        db = database.get_db()
        period = now.strftime("%y%m")
        result = await db[COUNTERS_COLLECTION].find_one_and_update(
            {"_id": f"{APPLICATION_COUNTER_PREFIX}{period}"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        seq = (result or {}).get("seq", 1)
        return f"{APPLICATION_ID_PREFIX}{period}{seq:05d}"

    async def _get(self, application_id: str) -> Dict[str, Any]:
        db = database.get_db()
        application = await db.agent_applications.find_one({"application_id": application_id}, {"_id": 0})
        if not application:
            raise NotFoundError(f"Application not found: {application_id}")
        return application

    def _validate_submission(self, data: Dict[str, Any], today: date) -> Dict[str, Any]:
        personal = dict(data.get("personal_info") or {})
        for field in ("full_name", "email", "phone", "date_of_birth"):
            if not personal.get(field):
                raise ValidationError(f"personal_info.{field} is required")
        personal["full_name"] = personal["full_name"].strip()
        personal["email"] = personal["email"].strip().lower()
        personal["phone"] = personal["phone"].strip()

        dob = _parse_date(personal["date_of_birth"], "Date of birth")
        if calculate_age(dob, today) < MINIMUM_AGE:
            raise ValidationError(f"Applicants must be at least {MINIMUM_AGE} years old")
        personal["date_of_birth"] = dob.isoformat()

        vehicle = dict(data.get("vehicle_info") or {})
        if not vehicle.get("vehicle_type"):
            raise ValidationError("vehicle_info.vehicle_type is required")
        try:
            vehicle["vehicle_type"] = VehicleType(vehicle["vehicle_type"]).value
        except ValueError:
            raise ValidationError(f"Unsupported vehicle type: {vehicle['vehicle_type']}")
        if vehicle.get("vehicle_number"):
            vehicle["vehicle_number"] = vehicle["vehicle_number"].strip().upper()
        if vehicle.get("insurance_valid_until"):
            insurance = _parse_date(vehicle["insurance_valid_until"], "Insurance expiry")
            if insurance <= today:
                raise ValidationError("Vehicle insurance must be valid (not expired)")
            vehicle["insurance_valid_until"] = insurance.isoformat()

        if not data.get("terms_accepted"):
            raise ValidationError("Terms and conditions must be accepted")

        try:
            areas = [ServiceArea(**a).model_dump() for a in data.get("service_areas") or []]
            bank = BankDetails(**data["bank_details"]).model_dump() if data.get("bank_details") else None
        except (TypeError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid application data: {e}")
        if not areas:
            raise ValidationError("At least one service area is required")
        if bank:
            bank["ifsc_code"] = bank["ifsc_code"].strip().upper()

        documents = {}
        for doc_type, doc in (data.get("documents") or {}).items():
            try:
                key = AgentDocumentType(doc_type).value
            except ValueError:
                raise ValidationError(f"Unknown document type: {doc_type}")
            url = doc.get("url") if isinstance(doc, dict) else doc
            if url:
                documents[key] = {"url": url, "verified": False}

        return {
            "personal_info": personal,
            "address": data.get("address") or {},
            "vehicle_info": vehicle,
            "service_areas": areas,
            "bank_details": bank,
            "documents": documents,
            "emergency_contact": data.get("emergency_contact"),
            "availability": data.get("availability"),
            "experience": data.get("experience"),
        }

    async def submit_application(
        self,
        data: Dict[str, Any],
        submission_meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = utc_now()
        fields = self._validate_submission(data, now.date())
        email = fields["personal_info"]["email"]

        db = database.get_db()
        existing = await db.agent_applications.find_one(
            {"personal_info.email": email, "status": {"$ne": AgentApplicationStatus.REJECTED.value}},
            {"_id": 0, "application_id": 1, "status": 1},
        )
        if existing:
            raise DuplicateApplicationError(
                f"An application with this email already exists ({existing['application_id']}, {existing['status']})"
            )
        if await db.users.find_one(
            {"email": email, "role": UserRole.SHIPPING_AGENT.value}, {"_id": 0, "user_id": 1}
        ):
            raise DuplicateApplicationError("This email is already registered as a delivery agent")

        application = AgentApplication(
            application_id=await self._next_application_id(now),
            submission_meta={**(submission_meta or {}), "submitted_at": now, "terms_accepted_at": now},
            created_at=now,
            updated_at=now,
            **fields,
        )
        await db.agent_applications.insert_one(application.model_dump())
        logger.info(f"Agent application {application.application_id} submitted by {email}")

        await create_audit_log(
            action=AuditAction.AGENT_APPLICATION_SUBMITTED,
            resource_type="agent_application",
            resource_id=application.application_id,
            metadata={"email": email},
            ip_address=(submission_meta or {}).get("ip_address"),
        )
        return {"application_id": application.application_id, "status": application.status}

    async def get_application_status(self, identifier: str) -> Dict[str, Any]:
        """Public lookup by application id or by email (latest application)."""
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("Application id or email is required")

        db = database.get_db()
        if identifier.upper().startswith(APPLICATION_ID_PREFIX):
            application = await db.agent_applications.find_one(
                {"application_id": identifier.upper()}, {"_id": 0}
            )
        else:
            matches = await db.agent_applications.find(
                {"personal_info.email": identifier.lower()}, {"_id": 0}
            ).sort("created_at", -1).limit(1).to_list(length=1)
            application = matches[0] if matches else None
        if not application:
            raise NotFoundError("Application not found")

        status = application["status"]
        result = {
            "application_id": application["application_id"],
            "status": status,
            "applicant_name": application["personal_info"].get("full_name"),
            "submitted_at": (application.get("submission_meta") or {}).get("submitted_at"),
            "reviewed_at": application.get("reviewed_at"),
        }
        if status == AgentApplicationStatus.REJECTED.value:
            result["rejection_reason"] = application.get("rejection_reason")
        if status == AgentApplicationStatus.MORE_INFO_REQUIRED.value:
            result["additional_info_requested"] = application.get("additional_info_requested")
        return result

    async def get_all_applications(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status and status != "all":
            query["status"] = status
        if search:
            pattern = {"$regex": search, "$options": "i"}
            query["$or"] = [
                {"application_id": pattern},
                {"personal_info.full_name": pattern},
                {"personal_info.email": pattern},
                {"personal_info.phone": pattern},
            ]

        paging = paginate(page, limit)
        db = database.get_db()
        applications = await db.agent_applications.find(query, {"_id": 0}).sort(
            "created_at", -1
        ).skip(paging["skip"]).limit(paging["limit"]).to_list(length=paging["limit"])
        total = await db.agent_applications.count_documents(query)

        return {
            "applications": [_mask_bank_details(a) for a in applications],
            "pagination": pagination_meta(paging["page"], paging["limit"], total),
        }

    async def get_application(self, application_id: str) -> Dict[str, Any]:
        return _mask_bank_details(await self._get(application_id))

    async def _review_update(
        self,
        application: Dict[str, Any],
        admin_id: str,
        new_status: AgentApplicationStatus,
        action: AuditAction,
        note: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move an application to new_status, conditional on the status it was read in."""
        now = utc_now()
        db = database.get_db()
        updated = await db.agent_applications.find_one_and_update(
            {"application_id": application["application_id"], "status": application["status"]},
            {
                "$set": {
                    "status": new_status.value,
                    "reviewed_by": admin_id,
                    "reviewed_at": now,
                    "updated_at": now,
                    **(extra or {}),
                },
                "$push": {"review_notes": {
                    "status": new_status.value,
                    "admin_id": admin_id,
                    "note": note,
                    "created_at": now,
                }},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError(
                f"Application {application['application_id']} changed while it was being reviewed"
            )
        updated.pop("_id", None)

        await create_audit_log(
            action=action,
            actor_role=UserRole.ADMIN,
            actor_id=admin_id,
            resource_type="agent_application",
            resource_id=application["application_id"],
            before_state={"status": application["status"]},
            after_state={"status": new_status.value},
            metadata={"note": note} if note else None,
        )
        logger.info(
            f"Agent application {application['application_id']}: "
            f"{application['status']} -> {new_status.value} by admin {admin_id}"
        )
        return updated

    async def mark_under_review(self, application_id: str, admin_id: str) -> Dict[str, Any]:
        application = await self._get(application_id)
        if application["status"] != AgentApplicationStatus.PENDING.value:
            raise ValidationError("Only pending applications can be marked for review")
        return await self._review_update(
            application, admin_id, AgentApplicationStatus.UNDER_REVIEW, AuditAction.AGENT_APPLICATION_REVIEWED
        )

    async def request_more_info(self, application_id: str, admin_id: str, requested_info: str) -> Dict[str, Any]:
        if not (requested_info or "").strip():
            raise ValidationError("Describe the information required from the applicant")
        application = await self._get(application_id)
        if application["status"] not in (
            AgentApplicationStatus.PENDING.value, AgentApplicationStatus.UNDER_REVIEW.value
        ):
            raise ValidationError("Cannot request more info for this application status")
        return await self._review_update(
            application,
            admin_id,
            AgentApplicationStatus.MORE_INFO_REQUIRED,
            AuditAction.AGENT_APPLICATION_REVIEWED,
            note=requested_info.strip(),
            extra={"additional_info_requested": requested_info.strip()},
        )

    def _agent_profile_from(self, application: Dict[str, Any]) -> Dict[str, Any]:
        vehicle = application.get("vehicle_info") or {}
        return AgentProfile(
            service_areas=application.get("service_areas") or [],
            vehicle_type=vehicle.get("vehicle_type"),
            vehicle_number=vehicle.get("vehicle_number"),
            license_number=vehicle.get("license_number"),
            bank_details=application.get("bank_details"),
        ).model_dump()

    async def _issue_setup_token(self, user_id: str, now: datetime) -> str:
        db = database.get_db()
        token = generate_secure_token()
        await db.password_tokens.insert_one({
            "token_id": str(uuid.uuid4()),
            "token_hash": hash_token(token),
            "user_id": user_id,
            "purpose": "agent_setup",
            "expires_at": now + timedelta(hours=SETUP_TOKEN_TTL_HOURS),
            "used_at": None,
            "created_at": now,
        })
        return token

    async def approve_application(self, application_id: str, admin_id: str, notes: str = "") -> Dict[str, Any]:
        application = await self._get(application_id)
        if application["status"] == AgentApplicationStatus.APPROVED.value:
            raise ValidationError("Application is already approved")
        if application["status"] == AgentApplicationStatus.REJECTED.value:
            raise ValidationError("Cannot approve a rejected application")

        db = database.get_db()
        now = utc_now()
        personal = application["personal_info"]
        email = personal["email"]
        profile = self._agent_profile_from(application)

        user = await db.users.find_one({"email": email}, {"_id": 0, "user_id": 1, "role": 1})
        if user:
            user_id = user["user_id"]
            await db.users.update_one(
                {"user_id": user_id},
                {"$set": {
                    "role": UserRole.SHIPPING_AGENT.value,
                    "agent_profile": profile,
                    "updated_at": now,
                }},
            )
            logger.info(f"User {user_id} upgraded from {user.get('role')} to shipping agent")
        else:
            user_id = str(uuid.uuid4())
            await db.users.insert_one({
                "user_id": user_id,
                "name": personal.get("full_name"),
                "email": email,
                "phone": personal.get("phone"),
                "role": UserRole.SHIPPING_AGENT.value,
                "is_active": True,
                "is_verified": True,
                "password_hash": hash_password(generate_temporary_password()),
                "address": application.get("address") or {},
                "agent_profile": profile,
                "created_by": admin_id,
                "created_at": now,
                "updated_at": now,
            })
            logger.info(f"Agent user {user_id} created from application {application_id}")

        updated = await self._review_update(
            application,
            admin_id,
            AgentApplicationStatus.APPROVED,
            AuditAction.AGENT_APPLICATION_APPROVED,
            note=notes or None,
            extra={"user_id": user_id},
        )

        token = await self._issue_setup_token(user_id, now)
        frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
        try:
            await notification_outbox.enqueue(
                AGENT_APPROVED,
                recipient=email,
                context={
                    "agent_name": personal.get("full_name"),
                    "application_id": application_id,
                    "setup_link": f"{frontend_url}/set-password?token={token}",
                },
            )
        except Exception as e:
            logger.error(f"Failed to queue approval email for application {application_id}: {e}")

        return {"application": _mask_bank_details(updated), "agent_id": user_id, "agent_email": email}

    async def reject_application(self, application_id: str, admin_id: str, rejection_reason: str) -> Dict[str, Any]:
        reason = (rejection_reason or "").strip()
        if len(reason) < MIN_REJECTION_REASON_LENGTH:
            raise ValidationError(
                f"Please provide a valid rejection reason (minimum {MIN_REJECTION_REASON_LENGTH} characters)"
            )
        application = await self._get(application_id)
        if application["status"] == AgentApplicationStatus.APPROVED.value:
            raise ValidationError("Cannot reject an approved application")
        if application["status"] == AgentApplicationStatus.REJECTED.value:
            raise ValidationError("Application is already rejected")

        return await self._review_update(
            application,
            admin_id,
            AgentApplicationStatus.REJECTED,
            AuditAction.AGENT_APPLICATION_REJECTED,
            note=reason,
            extra={"rejection_reason": reason},
        )

    async def verify_document(self, application_id: str, document_type: str, admin_id: str) -> Dict[str, Any]:
        try:
            doc_key = AgentDocumentType(document_type).value
        except ValueError:
            raise ValidationError(f"Invalid document type: {document_type}")

        application = await self._get(application_id)
        document = (application.get("documents") or {}).get(doc_key) or {}
        if not document.get("url"):
            raise ValidationError("Document not uploaded")

        now = utc_now()
        db = database.get_db()
        await db.agent_applications.update_one(
            {"application_id": application_id},
            {"$set": {
                f"documents.{doc_key}.verified": True,
                f"documents.{doc_key}.verified_by": admin_id,
                f"documents.{doc_key}.verified_at": now,
                "updated_at": now,
            }},
        )
        await create_audit_log(
            action=AuditAction.AGENT_DOCUMENT_VERIFIED,
            actor_role=UserRole.ADMIN,
            actor_id=admin_id,
            resource_type="agent_application",
            resource_id=application_id,
            metadata={"document_type": doc_key},
        )
        return {"application_id": application_id, "document_type": doc_key, "verified": True}

    async def get_application_stats(self) -> Dict[str, Any]:
        db = database.get_db()
        status_counts: List[Dict[str, Any]] = await db.agent_applications.aggregate([
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]).to_list(length=None)

        summary = {s.value: 0 for s in AgentApplicationStatus}
        summary["total"] = 0
        for row in status_counts:
            summary[row["_id"]] = row["count"]
            summary["total"] += row["count"]

        recent = await db.agent_applications.find(
            {},
            {"_id": 0, "application_id": 1, "personal_info.full_name": 1, "status": 1, "created_at": 1},
        ).sort("created_at", -1).limit(5).to_list(length=5)

        monthly = await db.agent_applications.aggregate([
            {"$match": {"created_at": {"$gte": utc_now() - timedelta(days=STATS_WINDOW_DAYS)}}},
            {"$group": {
                "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
                "count": {"$sum": 1},
            }},
            {"$sort": {"_id.year": 1, "_id.month": 1}},
        ]).to_list(length=None)

        return {
            "status_summary": summary,
            "recent_applications": recent,
            "monthly_stats": [
                {"year": m["_id"]["year"], "month": m["_id"]["month"], "count": m["count"]} for m in monthly
            ],
        }


agent_application_service = AgentApplicationService()
