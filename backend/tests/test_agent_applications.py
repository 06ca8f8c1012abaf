"""
Delivery agent applications: submission rules, the review flow and approval.
"""
import pytest
import os
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
os.chdir(BACKEND_DIR)

from auth import hash_token
from factories import make_agent
from services.agent_application_service import agent_application_service as svc, calculate_age
from services.errors import DuplicateApplicationError, NotFoundError, ValidationError


def make_application(**overrides):
    today = date.today()
    data = {
        "personal_info": {
            "full_name": "  Meera Nair ",
            "email": "Meera@Example.com",
            "phone": "9833333333",
            "date_of_birth": "1995-06-15",
        },
        "address": {"city": "Kochi", "pin_code": "682001"},
        "vehicle_info": {
            "vehicle_type": "scooter",
            "vehicle_number": "kl07ab1234",
            "license_number": "KL0720190001",
            "insurance_valid_until": (today + timedelta(days=200)).isoformat(),
        },
        "service_areas": [{"district": "Ernakulam", "city": "Kochi", "pin_codes": ["682001", "682011"]}],
        "bank_details": {
            "account_holder": "Meera Nair",
            "account_number": "998877665544",
            "ifsc_code": "fdrl0001234",
            "bank_name": "Federal Bank",
        },
        "documents": {"aadharFront": {"url": "https://files/aadhar-front.jpg"}, "photo": "https://files/me.jpg"},
        "terms_accepted": True,
    }
    data.update(overrides)
    return data


async def _submit(**overrides):
    return await svc.submit_application(make_application(**overrides), {"ip_address": "10.0.0.1"})


class TestAge:
    def test_birthday_not_yet_reached(self):
        assert calculate_age(date(2000, 6, 15), date(2018, 6, 14)) == 17
        assert calculate_age(date(2000, 6, 15), date(2018, 6, 15)) == 18


class TestSubmission:

    @pytest.mark.asyncio
    async def test_submit_normalises_and_numbers(self, mongo_db):
        period = datetime.now(timezone.utc).strftime("%y%m")
        first = await _submit()
        second = await svc.submit_application(make_application(personal_info={
            "full_name": "Arun", "email": "arun@example.com", "phone": "1", "date_of_birth": "1990-01-01",
        }))

        assert first == {"application_id": f"AGT{period}00001", "status": "pending"}
        assert second["application_id"] == f"AGT{period}00002"

        stored = await mongo_db.agent_applications.find_one({"application_id": first["application_id"]})
        assert stored["personal_info"]["email"] == "meera@example.com"
        assert stored["personal_info"]["full_name"] == "Meera Nair"
        assert stored["vehicle_info"]["vehicle_number"] == "KL07AB1234"
        assert stored["bank_details"]["ifsc_code"] == "FDRL0001234"
        assert stored["documents"] == {
            "aadharFront": {"url": "https://files/aadhar-front.jpg", "verified": False},
            "photo": {"url": "https://files/me.jpg", "verified": False},
        }
        assert stored["submission_meta"]["ip_address"] == "10.0.0.1"

        audit = await mongo_db.audit_logs.find_one({"action": "AGENT_APPLICATION_SUBMITTED"})
        assert audit["resource_id"] == first["application_id"]

    @pytest.mark.asyncio
    async def test_duplicate_email(self, mongo_db):
        await _submit()
        with pytest.raises(DuplicateApplicationError):
            await _submit()

    @pytest.mark.asyncio
    async def test_rejected_applicant_may_reapply(self, mongo_db):
        first = await _submit()
        await svc.reject_application(first["application_id"], "admin-1", "Documents were unreadable")
        second = await _submit()
        assert second["application_id"] != first["application_id"]

    @pytest.mark.asyncio
    async def test_existing_agent_email(self, mongo_db):
        await mongo_db.users.insert_one({**make_agent("agent-a"), "email": "meera@example.com"})
        with pytest.raises(DuplicateApplicationError):
            await _submit()

    @pytest.mark.parametrize("overrides", [
        {"terms_accepted": False},
        {"service_areas": []},
        {"documents": {"selfie": "https://files/x.jpg"}},
        {"vehicle_info": {"vehicle_type": "helicopter"}},
        {"vehicle_info": {"vehicle_type": "car", "insurance_valid_until": "2020-01-01"}},
        {"vehicle_info": {"vehicle_type": "car", "insurance_valid_until": "soon"}},
        {"bank_details": {"account_holder": "Meera"}},
    ])
    def test_invalid_submissions(self, overrides):
        with pytest.raises(ValidationError):
            svc._validate_submission(make_application(**overrides), date.today())

    def test_minimum_age(self):
        today = date(2026, 5, 1)
        personal = {"full_name": "Kid", "email": "kid@example.com", "phone": "1", "date_of_birth": "2008-05-02"}
        with pytest.raises(ValidationError):
            svc._validate_submission(make_application(personal_info=personal), today)
        personal["date_of_birth"] = "2008-05-01"
        svc._validate_submission(make_application(personal_info=personal), today)

    def test_missing_personal_field(self):
        personal = {"full_name": "A", "email": "a@example.com", "phone": ""}
        with pytest.raises(ValidationError):
            svc._validate_submission(make_application(personal_info=personal), date.today())


class TestStatusLookup:

    @pytest.mark.asyncio
    async def test_by_id_and_email(self, mongo_db):
        submitted = await _submit()
        by_id = await svc.get_application_status(submitted["application_id"].lower())
        by_email = await svc.get_application_status("MEERA@example.com")
        assert by_id["application_id"] == by_email["application_id"] == submitted["application_id"]
        assert by_id["applicant_name"] == "Meera Nair"
        assert "rejection_reason" not in by_id

    @pytest.mark.asyncio
    async def test_more_info_is_shown(self, mongo_db):
        submitted = await _submit()
        await svc.request_more_info(submitted["application_id"], "admin-1", "Upload the back of your licence")
        status = await svc.get_application_status(submitted["application_id"])
        assert status["status"] == "more_info_required"
        assert status["additional_info_requested"] == "Upload the back of your licence"

    @pytest.mark.asyncio
    async def test_unknown(self, mongo_db):
        with pytest.raises(NotFoundError):
            await svc.get_application_status("AGT999999999")


class TestReview:

    @pytest.mark.asyncio
    async def test_review_flow_guards(self, mongo_db):
        app_id = (await _submit())["application_id"]

        reviewed = await svc.mark_under_review(app_id, "admin-1")
        assert reviewed["status"] == "under_review"
        assert reviewed["reviewed_by"] == "admin-1"
        assert reviewed["review_notes"][-1]["status"] == "under_review"
        assert "_id" not in reviewed

        with pytest.raises(ValidationError):
            await svc.mark_under_review(app_id, "admin-1")
        with pytest.raises(ValidationError):
            await svc.request_more_info(app_id, "admin-1", "   ")

    @pytest.mark.asyncio
    async def test_reject(self, mongo_db):
        app_id = (await _submit())["application_id"]
        with pytest.raises(ValidationError):
            await svc.reject_application(app_id, "admin-1", "too short")

        rejected = await svc.reject_application(app_id, "admin-1", "  Vehicle insurance is not genuine  ")
        assert rejected["status"] == "rejected"
        assert rejected["rejection_reason"] == "Vehicle insurance is not genuine"

        with pytest.raises(ValidationError):
            await svc.reject_application(app_id, "admin-1", "Vehicle insurance is not genuine")
        with pytest.raises(ValidationError):
            await svc.approve_application(app_id, "admin-1")

    @pytest.mark.asyncio
    async def test_verify_document(self, mongo_db):
        app_id = (await _submit())["application_id"]

        result = await svc.verify_document(app_id, "aadharFront", "admin-1")
        assert result == {"application_id": app_id, "document_type": "aadharFront", "verified": True}
        stored = await mongo_db.agent_applications.find_one({"application_id": app_id})
        assert stored["documents"]["aadharFront"]["verified"] is True
        assert stored["documents"]["aadharFront"]["verified_by"] == "admin-1"

        with pytest.raises(ValidationError):
            await svc.verify_document(app_id, "panCard", "admin-1")
        with pytest.raises(ValidationError):
            await svc.verify_document(app_id, "passport", "admin-1")

    @pytest.mark.asyncio
    async def test_listing_masks_bank_account(self, mongo_db):
        await _submit()
        listing = await svc.get_all_applications(status="pending", search="meera")
        assert listing["pagination"]["total_items"] == 1
        assert listing["applications"][0]["bank_details"]["account_number_masked"] == "XXXX5544"


class TestApproval:

    @pytest.mark.asyncio
    async def test_approve_creates_agent(self, mongo_db):
        app_id = (await _submit())["application_id"]

        with patch("services.agent_application_service.hash_password", return_value="hashed"), \
                patch("services.agent_application_service.generate_secure_token", return_value="setup-token"):
            result = await svc.approve_application(app_id, "admin-1", "Looks good")

        assert result["application"]["status"] == "approved"
        assert result["agent_email"] == "meera@example.com"

        user = await mongo_db.users.find_one({"user_id": result["agent_id"]})
        assert user["role"] == "shipping_agent"
        assert user["password_hash"] == "hashed"
        profile = user["agent_profile"]
        assert profile["vehicle_type"] == "scooter"
        assert profile["service_areas"][0]["pin_codes"] == ["682001", "682011"]
        assert profile["commission_rate"] == 5.0
        assert profile["wallet_balance"] == 0.0

        token = await mongo_db.password_tokens.find_one({"user_id": result["agent_id"]})
        assert token["purpose"] == "agent_setup"
        assert token["token_hash"] == hash_token("setup-token")

        queued = await mongo_db.notification_outbox.find_one({"template_key": "AGENT_APPROVED"})
        assert queued["recipient"] == "meera@example.com"
        assert queued["context"]["setup_link"].endswith("/set-password?token=setup-token")

        with pytest.raises(ValidationError):
            await svc.approve_application(app_id, "admin-1")

    @pytest.mark.asyncio
    async def test_approve_upgrades_existing_customer(self, mongo_db):
        await mongo_db.users.insert_one({
            "user_id": "cust-9", "email": "meera@example.com", "role": "customer", "is_active": True,
        })
        app_id = (await _submit())["application_id"]
        result = await svc.approve_application(app_id, "admin-1")

        assert result["agent_id"] == "cust-9"
        user = await mongo_db.users.find_one({"user_id": "cust-9"})
        assert user["role"] == "shipping_agent"
        assert await mongo_db.users.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_email_queue_failure_does_not_undo_approval(self, mongo_db):
        app_id = (await _submit())["application_id"]
        with patch("services.agent_application_service.hash_password", return_value="hashed"), \
                patch("services.agent_application_service.notification_outbox.enqueue",
                      new_callable=AsyncMock, side_effect=RuntimeError("queue down")):
            result = await svc.approve_application(app_id, "admin-1")
        assert result["application"]["status"] == "approved"


class TestStats:

    @pytest.mark.asyncio
    async def test_stats(self):
        db = MagicMock()
        db.agent_applications.aggregate = MagicMock(side_effect=[
            MagicMock(to_list=AsyncMock(return_value=[
                {"_id": "pending", "count": 3}, {"_id": "approved", "count": 2},
            ])),
            MagicMock(to_list=AsyncMock(return_value=[
                {"_id": {"year": 2026, "month": 9}, "count": 4},
                {"_id": {"year": 2026, "month": 10}, "count": 1},
            ])),
        ])
        recent_cursor = MagicMock()
        recent_cursor.sort.return_value.limit.return_value.to_list = AsyncMock(return_value=[{"application_id": "AGT1"}])
        db.agent_applications.find = MagicMock(return_value=recent_cursor)

        with patch("services.agent_application_service.database.get_db", return_value=db):
            stats = await svc.get_application_stats()

        assert stats["status_summary"]["pending"] == 3
        assert stats["status_summary"]["rejected"] == 0
        assert stats["status_summary"]["total"] == 5
        assert stats["recent_applications"] == [{"application_id": "AGT1"}]
        assert stats["monthly_stats"] == [
            {"year": 2026, "month": 9, "count": 4},
            {"year": 2026, "month": 10, "count": 1},
        ]
