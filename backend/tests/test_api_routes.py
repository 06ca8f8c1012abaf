"""
HTTP layer: role guards, request bodies and the mapping of service errors to
status codes. Services are mocked; their behaviour is covered elsewhere.
"""
import pytest
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
os.chdir(BACKEND_DIR)

from auth import create_access_token
from factories import make_order
from services.agent_application_service import agent_application_service
from services.errors import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    PersistenceError, WindowExpiredError,
)
from services.shipping_assignment_service import shipping_assignment_service


def _headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'user_id': user_id, 'role': role})}"}


ARTISAN = _headers("artisan-1", "artisan")
BUYER = _headers("buyer-1", "customer")
STRANGER = _headers("buyer-2", "customer")
ADMIN = _headers("admin-1", "admin")
AGENT = _headers("agent-a", "shipping_agent")


class TestPublicEndpoints:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_lookups_need_no_auth(self, client):
        carriers = client.get("/api/orders/shipping-carriers").json()["carriers"]
        statuses = client.get("/api/orders/status-names").json()["statuses"]
        assert any(c["id"] == "bluedart" for c in carriers)
        assert statuses["pickup_requested"] == "Pickup Requested"


class TestOrderRoutes:

    def test_requires_token(self, client):
        assert client.patch("/api/orders/ord-1001/receive").status_code == 401

    def test_receive_without_body(self, client):
        received = make_order(status="received", version=1)
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order()), \
                patch("services.order_status_service.mark_as_received",
                      new_callable=AsyncMock, return_value=received) as mark:
            response = client.patch("/api/orders/ord-1001/receive", headers=ARTISAN)

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "received"
        actor = mark.call_args.args[1]
        assert (actor.user_id, actor.role) == ("artisan-1", "artisan")
        assert mark.call_args.args[2:] == (None, None)

    def test_invalid_transition_is_409_with_allowed_set(self, client):
        error = InvalidTransitionError("pending", "packed", ["received", "cancelled"])
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order()), \
                patch("services.order_status_service.mark_as_packed",
                      new_callable=AsyncMock, side_effect=error):
            response = client.patch("/api/orders/ord-1001/pack", headers=ARTISAN, json={"expected_version": 0})

        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "INVALID_TRANSITION"
        assert body["current_status"] == "pending"
        assert body["allowed_transitions"] == ["received", "cancelled"]

    @pytest.mark.parametrize("error,status_code,error_code", [
        (ConflictError("stale"), 409, "CONFLICT"),
        (WindowExpiredError("too late"), 409, "MODIFICATION_WINDOW_EXPIRED"),
        (NotFoundError("gone"), 404, "NOT_FOUND"),
    ])
    def test_revert_error_mapping(self, client, error, status_code, error_code):
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order()), \
                patch("services.order_status_service.revert_status", new_callable=AsyncMock, side_effect=error):
            response = client.post("/api/orders/ord-1001/revert", headers=ARTISAN)
        assert response.status_code == status_code
        assert response.json()["error_code"] == error_code

    def test_persistence_failure_is_503(self, client):
        with patch("routes.orders.get_order", new_callable=AsyncMock, side_effect=PersistenceError("down")):
            response = client.get("/api/orders/ord-1001/history", headers=BUYER)
        assert response.status_code == 503
        assert response.json()["error_code"] == "PERSISTENCE_ERROR"

    def test_buyer_may_cancel_but_not_pack(self, client):
        cancelled = {"order": make_order(status="cancelled"), "refund_required": True}
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order()), \
                patch("services.order_status_service.cancel_order",
                      new_callable=AsyncMock, return_value=cancelled) as cancel:
            response = client.patch("/api/orders/ord-1001/cancel", headers=BUYER, json={"reason": "Ordered twice"})
            packed = client.patch("/api/orders/ord-1001/pack", headers=BUYER)

        assert response.status_code == 200
        assert response.json()["refund_required"] is True
        assert cancel.call_args.args[2] == "Ordered twice"
        assert packed.status_code == 403

    def test_other_customers_are_refused(self, client):
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order()):
            response = client.get("/api/orders/ord-1001/status-info", headers=STRANGER)
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    def test_cancel_requires_reason_field(self, client):
        response = client.patch("/api/orders/ord-1001/cancel", headers=BUYER, json={})
        assert response.status_code == 422
        assert "request_id" in response.json()

    def test_self_ship_passes_fields(self, client):
        with patch("routes.orders.get_order", new_callable=AsyncMock, return_value=make_order(status="packed")), \
                patch("services.order_status_service.confirm_self_shipping",
                      new_callable=AsyncMock, return_value=make_order(status="shipped")) as ship:
            response = client.post(
                "/api/orders/ord-1001/self-ship",
                headers=ARTISAN,
                json={"carrier": "delhivery", "tracking_number": "1234567890123"},
            )
        assert response.status_code == 200
        assert ship.call_args.kwargs["carrier"] == "delhivery"
        assert ship.call_args.kwargs["tracking_number"] == "1234567890123"


class TestAdminRoutes:

    def test_non_admin_is_forbidden(self, client):
        assert client.get("/api/admin/stats", headers=ARTISAN).status_code == 403
        assert client.get("/api/admin/stats").status_code == 401

    def test_override_status(self, client):
        result = {"order": make_order(status="shipped"), "previous_status": "delivered", "new_status": "shipped"}
        with patch("services.admin_service.override_order_status",
                   new_callable=AsyncMock, return_value=result) as override:
            response = client.post(
                "/api/admin/orders/ord-1001/override-status",
                headers=ADMIN,
                json={"new_status": "shipped", "reason": "Courier returned parcel"},
            )
        assert response.status_code == 200
        assert response.json()["previous_status"] == "delivered"
        assert override.call_args.args == ("ord-1001", "shipped", "admin-1", "Courier returned parcel")

    def test_assign_agent(self, client):
        with patch("services.admin_service.assign_agent_to_order",
                   new_callable=AsyncMock, return_value=make_order()) as assign:
            response = client.post(
                "/api/admin/orders/ord-1001/assign-agent",
                headers=ADMIN,
                json={"agent_id": "agent-a", "reassign": True},
            )
        assert response.status_code == 200
        assert assign.call_args.kwargs["reassign"] is True

    def test_broadcast(self, client):
        result = {"order_id": "ord-1001", "agents_notified": 2, "agents": []}
        with patch.object(shipping_assignment_service, "broadcast_pickup_request",
                          new_callable=AsyncMock, return_value=result):
            response = client.post(
                "/api/admin/orders/ord-1001/broadcast", headers=ADMIN, json={"target_pin_codes": ["560001"]}
            )
        assert response.status_code == 200
        assert response.json()["message"] == "Pickup request sent to 2 agent(s)"

    def test_flag_user(self, client):
        with patch("services.admin_service.add_user_flag",
                   new_callable=AsyncMock, return_value={"user_id": "agent-b", "is_active": False}) as add:
            response = client.post(
                "/api/admin/users/agent-b/flag", headers=ADMIN, json={"flag": "fraud", "reason": "Fake proofs"}
            )
        assert response.status_code == 200
        assert response.json()["user"]["is_active"] is False
        assert add.call_args.args == ("agent-b", "fraud", "admin-1")
        assert add.call_args.kwargs["reason"] == "Fake proofs"

    def test_unflag_user(self, client):
        with patch("services.admin_service.remove_user_flag",
                   new_callable=AsyncMock, return_value={"user_id": "agent-b"}) as remove:
            response = client.delete("/api/admin/users/agent-b/flag/warning", headers=ADMIN)
        assert response.status_code == 200
        assert remove.call_args.args == ("agent-b", "warning", "admin-1")


class TestAgentRoutes:

    def test_customer_cannot_use_agent_routes(self, client):
        assert client.get("/api/agent/dashboard", headers=BUYER).status_code == 403

    def test_accept_for_unassigned_agent(self, client):
        with patch.object(shipping_assignment_service, "accept_delivery", new_callable=AsyncMock,
                          side_effect=AuthorizationError("This order is not assigned to you")):
            response = client.post("/api/agent/deliveries/ord-1001/accept", headers=AGENT)
        assert response.status_code == 403
        assert response.json()["detail"] == "This order is not assigned to you"

    def test_deliver(self, client):
        result = {"order": make_order(status="delivered"), "commission": 100.0, "wallet_credited": True}
        with patch.object(shipping_assignment_service, "mark_delivered",
                          new_callable=AsyncMock, return_value=result) as deliver:
            response = client.post(
                "/api/agent/deliveries/ord-1001/deliver", headers=AGENT, json={"otp": "4321"}
            )
        assert response.status_code == 200
        assert response.json()["commission"] == 100.0
        assert deliver.call_args.args == ("ord-1001", "agent-a")
        assert deliver.call_args.kwargs["otp"] == "4321"


class TestApplicationRoutes:

    def test_submit_is_public(self, client):
        payload = {
            "personal_info": {
                "full_name": "Meera Nair", "email": "meera@example.com",
                "phone": "9833333333", "date_of_birth": "1995-06-15",
            },
            "vehicle_info": {"vehicle_type": "scooter"},
            "service_areas": [{"pin_codes": ["682001"]}],
            "terms_accepted": True,
        }
        with patch.object(agent_application_service, "submit_application", new_callable=AsyncMock,
                          return_value={"application_id": "AGT261000001", "status": "pending"}) as submit:
            response = client.post("/api/agent-applications", json=payload)

        assert response.status_code == 200
        assert response.json()["application_id"] == "AGT261000001"
        data = submit.call_args.args[0]
        assert data["personal_info"]["date_of_birth"] == "1995-06-15"

    def test_review_endpoints_are_admin_only(self, client):
        assert client.get("/api/agent-applications/admin", headers=AGENT).status_code == 403
