"""
Full fulfilment runs against an in-memory database: artisan prepares the order,
admin broadcasts and assigns, the agent delivers and is paid.
"""
import pytest
import os
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
os.chdir(BACKEND_DIR)

from factories import make_agent, make_order
from models import Actor, UserRole
from services import admin_service
from services import order_status_service as oss
from services.errors import InvalidTransitionError, TerminalStateError, ValidationError
from services.order_store import get_order
from services.shipping_assignment_service import shipping_assignment_service as sas

ARTISAN = Actor(user_id="artisan-1", role=UserRole.ARTISAN)
BUYER = Actor(user_id="buyer-1", role=UserRole.CUSTOMER)


class TestPickupAgentFlow:

    @pytest.mark.asyncio
    async def test_order_to_wallet(self, mongo_db):
        await mongo_db.users.insert_many([make_agent("agent-a"), make_agent("agent-b")])
        await mongo_db.orders.insert_one(make_order())

        await oss.mark_as_received("ord-1001", ARTISAN)
        await oss.mark_as_packed("ord-1001", ARTISAN)
        order = await oss.request_pickup_agent("ord-1001", ARTISAN)
        assert order["status"] == "pickup_requested"
        assert "shipping_method" not in order

        broadcast = await sas.broadcast_pickup_request("ord-1001", "admin-1", target_pin_codes=["560001"])
        assert broadcast["agents_notified"] == 2

        await sas.express_interest("ord-1001", "agent-a")
        await sas.express_interest("ord-1001", "agent-b")
        await admin_service.assign_agent_to_order("ord-1001", "agent-a", "admin-1")

        accepted = await sas.accept_delivery("ord-1001", "agent-a")
        assert accepted["commission"] == 100.0

        shipped = await sas.confirm_pickup("ord-1001", "agent-a")
        assert shipped["status"] == "shipped"
        assert shipped["shipping_method"] == "pickup_agent"

        delivered = await sas.mark_delivered("ord-1001", "agent-a")
        assert delivered["wallet_credited"] is True

        order = await get_order("ord-1001")
        assert order["status"] == "delivered"
        statuses = [entry["status"] for entry in order["status_history"]]
        assert statuses == [
            "pending", "received", "packed", "pickup_requested",
            "pickup_requested", "pickup_requested", "shipped", "delivered",
        ]
        timestamps = [entry["timestamp"] for entry in order["status_history"]]
        assert timestamps == sorted(timestamps)
        # seven history writes plus broadcast and two interest writes
        assert order["version"] == 10

        agent_a = await mongo_db.users.find_one({"user_id": "agent-a"})
        agent_b = await mongo_db.users.find_one({"user_id": "agent-b"})
        assert agent_a["agent_profile"]["wallet_balance"] == 100.0
        assert agent_b["agent_profile"]["wallet_balance"] == 0

        rows = await mongo_db.notification_outbox.find({}).to_list(length=None)
        templates = [row["template_key"] for row in rows]
        assert templates == [
            "ORDER_STATUS_UPDATE", "ORDER_STATUS_UPDATE", "ORDER_STATUS_UPDATE",
            "ORDER_SHIPPED", "ORDER_DELIVERED",
        ]

        # Delivered is terminal for everyone but an admin override
        with pytest.raises(TerminalStateError):
            await oss.revert_status("ord-1001", ARTISAN)
        with pytest.raises(InvalidTransitionError):
            await oss.cancel_order("ord-1001", BUYER, "Changed my mind")


class TestCancellation:

    @pytest.mark.asyncio
    async def test_paid_order_cancelled_in_transit_needs_refund(self, mongo_db):
        await mongo_db.orders.insert_one(make_order(status="shipped"))
        result = await oss.cancel_order("ord-1001", BUYER, "  Lost in transit ")

        assert result["refund_required"] is True
        cancellation = result["order"]["cancellation"]
        assert cancellation["refund_status"] == "pending"
        assert cancellation["reason"] == "Lost in transit"
        assert cancellation["cancelled_by_role"] == "customer"
        assert result["order"]["status_history"][-1]["note"] == "Cancelled: Lost in transit"

    @pytest.mark.asyncio
    async def test_unpaid_order_needs_no_refund(self, mongo_db):
        await mongo_db.orders.insert_one(make_order(payment_status="pending"))
        result = await oss.cancel_order("ord-1001", BUYER, "Ordered twice")
        assert result["refund_required"] is False
        assert result["order"]["cancellation"]["refund_status"] is None

    @pytest.mark.asyncio
    async def test_reason_is_mandatory(self, mongo_db):
        await mongo_db.orders.insert_one(make_order())
        with pytest.raises(ValidationError):
            await oss.cancel_order("ord-1001", BUYER, "   ")
        assert (await get_order("ord-1001"))["status"] == "pending"
