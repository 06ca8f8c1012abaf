"""
Agent wallet: idempotent delivery credit, reconciliation and payouts.
"""
import pytest
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
os.chdir(BACKEND_DIR)

from factories import make_agent, make_order
from services import agent_wallet_service as wallet
from services.errors import BelowMinimumPayoutError, InsufficientBalanceError, ValidationError

BANK = {"account_holder": "Ravi", "account_number": "123456789012", "ifsc_code": "SBIN0001234", "bank_name": "SBI"}


def _delivered(order_id="ord-1001", amount=100.0, agent_id="agent-a"):
    return make_order(
        order_id=order_id,
        order_number=f"RR-{order_id}",
        status="delivered",
        shipping_details={"assigned_agent_id": agent_id, "delivered_by": agent_id, "agent_commission": amount},
        wallet_credit={
            "agent_id": agent_id,
            "amount": amount,
            "status": "pending",
            "created_at": datetime.now(timezone.utc),
        },
    )


async def _profile(db, agent_id="agent-a"):
    agent = await db.users.find_one({"user_id": agent_id})
    return agent["agent_profile"]


class TestDeliveryCredit:
    """The credit lands exactly once whatever the number of attempts."""

    @pytest.mark.asyncio
    async def test_credit_applied_once(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a"))
        await mongo_db.orders.insert_one(_delivered())

        assert await wallet.apply_delivery_credit("ord-1001") is True
        assert await wallet.apply_delivery_credit("ord-1001") is False

        profile = await _profile(mongo_db)
        assert profile["wallet_balance"] == 100.0
        assert profile["total_earnings"] == 100.0
        assert profile["total_deliveries"] == 1
        assert profile["credited_order_ids"] == ["ord-1001"]

        order = await mongo_db.orders.find_one({"order_id": "ord-1001"})
        assert order["wallet_credit"]["status"] == "applied"

    @pytest.mark.asyncio
    async def test_retry_after_lost_status_flip(self, mongo_db):
        # Agent already credited but the order record still says pending
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=100.0, credited_order_ids=["ord-1001"]))
        await mongo_db.orders.insert_one(_delivered())

        assert await wallet.apply_delivery_credit("ord-1001") is False
        assert (await _profile(mongo_db))["wallet_balance"] == 100.0
        order = await mongo_db.orders.find_one({"order_id": "ord-1001"})
        assert order["wallet_credit"]["status"] == "applied"

    @pytest.mark.asyncio
    async def test_order_without_credit_record(self, mongo_db):
        await mongo_db.orders.insert_one(make_order())
        assert await wallet.apply_delivery_credit("ord-1001") is False

    @pytest.mark.asyncio
    async def test_unknown_agent_leaves_credit_pending(self, mongo_db):
        await mongo_db.orders.insert_one(_delivered(agent_id="ghost"))
        assert await wallet.apply_delivery_credit("ord-1001") is False
        order = await mongo_db.orders.find_one({"order_id": "ord-1001"})
        assert order["wallet_credit"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_reconciler_applies_pending(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a"))
        await mongo_db.orders.insert_many([
            _delivered("o-1", 100.0),
            _delivered("o-2", 60.5),
        ])
        assert await wallet.reconcile_pending_credits() == 2
        assert await wallet.reconcile_pending_credits() == 0
        assert (await _profile(mongo_db))["wallet_balance"] == 160.5

    @pytest.mark.asyncio
    async def test_reconciler_survives_one_failure(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a"))
        await mongo_db.orders.insert_many([_delivered("o-1"), _delivered("o-2")])

        real = wallet.apply_delivery_credit

        async def flaky(order_id):
            if order_id == "o-1":
                raise RuntimeError("connection reset")
            return await real(order_id)

        with patch.object(wallet, "apply_delivery_credit", side_effect=flaky):
            assert await wallet.reconcile_pending_credits() == 1


class TestPayout:

    @pytest.mark.asyncio
    async def test_payout_debits_wallet(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=500.0, bank_details=BANK))

        result = await wallet.request_payout("agent-a", 150)
        assert result["new_balance"] == 350.0
        assert result["payout"]["amount"] == 150.0
        assert result["payout"]["status"] == "pending"
        assert result["payout"]["transaction_id"].startswith("PO")

        profile = await _profile(mongo_db)
        assert profile["wallet_balance"] == 350.0
        assert len(profile["payout_history"]) == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=120.0, bank_details=BANK))
        with pytest.raises(InsufficientBalanceError):
            await wallet.request_payout("agent-a", 200)

    @pytest.mark.asyncio
    async def test_below_minimum(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=500.0, bank_details=BANK))
        with pytest.raises(BelowMinimumPayoutError):
            await wallet.request_payout("agent-a", 99.99)

    @pytest.mark.asyncio
    async def test_requires_bank_details(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=500.0))
        with pytest.raises(ValidationError):
            await wallet.request_payout("agent-a", 200)

    @pytest.mark.asyncio
    async def test_non_numeric_amount(self):
        with pytest.raises(ValidationError):
            await wallet.request_payout("agent-a", "lots")

    @pytest.mark.asyncio
    async def test_wallet_view(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a", wallet_balance=42.0, bank_details=BANK))
        view = await wallet.get_wallet("agent-a")
        assert view["wallet_balance"] == 42.0
        assert view["bank_details_on_file"] is True
        assert view["min_payout_amount"] == 100.0


class TestAgentSettings:

    @pytest.mark.asyncio
    async def test_bank_details_are_masked(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a"))
        masked = await wallet.update_bank_details("agent-a", "Ravi", " 123456789012 ", "sbin0001234", "SBI")
        assert masked["account_number"] == "****9012"
        assert masked["ifsc_code"] == "SBIN0001234"
        stored = (await _profile(mongo_db))["bank_details"]
        assert stored["account_number"] == "123456789012"

    @pytest.mark.asyncio
    async def test_bank_details_required(self):
        with pytest.raises(ValidationError):
            await wallet.update_bank_details("agent-a", "Ravi", None, "SBIN0001234", "SBI")

    @pytest.mark.asyncio
    async def test_service_areas(self, mongo_db):
        await mongo_db.users.insert_one(make_agent("agent-a"))
        areas = await wallet.update_service_areas(
            "agent-a", [{"district": "Mysuru", "pin_codes": ["570001", " 570002 ", ""]}]
        )
        assert areas == [{"district": "Mysuru", "city": None, "pin_codes": ["570001", "570002"]}]

    @pytest.mark.asyncio
    async def test_service_areas_must_be_list(self):
        with pytest.raises(ValidationError):
            await wallet.update_service_areas("agent-a", {"district": "Mysuru"})
