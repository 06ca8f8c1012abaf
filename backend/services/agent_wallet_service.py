"""
Agent wallet: delivery credits, payouts, bank details and service areas.

A delivery credit is written in two steps. The delivered order carries a
wallet_credit record {status: pending} in the same write that marks it
delivered; apply_delivery_credit then increments the agent's counters with a
single $inc guarded by credited_order_ids, and flips the record to applied.
If the second step fails the reconciler job picks the pending record up again;
the guard keeps a retry from paying twice.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from database import database
from models import AuditAction, BankDetails, PayoutRecord, ServiceArea, UserRole, WalletCreditStatus
from services.errors import (
    BelowMinimumPayoutError, InsufficientBalanceError, NotFoundError, ValidationError,
)
from services.order_store import utc_now
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MIN_PAYOUT_AMOUNT = 100.0


async def get_agent(agent_id: str) -> Dict:
    db = database.get_db()
    agent = await db.users.find_one(
        {"user_id": agent_id, "role": UserRole.SHIPPING_AGENT.value},
        {"_id": 0, "password_hash": 0},
    )
    if not agent:
        raise NotFoundError(f"Agent not found: {agent_id}")
    return agent


async def apply_delivery_credit(order_id: str) -> bool:
    """Credit the agent for a delivered order. Safe to call any number of times."""
    db = database.get_db()
    order = await db.orders.find_one({"order_id": order_id}, {"_id": 0, "order_id": 1, "wallet_credit": 1})
    credit = (order or {}).get("wallet_credit")
    if not credit or credit.get("status") == WalletCreditStatus.APPLIED.value:
        return False

    agent_id = credit["agent_id"]
    amount = credit.get("amount") or 0

    result = await db.users.update_one(
        {"user_id": agent_id, "agent_profile.credited_order_ids": {"$ne": order_id}},
        {
            "$inc": {
                "agent_profile.wallet_balance": amount,
                "agent_profile.total_earnings": amount,
                "agent_profile.total_deliveries": 1,
                "agent_profile.successful_deliveries": 1,
            },
            "$push": {"agent_profile.credited_order_ids": order_id},
        },
    )

    if result.matched_count == 0:
        already_credited = await db.users.count_documents(
            {"user_id": agent_id, "agent_profile.credited_order_ids": order_id}
        )
        if not already_credited:
            logger.error(f"Wallet credit for order {order_id} skipped: agent {agent_id} not found")
            return False

    await db.orders.update_one(
        {"order_id": order_id, "wallet_credit.status": WalletCreditStatus.PENDING.value},
        {"$set": {
            "wallet_credit.status": WalletCreditStatus.APPLIED.value,
            "wallet_credit.applied_at": utc_now(),
        }},
    )

    if result.modified_count:
        logger.info(f"Credited ₹{amount} to agent {agent_id} for order {order_id}")
        await create_audit_log(
            action=AuditAction.WALLET_CREDIT_APPLIED,
            actor_role=UserRole.SYSTEM,
            resource_type="agent",
            resource_id=agent_id,
            metadata={"order_id": order_id, "amount": amount},
        )
        return True
    return False


async def reconcile_pending_credits(limit: int = 100) -> int:
    """Re-apply credits left pending by a failure after the delivery write."""
    db = database.get_db()
    cursor = db.orders.find(
        {"wallet_credit.status": WalletCreditStatus.PENDING.value},
        {"_id": 0, "order_id": 1},
    ).limit(limit)
    pending = await cursor.to_list(length=limit)

    applied = 0
    for row in pending:
        try:
            if await apply_delivery_credit(row["order_id"]):
                applied += 1
        except Exception as e:
            logger.warning(f"Wallet credit retry for order {row['order_id']} failed: {e}")
    return applied


async def get_wallet(agent_id: str) -> Dict[str, Any]:
    agent = await get_agent(agent_id)
    profile = agent.get("agent_profile") or {}
    return {
        "wallet_balance": profile.get("wallet_balance", 0),
        "total_earnings": profile.get("total_earnings", 0),
        "payout_history": sorted(
            profile.get("payout_history") or [],
            key=lambda p: str(p.get("requested_at")),
            reverse=True,
        ),
        "bank_details_on_file": bool(profile.get("bank_details")),
        "min_payout_amount": MIN_PAYOUT_AMOUNT,
    }


async def request_payout(agent_id: str, amount: float) -> Dict[str, Any]:
    """Debit the wallet for a payout. The debit is conditional on the balance at write time."""
    try:
        amount = round(float(amount), 2)
    except (TypeError, ValueError):
        raise ValidationError("Payout amount must be a number")

    agent = await get_agent(agent_id)
    profile = agent.get("agent_profile") or {}

    if amount > profile.get("wallet_balance", 0):
        raise InsufficientBalanceError("Insufficient wallet balance")
    if amount < MIN_PAYOUT_AMOUNT:
        raise BelowMinimumPayoutError(f"Minimum payout amount is ₹{MIN_PAYOUT_AMOUNT:.0f}")
    if not profile.get("bank_details"):
        raise ValidationError("Please add bank details before requesting payout")

    payout = PayoutRecord(amount=amount, transaction_id=f"PO{int(time.time() * 1000)}").model_dump()

    db = database.get_db()
    updated = await db.users.find_one_and_update(
        {"user_id": agent_id, "agent_profile.wallet_balance": {"$gte": amount}},
        {
            "$inc": {"agent_profile.wallet_balance": -amount},
            "$push": {"agent_profile.payout_history": payout},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # Balance dropped between the read and the debit
        raise InsufficientBalanceError("Insufficient wallet balance")

    logger.info(f"Payout {payout['transaction_id']} of ₹{amount} requested by agent {agent_id}")
    await create_audit_log(
        action=AuditAction.PAYOUT_REQUESTED,
        actor_role=UserRole.SHIPPING_AGENT,
        actor_id=agent_id,
        resource_type="agent",
        resource_id=agent_id,
        metadata={"amount": amount, "transaction_id": payout["transaction_id"]},
    )
    return {
        "payout": payout,
        "new_balance": updated["agent_profile"]["wallet_balance"],
    }


def _mask_account(bank_details: Dict[str, Any]) -> Dict[str, Any]:
    masked = dict(bank_details)
    number = masked.get("account_number") or ""
    masked["account_number"] = f"****{number[-4:]}" if len(number) > 4 else number
    return masked


async def update_bank_details(
    agent_id: str,
    account_holder: Optional[str],
    account_number: Optional[str],
    ifsc_code: Optional[str],
    bank_name: Optional[str],
) -> Dict[str, Any]:
    if not all([account_holder, account_number, ifsc_code, bank_name]):
        raise ValidationError("All bank details are required")

    details = BankDetails(
        account_holder=account_holder.strip(),
        account_number=account_number.strip(),
        ifsc_code=ifsc_code.strip().upper(),
        bank_name=bank_name.strip(),
    ).model_dump()

    await get_agent(agent_id)
    db = database.get_db()
    await db.users.update_one(
        {"user_id": agent_id},
        {"$set": {"agent_profile.bank_details": details, "updated_at": utc_now()}},
    )
    logger.info(f"Bank details updated for agent {agent_id}")
    return _mask_account(details)


async def update_service_areas(agent_id: str, service_areas: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(service_areas, list):
        raise ValidationError("Service areas must be a list")
    try:
        areas = [ServiceArea(**area).model_dump() for area in service_areas]
    except (TypeError, PydanticValidationError) as e:
        raise ValidationError(f"Invalid service area: {e}")
    for area in areas:
        area["pin_codes"] = [str(pin).strip() for pin in area["pin_codes"] if str(pin).strip()]

    await get_agent(agent_id)
    db = database.get_db()
    await db.users.update_one(
        {"user_id": agent_id},
        {"$set": {"agent_profile.service_areas": areas, "updated_at": utc_now()}},
    )
    logger.info(f"Service areas updated for agent {agent_id}: {len(areas)} area(s)")
    return areas
