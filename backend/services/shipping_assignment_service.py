"""
Shipping Assignment Service - pickup broadcast and the agent delivery protocol.

Flow: an admin broadcasts a pickup_requested order to eligible agents, agents
express interest, an admin assigns one agent (admin_service), the agent accepts
(commission frozen), confirms pickup (shipped) and marks it delivered (wallet
credited through agent_wallet_service).
"""
import logging
import re
import secrets
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from database import database
from models import Actor, AuditAction, UserRole, WalletCreditStatus
from services.agent_wallet_service import apply_delivery_credit, get_agent
from services.errors import (
    AlreadyAcceptedError, AlreadyAssignedError, AlreadyInterestedError,
    AuthorizationError, TerminalStateError, ValidationError,
)
from services.notification_outbox import ORDER_DELIVERED, ORDER_SHIPPED, notify_order_event
from services.order_status_service import apply_transition
from services.order_store import (
    build_history_entry, check_expected_version, commit_order_update,
    find_orders, get_order, paginate, pagination_meta, utc_now,
)
from services.order_workflow import (
    DEFAULT_DELIVERY_DAYS, TERMINAL_STATUSES, OrderStatus, ShippingMethod,
    TransitionContext, is_terminal_state,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELIVERY_FEE = 50
DEFAULT_COMMISSION_RATE = 5
EARNINGS_PERIODS = ("today", "week", "month")

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def _agent_actor(agent_id: str) -> Actor:
    return Actor(user_id=agent_id, role=UserRole.SHIPPING_AGENT)


def _active_agent_query() -> Dict[str, Any]:
    return {
        "role": UserRole.SHIPPING_AGENT.value,
        "is_active": True,
        "agent_profile.is_active": True,
    }


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class ShippingAssignmentService:
    """Agent side of order fulfilment."""

    # ------------------------------------------------------------------
    # Pure helpers
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_commission(order: Dict, agent_profile: Optional[Dict]) -> float:
        """base_delivery_fee + total_amount * commission_rate / 100, rounded half-up to 2 places."""
        profile = agent_profile or {}
        base = profile.get("base_delivery_fee")
        rate = profile.get("commission_rate")
        base = DEFAULT_BASE_DELIVERY_FEE if base is None else base
        rate = DEFAULT_COMMISSION_RATE if rate is None else rate
        order_value = order.get("total_amount") or 0

        amount = Decimal(str(base)) + Decimal(str(order_value)) * Decimal(str(rate)) / Decimal(100)
        return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    @staticmethod
    def generate_tracking_number() -> str:
        """RR<epoch ms><4 uppercase base36 chars>"""
        alphabet = string.digits + string.ascii_uppercase
        suffix = "".join(secrets.choice(alphabet) for _ in range(4))
        return f"RR{int(time.time() * 1000)}{suffix}"

    @staticmethod
    def _assert_assigned(order: Dict, agent_id: str) -> Dict:
        shipping = order.get("shipping_details") or {}
        if shipping.get("assigned_agent_id") != agent_id:
            raise AuthorizationError("This order is not assigned to you")
        return shipping

    # ------------------------------------------------------------------
    # Broadcast & opportunities
    # ------------------------------------------------------------------

    async def broadcast_pickup_request(
        self,
        order_id: str,
        admin_id: str,
        target_agent_ids: Optional[List[str]] = None,
        target_pin_codes: Optional[List[str]] = None,
        target_district: Optional[str] = None,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Offer a pickup_requested order to eligible agents.

        Targeting priority: explicit agent ids, then pin codes, then district,
        otherwise every active agent.
        """
        order = await get_order(order_id)
        check_expected_version(order, expected_version)
        if order["status"] != OrderStatus.PICKUP_REQUESTED.value:
            raise ValidationError("Order must be in pickup_requested status to broadcast")

        query = _active_agent_query()
        if target_agent_ids:
            query["user_id"] = {"$in": list(target_agent_ids)}
        elif target_pin_codes:
            query["agent_profile.service_areas.pin_codes"] = {"$in": [str(p) for p in target_pin_codes]}
        elif target_district:
            query["agent_profile.service_areas.district"] = {
                "$regex": re.escape(target_district.strip()),
                "$options": "i",
            }

        db = database.get_db()
        agents = await db.users.find(
            query,
            {"_id": 0, "user_id": 1, "name": 1, "phone": 1, "agent_profile.rating": 1},
        ).to_list(length=1000)
        agent_ids = [a["user_id"] for a in agents]

        await commit_order_update(
            order,
            set_fields={
                "shipping_details.broadcast_info": {
                    "broadcasted_at": utc_now(),
                    "broadcasted_by": admin_id,
                    "broadcast_note": note,
                    "targeted_agent_ids": agent_ids,
                    "interested_agents": [],
                },
            },
        )

        # Push delivery to agent devices is handled outside this service
        logger.info(f"Pickup request {order_id} broadcast to {len(agent_ids)} agent(s) by {admin_id}")
        await create_audit_log(
            action=AuditAction.PICKUP_BROADCAST,
            actor_role=UserRole.ADMIN,
            actor_id=admin_id,
            resource_type="order",
            resource_id=order_id,
            metadata={
                "agent_count": len(agent_ids),
                "target_agent_ids": target_agent_ids,
                "target_pin_codes": target_pin_codes,
                "target_district": target_district,
            },
        )

        return {
            "order_id": order_id,
            "agents_notified": len(agent_ids),
            "agents": [
                {
                    "agent_id": a["user_id"],
                    "name": a.get("name"),
                    "phone": a.get("phone"),
                    "rating": (a.get("agent_profile") or {}).get("rating", 0),
                }
                for a in agents
            ],
        }

    async def get_available_opportunities(
        self,
        agent_id: str,
        page: int = 1,
        limit: int = 20,
        pin_code: Optional[str] = None,
        district: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Unassigned pickup requests this agent may claim."""
        agent = await get_agent(agent_id)
        profile = agent.get("agent_profile") or {}
        if not agent.get("is_active") or not profile.get("is_active"):
            raise AuthorizationError("Agent account is not active")

        agent_pins = [
            str(pin)
            for area in profile.get("service_areas") or []
            for pin in area.get("pin_codes") or []
        ]
        visibility: List[Dict[str, Any]] = [
            {"shipping_details.broadcast_info.targeted_agent_ids": agent_id},
            {"shipping_details.broadcast_info": {"$exists": False}},
            {"shipping_details.broadcast_info.targeted_agent_ids": {"$exists": False}},
            {"shipping_details.broadcast_info.targeted_agent_ids": {"$size": 0}},
        ]
        if agent_pins:
            visibility.append({"shipping_address.pin_code": {"$in": agent_pins}})

        query: Dict[str, Any] = {
            "status": OrderStatus.PICKUP_REQUESTED.value,
            "shipping_details.assigned_agent_id": None,
            "$or": visibility,
        }
        if pin_code:
            query["shipping_address.pin_code"] = str(pin_code)
        if district:
            query["shipping_address.district"] = {"$regex": re.escape(district), "$options": "i"}

        paging = paginate(page, limit)
        result = await find_orders(
            query,
            sort=[("shipping_details.pickup_requested_at", -1)],
            skip=paging["skip"],
            limit=paging["limit"],
        )

        opportunities = []
        for order in result["orders"]:
            shipping = order.get("shipping_details") or {}
            interested = (shipping.get("broadcast_info") or {}).get("interested_agents") or []
            address = order.get("shipping_address") or {}
            opportunities.append({
                "order_id": order["order_id"],
                "order_number": order.get("order_number"),
                "total_amount": order.get("total_amount"),
                "item_count": len(order.get("items") or []),
                "delivery_area": {
                    "city": address.get("city"),
                    "district": address.get("district"),
                    "pin_code": address.get("pin_code"),
                },
                "pickup_requested_at": shipping.get("pickup_requested_at"),
                "pickup_scheduled_at": shipping.get("pickup_scheduled_at"),
                "broadcast_note": (shipping.get("broadcast_info") or {}).get("broadcast_note"),
                "estimated_commission": self.calculate_commission(order, profile),
                "already_interested": any(i.get("agent_id") == agent_id for i in interested),
                "version": order.get("version", 0),
            })

        return {
            "opportunities": opportunities,
            "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
        }

    # ------------------------------------------------------------------
    # Agent protocol
    # ------------------------------------------------------------------

    async def express_interest(
        self,
        order_id: str,
        agent_id: str,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        agent = await get_agent(agent_id)
        profile = agent.get("agent_profile") or {}
        if not agent.get("is_active") or not profile.get("is_active"):
            raise AuthorizationError("Agent account is not active")

        order = await get_order(order_id)
        check_expected_version(order, expected_version)
        if order["status"] != OrderStatus.PICKUP_REQUESTED.value:
            raise ValidationError("This order is no longer available for pickup")

        shipping = order.get("shipping_details") or {}
        if shipping.get("assigned_agent_id"):
            raise AlreadyAssignedError("This order has already been assigned to an agent")
        interested = (shipping.get("broadcast_info") or {}).get("interested_agents") or []
        if any(i.get("agent_id") == agent_id for i in interested):
            raise AlreadyInterestedError("You have already expressed interest in this order")

        entry = {
            "agent_id": agent_id,
            "agent_name": agent.get("name"),
            "agent_phone": agent.get("phone"),
            "agent_rating": profile.get("rating", 0),
            "interested_at": utc_now(),
        }
        updated = await commit_order_update(
            order,
            push_fields={"shipping_details.broadcast_info.interested_agents": entry},
            extra_filter={
                "status": OrderStatus.PICKUP_REQUESTED.value,
                "shipping_details.assigned_agent_id": None,
            },
        )
        count = len(updated["shipping_details"]["broadcast_info"]["interested_agents"])
        logger.info(f"Agent {agent_id} interested in order {order_id} ({count} interested)")
        return {"order_id": order_id, "interested_count": count, "version": updated["version"]}

    async def accept_delivery(
        self,
        order_id: str,
        agent_id: str,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Assigned agent confirms the job. Freezes the commission."""
        order = await get_order(order_id)
        check_expected_version(order, expected_version)
        shipping = self._assert_assigned(order, agent_id)
        if shipping.get("agent_accepted_at"):
            raise AlreadyAcceptedError("You have already accepted this delivery")
        if is_terminal_state(order["status"]):
            raise TerminalStateError(f"Order is already {order['status']}")

        commission = shipping.get("agent_commission")
        if commission is None:
            agent = await get_agent(agent_id)
            commission = self.calculate_commission(order, agent.get("agent_profile"))

        now = utc_now()
        updated = await commit_order_update(
            order,
            set_fields={
                "shipping_details.agent_accepted": True,
                "shipping_details.agent_accepted_at": now,
                "shipping_details.agent_commission": commission,
            },
            history_entry=build_history_entry(
                order["status"], _agent_actor(agent_id),
                "Delivery accepted by agent", {"agent_commission": commission}, timestamp=now,
            ),
            extra_filter={"shipping_details.agent_accepted_at": None},
        )
        logger.info(f"Agent {agent_id} accepted order {order_id}, commission ₹{commission}")

        db = database.get_db()
        artisan = await db.users.find_one(
            {"user_id": order.get("artisan_id")},
            {"_id": 0, "name": 1, "phone": 1, "addresses": 1, "business_name": 1},
        ) or {}
        customer = order.get("customer_info") or {}
        return {
            "order": updated,
            "commission": commission,
            "pickup_details": {
                "artisan_name": artisan.get("business_name") or artisan.get("name"),
                "phone": artisan.get("phone"),
                "address": (artisan.get("addresses") or [None])[0],
                "scheduled_at": shipping.get("pickup_scheduled_at"),
            },
            "delivery_details": {
                "customer_name": customer.get("name"),
                "phone": customer.get("phone"),
                "address": order.get("shipping_address"),
            },
        }

    async def confirm_pickup(
        self,
        order_id: str,
        agent_id: str,
        note: Optional[str] = None,
        pickup_proof_image: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict:
        """Agent collected the parcel: the order ships via pickup_agent."""
        order = await get_order(order_id)
        check_expected_version(order, expected_version)
        shipping = self._assert_assigned(order, agent_id)

        now = utc_now()
        tracking = shipping.get("tracking_number") or order.get("tracking_number") or self.generate_tracking_number()
        set_fields = {
            "shipping_method": ShippingMethod.PICKUP_AGENT.value,
            "shipping_details.picked_up_at": now,
            "shipping_details.picked_up_by": agent_id,
            "shipping_details.pickup_proof_image": pickup_proof_image,
            "shipping_details.tracking_number": tracking,
            "tracking_number": tracking,
        }
        if not order.get("estimated_delivery"):
            set_fields["estimated_delivery"] = now + timedelta(days=DEFAULT_DELIVERY_DAYS)

        updated = await apply_transition(
            order,
            OrderStatus.SHIPPED,
            _agent_actor(agent_id),
            note or "Package picked up by delivery agent",
            context=TransitionContext.AGENT_PICKUP,
            set_fields=set_fields,
            metadata={"tracking_number": tracking},
        )

        await notify_order_event(ORDER_SHIPPED, updated, {
            "carrier_name": "RootsReach delivery partner",
            "tracking_number": tracking,
            "agent_name": shipping.get("pickup_agent_name"),
        })
        return updated

    async def mark_delivered(
        self,
        order_id: str,
        agent_id: str,
        note: Optional[str] = None,
        delivery_proof_image: Optional[str] = None,
        signature: Optional[str] = None,
        otp: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Agent handed the parcel over.

        The delivered write carries a pending wallet_credit record; the credit
        itself is applied right after and retried by the reconciler on failure.
        """
        order = await get_order(order_id)
        check_expected_version(order, expected_version)
        shipping = self._assert_assigned(order, agent_id)

        now = utc_now()
        set_fields: Dict[str, Any] = {}
        commission = shipping.get("agent_commission")
        if commission is None:
            agent = await get_agent(agent_id)
            commission = self.calculate_commission(order, agent.get("agent_profile"))
            set_fields["shipping_details.agent_commission"] = commission

        set_fields.update({
            "shipping_details.delivered_at": now,
            "shipping_details.delivered_by": agent_id,
            "shipping_details.delivery_proof_image": delivery_proof_image,
            "shipping_details.delivery_signature": signature,
            "delivery_confirmation": {
                "confirmed_at": now,
                "signature": signature,
                "confirmed_by": agent_id,
            },
            "wallet_credit": {
                "agent_id": agent_id,
                "amount": commission,
                "status": WalletCreditStatus.PENDING.value,
                "created_at": now,
            },
        })

        updated = await apply_transition(
            order,
            OrderStatus.DELIVERED,
            _agent_actor(agent_id),
            note or "Package delivered successfully",
            context=TransitionContext.AGENT_DELIVERY,
            set_fields=set_fields,
            metadata={"otp_provided": bool(otp), "agent_commission": commission},
        )

        credited = False
        try:
            credited = await apply_delivery_credit(order_id)
        except PyMongoError as e:
            logger.error(f"Wallet credit for order {order_id} deferred to reconciler: {e}")
        if credited:
            updated["wallet_credit"]["status"] = WalletCreditStatus.APPLIED.value

        await notify_order_event(ORDER_DELIVERED, updated)
        return {"order": updated, "commission": commission, "wallet_credited": credited}

    # ------------------------------------------------------------------
    # Agent read models
    # ------------------------------------------------------------------

    async def get_agent_profile(self, agent_id: str) -> Dict[str, Any]:
        agent = await get_agent(agent_id)
        profile = dict(agent.get("agent_profile") or {})
        profile.pop("credited_order_ids", None)
        bank = profile.get("bank_details")
        if bank and bank.get("account_number"):
            number = bank["account_number"]
            profile["bank_details"] = {**bank, "account_number": f"****{number[-4:]}"}
        return {**agent, "agent_profile": profile}

    async def get_agent_dashboard(self, agent_id: str) -> Dict[str, Any]:
        agent = await get_agent(agent_id)
        profile = agent.get("agent_profile") or {}
        db = database.get_db()
        now = utc_now()
        today = _start_of_day(now)
        month_start = today.replace(day=1)

        assigned = {"shipping_details.assigned_agent_id": agent_id}
        pending = await db.orders.count_documents({
            **assigned,
            "shipping_details.agent_accepted_at": None,
            "status": {"$nin": _TERMINAL_VALUES},
        })
        active = await db.orders.count_documents({
            **assigned,
            "shipping_details.agent_accepted_at": {"$ne": None},
            "status": {"$nin": _TERMINAL_VALUES},
        })
        delivered_query = {
            "shipping_details.delivered_by": agent_id,
            "status": OrderStatus.DELIVERED.value,
        }
        completed_today = await db.orders.find(
            {**delivered_query, "shipping_details.delivered_at": {"$gte": today}},
            {"_id": 0, "shipping_details.agent_commission": 1},
        ).to_list(length=1000)
        completed_month = await db.orders.count_documents(
            {**delivered_query, "shipping_details.delivered_at": {"$gte": month_start}}
        )
        opportunities = await self.get_available_opportunities(agent_id, page=1, limit=1)

        return {
            "agent": {
                "agent_id": agent_id,
                "name": agent.get("name"),
                "rating": profile.get("rating", 0),
                "is_active": bool(agent.get("is_active") and profile.get("is_active")),
            },
            "stats": {
                "pending_deliveries": pending,
                "active_deliveries": active,
                "completed_today": len(completed_today),
                "completed_this_month": completed_month,
                "today_earnings": round(sum(
                    (o.get("shipping_details") or {}).get("agent_commission") or 0 for o in completed_today
                ), 2),
                "available_opportunities": opportunities["pagination"]["total_items"],
            },
            "wallet": {
                "balance": profile.get("wallet_balance", 0),
                "total_earnings": profile.get("total_earnings", 0),
            },
            "totals": {
                "total_deliveries": profile.get("total_deliveries", 0),
                "successful_deliveries": profile.get("successful_deliveries", 0),
            },
        }

    async def get_assigned_deliveries(
        self,
        agent_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """status: pending (not accepted), active (accepted, in progress) or completed."""
        query: Dict[str, Any] = {"shipping_details.assigned_agent_id": agent_id}
        if status == "pending":
            query["shipping_details.agent_accepted_at"] = None
            query["status"] = {"$nin": _TERMINAL_VALUES}
        elif status == "active":
            query["shipping_details.agent_accepted_at"] = {"$ne": None}
            query["status"] = {"$nin": _TERMINAL_VALUES}
        elif status == "completed":
            query["status"] = OrderStatus.DELIVERED.value
        elif status:
            raise ValidationError("Status filter must be one of: pending, active, completed")

        paging = paginate(page, limit)
        result = await find_orders(
            query,
            sort=[("shipping_details.agent_assigned_at", -1)],
            skip=paging["skip"],
            limit=paging["limit"],
        )
        return {
            "deliveries": result["orders"],
            "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
        }

    async def get_delivery_history(
        self,
        agent_id: str,
        page: int = 1,
        limit: int = 20,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "shipping_details.delivered_by": agent_id,
            "status": OrderStatus.DELIVERED.value,
        }
        if date_from or date_to:
            query["shipping_details.delivered_at"] = {}
            if date_from:
                query["shipping_details.delivered_at"]["$gte"] = date_from
            if date_to:
                query["shipping_details.delivered_at"]["$lte"] = date_to

        paging = paginate(page, limit)
        result = await find_orders(
            query,
            sort=[("shipping_details.delivered_at", -1)],
            skip=paging["skip"],
            limit=paging["limit"],
        )
        history = []
        for order in result["orders"]:
            shipping = order.get("shipping_details") or {}
            history.append({
                "order_id": order["order_id"],
                "order_number": order.get("order_number"),
                "delivered_at": shipping.get("delivered_at"),
                "picked_up_at": shipping.get("picked_up_at"),
                "commission": shipping.get("agent_commission") or 0,
                "delivery_area": (order.get("shipping_address") or {}).get("city"),
            })
        return {
            "history": history,
            "pagination": pagination_meta(paging["page"], paging["limit"], result["total"]),
        }

    async def get_earnings(self, agent_id: str, period: str = "month") -> Dict[str, Any]:
        if period not in EARNINGS_PERIODS:
            raise ValidationError(f"Period must be one of: {', '.join(EARNINGS_PERIODS)}")
        agent = await get_agent(agent_id)
        profile = agent.get("agent_profile") or {}

        now = utc_now()
        if period == "today":
            start = _start_of_day(now)
        elif period == "week":
            start = _start_of_day(now - timedelta(days=6))
        else:
            start = _start_of_day(now).replace(day=1)

        db = database.get_db()
        orders = await db.orders.find(
            {
                "shipping_details.delivered_by": agent_id,
                "status": OrderStatus.DELIVERED.value,
                "shipping_details.delivered_at": {"$gte": start},
            },
            {"_id": 0, "shipping_details.delivered_at": 1, "shipping_details.agent_commission": 1},
        ).to_list(length=5000)

        daily: Dict[str, Dict[str, Any]] = {}
        total = 0.0
        for order in orders:
            shipping = order.get("shipping_details") or {}
            amount = shipping.get("agent_commission") or 0
            total += amount
            day = shipping["delivered_at"].date().isoformat()
            bucket = daily.setdefault(day, {"date": day, "earnings": 0.0, "deliveries": 0})
            bucket["earnings"] = round(bucket["earnings"] + amount, 2)
            bucket["deliveries"] += 1

        count = len(orders)
        return {
            "period": period,
            "from": start,
            "total_earnings": round(total, 2),
            "total_deliveries": count,
            "average_per_delivery": round(total / count, 2) if count else 0,
            "daily_breakdown": sorted(daily.values(), key=lambda d: d["date"]),
            "wallet_balance": profile.get("wallet_balance", 0),
        }


shipping_assignment_service = ShippingAssignmentService()
