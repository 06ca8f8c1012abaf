"""Document factories shared by the fulfilment tests."""
from datetime import datetime, timezone


def make_order(**overrides):
    """Order document as stored by checkout, before any fulfilment step."""
    now = datetime.now(timezone.utc)
    order = {
        "order_id": "ord-1001",
        "order_number": "RR-1001",
        "buyer_id": "buyer-1",
        "artisan_id": "artisan-1",
        "items": [{"product_id": "p-1", "name": "Terracotta vase", "quantity": 1, "price": 1000}],
        "total_amount": 1000,
        "customer_info": {"name": "Asha Rao", "email": "asha@example.com", "phone": "9800000001"},
        "shipping_address": {
            "street": "12 MG Road",
            "city": "Bengaluru",
            "district": "Bengaluru Urban",
            "state": "Karnataka",
            "country": "India",
            "pin_code": "560001",
        },
        "payment_status": "completed",
        "status": "pending",
        "status_history": [{
            "status": "pending",
            "timestamp": now,
            "updated_by": "buyer-1",
            "updated_by_role": "customer",
            "note": "Order placed",
            "metadata": None,
        }],
        "last_status_change_at": now,
        "shipping_details": {},
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }
    order.update(overrides)
    return order


def make_agent(user_id="agent-1", pin_codes=("560001",), **profile_overrides):
    profile = {
        "is_active": True,
        "commission_rate": 5,
        "base_delivery_fee": 50,
        "wallet_balance": 0,
        "total_earnings": 0,
        "total_deliveries": 0,
        "successful_deliveries": 0,
        "rating": 4.5,
        "total_ratings": 10,
        "service_areas": [{"district": "Bengaluru Urban", "city": "Bengaluru", "pin_codes": list(pin_codes)}],
        "payout_history": [],
        "credited_order_ids": [],
    }
    profile.update(profile_overrides)
    return {
        "user_id": user_id,
        "name": f"Agent {user_id}",
        "email": f"{user_id}@example.com",
        "phone": "9811111111",
        "role": "shipping_agent",
        "is_active": True,
        "password_hash": "x",
        "agent_profile": profile,
    }
