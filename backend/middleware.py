from fastapi import Request, HTTPException, status
from typing import Optional, Callable
import logging
from auth import decode_access_token
from models import Actor, UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("user_id") or not payload.get("role"):
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

def role_guard(*roles: UserRole) -> Callable:
    """Build a dependency that admits only the given roles."""
    allowed = {r.value for r in roles}

    async def guard(request: Request) -> dict:
        user = await require_auth(request)
        if user.get("role") not in allowed:
            logger.warning(
                f"Role guard denied {user.get('role')}:{user.get('user_id')} on {request.url.path}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return user

    return guard

admin_route_guard = role_guard(UserRole.ADMIN)
agent_route_guard = role_guard(UserRole.SHIPPING_AGENT)

def actor_from_user(user: dict) -> Actor:
    """Services take an Actor rather than the raw token payload."""
    return Actor(user_id=user["user_id"], role=user["role"])
