from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole
from database import database

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("user_id"):
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

async def require_user(request: Request) -> dict:
    """Require an authenticated user that exists in the users collection.

    Role is taken from the stored record, not the token, so a demoted
    account loses admin bypass immediately.
    """
    token_user = await require_auth(request)

    db = database.get_db()
    user = await db.users.find_one(
        {"user_id": token_user["user_id"]},
        {"_id": 0, "user_id": 1, "email": 1, "name": 1, "role": 1}
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    user.setdefault("role", UserRole.USER.value)
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_user(request)
    if user.get("role") != UserRole.ADMIN.value:
        logger.warning(f"Admin route denied for user {user.get('user_id')} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user
