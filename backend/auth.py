from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

# Tokens are issued by the portal's identity service; this API only reads them.
# create_access_token exists for scripts and tests that mint tokens locally.

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token carrying user_id (and optionally role)."""
    claims = dict(data)
    claims["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS))
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_access_token(token: str) -> Optional[Dict]:
    """Validate a bearer token and return its claims with user_id resolved.

    The identity service may put the account id in `user_id` or in the
    standard `sub` claim. Tokens with neither are rejected.
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    user_id = claims.get("user_id") or claims.get("sub")
    if not user_id:
        return None
    claims["user_id"] = str(user_id)
    return claims
