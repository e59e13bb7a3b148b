"""
Caller identity dependency

Authentication itself is handled by the external identity provider; this
module only turns its token into an opaque caller id.
"""

import logging
from typing import Optional

from fastapi import Cookie, Header, HTTPException

from auth_utils import decode_jwt
from config import settings

logger = logging.getLogger(__name__)


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Priority 1: httpOnly cookie (browser clients)
    if auth_token:
        return auth_token
    # Priority 2: Authorization header (API consumers)
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "").strip() or None
    return None


async def get_caller_id(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[str]:
    """
    Dependency returning the current caller's user id.

    - Valid token: the token's `sub` claim
    - No token: None in anonymous demo mode, otherwise 401
    - Invalid or expired token: 401 (never downgraded to anonymous)
    """
    token = _extract_token(auth_token, authorization)

    if not token:
        if settings.allow_anonymous_demo:
            return None
        raise HTTPException(status_code=401, detail="Missing authentication token")

    try:
        payload = decode_jwt(token)
    except ValueError as e:
        logger.error(f"Cannot verify caller token: {e}")
        raise HTTPException(status_code=401, detail="Authentication is not configured")

    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    caller_id = payload.get("sub")
    if not caller_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return str(caller_id)
