"""
Authentication utilities: JWT caller-identity tokens
"""

import jwt
from datetime import datetime, timedelta
from typing import Optional
from config import settings

# JWT configuration
ALGORITHM = "HS256"


def create_jwt(user_id: str, expires_in: timedelta = timedelta(days=7)) -> str:
    """Create a JWT token for a user"""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot create JWT token.")

    payload = {
        "sub": user_id,
        "exp": datetime.utcnow() + expires_in
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=ALGORITHM)


def decode_jwt(token: str) -> Optional[dict]:
    """Decode a JWT token. Returns None if invalid."""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot decode JWT token.")

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def create_expired_jwt(user_id: str, expired_seconds_ago: int = 1) -> str:
    """
    Create an expired JWT token for testing purposes.

    Args:
        user_id: User ID to include in token
        expired_seconds_ago: How many seconds ago the token should have expired (default: 1)

    Returns:
        Expired JWT token string
    """
    return create_jwt(user_id, expires_in=timedelta(seconds=-expired_seconds_ago))
