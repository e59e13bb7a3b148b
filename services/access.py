"""
Row-ownership checks shared by the cancellation services
"""
from typing import Optional

from backend.utils.errors import PermissionDenied


def ensure_owner(owner_id: str, caller_id: Optional[str], allow_anonymous: bool) -> None:
    """
    Allow access when the caller owns the record.

    A missing caller identity is only accepted in anonymous demo mode.

    Raises:
        PermissionDenied: caller mismatch, or anonymous caller outside demo mode
    """
    if caller_id is None:
        if allow_anonymous:
            return
        raise PermissionDenied("caller identity required")
    if caller_id != owner_id:
        raise PermissionDenied("caller does not own this record")
