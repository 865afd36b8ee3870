"""
Request dependencies shared by the routers.
"""
from typing import Optional
from fastapi import Header

from ..exceptions import AuthorizationError
from ..models.common import Actor


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default="customer"),
) -> Actor:
    """
    Actor supplied by the upstream auth layer.

    Raises:
        AuthorizationError: no user id header, or an unknown role
    """
    if not x_user_id:
        raise AuthorizationError("Authentication required")

    role = (x_user_role or "customer").lower()
    if role not in ("customer", "admin"):
        raise AuthorizationError(f"Unknown role: {x_user_role}")

    return Actor(user_id=x_user_id, role=role)
