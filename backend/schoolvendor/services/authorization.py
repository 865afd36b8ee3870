"""
Role and ownership checks for core operations.

The core never authenticates; it receives an Actor from the caller.
"""
from ..exceptions import AuthorizationError
from ..models.common import Actor


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise AuthorizationError(
            f"Admin role required to {action}",
            {"user_id": actor.user_id, "role": actor.role}
        )


def require_owner_or_admin(actor: Actor, owner_id: str, resource: str) -> None:
    if actor.is_admin or actor.user_id == owner_id:
        return
    raise AuthorizationError(
        f"Not authorized to access this {resource}",
        {"user_id": actor.user_id}
    )
