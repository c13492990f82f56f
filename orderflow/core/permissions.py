from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from orderflow.core.exceptions import PermissionDeniedError


class ActorRole(str, Enum):
    """Roles carried in the ``role`` claim of the access token."""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"   # Scheduler jobs


@dataclass(frozen=True)
class Actor:
    """Caller identity as seen by the services."""
    id: str
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        """Admin or the system itself."""
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    def __str__(self) -> str:
        return f"{self.role.value}:{self.id}"


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


class PermissionChecker:
    """Role checks shared by the services and the API layer."""

    def __init__(self, actor: Actor):
        self.actor = actor

    def has_role(self, *roles: ActorRole) -> bool:
        return self.actor.role in roles

    def require_role(self, *roles: ActorRole, action: str = "perform this action") -> None:
        """
        Raise PermissionDeniedError unless the actor holds one of ``roles``.
        """
        if not self.has_role(*roles):
            raise PermissionDeniedError(
                f"Role '{self.actor.role.value}' may not {action}",
                details={
                    "role": self.actor.role.value,
                    "allowed_roles": [r.value for r in roles],
                },
            )

    def is_buyer_of(self, buyer_id: str) -> bool:
        return self.actor.role == ActorRole.BUYER and self.actor.id == buyer_id

    def is_seller_in(self, seller_ids: Iterable[str]) -> bool:
        return self.actor.role == ActorRole.SELLER and self.actor.id in set(seller_ids)

    def can_view_order(self, buyer_id: str, seller_ids: Iterable[str]) -> bool:
        """Admins see everything, buyers their own orders, sellers orders they take part in."""
        if self.actor.is_privileged:
            return True
        return self.is_buyer_of(buyer_id) or self.is_seller_in(seller_ids)


def require_role(actor: Actor, *roles: ActorRole, action: str = "perform this action") -> None:
    PermissionChecker(actor).require_role(*roles, action=action)
