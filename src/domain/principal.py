from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet

from src.domain.exceptions import PermissionDeniedError


class Role(str, Enum):
    USER = "user"
    BUSINESS = "business"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """The caller of an engine operation, passed in explicitly."""

    user_id: str
    roles: FrozenSet[Role] = field(default_factory=lambda: frozenset({Role.USER}))

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    @property
    def is_staff(self) -> bool:
        return self.has_role(Role.BUSINESS, Role.ADMIN)


def require_role(principal: Principal, *roles: Role) -> Principal:
    if not principal.has_role(*roles):
        allowed = ", ".join(role.value for role in roles)
        raise PermissionDeniedError(
            f"Principal {principal.user_id} needs one of: {allowed}"
        )
    return principal


def require_owner_or_admin(principal: Principal, owner_id: str) -> Principal:
    if principal.user_id != owner_id and not principal.is_admin:
        raise PermissionDeniedError(
            f"Principal {principal.user_id} does not own this booking"
        )
    return principal
