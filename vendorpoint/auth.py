"""Capability gate in front of the mutating routes.

The core never authenticates anybody. An outer service resolves the caller
into a :class:`Principal` (by overriding :func:`get_principal`) and the routes
declare the portal / permission they need with :func:`require_capability`.
"""

import enum
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException
from pydantic import BaseModel


class Portal(str, enum.Enum):
    STAFF = "staff"
    CASHIER = "cashier"
    ADMIN = "admin"
    ALL = "all"


class Principal(BaseModel):
    is_authenticated: bool = False
    staff_id: Optional[int] = None
    client_id: Optional[int] = None
    portal_access: Optional[Portal] = None
    permissions: dict[str, bool] = {}

    def has_portal_access(self, portal: Portal) -> bool:
        if not self.is_authenticated or self.portal_access is None:
            return False
        return self.portal_access is portal or self.portal_access is Portal.ALL

    def has_permission(self, permission: str) -> bool:
        return self.is_authenticated and self.permissions.get(permission) is True

    def has_any_permission(self, permissions: Iterable[str]) -> bool:
        return any(self.has_permission(p) for p in permissions)


def get_principal() -> Principal:
    return Principal()


def require_capability(
    portal: Optional[Portal] = None,
    permission: Optional[str] = None,
    any_of: Iterable[str] = (),
) -> Callable[..., Principal]:
    """Guard a route; ``any_of`` admits a caller holding at least one of them."""
    alternatives = tuple(any_of)

    def guard(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.is_authenticated:
            raise HTTPException(status_code=401, detail="authentication required")
        if portal is not None and not principal.has_portal_access(portal):
            raise HTTPException(status_code=403, detail=f"no access to the {portal.value} portal")
        if permission is not None and not principal.has_permission(permission):
            raise HTTPException(status_code=403, detail=f"missing permission {permission}")
        if alternatives and not principal.has_any_permission(alternatives):
            raise HTTPException(
                status_code=403, detail=f"needs one of {', '.join(alternatives)}"
            )
        return principal

    return guard
