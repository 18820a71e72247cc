"""
Tenant isolation policy.

Every tenant-scoped operation asks this module for the restaurant it may
touch. The answer is a tagged value: Allow(scope) where scope is a
restaurant id (or None for "all restaurants", super-admin only), or
Deny(reason). Callers bound to a restaurant are always pinned to it,
whatever restaurant id the request names.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from errors import ForbiddenError
from models import Role, TENANT_ROLES

logger = logging.getLogger(__name__)

SUPERADMIN = Role.SUPERADMIN.value
ADMIN = Role.ADMIN.value
STAFF = Role.STAFF.value
DELIVERY = Role.DELIVERY.value
CUSTOMER = Role.CUSTOMER.value

ACTIONS = {
    "food:create": frozenset({ADMIN, STAFF, SUPERADMIN}),
    "food:update": frozenset({ADMIN, SUPERADMIN}),
    "food:delete": frozenset({ADMIN, SUPERADMIN}),
    "order:list": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "order:accept": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "order:reject": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "order:status": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "order:delivery": frozenset({DELIVERY, ADMIN, SUPERADMIN}),
    "order:payment": frozenset({STAFF, ADMIN, SUPERADMIN}),
    "order:delete": frozenset({ADMIN, SUPERADMIN}),
    "dashboard:view": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "staff:manage": frozenset({ADMIN, SUPERADMIN}),
    "message:tenant": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "message:reply": frozenset({STAFF, ADMIN, SUPERADMIN, DELIVERY}),
    "restaurant:view-own": frozenset({STAFF, ADMIN, DELIVERY}),
    "restaurant:manage": frozenset({SUPERADMIN}),
}


@dataclass(frozen=True)
class Caller:
    account_id: int
    role: str
    restaurant_id: Optional[int] = None

    @classmethod
    def from_user(cls, user) -> "Caller":
        return cls(account_id=user.id, role=user.role, restaurant_id=user.restaurant_id)

    @property
    def is_superadmin(self) -> bool:
        return self.role == SUPERADMIN

    @property
    def is_customer(self) -> bool:
        return self.role == CUSTOMER


@dataclass(frozen=True)
class Allow:
    scope: Optional[int]

    @property
    def unrestricted(self) -> bool:
        return self.scope is None


@dataclass(frozen=True)
class Deny:
    reason: str


Decision = Union[Allow, Deny]


def resolve_scope(caller: Caller, requested_restaurant_id: Optional[int] = None) -> Decision:
    if caller.is_superadmin:
        return Allow(requested_restaurant_id)

    if caller.restaurant_id is None:
        if caller.role in TENANT_ROLES:
            return Deny(f"Account {caller.account_id} ({caller.role}) is not assigned to a restaurant")
        return Deny(f"Role {caller.role} has no restaurant scope")

    if requested_restaurant_id is not None and requested_restaurant_id != caller.restaurant_id:
        logger.info(
            "Caller %s asked for restaurant %s, pinned to own restaurant %s",
            caller.account_id, requested_restaurant_id, caller.restaurant_id,
        )
    return Allow(caller.restaurant_id)


def authorize(caller: Caller, action: str, requested_restaurant_id: Optional[int] = None) -> Decision:
    roles = ACTIONS.get(action)
    if roles is None:
        raise KeyError(f"Unknown action: {action}")
    if caller.role not in roles:
        return Deny(f"User role {caller.role} is not authorized to {action}")
    return resolve_scope(caller, requested_restaurant_id)


def require(caller: Caller, action: str, requested_restaurant_id: Optional[int] = None) -> Optional[int]:
    """Return the effective scope for `action` or raise ForbiddenError."""
    decision = authorize(caller, action, requested_restaurant_id)
    if isinstance(decision, Deny):
        logger.warning("Denied %s for account %s: %s", action, caller.account_id, decision.reason)
        raise ForbiddenError(decision.reason)
    return decision.scope


def require_role(caller: Caller, action: str) -> None:
    """Role check only, for operations that are not tenant scoped."""
    if caller.role not in ACTIONS[action]:
        logger.warning("Denied %s for account %s (%s)", action, caller.account_id, caller.role)
        raise ForbiddenError(f"User role {caller.role} is not authorized to {action}")


def in_scope(scope: Optional[int], restaurant_id: Optional[int]) -> bool:
    return scope is None or scope == restaurant_id


def ensure_in_scope(scope: Optional[int], restaurant_id: Optional[int], what: str = "resource") -> None:
    if not in_scope(scope, restaurant_id):
        raise ForbiddenError(f"Unauthorized: this {what} belongs to another restaurant")


def apply_scope(query, column, scope: Optional[int]):
    """Restrict a SQLAlchemy query to `scope`; unrestricted scopes pass through."""
    if scope is None:
        return query
    return query.filter(column == scope)
