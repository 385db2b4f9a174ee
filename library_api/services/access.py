"""Role capabilities.

``has_permission`` is the single place that answers "may this role do
this action on this resource"; route dependencies and the policy engine
both go through it.
"""
from typing import Dict, FrozenSet, List

from library_api.core.errors import Forbidden
from library_api.models.models import Role, User

ROLE_PERMISSIONS: Dict[Role, Dict[str, FrozenSet[str]]] = {
    Role.ADMIN: {
        "users": frozenset({"create", "read", "update", "delete"}),
        "books": frozenset({"create", "read", "update", "delete"}),
        "authors": frozenset({"create", "read", "update", "delete"}),
        "borrows": frozenset({"create", "read", "update", "delete", "extend", "override"}),
        "reports": frozenset({"read", "generate", "export"}),
    },
    Role.LIBRARIAN: {
        "users": frozenset({"read", "update"}),
        "books": frozenset({"create", "read", "update", "delete"}),
        "authors": frozenset({"create", "read", "update", "delete"}),
        "borrows": frozenset({"create", "read", "update", "extend"}),
        "reports": frozenset({"read", "generate"}),
    },
    Role.USER: {
        "users": frozenset({"read"}),
        "books": frozenset({"read"}),
        "authors": frozenset({"read"}),
        "borrows": frozenset({"create", "read"}),
        "reports": frozenset(),
    },
}

STAFF_ROLES = (Role.ADMIN, Role.LIBRARIAN)


def has_permission(role: Role, resource: str, action: str) -> bool:
    try:
        role = Role(role)
    except ValueError:
        return False
    return action in ROLE_PERMISSIONS[role].get(resource, frozenset())


def roles_with_permission(resource: str, action: str) -> List[Role]:
    return [role for role in Role if has_permission(role, resource, action)]


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def can_act_on_own(actor: User, owner_id: int, resource: str, action: str) -> bool:
    """Owners may always act on their own records; others need the permission."""
    return actor.id == owner_id or has_permission(actor.role, resource, action)


def ensure_permission(actor: User, resource: str, action: str) -> None:
    if not has_permission(actor.role, resource, action):
        allowed = ", ".join(r.value for r in roles_with_permission(resource, action))
        raise Forbidden(f"Access denied. Required role(s): {allowed}. Your role: {Role(actor.role).value}")
