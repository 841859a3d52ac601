from enum import Enum
from typing import Iterable, Optional


class Role(str, Enum):
    RIDER = "RIDER"
    STAFF = "STAFF"
    OUTSIDER = "OUTSIDER"
    KITCHEN = "KITCHEN"
    ADMIN = "ADMIN"


# Legacy values still present in older user rows
ROLE_ALIASES = {
    "STUDENT": Role.RIDER,
    "KITCHEN_MANAGER": Role.KITCHEN,
    "STAFF": Role.KITCHEN,
    "GUEST": Role.OUTSIDER,
}

RBAC = {
    Role.RIDER: {
        "name": "Rider",
        "permissions": (
            "view_menu",
            "create_order",
            "view_own_orders",
            "cancel_own_order",
            "view_own_profile",
            "update_own_profile",
        ),
    },
    Role.STAFF: {
        "name": "Staff",
        "permissions": (
            "view_menu",
            "create_order",
            "view_own_orders",
            "cancel_own_order",
            "view_own_profile",
            "update_own_profile",
        ),
    },
    Role.OUTSIDER: {
        "name": "Guest",
        "permissions": (
            "view_menu",
            "create_order",
            "view_own_orders",
            "view_own_session",
            "update_own_session",
            "request_bill",
        ),
    },
    Role.KITCHEN: {
        "name": "Kitchen Staff",
        "permissions": (
            "view_all_orders",
            "update_order_status",
            "view_order_details",
            "view_all_sessions",
            "manage_specials",
            "view_analytics",
            "view_all_users",
        ),
    },
    Role.ADMIN: {
        "name": "Admin",
        "permissions": (
            "view_menu",
            "manage_menu",
            "view_all_orders",
            "update_order_status",
            "view_all_sessions",
            "manage_users",
            "manage_staff",
            "view_analytics",
            "manage_announcements",
            "manage_specials",
            "view_audit_logs",
            "manage_roles",
        ),
    },
}

STAFF_ROLES = (Role.KITCHEN, Role.ADMIN)
PIN_LOGIN_ROLES = (Role.RIDER, Role.KITCHEN, Role.ADMIN)


def normalize_role(raw: Optional[str]) -> Optional[Role]:
    value = (raw or "").strip().upper()
    if not value:
        return None
    if value in ROLE_ALIASES:
        return ROLE_ALIASES[value]
    try:
        return Role(value)
    except ValueError:
        return None


def has_permission(role: Optional[Role], permission: str) -> bool:
    entry = RBAC.get(role)
    if entry is None:
        return False
    return permission in entry["permissions"]


def can_access(role: Optional[Role], required_roles: Iterable[Role]) -> bool:
    required = list(required_roles)
    if not required:
        return True
    return role in required


def role_display_name(role: Role) -> str:
    entry = RBAC.get(role)
    return entry["name"] if entry else role.value
