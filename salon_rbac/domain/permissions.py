from __future__ import annotations

from enum import StrEnum
from typing import Any


class Action(StrEnum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    MANAGE = "MANAGE"

    @property
    def level(self) -> int:
        return ACTION_LEVELS[self]

    @classmethod
    def parse(cls, value: Action | str) -> Action:
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value in cls.__members__:
            return cls[value]
        raise ValueError(f"unknown action: {value!r}")


ACTION_LEVELS: dict[Action, int] = {
    Action.READ: 1,
    Action.WRITE: 2,
    Action.DELETE: 3,
    Action.MANAGE: 4,
}


def satisfies(held: Action, required: Action) -> bool:
    return ACTION_LEVELS[held] >= ACTION_LEVELS[required]


class Resource(StrEnum):
    USERS = "USERS"
    ROLES = "ROLES"
    PERMISSIONS = "PERMISSIONS"
    TENANTS = "TENANTS"
    SALONS = "SALONS"
    BRANCHES = "BRANCHES"
    SERVICES = "SERVICES"
    APPOINTMENTS = "APPOINTMENTS"
    SCHEDULES = "SCHEDULES"
    STAFF = "STAFF"
    STAFF_SCHEDULES = "STAFF_SCHEDULES"
    TIME_OFF = "TIME_OFF"
    CUSTOMERS = "CUSTOMERS"
    CUSTOMER_PROFILES = "CUSTOMER_PROFILES"
    PRODUCTS = "PRODUCTS"
    INVENTORY = "INVENTORY"
    ORDERS = "ORDERS"
    PAYMENTS = "PAYMENTS"
    CAMPAIGNS = "CAMPAIGNS"
    PROMOTIONS = "PROMOTIONS"
    LOYALTY = "LOYALTY"
    REVIEWS = "REVIEWS"
    ANALYTICS = "ANALYTICS"
    REPORTS = "REPORTS"
    AUDIT_LOGS = "AUDIT_LOGS"
    SETTINGS = "SETTINGS"
    INTEGRATIONS = "INTEGRATIONS"


class RoleKey(StrEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    TENANT_ADMIN = "TENANT_ADMIN"
    SALON_MANAGER = "SALON_MANAGER"
    BRANCH_MANAGER = "BRANCH_MANAGER"
    STAFF = "STAFF"
    RECEPTIONIST = "RECEPTIONIST"
    CUSTOMER = "CUSTOMER"


# Higher is more privileged. Only the escalation guard reads these.
ROLE_HIERARCHY: dict[RoleKey, int] = {
    RoleKey.SUPER_ADMIN: 100,
    RoleKey.TENANT_ADMIN: 90,
    RoleKey.SALON_MANAGER: 80,
    RoleKey.BRANCH_MANAGER: 70,
    RoleKey.STAFF: 50,
    RoleKey.RECEPTIONIST: 40,
    RoleKey.CUSTOMER: 10,
}

CONTEXT_OWNER_ID = "owner_id"
CONTEXT_BRANCH_ID = "branch_id"
CONTEXT_TENANT_ID = "tenant_id"
CONTEXT_OVERLAY_KEYS = (CONTEXT_OWNER_ID, CONTEXT_BRANCH_ID, CONTEXT_TENANT_ID)

DEFAULT_PERMISSIONS: list[tuple[Resource, Action]] = [
    (resource, action) for resource in Resource for action in Action
]

ROLE_TEMPLATES: tuple[dict[str, Any], ...] = (
    {
        "key": RoleKey.TENANT_ADMIN,
        "description": "Tenant administrator with full control inside the tenant",
        "permissions": [
            (resource, Action.MANAGE) for resource in Resource if resource != Resource.TENANTS
        ],
    },
    {
        "key": RoleKey.SALON_MANAGER,
        "description": "Salon manager with full operational control",
        "permissions": [
            (Resource.APPOINTMENTS, Action.MANAGE),
            (Resource.SERVICES, Action.MANAGE),
            (Resource.CUSTOMERS, Action.MANAGE),
            (Resource.STAFF, Action.MANAGE),
            (Resource.INVENTORY, Action.MANAGE),
            (Resource.REPORTS, Action.READ),
            (Resource.BRANCHES, Action.MANAGE),
        ],
    },
    {
        "key": RoleKey.BRANCH_MANAGER,
        "description": "Branch manager running day-to-day branch operations",
        "permissions": [
            (Resource.APPOINTMENTS, Action.MANAGE),
            (Resource.SCHEDULES, Action.MANAGE),
            (Resource.STAFF, Action.MANAGE),
            (Resource.STAFF_SCHEDULES, Action.MANAGE),
            (Resource.TIME_OFF, Action.MANAGE),
            (Resource.CUSTOMERS, Action.MANAGE),
            (Resource.INVENTORY, Action.WRITE),
            (Resource.REPORTS, Action.READ),
        ],
    },
    {
        "key": RoleKey.STAFF,
        "description": "Staff member with service and appointment management",
        "permissions": [
            (Resource.APPOINTMENTS, Action.MANAGE),
            (Resource.SERVICES, Action.READ),
            (Resource.CUSTOMERS, Action.READ),
            (Resource.SCHEDULES, Action.WRITE),
        ],
    },
    {
        "key": RoleKey.RECEPTIONIST,
        "description": "Front desk booking and check-in",
        "permissions": [
            (Resource.APPOINTMENTS, Action.WRITE),
            (Resource.CUSTOMERS, Action.WRITE),
            (Resource.SERVICES, Action.READ),
            (Resource.SCHEDULES, Action.READ),
        ],
    },
    {
        "key": RoleKey.CUSTOMER,
        "description": "Customer with basic booking permissions",
        "permissions": [
            (Resource.APPOINTMENTS, Action.READ),
            (Resource.APPOINTMENTS, Action.WRITE),
            (Resource.SERVICES, Action.READ),
        ],
    },
)


def permission_label(resource: str, action: Action) -> str:
    return f"{resource}:{action.value}"
