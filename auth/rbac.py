"""
auth/rbac.py -- Role-based access control tables.

Access is an explicit allow-list per protected resource. A resource that is
not listed in RESOURCE_ACCESS is reachable by nobody, so adding a page or
endpoint without listing it fails closed.

Hierarchy (for shared resources): admin > franchisee > staff > user/customer.
Admin-only resources list admin alone.
"""

from __future__ import annotations

ADMIN = "admin"
FRANCHISEE = "franchisee"
STAFF = "staff"
USER = "user"
CUSTOMER = "customer"

ROLES = frozenset({ADMIN, FRANCHISEE, STAFF, USER, CUSTOMER})

# Roles that may not use self-service password recovery; they must ask an admin.
RESTRICTED_RECOVERY_ROLES = frozenset({ADMIN, FRANCHISEE, STAFF})

_ADMIN_ONLY = frozenset({ADMIN})
_FRANCHISE = frozenset({ADMIN, FRANCHISEE})
_STAFF = frozenset({ADMIN, FRANCHISEE, STAFF})
_EVERYONE = frozenset({ADMIN, FRANCHISEE, STAFF, USER, CUSTOMER})

RESOURCE_ACCESS: dict[str, frozenset[str]] = {
    "admin-dashboard": _ADMIN_ONLY,
    "admin-stats": _ADMIN_ONLY,
    "admin-shipments": _ADMIN_ONLY,
    "organizations": _ADMIN_ONLY,
    "franchisee-dashboard": _FRANCHISE,
    "franchisee-assignments": _FRANCHISE,
    "organization-users": _FRANCHISE,
    "staff-dashboard": _STAFF,
    "user-dashboard": _EVERYONE,
}

LANDING_PAGES: dict[str, str] = {
    ADMIN: "/dashboards/admin/admin-dashboard.html",
    FRANCHISEE: "/dashboards/franchisee/franchisee-dashboard.html",
    STAFF: "/dashboards/staff/staff-dashboard.html",
    USER: "/dashboards/user/user-dashboard.html",
    CUSTOMER: "/dashboards/user/user-dashboard.html",
}

_DEFAULT_LANDING = LANDING_PAGES[USER]


def can_access(role: str, resource: str) -> bool:
    return role in RESOURCE_ACCESS.get(resource, frozenset())


def landing_for(role: str) -> str:
    """Where a user with this role belongs after login or a denied request."""
    return LANDING_PAGES.get(role, _DEFAULT_LANDING)
