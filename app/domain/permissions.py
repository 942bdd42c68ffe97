from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum

from app.domain.errors import InconsistentError, InvalidArgumentError

PERM_WILDCARD = "*"


class Perm(StrEnum):
    USERS_READ = "users.read"
    USERS_CREATE = "users.create"
    USERS_UPDATE = "users.update"
    USERS_DELETE = "users.delete"
    CLIENTS_READ = "clients.read"
    CLIENTS_CREATE = "clients.create"
    CLIENTS_UPDATE = "clients.update"
    CLIENTS_DELETE = "clients.delete"
    DEPARTMENTS_READ = "departments.read"
    DEPARTMENTS_CREATE = "departments.create"
    DEPARTMENTS_UPDATE = "departments.update"
    EVENTS_READ = "events.read"
    EVENTS_CREATE = "events.create"
    EVENTS_UPDATE = "events.update"
    BOOKINGS_READ = "bookings.read"
    BOOKINGS_VIEW_OWN = "bookings.view_own"
    BOOKINGS_CREATE = "bookings.create"
    BOOKINGS_UPDATE = "bookings.update"
    BOOKINGS_APPROVE = "bookings.approve"
    BOOKINGS_APPROVE_TEAM = "bookings.approve_team"
    SERVICES_READ = "services.read"
    PRICING_READ = "pricing.read"
    QUOTES_READ = "quotes.read"
    REQUESTS_CREATE = "requests.create"
    REPORTS_READ = "reports.read"
    REPORTS_GENERATE = "reports.generate"
    VEHICLES_READ = "vehicles.read"
    VEHICLES_UPDATE = "vehicles.update"
    FLEET_MANAGE = "fleet.manage"
    SCHEDULES_READ = "schedules.read"
    SCHEDULES_UPDATE = "schedules.update"
    ROUTES_READ = "routes.read"
    TRIPS_READ = "trips.read"
    TRIPS_ACCEPT = "trips.accept"
    TRIPS_COMPLETE = "trips.complete"
    TRIPS_CANCEL = "trips.cancel"
    LOCATION_UPDATE = "location.update"
    EARNINGS_READ = "earnings.read"
    PERMISSIONS_READ = "permissions.read"
    PERMISSIONS_DELEGATE = "permissions.delegate"
    PERMISSIONS_OVERRIDE = "permissions.override"
    PERMISSIONS_EMERGENCY = "permissions.emergency"
    ROLES_MANAGE = "roles.manage"
    AUDIT_READ = "audit.read"


class RoleName(StrEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    CLIENT = "client"
    DEPARTMENT_MANAGER = "department_manager"
    EMPLOYEE = "employee"
    EMPLOYEE_AMEXING = "employee_amexing"
    DRIVER = "driver"
    GUEST = "guest"


ALL_PERMISSIONS: frozenset[str] = frozenset(item.value for item in Perm)

# Never transferable through delegation; overrides and elevations are the only path.
NON_DELEGATABLE_PERMISSIONS: frozenset[str] = frozenset(
    {
        Perm.PERMISSIONS_OVERRIDE,
        Perm.PERMISSIONS_EMERGENCY,
        Perm.AUDIT_READ,
        Perm.USERS_DELETE,
        Perm.ROLES_MANAGE,
    }
)

ADMIN_ROLE_LEVEL = 6
MIN_ROLE_LEVEL = 1
MAX_ROLE_LEVEL = 7


def normalize_permissions(values: Iterable[str], *, field: str = "permissions") -> list[str]:
    """Validate request-supplied permission names against the closed `Perm` set."""
    normalized = sorted({item.strip() for item in values if isinstance(item, str) and item.strip()})
    if not normalized:
        raise InvalidArgumentError(field, "at least one permission is required")
    unknown = [item for item in normalized if item not in ALL_PERMISSIONS]
    if unknown:
        raise InvalidArgumentError(field, f"unknown permissions: {', '.join(unknown)}")
    return normalized


def validate_role_permissions(role_name: str, values: Iterable[str]) -> frozenset[str]:
    """Validate stored role permissions; the wildcard is only legal here."""
    permissions = frozenset(values)
    unknown = sorted(item for item in permissions if item != PERM_WILDCARD and item not in ALL_PERMISSIONS)
    if unknown:
        raise InconsistentError(
            "role references unknown permissions",
            {"role": role_name, "unknown": unknown},
        )
    return permissions


def expand_wildcard(permissions: Iterable[str]) -> set[str]:
    expanded = set(permissions)
    if PERM_WILDCARD in expanded:
        expanded.discard(PERM_WILDCARD)
        expanded.update(ALL_PERMISSIONS)
    return expanded
