from __future__ import annotations

import re
from typing import Any

from loguru import logger
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, InconsistentError, InvalidArgumentError, NotFoundError
from app.domain.models import Role, RoleCreate, RoleScope, RoleUpdate
from app.domain.permissions import (
    ADMIN_ROLE_LEVEL,
    MAX_ROLE_LEVEL,
    MIN_ROLE_LEVEL,
    PERM_WILDCARD,
    Perm,
    RoleName,
    normalize_permissions,
    validate_role_permissions,
)
from app.infra.audit import SYSTEM_ACTOR, AuditActor
from app.infra.clock import now_utc
from app.infra.db import get_engine
from app.infra.store import RecordStore

ROLE_NAME_PATTERN = re.compile(r"^[a-z_]+$")

SYSTEM_ROLES: tuple[dict[str, Any], ...] = (
    {
        "name": RoleName.SUPERADMIN,
        "display_name": "Super Administrator",
        "description": "Full system access and administration",
        "level": 7,
        "scope": RoleScope.SYSTEM,
        "organization": "amexing",
        "base_permissions": [PERM_WILDCARD],
        "delegatable": True,
        "max_delegation_level": 6,
    },
    {
        "name": RoleName.ADMIN,
        "display_name": "Administrator",
        "description": "System administration and client management",
        "level": 6,
        "scope": RoleScope.SYSTEM,
        "organization": "amexing",
        "base_permissions": [
            Perm.USERS_READ,
            Perm.USERS_CREATE,
            Perm.USERS_UPDATE,
            Perm.USERS_DELETE,
            Perm.CLIENTS_READ,
            Perm.CLIENTS_CREATE,
            Perm.CLIENTS_UPDATE,
            Perm.CLIENTS_DELETE,
            Perm.EVENTS_READ,
            Perm.EVENTS_CREATE,
            Perm.EVENTS_UPDATE,
            Perm.BOOKINGS_READ,
            Perm.BOOKINGS_CREATE,
            Perm.BOOKINGS_UPDATE,
            Perm.BOOKINGS_APPROVE,
            Perm.REPORTS_READ,
            Perm.REPORTS_GENERATE,
            Perm.PERMISSIONS_READ,
            Perm.PERMISSIONS_DELEGATE,
            Perm.PERMISSIONS_OVERRIDE,
            Perm.PERMISSIONS_EMERGENCY,
            Perm.AUDIT_READ,
        ],
        "delegatable": True,
        "max_delegation_level": 5,
    },
    {
        "name": RoleName.CLIENT,
        "display_name": "Client Administrator",
        "description": "Organization administrator for client companies",
        "level": 5,
        "scope": RoleScope.ORGANIZATION,
        "organization": "client",
        "base_permissions": [
            Perm.USERS_READ,
            Perm.USERS_CREATE,
            Perm.USERS_UPDATE,
            Perm.DEPARTMENTS_READ,
            Perm.DEPARTMENTS_CREATE,
            Perm.DEPARTMENTS_UPDATE,
            Perm.EVENTS_READ,
            Perm.EVENTS_CREATE,
            Perm.EVENTS_UPDATE,
            Perm.BOOKINGS_READ,
            Perm.BOOKINGS_CREATE,
            Perm.BOOKINGS_APPROVE,
            Perm.SERVICES_READ,
            Perm.PRICING_READ,
            Perm.PERMISSIONS_DELEGATE,
        ],
        "delegatable": True,
        "max_delegation_level": 4,
        "conditions": {"organization_scope": "own"},
    },
    {
        "name": RoleName.DEPARTMENT_MANAGER,
        "display_name": "Department Manager",
        "description": "Department supervisor with delegation capabilities",
        "level": 4,
        "scope": RoleScope.DEPARTMENT,
        "organization": "client",
        "base_permissions": [
            Perm.USERS_READ,
            Perm.USERS_UPDATE,
            Perm.BOOKINGS_READ,
            Perm.BOOKINGS_CREATE,
            Perm.BOOKINGS_APPROVE,
            Perm.BOOKINGS_APPROVE_TEAM,
            Perm.SERVICES_READ,
            Perm.PRICING_READ,
            Perm.REPORTS_READ,
            Perm.PERMISSIONS_DELEGATE,
        ],
        "delegatable": True,
        "max_delegation_level": 3,
        "conditions": {"max_amount": 10000, "department_scope": "own"},
    },
    {
        "name": RoleName.EMPLOYEE,
        "display_name": "Employee",
        "description": "Corporate client employee with departmental access",
        "level": 3,
        "scope": RoleScope.DEPARTMENT,
        "organization": "client",
        "base_permissions": [
            Perm.BOOKINGS_VIEW_OWN,
            Perm.BOOKINGS_READ,
            Perm.BOOKINGS_CREATE,
            Perm.SERVICES_READ,
            Perm.PRICING_READ,
        ],
        "conditions": {"max_amount": 2000, "business_hours_only": True, "department_scope": "own"},
    },
    {
        "name": RoleName.EMPLOYEE_AMEXING,
        "display_name": "Amexing Employee",
        "description": "Internal administrative and operations staff",
        "level": 3,
        "scope": RoleScope.OPERATIONS,
        "organization": "amexing",
        "base_permissions": [
            Perm.BOOKINGS_READ,
            Perm.BOOKINGS_UPDATE,
            Perm.VEHICLES_READ,
            Perm.VEHICLES_UPDATE,
            Perm.SCHEDULES_READ,
            Perm.SCHEDULES_UPDATE,
            Perm.ROUTES_READ,
        ],
        "conditions": {"operations_only": True, "schedule_scope": "assigned"},
    },
    {
        "name": RoleName.DRIVER,
        "display_name": "Driver",
        "description": "Transportation service driver with mobile app access",
        "level": 2,
        "scope": RoleScope.OPERATIONS,
        "organization": "amexing",
        "base_permissions": [
            Perm.TRIPS_READ,
            Perm.TRIPS_ACCEPT,
            Perm.TRIPS_COMPLETE,
            Perm.TRIPS_CANCEL,
            Perm.VEHICLES_READ,
            Perm.ROUTES_READ,
            Perm.LOCATION_UPDATE,
            Perm.EARNINGS_READ,
        ],
        "conditions": {"assigned_only": True, "mobile_access": True},
    },
    {
        "name": RoleName.GUEST,
        "display_name": "Guest",
        "description": "Public access for service requests",
        "level": 1,
        "scope": RoleScope.PUBLIC,
        "organization": "external",
        "base_permissions": [Perm.SERVICES_READ, Perm.REQUESTS_CREATE, Perm.QUOTES_READ],
    },
)


def is_admin(role: Role | None) -> bool:
    return role is not None and role.active and role.level >= ADMIN_ROLE_LEVEL


class RoleCatalogService:
    def __init__(self, store: RecordStore | None = None) -> None:
        self.store = store or RecordStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _roles_by_name(self, session: Session) -> dict[str, Role]:
        return {item.name: item for item in session.exec(select(Role)).all()}

    def seed_system_roles(self) -> list[Role]:
        with self._session() as session:
            existing = self._roles_by_name(session)
        seeded: list[Role] = []
        for template in SYSTEM_ROLES:
            values = {
                "display_name": template["display_name"],
                "description": template["description"],
                "level": template["level"],
                "scope": template["scope"],
                "organization": template["organization"],
                "base_permissions": [str(item) for item in template["base_permissions"]],
                "delegatable": template.get("delegatable", False),
                "max_delegation_level": template.get("max_delegation_level", 0),
                "conditions": dict(template.get("conditions", {})),
                "is_system_role": True,
            }
            role = existing.get(str(template["name"]))
            if role is None:
                role = Role(name=str(template["name"]), **values)
            else:
                stale = {key: value for key, value in values.items() if getattr(role, key) != value}
                if not stale:
                    seeded.append(role)
                    continue
                for key, value in stale.items():
                    setattr(role, key, value)
                role.updated_at = now_utc()
            seeded.append(self.store.save(role, actor=SYSTEM_ACTOR))
        logger.bind(event="roles_seeded").info("system role catalog seeded ({} roles)", len(seeded))
        return seeded

    def list_roles(self, *, include_inactive: bool = False) -> list[Role]:
        with self._session() as session:
            statement = select(Role).order_by(col(Role.level).desc(), col(Role.name))
            roles = list(session.exec(statement).all())
        if include_inactive:
            return roles
        return [item for item in roles if item.active]

    def get_role(self, name: str) -> Role:
        with self._session() as session:
            role = session.exec(select(Role).where(Role.name == name)).first()
        if role is None:
            raise NotFoundError("role not found")
        return role

    def find_role(self, name: str | None) -> Role | None:
        if not name:
            return None
        with self._session() as session:
            return session.exec(select(Role).where(Role.name == name)).first()

    def _check_inheritance(self, roles: dict[str, Role], name: str, parent: str | None) -> None:
        if parent is None:
            return
        if parent not in roles:
            raise InvalidArgumentError("inherits_from", "unknown parent role")
        current: str | None = parent
        seen: set[str] = set()
        while current is not None and current not in seen:
            if current == name:
                raise InvalidArgumentError("inherits_from", "inheritance would create a cycle")
            seen.add(current)
            parent_role = roles.get(current)
            current = parent_role.inherits_from if parent_role is not None else None

    def _check_level(self, level: int) -> None:
        if not MIN_ROLE_LEVEL <= level <= MAX_ROLE_LEVEL:
            raise InvalidArgumentError("level", f"must be between {MIN_ROLE_LEVEL} and {MAX_ROLE_LEVEL}")

    def create_role(self, payload: RoleCreate, *, actor: AuditActor) -> Role:
        if not ROLE_NAME_PATTERN.match(payload.name):
            raise InvalidArgumentError("name", "must contain only lowercase letters and underscores")
        self._check_level(payload.level)
        permissions = (
            normalize_permissions(payload.base_permissions, field="base_permissions")
            if payload.base_permissions
            else []
        )
        with self._session() as session:
            roles = self._roles_by_name(session)
        if payload.name in roles:
            raise ConflictError("role name already exists")
        self._check_inheritance(roles, payload.name, payload.inherits_from)
        role = Role(
            name=payload.name,
            display_name=payload.display_name or payload.name.replace("_", " ").title(),
            description=payload.description,
            level=payload.level,
            scope=payload.scope,
            organization=payload.organization,
            base_permissions=permissions,
            inherits_from=payload.inherits_from,
            delegatable=payload.delegatable,
            max_delegation_level=payload.max_delegation_level,
            conditions=payload.conditions,
        )
        return self.store.save(role, actor=actor)

    def update_role(self, name: str, payload: RoleUpdate, *, actor: AuditActor) -> Role:
        with self._session() as session:
            roles = self._roles_by_name(session)
        role = roles.get(name)
        if role is None:
            raise NotFoundError("role not found")
        # inherits_from=None clears the parent; any other null is ignored.
        values = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or key == "inherits_from"
        }
        if "level" in values:
            self._check_level(values["level"])
        if values.get("base_permissions"):
            values["base_permissions"] = normalize_permissions(values["base_permissions"], field="base_permissions")
        if "inherits_from" in values:
            self._check_inheritance(roles, name, values["inherits_from"])
        for key, value in values.items():
            setattr(role, key, value)
        role.updated_at = now_utc()
        return self.store.save(role, actor=actor)

    def resolve_chain(self, role_name: str, *, roles: dict[str, Role] | None = None) -> list[Role]:
        """Walk ``inherits_from`` from ``role_name`` upwards.

        A missing or inactive parent ends the chain. A cycle raises
        ``InconsistentError``; it is never resolved to a partial grant.
        """
        if roles is None:
            with self._session() as session:
                roles = self._roles_by_name(session)
        chain: list[Role] = []
        visited: list[str] = []
        current: str | None = role_name
        while current is not None:
            if current in visited:
                cycle = [*visited, current]
                logger.bind(event="role_cycle", chain=cycle).error(
                    "cyclic role inheritance detected: {}", " -> ".join(cycle)
                )
                raise InconsistentError("cyclic role inheritance", {"chain": cycle})
            visited.append(current)
            role = roles.get(current)
            if role is None or not role.active:
                if current != role_name:
                    logger.bind(event="role_parent_missing", role=role_name, parent=current).warning(
                        "role {} inherits from missing or inactive role {}", role_name, current
                    )
                break
            chain.append(role)
            current = role.inherits_from
        return chain

    def role_permissions(self, role_name: str) -> set[str]:
        permissions: set[str] = set()
        for role in self.resolve_chain(role_name):
            permissions.update(validate_role_permissions(role.name, role.base_permissions))
        return permissions

    def find_cycles(self) -> list[list[str]]:
        with self._session() as session:
            roles = self._roles_by_name(session)
        cycles: list[list[str]] = []
        seen: set[frozenset[str]] = set()
        for name in sorted(roles):
            try:
                self.resolve_chain(name, roles=roles)
            except InconsistentError as exc:
                chain = exc.detail.get("chain")
                if not isinstance(chain, list):
                    continue
                cycle = chain[chain.index(chain[-1]) :]
                members = frozenset(cycle)
                if members not in seen:
                    seen.add(members)
                    cycles.append(cycle)
        return cycles

    def check_integrity(self) -> None:
        cycles = self.find_cycles()
        if cycles:
            logger.bind(event="role_integrity", cycles=cycles).error("role catalog has {} cycle(s)", len(cycles))
