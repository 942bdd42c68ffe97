from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from loguru import logger
from sqlmodel import Session, col, or_, select

from app.domain.errors import InconsistentError, NotFoundError
from app.domain.models import (
    DelegationStatus,
    OverrideSeverity,
    OverrideType,
    PermissionDelegation,
    PermissionOverride,
    User,
)
from app.domain.permissions import expand_wildcard
from app.infra.clock import as_utc, now_utc
from app.infra.db import get_engine
from app.services.role_catalog_service import RoleCatalogService

SIGNAL_NONE = "none"
SIGNAL_NOT_FOUND = "not_found"
SIGNAL_INCONSISTENT = "inconsistent"


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    source: str | None = None
    signal: str = SIGNAL_NONE


def context_matches(entry_context: str | None, requested: str | None) -> bool:
    return entry_context is None or entry_context == requested


def override_is_active(item: PermissionOverride, now: datetime) -> bool:
    return item.expires_at is None or as_utc(item.expires_at) > now


def delegation_is_active(item: PermissionDelegation, now: datetime) -> bool:
    if item.status != DelegationStatus.ACTIVE:
        return False
    return item.expires_at is None or as_utc(item.expires_at) > now


@dataclass
class _Grants:
    user: User
    overrides: list[PermissionOverride]
    delegations: list[PermissionDelegation]


class PermissionResolver:
    """Computes effective permissions from live state on every call.

    Precedence, highest first: deny override, emergency elevation, grant
    override, delegation, role chain. Nothing is cached between calls, so
    expiry and revocation take effect on the next check.
    """

    def __init__(self, catalog: RoleCatalogService | None = None) -> None:
        self.catalog = catalog or RoleCatalogService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _load(self, user_id: str) -> _Grants | None:
        now = now_utc()
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            overrides = session.exec(
                select(PermissionOverride)
                .where(PermissionOverride.user_id == user_id)
                .where(
                    or_(
                        col(PermissionOverride.expires_at).is_(None),
                        col(PermissionOverride.expires_at) > now,
                    )
                )
            ).all()
            delegations = session.exec(
                select(PermissionDelegation)
                .where(PermissionDelegation.delegate_id == user_id)
                .where(PermissionDelegation.status == DelegationStatus.ACTIVE)
                .where(
                    or_(
                        col(PermissionDelegation.expires_at).is_(None),
                        col(PermissionDelegation.expires_at) > now,
                    )
                )
            ).all()
        return _Grants(
            user=user,
            overrides=[item for item in overrides if override_is_active(item, now)],
            delegations=[item for item in delegations if delegation_is_active(item, now)],
        )

    def check(self, user_id: str, permission: str, context: str | None = None) -> PermissionDecision:
        grants = self._load(user_id)
        if grants is None:
            logger.bind(event="permission_check", user_id=user_id).debug("unknown user {}", user_id)
            return PermissionDecision(False, signal=SIGNAL_NOT_FOUND)
        if not grants.user.is_active:
            return PermissionDecision(False, source="inactive_user")

        for item in grants.overrides:
            if (
                item.override_type == OverrideType.DENY
                and item.permission == permission
                and context_matches(item.context, context)
            ):
                return PermissionDecision(False, source="deny_override")

        for item in grants.overrides:
            if (
                item.override_type == OverrideType.GRANT
                and item.severity == OverrideSeverity.CRITICAL
                and item.permission == permission
            ):
                return PermissionDecision(True, source="emergency_elevation")

        for item in grants.overrides:
            if (
                item.override_type == OverrideType.GRANT
                and item.severity == OverrideSeverity.NORMAL
                and item.permission == permission
                and context_matches(item.context, context)
            ):
                return PermissionDecision(True, source="grant_override")

        for delegation in grants.delegations:
            if permission in delegation.permissions and context_matches(delegation.context, context):
                return PermissionDecision(True, source="delegation")

        try:
            role_permissions = expand_wildcard(self.catalog.role_permissions(grants.user.role_name))
        except InconsistentError as exc:
            logger.bind(event="permission_check_inconsistent", user_id=user_id, detail=exc.detail).error(
                "permission check for {} aborted: {}", user_id, exc
            )
            return PermissionDecision(False, signal=SIGNAL_INCONSISTENT)
        if permission in role_permissions:
            return PermissionDecision(True, source="role")
        return PermissionDecision(False)

    def has_permission(self, user_id: str, permission: str, context: str | None = None) -> bool:
        return self.check(user_id, permission, context).allowed

    def explain(self, user_id: str, context: str | None = None) -> dict[str, list[str]]:
        """Break the effective set down by the source that contributes each permission."""
        grants = self._load(user_id)
        if grants is None:
            raise NotFoundError("user not found")
        if not grants.user.is_active:
            return {"role": [], "delegated": [], "granted": [], "elevated": [], "denied": []}
        role = expand_wildcard(self.catalog.role_permissions(grants.user.role_name))
        delegated = {
            permission
            for delegation in grants.delegations
            if context_matches(delegation.context, context)
            for permission in delegation.permissions
        }
        granted: set[str] = set()
        elevated: set[str] = set()
        denied: set[str] = set()
        for item in grants.overrides:
            if item.override_type == OverrideType.DENY:
                if context_matches(item.context, context):
                    denied.add(item.permission)
            elif item.severity == OverrideSeverity.CRITICAL:
                elevated.add(item.permission)
            elif context_matches(item.context, context):
                granted.add(item.permission)
        return {
            "role": sorted(role),
            "delegated": sorted(delegated),
            "granted": sorted(granted),
            "elevated": sorted(elevated),
            "denied": sorted(denied),
        }

    def effective_permissions(self, user_id: str, context: str | None = None) -> set[str]:
        sources = self.explain(user_id, context)
        allowed = set(sources["role"]) | set(sources["delegated"]) | set(sources["granted"]) | set(sources["elevated"])
        return allowed - set(sources["denied"])

    def has_active_elevation(self, user_id: str) -> bool:
        grants = self._load(user_id)
        if grants is None:
            return False
        return any(
            item.override_type == OverrideType.GRANT and item.severity == OverrideSeverity.CRITICAL
            for item in grants.overrides
        )
