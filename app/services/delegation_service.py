from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from app.domain.models import (
    AuditAction,
    DelegationStatus,
    DelegationType,
    PermissionDelegation,
    User,
)
from app.domain.permissions import NON_DELEGATABLE_PERMISSIONS, normalize_permissions
from app.infra.audit import AuditActor, AuditRecorder, audit_recorder
from app.infra.clock import now_utc
from app.infra.db import get_engine
from app.infra.store import RecordStore
from app.services.permission_resolver import PermissionResolver, delegation_is_active
from app.services.role_catalog_service import RoleCatalogService, is_admin


@dataclass(frozen=True)
class DelegationRule:
    default_duration: timedelta | None
    max_duration: timedelta | None
    max_active: int
    requires_context: bool = False


DELEGATION_RULES: dict[DelegationType, DelegationRule] = {
    DelegationType.TEMPORARY: DelegationRule(timedelta(hours=24), timedelta(hours=24), max_active=10),
    DelegationType.STANDING: DelegationRule(None, None, max_active=5),
    DelegationType.CONDITIONAL: DelegationRule(
        timedelta(days=7),
        timedelta(days=30),
        max_active=5,
        requires_context=True,
    ),
}


class DelegationService:
    def __init__(
        self,
        resolver: PermissionResolver | None = None,
        store: RecordStore | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self.resolver = resolver or PermissionResolver()
        self.catalog: RoleCatalogService = self.resolver.catalog
        self.store = store or RecordStore()
        self.recorder = recorder or audit_recorder

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_user(self, session: Session, user_id: str, label: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"{label} not found")
        return user

    def _actor_is_admin(self, actor: AuditActor) -> bool:
        if actor.is_system:
            return True
        if actor.user_id is None:
            return False
        with self._session() as session:
            user = session.get(User, actor.user_id)
        return user is not None and user.is_active and is_admin(self.catalog.find_role(user.role_name))

    def _expires_at(self, rule: DelegationRule, duration_hours: float | None) -> datetime | None:
        if duration_hours is not None and duration_hours <= 0:
            raise InvalidArgumentError("duration_hours", "must be positive")
        duration = timedelta(hours=duration_hours) if duration_hours is not None else rule.default_duration
        if duration is None:
            return None
        if rule.max_duration is not None and duration > rule.max_duration:
            duration = rule.max_duration
        return now_utc() + duration

    def _count_active(self, delegator_id: str, delegation_type: DelegationType) -> int:
        now = now_utc()
        with self._session() as session:
            rows = session.exec(
                select(PermissionDelegation)
                .where(PermissionDelegation.delegator_id == delegator_id)
                .where(PermissionDelegation.delegation_type == delegation_type)
                .where(PermissionDelegation.status == DelegationStatus.ACTIVE)
            ).all()
        return sum(1 for item in rows if delegation_is_active(item, now))

    def create_delegation(
        self,
        *,
        delegator_id: str,
        delegate_id: str,
        permissions: list[str],
        delegation_type: DelegationType,
        reason: str,
        actor: AuditActor,
        duration_hours: float | None = None,
        context: str | None = None,
    ) -> PermissionDelegation:
        if not reason or not reason.strip():
            raise InvalidArgumentError("reason", "reason is required")
        requested = normalize_permissions(permissions)
        if delegator_id == delegate_id:
            raise InvalidArgumentError("delegate_id", "cannot delegate to yourself")
        rule = DELEGATION_RULES[delegation_type]
        if rule.requires_context and not context:
            raise InvalidArgumentError("context", f"{delegation_type.value} delegations require a context")
        expires_at = self._expires_at(rule, duration_hours)

        if actor.user_id != delegator_id and not self._actor_is_admin(actor):
            raise ForbiddenError("only the delegator or an administrator may delegate")

        with self._session() as session:
            delegator = self._get_user(session, delegator_id, "delegator")
            delegate = self._get_user(session, delegate_id, "delegate")
        delegator_role = self.catalog.find_role(delegator.role_name)
        if delegator_role is None or not delegator_role.active or not delegator_role.delegatable:
            raise ForbiddenError("delegator role cannot delegate")
        if not delegator.is_active:
            raise ForbiddenError("delegator is inactive")

        blocked = sorted(set(requested) & NON_DELEGATABLE_PERMISSIONS)
        if blocked:
            raise ForbiddenError(f"permissions cannot be delegated: {', '.join(blocked)}")
        held = self.resolver.effective_permissions(delegator_id, context)
        missing = sorted(set(requested) - held)
        if missing:
            logger.bind(event="delegation_escalation_blocked", delegator_id=delegator_id, missing=missing).warning(
                "delegator {} attempted to delegate permissions it does not hold", delegator_id
            )
            raise ForbiddenError("cannot delegate permissions you do not hold")

        delegate_role = self.catalog.find_role(delegate.role_name)
        if delegate_role is not None and delegate_role.level > delegator_role.max_delegation_level:
            raise ForbiddenError("delegate role is above the delegator's delegation level")

        if self._count_active(delegator_id, delegation_type) >= rule.max_active:
            raise ConflictError(f"active {delegation_type.value} delegation limit reached ({rule.max_active})")

        delegation = PermissionDelegation(
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            permissions=requested,
            delegation_type=delegation_type,
            context=context,
            reason=reason.strip(),
            expires_at=expires_at,
        )
        delegation = self.store.save(delegation, actor=actor)
        self.recorder.record(
            AuditAction.PERMISSION_DELEGATED,
            actor=actor,
            entity_type="PermissionDelegation",
            entity_id=delegation.id,
            entity_name=delegate.username,
            changes={
                "delegator_id": delegator_id,
                "delegate_id": delegate_id,
                "permissions": requested,
                "delegation_type": delegation_type.value,
                "context": context,
                "reason": delegation.reason,
                "expires_at": expires_at.isoformat() if expires_at is not None else None,
            },
        )
        logger.bind(event="delegation_created", delegation_id=delegation.id).info(
            "{} delegated {} to {}", delegator_id, ",".join(requested), delegate_id
        )
        return delegation

    def get_delegation(self, delegation_id: str) -> PermissionDelegation:
        with self._session() as session:
            delegation = session.get(PermissionDelegation, delegation_id)
        if delegation is None:
            raise NotFoundError("delegation not found")
        return delegation

    def revoke_delegation(self, delegation_id: str, *, reason: str, actor: AuditActor) -> PermissionDelegation:
        if not reason or not reason.strip():
            raise InvalidArgumentError("reason", "reason is required")
        delegation = self.get_delegation(delegation_id)
        if actor.user_id != delegation.delegator_id and not self._actor_is_admin(actor):
            raise ForbiddenError("only the delegator or an administrator may revoke")
        if not delegation_is_active(delegation, now_utc()):
            raise ConflictError("delegation is not active")

        delegation.status = DelegationStatus.REVOKED
        delegation.revoked_by = actor.user_id
        delegation.revoked_at = now_utc()
        delegation.revocation_reason = reason.strip()
        delegation = self.store.save(delegation, actor=actor)
        self.recorder.record(
            AuditAction.DELEGATION_REVOKED,
            actor=actor,
            entity_type="PermissionDelegation",
            entity_id=delegation.id,
            changes={
                "delegate_id": delegation.delegate_id,
                "permissions": list(delegation.permissions),
                "reason": delegation.revocation_reason,
            },
        )
        logger.bind(event="delegation_revoked", delegation_id=delegation.id).info(
            "delegation {} revoked by {}", delegation.id, actor.user_id
        )
        return delegation

    def _list_active(
        self,
        *,
        delegator_id: str | None = None,
        delegate_id: str | None = None,
    ) -> list[PermissionDelegation]:
        statement = select(PermissionDelegation).where(PermissionDelegation.status == DelegationStatus.ACTIVE)
        if delegator_id is not None:
            statement = statement.where(PermissionDelegation.delegator_id == delegator_id)
        if delegate_id is not None:
            statement = statement.where(PermissionDelegation.delegate_id == delegate_id)
        now = now_utc()
        with self._session() as session:
            rows = session.exec(statement.order_by(col(PermissionDelegation.created_at))).all()
        return [item for item in rows if delegation_is_active(item, now)]

    def list_active_delegations(self, delegator_id: str) -> list[PermissionDelegation]:
        return self._list_active(delegator_id=delegator_id)

    def list_delegated_permissions(self, delegate_id: str) -> list[PermissionDelegation]:
        return self._list_active(delegate_id=delegate_id)
