from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from loguru import logger
from sqlmodel import Session, col, select

from app.domain.errors import ForbiddenError, InvalidArgumentError, NotFoundError
from app.domain.models import (
    AuditAction,
    OverrideSeverity,
    OverrideType,
    PermissionOverride,
    User,
)
from app.domain.permissions import normalize_permissions
from app.infra.audit import AuditActor, AuditRecorder, audit_recorder
from app.infra.clock import as_utc, now_utc
from app.infra.db import get_engine
from app.infra.store import RecordStore
from app.services.permission_resolver import override_is_active
from app.services.role_catalog_service import RoleCatalogService, is_admin

EMERGENCY_DEFAULT_HOURS = float(os.getenv("EMERGENCY_DEFAULT_HOURS", "4"))
EMERGENCY_MAX_HOURS = float(os.getenv("EMERGENCY_MAX_HOURS", "4"))


@dataclass
class EmergencyElevation:
    elevation_id: str
    user_id: str
    expires_at: datetime
    overrides: list[PermissionOverride] = field(default_factory=list)


class OverrideService:
    def __init__(
        self,
        catalog: RoleCatalogService | None = None,
        store: RecordStore | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self.store = store or RecordStore()
        self.catalog = catalog or RoleCatalogService(self.store)
        self.recorder = recorder or audit_recorder

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _require_admin(self, actor: AuditActor) -> None:
        if actor.is_system:
            return
        user = None
        if actor.user_id is not None:
            with self._session() as session:
                user = session.get(User, actor.user_id)
        if user is None or not user.is_active or not is_admin(self.catalog.find_role(user.role_name)):
            raise ForbiddenError("administrative role required")

    def _get_target(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def create_override(
        self,
        *,
        user_id: str,
        override_type: OverrideType,
        permission: str,
        reason: str,
        actor: AuditActor,
        context: str | None = None,
        expires_at: datetime | None = None,
    ) -> PermissionOverride:
        if not reason or not reason.strip():
            raise InvalidArgumentError("reason", "reason is required")
        (normalized,) = normalize_permissions([permission], field="permission")
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= now_utc():
                raise InvalidArgumentError("expires_at", "must be in the future")
        self._require_admin(actor)
        target = self._get_target(user_id)

        override = PermissionOverride(
            user_id=user_id,
            override_type=override_type,
            permission=normalized,
            context=context,
            reason=reason.strip(),
            granted_by=actor.user_id or "system",
            expires_at=expires_at,
        )
        override = self.store.save(override, actor=actor)
        self.recorder.record(
            AuditAction.OVERRIDE_CREATED,
            actor=actor,
            entity_type="PermissionOverride",
            entity_id=override.id,
            entity_name=target.username,
            changes={
                "user_id": user_id,
                "override_type": override_type.value,
                "permission": normalized,
                "context": context,
                "reason": override.reason,
                "expires_at": expires_at.isoformat() if expires_at is not None else None,
            },
        )
        logger.bind(event="override_created", override_id=override.id).info(
            "{} override of {} for {} by {}", override_type.value, normalized, user_id, override.granted_by
        )
        return override

    def create_emergency_elevation(
        self,
        *,
        user_id: str,
        permissions: list[str],
        reason: str,
        actor: AuditActor,
        duration_hours: float | None = None,
        context: str | None = "emergency",
    ) -> EmergencyElevation:
        """Grant critical overrides; returns only after the audit entry is committed.

        The overrides and the ``EMERGENCY_PERMISSION`` entry share one
        transaction, so an unaudited elevation can never exist.
        """
        if not reason or not reason.strip():
            raise InvalidArgumentError("reason", "reason is required")
        requested = normalize_permissions(permissions)
        if duration_hours is not None and duration_hours <= 0:
            raise InvalidArgumentError("duration_hours", "must be positive")
        hours = min(duration_hours if duration_hours is not None else EMERGENCY_DEFAULT_HOURS, EMERGENCY_MAX_HOURS)
        self._require_admin(actor)
        target = self._get_target(user_id)

        elevation_id = str(uuid4())
        expires_at = now_utc() + timedelta(hours=hours)
        overrides = [
            PermissionOverride(
                user_id=user_id,
                override_type=OverrideType.GRANT,
                permission=permission,
                context=context,
                reason=reason.strip(),
                granted_by=actor.user_id or "system",
                severity=OverrideSeverity.CRITICAL,
                elevation_id=elevation_id,
                expires_at=expires_at,
            )
            for permission in requested
        ]
        entry = self.recorder.build_entry(
            AuditAction.EMERGENCY_PERMISSION,
            actor=actor,
            entity_type="PermissionElevation",
            entity_id=elevation_id,
            entity_name=target.username,
            changes={
                "user_id": user_id,
                "permissions": requested,
                "reason": reason.strip(),
                "context": context,
                "duration_hours": hours,
                "expires_at": expires_at.isoformat(),
                "override_ids": [item.id for item in overrides],
            },
        )
        self.store.save_confirmed(overrides, actor=actor, entry=entry)
        logger.bind(event="emergency_elevation", elevation_id=elevation_id).warning(
            "emergency elevation of {} for {} until {}", ",".join(requested), user_id, expires_at.isoformat()
        )
        return EmergencyElevation(
            elevation_id=elevation_id,
            user_id=user_id,
            expires_at=expires_at,
            overrides=overrides,
        )

    def list_active_overrides(self, user_id: str) -> list[PermissionOverride]:
        now = now_utc()
        with self._session() as session:
            rows = session.exec(
                select(PermissionOverride)
                .where(PermissionOverride.user_id == user_id)
                .order_by(col(PermissionOverride.created_at))
            ).all()
        return [item for item in rows if override_is_active(item, now)]
