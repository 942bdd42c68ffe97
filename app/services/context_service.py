from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from app.domain.models import (
    AuditAction,
    ContextKind,
    PermissionContext,
    PermissionContextCreate,
    RoleScope,
    SessionContext,
    User,
)
from app.infra.audit import SYSTEM_ACTOR, AuditActor, AuditRecorder, audit_recorder
from app.infra.clock import now_utc
from app.infra.db import get_engine
from app.infra.store import RecordStore
from app.services.permission_resolver import PermissionResolver

DEFAULT_CONTEXTS: tuple[dict[str, object], ...] = (
    {"id": "default", "kind": ContextKind.DEFAULT, "display_name": "Default"},
    {"id": "emergency", "kind": ContextKind.EMERGENCY, "display_name": "Emergency operations"},
)


@dataclass(frozen=True)
class ContextSwitch:
    previous_context: str | None
    current_context: str
    applied_permissions: list[str]


class ContextService:
    def __init__(
        self,
        resolver: PermissionResolver | None = None,
        store: RecordStore | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self.resolver = resolver or PermissionResolver()
        self.store = store or RecordStore()
        self.recorder = recorder or audit_recorder

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def seed_default_contexts(self) -> None:
        with self._session() as session:
            existing = set(session.exec(select(PermissionContext.id)).all())
        for values in DEFAULT_CONTEXTS:
            if values["id"] in existing:
                continue
            self.store.save(PermissionContext(**values), actor=SYSTEM_ACTOR)

    def create_context(self, payload: PermissionContextCreate, *, actor: AuditActor) -> PermissionContext:
        if not payload.id.strip():
            raise InvalidArgumentError("id", "context id is required")
        with self._session() as session:
            if session.get(PermissionContext, payload.id) is not None:
                raise ConflictError("context already exists")
        context = PermissionContext(
            id=payload.id.strip(),
            kind=payload.kind,
            display_name=payload.display_name,
            organization=payload.organization,
            allowed_roles=sorted(set(payload.allowed_roles)),
            allowed_user_ids=sorted(set(payload.allowed_user_ids)),
            attributes=payload.attributes,
        )
        return self.store.save(context, actor=actor)

    def _is_available(self, context: PermissionContext, user: User, scope: RoleScope | None, elevated: bool) -> bool:
        if context.kind == ContextKind.DEFAULT:
            return True
        if scope == RoleScope.SYSTEM:
            return True
        if user.id in context.allowed_user_ids:
            return True
        if user.role_name in context.allowed_roles and context.organization in (None, user.organization):
            return True
        if (
            context.kind == ContextKind.DEPARTMENT
            and user.department_id is not None
            and context.attributes.get("department_id") == user.department_id
        ):
            return True
        return context.kind == ContextKind.EMERGENCY and elevated

    def available_contexts(self, user_id: str) -> list[PermissionContext]:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            contexts = session.exec(
                select(PermissionContext)
                .where(col(PermissionContext.active).is_(True))
                .order_by(col(PermissionContext.id))
            ).all()
        if not user.is_active:
            return []
        role = self.resolver.catalog.find_role(user.role_name)
        scope = role.scope if role is not None and role.active else None
        elevated = self.resolver.has_active_elevation(user_id)
        return [item for item in contexts if self._is_available(item, user, scope, elevated)]

    def current_context(self, user_id: str, session_id: str) -> str | None:
        with self._session() as session:
            row = session.exec(
                select(SessionContext)
                .where(SessionContext.user_id == user_id)
                .where(SessionContext.session_id == session_id)
            ).first()
        return row.context_id if row is not None else None

    def reset_session(self, user_id: str, session_id: str) -> None:
        with self._session() as session:
            row = session.exec(
                select(SessionContext)
                .where(SessionContext.user_id == user_id)
                .where(SessionContext.session_id == session_id)
            ).first()
            if row is None:
                row = SessionContext(user_id=user_id, session_id=session_id)
            else:
                row.previous_context_id = row.context_id
                row.context_id = None
                row.switched_at = now_utc()
            session.add(row)
            session.commit()

    def switch_context(
        self,
        user_id: str,
        context_id: str,
        session_id: str,
        *,
        actor: AuditActor,
    ) -> ContextSwitch:
        if not actor.is_system and actor.user_id != user_id:
            raise ForbiddenError("contexts can only be switched by their user")
        available = {item.id for item in self.available_contexts(user_id)}
        if context_id not in available:
            raise ForbiddenError("context not available")

        with self._session() as session:
            row = session.exec(
                select(SessionContext)
                .where(SessionContext.user_id == user_id)
                .where(SessionContext.session_id == session_id)
            ).first()
            if row is None:
                row = SessionContext(user_id=user_id, session_id=session_id)
            previous = row.context_id
            row.previous_context_id = previous
            row.context_id = context_id
            row.switched_at = now_utc()
            session.add(row)
            session.commit()

        applied = sorted(self.resolver.effective_permissions(user_id, context_id))
        self.recorder.record(
            AuditAction.CONTEXT_SWITCHED,
            actor=actor,
            entity_type="PermissionContext",
            entity_id=context_id,
            changes={
                "session_id": session_id,
                "previous_context": previous,
                "new_context": context_id,
            },
        )
        logger.bind(event="context_switched", user_id=user_id).info(
            "{} switched context {} -> {}", user_id, previous, context_id
        )
        return ContextSwitch(previous_context=previous, current_context=context_id, applied_permissions=applied)
