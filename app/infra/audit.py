from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from fastapi.encoders import jsonable_encoder
from loguru import logger
from sqlalchemy import inspect as sa_inspect
from sqlmodel import Session, SQLModel, col, select
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import (
    AuditAction,
    AuditLog,
    AuditSeverity,
    AuthSession,
    ComplianceFramework,
    User,
)
from app.infra.clock import as_utc, now_utc
from app.infra.crypto import seal_metadata
from app.infra.db import get_engine
from app.infra.request_context import audit_context_ctx, get_audit_context

AUDIT_ASYNC_WRITES = os.getenv("AUDIT_ASYNC_WRITES", "1") == "1"
AUDIT_DEFAULT_FRAMEWORK = os.getenv("AUDIT_DEFAULT_FRAMEWORK", ComplianceFramework.PCI_DSS.value)
SYSTEM_MASTER_KEY = os.getenv("SYSTEM_MASTER_KEY", "")

# Never audited on write: the log itself and session bookkeeping.
EXCLUDED_CLASSES = frozenset({"AuditLog", "AuthSession", "SessionContext"})
# Single-record reads of these are audited.
SENSITIVE_READ_CLASSES = frozenset({"User", "Client", "AuditLog"})
DENYLISTED_FIELDS = frozenset({"password", "password_hash", "session_token", "auth_data", "acl"})
ENTITY_NAME_FIELDS = ("name", "display_name", "title", "username", "email")

ACTION_POLICY: dict[AuditAction, tuple[AuditSeverity, bool]] = {
    AuditAction.CREATE: (AuditSeverity.LOW, False),
    AuditAction.UPDATE: (AuditSeverity.LOW, False),
    AuditAction.READ: (AuditSeverity.LOW, False),
    AuditAction.CONTEXT_SWITCHED: (AuditSeverity.LOW, False),
    AuditAction.DELETE: (AuditSeverity.MEDIUM, False),
    AuditAction.PERMISSION_DELEGATED: (AuditSeverity.MEDIUM, True),
    AuditAction.DELEGATION_REVOKED: (AuditSeverity.MEDIUM, True),
    AuditAction.OVERRIDE_CREATED: (AuditSeverity.MEDIUM, True),
    AuditAction.AUDIT_REVIEWED: (AuditSeverity.LOW, False),
    AuditAction.EMERGENCY_PERMISSION: (AuditSeverity.CRITICAL, True),
}


@dataclass(frozen=True)
class AuditActor:
    user_id: str | None
    username: str | None
    ip: str | None = None
    method: str | None = None
    is_system: bool = False

    def request_meta(self) -> dict[str, Any]:
        return {
            "ip": self.ip or "unknown",
            "method": self.method,
            "timestamp": now_utc().isoformat(),
        }


SYSTEM_ACTOR = AuditActor(user_id="system", username="system", is_system=True)
ANONYMOUS_ACTOR = AuditActor(user_id=None, username="anonymous")


def entity_type_of(record: SQLModel) -> str:
    return type(record).__name__


def entity_name_of(record: SQLModel) -> str:
    for field in ENTITY_NAME_FIELDS:
        value = getattr(record, field, None)
        if isinstance(value, str) and value:
            return value
    return entity_type_of(record)


def snapshot(record: SQLModel) -> dict[str, Any]:
    data = jsonable_encoder(record.model_dump())
    return {key: value for key, value in data.items() if key not in DENYLISTED_FIELDS}


def extract_changes(record: SQLModel) -> dict[str, dict[str, Any]]:
    """Diff locally modified columns against their last persisted values.

    Relies on SQLAlchemy attribute history, so it must run before the flush.
    Fields of a record that was never persisted report ``from: None``.
    """
    state = sa_inspect(record)
    changes: dict[str, dict[str, Any]] = {}
    for attr in state.mapper.column_attrs:
        key = attr.key
        if key in DENYLISTED_FIELDS:
            continue
        history = state.attrs[key].history
        if not history.added and not history.deleted:
            continue
        previous = history.deleted[0] if history.deleted else None
        current = history.added[0] if history.added else getattr(record, key, None)
        if previous == current:
            continue
        changes[key] = {
            "from": jsonable_encoder(previous),
            "to": jsonable_encoder(current),
        }
    return changes


class AuditWriter:
    """Persists audit entries off the request path.

    Failures are logged with the entry payload and never raised.
    """

    def __init__(self, *, asynchronous: bool = AUDIT_ASYNC_WRITES) -> None:
        self.asynchronous = asynchronous
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future[None]] = set()
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-writer")
            return self._executor

    def submit(self, entry: AuditLog) -> None:
        if not self.asynchronous:
            self._write(entry)
            return
        future = self._pool().submit(self._write, entry)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _write(self, entry: AuditLog) -> None:
        try:
            with Session(get_engine()) as session:
                session.add(entry)
                session.commit()
        except Exception:
            logger.bind(event="audit_write_failed", entry=jsonable_encoder(entry.model_dump())).exception(
                "audit write failed for {} {}",
                entry.action,
                entry.entity_type,
            )

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self.flush()
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)


class AuditRecorder:
    def __init__(self, writer: AuditWriter | None = None, *, framework: str | None = None) -> None:
        self.writer = writer or AuditWriter()
        self.framework = ComplianceFramework(framework or AUDIT_DEFAULT_FRAMEWORK)

    def is_excluded(self, record: SQLModel) -> bool:
        return entity_type_of(record) in EXCLUDED_CLASSES

    def build_entry(
        self,
        action: AuditAction,
        *,
        actor: AuditActor,
        entity_type: str,
        entity_id: str | None,
        entity_name: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> AuditLog:
        severity, requires_review = ACTION_POLICY[action]
        entry_id = str(uuid4())
        return AuditLog(
            id=entry_id,
            user_id=actor.user_id,
            username=actor.username,
            action=action.value,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            changes=changes or {},
            request_meta=seal_metadata(actor.request_meta(), entry_id),
            severity=severity,
            framework=self.framework,
            requires_review=requires_review,
        )

    def record(
        self,
        action: AuditAction,
        *,
        actor: AuditActor,
        entity_type: str,
        entity_id: str | None,
        entity_name: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> None:
        try:
            entry = self.build_entry(
                action,
                actor=actor,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                changes=changes,
            )
        except Exception:
            logger.bind(event="audit_build_failed", action=str(action), entity_id=entity_id).exception(
                "could not build audit entry"
            )
            return
        self.writer.submit(entry)

    def before_save(self, record: SQLModel) -> dict[str, Any] | None:
        if self.is_excluded(record):
            return None
        try:
            return extract_changes(record)
        except Exception:
            logger.bind(event="audit_diff_failed", entity_type=entity_type_of(record)).exception(
                "per-field diff unavailable"
            )
            return {"updated": True}

    def after_save(
        self,
        record: SQLModel,
        *,
        actor: AuditActor,
        created: bool,
        changes: dict[str, Any] | None,
    ) -> None:
        if self.is_excluded(record):
            return
        try:
            payload = snapshot(record) if created else (changes or {"updated": True})
            entity_id = getattr(record, "id", None)
            entity_name = entity_name_of(record)
        except Exception:
            logger.bind(event="audit_snapshot_failed", entity_type=entity_type_of(record)).exception(
                "could not capture saved record"
            )
            return
        self.record(
            AuditAction.CREATE if created else AuditAction.UPDATE,
            actor=actor,
            entity_type=entity_type_of(record),
            entity_id=entity_id,
            entity_name=entity_name,
            changes=payload,
        )

    def before_delete(self, record: SQLModel, *, actor: AuditActor) -> None:
        if self.is_excluded(record):
            return
        try:
            payload = snapshot(record)
        except Exception:
            logger.bind(event="audit_snapshot_failed", entity_type=entity_type_of(record)).exception(
                "could not capture deleted record"
            )
            payload = {"deleted": True}
        self.record(
            AuditAction.DELETE,
            actor=actor,
            entity_type=entity_type_of(record),
            entity_id=getattr(record, "id", None),
            entity_name=entity_name_of(record),
            changes=payload,
        )

    def after_read(self, records: list[SQLModel], *, actor: AuditActor) -> None:
        # Bulk results are exempt to bound log volume.
        if len(records) != 1:
            return
        record = records[0]
        if entity_type_of(record) not in SENSITIVE_READ_CLASSES:
            return
        self.record(
            AuditAction.READ,
            actor=actor,
            entity_type=entity_type_of(record),
            entity_id=getattr(record, "id", None),
            entity_name=entity_name_of(record),
            changes={"accessed": True},
        )

    def flush(self, timeout: float | None = None) -> None:
        self.writer.flush(timeout)


audit_recorder = AuditRecorder()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    host = request.client.host if request.client is not None else None
    if host in {"::1", "::ffff:127.0.0.1"}:
        return "127.0.0.1"
    return host or "unknown"


def _actor_from_session_token(token: str, ip: str, method: str) -> AuditActor | None:
    with Session(get_engine(), expire_on_commit=False) as session:
        auth_session = session.exec(
            select(AuthSession)
            .where(AuthSession.session_token == token)
            .where(col(AuthSession.is_active).is_(True))
        ).first()
        if auth_session is None:
            return None
        if auth_session.expires_at is not None and as_utc(auth_session.expires_at) <= now_utc():
            return None
        user = session.get(User, auth_session.user_id)
    if user is None:
        return None
    return AuditActor(user_id=user.id, username=user.username or user.email, ip=ip, method=method)


def resolve_audit_actor(request: Request) -> AuditActor:
    """Resolve who is acting on this request, trying each source in turn.

    Order: the request-scoped audit context, upstream ``X-Audit-*`` trust
    headers, the authenticated bearer claims, an ``X-Session-Token`` lookup,
    the ``X-Master-Key`` system marker, and finally an explicit anonymous actor.
    """
    ip = _client_ip(request)
    method = request.method

    context = get_audit_context()
    if context and context.get("user_id"):
        return AuditActor(
            user_id=context["user_id"],
            username=context.get("username") or "unknown",
            ip=context.get("ip") or ip,
            method=method,
        )

    header_user = request.headers.get("x-audit-user-id")
    if header_user:
        return AuditActor(
            user_id=header_user,
            username=request.headers.get("x-audit-username") or "unknown",
            ip=request.headers.get("x-audit-ip") or ip,
            method=method,
        )

    claims = getattr(request.state, "claims", None)
    if isinstance(claims, dict) and claims.get("sub"):
        return AuditActor(
            user_id=claims["sub"],
            username=claims.get("username") or "unknown",
            ip=ip,
            method=method,
        )

    session_token = request.headers.get("x-session-token")
    if session_token:
        actor = _actor_from_session_token(session_token, ip, method)
        if actor is not None:
            return actor

    master_key = request.headers.get("x-master-key")
    if SYSTEM_MASTER_KEY and master_key == SYSTEM_MASTER_KEY:
        return replace(SYSTEM_ACTOR, ip=ip, method=method)

    return replace(ANONYMOUS_ACTOR, ip=ip, method=method)


class AuditContextMiddleware(BaseHTTPMiddleware):
    """Opens the request-scoped audit context that dependencies fill in."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        token = audit_context_ctx.set({"ip": _client_ip(request), "method": request.method})
        try:
            return await call_next(request)
        finally:
            audit_context_ctx.reset(token)
