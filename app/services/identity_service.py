from __future__ import annotations

import hashlib
import os
import secrets
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, or_, select

from app.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from app.domain.models import (
    AuthSession,
    BootstrapRequest,
    Client,
    ClientCreate,
    ClientUpdate,
    DevLoginRequest,
    PermissionDelegation,
    PermissionOverride,
    SessionContext,
    User,
    UserCreate,
    UserUpdate,
)
from app.domain.permissions import RoleName
from app.infra.audit import SYSTEM_ACTOR, AuditActor
from app.infra.auth import JWT_EXPIRES_MIN
from app.infra.clock import now_utc
from app.infra.db import get_engine
from app.infra.store import RecordStore
from app.services.context_service import ContextService
from app.services.role_catalog_service import RoleCatalogService

# Fields a user may change on their own account without outranking anyone.
SELF_SERVICE_FIELDS = frozenset({"email", "password"})


class IdentityService:
    def __init__(
        self,
        store: RecordStore | None = None,
        catalog: RoleCatalogService | None = None,
        contexts: ContextService | None = None,
    ) -> None:
        self.store = store or RecordStore()
        self.catalog = catalog or RoleCatalogService(self.store)
        self.contexts = contexts or ContextService(store=self.store)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "booking-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _check_role(self, role_name: str) -> None:
        role = self.catalog.find_role(role_name)
        if role is None or not role.active:
            raise InvalidArgumentError("role_name", "unknown role")

    def _check_username_free(self, username: str) -> None:
        with self._session() as session:
            if session.exec(select(User).where(User.username == username)).first() is not None:
                raise ConflictError("username already exists")

    def _role_level(self, role_name: str | None) -> int:
        role = self.catalog.find_role(role_name)
        return role.level if role is not None else 0

    def _require_outranks(self, actor: AuditActor, *role_names: str | None) -> None:
        """Actors may only manage users, and assign roles, strictly below their own level."""
        if actor.is_system:
            return
        acting = None
        if actor.user_id is not None:
            with self._session() as session:
                acting = session.get(User, actor.user_id)
        if acting is None or not acting.is_active:
            raise ForbiddenError("acting user cannot manage users")
        actor_level = self._role_level(acting.role_name)
        for role_name in role_names:
            if role_name is not None and actor_level <= self._role_level(role_name):
                raise ForbiddenError(f"role level {actor_level} cannot manage role {role_name}")

    def bootstrap(self, payload: BootstrapRequest) -> User:
        with self._session() as session:
            if session.exec(select(User)).first() is not None:
                raise ConflictError("already bootstrapped")
        self.catalog.seed_system_roles()
        self.contexts.seed_default_contexts()
        user = User(
            username=payload.username,
            email=payload.email,
            password_hash=self._hash_password(payload.password),
            role_name=RoleName.SUPERADMIN.value,
            organization="amexing",
        )
        return self.store.save(user, actor=SYSTEM_ACTOR)

    def dev_login(self, payload: DevLoginRequest) -> tuple[User, AuthSession]:
        with self._session() as session:
            user = session.exec(select(User).where(User.username == payload.username)).first()
            if user is None or user.password_hash != self._hash_password(payload.password):
                raise UnauthenticatedError("invalid credentials")
            if not user.is_active:
                raise UnauthenticatedError("user is inactive")
            auth_session = AuthSession(
                user_id=user.id,
                session_token=secrets.token_urlsafe(32),
                expires_at=now_utc() + timedelta(minutes=JWT_EXPIRES_MIN),
            )
            session.add(auth_session)
            session.commit()
            session.refresh(auth_session)
        self.contexts.reset_session(user.id, auth_session.id)
        return user, auth_session

    def create_user(self, payload: UserCreate, *, actor: AuditActor) -> User:
        if not payload.username.strip():
            raise InvalidArgumentError("username", "username is required")
        if not payload.password:
            raise InvalidArgumentError("password", "password is required")
        self._check_role(payload.role_name)
        self._require_outranks(actor, payload.role_name)
        self._check_username_free(payload.username)
        user = User(
            username=payload.username.strip(),
            email=payload.email,
            password_hash=self._hash_password(payload.password),
            role_name=payload.role_name,
            organization=payload.organization,
            department_id=payload.department_id,
            client_id=payload.client_id,
            is_active=payload.is_active,
        )
        try:
            return self.store.save(user, actor=actor)
        except IntegrityError as exc:
            raise ConflictError("username already exists") from exc

    def get_user(self, user_id: str, *, actor: AuditActor) -> User:
        user = self.store.get(User, user_id, actor=actor)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def list_users(self, *, actor: AuditActor) -> list[User]:
        return self.store.find(User, actor=actor, order_by=col(User.username))

    def update_user(self, user_id: str, payload: UserUpdate, *, actor: AuditActor) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        values = payload.model_dump(exclude_unset=True)
        if "role_name" in values and values["role_name"] is not None:
            self._check_role(values["role_name"])
        if actor.user_id != user.id or not set(values) <= SELF_SERVICE_FIELDS:
            self._require_outranks(actor, user.role_name, values.get("role_name"))
        password = values.pop("password", None)
        if password:
            user.password_hash = self._hash_password(password)
        for key, value in values.items():
            if value is None and key in {"role_name", "is_active"}:
                continue
            setattr(user, key, value)
        user.updated_at = now_utc()
        return self.store.save(user, actor=actor)

    def delete_user(self, user_id: str, *, actor: AuditActor) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            delegation_ref = session.exec(
                select(PermissionDelegation.id).where(
                    or_(PermissionDelegation.delegator_id == user_id, PermissionDelegation.delegate_id == user_id)
                )
            ).first()
            override_ref = session.exec(
                select(PermissionOverride.id).where(PermissionOverride.user_id == user_id)
            ).first()
            session_rows = [
                *session.exec(select(SessionContext).where(SessionContext.user_id == user_id)).all(),
                *session.exec(select(AuthSession).where(AuthSession.user_id == user_id)).all(),
            ]
        self._require_outranks(actor, user.role_name)
        if delegation_ref is not None or override_ref is not None:
            raise ConflictError("user is still referenced by delegations or overrides")
        try:
            self.store.delete(user, actor=actor, dependents=session_rows)
        except IntegrityError as exc:
            raise ConflictError("user is still referenced by delegations or overrides") from exc

    def create_client(self, payload: ClientCreate, *, actor: AuditActor) -> Client:
        if not payload.name.strip():
            raise InvalidArgumentError("name", "name is required")
        client = Client(
            name=payload.name.strip(),
            email=payload.email,
            phone=payload.phone,
            organization=payload.organization,
            is_corporate=payload.is_corporate,
        )
        return self.store.save(client, actor=actor)

    def get_client(self, client_id: str, *, actor: AuditActor) -> Client:
        client = self.store.get(Client, client_id, actor=actor)
        if client is None:
            raise NotFoundError("client not found")
        return client

    def list_clients(self, *, actor: AuditActor) -> list[Client]:
        return self.store.find(Client, actor=actor, order_by=col(Client.name))

    def update_client(self, client_id: str, payload: ClientUpdate, *, actor: AuditActor) -> Client:
        with self._session() as session:
            client = session.get(Client, client_id)
        if client is None:
            raise NotFoundError("client not found")
        for key, value in payload.model_dump(exclude_unset=True).items():
            if value is None and key in {"name", "is_corporate"}:
                continue
            setattr(client, key, value)
        client.updated_at = now_utc()
        return self.store.save(client, actor=actor)

    def delete_client(self, client_id: str, *, actor: AuditActor) -> None:
        with self._session() as session:
            client = session.get(Client, client_id)
        if client is None:
            raise NotFoundError("client not found")
        self.store.delete(client, actor=actor)
