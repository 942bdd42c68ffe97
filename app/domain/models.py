from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.infra.clock import now_utc


class RoleScope(StrEnum):
    SYSTEM = "system"
    ORGANIZATION = "organization"
    DEPARTMENT = "department"
    OPERATIONS = "operations"
    PUBLIC = "public"


class DelegationType(StrEnum):
    TEMPORARY = "temporary"
    STANDING = "standing"
    CONDITIONAL = "conditional"


class DelegationStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class OverrideType(StrEnum):
    GRANT = "grant"
    DENY = "deny"


class OverrideSeverity(StrEnum):
    NORMAL = "normal"
    CRITICAL = "critical"


class ContextKind(StrEnum):
    DEPARTMENT = "department"
    CORPORATE_TENANT = "corporate_tenant"
    EMERGENCY = "emergency"
    DEFAULT = "default"


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    CONTEXT_SWITCHED = "CONTEXT_SWITCHED"
    PERMISSION_DELEGATED = "PERMISSION_DELEGATED"
    DELEGATION_REVOKED = "DELEGATION_REVOKED"
    OVERRIDE_CREATED = "OVERRIDE_CREATED"
    EMERGENCY_PERMISSION = "EMERGENCY_PERMISSION"
    AUDIT_REVIEWED = "AUDIT_REVIEWED"


class AuditSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceFramework(StrEnum):
    PCI_DSS = "PCI_DSS"
    SOX = "SOX"
    GDPR = "GDPR"


class ReportFormat(StrEnum):
    SUMMARY = "summary"
    DETAILED = "detailed"


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    display_name: str
    description: str = ""
    level: int = Field(default=1, index=True)
    scope: RoleScope = RoleScope.DEPARTMENT
    organization: str = "client"
    base_permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    inherits_from: str | None = Field(default=None, index=True)
    delegatable: bool = False
    max_delegation_level: int = 0
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_system_role: bool = False
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str | None = Field(default=None, index=True)
    password_hash: str
    role_name: str = Field(index=True)
    organization: str = "client"
    department_id: str | None = Field(default=None, index=True)
    client_id: str | None = Field(default=None, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Client(SQLModel, table=True):
    __tablename__ = "clients"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    email: str | None = None
    phone: str | None = None
    organization: str = "client"
    is_corporate: bool = False
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class AuthSession(SQLModel, table=True):
    __tablename__ = "auth_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    session_token: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime | None = None


class PermissionDelegation(SQLModel, table=True):
    __tablename__ = "permission_delegations"
    __table_args__ = (
        Index("ix_permission_delegations_delegator_status", "delegator_id", "status"),
        Index("ix_permission_delegations_delegate_status", "delegate_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    delegator_id: str = Field(foreign_key="users.id")
    delegate_id: str = Field(foreign_key="users.id")
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    delegation_type: DelegationType
    context: str | None = Field(default=None, index=True)
    reason: str
    created_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime | None = Field(default=None, index=True)
    status: DelegationStatus = DelegationStatus.ACTIVE
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    revocation_reason: str | None = None


class PermissionOverride(SQLModel, table=True):
    __tablename__ = "permission_overrides"
    __table_args__ = (Index("ix_permission_overrides_user_permission", "user_id", "permission"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    override_type: OverrideType
    permission: str
    context: str | None = Field(default=None, index=True)
    reason: str
    granted_by: str
    severity: OverrideSeverity = OverrideSeverity.NORMAL
    elevation_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime | None = Field(default=None, index=True)


class PermissionContext(SQLModel, table=True):
    __tablename__ = "permission_contexts"

    id: str = Field(primary_key=True)
    kind: ContextKind
    display_name: str
    organization: str | None = Field(default=None, index=True)
    allowed_roles: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    allowed_user_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class SessionContext(SQLModel, table=True):
    __tablename__ = "session_contexts"
    __table_args__ = (UniqueConstraint("user_id", "session_id", name="uq_session_contexts_user_session"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    session_id: str = Field(index=True)
    context_id: str | None = None
    previous_context_id: str | None = None
    switched_at: datetime = Field(default_factory=now_utc)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    username: str | None = None
    action: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str | None = None
    entity_name: str | None = None
    changes: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    request_meta: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    severity: AuditSeverity = AuditSeverity.LOW
    framework: ComplianceFramework = Field(default=ComplianceFramework.PCI_DSS, index=True)
    requires_review: bool = False
    reviewed: bool = Field(default=False, index=True)
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    active: bool = True
    exists: bool = True
    ts: datetime = Field(default_factory=now_utc, index=True)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class BootstrapRequest(BaseModel):
    username: str
    password: str
    email: str | None = None


class DevLoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str


class UserCreate(BaseModel):
    username: str
    password: str
    role_name: str
    email: str | None = None
    organization: str = "client"
    department_id: str | None = None
    client_id: str | None = None
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = None
    role_name: str | None = None
    email: str | None = None
    department_id: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    username: str
    email: str | None = None
    role_name: str
    organization: str
    department_id: str | None = None
    client_id: str | None = None
    is_active: bool
    created_at: datetime


class RoleCreate(BaseModel):
    name: str
    display_name: str | None = None
    description: str = ""
    level: int = 1
    scope: RoleScope = RoleScope.DEPARTMENT
    organization: str = "client"
    base_permissions: list[str] = PydanticField(default_factory=list)
    inherits_from: str | None = None
    delegatable: bool = False
    max_delegation_level: int = 0
    conditions: dict[str, Any] = PydanticField(default_factory=dict)


class RoleUpdate(BaseModel):
    display_name: str | None = None
    description: str | None = None
    level: int | None = None
    base_permissions: list[str] | None = None
    inherits_from: str | None = None
    delegatable: bool | None = None
    max_delegation_level: int | None = None
    active: bool | None = None


class RoleRead(ORMReadModel):
    id: str
    name: str
    display_name: str
    description: str
    level: int
    scope: RoleScope
    organization: str
    base_permissions: list[str]
    inherits_from: str | None = None
    delegatable: bool
    max_delegation_level: int
    is_system_role: bool
    active: bool


class ClientCreate(BaseModel):
    name: str
    email: str | None = None
    phone: str | None = None
    organization: str = "client"
    is_corporate: bool = False


class ClientUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    is_corporate: bool | None = None


class ClientRead(ORMReadModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    organization: str
    is_corporate: bool
    created_at: datetime


class PermissionCheckRequest(BaseModel):
    user_id: str
    permission: str
    context: str | None = None


class PermissionCheckRead(BaseModel):
    has_permission: bool


class EffectivePermissionsRead(BaseModel):
    user_id: str
    context: str | None = None
    permissions: list[str]


class DelegationCreate(BaseModel):
    delegator_id: str
    delegate_id: str
    permissions: list[str]
    delegation_type: DelegationType = DelegationType.TEMPORARY
    reason: str
    duration_hours: float | None = None
    context: str | None = None


class DelegationCreatedRead(BaseModel):
    delegation_id: str
    expires_at: datetime | None = None


class DelegationRevokeRequest(BaseModel):
    reason: str


class DelegationRevokedRead(BaseModel):
    revoked: bool


class DelegationRead(ORMReadModel):
    id: str
    delegator_id: str
    delegate_id: str
    permissions: list[str]
    delegation_type: DelegationType
    context: str | None = None
    reason: str
    created_at: datetime
    expires_at: datetime | None = None
    status: DelegationStatus
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    revocation_reason: str | None = None


class DelegationListRead(BaseModel):
    delegations: list[DelegationRead]


class OverrideCreate(BaseModel):
    user_id: str
    override_type: OverrideType
    permission: str
    reason: str
    context: str | None = None
    expires_at: datetime | None = None


class OverrideCreatedRead(BaseModel):
    override_id: str


class OverrideRead(ORMReadModel):
    id: str
    user_id: str
    override_type: OverrideType
    permission: str
    context: str | None = None
    reason: str
    granted_by: str
    severity: OverrideSeverity
    elevation_id: str | None = None
    created_at: datetime
    expires_at: datetime | None = None


class EmergencyElevationCreate(BaseModel):
    user_id: str
    permissions: list[str]
    reason: str
    duration_hours: float | None = None
    context: str = "emergency"


class EmergencyElevationRead(BaseModel):
    elevation_id: str
    expires_at: datetime


class PermissionContextCreate(BaseModel):
    id: str
    kind: ContextKind
    display_name: str
    organization: str | None = None
    allowed_roles: list[str] = PydanticField(default_factory=list)
    allowed_user_ids: list[str] = PydanticField(default_factory=list)
    attributes: dict[str, Any] = PydanticField(default_factory=dict)


class PermissionContextRead(ORMReadModel):
    id: str
    kind: ContextKind
    display_name: str
    organization: str | None = None
    attributes: dict[str, Any]


class ContextListRead(BaseModel):
    contexts: list[PermissionContextRead]


class ContextSwitchRequest(BaseModel):
    user_id: str
    context_id: str


class ContextSwitchRead(BaseModel):
    previous_context: str | None = None
    current_context: str
    applied_permissions: list[str]


class AuditLogRead(ORMReadModel):
    id: str
    user_id: str | None = None
    username: str | None = None
    action: str
    entity_type: str
    entity_id: str | None = None
    entity_name: str | None = None
    changes: dict[str, Any]
    request_meta: dict[str, Any]
    severity: AuditSeverity
    framework: ComplianceFramework
    requires_review: bool
    reviewed: bool
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    ts: datetime


class AuditReviewRequest(BaseModel):
    notes: str | None = None


class ComplianceReportRead(BaseModel):
    report: dict[str, Any]


class AuditStatisticsRead(BaseModel):
    stats: dict[str, Any]
