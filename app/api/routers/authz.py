from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import (
    Actor,
    Claims,
    Contexts,
    Resolver,
    handle_authz_error,
    require_perm,
    require_self_or_perm,
)
from app.domain.errors import AuthzError
from app.domain.models import (
    ContextListRead,
    ContextSwitchRead,
    ContextSwitchRequest,
    DelegationCreate,
    DelegationCreatedRead,
    DelegationListRead,
    DelegationRead,
    DelegationRevokedRead,
    DelegationRevokeRequest,
    EffectivePermissionsRead,
    EmergencyElevationCreate,
    EmergencyElevationRead,
    OverrideCreate,
    OverrideCreatedRead,
    OverrideRead,
    PermissionCheckRead,
    PermissionCheckRequest,
    PermissionContextCreate,
    PermissionContextRead,
)
from app.domain.permissions import Perm
from app.services.delegation_service import DelegationService
from app.services.override_service import OverrideService
from app.services.permission_resolver import SIGNAL_INCONSISTENT

router = APIRouter()


def get_delegation_service() -> DelegationService:
    return DelegationService()


def get_override_service() -> OverrideService:
    return OverrideService()


Delegations = Annotated[DelegationService, Depends(get_delegation_service)]
Overrides = Annotated[OverrideService, Depends(get_override_service)]


@router.post("/check", response_model=PermissionCheckRead)
def check_permission(payload: PermissionCheckRequest, claims: Claims, resolver: Resolver) -> PermissionCheckRead:
    require_self_or_perm(claims, payload.user_id, Perm.PERMISSIONS_READ)
    decision = resolver.check(payload.user_id, payload.permission, payload.context)
    if decision.signal == SIGNAL_INCONSISTENT:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
    return PermissionCheckRead(has_permission=decision.allowed)


@router.get("/users/{user_id}/permissions", response_model=EffectivePermissionsRead)
def get_effective_permissions(
    user_id: str,
    claims: Claims,
    resolver: Resolver,
    context: str | None = None,
) -> EffectivePermissionsRead:
    require_self_or_perm(claims, user_id, Perm.PERMISSIONS_READ)
    try:
        permissions = resolver.effective_permissions(user_id, context)
    except AuthzError as exc:
        handle_authz_error(exc)
    return EffectivePermissionsRead(user_id=user_id, context=context, permissions=sorted(permissions))


@router.get(
    "/users/{user_id}/permissions/explain",
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_READ))],
)
def explain_permissions(user_id: str, resolver: Resolver, context: str | None = None) -> dict[str, list[str]]:
    try:
        return resolver.explain(user_id, context)
    except AuthzError as exc:
        handle_authz_error(exc)


@router.post(
    "/delegations",
    response_model=DelegationCreatedRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_DELEGATE))],
)
def create_delegation(payload: DelegationCreate, actor: Actor, service: Delegations) -> DelegationCreatedRead:
    try:
        delegation = service.create_delegation(
            delegator_id=payload.delegator_id,
            delegate_id=payload.delegate_id,
            permissions=payload.permissions,
            delegation_type=payload.delegation_type,
            reason=payload.reason,
            duration_hours=payload.duration_hours,
            context=payload.context,
            actor=actor,
        )
    except AuthzError as exc:
        handle_authz_error(exc)
    return DelegationCreatedRead(delegation_id=delegation.id, expires_at=delegation.expires_at)


@router.get("/delegations/granted/{delegator_id}", response_model=DelegationListRead)
def list_active_delegations(delegator_id: str, claims: Claims, service: Delegations) -> DelegationListRead:
    require_self_or_perm(claims, delegator_id, Perm.PERMISSIONS_READ)
    items = service.list_active_delegations(delegator_id)
    return DelegationListRead(delegations=[DelegationRead.model_validate(item) for item in items])


@router.get("/delegations/received/{delegate_id}", response_model=DelegationListRead)
def list_delegated_permissions(delegate_id: str, claims: Claims, service: Delegations) -> DelegationListRead:
    require_self_or_perm(claims, delegate_id, Perm.PERMISSIONS_READ)
    items = service.list_delegated_permissions(delegate_id)
    return DelegationListRead(delegations=[DelegationRead.model_validate(item) for item in items])


@router.get(
    "/delegations/{delegation_id}",
    response_model=DelegationRead,
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_READ))],
)
def get_delegation(delegation_id: str, service: Delegations) -> DelegationRead:
    try:
        delegation = service.get_delegation(delegation_id)
    except AuthzError as exc:
        handle_authz_error(exc)
    return DelegationRead.model_validate(delegation)


@router.post("/delegations/{delegation_id}/revoke", response_model=DelegationRevokedRead)
def revoke_delegation(
    delegation_id: str,
    payload: DelegationRevokeRequest,
    actor: Actor,
    service: Delegations,
) -> DelegationRevokedRead:
    try:
        service.revoke_delegation(delegation_id, reason=payload.reason, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return DelegationRevokedRead(revoked=True)


@router.post(
    "/overrides",
    response_model=OverrideCreatedRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_OVERRIDE))],
)
def create_override(payload: OverrideCreate, actor: Actor, service: Overrides) -> OverrideCreatedRead:
    try:
        override = service.create_override(
            user_id=payload.user_id,
            override_type=payload.override_type,
            permission=payload.permission,
            reason=payload.reason,
            context=payload.context,
            expires_at=payload.expires_at,
            actor=actor,
        )
    except AuthzError as exc:
        handle_authz_error(exc)
    return OverrideCreatedRead(override_id=override.id)


@router.get("/users/{user_id}/overrides", response_model=list[OverrideRead])
def list_active_overrides(user_id: str, claims: Claims, service: Overrides) -> list[OverrideRead]:
    require_self_or_perm(claims, user_id, Perm.PERMISSIONS_READ)
    return [OverrideRead.model_validate(item) for item in service.list_active_overrides(user_id)]


@router.post(
    "/emergency-elevations",
    response_model=EmergencyElevationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_EMERGENCY))],
)
def create_emergency_elevation(
    payload: EmergencyElevationCreate,
    actor: Actor,
    service: Overrides,
) -> EmergencyElevationRead:
    try:
        elevation = service.create_emergency_elevation(
            user_id=payload.user_id,
            permissions=payload.permissions,
            reason=payload.reason,
            duration_hours=payload.duration_hours,
            context=payload.context,
            actor=actor,
        )
    except AuthzError as exc:
        handle_authz_error(exc)
    return EmergencyElevationRead(elevation_id=elevation.elevation_id, expires_at=elevation.expires_at)


@router.post(
    "/contexts",
    response_model=PermissionContextRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.ROLES_MANAGE))],
)
def create_context(payload: PermissionContextCreate, actor: Actor, contexts: Contexts) -> PermissionContextRead:
    try:
        context = contexts.create_context(payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return PermissionContextRead.model_validate(context)


@router.post("/contexts/switch", response_model=ContextSwitchRead)
def switch_context(
    payload: ContextSwitchRequest,
    claims: Claims,
    actor: Actor,
    contexts: Contexts,
) -> ContextSwitchRead:
    try:
        result = contexts.switch_context(payload.user_id, payload.context_id, claims["sid"], actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return ContextSwitchRead(
        previous_context=result.previous_context,
        current_context=result.current_context,
        applied_permissions=result.applied_permissions,
    )


@router.get("/users/{user_id}/contexts", response_model=ContextListRead)
def get_available_contexts(user_id: str, claims: Claims, contexts: Contexts) -> ContextListRead:
    require_self_or_perm(claims, user_id, Perm.PERMISSIONS_READ)
    try:
        items = contexts.available_contexts(user_id)
    except AuthzError as exc:
        handle_authz_error(exc)
    return ContextListRead(contexts=[PermissionContextRead.model_validate(item) for item in items])
